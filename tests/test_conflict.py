"""Tests for the three-way conflict resolver."""

import pytest

from rail_sync.conflict import (
    Clean,
    ConflictContext,
    ConflictStrategy,
    Conflicted,
    Failed,
    has_conflict_markers,
    resolve,
)

BASE = b"A\nB\nC\n"
OURS = b"A\nB2\nC\n"
THEIRS = b"A\nB3\nC\n"


def ctx(strategy, base=BASE, ours=OURS, theirs=THEIRS, path="src/lib.rs"):
    return ConflictContext(path, base, ours, theirs, ConflictStrategy(strategy))


class TestStrategies:
    """One conflicting line under each strategy."""

    def test_ours(self):
        """Test that ours keeps our side of the region."""
        assert resolve(ctx("ours")) == Clean("src/lib.rs", b"A\nB2\nC\n")

    def test_theirs(self):
        """Test that theirs keeps their side of the region."""
        assert resolve(ctx("theirs")) == Clean("src/lib.rs", b"A\nB3\nC\n")

    def test_union(self):
        """Test that union keeps both sides, ours first."""
        assert resolve(ctx("union")) == Clean("src/lib.rs", b"A\nB2\nB3\nC\n")

    def test_manual_leaves_markers(self):
        """Test that manual reports the file with diff3 markers."""
        outcome = resolve(ctx("manual"))
        assert isinstance(outcome, Conflicted)
        assert outcome.regions == 1
        assert outcome.data == (
            b"A\n<<<<<<< ours\nB2\n||||||| base\nB\n=======\nB3\n>>>>>>> theirs\nC\n"
        )
        assert has_conflict_markers(outcome.data)


class TestTrivialMerges:
    """Cases that never reach the region merge."""

    @pytest.mark.parametrize("strategy", list(ConflictStrategy))
    def test_identical_sides(self, strategy):
        """Test that equal sides are clean for every strategy."""
        assert resolve(ctx(strategy, ours=THEIRS)) == Clean("src/lib.rs", THEIRS)

    def test_only_theirs_changed(self):
        """Test that an untouched ours takes theirs."""
        assert resolve(ctx("manual", ours=BASE)) == Clean("src/lib.rs", THEIRS)

    def test_only_ours_changed(self):
        """Test that an untouched theirs keeps ours."""
        assert resolve(ctx("manual", theirs=BASE)) == Clean("src/lib.rs", OURS)

    def test_non_overlapping_edits_merge(self):
        """Test that edits to different lines merge cleanly."""
        outcome = resolve(ctx("manual", base=b"A\nB\nC\nD\n", ours=b"A1\nB\nC\nD\n", theirs=b"A\nB\nC\nD1\n"))
        assert outcome == Clean("src/lib.rs", b"A1\nB\nC\nD1\n")

    def test_both_deleted(self):
        """Test that a file deleted on both sides stays deleted."""
        assert resolve(ctx("manual", ours=None, theirs=None)) == Clean("src/lib.rs", None)


class TestUnmergeable:
    """Binary content, missing base and delete/modify."""

    def test_binary_fails_for_manual(self):
        """Test that binary content cannot be merged line by line."""
        outcome = resolve(ctx("manual", base=b"\x00\x01", ours=b"\x00\x02", theirs=b"\x00\x03", path="logo.png"))
        assert outcome == Failed("logo.png", "binary content")

    def test_binary_fails_for_union(self):
        outcome = resolve(ctx("union", base=b"\x00\x01", ours=b"\x00\x02", theirs=b"\x00\x03"))
        assert isinstance(outcome, Failed)

    def test_binary_whole_file_for_ours_and_theirs(self):
        """Test that ours/theirs still pick a whole side of a binary file."""
        assert resolve(ctx("ours", base=b"\x00", ours=b"\x00o", theirs=b"\x00t")).data == b"\x00o"
        assert resolve(ctx("theirs", base=b"\x00", ours=b"\x00o", theirs=b"\x00t")).data == b"\x00t"

    def test_missing_base_fails(self):
        """Test that both sides adding different content has no common base."""
        outcome = resolve(ctx("manual", base=None))
        assert outcome == Failed("src/lib.rs", "no common base")

    def test_delete_modify_manual(self):
        """Test that deleting a file we modified is a conflict for manual."""
        outcome = resolve(ctx("manual", theirs=None))
        assert isinstance(outcome, Conflicted)
        assert b"<<<<<<< ours\nA\nB2\nC\n" in outcome.data

    def test_delete_modify_union_keeps_modified(self):
        """Test that union keeps the modified side."""
        assert resolve(ctx("union", theirs=None)) == Clean("src/lib.rs", OURS)

    def test_delete_modify_theirs_deletes(self):
        assert resolve(ctx("theirs", theirs=None)) == Clean("src/lib.rs", None)


class TestParse:
    """Tests for ConflictStrategy.parse."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("ours", ConflictStrategy.OURS),
            ("THEIRS", ConflictStrategy.THEIRS),
            ("use-mono", ConflictStrategy.OURS),
            ("use-remote", ConflictStrategy.THEIRS),
            (" union ", ConflictStrategy.UNION),
        ],
    )
    def test_parse(self, value, expected):
        assert ConflictStrategy.parse(value) is expected

    def test_parse_invalid(self):
        """Test that unknown names list the valid options."""
        with pytest.raises(ValueError, match="Valid options"):
            ConflictStrategy.parse("rebase")


def test_markers_only_at_line_start():
    """Test that marker detection ignores markers inside a line."""
    assert not has_conflict_markers(b"let s = \"<<<<<<< not a marker\";\n")
    assert has_conflict_markers(b"x\n>>>>>>> theirs\n")
    assert not has_conflict_markers(None)
