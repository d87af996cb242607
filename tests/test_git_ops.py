"""Tests for the system git driver."""

import pytest

from rail_sync.errors import ConfigError, VcsCommandFailed, VcsParseError, VcsTimeout
from rail_sync.git_ops import SystemGit, build_env, parse_log_records
from rail_sync.vcs import FILE_MODE, BlobRequest, Signature, TreeEntry, git_blob_sha

from repo_helpers import commit_files
from samples import BAR_LIB, FOO_MANIFEST


@pytest.fixture
def git(mono_repo):
    return SystemGit(mono_repo.working_tree_dir)


class TestEnvironment:
    """Tests for the subprocess environment."""

    def test_forced_values(self, monkeypatch):
        monkeypatch.setenv("GIT_TERMINAL_PROMPT", "1")
        env = build_env()
        assert env["GIT_TERMINAL_PROMPT"] == "0"
        assert env["GIT_ASKPASS"] == ""
        assert env["LC_ALL"] == "C"

    def test_unlisted_variables_not_inherited(self, monkeypatch):
        monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "hunter2")
        monkeypatch.setenv("GIT_DIR", "/elsewhere")
        env = build_env()
        assert "AWS_SECRET_ACCESS_KEY" not in env
        assert "GIT_DIR" not in env

    def test_extra_overrides(self):
        assert build_env({"GIT_INDEX_FILE": "/tmp/idx"})["GIT_INDEX_FILE"] == "/tmp/idx"


class TestParseLog:
    """Tests for parse_log_records."""

    def test_parses_fields(self):
        raw = "\x1f".join(["a" * 40, "b" * 40, "Ann", "ann@x", "10", "Cid", "cid@x", "20", "Subject\n\nBody\n"])
        (record,) = parse_log_records(["git", "log"], raw.encode() + b"\x00")
        assert record.parents == ("b" * 40,)
        assert (record.author, record.committer, record.committer_timestamp) == ("Ann", "Cid", 20)
        assert record.summary == "Subject"

    def test_wrong_field_count(self):
        with pytest.raises(VcsParseError):
            parse_log_records(["git", "log"], b"abc\x1fdef\x00")

    def test_bad_timestamp(self):
        raw = "\x1f".join(["a" * 40, "", "A", "a@x", "soon", "C", "c@x", "1", "msg"])
        with pytest.raises(VcsParseError, match="bad timestamp"):
            parse_log_records(["git", "log"], raw.encode())


class TestReads:
    """Reads against a real repository."""

    def test_invalid_repository(self, temp_dir):
        with pytest.raises(ConfigError, match="Not a valid git repository"):
            SystemGit(temp_dir)

    def test_resolve_ref(self, git, mono_repo):
        assert git.resolve_ref("main") == mono_repo.head.commit.hexsha
        assert git.resolve_ref("refs/heads/missing") is None

    def test_list_commits_path_filter(self, git, mono_repo):
        """Test that commits outside the paths are not listed."""
        root = mono_repo.head.commit.hexsha
        c1 = commit_files(mono_repo, {"crates/bar/src/lib.rs": BAR_LIB + "// one\n"}, "bar one")
        commit_files(mono_repo, {"crates/foo/src/lib.rs": "// foo\n"}, "foo only")
        c3 = commit_files(mono_repo, {"crates/bar/src/extra.rs": "// extra\n"}, "bar two")

        commits = git.list_commits("main", ["crates/bar"], since=root)

        assert [c.sha for c in commits] == [c1, c3]
        assert commits[0].summary == "bar one"
        assert commits[0].parents == (root,)

    def test_is_ancestor(self, git, mono_repo):
        root = mono_repo.head.commit.hexsha
        head = commit_files(mono_repo, {"README.md": "changed\n"}, "readme")
        assert git.is_ancestor(root, head)
        assert not git.is_ancestor(head, root)

    def test_tree_differs(self, git, mono_repo):
        root = mono_repo.head.commit.hexsha
        head = commit_files(mono_repo, {"crates/foo/src/lib.rs": "// foo\n"}, "foo only")
        assert git.tree_differs(root, head, ["crates/foo"])
        assert not git.tree_differs(root, head, ["crates/bar"])

    def test_read_blobs_keeps_order(self, git):
        """Test that a missing item in the middle of a batch is reported in place."""
        results = git.read_blobs(
            [
                BlobRequest("main", "crates/foo/Cargo.toml"),
                BlobRequest("main", "does/not/exist"),
                BlobRequest("main", "crates/bar/src/lib.rs"),
            ]
        )
        assert [r.missing for r in results] == [False, True, False]
        assert results[0].data.decode() == FOO_MANIFEST
        assert results[2].data.decode() == BAR_LIB

    def test_read_blob_by_sha(self, git):
        sha = git.list_tree("main", ["crates/foo/Cargo.toml"])["crates/foo/Cargo.toml"].sha
        assert git.read_blobs([BlobRequest(sha)])[0].data.decode() == FOO_MANIFEST
        assert git_blob_sha(FOO_MANIFEST.encode()) == sha

    def test_read_commits_order(self, git, mono_repo):
        root = mono_repo.head.commit.hexsha
        head = commit_files(mono_repo, {"README.md": "changed\n"}, "readme")
        assert [c.sha for c in git.read_commits([head, root, head])] == [head, root, head]

    def test_existing_commits(self, git, mono_repo):
        """Test that unknown shas are dropped in one batch without failing it."""
        head = mono_repo.head.commit.hexsha
        assert git.existing_commits([head, "f" * 40, head]) == [head, head]
        assert git.existing_commits([]) == []

    def test_remote_url(self, git, split_remote):
        assert git.remote_url("bar-remote") is None
        git.add_remote("bar-remote", split_remote.git_dir)
        assert git.remote_url("bar-remote") == str(split_remote.git_dir)


class TestWrites:
    """Object and ref writes."""

    def test_create_commit_and_list_tree(self, git):
        """Test that a commit holds exactly the staged files."""
        sha = git.write_blob(b"hello\n")
        assert sha == git_blob_sha(b"hello\n")
        sig = Signature("Ann", "ann@example.com", 1_700_000_000)
        commit = git.create_commit(
            {"a/b.txt": TreeEntry(FILE_MODE, sha)}, [git.resolve_ref("main")], sig, sig, "Add b\n"
        )

        assert git.list_tree(commit, []) == {"a/b.txt": TreeEntry(FILE_MODE, sha)}
        (record,) = git.read_commits([commit])
        assert (record.author, record.timestamp) == ("Ann", 1_700_000_000)

    def test_create_branch_refuses_existing(self, git):
        head = git.resolve_ref("main")
        git.create_branch("rail/sync/bar/1", head)
        assert git.resolve_ref("rail/sync/bar/1") == head
        with pytest.raises(VcsCommandFailed):
            git.create_branch("rail/sync/bar/1", head)

    def test_update_ref_checks_old_value(self, git):
        head = git.resolve_ref("main")
        git.update_ref("refs/rail/split/bar", head)
        with pytest.raises(VcsCommandFailed):
            git.update_ref("refs/rail/split/bar", head, old_sha="1" * 40)

    def test_notes_round_trip(self, git):
        head = git.resolve_ref("main")
        git.add_note("refs/notes/rail/bar", head, f"{head} {'2' * 40}\n")
        notes = git.read_notes("refs/notes/rail/bar")
        assert notes[head].strip() == f"{head} {'2' * 40}"
        assert git.read_notes("refs/notes/rail/none") == {}

    def test_push_and_fetch(self, git, split_remote):
        git.push(str(split_remote.git_dir), ["main:refs/heads/main"])
        git.fetch(str(split_remote.git_dir), ["+refs/heads/main:refs/rail/split/bar"])
        assert git.resolve_ref("refs/rail/split/bar") == git.resolve_ref("main")

    def test_push_failure_raises(self, git, temp_dir):
        with pytest.raises(VcsCommandFailed) as info:
            git.push(str(temp_dir / "nowhere.git"), ["main:refs/heads/main"])
        assert info.value.stderr


def test_expired_deadline(git):
    """Test that calls after the run deadline fail fast."""
    with git.deadline(0):
        with pytest.raises(VcsTimeout):
            git.resolve_ref("main")
