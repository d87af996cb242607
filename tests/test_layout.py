"""Tests for path mapping and file filtering."""

import pytest

from rail_sync.config import SplitSpec
from rail_sync.layout import SplitLayout, should_include_file

GLOBAL = [".env", ".env.*", "*.secret", "target/"]


@pytest.fixture
def single():
    return SplitLayout(SplitSpec(name="bar", remote="r", paths=["crates/bar"]), GLOBAL)


@pytest.fixture
def combined():
    spec = SplitSpec(name="core", remote="r", mode="combined", paths=["crates/foo", "crates/bar"])
    return SplitLayout(spec, GLOBAL)


class TestSingleMode:
    """The crate directory becomes the split root."""

    def test_to_split(self, single):
        assert single.to_split("crates/bar/src/lib.rs") == "src/lib.rs"
        assert single.to_split("crates/bar/Cargo.toml") == "Cargo.toml"

    def test_outside_paths(self, single):
        assert single.to_split("crates/foo/src/lib.rs") is None
        assert single.to_split("crates/barn/src/lib.rs") is None
        assert single.to_split("Cargo.toml") is None

    def test_to_mono(self, single):
        assert single.to_mono("src/lib.rs") == "crates/bar/src/lib.rs"

    def test_split_paths_cover_whole_tree(self, single):
        assert single.split_paths == []

    def test_excluded_both_ways(self, single):
        """Test that excluded files map to nothing in either direction."""
        assert single.to_split("crates/bar/.env") is None
        assert single.to_split("crates/bar/target/debug/bar") is None
        assert single.to_mono(".env.local") is None


class TestCombinedMode:
    """Workspace-relative paths are kept."""

    def test_identity_mapping(self, combined):
        assert combined.to_split("crates/foo/src/lib.rs") == "crates/foo/src/lib.rs"
        assert combined.to_mono("crates/bar/Cargo.toml") == "crates/bar/Cargo.toml"

    def test_unowned_split_path(self, combined):
        """Test that split files outside every configured path are not imported."""
        assert combined.to_mono("README.md") is None
        assert combined.to_mono("crates/baz/src/lib.rs") is None

    def test_split_paths(self, combined):
        assert combined.split_paths == ["crates/foo", "crates/bar"]


class TestShouldIncludeFile:
    """Tests for should_include_file."""

    def test_no_patterns(self):
        assert should_include_file("src/lib.rs", [], [])

    def test_exclude_component(self):
        """Test that directory patterns match any path component."""
        assert not should_include_file("target/release/bar", [], ["target/"])
        assert not should_include_file("nested/target/x", [], ["target/"])

    def test_exclude_glob(self):
        assert not should_include_file("keys/prod.secret", [], [], ["*.secret"])

    def test_include_required(self):
        assert should_include_file("src/lib.rs", ["src/*"], [])
        assert not should_include_file("benches/b.rs", ["src/*"], [])

    def test_exclude_wins_over_include(self):
        assert not should_include_file("src/.env", ["src/*"], [".env"])
