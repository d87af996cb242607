"""Pytest configuration and fixtures for rail-sync tests."""

import tempfile
from pathlib import Path

import pytest

from rail_sync.config import RailConfig, SplitSpec

from fake_vcs import FakeVcs
from repo_helpers import commit_files, init_repo
from samples import WORKSPACE


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def mono_repo(temp_dir: Path):
    """Create a git Cargo workspace acting as the monorepo."""
    repo = init_repo(temp_dir / "mono")
    commit_files(repo, WORKSPACE, "Initial workspace")
    yield repo
    repo.close()


@pytest.fixture
def split_remote(temp_dir: Path):
    """Create an empty bare repository acting as a split remote."""
    repo = init_repo(temp_dir / "bar.git", bare=True)
    yield repo
    repo.close()


@pytest.fixture
def fake_mono():
    """In-memory monorepo with the sample workspace committed on main."""
    mono = FakeVcs("mono")
    mono.commit(WORKSPACE, "Initial workspace")
    return mono


@pytest.fixture
def fake_split(fake_mono: FakeVcs):
    """Empty in-memory split repository, reachable from fake_mono as 'bar-remote'."""
    split = FakeVcs("bar")
    fake_mono.connect("bar-remote", split)
    return split


@pytest.fixture
def rail_config():
    """Config with one single-mode split per crate."""
    return RailConfig(
        workspace_root=Path("."),
        splits=[
            SplitSpec(name="foo", remote="foo-remote", paths=["crates/foo"]),
            SplitSpec(name="bar", remote="bar-remote", paths=["crates/bar"]),
        ],
    )
