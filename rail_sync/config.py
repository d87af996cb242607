"""
Configuration handling for rail-sync.

Defines the split configuration schema and provides methods for
loading/saving it from YAML files.
"""

import re
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .conflict import ConflictStrategy
from .errors import ConfigError
from .security import DEFAULT_PROTECTED, DEFAULT_REVIEW_TEMPLATE, REVIEW_PREFIX

DEFAULT_CONFIG_FILE = Path("rail.yaml")

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class SplitSpec(BaseModel):
    """One split unit: workspace directories published as a standalone repository."""

    name: str = Field(..., description="Split name, used in notes refs and review branches")
    # URL or configured remote name of the split repository
    remote: str = Field(..., description="Git remote (name or URL) of the split repository")
    branch: str = Field(default="main", description="Branch of the split repository to sync")
    # single: one crate, its directory becomes the split root
    # combined: several crates, workspace-relative paths are kept
    mode: Literal["single", "combined"] = Field(
        default="single", description="Split layout"
    )
    paths: list[str] = Field(..., description="Workspace-relative directories of the split")
    protected_branches: list[str] = Field(
        default_factory=lambda: list(DEFAULT_PROTECTED),
        description="Mono branches a split-to-mono run may never write",
    )
    review_branch_template: str = Field(
        default=DEFAULT_REVIEW_TEMPLATE,
        description="Name of the review branch created by split-to-mono runs",
    )
    conflict_strategy: ConflictStrategy = Field(
        default=ConflictStrategy.MANUAL,
        description="How conflicting regions are resolved",
    )
    exclude: list[str] = Field(
        default_factory=list,
        description="Glob patterns for files to exclude from sync",
    )
    # If set, a file must match one of these to be synced
    include: list[str] = Field(
        default_factory=list,
        description="Glob patterns for files to explicitly include",
    )

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not _NAME_RE.match(value) or ".." in value or value.endswith(".lock"):
            raise ValueError(f"'{value}' is not usable in a git ref name")
        return value

    @field_validator("conflict_strategy", mode="before")
    @classmethod
    def _parse_strategy(cls, value):
        return ConflictStrategy.parse(value) if isinstance(value, str) else value

    @field_validator("paths")
    @classmethod
    def _normalize_paths(cls, value: list[str]) -> list[str]:
        normalized = []
        for path in value:
            clean = path.strip().strip("/")
            if not clean or clean.startswith("..") or "/../" in f"/{clean}/":
                raise ValueError(f"invalid split path '{path}'")
            normalized.append(clean)
        if len(set(normalized)) != len(normalized):
            raise ValueError("split paths must be unique")
        return normalized

    @model_validator(mode="after")
    def _check_layout(self) -> "SplitSpec":
        if not self.paths:
            raise ValueError("a split needs at least one path")
        if self.mode == "single" and len(self.paths) != 1:
            raise ValueError("single mode takes exactly one path; use mode: combined")
        try:
            rendered = self.review_branch_template.format(split=self.name, timestamp=0)
        except (KeyError, IndexError) as e:
            raise ValueError(f"review_branch_template has an unknown placeholder: {e}") from e
        if not rendered.startswith(REVIEW_PREFIX):
            raise ValueError(f"review_branch_template must render under {REVIEW_PREFIX}")
        return self


class RailConfig(BaseModel):
    """Main configuration for rail-sync."""

    workspace_root: Path = Field(
        default=Path("."), description="Path to the monorepo (Cargo workspace) root"
    )
    mono_remote: str = Field(
        default="origin", description="Git remote name of the monorepo"
    )
    mono_branch: str = Field(
        default="main", description="Mono branch synced to splits and targeted by review branches"
    )
    git_timeout: float = Field(
        default=120.0, gt=0, description="Timeout in seconds for a single git command"
    )
    run_timeout: float | None = Field(
        default=None, gt=0, description="Overall deadline in seconds for one sync run"
    )
    batch_workers: int = Field(
        default=4, ge=1, description="Parallel workers for batched commit reads"
    )
    splits: list[SplitSpec] = Field(
        default_factory=list, description="Split units to synchronize"
    )

    # Global exclude patterns (applied to all splits)
    global_exclude_patterns: list[str] = Field(
        default_factory=lambda: [
            ".env",
            ".env.*",
            "*.secret",
            "*.secrets",
            ".secrets/",
            "target/",
        ],
        description="Patterns to exclude from all splits",
    )

    @model_validator(mode="after")
    def _check_splits(self) -> "RailConfig":
        names = [s.name for s in self.splits]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate split names: {', '.join(duplicates)}")
        return self

    @classmethod
    def from_yaml(cls, path: Path) -> "RailConfig":
        """Load configuration from a YAML file."""
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError as e:
            raise ConfigError(f"Config file not found: {path}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
        try:
            config = cls.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration in {path}:\n{e}") from e
        if not config.workspace_root.is_absolute():
            config.workspace_root = (Path(path).parent / config.workspace_root).resolve()
        return config

    def to_yaml(self, path: Path) -> None:
        """Save configuration to a YAML file."""
        with open(path, "w") as f:
            yaml.dump(
                self.model_dump(mode="json"),
                f,
                default_flow_style=False,
                sort_keys=False,
            )

    def get_split(self, name: str) -> SplitSpec:
        """Get a split by name."""
        for split in self.splits:
            if split.name == name:
                return split
        known = ", ".join(s.name for s in self.splits) or "none"
        raise ConfigError(f"Unknown split '{name}' (configured: {known})")

    def managed_paths(self) -> list[str]:
        """Get the directories of every package some split manages."""
        return [path for split in self.splits for path in split.paths]


def create_default_config(
    workspace_root: Path = Path("."),
    mono_branch: str = "main",
    splits: list[SplitSpec] | None = None,
) -> RailConfig:
    """Create a default configuration with sensible defaults."""
    return RailConfig(
        workspace_root=workspace_root,
        mono_branch=mono_branch,
        splits=splits or [],
    )
