"""
Rail Sync - Split Cargo workspace crates into standalone repositories.

This package splits directories of a Cargo workspace monorepo into their own
git repositories, preserving history, and keeps both sides in sync: trusted
mono-to-split pushes and reviewed split-to-mono imports.
"""

__version__ = "0.1.0"
