"""Stacked-branch topology for Git repositories: parent and merged-branch detection with a persistent cache."""

__version__ = "0.1.0"
__all__ = ["__version__"]