"""Stageloom: staged, validated, recoverable codebase migrations."""

__version__ = "0.3.0"
