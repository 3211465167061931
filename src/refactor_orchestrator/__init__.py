"""Drives multi-phase refactoring plans to completion with checkpoints and quality gates."""

__version__ = "0.1.0"
