"""
Exception types raised by the reconstruction pipeline.

Extraction and estimation failures are local: the bundler catches them and
skips the offending view. Only a failure on the initial pair propagates out
of a reconstruction.
"""

from __future__ import annotations


class SfmError(Exception):
    """Base class for all pipeline errors."""


class InvalidImageError(SfmError, ValueError):
    """Image has an unsupported shape or channel count (must be 1 or 3)."""


class SingularMatrixError(SfmError, ArithmeticError):
    """A Hessian or estimation matrix is numerically degenerate."""


class InsufficientCorrespondencesError(SfmError, ValueError):
    """Too few correspondences to attempt a robust estimation."""

    def __init__(self, required: int, got: int, what: str = "correspondences"):
        self.required = required
        self.got = got
        super().__init__(f"Need at least {required} {what}, got {got}")


class NoValidPoseError(SfmError, RuntimeError):
    """No pose hypothesis survived cheirality or reprojection scoring."""


class TrackConflictError(SfmError, RuntimeError):
    """
    Inconsistent track bookkeeping (e.g. one track observed twice in a view).

    The track builder resolves conflicts by deleting the affected tracks and
    only counts them; this class names the condition in diagnostics.
    """


__all__ = [
    "SfmError",
    "InvalidImageError",
    "SingularMatrixError",
    "InsufficientCorrespondencesError",
    "NoValidPoseError",
    "TrackConflictError",
]
