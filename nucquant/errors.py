"""
Error types raised by the nucquant pipeline.

Every error is terminal for the call that raised it. Callers (CLI, batch runner)
decide whether to stop or to skip the offending image; nothing in the package
substitutes placeholder numbers for a failed measurement.
"""


class NucQuantError(Exception):
    """Base class for pipeline errors."""


class DecodeError(NucQuantError):
    """Image bytes/pixels could not be decoded into a 2D/3D numeric grid."""


class InputMismatchError(NucQuantError, ValueError):
    """Label map and intensity image do not share spatial dimensions."""


class InsufficientDataError(NucQuantError, ValueError):
    """Too few datasets or samples for the requested statistical test."""

    def __init__(self, message: str, dataset: str | None = None):
        super().__init__(message)
        self.dataset = dataset
