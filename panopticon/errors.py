"""Exception hierarchy for the Panopticon aggregator and its fixtures."""

from __future__ import annotations


class PanopticonError(Exception):
    """Base class for all Panopticon errors."""


class InvalidArgument(PanopticonError, ValueError):
    """Raised when a process argument (e.g. the start time) is missing or malformed."""


class CollaboratorError(PanopticonError):
    """Raised by the aggregator during construction or while recording metrics."""


class InvalidOptionsError(CollaboratorError, ValueError):
    """Raised when aggregator options fail validation."""


class MetricError(CollaboratorError):
    """Raised for invalid writes: bad path/key/value, kind conflicts, writes after stop."""


class SinkError(CollaboratorError):
    """Raised when a sink fails while a closed window is delivered."""


class JournalReaderError(PanopticonError):
    """Raised when a snapshot journal cannot be read."""
