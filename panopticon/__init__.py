"""Multi-process metric aggregation aligned to a shared start time."""

from panopticon.aggregator import Panopticon
from panopticon.collector import Delivery, DeliveryCollector
from panopticon.contracts import IntervalSnapshot, PanopticonOptions
from panopticon.errors import (
    CollaboratorError,
    InvalidArgument,
    InvalidOptionsError,
    MetricError,
    PanopticonError,
    SinkError,
)
from panopticon.journal import JournalSink, SnapshotJournalReader
from panopticon.reporter import PanopticonReporter

__all__ = [
    "CollaboratorError",
    "Delivery",
    "DeliveryCollector",
    "IntervalSnapshot",
    "InvalidArgument",
    "InvalidOptionsError",
    "JournalSink",
    "MetricError",
    "Panopticon",
    "PanopticonError",
    "PanopticonOptions",
    "PanopticonReporter",
    "SinkError",
    "SnapshotJournalReader",
]
