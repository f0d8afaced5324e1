"""
Core tracking module.

Contains the data models, store clients, event store and aggregate engine.
"""

from .aggregates import COUNTER_COLUMNS, DailyAggregates
from .client import D1Client, D1QueryError, SQLiteClient, TrackingClient
from .events import EventStore, Transition, TransitionResult
from .models import (
    Beacon,
    BucketKey,
    ClientInfo,
    DailyAggregate,
    DailyBeacon,
    EventState,
    MetricsBeacon,
    PageviewBeacon,
    PageviewEvent,
)

__all__ = [
    "Beacon", "PageviewBeacon", "MetricsBeacon", "DailyBeacon", "ClientInfo",
    "PageviewEvent", "EventState", "BucketKey", "DailyAggregate",
    "EventStore", "Transition", "TransitionResult",
    "DailyAggregates", "COUNTER_COLUMNS",
    "TrackingClient", "D1Client", "SQLiteClient", "D1QueryError",
]
