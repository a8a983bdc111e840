# Core modules - Config, Exceptions, Clock, Store
from .config import settings
from .clock import Clock, ManualClock, SystemClock, get_clock
from .exceptions import (
    EditorialClockException,
    UnknownStage,
    AlreadyInStage,
    InvalidTransition,
    TooEarly,
    StoreConflict,
    DispatchFailure,
)
from .store import SchedulingStore, InMemorySchedulingStore, TransitionUnit, get_store

__all__ = [
    "settings",
    "Clock",
    "ManualClock",
    "SystemClock",
    "get_clock",
    "EditorialClockException",
    "UnknownStage",
    "AlreadyInStage",
    "InvalidTransition",
    "TooEarly",
    "StoreConflict",
    "DispatchFailure",
    "SchedulingStore",
    "InMemorySchedulingStore",
    "TransitionUnit",
    "get_store",
]
