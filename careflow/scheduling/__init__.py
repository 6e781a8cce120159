from careflow.scheduling.recurrence import (
    RECURRENCE_UNRECOGNIZED,
    RecurrenceKind,
    RecurrenceRule,
    ResolvedSchedule,
    parse_recurrence,
    resolve_dates,
)
from careflow.scheduling.materializer import (
    MaterializationResult,
    TaskMaterializer,
    preview_timeline,
)

__all__ = [
    "RECURRENCE_UNRECOGNIZED",
    "RecurrenceKind",
    "RecurrenceRule",
    "ResolvedSchedule",
    "parse_recurrence",
    "resolve_dates",
    "MaterializationResult",
    "TaskMaterializer",
    "preview_timeline",
]
