"""
Recurrence rules and the date/offset resolver for recovery protocols.

A protocol task definition is scheduled relative to an anchor date (normally
the patient's surgery date). The resolver turns (anchor, day offset,
recurrence rule, horizon) into the concrete calendar dates on which the task
appears. It is a pure function: same inputs, same output, no hidden state.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

logger = logging.getLogger(__name__)

DEFAULT_HORIZON_DAYS = 90

# Warning code returned when a free-form descriptor names an unknown kind
RECURRENCE_UNRECOGNIZED = "recurrence-unrecognized"


class RecurrenceKind(str, Enum):
    NONE = "none"
    DAILY = "daily"
    HOURLY = "hourly"
    EVERY_N_HOURS = "every_n_hours"
    EVERY_N_DAYS = "every_n_days"
    WEEKLY = "weekly"


INTERVAL_KINDS = {RecurrenceKind.EVERY_N_HOURS, RecurrenceKind.EVERY_N_DAYS}


class RecurrenceRule(BaseModel):
    """A closed recurrence descriptor.

    ``end_day`` is an inclusive bound expressed as a day offset from the
    anchor date, so ``end_day=14`` stops the series on anchor + 14 days.
    """

    model_config = ConfigDict(frozen=True, use_enum_values=False)

    kind: RecurrenceKind = RecurrenceKind.NONE
    interval: Optional[int] = Field(default=None, ge=1)
    end_day: Optional[int] = None

    @model_validator(mode="after")
    def _check_interval(self):
        if self.kind in INTERVAL_KINDS and self.interval is None:
            raise ValueError(f"recurrence kind '{self.kind.value}' requires an interval")
        return self

    @property
    def is_recurring(self) -> bool:
        return self.kind != RecurrenceKind.NONE

    @property
    def step(self) -> Optional[timedelta]:
        if self.kind == RecurrenceKind.DAILY:
            return timedelta(days=1)
        if self.kind == RecurrenceKind.HOURLY:
            return timedelta(hours=1)
        if self.kind == RecurrenceKind.EVERY_N_HOURS:
            return timedelta(hours=self.interval)
        if self.kind == RecurrenceKind.EVERY_N_DAYS:
            return timedelta(days=self.interval)
        if self.kind == RecurrenceKind.WEEKLY:
            return timedelta(weeks=1)
        return None

    def to_columns(self) -> dict:
        """Column values for ProtocolTaskDefinition."""
        return {
            "recurrence_kind": self.kind.value,
            "recurrence_interval": self.interval,
            "recurrence_end_day": self.end_day,
        }


NO_RECURRENCE = RecurrenceRule()

_EVERY_N = re.compile(r"^every[_\s-]?(\d+)[_\s-]?(hour|hours|day|days)$")

_LEGACY_KINDS = {
    "none": RecurrenceRule(),
    "once": RecurrenceRule(),
    "daily": RecurrenceRule(kind=RecurrenceKind.DAILY),
    "hourly": RecurrenceRule(kind=RecurrenceKind.HOURLY),
    "weekly": RecurrenceRule(kind=RecurrenceKind.WEEKLY),
    "everyotherday": RecurrenceRule(kind=RecurrenceKind.EVERY_N_DAYS, interval=2),
    "every_other_day": RecurrenceRule(kind=RecurrenceKind.EVERY_N_DAYS, interval=2),
}


def _parse_legacy_type(raw_type: str) -> Optional[RecurrenceRule]:
    key = raw_type.strip().lower()
    if key in _LEGACY_KINDS:
        return _LEGACY_KINDS[key]

    match = _EVERY_N.match(key)
    if match:
        interval = int(match.group(1))
        if interval < 1:
            return None
        if match.group(2).startswith("hour"):
            return RecurrenceRule(kind=RecurrenceKind.EVERY_N_HOURS, interval=interval)
        return RecurrenceRule(kind=RecurrenceKind.EVERY_N_DAYS, interval=interval)

    try:
        return RecurrenceRule(kind=RecurrenceKind(key))
    except (ValueError, ValidationError):
        return None


def parse_recurrence(raw: Any) -> Tuple[RecurrenceRule, List[str]]:
    """Leniently parse a recurrence descriptor.

    Accepts a ``RecurrenceRule``, ``None``, a bare kind string, a closed
    ``{"kind", "interval", "end_day"}`` mapping, or the legacy
    ``{"type", "repeat"}`` frequency shape used by template data.

    Unknown kinds never raise: they fall back to a single occurrence and the
    ``recurrence-unrecognized`` warning code is returned alongside.

    Returns:
        The parsed rule and a list of warning codes.
    """
    if raw is None:
        return NO_RECURRENCE, []
    if isinstance(raw, RecurrenceRule):
        return raw, []

    if isinstance(raw, str):
        rule = _parse_legacy_type(raw)
        if rule is None:
            logger.warning(f"Unrecognized recurrence '{raw}', falling back to single occurrence")
            return NO_RECURRENCE, [RECURRENCE_UNRECOGNIZED]
        return rule, []

    if not isinstance(raw, dict):
        logger.warning(f"Unrecognized recurrence descriptor {raw!r}")
        return NO_RECURRENCE, [RECURRENCE_UNRECOGNIZED]

    end_day = raw.get("end_day", raw.get("until_day"))

    if "kind" in raw:
        try:
            return RecurrenceRule(
                kind=raw.get("kind") or RecurrenceKind.NONE,
                interval=raw.get("interval"),
                end_day=end_day,
            ), []
        except ValidationError as e:
            logger.warning(f"Invalid recurrence {raw!r}: {e.errors()}")
            return NO_RECURRENCE, [RECURRENCE_UNRECOGNIZED]

    # Legacy frequency shape: {"type": "daily", "repeat": true}
    raw_type = raw.get("type")
    repeat = raw.get("repeat")

    if raw_type is None:
        if repeat:
            return RecurrenceRule(kind=RecurrenceKind.DAILY, end_day=end_day), []
        return NO_RECURRENCE, []

    if repeat is False:
        return NO_RECURRENCE, []

    rule = _parse_legacy_type(str(raw_type))
    if rule is None:
        logger.warning(f"Unrecognized recurrence type '{raw_type}', falling back to single occurrence")
        return NO_RECURRENCE, [RECURRENCE_UNRECOGNIZED]

    if end_day is not None:
        rule = rule.model_copy(update={"end_day": end_day})
    return rule, []


@dataclass(frozen=True)
class ResolvedSchedule:
    dates: List[date]
    rule: RecurrenceRule = NO_RECURRENCE
    warnings: List[str] = field(default_factory=list)

    @property
    def first(self) -> Optional[date]:
        return self.dates[0] if self.dates else None


def resolve_dates(
    anchor: date,
    day_offset: int,
    recurrence: Union[RecurrenceRule, dict, str, None] = None,
    horizon_days: int = DEFAULT_HORIZON_DAYS,
) -> ResolvedSchedule:
    """Resolve the calendar dates for one task definition.

    The first occurrence is ``anchor + day_offset``. A recurring rule repeats
    every ``step`` while ``k * step`` stays strictly below ``horizon_days``
    and the occurrence is not past the rule's ``end_day`` bound. Sub-day
    steps are collapsed to distinct dates.

    Args:
        anchor: The anchor date, normally the surgery date.
        day_offset: Days from the anchor; negative for pre-surgery tasks.
        recurrence: A rule or any descriptor ``parse_recurrence`` accepts.
        horizon_days: Length of the recurrence window, counted from the
            first occurrence.

    Returns:
        Ascending, de-duplicated dates with any parse warnings.
    """
    if horizon_days < 1:
        raise ValueError("horizon_days must be at least 1")

    rule, warnings = parse_recurrence(recurrence)
    first = anchor + timedelta(days=day_offset)

    if not rule.is_recurring:
        return ResolvedSchedule(dates=[first], rule=rule, warnings=warnings)

    last_allowed = None
    if rule.end_day is not None:
        last_allowed = anchor + timedelta(days=rule.end_day)

    step = rule.step
    current = datetime.combine(first, time.min)
    window_end = current + timedelta(days=horizon_days)

    dates: List[date] = []
    while current < window_end:
        day = current.date()
        # k = 0 is always a valid occurrence
        if dates and last_allowed is not None and day > last_allowed:
            break
        if not dates or dates[-1] != day:
            dates.append(day)
        current += step

    return ResolvedSchedule(dates=dates, rule=rule, warnings=warnings)
