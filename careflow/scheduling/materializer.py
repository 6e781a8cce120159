"""
Turn protocol task definitions into dated patient task rows.

Rows are committed per task definition. A failure on one definition is
logged, rolled back and recorded on the result; the rest of the batch still
runs. Dates already present for (patient, definition) are skipped, so
re-running an assignment never double-materializes.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from careflow import models
from careflow.config import settings
from careflow.scheduling.recurrence import ResolvedSchedule, resolve_dates

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DefinitionSnapshot:
    """Plain copy of a task definition, safe to read after a session rollback."""

    id: int
    title: str
    task_type: str
    day_offset: int
    recurrence: dict

    @classmethod
    def from_model(cls, definition: models.ProtocolTaskDefinition) -> "DefinitionSnapshot":
        return cls(
            id=definition.id,
            title=definition.title,
            task_type=definition.task_type,
            day_offset=definition.day_offset or 0,
            recurrence={
                "kind": definition.recurrence_kind or "none",
                "interval": definition.recurrence_interval,
                "end_day": definition.recurrence_end_day,
            },
        )


@dataclass
class MaterializationFailure:
    definition_id: int
    error: str


@dataclass
class MaterializationResult:
    created: int = 0
    skipped: int = 0
    failures: List[MaterializationFailure] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failures


Resolver = Callable[..., ResolvedSchedule]


class TaskMaterializer:
    def __init__(
        self,
        max_occurrences: Optional[int] = None,
        horizon_days: Optional[int] = None,
        resolver: Resolver = resolve_dates,
    ):
        self.max_occurrences = max_occurrences or settings.MAX_TASK_OCCURRENCES
        self.horizon_days = horizon_days or settings.RECURRENCE_HORIZON_DAYS
        self.resolver = resolver

    def schedule_for(self, anchor_date: date, snapshot: DefinitionSnapshot) -> ResolvedSchedule:
        """Resolved dates for one definition, capped at ``max_occurrences``."""
        schedule = self.resolver(
            anchor_date,
            snapshot.day_offset,
            snapshot.recurrence,
            self.horizon_days,
        )
        return ResolvedSchedule(
            dates=schedule.dates[: self.max_occurrences],
            rule=schedule.rule,
            warnings=schedule.warnings,
        )

    async def materialize(
        self,
        db: AsyncSession,
        *,
        tenant_id: int,
        patient_id: int,
        assignment_id: int,
        anchor_date: date,
        definitions: Iterable[models.ProtocolTaskDefinition],
    ) -> MaterializationResult:
        """Create PatientTaskInstance rows for every definition.

        Args:
            db: The database session; committed once per definition.
            tenant_id: Tenant owning the patient.
            patient_id: Target patient.
            assignment_id: The ProtocolAssignment the rows belong to.
            anchor_date: Date the day offsets are relative to.
            definitions: Task definitions of the assigned protocol.

        Returns:
            Counts of created and skipped rows plus per-definition failures.
        """
        snapshots = [DefinitionSnapshot.from_model(d) for d in definitions]
        result = MaterializationResult()

        for snapshot in snapshots:
            try:
                schedule = self.schedule_for(anchor_date, snapshot)
                for warning in schedule.warnings:
                    logger.warning(
                        f"Task definition {snapshot.id} ({snapshot.title}): {warning}"
                    )
                    result.warnings.append(f"task_definition:{snapshot.id}:{warning}")

                existing_result = await db.execute(
                    select(models.PatientTaskInstance.scheduled_date).where(
                        models.PatientTaskInstance.patient_id == patient_id,
                        models.PatientTaskInstance.task_definition_id == snapshot.id,
                    )
                )
                existing_dates = set(existing_result.scalars().all())

                new_rows = [
                    models.PatientTaskInstance(
                        tenant_id=tenant_id,
                        patient_id=patient_id,
                        task_definition_id=snapshot.id,
                        assignment_id=assignment_id,
                        scheduled_date=scheduled_date,
                        status="pending",
                        completion_data={},
                    )
                    for scheduled_date in schedule.dates
                    if scheduled_date not in existing_dates
                ]

                db.add_all(new_rows)
                await db.commit()

                result.created += len(new_rows)
                result.skipped += len(schedule.dates) - len(new_rows)

            except (SQLAlchemyError, ValueError) as e:
                await db.rollback()
                logger.error(
                    f"Failed to materialize task definition {snapshot.id} "
                    f"for patient {patient_id}: {e}"
                )
                result.failures.append(
                    MaterializationFailure(definition_id=snapshot.id, error=str(e))
                )

        logger.info(
            f"Materialized assignment {assignment_id} for patient {patient_id}: "
            f"{result.created} created, {result.skipped} skipped, "
            f"{len(result.failures)} failed"
        )
        return result


def preview_timeline(
    anchor_date: date,
    definitions: Iterable[models.ProtocolTaskDefinition],
    materializer: Optional[TaskMaterializer] = None,
) -> List[dict]:
    """Resolved dates per definition without writing anything."""
    materializer = materializer or TaskMaterializer()
    timeline = []
    for definition in definitions:
        snapshot = DefinitionSnapshot.from_model(definition)
        schedule = materializer.schedule_for(anchor_date, snapshot)
        timeline.append({
            "task_definition_id": snapshot.id,
            "title": snapshot.title,
            "task_type": snapshot.task_type,
            "day_offset": snapshot.day_offset,
            "dates": schedule.dates,
            "warnings": schedule.warnings,
        })
    return timeline
