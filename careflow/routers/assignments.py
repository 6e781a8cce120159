import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from careflow import crud, models, schemas
from careflow.auth import PRACTICE_ADMIN, SAAS_ADMIN, STAFF_ROLES, ensure_tenant_access, require_roles
from careflow.database import get_db
from careflow.dependencies import get_materializer
from careflow.routers.patients import get_patient_or_404
from careflow.routers.protocols import get_visible_protocol
from careflow.scheduling import TaskMaterializer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["assignments"])

assigners = require_roles(PRACTICE_ADMIN, "provider", "nurse", SAAS_ADMIN)


@router.post(
    "/patients/{patient_id}/assignments",
    response_model=schemas.AssignmentResult,
    status_code=status.HTTP_201_CREATED,
)
async def assign_protocol(
    patient_id: int,
    payload: schemas.AssignmentCreate,
    current_user=Depends(assigners),
    materializer: TaskMaterializer = Depends(get_materializer),
    db: AsyncSession = Depends(get_db)
):
    """
    Assign a protocol to a patient and materialize its tasks.

    The anchor defaults to the patient's surgery date. A second active
    assignment of the same protocol is rejected.
    """
    patient = await get_patient_or_404(db, patient_id, current_user)
    protocol = await get_visible_protocol(db, payload.protocol_id, current_user)

    if not protocol.is_global and protocol.tenant_id != patient.tenant_id:
        raise HTTPException(status_code=404, detail="Protocol not found")
    if not protocol.is_active:
        raise HTTPException(status_code=400, detail="Protocol is not active")

    anchor_date = payload.anchor_date or patient.surgery_date
    if anchor_date is None:
        raise HTTPException(
            status_code=400,
            detail="Patient has no surgery date; an anchor_date is required"
        )

    existing_result = await db.execute(
        select(models.ProtocolAssignment).where(
            models.ProtocolAssignment.patient_id == patient.id,
            models.ProtocolAssignment.protocol_id == protocol.id,
            models.ProtocolAssignment.status == "active",
        )
    )
    existing = existing_result.scalars().first()
    if existing:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Protocol is already assigned to this patient (assignment {existing.id})"
        )

    assignment = models.ProtocolAssignment(
        tenant_id=patient.tenant_id,
        patient_id=patient.id,
        protocol_id=protocol.id,
        anchor_date=anchor_date,
        status="active",
        assigned_by=current_user.id,
    )
    db.add(assignment)
    # a concurrent request can pass the check above; the partial unique index decides
    await crud.commit_or_conflict(db, "Protocol is already assigned to this patient")

    crud.add_audit_log(
        db,
        tenant_id=patient.tenant_id,
        actor_id=current_user.id,
        action="protocol_assigned",
        resource_type="protocol_assignment",
        resource_id=assignment.id,
        details={
            "patient_id": patient.id,
            "protocol_id": protocol.id,
            "anchor_date": anchor_date.isoformat(),
        },
    )
    await db.commit()

    result = await materializer.materialize(
        db,
        tenant_id=patient.tenant_id,
        patient_id=patient.id,
        assignment_id=assignment.id,
        anchor_date=anchor_date,
        definitions=protocol.tasks,
    )
    # a failed definition rolls the session back, which expires loaded rows
    await db.refresh(assignment)

    return {
        "assignment": assignment,
        "tasks_created": result.created,
        "tasks_skipped": result.skipped,
        "failures": [{"definition_id": f.definition_id, "error": f.error} for f in result.failures],
        "warnings": result.warnings,
    }


@router.get("/patients/{patient_id}/assignments", response_model=List[schemas.AssignmentOut])
async def list_assignments(
    patient_id: int,
    current_user=Depends(require_roles(*STAFF_ROLES, SAAS_ADMIN)),
    db: AsyncSession = Depends(get_db)
):
    patient = await get_patient_or_404(db, patient_id, current_user)
    result = await db.execute(
        select(models.ProtocolAssignment)
        .where(models.ProtocolAssignment.patient_id == patient.id)
        .order_by(models.ProtocolAssignment.created_at.desc())
    )
    return result.scalars().all()


@router.post("/assignments/{assignment_id}/cancel", response_model=schemas.AssignmentOut)
async def cancel_assignment(
    assignment_id: int,
    current_user=Depends(assigners),
    db: AsyncSession = Depends(get_db)
):
    """
    Cancel an assignment. Its task rows are kept.
    """
    assignment = await db.get(models.ProtocolAssignment, assignment_id)
    ensure_tenant_access(assignment, current_user, detail="Assignment not found")

    if assignment.status != "active":
        raise HTTPException(status_code=409, detail=f"Assignment is already {assignment.status}")

    assignment.status = "cancelled"
    crud.add_audit_log(
        db,
        tenant_id=assignment.tenant_id,
        actor_id=current_user.id,
        action="protocol_assignment_cancelled",
        resource_type="protocol_assignment",
        resource_id=assignment.id,
        details={"patient_id": assignment.patient_id, "protocol_id": assignment.protocol_id},
    )
    await db.commit()
    await db.refresh(assignment)
    return assignment
