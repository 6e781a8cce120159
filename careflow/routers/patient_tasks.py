import logging
from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from careflow import crud, models, schemas
from careflow.auth import PATIENT, SAAS_ADMIN, STAFF_ROLES, get_current_user, require_roles
from careflow.database import get_db
from careflow.routers.patients import get_patient_or_404

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/patient-tasks", tags=["patient-tasks"])

# completed is terminal
ALLOWED_TRANSITIONS = {
    "pending": {"in_progress", "completed"},
    "in_progress": {"completed"},
    "completed": set(),
}


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


def _task_query(patient_id: int, start_date=None, end_date=None, status_filter=None):
    query = (
        select(models.PatientTaskInstance)
        .options(selectinload(models.PatientTaskInstance.definition))
        .where(models.PatientTaskInstance.patient_id == patient_id)
    )
    if start_date:
        query = query.where(models.PatientTaskInstance.scheduled_date >= start_date)
    if end_date:
        query = query.where(models.PatientTaskInstance.scheduled_date <= end_date)
    if status_filter:
        query = query.where(models.PatientTaskInstance.status == status_filter)
    return query.order_by(
        models.PatientTaskInstance.scheduled_date,
        models.PatientTaskInstance.id,
    )


@router.get("/", response_model=List[schemas.PatientTaskOut])
async def list_patient_tasks(
    patient_id: int = Query(...),
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    status_filter: Optional[schemas.TaskStatus] = Query(None, alias="status"),
    current_user=Depends(require_roles(*STAFF_ROLES, SAAS_ADMIN)),
    db: AsyncSession = Depends(get_db)
):
    """
    Tasks of one patient, optionally limited to a date range and status
    """
    patient = await get_patient_or_404(db, patient_id, current_user)
    result = await db.execute(_task_query(patient.id, start_date, end_date, status_filter))
    return result.scalars().all()


@router.get("/me", response_model=List[schemas.PatientTaskOut])
async def list_my_tasks(
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    status_filter: Optional[schemas.TaskStatus] = Query(None, alias="status"),
    current_user=Depends(require_roles(PATIENT)),
    db: AsyncSession = Depends(get_db)
):
    patient = await crud.get_patient_for_user(db, current_user)
    if not patient:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Patient record not found for current user"
        )
    result = await db.execute(_task_query(patient.id, start_date, end_date, status_filter))
    return result.scalars().all()


@router.patch("/{task_id}/status", response_model=schemas.PatientTaskOut)
async def update_task_status(
    task_id: int,
    payload: schemas.TaskStatusUpdate,
    current_user=Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Move a task along pending -> in_progress -> completed
    """
    result = await db.execute(
        select(models.PatientTaskInstance)
        .options(selectinload(models.PatientTaskInstance.definition))
        .where(models.PatientTaskInstance.id == task_id)
    )
    task = result.scalars().first()
    if not task:
        raise HTTPException(status_code=404, detail=f"Task with ID {task_id} not found")

    # patients may only touch their own tasks, staff only their tenant's
    if current_user.role == PATIENT:
        patient = await crud.get_patient_for_user(db, current_user)
        if not patient or patient.id != task.patient_id:
            raise HTTPException(status_code=404, detail=f"Task with ID {task_id} not found")
    elif current_user.role != SAAS_ADMIN and task.tenant_id != current_user.tenant_id:
        raise HTTPException(status_code=404, detail=f"Task with ID {task_id} not found")

    previous = task.status
    if not can_transition(previous, payload.status):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Cannot change task status from {previous} to {payload.status}"
        )

    now = datetime.utcnow()
    task.status = payload.status
    if payload.status == "in_progress":
        task.started_at = now
    elif payload.status == "completed":
        task.started_at = task.started_at or now
        task.completed_at = now

    if payload.completion_data:
        task.completion_data = {**(task.completion_data or {}), **payload.completion_data}
    if payload.conversation_id is not None:
        conversation = await db.get(models.Conversation, payload.conversation_id)
        if not conversation or conversation.patient_id != task.patient_id:
            raise HTTPException(status_code=404, detail="Conversation not found")
        task.conversation_id = payload.conversation_id
    if payload.chat_message_id is not None:
        message = await db.get(models.ChatMessage, payload.chat_message_id)
        conversation = await db.get(models.Conversation, message.conversation_id) if message else None
        if not conversation or conversation.patient_id != task.patient_id:
            raise HTTPException(status_code=404, detail="Message not found")
        task.chat_message_id = payload.chat_message_id
    task.updated_at = now

    crud.add_audit_log(
        db,
        tenant_id=task.tenant_id,
        actor_id=current_user.id,
        action="task_status_changed",
        resource_type="patient_task",
        resource_id=task.id,
        details={"from": previous, "to": task.status, "patient_id": task.patient_id},
    )
    await db.commit()

    logger.info(f"Task {task.id} for patient {task.patient_id}: {previous} -> {task.status}")
    return task
