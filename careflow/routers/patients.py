import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from careflow import crud, models, schemas
from careflow.auth import (
    PRACTICE_ADMIN, SAAS_ADMIN, STAFF_ROLES,
    acting_tenant_id, ensure_tenant_access, require_roles, require_tenant_id,
)
from careflow.database import get_db

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/patients", tags=["patients"])

staff_only = require_roles(*STAFF_ROLES, SAAS_ADMIN)


async def get_patient_or_404(db: AsyncSession, patient_id: int, current_user) -> models.Patient:
    patient = await db.get(models.Patient, patient_id)
    return ensure_tenant_access(patient, current_user, detail="Patient not found")


@router.post("/", response_model=schemas.PatientOut, status_code=status.HTTP_201_CREATED)
async def create_patient(
    payload: schemas.PatientCreate,
    request: Request,
    current_user=Depends(staff_only),
    db: AsyncSession = Depends(get_db)
):
    tenant_id = require_tenant_id(request, current_user)
    patient = await crud.create_patient(db, payload, tenant_id)
    logger.info(f"Patient {patient.id} created in tenant {tenant_id}")
    return patient


@router.get("/", response_model=List[schemas.PatientOut])
async def list_patients(
    request: Request,
    search: Optional[str] = Query(None, description="Match first name, last name or MRN"),
    status_filter: Optional[schemas.PatientStatus] = Query(None, alias="status"),
    current_user=Depends(staff_only),
    db: AsyncSession = Depends(get_db)
):
    query = select(models.Patient)

    tenant_id = acting_tenant_id(request, current_user)
    if tenant_id is not None:
        query = query.where(models.Patient.tenant_id == tenant_id)

    if search:
        pattern = f"%{search.strip()}%"
        query = query.where(
            or_(
                models.Patient.first_name.ilike(pattern),
                models.Patient.last_name.ilike(pattern),
                models.Patient.medical_record_number.ilike(pattern),
            )
        )
    if status_filter:
        query = query.where(models.Patient.status == status_filter)

    result = await db.execute(query.order_by(models.Patient.last_name, models.Patient.first_name))
    return result.scalars().all()


@router.get("/{patient_id}", response_model=schemas.PatientOut)
async def get_patient(
    patient_id: int,
    current_user=Depends(staff_only),
    db: AsyncSession = Depends(get_db)
):
    return await get_patient_or_404(db, patient_id, current_user)


@router.post(
    "/{patient_id}/providers",
    response_model=schemas.ProviderAssignmentOut,
    status_code=status.HTTP_201_CREATED,
)
async def assign_provider(
    patient_id: int,
    payload: schemas.ProviderAssignmentCreate,
    current_user=Depends(require_roles(PRACTICE_ADMIN, "provider", SAAS_ADMIN)),
    db: AsyncSession = Depends(get_db)
):
    patient = await get_patient_or_404(db, patient_id, current_user)

    provider = await db.get(models.Provider, payload.provider_id)
    if not provider or provider.tenant_id != patient.tenant_id:
        raise HTTPException(status_code=404, detail="Provider not found")

    assignment = models.ProviderPatientAssignment(
        provider_id=provider.id,
        patient_id=patient.id,
        tenant_id=patient.tenant_id,
        assignment_type=payload.assignment_type,
        status="active",
        assigned_by=current_user.id,
    )
    db.add(assignment)

    await crud.commit_or_conflict(db, "Provider is already assigned to this patient")

    result = await db.execute(
        select(models.ProviderPatientAssignment)
        .options(selectinload(models.ProviderPatientAssignment.provider))
        .where(models.ProviderPatientAssignment.id == assignment.id)
    )
    return result.scalars().first()


@router.get("/{patient_id}/providers", response_model=List[schemas.ProviderAssignmentOut])
async def list_patient_providers(
    patient_id: int,
    current_user=Depends(staff_only),
    db: AsyncSession = Depends(get_db)
):
    patient = await get_patient_or_404(db, patient_id, current_user)
    result = await db.execute(
        select(models.ProviderPatientAssignment)
        .options(selectinload(models.ProviderPatientAssignment.provider))
        .where(models.ProviderPatientAssignment.patient_id == patient.id)
    )
    return result.scalars().all()
