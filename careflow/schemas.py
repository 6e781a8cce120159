from datetime import date, datetime
from typing import Dict, List, Literal, Optional, Any

import pytz
from pydantic import BaseModel, EmailStr, Field, field_validator

from careflow.scheduling.recurrence import RecurrenceRule

TenantType = Literal["practice", "hospital", "clinic"]
TenantStatus = Literal["active", "suspended"]
StaffRole = Literal["provider", "nurse"]
PatientStatus = Literal["active", "discharged", "archived"]
ProviderAssignmentType = Literal["primary", "secondary", "on_call", "temporary"]
TaskType = Literal["form", "exercise", "video", "message"]
TaskStatus = Literal["pending", "in_progress", "completed"]
AssignmentStatus = Literal["active", "completed", "cancelled"]
ConversationType = Literal["patient_support", "medical_consultation", "recovery_coaching"]
ConversationStatus = Literal["active", "closed", "archived"]
MessageType = Literal["text", "form", "video", "task_completion", "system_notification"]
MessagePriority = Literal["normal", "urgent", "emergency"]


# ---------------- Auth / users ----------------

class LoginRequest(BaseModel):
    username: str
    password: str


class UserOut(BaseModel):
    id: int
    email: str
    full_name: Optional[str] = None
    role: str
    tenant_id: Optional[int] = None
    is_active: bool = True

    class Config:
        from_attributes = True


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserOut


# ---------------- Tenants ----------------

class TenantBase(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    tenant_type: TenantType = "practice"
    timezone: str = "UTC"
    contact_email: Optional[EmailStr] = None
    settings: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("timezone")
    @classmethod
    def known_timezone(cls, value):
        if value not in pytz.all_timezones_set:
            raise ValueError(f"Unknown timezone '{value}'")
        return value


class TenantCreate(TenantBase):
    admin_email: EmailStr
    admin_full_name: Optional[str] = None
    # generated when omitted and returned once in the response
    admin_password: Optional[str] = Field(default=None, min_length=8)

    class Config:
        extra = "forbid"


class TenantUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    tenant_type: Optional[TenantType] = None
    timezone: Optional[str] = None
    contact_email: Optional[EmailStr] = None
    settings: Optional[Dict[str, Any]] = None

    class Config:
        extra = "forbid"

    @field_validator("timezone")
    @classmethod
    def known_timezone(cls, value):
        if value is not None and value not in pytz.all_timezones_set:
            raise ValueError(f"Unknown timezone '{value}'")
        return value


class TenantStatusUpdate(BaseModel):
    status: TenantStatus
    reason: Optional[str] = None

    class Config:
        extra = "forbid"


class TenantOut(TenantBase):
    id: int
    status: str
    contact_email: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TenantCreated(BaseModel):
    tenant: TenantOut
    admin: UserOut
    temporary_password: Optional[str] = None


class TenantStats(BaseModel):
    tenant_id: int
    patients: int
    providers: int
    protocols: int
    active_assignments: int


# ---------------- Providers ----------------

class ProviderCreate(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8)
    first_name: str
    last_name: str
    role: StaffRole = "provider"
    specialty: Optional[str] = None
    department: Optional[str] = None

    class Config:
        extra = "forbid"


class ProviderOut(BaseModel):
    id: int
    user_id: int
    tenant_id: int
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    specialty: Optional[str] = None
    department: Optional[str] = None

    class Config:
        from_attributes = True


# ---------------- Patients ----------------

class PatientCreate(BaseModel):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    medical_record_number: Optional[str] = None
    surgery_date: Optional[date] = None
    surgery_type: Optional[str] = None
    # a patient login is created when both are supplied
    email: Optional[EmailStr] = None
    password: Optional[str] = Field(default=None, min_length=8)

    class Config:
        extra = "forbid"


class PatientOut(BaseModel):
    id: int
    tenant_id: int
    user_id: Optional[int] = None
    first_name: str
    last_name: str
    medical_record_number: Optional[str] = None
    surgery_date: Optional[date] = None
    surgery_type: Optional[str] = None
    current_recovery_day: Optional[int] = None
    status: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ProviderAssignmentCreate(BaseModel):
    provider_id: int
    assignment_type: ProviderAssignmentType = "primary"

    class Config:
        extra = "forbid"


class ProviderAssignmentOut(BaseModel):
    id: int
    provider_id: int
    patient_id: int
    tenant_id: int
    assignment_type: str
    status: str
    provider: Optional[ProviderOut] = None

    class Config:
        from_attributes = True


# ---------------- Protocols ----------------

class TaskDefinitionCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    task_type: TaskType
    day_offset: int = 0
    recurrence: RecurrenceRule = Field(default_factory=RecurrenceRule)
    time_of_day: Optional[str] = Field(default=None, pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    is_required: bool = True
    content: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        extra = "forbid"


class TaskDefinitionOut(BaseModel):
    id: int
    protocol_id: int
    title: str
    description: Optional[str] = None
    task_type: str
    day_offset: int
    recurrence_kind: str
    recurrence_interval: Optional[int] = None
    recurrence_end_day: Optional[int] = None
    time_of_day: Optional[str] = None
    is_required: bool = True
    content: Optional[Dict[str, Any]] = None

    class Config:
        from_attributes = True


class ProtocolCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    surgery_type: Optional[str] = None
    tasks: List[TaskDefinitionCreate] = Field(default_factory=list)

    class Config:
        extra = "forbid"


class ProtocolOut(BaseModel):
    id: int
    tenant_id: Optional[int] = None
    name: str
    description: Optional[str] = None
    surgery_type: Optional[str] = None
    is_active: bool = True
    is_global: bool = False
    created_at: Optional[datetime] = None
    tasks: List[TaskDefinitionOut] = Field(default_factory=list)

    class Config:
        from_attributes = True


class TimelineEntry(BaseModel):
    task_definition_id: int
    title: str
    task_type: str
    day_offset: int
    dates: List[date]
    warnings: List[str] = Field(default_factory=list)


class TimelinePreview(BaseModel):
    protocol_id: int
    anchor_date: date
    entries: List[TimelineEntry]


# ---------------- Assignments ----------------

class AssignmentCreate(BaseModel):
    protocol_id: int
    # defaults to the patient's surgery date
    anchor_date: Optional[date] = None

    class Config:
        extra = "forbid"


class AssignmentOut(BaseModel):
    id: int
    tenant_id: int
    patient_id: int
    protocol_id: int
    anchor_date: date
    status: str
    assigned_by: Optional[int] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class MaterializationFailureOut(BaseModel):
    definition_id: int
    error: str


class AssignmentResult(BaseModel):
    assignment: AssignmentOut
    tasks_created: int
    tasks_skipped: int
    failures: List[MaterializationFailureOut] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


# ---------------- Patient tasks ----------------

class PatientTaskOut(BaseModel):
    id: int
    tenant_id: int
    patient_id: int
    task_definition_id: int
    assignment_id: int
    scheduled_date: date
    status: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    completion_data: Optional[Dict[str, Any]] = None
    conversation_id: Optional[int] = None
    chat_message_id: Optional[int] = None
    definition: Optional[TaskDefinitionOut] = None

    class Config:
        from_attributes = True


class TaskStatusUpdate(BaseModel):
    status: TaskStatus
    completion_data: Optional[Dict[str, Any]] = None
    conversation_id: Optional[int] = None
    chat_message_id: Optional[int] = None

    class Config:
        extra = "forbid"


# ---------------- Conversations ----------------

class ConversationCreate(BaseModel):
    patient_id: int
    provider_id: Optional[int] = None
    conversation_type: ConversationType = "patient_support"
    title: Optional[str] = None

    class Config:
        extra = "forbid"


class ParticipantOut(BaseModel):
    user_id: int
    role: str
    joined_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ConversationOut(BaseModel):
    id: int
    tenant_id: int
    patient_id: int
    provider_id: Optional[int] = None
    conversation_type: str
    status: str
    title: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    participants: List[ParticipantOut] = Field(default_factory=list)

    class Config:
        from_attributes = True


class ConversationStatusUpdate(BaseModel):
    status: ConversationStatus

    class Config:
        extra = "forbid"


class MessageCreate(BaseModel):
    content: str = Field(min_length=1)
    message_type: MessageType = "text"
    priority: MessagePriority = "normal"
    metadata: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        extra = "forbid"


class MessageUpdate(BaseModel):
    content: str = Field(min_length=1)

    class Config:
        extra = "forbid"


class MessageOut(BaseModel):
    id: int
    conversation_id: int
    sender_id: int
    sender_type: str
    message_type: str
    content: str
    priority: str
    metadata: Optional[Dict[str, Any]] = Field(default=None, validation_alias="message_metadata")
    created_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    is_edited: bool = False
    edited_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ReadResult(BaseModel):
    conversation_id: int
    marked: int
    read_at: datetime


class TypingUpdate(BaseModel):
    is_typing: bool

    class Config:
        extra = "forbid"
