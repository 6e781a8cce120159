from datetime import datetime
from sqlalchemy import (
    Column, DateTime, String, Date, Integer, Boolean,
    ForeignKey, Text, JSON, UniqueConstraint, Index, text
)
from sqlalchemy.orm import relationship
from careflow.database import Base


# Timestamp Mixin
class TimestampMixin:
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# Tenants (practice / hospital / clinic)
class Tenant(Base, TimestampMixin):
    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    tenant_type = Column(String(20), nullable=False, default="practice")
    status = Column(String(20), nullable=False, default="active")
    timezone = Column(String(64), nullable=False, default="UTC")
    contact_email = Column(String(200))
    settings = Column(JSON, default=dict)

    users = relationship("User", back_populates="tenant")
    providers = relationship("Provider", back_populates="tenant")
    patients = relationship("Patient", back_populates="tenant")


# Users
class User(Base, TimestampMixin):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(200), unique=True, nullable=False)
    hashed_password = Column(String(200), nullable=False)
    full_name = Column(String(200))
    role = Column(String(50), nullable=False)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=True)
    is_active = Column(Boolean, default=True)

    tenant = relationship("Tenant", back_populates="users")


# Providers (surgeons, nurses, care coordinators)
class Provider(Base, TimestampMixin):
    __tablename__ = "providers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    first_name = Column(String(100))
    last_name = Column(String(100))
    specialty = Column(String(100))
    department = Column(String(100))

    user = relationship("User")
    tenant = relationship("Tenant", back_populates="providers")
    assignments = relationship("ProviderPatientAssignment", back_populates="provider")


# Patients
class Patient(Base, TimestampMixin):
    __tablename__ = "patients"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    medical_record_number = Column(String(100))
    surgery_date = Column(Date, nullable=True)
    surgery_type = Column(String(100))
    current_recovery_day = Column(Integer, nullable=True)
    status = Column(String(20), default="active")

    user = relationship("User")
    tenant = relationship("Tenant", back_populates="patients")
    provider_assignments = relationship("ProviderPatientAssignment", back_populates="patient")
    protocol_assignments = relationship("ProtocolAssignment", back_populates="patient")


class ProviderPatientAssignment(Base, TimestampMixin):
    __tablename__ = "provider_patient_assignments"
    __table_args__ = (
        UniqueConstraint("provider_id", "patient_id", name="uq_provider_patient"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider_id = Column(Integer, ForeignKey("providers.id", ondelete="CASCADE"), nullable=False)
    patient_id = Column(Integer, ForeignKey("patients.id", ondelete="CASCADE"), nullable=False)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False)
    assignment_type = Column(String(20), default="primary")  # primary, secondary, on_call, temporary
    status = Column(String(20), default="active")
    assigned_by = Column(Integer, ForeignKey("users.id"), nullable=True)

    provider = relationship("Provider", back_populates="assignments")
    patient = relationship("Patient", back_populates="provider_assignments")


# Recovery protocols
class Protocol(Base, TimestampMixin):
    __tablename__ = "protocols"

    id = Column(Integer, primary_key=True, autoincrement=True)
    # NULL tenant_id means a global template
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=True, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text)
    surgery_type = Column(String(100))
    is_active = Column(Boolean, default=True)
    is_global = Column(Boolean, default=False)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)

    tasks = relationship(
        "ProtocolTaskDefinition",
        back_populates="protocol",
        cascade="all, delete-orphan",
        order_by="ProtocolTaskDefinition.day_offset",
    )


class ProtocolTaskDefinition(Base, TimestampMixin):
    __tablename__ = "protocol_tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    protocol_id = Column(Integer, ForeignKey("protocols.id", ondelete="CASCADE"), nullable=False)
    title = Column(String(200), nullable=False)
    description = Column(Text)
    task_type = Column(String(20), nullable=False)  # form, exercise, video, message
    day_offset = Column(Integer, nullable=False, default=0)
    recurrence_kind = Column(String(20), nullable=False, default="none")
    recurrence_interval = Column(Integer, nullable=True)
    recurrence_end_day = Column(Integer, nullable=True)
    time_of_day = Column(String(10), nullable=True)
    is_required = Column(Boolean, default=True)
    content = Column(JSON, default=dict)

    protocol = relationship("Protocol", back_populates="tasks")


class ProtocolAssignment(Base, TimestampMixin):
    __tablename__ = "protocol_assignments"
    __table_args__ = (
        # at most one active assignment of a protocol per patient
        Index(
            "uq_active_protocol_assignment",
            "patient_id", "protocol_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id", ondelete="CASCADE"), nullable=False)
    protocol_id = Column(Integer, ForeignKey("protocols.id"), nullable=False)
    anchor_date = Column(Date, nullable=False)
    status = Column(String(20), default="active")  # active, completed, cancelled
    assigned_by = Column(Integer, ForeignKey("users.id"), nullable=True)

    patient = relationship("Patient", back_populates="protocol_assignments")
    protocol = relationship("Protocol")
    tasks = relationship("PatientTaskInstance", back_populates="assignment")


class PatientTaskInstance(Base, TimestampMixin):
    __tablename__ = "patient_tasks"
    __table_args__ = (
        UniqueConstraint(
            "patient_id", "task_definition_id", "scheduled_date",
            name="uq_patient_task_occurrence",
        ),
        Index("ix_patient_tasks_patient_date", "patient_id", "scheduled_date"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False)
    patient_id = Column(Integer, ForeignKey("patients.id", ondelete="CASCADE"), nullable=False)
    task_definition_id = Column(Integer, ForeignKey("protocol_tasks.id"), nullable=False)
    assignment_id = Column(Integer, ForeignKey("protocol_assignments.id"), nullable=False)
    scheduled_date = Column(Date, nullable=False)
    status = Column(String(20), default="pending")  # pending, in_progress, completed
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    completion_data = Column(JSON, default=dict)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=True)
    chat_message_id = Column(Integer, ForeignKey("chat_messages.id"), nullable=True)

    definition = relationship("ProtocolTaskDefinition")
    assignment = relationship("ProtocolAssignment", back_populates="tasks")


# Chat
class Conversation(Base, TimestampMixin):
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    provider_id = Column(Integer, ForeignKey("providers.id"), nullable=True)
    conversation_type = Column(String(30), default="patient_support")
    status = Column(String(20), default="active")  # active, closed, archived
    title = Column(String(200))

    patient = relationship("Patient")
    provider = relationship("Provider")
    participants = relationship(
        "ConversationParticipant",
        back_populates="conversation",
        cascade="all, delete-orphan"
    )
    messages = relationship(
        "ChatMessage",
        back_populates="conversation",
        cascade="all, delete-orphan"
    )


class ConversationParticipant(Base):
    __tablename__ = "conversation_participants"
    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_conversation_participant"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    role = Column(String(20), nullable=False)  # provider, nurse, patient
    joined_at = Column(DateTime, default=datetime.utcnow)

    conversation = relationship("Conversation", back_populates="participants")
    user = relationship("User")


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    sender_type = Column(String(20), nullable=False)
    message_type = Column(String(30), default="text")
    content = Column(Text, nullable=False)
    priority = Column(String(20), default="normal")
    # "metadata" is reserved on declarative classes
    message_metadata = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow)
    delivered_at = Column(DateTime, nullable=True)
    read_at = Column(DateTime, nullable=True)
    is_edited = Column(Boolean, default=False)
    edited_at = Column(DateTime, nullable=True)

    conversation = relationship("Conversation", back_populates="messages")
    sender = relationship("User", foreign_keys=[sender_id])
    receipts = relationship(
        "MessageReadReceipt",
        back_populates="message",
        cascade="all, delete-orphan"
    )


class MessageReadReceipt(Base):
    __tablename__ = "message_read_receipts"
    __table_args__ = (
        UniqueConstraint("message_id", "user_id", name="uq_message_read_receipt"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(Integer, ForeignKey("chat_messages.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    read_at = Column(DateTime, default=datetime.utcnow)

    message = relationship("ChatMessage", back_populates="receipts")


class ConversationUserStatus(Base):
    __tablename__ = "conversation_user_status"
    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_conversation_user_status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    is_typing = Column(Boolean, default=False)
    online = Column(Boolean, default=False)
    last_seen = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=True, index=True)
    actor_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    action = Column(String(50), nullable=False)
    resource_type = Column(String(50), nullable=False)
    resource_id = Column(String(50))
    details = Column(JSON, default=dict)
    timestamp = Column(DateTime, default=datetime.utcnow)

    actor = relationship("User")
