from datetime import datetime, timezone
from enum import Enum
import uuid

from sqlalchemy import (
    String,
    DateTime,
    ForeignKey,
    Integer,
    Text,
    JSON,
    CheckConstraint,
    UniqueConstraint,
    Index,
)
from sqlalchemy.orm import relationship, Mapped, mapped_column

from medchat.db import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    PATIENT = "patient"
    AI = "ai"
    ASSISTANT = "assistant"
    DOCTOR = "doctor"


class MemorySource(str, Enum):
    PATIENT = "patient"
    DOCTOR = "doctor"
    AI = "ai"
    IMPORT = "import"


class ConsultationStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    ENDED = "ended"


class ConsultationTrigger(str, Enum):
    AI = "ai"
    MANUAL = "manual"


ADMIN_CATEGORY = "admin"


class Patient(Base):
    __tablename__ = "patients"

    id: Mapped[str] = mapped_column(
        String, primary_key=True, default=generate_uuid
    )
    name: Mapped[str] = mapped_column(String, nullable=False)
    age: Mapped[int | None] = mapped_column(Integer, nullable=True)
    gender: Mapped[str | None] = mapped_column(String, nullable=True)
    condition: Mapped[str | None] = mapped_column(Text, nullable=True)
    persona: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    messages: Mapped[list["ChatMessage"]] = relationship(
        "ChatMessage",
        back_populates="patient",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    memories: Mapped[list["Memory"]] = relationship(
        "Memory",
        back_populates="patient",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    ai_state: Mapped["AiInquiryState"] = relationship(
        "AiInquiryState",
        back_populates="patient",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    consultations: Mapped[list["DoctorConsultation"]] = relationship(
        "DoctorConsultation",
        back_populates="patient",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    # Insertion id is the canonical conversation order
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    patient_id: Mapped[str] = mapped_column(
        String, ForeignKey("patients.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role: Mapped[str] = mapped_column(String, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    __table_args__ = (
        CheckConstraint(
            "role IN ('patient', 'ai', 'assistant', 'doctor')",
            name="ck_chat_messages_role_valid",
        ),
    )

    patient: Mapped[Patient] = relationship("Patient", back_populates="messages")


class Memory(Base):
    """
    Short factual statement about a patient, optionally embedded.
    Embeddings are stored as JSON arrays of floats.
    """
    __tablename__ = "memories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    patient_id: Mapped[str] = mapped_column(
        String, ForeignKey("patients.id", ondelete="CASCADE"), nullable=False, index=True
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    embedding: Mapped[list[float] | None] = mapped_column(JSON, nullable=True)
    source: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    __table_args__ = (
        UniqueConstraint(
            "patient_id", "source", "content", name="uq_memories_patient_source_content"
        ),
    )

    patient: Mapped[Patient] = relationship("Patient", back_populates="memories")


class AiInquiryState(Base):
    __tablename__ = "patient_ai_state"

    patient_id: Mapped[str] = mapped_column(
        String,
        ForeignKey("patients.id", ondelete="CASCADE"),
        primary_key=True,
    )
    medical_inquiry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    patient: Mapped[Patient] = relationship("Patient", back_populates="ai_state")


class DoctorConsultation(Base):
    __tablename__ = "doctor_consultations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    patient_id: Mapped[str] = mapped_column(
        String, ForeignKey("patients.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String, nullable=False)
    fee_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    token: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    trigger: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'paid', 'ended')",
            name="ck_doctor_consultations_status_valid",
        ),
        CheckConstraint(
            "trigger IN ('ai', 'manual')",
            name="ck_doctor_consultations_trigger_valid",
        ),
        Index("idx_doctor_consultations_status", "status"),
    )

    patient: Mapped[Patient] = relationship("Patient", back_populates="consultations")


class KnowledgeItem(Base):
    __tablename__ = "knowledge_base"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    embedding: Mapped[list[float] | None] = mapped_column(JSON, nullable=True)
    category: Mapped[str] = mapped_column(String, nullable=False, default="general")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
