from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import delete, exists, select
from sqlalchemy.orm import aliased

from medchat.db import Database
from medchat.errors import PatientNotFoundError
from medchat.intake.persona import refresh_patient_persona
from medchat.intake.state import set_inquiry_count_at_least
from medchat.llm import LLMClient
from medchat.models import (
    ChatMessage,
    ConsultationStatus,
    DoctorConsultation,
    Memory,
    MemorySource,
    Patient,
    Role,
)
from medchat.rag.embeddings import EmbeddingClient, safe_embed
from medchat.rag.indexer import store_facts
from medchat.rag.retriever import RetrievedItem, not_legacy_dialogue, related_items
from medchat.services.chat import insert_chat_message, load_chat_history


logger = logging.getLogger(__name__)

INITIAL_PERSONA = "新创建患者，暂无详细画像。"


def build_assistant_intro(doctor_name: str) -> str:
    return "\n".join(
        [
            f"您好，我是{doctor_name}的助理。我会先帮您把情况记录清楚，方便医生更快了解。",
            "您现在最主要哪里不舒服？",
            "从什么时候开始的？",
            "有没有发烧/咳嗽/疼痛等情况？",
        ]
    )


@dataclass
class PatientWithConsultStatus:
    patient: Patient
    has_active_consultation: bool


@dataclass
class PatientChatSummary:
    patient: Patient
    last_content: Optional[str]
    last_created_at: Optional[datetime]


@dataclass
class MessageAnalysis:
    related_memories: List[RetrievedItem]
    related_knowledge: List[RetrievedItem]


def _active_paid_exists():
    return (
        exists()
        .where(DoctorConsultation.patient_id == Patient.id)
        .where(DoctorConsultation.status == ConsultationStatus.PAID.value)
        .where(DoctorConsultation.ended_at.is_(None))
    )


class PatientService:
    """
    Service that coordinates:
      - creating, updating and deleting Patient rows
      - the assistant intro message that opens every conversation
      - messages sent by staff (assistant) and the doctor
      - importing outside records into memories and the persona
    """

    def __init__(
        self,
        database: Database,
        llm_client: LLMClient,
        embedding_client: EmbeddingClient,
        doctor_name: str,
    ):
        self.db = database
        self.llm = llm_client
        self.embedder = embedding_client
        self.doctor_name = doctor_name

    # ------------------------------------------------------------------
    # Patients
    # ------------------------------------------------------------------

    def create_patient(
        self,
        name: str,
        age: Optional[int] = None,
        gender: Optional[str] = None,
        condition: Optional[str] = None,
        send_intro: bool = True,
    ) -> Patient:
        with self.db.session() as session:
            patient = Patient(
                name=name,
                age=age,
                gender=gender,
                condition=condition,
                persona=INITIAL_PERSONA,
            )
            session.add(patient)
            session.flush()  # to get patient.id
            patient_id = patient.id

        if send_intro:
            self.ensure_intro_message(patient_id)
        logger.info("Created patient %s", patient_id)
        return self.get_patient(patient_id)

    def get_patient(self, patient_id: str) -> Patient:
        with self.db.session() as session:
            patient = session.get(Patient, patient_id)
            if patient is None:
                raise PatientNotFoundError(patient_id)
            return patient

    def get_patient_with_consult_status(self, patient_id: str) -> PatientWithConsultStatus:
        stmt = select(Patient, _active_paid_exists().label("active")).where(Patient.id == patient_id)
        with self.db.session() as session:
            row = session.execute(stmt).first()
        if row is None:
            raise PatientNotFoundError(patient_id)
        return PatientWithConsultStatus(patient=row[0], has_active_consultation=bool(row[1]))

    def list_patients(self) -> List[PatientWithConsultStatus]:
        stmt = (
            select(Patient, _active_paid_exists().label("active"))
            .order_by(Patient.created_at.desc())
        )
        with self.db.session() as session:
            return [
                PatientWithConsultStatus(patient=p, has_active_consultation=bool(active))
                for p, active in session.execute(stmt).all()
            ]

    def chat_list(self) -> List[PatientChatSummary]:
        """
        Every patient with a preview of their latest message, newest
        patients first.
        """
        latest = aliased(ChatMessage)
        last_message_id = (
            select(latest.id)
            .where(latest.patient_id == Patient.id)
            .order_by(latest.id.desc())
            .limit(1)
            .correlate(Patient)
            .scalar_subquery()
        )
        stmt = (
            select(Patient, ChatMessage.content, ChatMessage.created_at)
            .outerjoin(ChatMessage, ChatMessage.id == last_message_id)
            .order_by(Patient.created_at.desc())
        )
        with self.db.session() as session:
            return [
                PatientChatSummary(patient=p, last_content=content, last_created_at=created_at)
                for p, content, created_at in session.execute(stmt).all()
            ]

    def update_patient(
        self,
        patient_id: str,
        name: str,
        age: Optional[int] = None,
        gender: Optional[str] = None,
        condition: Optional[str] = None,
    ) -> Patient:
        with self.db.session() as session:
            patient = session.get(Patient, patient_id)
            if patient is None:
                raise PatientNotFoundError(patient_id)
            patient.name = name
            patient.age = age
            patient.gender = gender
            patient.condition = condition
            return patient

    def delete_patient(self, patient_id: str) -> None:
        """
        Delete a patient; the database cascades to every child row.
        """
        with self.db.session() as session:
            session.execute(delete(Patient).where(Patient.id == patient_id))

    # ------------------------------------------------------------------
    # Conversation
    # ------------------------------------------------------------------

    def ensure_intro_message(self, patient_id: str) -> None:
        """
        Open the conversation with the assistant intro. The intro asks the
        first intake questions, so it counts as one inquiry.
        """
        with self.db.session() as session:
            if session.get(Patient, patient_id) is None:
                return
            stmt = (
                select(ChatMessage.id)
                .where(ChatMessage.patient_id == patient_id)
                .where(ChatMessage.role == Role.AI.value)
                .limit(1)
            )
            if session.scalars(stmt).first() is not None:
                return
            insert_chat_message(session, patient_id, Role.AI, build_assistant_intro(self.doctor_name))
            set_inquiry_count_at_least(session, patient_id, 1)

    def chat_history(self, patient_id: str, ensure_intro: bool = True) -> List[ChatMessage]:
        with self.db.session() as session:
            if session.get(Patient, patient_id) is None:
                return []
        if ensure_intro:
            self.ensure_intro_message(patient_id)
        with self.db.session() as session:
            return load_chat_history(session, patient_id)

    def send_assistant_message(self, patient_id: str, message: str) -> int:
        """
        A staff member replying as the doctor's assistant.
        Its facts are remembered as AI-sourced.
        """
        return self._send(patient_id, Role.ASSISTANT, MemorySource.AI, message)

    def send_doctor_message(self, patient_id: str, message: str) -> int:
        return self._send(patient_id, Role.DOCTOR, MemorySource.DOCTOR, message)

    def _send(self, patient_id: str, role: Role, source: MemorySource, message: str) -> int:
        with self.db.session() as session:
            if session.get(Patient, patient_id) is None:
                raise PatientNotFoundError(patient_id)
            message_id = insert_chat_message(session, patient_id, role, message)
        store_facts(self.db, self.llm, self.embedder, patient_id, source, message)
        return message_id

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------

    def import_patient_data(self, patient_id: str, text_data: str) -> str:
        """
        Store facts from imported records and fold them into the persona.

        Returns: the persona after the update.
        """
        self.get_patient(patient_id)
        logger.info("Importing records for patient %s", patient_id)

        store_facts(self.db, self.llm, self.embedder, patient_id, MemorySource.IMPORT, text_data)
        outcome = refresh_patient_persona(self.db, self.llm, patient_id, text_data)
        return outcome.value

    def list_memories(self, patient_id: str, limit: int = 50) -> List[Memory]:
        stmt = (
            select(Memory)
            .where(Memory.patient_id == patient_id)
            .where(not_legacy_dialogue())
            .order_by(Memory.created_at.desc(), Memory.id.desc())
            .limit(limit)
        )
        with self.db.session() as session:
            return list(session.scalars(stmt))

    def message_analysis(self, patient_id: str, message_id: int) -> Optional[MessageAnalysis]:
        """
        Memories and knowledge entries closest to one stored message.
        None when the message is unknown or cannot be embedded.
        """
        with self.db.session() as session:
            message = session.get(ChatMessage, message_id)
            if message is None or message.patient_id != patient_id:
                return None
            content = message.content

        query_vec = safe_embed(self.embedder, content).value
        if query_vec is None:
            return None

        with self.db.session() as session:
            memories, knowledge = related_items(session, patient_id, query_vec, k=3)
        return MessageAnalysis(related_memories=memories, related_knowledge=knowledge)
