from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import quote

from sqlalchemy import select
from sqlalchemy.orm import Session

from medchat.config import Settings
from medchat.db import Database
from medchat.llm import LLMClient
from medchat.models import (
    ConsultationStatus,
    ConsultationTrigger,
    DoctorConsultation,
    MemorySource,
    Patient,
    Role,
    utc_now,
)
from medchat.rag.embeddings import EmbeddingClient
from medchat.rag.indexer import store_facts
from medchat.services.chat import insert_chat_message


logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (ConsultationStatus.PENDING.value, ConsultationStatus.PAID.value)

PAYMENT_SUCCESS_MESSAGE = "支付成功，已为您接入医生会诊。"

CONSULTATION_ENDED_MESSAGE = "\n".join(
    [
        "本次医生会诊已结束，感谢您的信任。",
        "如需继续咨询或补充材料，可再次发起医生会诊。",
        "",
        "风险提示：本消息为 AI 自动生成，仅供健康科普与沟通参考，不能替代线下面诊与检查。",
        "如出现症状加重、持续高热不退、呼吸困难、胸痛、意识异常、严重过敏等紧急情况，请立即就近就医或拨打 120。",
    ]
)


@dataclass
class ConsultationTicket:
    consultation_id: int
    token: str
    pay_link: str
    status: ConsultationStatus


@dataclass
class RedeemResult:
    success: bool
    reason: Optional[str] = None  # "not_found" | "ended"
    patient_id: Optional[str] = None
    already_paid: bool = False


@dataclass
class EndResult:
    success: bool


def generate_token() -> str:
    return secrets.token_urlsafe(16)


def active_consultation(session: Session, patient_id: str) -> Optional[DoctorConsultation]:
    """
    Latest pending or paid consultation for the patient.
    """
    stmt = (
        select(DoctorConsultation)
        .where(DoctorConsultation.patient_id == patient_id)
        .where(DoctorConsultation.status.in_(ACTIVE_STATUSES))
        .order_by(DoctorConsultation.id.desc())
        .limit(1)
    )
    return session.scalars(stmt).first()


def has_active_paid_consultation(session: Session, patient_id: str) -> bool:
    stmt = (
        select(DoctorConsultation.id)
        .where(DoctorConsultation.patient_id == patient_id)
        .where(DoctorConsultation.status == ConsultationStatus.PAID.value)
        .where(DoctorConsultation.ended_at.is_(None))
        .limit(1)
    )
    return session.scalars(stmt).first() is not None


class ConsultationService:
    """
    Lifecycle of a doctor consultation:

        (none) --request--> pending --redeem(token)--> paid --end--> ended

    A patient has at most one pending/paid consultation; requesting again
    returns it unchanged.
    """

    def __init__(
        self,
        database: Database,
        settings: Settings,
        llm_client: LLMClient,
        embedding_client: EmbeddingClient,
    ):
        self.db = database
        self.settings = settings
        self.llm = llm_client
        self.embedder = embedding_client

    def pay_link(self, token: str) -> str:
        return f"{self.settings.pay_link_prefix.rstrip('/')}/{quote(token, safe='')}"

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def request(
        self,
        patient_id: str,
        trigger: ConsultationTrigger = ConsultationTrigger.MANUAL,
    ) -> ConsultationTicket:
        with self.db.session() as session:
            existing = active_consultation(session, patient_id)
            if existing is not None:
                return ConsultationTicket(
                    consultation_id=existing.id,
                    token=existing.token,
                    pay_link=self.pay_link(existing.token),
                    status=ConsultationStatus(existing.status),
                )

            consultation = DoctorConsultation(
                patient_id=patient_id,
                status=ConsultationStatus.PENDING.value,
                fee_cents=self.settings.consultation_fee_cents,
                token=generate_token(),
                trigger=trigger.value,
                created_at=utc_now(),
            )
            session.add(consultation)
            session.flush()  # to get consultation.id

            logger.info(
                "Consultation %s requested for patient %s (trigger=%s)",
                consultation.id, patient_id, trigger.value,
            )
            return ConsultationTicket(
                consultation_id=consultation.id,
                token=consultation.token,
                pay_link=self.pay_link(consultation.token),
                status=ConsultationStatus.PENDING,
            )

    def redeem(self, token: str) -> RedeemResult:
        """
        Mark the consultation behind a pay token as paid.
        Repeating a successful redemption is harmless.
        """
        with self.db.session() as session:
            stmt = select(DoctorConsultation).where(DoctorConsultation.token == token).limit(1)
            consultation = session.scalars(stmt).first()
            if consultation is None:
                return RedeemResult(success=False, reason="not_found")

            if session.get(Patient, consultation.patient_id) is None:
                session.delete(consultation)
                return RedeemResult(success=False, reason="not_found")

            patient_id = consultation.patient_id
            if consultation.status == ConsultationStatus.PAID.value:
                return RedeemResult(success=True, patient_id=patient_id, already_paid=True)
            if consultation.status == ConsultationStatus.ENDED.value:
                return RedeemResult(success=False, reason="ended", patient_id=patient_id)

            consultation.status = ConsultationStatus.PAID.value
            consultation.paid_at = utc_now()
            insert_chat_message(session, patient_id, Role.AI, PAYMENT_SUCCESS_MESSAGE)
            logger.info("Consultation %s paid", consultation.id)

        store_facts(self.db, self.llm, self.embedder, patient_id, MemorySource.AI, "医生会诊已支付")
        return RedeemResult(success=True, patient_id=patient_id, already_paid=False)

    def end(self, consultation_id: int) -> EndResult:
        with self.db.session() as session:
            consultation = session.get(DoctorConsultation, consultation_id)
            if consultation is None:
                return EndResult(success=False)
            if consultation.status == ConsultationStatus.ENDED.value:
                return EndResult(success=True)

            consultation.status = ConsultationStatus.ENDED.value
            consultation.ended_at = utc_now()
            patient_id = consultation.patient_id
            insert_chat_message(session, patient_id, Role.AI, CONSULTATION_ENDED_MESSAGE)
            logger.info("Consultation %s ended", consultation_id)

        store_facts(self.db, self.llm, self.embedder, patient_id, MemorySource.AI, "医生会诊结束")
        return EndResult(success=True)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, consultation_id: int) -> Optional[DoctorConsultation]:
        with self.db.session() as session:
            return session.get(DoctorConsultation, consultation_id)

    def active_for_patient(self, patient_id: str) -> Optional[DoctorConsultation]:
        with self.db.session() as session:
            return active_consultation(session, patient_id)

    def has_active_paid(self, patient_id: str) -> bool:
        with self.db.session() as session:
            return has_active_paid_consultation(session, patient_id)

    def doctor_visible_patients(self) -> List[tuple[DoctorConsultation, Patient]]:
        """
        Patients a doctor can see: their consultation is paid and not ended.
        """
        stmt = (
            select(DoctorConsultation, Patient)
            .join(Patient, Patient.id == DoctorConsultation.patient_id)
            .where(DoctorConsultation.status == ConsultationStatus.PAID.value)
            .where(DoctorConsultation.ended_at.is_(None))
            .order_by(DoctorConsultation.paid_at.desc(), DoctorConsultation.id.desc())
        )
        with self.db.session() as session:
            return [(c, p) for c, p in session.execute(stmt).all()]
