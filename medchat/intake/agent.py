from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from medchat.db import Database
from medchat.intake.classifier import classify_intent
from medchat.intake.intents import Intent
from medchat.intake.persona import refresh_patient_persona
from medchat.intake.responders import (
    FALLBACK_INTAKE_REPLY,
    generate_intake_questions,
    generate_knowledge_response,
)
from medchat.intake.rules import is_consultation_confirmation, is_doctor_request
from medchat.intake.state import MAX_MEDICAL_INQUIRIES, get_inquiry_count, increment_inquiry_count
from medchat.llm import LLMClient
from medchat.models import ConsultationStatus, ConsultationTrigger, MemorySource, Patient, Role
from medchat.outcome import Outcome
from medchat.rag.embeddings import EmbeddingClient, safe_embed
from medchat.rag.indexer import store_facts
from medchat.rag.retriever import retrieve_knowledge, retrieve_patient_facts
from medchat.services.chat import insert_chat_message
from medchat.services.consultations import ConsultationService, active_consultation


logger = logging.getLogger(__name__)

ERROR_INTENT = "error"

APOLOGY_REPLY = "抱歉，系统暂时无法处理您的请求，请稍后再试。"

NO_PENDING_CONSULTATION_REPLY = "未检测到待确认的医生会诊请求。如需医生会诊，请发送“我要找医生”。"
ALREADY_PAID_ON_CONFIRM_REPLY = "您已完成支付，医生会话已建立。如需结束/重新发起，可在会话中继续沟通。"
ALREADY_PAID_ON_REQUEST_REPLY = "您已完成支付，医生会话已建立。请在本会话中继续描述情况，医生将与您沟通。"
CONSULTATION_OFFER_REPLY = (
    "已为您准备医生会诊服务（演示）。\n"
    "请回复数字 1 确认接入，确认后我将发送支付链接。\n"
    "（提示：支付后医生端才可见并建立会话）"
)


def pay_link_reply(pay_link: str) -> str:
    return f"已确认接入医生会诊。请点击链接完成支付：{pay_link}（演示版本：点击即视为已支付）"


@dataclass
class ReplyResult:
    """
    What the controller decided for one inbound patient message.

    response is "" when the AI deliberately stays silent. error is only
    for diagnostic callers and never shown to the patient.
    """

    response: str
    intent: str
    related_facts: str = ""
    error: Optional[str] = None
    # best-effort steps that fell back during this turn
    degraded: List[str] = field(default_factory=list)


class IntakeAgent:
    """
    Intake conversation controller.

    For every inbound patient message, in order:
      - consultation confirmation ("1")
      - fact extraction from the message
      - explicit doctor request ("找医生" ...)
      - intent classification
      - persona update
      - medical intake questions (at most MAX_MEDICAL_INQUIRIES turns)
        or an administrative knowledge-base answer

    Once the inquiry budget is spent the agent goes silent so a human can
    take over.
    """

    def __init__(
        self,
        database: Database,
        llm_client: LLMClient,
        embedding_client: EmbeddingClient,
        consultations: ConsultationService,
        doctor_name: str,
    ):
        self.db = database
        self.llm = llm_client
        self.embedder = embedding_client
        self.consultations = consultations
        self.doctor_name = doctor_name

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def handle_message(
        self,
        patient_id: str,
        message: str,
        history: Sequence[Dict[str, str]] = (),
    ) -> ReplyResult:
        try:
            return self._handle(patient_id, message, history)
        except Exception as e:
            logger.exception("Failed to process message for patient %s", patient_id)
            return ReplyResult(response=APOLOGY_REPLY, intent=ERROR_INTENT, error=str(e))

    # ------------------------------------------------------------------
    # Decision flow
    # ------------------------------------------------------------------

    def _handle(
        self,
        patient_id: str,
        message: str,
        history: Sequence[Dict[str, str]],
    ) -> ReplyResult:
        logger.info("Processing message for patient %s", patient_id)
        degraded: List[str] = []

        with self.db.session() as session:
            insert_chat_message(session, patient_id, Role.PATIENT, message)

        if is_consultation_confirmation(message):
            return self._handle_confirmation(patient_id)

        store_facts(self.db, self.llm, self.embedder, patient_id, MemorySource.PATIENT, message)

        if is_doctor_request(message):
            return self._handle_doctor_request(patient_id)

        intent_outcome = classify_intent(self.llm, message)
        self._track(degraded, "intent", intent_outcome)
        intent = intent_outcome.value
        logger.info("Intent for patient %s: %s", patient_id, intent.value)

        query_outcome = safe_embed(self.embedder, message)
        self._track(degraded, "embedding", query_outcome)
        query_vec = query_outcome.value

        persona_outcome = refresh_patient_persona(self.db, self.llm, patient_id, message)
        self._track(degraded, "persona", persona_outcome)

        if intent == Intent.MEDICAL_CONSULT:
            result = self._handle_medical(patient_id, message, history, query_vec, degraded)
        else:
            result = self._handle_admin(patient_id, message, query_vec)
        result.degraded = degraded
        return result

    def _handle_confirmation(self, patient_id: str) -> ReplyResult:
        with self.db.session() as session:
            existing = active_consultation(session, patient_id)
            status = existing.status if existing is not None else None

        if status is None:
            reply = NO_PENDING_CONSULTATION_REPLY
        elif status == ConsultationStatus.PAID.value:
            reply = ALREADY_PAID_ON_CONFIRM_REPLY
        else:
            ticket = self.consultations.request(patient_id, ConsultationTrigger.AI)
            reply = pay_link_reply(ticket.pay_link)

        return self._reply(patient_id, reply, Intent.MEDICAL_CONSULT)

    def _handle_doctor_request(self, patient_id: str) -> ReplyResult:
        with self.db.session() as session:
            existing = active_consultation(session, patient_id)
            already_paid = existing is not None and existing.status == ConsultationStatus.PAID.value

        if already_paid:
            return self._reply(patient_id, ALREADY_PAID_ON_REQUEST_REPLY, Intent.MEDICAL_CONSULT)

        self.consultations.request(patient_id, ConsultationTrigger.AI)
        return self._reply(patient_id, CONSULTATION_OFFER_REPLY, Intent.MEDICAL_CONSULT)

    def _handle_medical(
        self,
        patient_id: str,
        message: str,
        history: Sequence[Dict[str, str]],
        query_vec: Optional[List[float]],
        degraded: List[str],
    ) -> ReplyResult:
        with self.db.session() as session:
            inquiry_count = get_inquiry_count(session, patient_id)
            if inquiry_count >= MAX_MEDICAL_INQUIRIES:
                logger.info("Inquiry budget spent for patient %s, staying silent", patient_id)
                return ReplyResult(response="", intent=Intent.MEDICAL_CONSULT.value)

            patient = session.get(Patient, patient_id)
            condition = patient.condition if patient else None
            persona = (patient.persona if patient else None) or ""
            facts = retrieve_patient_facts(session, patient_id, query_vec)

        context = "\n".join(
            part
            for part in [
                f"基础情况：{condition}" if condition else "",
                "关键信息：\n" + "\n".join(facts) if facts else "",
            ]
            if part
        )

        try:
            response = generate_intake_questions(
                self.llm, self.doctor_name, message, context, persona, history
            )
        except Exception as e:
            logger.warning("Intake question generation failed, using fallback questions: %s", e)
            degraded.append("intake_questions")
            response = FALLBACK_INTAKE_REPLY

        with self.db.session() as session:
            insert_chat_message(session, patient_id, Role.AI, response)
            increment_inquiry_count(session, patient_id)

        store_facts(self.db, self.llm, self.embedder, patient_id, MemorySource.AI, response)
        return ReplyResult(response=response, intent=Intent.MEDICAL_CONSULT.value, related_facts=context)

    def _handle_admin(
        self,
        patient_id: str,
        message: str,
        query_vec: Optional[List[float]],
    ) -> ReplyResult:
        with self.db.session() as session:
            knowledge = [k.content for k in retrieve_knowledge(session, query_vec, admin=True)]

        response = generate_knowledge_response(self.llm, message, knowledge)
        result = self._reply(patient_id, response, Intent.CHITCHAT_ADMIN)
        result.related_facts = "\n".join(knowledge)
        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _reply(self, patient_id: str, reply: str, intent: Intent) -> ReplyResult:
        """
        Persist an AI reply and remember what it said.
        """
        with self.db.session() as session:
            insert_chat_message(session, patient_id, Role.AI, reply)
        store_facts(self.db, self.llm, self.embedder, patient_id, MemorySource.AI, reply)
        return ReplyResult(response=reply, intent=intent.value)

    @staticmethod
    def _track(degraded: List[str], step: str, outcome: Outcome) -> None:
        if not outcome.ok:
            degraded.append(step)
