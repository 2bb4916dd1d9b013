from __future__ import annotations

from sqlalchemy import func, select

from medchat.intake import agent as agent_module
from medchat.intake.agent import (
    ALREADY_PAID_ON_CONFIRM_REPLY,
    ALREADY_PAID_ON_REQUEST_REPLY,
    APOLOGY_REPLY,
    CONSULTATION_OFFER_REPLY,
    NO_PENDING_CONSULTATION_REPLY,
)
from medchat.intake.responders import ADMIN_REFUSAL, FALLBACK_INTAKE_REPLY
from medchat.models import ADMIN_CATEGORY, AiInquiryState, ChatMessage, ConsultationStatus, Memory, Patient, Role


def _count(database, patient_id):
    with database.session() as session:
        state = session.get(AiInquiryState, patient_id)
        return 0 if state is None else state.medical_inquiry_count


def _ai_messages(database, patient_id):
    with database.session() as session:
        stmt = (
            select(ChatMessage.content)
            .where(ChatMessage.patient_id == patient_id)
            .where(ChatMessage.role == Role.AI.value)
            .order_by(ChatMessage.id)
        )
        return list(session.scalars(stmt))


def test_medical_message_gets_three_questions(container, llm, patient):
    llm.responses["intent"] = "chitchat_admin"  # overridden by medical vocabulary

    result = container.agent.handle_message(patient.id, "我头疼，从昨天开始")

    assert result.intent == "medical_consult"
    assert result.degraded == []
    lines = result.response.split("\n")
    assert 1 <= len(lines) <= 3
    assert all(line.endswith("？") for line in lines)
    assert "基础情况：高血压" in result.related_facts

    assert _count(container.db, patient.id) == 1
    assert _ai_messages(container.db, patient.id) == [result.response]
    assert container.patients.get_patient(patient.id).persona == "更新后的画像"


def test_patient_and_reply_facts_are_remembered(container, llm, patient):
    llm.responses["facts"] = "头疼=1天"
    container.agent.handle_message(patient.id, "我头疼，从昨天开始")

    with container.db.session() as session:
        sources = set(session.scalars(select(Memory.source).where(Memory.patient_id == patient.id)))
    assert sources == {"patient", "ai"}


def test_agent_goes_silent_after_three_inquiries(container, patient):
    for _ in range(3):
        assert container.agent.handle_message(patient.id, "头还是疼").response

    replies_before = _ai_messages(container.db, patient.id)
    result = container.agent.handle_message(patient.id, "头还是疼")

    assert result.response == ""
    assert result.intent == "medical_consult"
    assert _ai_messages(container.db, patient.id) == replies_before
    assert _count(container.db, patient.id) == 3


def test_intro_counts_as_first_inquiry(container):
    patient = container.patients.create_patient("韩梅梅")
    assert _count(container.db, patient.id) == 1

    for _ in range(2):
        assert container.agent.handle_message(patient.id, "头疼").response
    assert container.agent.handle_message(patient.id, "头疼").response == ""


def test_admin_question_answered_from_knowledge(container, llm, patient):
    llm.responses["intent"] = "chitchat_admin"
    llm.responses["admin"] = "周一至周五 8:00-17:00。"
    container.knowledge.add("上班时间：周一至周五 8:00-17:00", ADMIN_CATEGORY)

    result = container.agent.handle_message(patient.id, "几点上班？")

    assert result.intent == "chitchat_admin"
    assert result.response == "周一至周五 8:00-17:00。"
    assert result.related_facts == "上班时间：周一至周五 8:00-17:00"
    assert _ai_messages(container.db, patient.id) == [result.response]
    # administrative answers never spend the inquiry budget
    assert _count(container.db, patient.id) == 0


def test_admin_question_without_knowledge_is_refused(container, llm, patient):
    llm.responses["intent"] = "chitchat_admin"

    result = container.agent.handle_message(patient.id, "几点上班？")

    assert result.response == ADMIN_REFUSAL
    assert "admin" not in llm.routes


def test_classifier_failure_falls_back_to_medical(container, llm, patient):
    llm.fail.add("intent")

    result = container.agent.handle_message(patient.id, "几点上班？")

    assert result.intent == "medical_consult"
    assert "intent" in result.degraded
    assert len(result.response.split("\n")) == 3


def test_question_generation_failure_uses_fallback(container, llm, patient):
    llm.fail.add("intake")

    result = container.agent.handle_message(patient.id, "我头疼")

    assert result.response == FALLBACK_INTAKE_REPLY
    assert "intake_questions" in result.degraded
    assert _count(container.db, patient.id) == 1


def test_embedding_and_persona_failures_are_reported(container, llm, embedder, patient):
    llm.fail.add("persona")
    embedder.fail = True

    result = container.agent.handle_message(patient.id, "我头疼")

    assert result.response
    assert "embedding" in result.degraded
    assert "persona" in result.degraded


def test_unexpected_error_returns_apology(container, patient, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(agent_module, "classify_intent", boom)

    result = container.agent.handle_message(patient.id, "我头疼")

    assert result.response == APOLOGY_REPLY
    assert result.intent == "error"
    assert result.error == "boom"


def test_doctor_request_then_confirm_then_pay(container, patient):
    offer = container.agent.handle_message(patient.id, "我要找医生")
    assert offer.response == CONSULTATION_OFFER_REPLY

    pending = container.consultations.active_for_patient(patient.id)
    assert pending.status == ConsultationStatus.PENDING.value
    assert pending.trigger == "ai"

    confirm = container.agent.handle_message(patient.id, "1")
    assert f"/patient/pay/{pending.token}" in confirm.response
    # still the same consultation
    assert container.consultations.active_for_patient(patient.id).id == pending.id

    assert container.consultations.redeem(pending.token).success
    visible = [p.id for _, p in container.consultations.doctor_visible_patients()]
    assert visible == [patient.id]

    assert container.agent.handle_message(patient.id, "1").response == ALREADY_PAID_ON_CONFIRM_REPLY
    assert container.agent.handle_message(patient.id, "我要找医生").response == ALREADY_PAID_ON_REQUEST_REPLY


def test_confirmation_without_request(container, llm, patient):
    result = container.agent.handle_message(patient.id, " 1 ")
    assert result.response == NO_PENDING_CONSULTATION_REPLY
    assert container.consultations.active_for_patient(patient.id) is None
    # confirmations skip classification and extraction
    assert "intent" not in llm.routes


def test_doctor_request_does_not_spend_inquiries(container, patient):
    container.agent.handle_message(patient.id, "我头疼，想找医生")
    with container.db.session() as session:
        state = session.get(AiInquiryState, patient.id)
        assert state is None or state.medical_inquiry_count == 0


def test_every_patient_message_is_persisted(container, patient):
    container.agent.handle_message(patient.id, "1")
    container.agent.handle_message(patient.id, "我头疼")
    with container.db.session() as session:
        stmt = (
            select(func.count())
            .select_from(ChatMessage)
            .where(ChatMessage.patient_id == patient.id)
            .where(ChatMessage.role == Role.PATIENT.value)
        )
        assert session.scalar(stmt) == 2
        assert session.get(Patient, patient.id) is not None
