from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from medchat.intake.rules import looks_like_inquiry
from medchat.models import AiInquiryState, ChatMessage, Patient, Role, utc_now


MAX_MEDICAL_INQUIRIES = 3
BACKFILL_SCAN_LIMIT = 20


def ensure_inquiry_state(session: Session, patient_id: str) -> None:
    """
    Create the per-patient counter row at 0 if missing.
    No-op for unknown patients.
    """
    if session.get(Patient, patient_id) is None:
        return
    session.execute(
        sqlite_insert(AiInquiryState)
        .values(patient_id=patient_id, medical_inquiry_count=0, updated_at=utc_now())
        .on_conflict_do_nothing(index_elements=["patient_id"])
    )


def _estimate_from_history(session: Session, patient_id: str) -> int:
    stmt = (
        select(ChatMessage.content)
        .where(ChatMessage.patient_id == patient_id)
        .where(ChatMessage.role == Role.AI.value)
        .order_by(ChatMessage.id.asc())
        .limit(BACKFILL_SCAN_LIMIT)
    )
    estimated = sum(1 for content in session.scalars(stmt) if looks_like_inquiry(content))
    return min(MAX_MEDICAL_INQUIRIES, estimated)


def get_inquiry_count(session: Session, patient_id: str) -> int:
    """
    Current number of automated intake questions sent to the patient.

    A stored zero may predate the counter, so it is back-filled once from
    the chat log. The back-fill is approximate and capped.
    """
    ensure_inquiry_state(session, patient_id)
    state = session.get(AiInquiryState, patient_id)
    if state is None:
        return 0
    if state.medical_inquiry_count > 0:
        return state.medical_inquiry_count

    estimated = _estimate_from_history(session, patient_id)
    if estimated > 0:
        state.medical_inquiry_count = estimated
        state.updated_at = utc_now()
    return estimated


def increment_inquiry_count(session: Session, patient_id: str) -> None:
    ensure_inquiry_state(session, patient_id)
    session.execute(
        update(AiInquiryState)
        .where(AiInquiryState.patient_id == patient_id)
        .values(
            medical_inquiry_count=AiInquiryState.medical_inquiry_count + 1,
            updated_at=utc_now(),
        )
    )


def set_inquiry_count_at_least(session: Session, patient_id: str, count: int) -> None:
    """
    Raise the counter to `count` if it is lower. Never decreases it.
    """
    ensure_inquiry_state(session, patient_id)
    session.execute(
        update(AiInquiryState)
        .where(AiInquiryState.patient_id == patient_id)
        .where(AiInquiryState.medical_inquiry_count < count)
        .values(medical_inquiry_count=count, updated_at=utc_now())
    )
