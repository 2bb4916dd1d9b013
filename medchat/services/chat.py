from __future__ import annotations

from typing import List

from sqlalchemy import select
from sqlalchemy.orm import Session

from medchat.models import ChatMessage, Patient, Role, utc_now


def insert_chat_message(session: Session, patient_id: str, role: Role, content: str) -> int:
    """
    Append a message to the patient's conversation.

    Returns the new message id, or 0 when the patient no longer exists.
    """
    if session.get(Patient, patient_id) is None:
        return 0
    message = ChatMessage(
        patient_id=patient_id,
        role=role.value,
        content=content,
        created_at=utc_now(),
    )
    session.add(message)
    session.flush()  # to get message.id
    return message.id


def load_chat_history(session: Session, patient_id: str) -> List[ChatMessage]:
    stmt = (
        select(ChatMessage)
        .where(ChatMessage.patient_id == patient_id)
        .order_by(ChatMessage.id.asc())
    )
    return list(session.scalars(stmt))


def latest_patient_message(session: Session, patient_id: str) -> str | None:
    stmt = (
        select(ChatMessage.content)
        .where(ChatMessage.patient_id == patient_id)
        .where(ChatMessage.role == Role.PATIENT.value)
        .order_by(ChatMessage.id.desc())
        .limit(1)
    )
    return session.scalars(stmt).first()
