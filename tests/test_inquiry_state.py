from __future__ import annotations

from medchat.intake.state import (
    MAX_MEDICAL_INQUIRIES,
    ensure_inquiry_state,
    get_inquiry_count,
    increment_inquiry_count,
    set_inquiry_count_at_least,
)
from medchat.models import AiInquiryState, Role
from medchat.services.chat import insert_chat_message


SOLICITATION = "我是张医生的助理，麻烦您补充一下头疼持续多久了？"


def _stored_count(database, patient_id):
    with database.session() as session:
        state = session.get(AiInquiryState, patient_id)
        return None if state is None else state.medical_inquiry_count


def test_state_is_created_lazily(database, patient):
    assert _stored_count(database, patient.id) is None
    with database.session() as session:
        assert get_inquiry_count(session, patient.id) == 0
    assert _stored_count(database, patient.id) == 0


def test_ensure_is_idempotent_and_ignores_unknown_patients(database, patient):
    with database.session() as session:
        ensure_inquiry_state(session, patient.id)
        increment_inquiry_count(session, patient.id)
        ensure_inquiry_state(session, patient.id)
        ensure_inquiry_state(session, "missing")
    assert _stored_count(database, patient.id) == 1
    assert _stored_count(database, "missing") is None


def test_increment(database, patient):
    for _ in range(4):
        with database.session() as session:
            increment_inquiry_count(session, patient.id)
    assert _stored_count(database, patient.id) == 4


def test_set_at_least_never_decreases(database, patient):
    with database.session() as session:
        set_inquiry_count_at_least(session, patient.id, 2)
    assert _stored_count(database, patient.id) == 2
    with database.session() as session:
        set_inquiry_count_at_least(session, patient.id, 1)
    assert _stored_count(database, patient.id) == 2


def test_zero_counter_is_backfilled_from_history(database, patient):
    with database.session() as session:
        insert_chat_message(session, patient.id, Role.AI, SOLICITATION)
        insert_chat_message(session, patient.id, Role.AI, "支付成功，已为您接入医生会诊。")
        insert_chat_message(session, patient.id, Role.PATIENT, "助理，请问几点上班")
        insert_chat_message(session, patient.id, Role.AI, SOLICITATION)

    with database.session() as session:
        assert get_inquiry_count(session, patient.id) == 2
    assert _stored_count(database, patient.id) == 2


def test_backfill_is_capped(database, patient):
    with database.session() as session:
        for _ in range(5):
            insert_chat_message(session, patient.id, Role.AI, SOLICITATION)
        assert get_inquiry_count(session, patient.id) == MAX_MEDICAL_INQUIRIES


def test_nonzero_counter_is_not_backfilled(database, patient):
    with database.session() as session:
        increment_inquiry_count(session, patient.id)
        for _ in range(3):
            insert_chat_message(session, patient.id, Role.AI, SOLICITATION)
    with database.session() as session:
        assert get_inquiry_count(session, patient.id) == 1
