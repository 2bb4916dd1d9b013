from __future__ import annotations

import pytest

from medchat.errors import KnowledgeItemNotFoundError, PatientNotFoundError
from medchat.models import Role
from medchat.services.patients import INITIAL_PERSONA, build_assistant_intro


def test_create_patient_sends_intro(container):
    patient = container.patients.create_patient("韩梅梅", age=30, gender="女")

    assert patient.persona == INITIAL_PERSONA
    history = container.patients.chat_history(patient.id)
    assert [(m.role, m.content) for m in history] == [("ai", build_assistant_intro("张医生"))]


def test_intro_is_ensured_once(container, patient):
    container.patients.chat_history(patient.id)
    container.patients.chat_history(patient.id)
    history = container.patients.chat_history(patient.id)
    assert [m.role for m in history] == ["ai"]


def test_chat_history_is_ordered(container, patient):
    container.patients.send_doctor_message(patient.id, "第一条")
    container.patients.send_assistant_message(patient.id, "第二条")
    history = container.patients.chat_history(patient.id, ensure_intro=False)
    assert [(m.role, m.content) for m in history] == [("doctor", "第一条"), ("assistant", "第二条")]


def test_staff_messages_are_remembered_by_source(container, llm, patient):
    llm.responses["facts"] = "建议低盐饮食"
    container.patients.send_doctor_message(patient.id, "建议低盐饮食")
    container.patients.send_assistant_message(patient.id, "建议低盐饮食")
    sources = sorted(m.source for m in container.patients.list_memories(patient.id))
    assert sources == ["ai", "doctor"]


def test_staff_message_to_unknown_patient(container):
    with pytest.raises(PatientNotFoundError):
        container.patients.send_doctor_message("missing", "你好")


def test_update_and_delete_patient(container, patient):
    updated = container.patients.update_patient(patient.id, "李雷", age=46, condition="高血压；糖尿病")
    assert updated.age == 46
    assert updated.condition == "高血压；糖尿病"

    container.patients.delete_patient(patient.id)
    with pytest.raises(PatientNotFoundError):
        container.patients.get_patient(patient.id)
    assert container.patients.chat_history(patient.id) == []


def test_list_patients_reports_consult_status(container, patient):
    other = container.patients.create_patient("韩梅梅", send_intro=False)
    ticket = container.consultations.request(patient.id)
    container.consultations.redeem(ticket.token)

    status = {p.patient.id: p.has_active_consultation for p in container.patients.list_patients()}
    assert status == {patient.id: True, other.id: False}
    assert container.patients.get_patient_with_consult_status(patient.id).has_active_consultation


def test_chat_list_previews_latest_message(container, patient):
    quiet = container.patients.create_patient("韩梅梅", send_intro=False)
    container.patients.send_doctor_message(patient.id, "第一条")
    container.patients.send_doctor_message(patient.id, "第二条")

    previews = {s.patient.id: s.last_content for s in container.patients.chat_list()}
    assert previews == {patient.id: "第二条", quiet.id: None}


def test_import_patient_data(container, llm, patient):
    llm.responses["facts"] = "既往史=高血压10年\n过敏史=青霉素"
    persona = container.patients.import_patient_data(patient.id, "高血压10年，青霉素过敏")

    assert persona == "更新后的画像"
    memories = container.patients.list_memories(patient.id)
    assert {m.content for m in memories} == {"既往史=高血压10年", "过敏史=青霉素"}
    assert {m.source for m in memories} == {"import"}


def test_message_analysis(container, patient):
    container.knowledge.add("头疼护理要点", "general")
    container.agent.handle_message(patient.id, "头疼")
    [message] = [m for m in container.patients.chat_history(patient.id) if m.role == Role.PATIENT.value]

    analysis = container.patients.message_analysis(patient.id, message.id)
    assert [k.content for k in analysis.related_knowledge] == ["头疼护理要点"]
    assert container.patients.message_analysis("someone-else", message.id) is None
    assert container.patients.message_analysis(patient.id, 10_000) is None


def test_knowledge_crud(container):
    item = container.knowledge.add("医院地址：人民路1号")
    assert item.category == "general"
    assert item.embedding is not None

    updated = container.knowledge.update(item.id, "医院地址：解放路2号")
    assert updated.content == "医院地址：解放路2号"

    assert container.knowledge.bulk_import("挂号费 20 元\n\n 上班时间 8:00 \n") == 2
    categories = sorted(k.category for k in container.knowledge.list_items())
    assert categories == ["admin", "admin", "general"]

    container.knowledge.delete(item.id)
    with pytest.raises(KnowledgeItemNotFoundError):
        container.knowledge.delete(item.id)
    with pytest.raises(KnowledgeItemNotFoundError):
        container.knowledge.update(item.id, "x")
