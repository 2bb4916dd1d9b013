from __future__ import annotations

import logging

from medchat.db import Database
from medchat.llm import LLMClient
from medchat.models import Patient
from medchat.outcome import Outcome


logger = logging.getLogger(__name__)


def update_persona(llm_client: LLMClient, current_persona: str, new_info: str) -> Outcome[str]:
    """
    Fold new information into the running free-text patient profile.
    An empty model answer keeps the current persona.
    """
    prompt = f"""
你是一个医疗画像专家。请根据新的医疗信息，更新患者的“画像（Persona）”。
画像应包含：性格特征、关键健康标签、生活习惯、沟通偏好等。
保持简练、客观。

当前画像：
{current_persona or "（无）"}

新导入/分析的信息：
{new_info}

请输出更新后的完整画像文本：
"""
    try:
        updated = llm_client.chat([{"role": "user", "content": prompt}], temperature=0.5)
    except Exception as e:
        logger.warning("Persona update failed: %s", e)
        return Outcome.degraded(current_persona, e)

    return Outcome.success(updated.strip() or current_persona)


def refresh_patient_persona(
    database: Database,
    llm_client: LLMClient,
    patient_id: str,
    new_info: str,
) -> Outcome[str]:
    """
    Update and persist a patient's persona. Only a successful update is written.
    """
    with database.session() as session:
        patient = session.get(Patient, patient_id)
        if patient is None:
            return Outcome.failed("", f"Patient {patient_id} not found")
        current = patient.persona or ""

    outcome = update_persona(llm_client, current, new_info)
    if outcome.ok:
        with database.session() as session:
            patient = session.get(Patient, patient_id)
            if patient is not None:
                patient.persona = outcome.value
    return outcome
