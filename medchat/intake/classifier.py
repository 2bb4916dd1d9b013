from __future__ import annotations

import logging

from medchat.intake.intents import Intent
from medchat.intake.rules import mentions_medical_vocabulary
from medchat.llm import LLMClient
from medchat.outcome import Outcome


logger = logging.getLogger(__name__)


def _build_prompt(query: str) -> str:
    return f"""
你是一个医疗意图识别助手。
请判断用户的以下输入是属于“病情/用药相关咨询（包括通用用药问题）”还是“行政类问题（如上班时间、地址、收费、流程、发票、支付等）”。

示例：
- "我头疼" -> medical_consult
- "我有高血压" -> medical_consult
- "医生，我最近总是失眠" -> medical_consult
- "几点上班？" -> chitchat_admin
- "挂号费多少？" -> chitchat_admin
- "你好" -> chitchat_admin
- "感冒了吃什么药？" -> medical_consult
修正策略：
- 只要涉及症状、疾病、检查、治疗、用药、剂量、不良反应、孕哺用药等 -> medical_consult
- 仅当问题明显是行政流程/时间/地点/费用/支付/发票/挂号等 -> chitchat_admin

用户输入：
{query}

请仅输出类别代码：medical_consult 或 chitchat_admin
"""


def classify_intent(llm_client: LLMClient, message: str) -> Outcome[Intent]:
    """
    Binary intent classification.

    - A classifier failure falls back to MEDICAL_CONSULT (the cautious branch).
    - Anything other than the exact label "medical_consult" reads as chitchat.
    - Chitchat that mentions medical vocabulary is forced to MEDICAL_CONSULT.
    """
    try:
        raw = llm_client.chat([{"role": "user", "content": _build_prompt(message)}], temperature=0.1)
    except Exception as e:
        logger.warning("Intent classification failed, defaulting to medical_consult: %s", e)
        return Outcome.degraded(Intent.MEDICAL_CONSULT, e)

    intent = Intent.MEDICAL_CONSULT if raw.strip() == Intent.MEDICAL_CONSULT.value else Intent.CHITCHAT_ADMIN

    if intent == Intent.CHITCHAT_ADMIN and mentions_medical_vocabulary(message):
        logger.info("Medical vocabulary override: chitchat_admin -> medical_consult")
        intent = Intent.MEDICAL_CONSULT

    return Outcome.success(intent)
