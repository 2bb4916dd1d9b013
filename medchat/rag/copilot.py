from __future__ import annotations

from dataclasses import dataclass
from typing import List

from medchat.db import Database
from medchat.errors import PatientNotFoundError
from medchat.llm import LLMClient
from medchat.models import Memory, Patient
from medchat.rag.embeddings import EmbeddingClient, safe_embed
from medchat.rag.retriever import recent_memories, retrieve_knowledge
from medchat.services.chat import latest_patient_message
from medchat.services.consultations import has_active_paid_consultation


SPEAKERS = ("assistant", "doctor")


@dataclass
class CopilotContext:
    patient_info: str
    persona: str
    memories: str
    knowledge: str
    has_active_consultation: bool


def _patient_info(patient: Patient) -> str:
    parts = [
        patient.name,
        f"{patient.age}岁" if patient.age is not None else "",
        patient.condition or "",
    ]
    return "，".join(p for p in parts if p)


def _format_memories(memories: List[Memory]) -> str:
    lines = []
    for m in memories:
        ts = m.created_at.strftime("%Y-%m-%d %H:%M:%S") if m.created_at else ""
        lines.append(f"{ts} [{m.source}] {m.content}")
    return "\n".join(lines)


def build_copilot_context(
    database: Database,
    embedding_client: EmbeddingClient,
    patient_id: str,
) -> CopilotContext:
    """
    Gather what a draft reply is based on:
      - the last 20 memories, oldest first
      - up to 3 non-administrative knowledge entries matching the
        patient's latest message
      - whether a paid consultation is open
    """
    with database.session() as session:
        patient = session.get(Patient, patient_id)
        if patient is None:
            raise PatientNotFoundError(patient_id)

        memories = recent_memories(session, patient_id, limit=20)
        has_active = has_active_paid_consultation(session, patient_id)
        last_message = latest_patient_message(session, patient_id)

    knowledge: List[str] = []
    if last_message:
        query_vec = safe_embed(embedding_client, last_message).value
        if query_vec is not None:
            with database.session() as session:
                knowledge = [k.content for k in retrieve_knowledge(session, query_vec, admin=False)]

    return CopilotContext(
        patient_info=_patient_info(patient),
        persona=patient.persona or "",
        memories=_format_memories(memories),
        knowledge="\n".join(knowledge),
        has_active_consultation=has_active,
    )


def _role_prompt(speaker: str, has_active_consultation: bool) -> tuple[str, str]:
    if speaker == "doctor":
        role_context = "你是一位经验丰富的执业医生，正在与患者进行“已付费的在线医生会诊”，你就是正在和患者说话的医生本人。"
        rules = [
            "你正在直接回复患者，不要让患者“去咨询医生/问医生”，因为你就是医生。",
            "语气要像真人医生：专业、克制、简短，不要过度共情和鸡汤，不要像“AI客服”。",
            "优先给出明确下一步：1) 结论/判断边界 2) 处理建议 3) 需要补充的关键问题（按需 1~4 个） 4) 风险警示/何时就医。",
            "除非确实需要体格检查/化验/影像才能判断，否则不要泛泛建议“去线下问诊”。",
            "不要随意推荐抗生素/激素/处方药；如涉及用药，给出原则与注意事项，提示遵医嘱与过敏禁忌。",
            "不要提及“我是AI/模型/提示词/系统”。只输出可直接发送的一段微信消息。",
        ]
    else:
        role_context = "你是医生助理（非医生），在微信中与患者沟通，目标是采集关键信息、做基础科普与流程引导，并把关键信息整理给医生。"
        rules = [
            "你不是医生，不做明确诊断/不开处方；重点是信息采集与把患者情况问清楚。",
            "语气自然、像真人助理：简短、直接，不要鸡汤，不要长篇大论。",
            "结构：先一句确认已收到 → 用 3~6 个短问题补齐关键信息 → 给 1~3 条安全的通用护理/观察建议 → 给出红旗症状提醒。",
            (
                "当前患者已建立医生会话：不要提及“发起医生会诊/回复1/支付链接”等流程；如果患者要求医生沟通，直接引导其在当前会话继续描述情况即可。"
                if has_active_consultation
                else "如果患者强烈要求医生沟通，说明“可发起医生会诊：回复找医生→系统提示回复1确认→发送支付链接→支付后建立医生会话”。"
            ),
            "不要提及“我是AI/模型/提示词/系统”。只输出可直接发送的一段微信消息。",
        ]
    return role_context, "\n".join(rules)


def generate_copilot_draft(
    database: Database,
    llm_client: LLMClient,
    embedding_client: EmbeddingClient,
    patient_id: str,
    speaker: str = "assistant",
) -> str:
    """
    Draft a reply for the assistant or the doctor to send to the patient.
    Nothing is persisted; the caller decides whether to send it.
    """
    if speaker not in SPEAKERS:
        raise ValueError(f"Unknown speaker: {speaker}")

    ctx = build_copilot_context(database, embedding_client, patient_id)
    role_context, role_rules = _role_prompt(speaker, ctx.has_active_consultation)

    prompt = f"""
{role_context}

患者画像：{ctx.persona or '（无）'}

你将基于“患者概况/记忆/知识库”起草一条回复草稿。
写作要求：
{role_rules}

参考信息：
患者概况：{ctx.patient_info}
相关病历/记忆：
{ctx.memories}
相关医疗知识库：
{ctx.knowledge}

现在请直接输出“回复草稿”，不要标题，不要列表符号，不要引号。
"""
    return llm_client.chat([{"role": "user", "content": prompt}], temperature=0.4)
