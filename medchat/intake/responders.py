from __future__ import annotations

import re
from typing import Dict, List, Sequence

from medchat.intake.rules import filter_redundant_questions
from medchat.llm import LLMClient


QUESTIONS_PER_TURN = 3

# Used when the chat-completion call itself fails
FALLBACK_INTAKE_REPLY = "\n".join(
    [
        "您现在最主要的不舒服是什么？",
        "从什么时候开始的？最近有加重吗？",
        "目前有没有在用药或已知过敏？",
    ]
)

# Tops up a model answer that yielded fewer than three usable questions
QUESTION_POOL = [
    "您现在最主要哪里不舒服？",
    "从什么时候开始的？最近有没有加重或缓解？",
    "最近血压/心率大概是多少？有连续测量记录吗？",
    "头晕时是天旋地转还是发飘/站不稳？和体位变化有关吗？",
    "有没有恶心/呕吐/腹泻或明显脱水（口干、尿少）？",
    "今天饮食、睡眠和饮水情况如何？",
    "有没有发烧/胸痛/气短/说话不清/单侧无力/黑蒙晕厥等情况？",
    "目前有没有在用药或已知过敏？",
]
PADDING_QUESTION = QUESTION_POOL[0]

ADMIN_REFUSAL = "我只能回答行政类问题，已为您记录，请稍后由人工回复。"


def _chat_role(role: str) -> str:
    return "user" if role in ("user", "patient") else "assistant"


def _history_messages(history: Sequence[Dict[str, str]]) -> List[Dict[str, str]]:
    return [{"role": _chat_role(h.get("role", "")), "content": h.get("content", "")} for h in history]


def normalize_questions(raw: str) -> List[str]:
    """
    Keep only question lines, without bullets or numbering.
    A trailing ASCII '?' is converted to the full-width '？'.
    """
    text = raw.replace("\r\n", "\n")
    text = re.sub(r"^\s*[-*]\s+", "", text, flags=re.MULTILINE)
    text = re.sub(r"^\s*\d+[.、]\s*", "", text, flags=re.MULTILINE)

    questions = []
    for line in text.strip().split("\n"):
        line = line.strip()
        if not line:
            continue
        if line.endswith("?"):
            line = line[:-1] + "？"
        if line.endswith("？"):
            questions.append(line)
    return questions


def pick_three_questions(raw: str, evidence: str) -> str:
    selected = filter_redundant_questions(normalize_questions(raw), evidence)[:QUESTIONS_PER_TURN]

    for q in QUESTION_POOL:
        if len(selected) >= QUESTIONS_PER_TURN:
            break
        if q in selected:
            continue
        if not filter_redundant_questions([q], evidence):
            continue
        selected.append(q)

    while len(selected) < QUESTIONS_PER_TURN:
        selected.append(PADDING_QUESTION)

    return "\n".join(selected[:QUESTIONS_PER_TURN])


def generate_intake_questions(
    llm_client: LLMClient,
    doctor_name: str,
    query: str,
    context: str,
    persona: str,
    history: Sequence[Dict[str, str]] = (),
) -> str:
    """
    Ask up to three short clarifying questions in the doctor's-assistant voice.

    Questions on topics the patient already ruled out (no fever, no chest
    pain, no allergies, ...) are dropped and replaced from QUESTION_POOL.
    Raises if the chat-completion call fails.
    """
    system_prompt = f"""
你是{doctor_name}的助理，负责在微信中与患者沟通并收集病情信息。
你要做的是“问诊信息采集”，不是替代医生诊断。

患者画像：{persona}
已掌握的关键信息（可能来自历史对话或自动抽取）：
{context}

要求：
1. 你的回复只能包含“询问句”，用于收集信息；不允许解释病因、不允许给出建议、不允许给出处置方案、不允许提示就医/急诊。
2. 只输出 3 个简短问题，每个问题单独一行，必须以“？”结尾。
3. 不要重复询问患者已经明确回答过的信息；优先问缺失信息。
4. 不要使用编号、列表符号、Markdown，不要出现“建议/可以/应该/需要/先/后/请立刻/急诊”等指导性措辞。
5. 口吻自然、简短，像真人助理在微信里提问。
"""
    messages = [
        {"role": "system", "content": system_prompt},
        *_history_messages(history),
        {"role": "user", "content": query},
    ]
    raw = llm_client.chat(messages, temperature=0.4)

    evidence = "\n".join(
        part for part in [context, persona, *(h.get("content", "") for h in history), query] if part
    )
    return pick_three_questions(raw, evidence)


def generate_knowledge_response(llm_client: LLMClient, query: str, relevant_knowledge: List[str]) -> str:
    """
    Administrative-only answer grounded in knowledge-base entries.
    With nothing relevant retrieved, the refusal template is returned
    without calling the model.
    """
    if not relevant_knowledge:
        return ADMIN_REFUSAL

    knowledge_text = "\n".join(relevant_knowledge)
    prompt = f"""
你是一个医疗机构的“行政类”助手，只能回答行政/流程问题（如上班时间、地址、收费、挂号、支付、发票、就诊流程）。
你不能回答任何病情、用药、治疗、检查相关的问题。
如果用户的问题不是行政类，或知识库中没有相关信息，请直接回复：{ADMIN_REFUSAL}

知识库参考：
{knowledge_text}

用户问题：{query}
"""
    answer = llm_client.chat([{"role": "user", "content": prompt}], temperature=0.2)
    return answer.strip() or ADMIN_REFUSAL
