"""
String-matching rule tables used by the intake controller.

These are heuristics, kept as data so each rule can be audited and
unit-tested without an LLM.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Pattern


def compact(text: str) -> str:
    """Drop all whitespace."""
    return re.sub(r"\s+", "", text)


# ----------------------------------------------------------------------
# Doctor consultation confirmation
# ----------------------------------------------------------------------

CONFIRMATION_TOKENS = frozenset({"1", "确认1", "confirm1"})


def is_consultation_confirmation(message: str) -> bool:
    return compact(message).lower() in CONFIRMATION_TOKENS


# ----------------------------------------------------------------------
# Explicit doctor request
# ----------------------------------------------------------------------

DOCTOR_REQUEST_PHRASES = (
    "找医生",
    "要医生",
    "转医生",
    "必须医生",
    "非要医生",
    "一定要医生",
    "医生亲自",
    "真人医生",
    "联系医生",
    "找专家",
    "找主治",
)


def is_doctor_request(message: str) -> bool:
    t = compact(message)
    return any(phrase in t for phrase in DOCTOR_REQUEST_PHRASES)


# ----------------------------------------------------------------------
# Medical vocabulary override for the intent classifier
# ----------------------------------------------------------------------

MEDICAL_VOCABULARY = re.compile(
    r"药|用药|剂量|副作用|不良反应|过敏|症状|疼|痛|发烧|发热|咳嗽|头晕|腹泻|呕吐|心慌|胸闷|气短"
    r"|呼吸困难|血压|血糖|心率|感染|炎|高血压|糖尿病|感冒|怀孕|哺乳|诊断|治疗|检查|化验|CT|核磁|B超"
)


def mentions_medical_vocabulary(message: str) -> bool:
    return MEDICAL_VOCABULARY.search(compact(message)) is not None


# ----------------------------------------------------------------------
# "Already answered" topics for intake questions
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class AnsweredTopicRule:
    topic: str
    # evidence saying the patient does NOT have / take this
    negative_assertion: Pattern[str]
    # a candidate question asks about this topic
    question: Pattern[str]


ANSWERED_TOPIC_RULES: List[AnsweredTopicRule] = [
    AnsweredTopicRule(
        "fever",
        re.compile(r"没(有)?发(烧|热)|无发(烧|热)|不发(烧|热)|体温(正常|不高)|无热"),
        re.compile(r"发烧|发热|体温"),
    ),
    AnsweredTopicRule(
        "chest_pain",
        re.compile(r"没(有)?(胸痛|胸闷)|无(胸痛|胸闷)|不(胸痛|胸闷)"),
        re.compile(r"胸痛|胸闷"),
    ),
    AnsweredTopicRule(
        "shortness_of_breath",
        re.compile(r"没(有)?(气短|气促|喘|呼吸困难)|无(气短|气促|喘|呼吸困难)|不(气短|气促|喘)"),
        re.compile(r"气短|气促|呼吸困难|喘"),
    ),
    AnsweredTopicRule(
        "neuro_deficit",
        re.compile(
            r"没(有)?(说话不清|口齿不清|单侧无力|偏瘫|嘴歪|麻木)|无(说话不清|口齿不清|单侧无力|偏瘫|嘴歪|麻木)"
        ),
        re.compile(r"说话不清|口齿不清|单侧无力|偏瘫|嘴歪|麻木"),
    ),
    AnsweredTopicRule(
        "syncope",
        re.compile(r"没(有)?(晕厥|黑蒙|昏厥)|无(晕厥|黑蒙|昏厥)"),
        re.compile(r"晕厥|黑蒙|昏厥"),
    ),
    AnsweredTopicRule(
        "medication",
        re.compile(r"(目前|现在|暂时)?(还)?没(有)?(服用|吃)(降压药|降糖药|药)|未(服药|用药)"),
        re.compile(r"在用(什么|哪些)?药|目前(有没有)?用药|服药|降压药|降糖药|二甲双胍|胰岛素"),
    ),
    AnsweredTopicRule(
        "allergy",
        re.compile(r"没(有)?(过敏|药物过敏)|无(过敏|药物过敏)"),
        re.compile(r"过敏|药物过敏"),
    ),
]


def detect_answered_topics(evidence: str) -> Dict[str, bool]:
    """
    Map each topic tag to whether the evidence already rules it out.
    """
    e = compact(evidence)
    return {rule.topic: rule.negative_assertion.search(e) is not None for rule in ANSWERED_TOPIC_RULES}


def filter_redundant_questions(questions: List[str], evidence: str) -> List[str]:
    answered = detect_answered_topics(evidence)
    kept = []
    for q in questions:
        redundant = any(
            answered[rule.topic] and rule.question.search(q)
            for rule in ANSWERED_TOPIC_RULES
        )
        if not redundant:
            kept.append(q)
    return kept


# ----------------------------------------------------------------------
# Inquiry counter back-fill
# ----------------------------------------------------------------------

BACKFILL_EXCLUDED_PHRASES = (
    # consultation / payment flow
    "医生会诊",
    "支付",
    "确认接入",
    # administrative answers
    "上班",
    "营业",
    "地址",
    "挂号",
    "发票",
)
BACKFILL_SOLICITATION_PHRASES = ("请", "麻烦", "补充")


def looks_like_inquiry(ai_message: str) -> bool:
    """
    Heuristic used once to estimate how many intake questions an older
    conversation already contains.
    """
    c = ai_message.strip()
    if not c:
        return False
    if any(p in c for p in BACKFILL_EXCLUDED_PHRASES):
        return False
    return "助理" in c and any(p in c for p in BACKFILL_SOLICITATION_PHRASES)
