from __future__ import annotations

import logging
import re
from typing import List

from medchat.llm import LLMClient
from medchat.models import MemorySource
from medchat.outcome import Outcome


logger = logging.getLogger(__name__)

MAX_FACTS_PER_TEXT = 12
MAX_FACT_LENGTH = 80

_LEADING_MARKERS = re.compile(r"^[\d.\-*•\s]+")


def parse_fact_list(content: str) -> List[str]:
    """
    One fact per line. Leading numbering and bullet markers are stripped
    rather than dropping the line.
    """
    facts = []
    for line in content.split("\n"):
        cleaned = _LEADING_MARKERS.sub("", line).strip()
        if cleaned:
            facts.append(cleaned)
    return facts


def _clean_facts(facts: List[str]) -> List[str]:
    seen: set[str] = set()
    cleaned: List[str] = []
    for f in facts:
        f = f.strip()
        if not f or len(f) > MAX_FACT_LENGTH or f in seen:
            continue
        seen.add(f)
        cleaned.append(f)
    return cleaned[:MAX_FACTS_PER_TEXT]


def extract_facts(llm_client: LLMClient, text: str, source: MemorySource | str) -> Outcome[List[str]]:
    """
    Ask the LLM for short keyword/point statements worth remembering about
    the patient. Chat pleasantries and full transcripts are not kept.

    Failures degrade to an empty list.
    """
    source_value = source.value if isinstance(source, MemorySource) else source
    prompt = f"""
你是医疗信息结构化抽取助手。
任务：从文本中抽取“可写入患者知识库/RAG”的关键词与要点，避免保存完整聊天原文。

输出要求：
1. 只输出关键词/要点，每行一条，不要序号，不要 Markdown。
2. 尽量短（优先短语），必要时用“字段=值”的形式。
3. 仅保留与患者有关的信息：症状/持续时间/程度/体温/检查结果/既往史/过敏史/用药史/生活习惯/性格偏好/爱好/就医行为/医生建议等。
4. 忽略寒暄、重复、无信息量的句子。
5. 如果没有可抽取内容，返回空。

消息来源：{source_value}
文本：
{text}
"""
    try:
        raw = llm_client.chat([{"role": "user", "content": prompt}], temperature=0.1)
    except Exception as e:
        logger.warning("Fact extraction failed (source=%s): %s", source_value, e)
        return Outcome.degraded([], e)

    return Outcome.success(_clean_facts(parse_fact_list(raw)))
