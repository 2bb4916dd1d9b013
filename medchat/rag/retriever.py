from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from medchat.models import Memory, KnowledgeItem, ADMIN_CATEGORY
from medchat.rag.embeddings import cosine_similarity


LEGACY_DIALOGUE_SOURCE = "dialogue"

PATIENT_FACT_LIMIT = 8
PATIENT_FACT_THRESHOLD = 0.35
PATIENT_FACT_SCAN_LIMIT = 300

KNOWLEDGE_LIMIT = 3
KNOWLEDGE_THRESHOLD = 0.4


@dataclass
class RetrievedItem:
    id: int
    content: str
    score: float  # cosine similarity (higher is better)
    source: Optional[str] = None
    category: Optional[str] = None
    created_at: Optional[datetime] = None


def not_legacy_dialogue():
    # NULL source is a real fact with unknown origin
    return or_(Memory.source.is_(None), Memory.source != LEGACY_DIALOGUE_SOURCE)


def _score(query_vec: Sequence[float], embedding: Optional[Sequence[float]]) -> Optional[float]:
    if not embedding:
        return None
    try:
        return cosine_similarity(query_vec, embedding)
    except ValueError:
        # stored with a different embedding model
        return None


def _rank(items: List[RetrievedItem]) -> List[RetrievedItem]:
    return sorted(items, key=lambda i: i.score, reverse=True)


def retrieve_patient_facts(
    session: Session,
    patient_id: str,
    query_vec: Optional[Sequence[float]],
    k: int = PATIENT_FACT_LIMIT,
    threshold: float = PATIENT_FACT_THRESHOLD,
) -> List[str]:
    """
    Pick the patient's facts most relevant to the query.

    With no query embedding, falls back to the k most recent facts.
    Unembedded facts are never ranked.
    """
    stmt = (
        select(Memory)
        .where(Memory.patient_id == patient_id)
        .where(not_legacy_dialogue())
        .order_by(Memory.created_at.desc(), Memory.id.desc())
        .limit(PATIENT_FACT_SCAN_LIMIT)
    )
    rows = list(session.scalars(stmt))

    if query_vec is None:
        return [r.content for r in rows[:k]]

    scored: List[RetrievedItem] = []
    for r in rows:
        score = _score(query_vec, r.embedding)
        if score is None:
            continue
        scored.append(RetrievedItem(id=r.id, content=r.content, score=score, source=r.source))

    return [s.content for s in _rank(scored) if s.score > threshold][:k]


def retrieve_knowledge(
    session: Session,
    query_vec: Optional[Sequence[float]],
    admin: bool,
    k: int = KNOWLEDGE_LIMIT,
    threshold: float = KNOWLEDGE_THRESHOLD,
) -> List[RetrievedItem]:
    """
    Top-k knowledge entries above the threshold.

    admin=True searches only the administrative category,
    admin=False everything else.
    """
    if query_vec is None:
        return []

    stmt = select(KnowledgeItem)
    if admin:
        stmt = stmt.where(KnowledgeItem.category == ADMIN_CATEGORY)
    else:
        stmt = stmt.where(KnowledgeItem.category != ADMIN_CATEGORY)

    scored: List[RetrievedItem] = []
    for item in session.scalars(stmt):
        score = _score(query_vec, item.embedding)
        if score is None:
            continue
        scored.append(
            RetrievedItem(id=item.id, content=item.content, score=score, category=item.category)
        )

    return [s for s in _rank(scored) if s.score > threshold][:k]


def recent_memories(session: Session, patient_id: str, limit: int = 20) -> List[Memory]:
    """
    The patient's latest memories, returned oldest first.
    """
    stmt = (
        select(Memory)
        .where(Memory.patient_id == patient_id)
        .where(not_legacy_dialogue())
        .order_by(Memory.created_at.desc(), Memory.id.desc())
        .limit(limit)
    )
    return list(reversed(list(session.scalars(stmt))))


def related_items(
    session: Session,
    patient_id: str,
    query_vec: Sequence[float],
    k: int = 3,
) -> tuple[List[RetrievedItem], List[RetrievedItem]]:
    """
    Top-k memories and knowledge entries for a message, no threshold.
    Used for the per-message analysis view.
    """
    memories: List[RetrievedItem] = []
    for m in session.scalars(select(Memory).where(Memory.patient_id == patient_id)):
        score = _score(query_vec, m.embedding)
        if score is None:
            continue
        memories.append(
            RetrievedItem(
                id=m.id,
                content=m.content,
                score=score,
                source=m.source or "unknown",
                created_at=m.created_at,
            )
        )

    knowledge: List[RetrievedItem] = []
    for item in session.scalars(select(KnowledgeItem)):
        score = _score(query_vec, item.embedding)
        if score is None:
            continue
        knowledge.append(
            RetrievedItem(
                id=item.id,
                content=item.content,
                score=score,
                category=item.category or "general",
            )
        )

    return _rank(memories)[:k], _rank(knowledge)[:k]
