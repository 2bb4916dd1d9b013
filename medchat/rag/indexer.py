from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from medchat.db import Database
from medchat.intake.facts import extract_facts
from medchat.llm import LLMClient
from medchat.models import Memory, MemorySource, Patient, utc_now
from medchat.rag.embeddings import EmbeddingClient, safe_embed


logger = logging.getLogger(__name__)


def _existing_contents(session, patient_id: str, source: str, facts: List[str]) -> set[str]:
    stmt = (
        select(Memory.content)
        .where(Memory.patient_id == patient_id)
        .where(Memory.source == source)
        .where(Memory.content.in_(facts))
    )
    return set(session.scalars(stmt))


def insert_memories(
    database: Database,
    patient_id: str,
    source: MemorySource | str,
    items: List[tuple[str, Optional[List[float]]]],
) -> int:
    """
    Insert (content, embedding) pairs in one transaction.
    Rows already present for (patient, source, content) are skipped.

    Returns: number of rows inserted.
    """
    source_value = source.value if isinstance(source, MemorySource) else source
    if not items:
        return 0

    now = utc_now()
    inserted = 0
    with database.session() as session:
        for content, embedding in items:
            stmt = (
                sqlite_insert(Memory)
                .values(
                    patient_id=patient_id,
                    content=content,
                    embedding=embedding,
                    source=source_value,
                    created_at=now,
                )
                .on_conflict_do_nothing(index_elements=["patient_id", "source", "content"])
            )
            result = session.execute(stmt)
            inserted += result.rowcount or 0
    return inserted


def store_facts(
    database: Database,
    llm_client: LLMClient,
    embedding_client: EmbeddingClient,
    patient_id: str,
    source: MemorySource,
    text: str,
) -> List[str]:
    """
    Extract facts from text and persist the new ones as memories.

    Best-effort: extraction and embedding failures never raise. A fact whose
    embedding failed is stored with a NULL embedding.

    Returns: facts that were not already stored.
    """
    with database.session() as session:
        if session.get(Patient, patient_id) is None:
            return []

    facts = extract_facts(llm_client, text, source).value
    if not facts:
        return []

    with database.session() as session:
        existing = _existing_contents(session, patient_id, source.value, facts)

    items: List[tuple[str, Optional[List[float]]]] = []
    for fact in facts:
        if fact in existing:
            continue
        items.append((fact, safe_embed(embedding_client, fact).value))

    if not items:
        return []

    inserted = insert_memories(database, patient_id, source, items)
    logger.debug("Stored %d new %s facts for patient %s", inserted, source.value, patient_id)
    return [content for content, _ in items]
