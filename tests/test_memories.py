from __future__ import annotations

import pytest
from sqlalchemy import select

from medchat.db import run_migrations
from medchat.models import ADMIN_CATEGORY, KnowledgeItem, Memory, MemorySource
from medchat.rag.embeddings import cosine_similarity, safe_embed
from medchat.rag.indexer import insert_memories, store_facts
from medchat.rag.retriever import related_items, retrieve_knowledge, retrieve_patient_facts
from medchat.outcome import OutcomeStatus


def _memories(database, patient_id):
    with database.session() as session:
        stmt = select(Memory).where(Memory.patient_id == patient_id).order_by(Memory.id)
        return list(session.scalars(stmt))


def test_cosine_similarity():
    assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
    assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
    assert cosine_similarity([0, 0], [1, 1]) == 0.0
    with pytest.raises(ValueError):
        cosine_similarity([1, 0], [1, 0, 0])


def test_safe_embed_failure(embedder):
    embedder.fail = True
    outcome = safe_embed(embedder, "头疼")
    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.value is None


def test_insert_memories_skips_duplicates(database, patient):
    items = [("头疼", [0.0, 1.0]), ("失眠", None)]
    assert insert_memories(database, patient.id, MemorySource.PATIENT, items) == 2
    assert insert_memories(database, patient.id, MemorySource.PATIENT, items) == 0
    # same content from another source is a separate memory
    assert insert_memories(database, patient.id, MemorySource.DOCTOR, items[:1]) == 1
    assert len(_memories(database, patient.id)) == 3


def test_store_facts_dedupes(database, llm, embedder, patient):
    llm.responses["facts"] = "头疼\n头疼\n发烧=38度"
    assert store_facts(database, llm, embedder, patient.id, MemorySource.PATIENT, "我头疼还发烧") == [
        "头疼",
        "发烧=38度",
    ]
    assert store_facts(database, llm, embedder, patient.id, MemorySource.PATIENT, "我头疼还发烧") == []

    memories = _memories(database, patient.id)
    assert [m.content for m in memories] == ["头疼", "发烧=38度"]
    assert all(m.source == "patient" for m in memories)
    assert memories[0].embedding is not None


def test_store_facts_keeps_facts_when_embedding_fails(database, llm, embedder, patient):
    llm.responses["facts"] = "头疼"
    embedder.fail = True
    store_facts(database, llm, embedder, patient.id, MemorySource.PATIENT, "我头疼")
    [memory] = _memories(database, patient.id)
    assert memory.embedding is None


def test_store_facts_for_unknown_patient_is_a_noop(database, llm, embedder):
    assert store_facts(database, llm, embedder, "missing", MemorySource.PATIENT, "我头疼") == []
    assert llm.calls == []


def test_retrieve_patient_facts(database, embedder, patient):
    insert_memories(
        database,
        patient.id,
        MemorySource.PATIENT,
        [
            ("头疼两天", embedder.embed_one("头疼两天")),
            ("血压=150/95", embedder.embed_one("血压=150/95")),
            ("未嵌入的头疼记录", None),
            ("旧模型向量", [1.0, 0.0]),
        ],
    )
    with database.session() as session:
        facts = retrieve_patient_facts(session, patient.id, embedder.embed_one("头还在疼"))
        assert facts == ["头疼两天"]

        # no query vector: most recent facts, embedded or not
        recent = retrieve_patient_facts(session, patient.id, None, k=2)
        assert len(recent) == 2


def test_retrieve_knowledge_partitions_admin(database, embedder):
    with database.session() as session:
        session.add(KnowledgeItem(content="上班时间 8:00", embedding=embedder.embed_one("上班"), category=ADMIN_CATEGORY))
        session.add(KnowledgeItem(content="上班族头疼常见原因", embedding=embedder.embed_one("上班 头"), category="general"))

    query = embedder.embed_one("几点上班")
    with database.session() as session:
        admin = retrieve_knowledge(session, query, admin=True)
        general = retrieve_knowledge(session, query, admin=False)
        assert [k.content for k in admin] == ["上班时间 8:00"]
        assert [k.content for k in general] == ["上班族头疼常见原因"]
        assert retrieve_knowledge(session, None, admin=True) == []


def test_related_items_has_no_threshold(database, embedder, patient):
    insert_memories(database, patient.id, MemorySource.DOCTOR, [("血压偏高", embedder.embed_one("血压"))])
    with database.session() as session:
        memories, knowledge = related_items(session, patient.id, embedder.embed_one("头疼"))
    assert [m.content for m in memories] == ["血压偏高"]
    assert memories[0].score == pytest.approx(0.0)
    assert knowledge == []


def test_legacy_dialogue_memories_are_purged(database, patient):
    with database.session() as session:
        session.add(Memory(patient_id=patient.id, content="患者：我头疼", source="dialogue"))
        session.add(Memory(patient_id=patient.id, content="头疼", source=None))

    run_migrations(database)

    assert [(m.content, m.source) for m in _memories(database, patient.id)] == [("头疼", None)]
    with database.session() as session:
        assert retrieve_patient_facts(session, patient.id, None) == ["头疼"]
