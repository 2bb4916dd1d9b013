from __future__ import annotations

import logging
from typing import List

from sqlalchemy import select

from medchat.db import Database
from medchat.errors import KnowledgeItemNotFoundError
from medchat.models import ADMIN_CATEGORY, KnowledgeItem, utc_now
from medchat.rag.embeddings import EmbeddingClient


logger = logging.getLogger(__name__)


class KnowledgeService:
    """
    General-purpose knowledge entries. Unlike memories these are
    editable; every content change re-embeds the entry.

    Embedding failures propagate: an entry without a vector could never be
    retrieved.
    """

    def __init__(self, database: Database, embedding_client: EmbeddingClient):
        self.db = database
        self.embedder = embedding_client

    def add(self, content: str, category: str = "general") -> KnowledgeItem:
        embedding = self.embedder.embed_one(content)
        with self.db.session() as session:
            item = KnowledgeItem(
                content=content,
                embedding=embedding,
                category=category,
                created_at=utc_now(),
            )
            session.add(item)
            session.flush()  # to get item.id
            return item

    def bulk_import(self, text_data: str, category: str = ADMIN_CATEGORY) -> int:
        """
        One entry per non-empty line, filed as administrative by default.
        """
        lines = [line.strip() for line in text_data.split("\n") if line.strip()]
        for line in lines:
            self.add(line, category)
        logger.info("Imported %d knowledge entries into %s", len(lines), category)
        return len(lines)

    def update(self, item_id: int, content: str) -> KnowledgeItem:
        embedding = self.embedder.embed_one(content)
        with self.db.session() as session:
            item = session.get(KnowledgeItem, item_id)
            if item is None:
                raise KnowledgeItemNotFoundError(item_id)
            item.content = content
            item.embedding = embedding
            return item

    def delete(self, item_id: int) -> None:
        with self.db.session() as session:
            item = session.get(KnowledgeItem, item_id)
            if item is None:
                raise KnowledgeItemNotFoundError(item_id)
            session.delete(item)

    def list_items(self) -> List[KnowledgeItem]:
        stmt = select(KnowledgeItem).order_by(KnowledgeItem.created_at.desc(), KnowledgeItem.id.desc())
        with self.db.session() as session:
            return list(session.scalars(stmt))
