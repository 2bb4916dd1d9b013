from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from medchat.config import Settings
from medchat.db import Database
from medchat.intake.agent import IntakeAgent
from medchat.llm import LLMClient, OpenAILLMClient
from medchat.rag.embeddings import EmbeddingClient, get_embedding_client
from medchat.services.consultations import ConsultationService
from medchat.services.knowledge import KnowledgeService
from medchat.services.patients import PatientService


@dataclass
class ServiceContainer:
    """
    Process-wide collaborators, opened once at startup and closed at
    shutdown. Everything downstream receives them explicitly.
    """

    settings: Settings
    db: Database
    llm: LLMClient
    embedder: EmbeddingClient
    consultations: ConsultationService
    patients: PatientService
    knowledge: KnowledgeService
    agent: IntakeAgent

    def close(self) -> None:
        self.llm.close()
        self.embedder.close()
        self.db.dispose()


def build_container(
    settings: Settings,
    database: Optional[Database] = None,
    llm_client: Optional[LLMClient] = None,
    embedding_client: Optional[EmbeddingClient] = None,
) -> ServiceContainer:
    db = database or Database(settings.database_url)
    db.init_db()

    llm = llm_client or OpenAILLMClient(settings)
    embedder = embedding_client or get_embedding_client(settings)

    consultations = ConsultationService(db, settings, llm, embedder)
    return ServiceContainer(
        settings=settings,
        db=db,
        llm=llm,
        embedder=embedder,
        consultations=consultations,
        patients=PatientService(db, llm, embedder, settings.doctor_name),
        knowledge=KnowledgeService(db, embedder),
        agent=IntakeAgent(db, llm, embedder, consultations, settings.doctor_name),
    )
