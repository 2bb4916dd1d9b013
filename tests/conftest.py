from __future__ import annotations

from typing import Dict, List, Optional

import numpy as np
import pytest
from fastapi.testclient import TestClient

from medchat.config import Settings
from medchat.db import Database
from medchat.llm import LLMClient
from medchat.main import create_app
from medchat.rag.embeddings import EmbeddingClient
from medchat.services.container import build_container


# Prompt markers, checked in order. The classifier prompt also mentions
# "行政类", so it has to be matched before the admin answer.
ROUTES = [
    ("facts", "结构化抽取"),
    ("persona", "医疗画像专家"),
    ("intent", "医疗意图识别"),
    ("intake", "问诊信息采集"),
    ("copilot", "回复草稿"),
    ("admin", "行政类"),
]

DEFAULT_RESPONSES = {
    "facts": "",
    "persona": "更新后的画像",
    "intent": "medical_consult",
    "intake": "头疼是持续性的吗？\n有没有发烧？\n疼痛程度如何？",
    "copilot": "草稿内容",
    "admin": "行政回答",
}


class FakeLLM(LLMClient):
    """
    Scripted chat model. Answers by prompt kind; kinds listed in `fail`
    raise instead.
    """

    def __init__(self):
        self.responses: Dict[str, str] = dict(DEFAULT_RESPONSES)
        self.fail: set[str] = set()
        self.calls: List[tuple[str, List[Dict[str, str]], float]] = []

    def route(self, messages: List[Dict[str, str]]) -> str:
        text = "\n".join(m.get("content", "") for m in messages)
        for name, marker in ROUTES:
            if marker in text:
                return name
        return "unknown"

    @property
    def routes(self) -> List[str]:
        return [name for name, _, _ in self.calls]

    def prompts(self, name: str) -> List[str]:
        return ["\n".join(m["content"] for m in msgs) for n, msgs, _ in self.calls if n == name]

    def chat(self, messages, temperature: float = 0.2, model: Optional[str] = None) -> str:
        name = self.route(messages)
        self.calls.append((name, messages, temperature))
        if name in self.fail:
            raise RuntimeError(f"{name} unavailable")
        return self.responses.get(name, "")


TOPICS = ["上班", "头", "血压", "挂号", "发烧", "地址"]


class FakeEmbedder(EmbeddingClient):
    """
    One dimension per topic keyword. Text without any topic embeds to the
    zero vector, which never scores above a threshold.
    """

    def __init__(self):
        self.fail = False
        self.calls = 0

    def embed(self, texts: List[str]) -> np.ndarray:
        self.calls += 1
        if self.fail:
            raise RuntimeError("embedding service unavailable")
        rows = [[1.0 if topic in text else 0.0 for topic in TOPICS] for text in texts]
        return np.asarray(rows, dtype=np.float32).reshape(len(texts), len(TOPICS))


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite:///{tmp_path / 'medchat-test.db'}",
        DOCTOR_NAME="张医生",
        CONSULTATION_FEE_CENTS=1999,
        PAY_LINK_PREFIX="/patient/pay",
    )


@pytest.fixture
def database(settings):
    db = Database(settings.database_url)
    db.init_db()
    yield db
    db.dispose()


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def container(settings, database, llm, embedder):
    return build_container(settings, database=database, llm_client=llm, embedding_client=embedder)


@pytest.fixture
def patient(container):
    """A patient without the assistant intro, counter at 0."""
    return container.patients.create_patient("李雷", age=45, gender="男", condition="高血压", send_intro=False)


@pytest.fixture
def client(container):
    with TestClient(create_app(container)) as test_client:
        yield test_client
