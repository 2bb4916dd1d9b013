from __future__ import annotations

from medchat.config import Settings
from medchat.db import Database
from medchat.logging_config import build_logging_config


def test_settings_read_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'env.db'}")
    monkeypatch.setenv("DOCTOR_NAME", "王医生")
    monkeypatch.setenv("CONSULTATION_FEE_CENTS", "2999")

    settings = Settings(_env_file=None)

    assert settings.doctor_name == "王医生"
    assert settings.consultation_fee_cents == 2999
    assert settings.llm_model == "glm-4-flash"
    assert settings.embedding_backend == "openai"


def test_database_creates_parent_directory(tmp_path):
    db = Database(f"sqlite:///{tmp_path / 'nested' / 'dir' / 'local.db'}")
    db.init_db()
    db.init_db()  # idempotent
    db.dispose()
    assert (tmp_path / "nested" / "dir" / "local.db").exists()


def test_logging_config_levels():
    config = build_logging_config("DEBUG")
    assert config["loggers"]["medchat"]["level"] == "DEBUG"
    assert config["handlers"]["console"]["formatter"] == "default"
