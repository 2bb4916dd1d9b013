from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    database_url: str = Field("sqlite:///./data/local.db", validation_alias="DATABASE_URL")

    openai_api_key: str | None = Field(None, validation_alias="OPENAI_API_KEY")
    openai_base_url: str | None = Field(None, validation_alias="OPENAI_BASE_URL")
    llm_model: str = Field("glm-4-flash", validation_alias="LLM_MODEL")

    # "openai" hits an OpenAI-compatible /embeddings endpoint,
    # "sentence-transformers" runs a local model.
    embedding_backend: str = Field("openai", validation_alias="EMBEDDING_BACKEND")
    embedding_model: str = Field("embedding-3", validation_alias="EMBEDDING_MODEL")
    embedding_dim: int | None = Field(None, validation_alias="EMBEDDING_DIM")

    doctor_name: str = Field("张医生", validation_alias="DOCTOR_NAME")
    consultation_fee_cents: int = Field(1999, validation_alias="CONSULTATION_FEE_CENTS")
    pay_link_prefix: str = Field("/patient/pay", validation_alias="PAY_LINK_PREFIX")

    log_level: str = Field("INFO", validation_alias="LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
