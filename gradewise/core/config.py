"""Settings for the Gradewise service.

Values come from the process environment, then ``.env`` at the repository
root. Retrieval and streaming constants live here too so deployments can
tune them without code changes.
"""
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv
from google.auth import default
from google.auth.transport.requests import Request
from google.oauth2 import service_account
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from gradewise.core.errors import ConfigurationError


ROOT = Path(__file__).resolve().parents[2]
load_dotenv(dotenv_path=ROOT / ".env", override=False)

DEFAULT_JWT_SECRET = "gradewise-dev-secret-change-me"
STORE_BACKENDS = ("redis", "memory")


class Settings(BaseSettings):
    """Environment-driven configuration."""

    model_config = SettingsConfigDict(case_sensitive=False, populate_by_name=True, extra="ignore")

    # Vertex AI
    project_id: str = Field(
        default="",
        validation_alias=AliasChoices("PROJECT_ID", "GOOGLE_CLOUD_PROJECT", "GCP_PROJECT"),
    )
    region: str = Field(
        default="us-central1",
        validation_alias=AliasChoices("REGION", "GOOGLE_CLOUD_REGION", "LOCATION"),
    )
    service_account_file: str = Field(
        default="",
        validation_alias=AliasChoices("GOOGLE_APPLICATION_CREDENTIALS", "SERVICE_ACCOUNT_FILE"),
    )
    generation_model: str = Field(default="gemini-2.5-flash", alias="GENERATION_MODEL")
    title_model: str = Field(default="gemini-2.0-flash-lite", alias="TITLE_MODEL")
    embedding_model: str = Field(default="text-embedding-004", alias="EMBEDDING_MODEL")
    generation_temperature: float = Field(default=0.7, alias="GENERATION_TEMPERATURE")
    max_output_tokens: int = Field(default=2048, alias="MAX_OUTPUT_TOKENS")

    # Retrieval & indexing
    relevance_threshold: float = Field(default=0.3, alias="RELEVANCE_THRESHOLD")
    retrieval_top_k: int = Field(default=10, alias="RETRIEVAL_TOP_K")
    embedding_max_chars: int = Field(default=10000, alias="EMBEDDING_MAX_CHARS")
    support_threshold: float = Field(default=70.0, alias="SUPPORT_THRESHOLD")

    chunk_batch_delay_ms: int = Field(default=50, alias="CHUNK_BATCH_DELAY_MS")
    aggregate_max_retries: int = Field(default=10, alias="AGGREGATE_MAX_RETRIES")

    # Storage
    store_backend: str = Field(default="redis", alias="STORE_BACKEND")
    redis_host: str = Field(default="localhost", alias="REDIS_HOST")
    redis_port: int = Field(default=6379, alias="REDIS_PORT")
    redis_password: Optional[str] = Field(default=None, alias="REDIS_PASSWORD")
    redis_db: int = Field(default=0, alias="REDIS_DB")
    conversation_ttl_days: int = Field(default=30, alias="CONVERSATION_TTL_DAYS")

    # Auth
    jwt_secret_key: str = Field(default=DEFAULT_JWT_SECRET, alias="JWT_SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")

    environment: str = Field(default="development", alias="ENVIRONMENT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    cors_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:3000", "http://127.0.0.1:3000"],
        alias="CORS_ORIGINS",
    )

    def validate_required_settings(self):
        """Raise ConfigurationError for settings the service cannot run without."""
        if self.store_backend not in STORE_BACKENDS:
            raise ConfigurationError(
                f"STORE_BACKEND must be one of {', '.join(STORE_BACKENDS)}, got '{self.store_backend}'"
            )
        if not self.project_id:
            raise ConfigurationError("PROJECT_ID is not set; Vertex AI embeddings and generation need it")
        if self.environment == "production" and self.jwt_secret_key == DEFAULT_JWT_SECRET:
            raise ConfigurationError("JWT_SECRET_KEY must be overridden in production")


settings = Settings()


def get_vertex_credentials():
    """Service-account credentials when a key file is configured, otherwise ADC.

    Example:
        >>> vertexai.init(project=settings.project_id, location=settings.region,
        ...               credentials=get_vertex_credentials())
    """
    scopes = ["https://www.googleapis.com/auth/cloud-platform"]
    if settings.service_account_file:
        return service_account.Credentials.from_service_account_file(
            settings.service_account_file,
            scopes=scopes
        )

    credentials, _ = default(scopes=scopes)
    credentials.refresh(Request())
    return credentials


# Partial setups are allowed outside production
if settings.environment not in ("test", "development"):
    settings.validate_required_settings()
elif settings.environment == "development":
    try:
        settings.validate_required_settings()
    except ConfigurationError as e:
        print(f"Configuration warning: {e}")
