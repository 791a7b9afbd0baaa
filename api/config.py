"""
Configuración centralizada de MILA.

Usa Pydantic BaseSettings para:
- Validar TODAS las variables de entorno al startup
- Proveer tipos seguros y defaults documentados
- Fallar rápido si falta config crítica (GROQ_API_KEY)
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Raíz del proyecto (donde vive .env)
PROJECT_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Configuración tipada y validada de MILA."""

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",  # Ignorar env vars no declaradas
    )

    # LLM / Groq
    GROQ_API_KEY: str  # Requerida: sin key no arranca el agente
    LLM_MODEL: str = "llama-3.3-70b-versatile"
    AGENT_MAX_TOKENS: int = Field(default=1024, gt=0)
    AGENT_MAX_ITERATIONS: int = Field(default=8, ge=1)

    # Embeddings
    EMBEDDING_MODEL: str = "paraphrase-multilingual-MiniLM-L12-v2"

    # Qdrant
    QDRANT_URL: str = "http://localhost:6333"
    QDRANT_API_KEY: Optional[str] = None
    QDRANT_COLLECTION: str = "yoga_knowledge"
    SEARCH_LIMIT: int = Field(default=7, ge=1)

    # Conversaciones
    CONVERSATION_WINDOW: int = Field(default=20, ge=1)
    CONTEXT_TURNS: int = Field(default=5, ge=0)
    CONVERSATION_MAX_AGE_DAYS: int = Field(default=7, ge=1)

    # Rate limiting (por remitente, ventana fija)
    RATE_LIMIT_MAX_MESSAGES: int = Field(default=10, ge=1)
    RATE_LIMIT_WINDOW_MS: int = Field(default=60_000, gt=0)

    # Solo se atienden mensajes con este prefijo (None = todos)
    INBOUND_REQUIRED_PREFIX: Optional[str] = None

    # Timeouts y reintentos de servicios externos
    LLM_TIMEOUT_SECONDS: float = 60.0
    EMBED_TIMEOUT_SECONDS: float = 30.0
    VECTOR_TIMEOUT_SECONDS: float = 30.0
    RETRY_ATTEMPTS: int = Field(default=3, ge=1)
    RETRY_BASE_DELAY: float = 0.5

    DEFAULT_TIMEZONE: str = "Asia/Jakarta"

    # WhatsApp
    WHATSAPP_TOKEN: Optional[str] = None
    WHATSAPP_PHONE_NUMBER_ID: Optional[str] = None
    WHATSAPP_VERIFY_TOKEN: str = "mila_webhook"

    # Database
    DATABASE_PATH: str = "database/sqlite/mila.db"

    # API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000

    @property
    def db_full_path(self) -> Path:
        """Ruta absoluta a la base de datos."""
        db = Path(self.DATABASE_PATH)
        if db.is_absolute():
            return db
        return PROJECT_ROOT / db


@lru_cache
def get_settings() -> Settings:
    """
    Singleton de configuración (cacheado).

    Falla inmediatamente si faltan variables requeridas (GROQ_API_KEY),
    dando un error claro al startup en lugar de fallar en runtime.
    """
    return Settings()
