"""Configuration settings for the chat assistant service"""
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from pydantic_settings import BaseSettings

from core.conversation.context.storage import StorageRegistry
from core.services.generation_service import BackendRegistry


def detect_environment() -> str:
    """
    Detect current environment from the ENVIRONMENT variable.
    Returns: 'dev', 'staging', or 'prod'
    """
    explicit_env = os.getenv("ENVIRONMENT", "").lower()
    if explicit_env == "production":
        return "prod"
    if explicit_env in ("dev", "staging", "prod"):
        return explicit_env
    return "dev"


class Settings(BaseSettings):
    """Application settings using Pydantic for validation and environment variable loading"""

    # Generation backend
    AI_PROVIDER: str = "openai"
    AI_API_KEY: Optional[str] = None
    AI_BASE_URL: Optional[str] = None
    AI_DEFAULT_MODEL: Optional[str] = None
    AI_TEMPERATURE: float = 0.7
    AI_MAX_TOKENS: int = 500
    AI_REQUEST_TIMEOUT: float = 60

    # Thread memory
    MEMORY_TYPE: str = "session"  # session | persistent
    STORAGE_PROVIDER: str = "memory"
    THREAD_TTL: int = 3600
    MAX_THREADS: int = 1000
    MAX_FUNCTION_CALLS: int = 10

    # SQL storage
    DB_NAME: str = "chat_assistant"
    DB_USER: str = "chat_assistant"
    DB_PASS: Optional[str] = None
    DB_HOST: Optional[str] = None
    DB_PORT: int = 5432

    # MongoDB storage
    MONGODB_URI: str = "mongodb://localhost:27017"
    MONGODB_DB: str = "chat_assistant"

    # File storage
    THREAD_STORAGE_PATH: str = "thread_storage"

    # SMS configuration (Twilio)
    TWILIO_ACCOUNT_SID: Optional[str] = None
    TWILIO_AUTH_TOKEN: Optional[str] = None
    TWILIO_PHONE_NUMBER: Optional[str] = None

    # Application settings
    ENVIRONMENT: str = detect_environment()
    LOG_LEVEL: str = "INFO"

    @property
    def is_production(self) -> bool:
        """Check if running in production environment"""
        return self.ENVIRONMENT == "prod"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment"""
        return self.ENVIRONMENT == "dev"

    def storage_options(self) -> Dict[str, Any]:
        """Constructor options for the configured storage provider"""
        if self.STORAGE_PROVIDER == "sql":
            return {
                "dbname": self.DB_NAME,
                "user": self.DB_USER,
                "password": self.DB_PASS,
                "host": self.DB_HOST,
                "port": self.DB_PORT,
            }
        if self.STORAGE_PROVIDER == "mongodb":
            return {"uri": self.MONGODB_URI, "db_name": self.MONGODB_DB}
        if self.STORAGE_PROVIDER == "file":
            return {"storage_path": self.THREAD_STORAGE_PATH}
        return {}

    class Config:
        # Load from .env file
        env_file = ".env"
        case_sensitive = False


@dataclass
class AssistantConfig:
    """Everything an Assistant needs at construction"""
    provider: str = "openai"
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    default_model: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 500
    request_timeout: float = 60
    memory_type: str = "session"
    storage_provider: str = "memory"
    storage_options: Dict[str, Any] = field(default_factory=dict)
    ttl: Optional[float] = 3600
    max_threads: int = 1000
    max_function_calls: int = 10
    storage_registry: StorageRegistry = field(default_factory=StorageRegistry)
    backend_registry: BackendRegistry = field(default_factory=BackendRegistry)

    def __post_init__(self):
        if self.memory_type not in ("session", "persistent"):
            raise ValueError(f"Invalid memory type: {self.memory_type}")
        if self.max_threads < 1:
            raise ValueError("max_threads must be at least 1")
        if self.max_function_calls < 0:
            raise ValueError("max_function_calls must not be negative")

    def backend_options(self) -> Dict[str, Any]:
        return {
            "api_key": self.api_key,
            "base_url": self.base_url,
            "default_model": self.default_model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "request_timeout": self.request_timeout,
        }

    @classmethod
    def from_settings(cls, settings: 'Settings', **overrides) -> 'AssistantConfig':
        values = dict(
            provider=settings.AI_PROVIDER,
            api_key=settings.AI_API_KEY,
            base_url=settings.AI_BASE_URL,
            default_model=settings.AI_DEFAULT_MODEL,
            temperature=settings.AI_TEMPERATURE,
            max_tokens=settings.AI_MAX_TOKENS,
            request_timeout=settings.AI_REQUEST_TIMEOUT,
            memory_type=settings.MEMORY_TYPE,
            storage_provider=settings.STORAGE_PROVIDER,
            storage_options=settings.storage_options(),
            ttl=settings.THREAD_TTL,
            max_threads=settings.MAX_THREADS,
            max_function_calls=settings.MAX_FUNCTION_CALLS,
        )
        values.update(overrides)
        return cls(**values)


# Global settings instance
settings = Settings()
