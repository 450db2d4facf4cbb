import os
import logging
from typing import List
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

DEFAULT_PROBE_TABLES = (
    "users,profiles,accounts,customers,orders,order_items,products,categories,"
    "transactions,payments,invoices,employees,departments,teachers,students,"
    "courses,enrollments,assignments,grades,posts,comments,messages,events,items"
)


class Settings:
    """Application configuration settings."""

    # Application database (users, stored connections, query history)
    DB_HOST: str = os.getenv("DB_HOST", "localhost")
    DB_DATABASE: str = os.getenv("DB_DATABASE", "mydb")
    DB_USER: str = os.getenv("DB_USER", "postgres")
    DB_PASSWORD: str = os.getenv("DB_PASSWORD", "root")
    DB_PORT: int = int(os.getenv("DB_PORT", 5432))

    # JWT Configuration
    JWT_SECRET_KEY: str = os.getenv("JWT_SECRET_KEY", "your-super-secret-key-that-you-should-change")
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 30))

    # Schema cache
    SCHEMA_CACHE_TTL: int = int(os.getenv("SCHEMA_CACHE_TTL", 600))
    CACHE_BACKEND: str = os.getenv("CACHE_BACKEND", "memory").lower()

    # Redis Configuration (only used when CACHE_BACKEND=redis)
    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", 6379))
    REDIS_DB: int = int(os.getenv("REDIS_DB", 0))

    # Language model provider (OpenAI-compatible chat completions)
    LLM_API_URL: str = os.getenv("LLM_API_URL", "https://openrouter.ai/api/v1/chat/completions")
    LLM_API_KEY: str = os.getenv(
        "LLM_API_KEY", os.getenv("OPENROUTER_API_KEY", os.getenv("OPENAI_API_KEY", ""))
    )
    LLM_MODEL: str = os.getenv("LLM_MODEL", "openai/gpt-4o-mini")
    LLM_TEMPERATURE: float = float(os.getenv("LLM_TEMPERATURE", 0.2))
    LLM_MAX_TOKENS: int = int(os.getenv("LLM_MAX_TOKENS", 500))
    LLM_TIMEOUT: int = int(os.getenv("LLM_TIMEOUT", 60))
    LLM_RETRIES: int = int(os.getenv("LLM_RETRIES", 3))

    # External (user) databases
    REMOTE_DB_TIMEOUT: int = int(os.getenv("REMOTE_DB_TIMEOUT", 30))
    SCHEMA_PROBE_TABLES_RAW: str = os.getenv("SCHEMA_PROBE_TABLES", DEFAULT_PROBE_TABLES)

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    @property
    def database_config(self) -> dict:
        """Get database configuration dictionary."""
        return {
            "host": self.DB_HOST,
            "database": self.DB_DATABASE,
            "user": self.DB_USER,
            "password": self.DB_PASSWORD,
            "port": self.DB_PORT
        }

    @property
    def schema_probe_tables(self) -> List[str]:
        """Candidate table names for row-sampling discovery, in probe order."""
        return [name.strip() for name in self.SCHEMA_PROBE_TABLES_RAW.split(",") if name.strip()]


def configure_logging(level: str = "INFO"):
    """Configure root logging once for the process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


# Global settings instance
settings = Settings()
