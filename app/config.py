import os
from dataclasses import dataclass, field
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _int_env(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _float_env(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass
class Config:
    """Configuration settings for the course chat assistant"""
    # OpenAI settings
    OPENAI_API_KEY: str = field(default_factory=lambda: os.getenv("OPENAI_API_KEY", ""))
    OPENAI_MODEL: str = field(default_factory=lambda: os.getenv("OPENAI_MODEL", "gpt-3.5-turbo"))
    OPENAI_TEMPERATURE: float = field(default_factory=lambda: _float_env("OPENAI_TEMPERATURE", 0.7))
    OPENAI_MAX_TOKENS: int = field(default_factory=lambda: _int_env("OPENAI_MAX_TOKENS", 500))
    EMBEDDING_MODEL: str = field(default_factory=lambda: os.getenv("EMBEDDING_MODEL", "text-embedding-3-small"))

    # MongoDB settings
    MONGO_URI: str = field(default_factory=lambda: os.getenv("MONGO_URI", "mongodb://localhost:27017"))
    MONGO_DB: str = field(default_factory=lambda: os.getenv("MONGO_DB", "student_dashboard"))

    # Knowledge base settings
    CHUNK_SIZE: int = field(default_factory=lambda: _int_env("CHUNK_SIZE", 1000))
    SEARCH_LIMIT: int = field(default_factory=lambda: _int_env("SEARCH_LIMIT", 5))
    SEARCH_MIN_SCORE: float = field(default_factory=lambda: _float_env("SEARCH_MIN_SCORE", 0.7))

    # Chat settings
    MAX_HISTORY_MESSAGES: int = field(default_factory=lambda: _int_env("MAX_HISTORY_MESSAGES", 20))
    RAG_LIMIT: int = field(default_factory=lambda: _int_env("RAG_LIMIT", 3))
    RAG_MIN_SCORE: float = field(default_factory=lambda: _float_env("RAG_MIN_SCORE", 0.5))

    # Rate limiting (0 disables it)
    RATE_LIMIT_MAX_REQUESTS: int = field(default_factory=lambda: _int_env("RATE_LIMIT_MAX_REQUESTS", 0))
    RATE_LIMIT_WINDOW_SECONDS: float = field(default_factory=lambda: _float_env("RATE_LIMIT_WINDOW_SECONDS", 60))

    LOG_LEVEL: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))


config = Config()
