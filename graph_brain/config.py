import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv


# Load environment variables from a .env file if present.
load_dotenv()


EMBEDDING_BACKENDS = ("openai", "local")


class ConfigurationError(RuntimeError):
    """Raised when one or more environment variables are missing or invalid."""

    def __init__(self, problems: Dict[str, str]):
        self.problems = problems
        details = "; ".join(f"{name}: {reason}" for name, reason in problems.items())
        super().__init__(f"Invalid configuration: {details}")


@dataclass
class Settings:
    """Application configuration loaded from environment variables."""

    llm_base_url: str
    llm_api_key: str
    llm_model_name: str
    llm_max_output_tokens: int
    llm_temperature: Optional[float]
    llm_max_retries: int

    embedding_backend: str  # "openai" or "local"
    embedding_base_url: str
    embedding_api_key: str
    embedding_model_name: str
    embedder_model_path: Path
    embedder_device: str
    embedding_max_tokens_per_batch: int

    chroma_host: Optional[str]
    chroma_port: int
    chroma_db_path: Path

    neo4j_uri: str
    neo4j_username: str
    neo4j_password: str
    neo4j_database: Optional[str]

    @property
    def uses_local_embedder(self) -> bool:
        return self.embedding_backend == "local"

    @property
    def uses_chroma_server(self) -> bool:
        return bool(self.chroma_host)


_settings: Settings | None = None


class _EnvReader:
    """Collects every problem instead of failing on the first one."""

    def __init__(self, environ: Dict[str, str]):
        self._environ = environ
        self.problems: Dict[str, str] = {}

    def text(self, name: str, default: Optional[str] = None) -> str:
        value = self._environ.get(name, default)
        if value is None or not value.strip():
            self.problems[name] = "is required"
            return ""
        return value.strip()

    def optional(self, name: str) -> Optional[str]:
        value = self._environ.get(name)
        if value is None or not value.strip():
            return None
        return value.strip()

    def url(self, name: str, default: Optional[str] = None, schemes: Optional[List[str]] = None) -> str:
        value = self.text(name, default)
        if not value:
            return value
        parsed = urlparse(value)
        if not parsed.scheme or not parsed.netloc:
            self.problems[name] = f"is not a valid URL: {value!r}"
        elif schemes and parsed.scheme not in schemes:
            self.problems[name] = f"scheme must be one of {schemes}, got {parsed.scheme!r}"
        return value

    def number(self, name: str, default: str, cast: Callable = int, minimum: float = 0):
        raw = self._environ.get(name, default)
        try:
            value = cast(raw)
        except (TypeError, ValueError):
            self.problems[name] = f"must be a number, got {raw!r}"
            return cast(default)
        if value < minimum:
            self.problems[name] = f"must be >= {minimum}, got {value}"
        return value

    def choice(self, name: str, default: str, choices) -> str:
        value = self._environ.get(name, default).strip().lower()
        if value not in choices:
            self.problems[name] = f"must be one of {list(choices)}, got {value!r}"
        return value


def load_settings(environ: Optional[Dict[str, str]] = None) -> Settings:
    """
    Build and validate a Settings instance from the given mapping
    (``os.environ`` by default).

    Environment variables:
      - LLM_BASE_URL, LLM_API_KEY (required)
      - LLM_MODEL_NAME, LLM_MAX_OUTPUT_TOKENS, LLM_TEMPERATURE, LLM_MAX_RETRIES
      - EMBEDDING_BACKEND ("openai" or "local")
      - EMBEDDING_BASE_URL, EMBEDDING_API_KEY (default to the LLM values)
      - EMBEDDING_MODEL_NAME, EMBEDDING_MAX_TOKENS_PER_BATCH
      - EMBEDDER_MODEL_PATH, EMBEDDER_DEVICE (local backend only)
      - CHROMA_HOST, CHROMA_PORT or CHROMA_DB_PATH
      - NEO4J_URI, NEO4J_USERNAME, NEO4J_PASSWORD (required), NEO4J_DATABASE

    Raises ConfigurationError listing every missing or invalid variable.
    """
    env = _EnvReader(dict(os.environ if environ is None else environ))

    llm_base_url = env.url("LLM_BASE_URL", schemes=["http", "https"])
    llm_api_key = env.text("LLM_API_KEY")
    llm_model_name = env.text("LLM_MODEL_NAME", "gpt-5-mini")
    llm_max_output_tokens = env.number("LLM_MAX_OUTPUT_TOKENS", "2048", minimum=1)
    llm_max_retries = env.number("LLM_MAX_RETRIES", "0")
    llm_temperature: Optional[float] = None
    if env.optional("LLM_TEMPERATURE") is not None:
        llm_temperature = env.number("LLM_TEMPERATURE", "0", cast=float)

    embedding_backend = env.choice("EMBEDDING_BACKEND", "openai", EMBEDDING_BACKENDS)
    embedding_base_url = llm_base_url
    embedding_api_key = llm_api_key
    if embedding_backend == "openai":
        embedding_base_url = env.url(
            "EMBEDDING_BASE_URL", llm_base_url or None, schemes=["http", "https"]
        )
        embedding_api_key = env.text("EMBEDDING_API_KEY", llm_api_key or None)
    embedding_model_name = env.text("EMBEDDING_MODEL_NAME", "text-embedding-3-small")
    embedder_model_path = Path(
        env.optional("EMBEDDER_MODEL_PATH") or "./models/bge-m3"
    ).resolve()
    embedder_device = env.text("EMBEDDER_DEVICE", "cpu")
    embedding_max_tokens_per_batch = env.number(
        "EMBEDDING_MAX_TOKENS_PER_BATCH", "7000", minimum=1
    )

    chroma_host = env.optional("CHROMA_HOST")
    chroma_port = env.number("CHROMA_PORT", "8000", minimum=1)
    chroma_db_path = Path(
        env.optional("CHROMA_DB_PATH") or "./data/chroma_db"
    ).resolve()

    neo4j_uri = env.url(
        "NEO4J_URI",
        schemes=["bolt", "bolt+s", "bolt+ssc", "neo4j", "neo4j+s", "neo4j+ssc"],
    )
    neo4j_username = env.text("NEO4J_USERNAME")
    neo4j_password = env.text("NEO4J_PASSWORD")
    neo4j_database = env.optional("NEO4J_DATABASE")

    if env.problems:
        raise ConfigurationError(env.problems)

    return Settings(
        llm_base_url=llm_base_url,
        llm_api_key=llm_api_key,
        llm_model_name=llm_model_name,
        llm_max_output_tokens=llm_max_output_tokens,
        llm_temperature=llm_temperature,
        llm_max_retries=llm_max_retries,
        embedding_backend=embedding_backend,
        embedding_base_url=embedding_base_url,
        embedding_api_key=embedding_api_key,
        embedding_model_name=embedding_model_name,
        embedder_model_path=embedder_model_path,
        embedder_device=embedder_device,
        embedding_max_tokens_per_batch=embedding_max_tokens_per_batch,
        chroma_host=chroma_host,
        chroma_port=chroma_port,
        chroma_db_path=chroma_db_path,
        neo4j_uri=neo4j_uri,
        neo4j_username=neo4j_username,
        neo4j_password=neo4j_password,
        neo4j_database=neo4j_database,
    )


def _ensure_directories(settings: Settings) -> None:
    """
    Ensure that the local Chroma directory exists when no server is configured.
    """
    if not settings.uses_chroma_server:
        settings.chroma_db_path.mkdir(parents=True, exist_ok=True)


def get_settings() -> Settings:
    """
    Return the singleton Settings instance populated from environment variables.

    Validation happens on the first call; an invalid environment raises
    ConfigurationError and nothing is cached.
    """
    global _settings
    if _settings is not None:
        return _settings

    settings = load_settings()
    _ensure_directories(settings)
    _settings = settings
    return _settings


def reset_settings() -> None:
    """Forget the cached Settings so the next get_settings() re-reads the environment."""
    global _settings
    _settings = None


__all__ = [
    "ConfigurationError",
    "EMBEDDING_BACKENDS",
    "Settings",
    "get_settings",
    "load_settings",
    "reset_settings",
]
