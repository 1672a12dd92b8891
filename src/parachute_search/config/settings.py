"""Settings management for parachute-search."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from .loader import ConfigPaths, get_config_paths

logger = logging.getLogger(__name__)

OLLAMA_BASE_URL = "http://localhost:11434/v1"
OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODELS = {
    "ollama": "nomic-embed-text",
    "openai": "text-embedding-3-small",
}

_TRUE_VALUES = {"1", "true", "yes", "y", "on"}
_FALSE_VALUES = {"0", "false", "no", "n", "off"}


@dataclass
class Settings:
    """Application settings loaded from environment and config files."""

    # Paths
    base_dir: Path = field(default_factory=Path.cwd)
    config_paths: Optional[ConfigPaths] = None
    records_dir: Path = field(default_factory=lambda: Path.cwd() / "captures")
    index_dir: Path = field(default_factory=lambda: Path.cwd() / ".parachute" / "index")

    # Embedding backend
    embedding_provider: str = "ollama"
    embedding_model: str = DEFAULT_MODELS["ollama"]
    embedding_dimensions: int = 256
    embedding_api_base_url: str = OLLAMA_BASE_URL
    embedding_api_key: str = ""
    embedding_batch_size: int = 64

    # Chunking and retrieval tuning (non-binding defaults)
    similarity_threshold: float = 0.5
    max_chunk_tokens: int = 500
    rrf_k: int = 60
    top_k: int = 20
    snippet_length: int = 150

    # Orchestrator
    store_retry_backoff: float = 0.5

    # Runtime
    debug_log: bool = False
    verbose: bool = False

    @property
    def index_db_path(self) -> Path:
        return self.index_dir / "index.db"


def load_search_config(search_file: Optional[Path]) -> dict[str, Any]:
    """Load search.yaml and flatten it into Settings field names."""
    if not search_file or not search_file.exists():
        return {}

    try:
        with open(search_file, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Ignoring unreadable config file {search_file}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Ignoring config file {search_file}: expected a mapping")
        return {}

    values: dict[str, Any] = {}
    for key in ("records_dir", "index_dir"):
        if data.get(key) is not None:
            values[key] = data[key]

    embedding = data.get("embedding") or {}
    if isinstance(embedding, dict):
        for key in ("provider", "model", "dimensions", "api_base_url", "api_key", "batch_size"):
            if embedding.get(key) is not None:
                values[f"embedding_{key}"] = embedding[key]

    search = data.get("search") or {}
    if isinstance(search, dict):
        for key in (
            "similarity_threshold",
            "max_chunk_tokens",
            "rrf_k",
            "top_k",
            "snippet_length",
            "debug_log",
        ):
            if search.get(key) is not None:
                values[key] = search[key]

    index = data.get("index") or {}
    if isinstance(index, dict) and index.get("store_retry_backoff") is not None:
        values["store_retry_backoff"] = index["store_retry_backoff"]

    return values


def _raw_value(env_name: str, file_values: dict[str, Any], key: str) -> Optional[str]:
    """Environment first, then config file; None if neither is set."""
    raw = os.getenv(env_name, "").strip()
    if raw:
        return raw
    if key in file_values:
        return str(file_values[key]).strip()
    return None


def _load_int(
    env_name: str, file_values: dict[str, Any], key: str, default: int, minimum: int = 1
) -> int:
    raw = _raw_value(env_name, file_values, key)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Invalid {env_name}={raw!r}; using default {default}")
        return default
    if value < minimum:
        logger.warning(f"{env_name} must be >= {minimum}; using default {default}")
        return default
    return value


def _load_float(
    env_name: str,
    file_values: dict[str, Any],
    key: str,
    default: float,
    minimum: float = 0.0,
    maximum: Optional[float] = None,
) -> float:
    raw = _raw_value(env_name, file_values, key)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Invalid {env_name}={raw!r}; using default {default}")
        return default
    if value < minimum or (maximum is not None and value > maximum):
        logger.warning(f"{env_name}={value} out of range; using default {default}")
        return default
    return value


def _load_bool(env_name: str, file_values: dict[str, Any], key: str, default: bool) -> bool:
    raw = _raw_value(env_name, file_values, key)
    if raw is None:
        return default
    lowered = raw.lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    return default


def _load_path(
    env_name: str, file_values: dict[str, Any], key: str, default: Path, base_dir: Path
) -> Path:
    raw = _raw_value(env_name, file_values, key)
    path = Path(raw).expanduser() if raw else default
    if not path.is_absolute():
        path = base_dir / path
    return path


def load_settings(base_dir: Optional[Path] = None) -> Settings:
    """
    Load settings from all configuration sources.

    Priority (highest to lowest):
    1. Environment variables (including from .env files)
    2. Local .parachute/search.yaml
    3. User ~/.config/parachute-search/search.yaml
    4. Built-in defaults
    """
    base_dir = Path(base_dir) if base_dir else Path.cwd()
    paths = get_config_paths(base_dir)

    # Load .env file (local takes priority)
    if paths.env_file:
        load_dotenv(paths.env_file, override=True)

    file_values = load_search_config(paths.search_file)

    provider = (
        _raw_value("EMBEDDING_PROVIDER", file_values, "embedding_provider") or "ollama"
    ).lower()
    if provider not in DEFAULT_MODELS:
        logger.warning(f"Unknown EMBEDDING_PROVIDER={provider!r}; using ollama")
        provider = "ollama"
    default_base_url = OPENAI_BASE_URL if provider == "openai" else OLLAMA_BASE_URL

    return Settings(
        base_dir=base_dir,
        config_paths=paths,
        records_dir=_load_path(
            "PARACHUTE_RECORDS_DIR", file_values, "records_dir", Path("captures"), base_dir
        ),
        index_dir=_load_path(
            "PARACHUTE_INDEX_DIR",
            file_values,
            "index_dir",
            Path(".parachute") / "index",
            base_dir,
        ),
        embedding_provider=provider,
        embedding_model=(
            _raw_value("EMBEDDING_MODEL", file_values, "embedding_model")
            or DEFAULT_MODELS[provider]
        ),
        embedding_dimensions=_load_int(
            "EMBEDDING_DIMENSIONS", file_values, "embedding_dimensions", 256
        ),
        embedding_api_base_url=(
            _raw_value("EMBEDDING_API_BASE_URL", file_values, "embedding_api_base_url")
            or default_base_url
        ),
        embedding_api_key=_raw_value("EMBEDDING_API_KEY", file_values, "embedding_api_key")
        or "",
        embedding_batch_size=_load_int(
            "EMBEDDING_BATCH_SIZE", file_values, "embedding_batch_size", 64
        ),
        similarity_threshold=_load_float(
            "SEARCH_SIMILARITY_THRESHOLD",
            file_values,
            "similarity_threshold",
            0.5,
            minimum=0.0,
            maximum=1.0,
        ),
        max_chunk_tokens=_load_int(
            "SEARCH_MAX_CHUNK_TOKENS", file_values, "max_chunk_tokens", 500
        ),
        rrf_k=_load_int("SEARCH_RRF_K", file_values, "rrf_k", 60),
        top_k=_load_int("SEARCH_TOP_K", file_values, "top_k", 20),
        snippet_length=_load_int("SEARCH_SNIPPET_LENGTH", file_values, "snippet_length", 150),
        store_retry_backoff=_load_float(
            "INDEX_STORE_RETRY_BACKOFF", file_values, "store_retry_backoff", 0.5
        ),
        debug_log=_load_bool("SEARCH_DEBUG_LOG", file_values, "debug_log", False),
    )


# Global settings instance (used by the CLI composition root only)
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create global settings instance."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Reset global settings (useful for testing or directory change)."""
    global _settings
    _settings = None
