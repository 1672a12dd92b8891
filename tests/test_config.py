"""Tests for configuration loading behavior."""

from pathlib import Path

import pytest

from parachute_search.config import get_settings, reset_settings
from parachute_search.config.loader import get_config_paths, init_local_config
from parachute_search.config.settings import load_settings

CONFIG_ENV_VARS = [
    "PARACHUTE_RECORDS_DIR",
    "PARACHUTE_INDEX_DIR",
    "EMBEDDING_PROVIDER",
    "EMBEDDING_MODEL",
    "EMBEDDING_DIMENSIONS",
    "EMBEDDING_API_BASE_URL",
    "EMBEDDING_API_KEY",
    "EMBEDDING_BATCH_SIZE",
    "SEARCH_SIMILARITY_THRESHOLD",
    "SEARCH_MAX_CHUNK_TOKENS",
    "SEARCH_RRF_K",
    "SEARCH_TOP_K",
    "SEARCH_SNIPPET_LENGTH",
    "SEARCH_DEBUG_LOG",
    "INDEX_STORE_RETRY_BACKOFF",
]


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Run every test in an empty project with no config in the environment."""
    project_dir = tmp_path / "project"
    project_dir.mkdir()
    monkeypatch.chdir(project_dir)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    # Empty values count as unset; setenv also restores anything .env loading overrides.
    for name in CONFIG_ENV_VARS:
        monkeypatch.setenv(name, "")
    reset_settings()
    yield project_dir
    reset_settings()


def test_defaults(isolated_env):
    settings = load_settings()

    assert settings.embedding_provider == "ollama"
    assert settings.embedding_model == "nomic-embed-text"
    assert settings.embedding_dimensions == 256
    assert settings.embedding_api_base_url == "http://localhost:11434/v1"
    assert settings.similarity_threshold == 0.5
    assert settings.max_chunk_tokens == 500
    assert settings.rrf_k == 60
    assert settings.top_k == 20
    assert settings.records_dir == isolated_env / "captures"
    assert settings.index_db_path == isolated_env / ".parachute" / "index" / "index.db"
    assert settings.debug_log is False


def test_env_file_prefers_local_over_user(isolated_env, tmp_path):
    """Local .parachute/.env should override user-level configuration."""
    local_config = isolated_env / ".parachute"
    local_config.mkdir()
    (local_config / ".env").write_text("EMBEDDING_MODEL=local-model\n", encoding="utf-8")

    user_config = tmp_path / "home" / ".config" / "parachute-search"
    user_config.mkdir(parents=True)
    (user_config / ".env").write_text("EMBEDDING_MODEL=user-model\n", encoding="utf-8")

    paths = get_config_paths()
    assert paths.env_file == local_config / ".env"

    settings = load_settings()
    assert settings.embedding_model == "local-model"


def test_yaml_values_are_applied(isolated_env):
    local_config = isolated_env / ".parachute"
    local_config.mkdir()
    (local_config / "search.yaml").write_text(
        "records_dir: notes\n"
        "embedding:\n"
        "  dimensions: 128\n"
        "search:\n"
        "  similarity_threshold: 0.7\n"
        "  rrf_k: 30\n"
        "  debug_log: true\n"
        "index:\n"
        "  store_retry_backoff: 0.1\n",
        encoding="utf-8",
    )

    settings = load_settings()

    assert settings.records_dir == isolated_env / "notes"
    assert settings.embedding_dimensions == 128
    assert settings.similarity_threshold == 0.7
    assert settings.rrf_k == 30
    assert settings.debug_log is True
    assert settings.store_retry_backoff == 0.1


def test_env_overrides_yaml(isolated_env, monkeypatch):
    local_config = isolated_env / ".parachute"
    local_config.mkdir()
    (local_config / "search.yaml").write_text("search:\n  top_k: 5\n", encoding="utf-8")
    monkeypatch.setenv("SEARCH_TOP_K", "9")

    assert load_settings().top_k == 9


def test_openai_provider_changes_defaults(monkeypatch):
    monkeypatch.setenv("EMBEDDING_PROVIDER", "OpenAI")
    monkeypatch.setenv("EMBEDDING_API_KEY", "sk-test")

    settings = load_settings()

    assert settings.embedding_provider == "openai"
    assert settings.embedding_model == "text-embedding-3-small"
    assert settings.embedding_api_base_url == "https://api.openai.com/v1"
    assert settings.embedding_api_key == "sk-test"


def test_unknown_provider_falls_back_to_ollama(monkeypatch):
    monkeypatch.setenv("EMBEDDING_PROVIDER", "mystery")
    assert load_settings().embedding_provider == "ollama"


def test_invalid_numbers_fall_back_to_defaults(monkeypatch):
    """Invalid values should not crash settings loading."""
    monkeypatch.setenv("EMBEDDING_DIMENSIONS", "lots")
    monkeypatch.setenv("SEARCH_MAX_CHUNK_TOKENS", "0")
    monkeypatch.setenv("SEARCH_SIMILARITY_THRESHOLD", "1.5")

    settings = load_settings()

    assert settings.embedding_dimensions == 256
    assert settings.max_chunk_tokens == 500
    assert settings.similarity_threshold == 0.5


def test_unreadable_yaml_is_ignored(isolated_env):
    local_config = isolated_env / ".parachute"
    local_config.mkdir()
    (local_config / "search.yaml").write_text("search: [unclosed\n", encoding="utf-8")

    assert load_settings().top_k == 20


def test_absolute_paths_are_kept(tmp_path, monkeypatch):
    monkeypatch.setenv("PARACHUTE_INDEX_DIR", str(tmp_path / "elsewhere"))
    assert load_settings().index_dir == tmp_path / "elsewhere"


def test_init_local_config_writes_template_once(isolated_env):
    created = init_local_config(isolated_env)

    assert created == isolated_env / ".parachute" / "search.yaml"
    assert "rrf_k: 60" in created.read_text(encoding="utf-8")
    assert init_local_config(isolated_env) is None


def test_init_template_loads_cleanly(isolated_env):
    init_local_config(isolated_env)

    settings = load_settings()

    assert settings.embedding_dimensions == 256
    assert settings.records_dir == isolated_env / "captures"


def test_get_settings_is_cached_until_reset(isolated_env, monkeypatch):
    first = get_settings()
    assert get_settings() is first

    monkeypatch.setenv("SEARCH_TOP_K", "3")
    reset_settings()

    assert get_settings().top_k == 3


def test_user_dir_is_used_when_no_local_config(tmp_path):
    user_dir = tmp_path / "home" / ".config" / "parachute-search"
    user_dir.mkdir(parents=True)
    (user_dir / "search.yaml").write_text("search:\n  top_k: 7\n", encoding="utf-8")

    paths = get_config_paths()
    assert paths.search_file == user_dir / "search.yaml"
    assert load_settings().top_k == 7


def test_explicit_base_dir(tmp_path):
    other = tmp_path / "other"
    (other / ".parachute").mkdir(parents=True)
    (other / ".parachute" / "search.yaml").write_text("search:\n  rrf_k: 42\n")

    settings = load_settings(base_dir=other)

    assert settings.base_dir == other
    assert settings.rrf_k == 42
    assert Path(settings.records_dir).parent == other
