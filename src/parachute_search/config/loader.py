"""Configuration file discovery and initialization."""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

LOCAL_DIR_NAME = ".parachute"
SEARCH_CONFIG_FILENAME = "search.yaml"


@dataclass
class ConfigPaths:
    """Discovered configuration paths."""

    # Directories
    local_dir: Optional[Path] = None  # .parachute/ in current directory
    user_dir: Optional[Path] = None  # ~/.config/parachute-search/

    # Specific files (resolved from directories)
    env_file: Optional[Path] = None
    search_file: Optional[Path] = None

    def __post_init__(self):
        """Resolve file paths from directories."""
        # Priority: local > user
        self.env_file = self._find_file(".env")
        self.search_file = self._find_file(SEARCH_CONFIG_FILENAME)

    def _find_file(self, filename: str) -> Optional[Path]:
        """Find a config file in priority order."""
        for directory in (self.local_dir, self.user_dir):
            if directory:
                candidate = directory / filename
                if candidate.exists():
                    return candidate
        return None


def get_config_paths(
    base_dir: Optional[Path] = None,
    user_dir: Optional[Path] = None,
) -> ConfigPaths:
    """
    Discover configuration paths.

    Priority order (highest to lowest):
    1. .parachute/ in the base directory (default: current directory)
    2. ~/.config/parachute-search/

    Returns:
        ConfigPaths with discovered locations
    """
    base_dir = base_dir or Path.cwd()

    local_dir = base_dir / LOCAL_DIR_NAME
    local_dir = local_dir if local_dir.exists() else None

    user_dir = user_dir or Path.home() / ".config" / "parachute-search"
    user_dir = user_dir if user_dir.exists() else None

    return ConfigPaths(local_dir=local_dir, user_dir=user_dir)


_SEARCH_TEMPLATE = """\
# parachute-search configuration
# Environment variables (or .env) take precedence over these values.

records_dir: captures
index_dir: .parachute/index

embedding:
  provider: ollama            # ollama | openai
  model: nomic-embed-text
  dimensions: 256             # Matryoshka-truncated from the model's native size
  api_base_url: http://localhost:11434/v1
  batch_size: 64

search:
  similarity_threshold: 0.5   # semantic boundary between consecutive sentences
  max_chunk_tokens: 500
  rrf_k: 60
  top_k: 20
  snippet_length: 150
  debug_log: false
"""


def init_local_config(target_dir: Optional[Path] = None) -> Optional[Path]:
    """
    Create .parachute/search.yaml with default values.

    Args:
        target_dir: Directory to initialize (default: current directory)

    Returns:
        Path of the written file, or None if it already existed.
    """
    target_dir = target_dir or Path.cwd()
    config_dir = target_dir / LOCAL_DIR_NAME
    config_file = config_dir / SEARCH_CONFIG_FILENAME
    if config_file.exists():
        return None

    config_dir.mkdir(parents=True, exist_ok=True)
    config_file.write_text(_SEARCH_TEMPLATE, encoding="utf-8")
    return config_file
