"""
Runtime configuration for the Saathi core.

All values come from environment variables (case-insensitive). A `.env` file
at the repository root is read as well when present so local runs match
container deployments; real environment variables win over it.

Environment configuration:
- SERVICE_NAME: Service identifier used in logs and traces (default: saathi_core)
- LOG_LEVEL / LOG_JSON: Logging level and JSON output toggle
- REDIS_URL: Shared store location; unset means single-instance in-memory store
- SCHEME_DATA_PATH: JSON file with the scheme catalogue loaded at startup
- QUERY_ABBREVIATION_DICT_PATH: Abbreviation dictionary for query normalization
- SESSION_IDLE_SECONDS: Idle window before a session is reclaimed (default: 1800)
- LLM_API_BASE / LLM_API_KEY / LLM_MODEL / LLM_TIMEOUT_SECONDS: Answer generator
"""
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

REPO_ROOT = Path(__file__).parent.parent.parent.parent
DEFAULT_SCHEME_DATA_PATH = REPO_ROOT / "data" / "schemes.json"


class Settings(BaseSettings):
    """Resolved configuration snapshot."""

    model_config = SettingsConfigDict(
        env_file=REPO_ROOT / ".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    service_name: str = "saathi_core"
    log_level: str = "INFO"
    log_json: bool = True

    # --- Shared store ---
    redis_url: Optional[str] = None
    store_retry_attempts: int = 3
    store_retry_base_delay_seconds: float = 0.05

    # --- Data files ---
    scheme_data_path: Path = DEFAULT_SCHEME_DATA_PATH
    query_abbreviation_dict_path: Optional[Path] = None

    # --- Sessions ---
    session_idle_seconds: int = 30 * 60
    session_reclaim_interval_seconds: int = 60
    session_history_cap: Optional[int] = None  # None = unbounded in normal mode
    low_bandwidth_history_cap: int = 3

    # --- Answer generator ---
    llm_api_base: str = "https://api.openai.com/v1"
    llm_api_key: Optional[str] = None
    llm_model: str = "gpt-4o-mini"
    llm_timeout_seconds: float = 3.5

    prompt_top_k: int = 3
    prompt_history_messages: int = 6
    clarification_confidence_threshold: float = 0.5

    low_bandwidth_max_chars: int = 500


@lru_cache()
def get_settings() -> Settings:
    """Cached settings accessor."""
    return Settings()
