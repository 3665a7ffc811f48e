# concierge/config.py
"""
Configuration for the Concierge engine.

All configuration flows through this module. Values are loaded from environment
variables (via a project-root .env file) and validated with Pydantic. Each
subsystem owns one settings class; ``ConciergeConfig`` composes them and is the
single object handed to the runtime at startup.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings
import structlog


logger = structlog.get_logger(__name__)

# Resolve .env relative to the project root (one level above concierge/), so the
# config works regardless of the caller's current working directory.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"


class ModelConfig(BaseSettings):
    """Connection settings for the language-model provider."""

    api_key: Optional[str] = Field(None, alias="ANTHROPIC_API_KEY")
    model: str = Field("claude-sonnet-4-5-20250929", alias="CONCIERGE_MODEL")
    max_tokens: int = Field(4096, alias="CONCIERGE_MAX_TOKENS")
    request_timeout_seconds: float = Field(120.0, alias="CONCIERGE_REQUEST_TIMEOUT_SECONDS")
    chat_temperature: float = Field(0.7, alias="CONCIERGE_CHAT_TEMPERATURE")
    orchestration_temperature: float = Field(0.3, alias="CONCIERGE_ORCHESTRATION_TEMPERATURE")
    # Transient provider failures end the turn; the SDK must not retry behind our back.
    sdk_max_retries: int = Field(0, alias="CONCIERGE_SDK_MAX_RETRIES")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "ModelConfig":
        self.max_tokens = max(1, int(self.max_tokens))
        self.request_timeout_seconds = max(1.0, float(self.request_timeout_seconds))
        self.chat_temperature = max(0.0, min(1.0, float(self.chat_temperature)))
        self.orchestration_temperature = max(
            0.0, min(1.0, float(self.orchestration_temperature))
        )
        self.sdk_max_retries = max(0, int(self.sdk_max_retries))
        return self


class RetrievalConfig(BaseSettings):
    """Configuration for the retrieval index that grounds every model call."""

    similarity_threshold: float = Field(0.7, alias="CONCIERGE_SIMILARITY_THRESHOLD")
    context_chunks: int = Field(3, alias="CONCIERGE_CONTEXT_CHUNKS")
    default_search_limit: int = Field(5, alias="CONCIERGE_SEARCH_LIMIT")

    # Owners with more chunks than this are served from the ANN index instead
    # of an exact linear scan.
    linear_scan_max_chunks: int = Field(2000, alias="CONCIERGE_LINEAR_SCAN_MAX_CHUNKS")
    ann_enabled: bool = Field(True, alias="CONCIERGE_ANN_ENABLED")
    ann_candidate_multiplier: int = Field(4, alias="CONCIERGE_ANN_CANDIDATE_MULTIPLIER")
    vector_db_path: Path = Field(Path("./concierge_data/vectors"), alias="CONCIERGE_VECTOR_DB")
    embedding_model: str = Field("all-MiniLM-L6-v2", alias="CONCIERGE_EMBEDDING_MODEL")

    _DEFAULT_VECTOR_DB: Path = Path("./concierge_data/vectors")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "RetrievalConfig":
        self.similarity_threshold = max(-1.0, min(1.0, float(self.similarity_threshold)))
        self.context_chunks = max(0, int(self.context_chunks))
        self.default_search_limit = max(1, int(self.default_search_limit))
        self.linear_scan_max_chunks = max(0, int(self.linear_scan_max_chunks))
        self.ann_candidate_multiplier = max(1, int(self.ann_candidate_multiplier))
        return self


class LoopConfig(BaseSettings):
    """Limits for the bounded tool-calling conversation loop."""

    max_iterations: int = Field(10, alias="CONCIERGE_MAX_ITERATIONS")
    history_window: int = Field(10, alias="CONCIERGE_HISTORY_WINDOW")
    concurrent_tool_calls: bool = Field(True, alias="CONCIERGE_CONCURRENT_TOOL_CALLS")
    tool_default_timeout: float = Field(30.0, alias="CONCIERGE_TOOL_DEFAULT_TIMEOUT")
    tool_max_output_length: int = Field(25000, alias="CONCIERGE_TOOL_MAX_OUTPUT_LENGTH")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "LoopConfig":
        self.max_iterations = max(1, int(self.max_iterations))
        self.history_window = max(0, int(self.history_window))
        self.tool_default_timeout = max(1.0, float(self.tool_default_timeout))
        self.tool_max_output_length = max(100, int(self.tool_max_output_length))
        return self


class StorageConfig(BaseSettings):
    """Where durable state lives."""

    data_dir: Path = Field(Path("./concierge_data"), alias="CONCIERGE_DATA_DIR")
    db_path: Path = Field(Path("./concierge_data/concierge.db"), alias="CONCIERGE_DB")

    _DEFAULT_DB: Path = Path("./concierge_data/concierge.db")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def derive_paths_from_data_dir(self) -> "StorageConfig":
        """Derive the database path from data_dir when it was not overridden."""
        if self.db_path == self._DEFAULT_DB:
            self.db_path = self.data_dir / "concierge.db"
        return self


class OrchestrationConfig(BaseSettings):
    """Configuration for the periodic multi-tenant orchestration driver."""

    interval_seconds: float = Field(3600.0, alias="CONCIERGE_ORCHESTRATION_INTERVAL")
    event_lookback_minutes: float = Field(15.0, alias="CONCIERGE_EVENT_LOOKBACK_MINUTES")
    max_concurrent_owners: int = Field(4, alias="CONCIERGE_MAX_CONCURRENT_OWNERS")
    max_events_per_owner: int = Field(10, alias="CONCIERGE_MAX_EVENTS_PER_OWNER")
    instructions_enabled: bool = Field(True, alias="CONCIERGE_INSTRUCTIONS_ENABLED")
    strict_transitions: bool = Field(False, alias="CONCIERGE_STRICT_TRANSITIONS")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "OrchestrationConfig":
        self.interval_seconds = max(1.0, float(self.interval_seconds))
        self.event_lookback_minutes = max(1.0, float(self.event_lookback_minutes))
        self.max_concurrent_owners = max(1, int(self.max_concurrent_owners))
        self.max_events_per_owner = max(1, int(self.max_events_per_owner))
        return self


class CapabilityConfig(BaseSettings):
    """Endpoints for the external mail, calendar and CRM services."""

    mail_base_url: str = Field(
        "https://gmail.googleapis.com/gmail/v1/users/me", alias="CONCIERGE_MAIL_BASE_URL"
    )
    calendar_base_url: str = Field(
        "https://www.googleapis.com/calendar/v3", alias="CONCIERGE_CALENDAR_BASE_URL"
    )
    crm_base_url: str = Field("https://api.hubapi.com", alias="CONCIERGE_CRM_BASE_URL")
    request_timeout_seconds: float = Field(20.0, alias="CONCIERGE_CAPABILITY_TIMEOUT")
    max_results: int = Field(100, alias="CONCIERGE_CAPABILITY_MAX_RESULTS")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "CapabilityConfig":
        self.mail_base_url = self.mail_base_url.rstrip("/")
        self.calendar_base_url = self.calendar_base_url.rstrip("/")
        self.crm_base_url = self.crm_base_url.rstrip("/")
        self.request_timeout_seconds = max(1.0, float(self.request_timeout_seconds))
        self.max_results = max(1, int(self.max_results))
        return self


class ConciergeConfig:
    """
    Master configuration that composes all subsystem configs.

    Every component receives its config from here. No global state, no hidden
    settings.
    """

    def __init__(self):
        self.model = ModelConfig()
        self.retrieval = RetrievalConfig()
        self.loop = LoopConfig()
        self.storage = StorageConfig()
        self.orchestration = OrchestrationConfig()
        self.capabilities = CapabilityConfig()

        # Instance access, not class access: Pydantic wraps class-level private
        # attrs in ModelPrivateAttr descriptors.
        if self.retrieval.vector_db_path == self.retrieval._DEFAULT_VECTOR_DB:
            self.retrieval.vector_db_path = self.storage.data_dir / "vectors"

        self._resolve_paths()
        self.storage.data_dir.mkdir(parents=True, exist_ok=True)

    def _resolve_paths(self) -> None:
        """Resolve relative Path fields against the project root, not the CWD."""
        def _resolve(p: Path) -> Path:
            if p.is_absolute():
                return p
            return (_PROJECT_ROOT / p).resolve()

        self.storage.data_dir = _resolve(self.storage.data_dir)
        self.storage.db_path = _resolve(self.storage.db_path)
        self.retrieval.vector_db_path = _resolve(self.retrieval.vector_db_path)

    def __repr__(self) -> str:
        return (
            f"ConciergeConfig(model={self.model.model}, "
            f"max_iterations={self.loop.max_iterations}, "
            f"orchestration_interval={self.orchestration.interval_seconds}s)"
        )
