from typing import Dict, List, Optional
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from pathlib import Path
import logging

logger = logging.getLogger(__name__)

# Project root for absolute paths
PROJECT_ROOT = Path(__file__).resolve().parent.parent

DEFAULT_DATA_DIR = Path.home() / ".local" / "share" / "knowledge-server"


class ServerSettings(BaseSettings):
    host: str = "127.0.0.1"
    port: int = 3179
    db_path: Path = DEFAULT_DATA_DIR / "knowledge.db"
    log_path: Optional[Path] = None
    log_level: str = "INFO"
    admin_token: Optional[str] = Field(None, description="Bearer token for mutating endpoints.")
    model_config = SettingsConfigDict(
        env_prefix='KNOWLEDGE_',
        extra='ignore',
        case_sensitive=False
    )

    @field_validator("db_path", "log_path")
    @classmethod
    def _expand_user(cls, v: Optional[Path]) -> Optional[Path]:
        return Path(v).expanduser() if v is not None else v


class EpisodeSourceSettings(BaseSettings):
    db_path: Path = Path.home() / ".local" / "share" / "opencode" / "opencode.db"
    model_config = SettingsConfigDict(
        env_prefix='OPENCODE_',
        extra='ignore',
        case_sensitive=False
    )

    @field_validator("db_path")
    @classmethod
    def _expand_user(cls, v: Path) -> Path:
        return Path(v).expanduser()


class LLMSettings(BaseSettings):
    base_endpoint: str = ""
    api_key: str = ""
    model: str = "anthropic/claude-sonnet-4-6"
    extraction_model: Optional[str] = None
    merge_model: Optional[str] = None
    contradiction_model: Optional[str] = None
    temperature: float = 0.2
    extraction_max_tokens: int = 8192
    merge_max_tokens: int = 1024
    contradiction_max_tokens: int = 2048
    timeout_seconds: float = Field(120.0, description="Per-request timeout for completions.")
    max_retries: int = 3
    model_config = SettingsConfigDict(
        env_prefix='LLM_',
        extra='ignore',
        case_sensitive=False
    )

    @model_validator(mode="after")
    def _default_model_slots(self) -> "LLMSettings":
        # Unset slots fall back to the general model
        self.extraction_model = self.extraction_model or self.model
        self.merge_model = self.merge_model or self.model
        self.contradiction_model = self.contradiction_model or self.model
        return self


class EmbeddingSettings(BaseSettings):
    model: str = "text-embedding-3-large"
    dimensions: int = 3072
    batch_size: int = 100
    timeout_seconds: float = 60.0
    max_retries: int = 3
    model_config = SettingsConfigDict(
        env_prefix='EMBEDDING_',
        extra='ignore',
        case_sensitive=False
    )


class DecaySettings(BaseSettings):
    archive_threshold: float = 0.15
    tombstone_days: int = 180
    half_life_days: Dict[str, float] = Field(default_factory=lambda: {
        "fact": 30.0,
        "principle": 180.0,
        "pattern": 90.0,
        "decision": 120.0,
        "procedure": 365.0,
    })
    model_config = SettingsConfigDict(
        env_prefix='DECAY_',
        extra='ignore',
        case_sensitive=False
    )


class ConsolidationSettings(BaseSettings):
    chunk_size: int = Field(10, description="Episodes per extraction call.")
    max_sessions: int = Field(50, description="Candidate sessions fetched per run.")
    min_session_messages: int = 4
    max_tokens_per_episode: int = 50_000
    max_relevant_knowledge: int = 50
    reconsolidation_threshold: float = 0.82
    contradiction_min_similarity: float = 0.4
    max_consecutive_errors: int = 3
    retry_base_delay_seconds: float = 5.0
    lock_poll_seconds: float = 2.0
    shutdown_grace_seconds: float = 30.0
    model_config = SettingsConfigDict(
        env_prefix='CONSOLIDATION_',
        extra='ignore',
        case_sensitive=False
    )


class ActivationSettings(BaseSettings):
    max_results: int = 10
    similarity_threshold: float = 0.3
    stale_access_count: int = Field(3, description="Entries retrieved this often are never flagged stale.")
    model_config = SettingsConfigDict(
        env_prefix='ACTIVATION_',
        extra='ignore',
        case_sensitive=False
    )


class Settings(BaseSettings):
    server: ServerSettings = Field(default_factory=ServerSettings)
    episodes: EpisodeSourceSettings = Field(default_factory=EpisodeSourceSettings)
    llm: LLMSettings = Field(default_factory=LLMSettings)
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    decay: DecaySettings = Field(default_factory=DecaySettings)
    consolidation: ConsolidationSettings = Field(default_factory=ConsolidationSettings)
    activation: ActivationSettings = Field(default_factory=ActivationSettings)
    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / '.env'),
        env_file_encoding='utf-8',
        extra='ignore',
        case_sensitive=False,
        env_nested_delimiter='__',
        env_prefix="KNOWLEDGE_SERVER_"
    )


def validate_settings(cfg: Settings) -> List[str]:
    """Return every configuration problem found; an empty list means startup may proceed."""
    problems: List[str] = []

    if not cfg.llm.api_key:
        problems.append("LLM_API_KEY is not set")
    if not cfg.llm.base_endpoint:
        problems.append("LLM_BASE_ENDPOINT is not set")
    if not cfg.episodes.db_path.exists():
        problems.append(f"OpenCode database not found at {cfg.episodes.db_path} (set OPENCODE_DB_PATH)")

    for name, value in (
        ("DECAY_ARCHIVE_THRESHOLD", cfg.decay.archive_threshold),
        ("ACTIVATION_SIMILARITY_THRESHOLD", cfg.activation.similarity_threshold),
        ("CONSOLIDATION_RECONSOLIDATION_THRESHOLD", cfg.consolidation.reconsolidation_threshold),
        ("CONSOLIDATION_CONTRADICTION_MIN_SIMILARITY", cfg.consolidation.contradiction_min_similarity),
    ):
        if not 0.0 <= value <= 1.0:
            problems.append(f"{name} must be between 0 and 1 (got {value})")

    if cfg.consolidation.contradiction_min_similarity >= cfg.consolidation.reconsolidation_threshold:
        problems.append("CONSOLIDATION_CONTRADICTION_MIN_SIMILARITY must be below CONSOLIDATION_RECONSOLIDATION_THRESHOLD")

    for name, value in (
        ("CONSOLIDATION_CHUNK_SIZE", cfg.consolidation.chunk_size),
        ("CONSOLIDATION_MAX_SESSIONS", cfg.consolidation.max_sessions),
        ("EMBEDDING_DIMENSIONS", cfg.embedding.dimensions),
        ("ACTIVATION_MAX_RESULTS", cfg.activation.max_results),
    ):
        if value < 1:
            problems.append(f"{name} must be at least 1 (got {value})")

    for knowledge_type, days in cfg.decay.half_life_days.items():
        if days <= 0:
            problems.append(f"Half-life for '{knowledge_type}' must be positive (got {days})")

    return problems


settings = Settings()
