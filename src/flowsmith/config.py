"""Process-level settings for Flowsmith.

Storage layout under ``storage_dir``:
- logs/: JSONL run logs
- outbox/: terminal snapshots written by the JSON outbox delivery
- audit.db: stage transitions, error incidents, generated workflows
- audit.jsonl: one line per stage transition when audit_log_enabled is set
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_KNOWLEDGE_BASE = Path(__file__).parent / "build" / "rules" / "workflow_rules.yaml"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="FLOWSMITH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    storage_dir: Path = Field(default=Path(".flowsmith"))
    knowledge_base_path: Path = Field(default=DEFAULT_KNOWLEDGE_BASE)

    # Response cache
    cache_ttl_seconds: float = 3600.0

    # Pipeline entry
    min_brief_length: int = 5
    max_brief_length: int = 5000

    # Orchestration
    request_timeout_seconds: float = 300.0
    max_workers: int = 4

    audit_enabled: bool = False
    audit_log_enabled: bool = False
    audit_memory_limit: int = 10_000
    log_verbosity: int = 0

    @property
    def log_dir(self) -> Path:
        return self.storage_dir / "logs"

    @property
    def outbox_dir(self) -> Path:
        return self.storage_dir / "outbox"

    @property
    def audit_db_path(self) -> Path:
        return self.storage_dir / "audit.db"

    @property
    def audit_log_path(self) -> Path:
        return self.storage_dir / "audit.jsonl"

    @property
    def audit_db_url(self) -> str:
        """SQLAlchemy URL for the audit database."""
        return f"sqlite:///{self.audit_db_path}"

    def ensure_storage_dir(self) -> None:
        """Create storage directory if it doesn't exist."""
        self.storage_dir.mkdir(parents=True, exist_ok=True)


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get cached settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reset settings cache (useful for testing)."""
    global _settings
    _settings = None
