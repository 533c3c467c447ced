"""Runtime settings for the migration service."""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

ENV_PREFIX = "CLINIC_MIGRATE_"


@dataclass
class MigrationSettings:
    """Configuration shared by the orchestrator and its collaborators."""

    # Storage
    database_url: str = "sqlite:///./data/migrations.db"
    artifact_dir: str = "./data/artifacts"

    # Connector calls
    connector_timeout: float = 30.0  # Seconds per connector call
    retry_config: Dict[str, Any] = field(default_factory=lambda: {
        "max_retries": 3,
        "backoff_factor": 2.0,
    })
    agent_url: Optional[str] = None  # Navigation agent endpoint

    # Execution options
    batch_size: int = 100
    parallel_workers: int = 1
    sample_size: int = 100

    # Transforms
    masking_secret: Optional[str] = None

    # Credentials at rest: 64 hex chars or base64 of 32 bytes
    encryption_key: Optional[str] = None

    log_level: str = "INFO"

    @property
    def max_retries(self) -> int:
        return int(self.retry_config.get("max_retries", 3))

    @property
    def backoff_factor(self) -> float:
        return float(self.retry_config.get("backoff_factor", 2.0))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation (secrets omitted)."""
        return {
            "database_url": self.database_url,
            "artifact_dir": self.artifact_dir,
            "connector_timeout": self.connector_timeout,
            "retry_config": self.retry_config,
            "agent_url": self.agent_url,
            "batch_size": self.batch_size,
            "parallel_workers": self.parallel_workers,
            "sample_size": self.sample_size,
            "log_level": self.log_level,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationSettings":
        """Create from dictionary representation."""
        defaults = cls()
        return cls(
            database_url=data.get("database_url", defaults.database_url),
            artifact_dir=data.get("artifact_dir", defaults.artifact_dir),
            connector_timeout=float(data.get("connector_timeout", defaults.connector_timeout)),
            retry_config=data.get("retry_config", defaults.retry_config),
            agent_url=data.get("agent_url"),
            batch_size=int(data.get("batch_size", defaults.batch_size)),
            parallel_workers=int(data.get("parallel_workers", defaults.parallel_workers)),
            sample_size=int(data.get("sample_size", defaults.sample_size)),
            masking_secret=data.get("masking_secret"),
            encryption_key=data.get("encryption_key"),
            log_level=data.get("log_level", defaults.log_level),
        )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "MigrationSettings":
        """
        Build settings from CLINIC_MIGRATE_* environment variables.

        Args:
            environ: Mapping to read instead of os.environ

        Returns:
            MigrationSettings with unset values left at their defaults
        """
        environ = os.environ if environ is None else environ

        def get(name: str) -> Optional[str]:
            value = environ.get(f"{ENV_PREFIX}{name}")
            return value if value not in (None, "") else None

        data: Dict[str, Any] = {}
        for key, name in (
            ("database_url", "DATABASE_URL"),
            ("artifact_dir", "ARTIFACT_DIR"),
            ("connector_timeout", "CONNECTOR_TIMEOUT"),
            ("agent_url", "AGENT_URL"),
            ("batch_size", "BATCH_SIZE"),
            ("parallel_workers", "PARALLEL_WORKERS"),
            ("sample_size", "SAMPLE_SIZE"),
            ("masking_secret", "MASKING_SECRET"),
            ("encryption_key", "ENCRYPTION_KEY"),
            ("log_level", "LOG_LEVEL"),
        ):
            value = get(name)
            if value is not None:
                data[key] = value

        retry_config = dict(cls().retry_config)
        if get("MAX_RETRIES") is not None:
            retry_config["max_retries"] = int(get("MAX_RETRIES"))
        if get("BACKOFF_FACTOR") is not None:
            retry_config["backoff_factor"] = float(get("BACKOFF_FACTOR"))
        data["retry_config"] = retry_config

        return cls.from_dict(data)
