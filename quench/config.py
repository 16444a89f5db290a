"""Configuration for Quench with validation."""

from pathlib import Path
from typing import Optional

import structlog
import toml
from pydantic import BaseModel, ConfigDict, Field, field_validator

log = structlog.get_logger()


class QuenchConfig(BaseModel):
    """Main configuration for Quench with validation."""

    model_config = ConfigDict(validate_assignment=True)

    # Paths
    data_dir: Path = Field(default_factory=lambda: Path.home() / ".quench")
    db_path: Optional[Path] = None  # Computed from data_dir if None

    # Completion requests
    model_prefix: str = "quench:"
    default_max_tokens: int = Field(gt=0, default=4096)
    default_temperature: float = Field(ge=0, le=2, default=0.0)
    request_timeout_seconds: float = Field(gt=0, default=120.0)

    # Datasets
    default_training_ratio: float = Field(gt=0, le=1, default=0.8)
    import_progress_every: int = Field(gt=0, default=1000)

    # Evaluation
    eval_concurrency: int = Field(gt=0, default=4)
    eval_timeout_seconds: float = Field(gt=0, default=120.0)

    # Logging
    log_level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR)$")
    log_file: Optional[Path] = None
    log_json: bool = False

    @field_validator("model_prefix")
    @classmethod
    def prefix_has_no_spaces(cls, v):
        if v != v.strip():
            raise ValueError("model_prefix cannot start or end with whitespace")
        return v

    def model_post_init(self, __context):
        """Set computed values after initialization."""
        self.data_dir = Path(self.data_dir).expanduser()
        if self.db_path is None:
            self.db_path = self.data_dir / "quench.db"

    @classmethod
    def load(cls, path: Optional[str] = None) -> "QuenchConfig":
        """Load configuration from TOML file.

        Search order if path not provided:
        1. ./quench.toml (project-specific)
        2. ~/.quench/config.toml (user default)

        Args:
            path: Optional explicit config file path

        Returns:
            QuenchConfig instance
        """
        if path is None:
            candidates = [
                Path("quench.toml"),
                Path("~/.quench/config.toml").expanduser(),
            ]
            for candidate in candidates:
                if candidate.exists():
                    path = str(candidate)
                    log.info("config_found", path=path)
                    break

        if path and Path(path).exists():
            try:
                data = toml.load(path)
                log.info("config_loaded", path=path)
                return cls(**data)
            except Exception as e:
                log.error("config_load_failed", path=path, error=str(e))
                return cls()

        log.info("config_using_defaults")
        return cls()

    def save(self, path: str):
        """Save configuration to TOML file.

        Args:
            path: File path to save to
        """
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            data = self.model_dump(mode="json", exclude_none=True)
            toml.dump(data, f)
        log.info("config_saved", path=path)


def validate_config(config: QuenchConfig) -> list[str]:
    """Validate configuration and return warnings.

    Args:
        config: Config to validate

    Returns:
        List of warning messages
    """
    warnings = []

    if config.default_training_ratio == 1:
        warnings.append("default_training_ratio is 1.0; imports will create no TEST entries")

    if config.eval_timeout_seconds < config.request_timeout_seconds:
        warnings.append(
            f"eval_timeout_seconds ({config.eval_timeout_seconds}) is shorter than "
            f"request_timeout_seconds ({config.request_timeout_seconds})"
        )

    # Check data directory is writable
    try:
        config.data_dir.mkdir(parents=True, exist_ok=True)
        test_file = config.data_dir / ".write_test"
        test_file.touch()
        test_file.unlink()
    except Exception as e:
        warnings.append(f"Data directory not writable: {e}")

    return warnings
