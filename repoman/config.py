"""Configuration management for repoman."""

import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Tuple

from dotenv import load_dotenv

from .platform import get_platform_specific_defaults, normalize_path, validate_git_availability

load_dotenv()  # Load .env file if it exists


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    """Configuration class for repoman with validation and defaults."""

    # Host project
    project_root: Path = field(default_factory=Path.cwd)
    repositories_dir: Path = Path("Repositories")
    manifest_name: str = "Dependencies.json"
    state_file_name: str = ".repoman-state.json"

    # Shared clone cache (one working tree per repository URL)
    cache_dir: Path = field(default_factory=lambda: get_platform_specific_defaults()['cache_dir'])

    # Working tree metadata
    metadata_dir_name: str = ".git"
    hidden_metadata_dir_name: str = ".gitsubrepository"
    hide_metadata_during_jobs: bool = True

    # Companion files regenerated by the host; never fingerprinted or deleted directly
    excluded_suffixes: Tuple[str, ...] = (".meta",)

    # Polling
    poll_interval: float = 0.5

    # Logging
    log_level: str = "INFO"

    def __post_init__(self):
        """Validate configuration after initialization."""
        self.project_root = normalize_path(self.project_root)
        self.cache_dir = normalize_path(self.cache_dir)
        self.repositories_dir = Path(self.repositories_dir)

        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        self.log_level = self.log_level.upper()
        if self.log_level not in valid_log_levels:
            raise ValueError(f"Invalid log level: {self.log_level}. Must be one of {valid_log_levels}")

        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")

        if not self.metadata_dir_name or not self.hidden_metadata_dir_name:
            raise ValueError("metadata directory names must not be empty")

        if self.metadata_dir_name == self.hidden_metadata_dir_name:
            raise ValueError("hidden_metadata_dir_name must differ from metadata_dir_name")

        self.excluded_suffixes = tuple(s.lower() for s in self.excluded_suffixes)

    @property
    def repositories_path(self) -> Path:
        """Absolute directory receiving the synced repository folders."""
        if self.repositories_dir.is_absolute():
            return self.repositories_dir
        return self.project_root / self.repositories_dir

    @property
    def manifest_path(self) -> Path:
        """Path of the dependency manifest file."""
        return self.repositories_path / self.manifest_name

    @property
    def state_file_path(self) -> Path:
        """Path of the key/value state file (fingerprint baselines)."""
        return self.repositories_path / self.state_file_name


def load_configuration() -> Config:
    """Load configuration from environment variables with platform-specific defaults."""
    try:
        platform_defaults = get_platform_specific_defaults()

        return Config(
            project_root=Path(os.getenv("REPOMAN_PROJECT_ROOT", str(Path.cwd()))),
            repositories_dir=Path(os.getenv("REPOMAN_REPOSITORIES_DIR", "Repositories")),
            cache_dir=Path(os.getenv("REPOMAN_CACHE_DIR", str(platform_defaults['cache_dir']))),
            manifest_name=os.getenv("REPOMAN_MANIFEST", "Dependencies.json"),
            state_file_name=os.getenv("REPOMAN_STATE_FILE", ".repoman-state.json"),
            log_level=os.getenv("REPOMAN_LOG_LEVEL", platform_defaults['log_level']),
            poll_interval=float(os.getenv("REPOMAN_POLL_INTERVAL", str(platform_defaults['poll_interval']))),
            hide_metadata_during_jobs=_parse_bool(
                os.getenv("REPOMAN_HIDE_METADATA", str(platform_defaults['hide_metadata_during_jobs']))
            ),
        )
    except (ValueError, TypeError) as e:
        raise ValueError(f"Configuration error: {e}")


def validate_configuration(config: Config) -> List[str]:
    """Validate configuration and return any errors or warnings."""
    errors = []

    for label, directory in (("cache", config.cache_dir), ("repositories", config.repositories_path)):
        try:
            directory.mkdir(parents=True, exist_ok=True)
            test_file = directory / ".test_write"
            test_file.write_text("test")
            test_file.unlink()
        except PermissionError:
            errors.append(f"ERROR: No write permission for {label} directory: {directory}")
        except OSError as e:
            errors.append(f"ERROR: Cannot access {label} directory {directory}: {e}")

    git_available, git_error = validate_git_availability()
    if not git_available:
        errors.append(f"ERROR: Git not available: {git_error}")

    try:
        config.repositories_path.relative_to(config.cache_dir)
        errors.append("WARNING: repositories directory is inside the clone cache")
    except ValueError:
        pass

    if config.poll_interval > 5:
        errors.append("WARNING: High poll_interval delays completion handling")

    if errors:
        logging.getLogger('repoman.config').debug(f"Configuration issues: {errors}")

    return errors
