"""Configuration Manager for PromptVault"""

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from cryptography.fernet import Fernet

from .errors import ConfigurationError

DEFAULT_SETTINGS: dict[str, Any] = {
    "storage": {"backup_dir": str(Path.home() / ".promptvault" / "backups")},
    "backup": {
        "compress": True,
        "encrypt": False,
        "exclude_sensitive": False,
        "sensitive_settings": ["openaiApiKey"],
    },
    "encryption": {"key_env": "PROMPTVAULT_BACKUP_KEY", "key_file": ".encryption_key"},
    "retention": {
        "full": {"max_count": 10, "max_age_days": 90},
        "incremental": {"max_count": 30, "max_age_days": 30},
        "differential": {"max_count": 10, "max_age_days": 30},
        "restore-point": {"max_count": 5, "max_age_days": 14},
        "protect_chains": True,
    },
    "scheduler": {"interval_minutes": 1440, "skip_unchanged": True},
    "timeouts": {"backup": None, "restore": None},
    "sources": {"json_path": None, "sqlite_path": None},
    "attachments": {"extra_files": []},
}


def _merge(defaults: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    merged = dict(defaults)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class ConfigManager:
    """Manages all configuration for the backup engine"""

    def __init__(self, config_dir: str | Path | None = None, settings: dict[str, Any] | None = None):
        self.config_dir = Path(config_dir or Path.cwd() / "config")
        self.settings_file = self.config_dir / "settings.yaml"

        if settings is None:
            # Check if config files exist, guide user to setup if not
            self._check_config_exists()
            settings = self._load_yaml(self.settings_file)

        self.settings = _merge(DEFAULT_SETTINGS, settings)

    def _check_config_exists(self) -> None:
        """Check if config files exist and provide setup guidance if not"""
        if not self.settings_file.exists():
            example = self.config_dir / "settings.yaml.example"
            if example.exists():
                logging.error(
                    "Configuration not found. Copy the example config first:\n"
                    f"  cp {example} {self.settings_file}"
                )
                raise ConfigurationError(f"Configuration not found: {self.settings_file}")

    def _load_yaml(self, file_path: Path) -> dict[str, Any]:
        """Load YAML configuration file"""
        if not file_path.exists():
            return {}

        try:
            with open(file_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {file_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Expected a mapping at the top of {file_path}")
        return data

    def get_setting(self, key: str, default: Any = None) -> Any:
        """Get a setting value with optional default

        Args:
            key: Setting key (supports nested keys with dot notation, e.g., 'storage.backup_dir')
            default: Default value if setting not found

        Returns:
            Setting value or default
        """
        keys = key.split(".")
        value: Any = self.settings

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
                if value is None:
                    return default
            else:
                return default

        return value if value is not None else default

    def get_backup_dir(self) -> Path:
        return Path(self.get_setting("storage.backup_dir")).expanduser()

    def get_timeout(self, operation: str) -> float | None:
        value = self.get_setting(f"timeouts.{operation}")
        if value is None:
            return None
        timeout = float(value)
        if timeout <= 0:
            raise ConfigurationError(f"timeouts.{operation} must be positive, got {value}")
        return timeout

    def _resolve(self, path: str) -> Path:
        candidate = Path(path).expanduser()
        return candidate if candidate.is_absolute() else self.config_dir / candidate

    def get_encryption_key(self, create: bool = False) -> str | None:
        """Get the backup encryption passphrase

        The environment variable wins; otherwise the key file is read, and
        created with owner-only permissions when ``create`` is set.
        """
        env_name = self.get_setting("encryption.key_env")
        if env_name and os.environ.get(env_name):
            return os.environ[env_name]

        key_file = self._resolve(self.get_setting("encryption.key_file", ".encryption_key"))
        if key_file.exists():
            # Ensure correct permissions on existing key file
            current_mode = os.stat(key_file).st_mode & 0o777
            if current_mode != 0o600:
                os.chmod(key_file, 0o600)
            return key_file.read_text().strip() or None

        if not create:
            return None

        # Generate new key with restricted permissions from creation
        key_file.parent.mkdir(parents=True, exist_ok=True)
        key = Fernet.generate_key()
        fd = os.open(str(key_file), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        try:
            os.write(fd, key)
        finally:
            os.close(fd)
        logging.getLogger("ConfigManager").info(f"Generated new backup encryption key: {key_file}")
        return key.decode()

    def get_source_paths(self) -> dict[str, Path | None]:
        """Live data locations

        Returns:
            Dict with 'json' and 'sqlite' (None if not configured)
        """
        sources = self.get_setting("sources", {})
        return {
            "json": self._resolve(sources["json_path"]) if sources.get("json_path") else None,
            "sqlite": self._resolve(sources["sqlite_path"]) if sources.get("sqlite_path") else None,
        }

    def get_extra_attachments(self) -> list[Path]:
        return [self._resolve(p) for p in self.get_setting("attachments.extra_files", [])]
