"""Configuration loader for pgupgrader."""

from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import dotenv_values

from pgupgrader.errors import ValidationError

_STRING_KEYS = {
    "data_dir",
    "from_version",
    "to_version",
    "user",
    "password",
    "database",
    "image",
    "staging_dir",
    "reindex_scope",
    "manifest_file",
    "log_file",
}
_FLAG_KEYS = {"atomic_restore", "verbose", "dry_run"}
_NUMBER_KEYS = {"ready_retries", "ready_interval"}

ENV_FILE_KEYS = {"POSTGRES_USER": "user", "POSTGRES_PASSWORD": "password", "POSTGRES_DB": "database"}


class ConfigLoader:
    """Reads CLI defaults from a YAML mapping."""

    SUPPORTED_KEYS = _STRING_KEYS | _FLAG_KEYS | _NUMBER_KEYS

    def load(self, config_path: Optional[str]) -> Dict[str, Any]:
        if not config_path:
            return {}

        path = Path(config_path)
        if not path.is_file():
            raise ValidationError(f"Config file not found: {config_path}")

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise ValidationError(f"Invalid config file '{config_path}': {exc}") from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise ValidationError("Config file must contain a YAML mapping at the root.")

        unknown = sorted(str(key) for key in set(parsed) - self.SUPPORTED_KEYS)
        if unknown:
            raise ValidationError(f"Unknown configuration keys: {', '.join(unknown)}")

        return {key: self._coerce(key, value) for key, value in parsed.items() if value is not None}

    @staticmethod
    def _coerce(key: str, value: Any) -> Any:
        # YAML reads `to_version: 16` as an int; versions and paths are strings here.
        if key in _STRING_KEYS and isinstance(value, (str, int, float)) and not isinstance(value, bool):
            return str(value)
        if key in _FLAG_KEYS and isinstance(value, bool):
            return value
        if key in _NUMBER_KEYS and isinstance(value, (int, float)) and not isinstance(value, bool):
            return value
        raise ValidationError(f"Invalid value for '{key}' in config file: {value!r}")

    def load_env_file(self, env_path: Optional[str]) -> Dict[str, str]:
        """Credentials from a ``.env`` file, keyed like the CLI options."""
        if not env_path:
            return {}

        path = Path(env_path)
        if not path.is_file():
            raise ValidationError(f"Env file not found: {env_path}")

        values: Dict[str, str] = {}
        for name, value in dotenv_values(path).items():
            option = ENV_FILE_KEYS.get(name)
            if option and value:
                values[option] = value
        return values
