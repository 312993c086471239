"""Settings dataclass and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

from ..ai.ai_types import DEFAULT_MODEL, SUPPORTED_MODELS

__all__ = [
    "BACKEND_CHOICES",
    "MISTAKE_EXPLANATION_LANGUAGES",
    "STORE_BACKEND_CHOICES",
    "SecretVault",
    "Settings",
    "SettingsStore",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".linguachat"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_ENV_OVERRIDES: Mapping[str, str] = {
    "LINGUACHAT_BACKEND": "backend",
    "LINGUACHAT_API_BASE_URL": "api_base_url",
    "LINGUACHAT_OPENAI_API_KEY": "openai_api_key",
    "LINGUACHAT_OPENAI_BASE_URL": "openai_base_url",
    "LINGUACHAT_OPENAI_PROJECT": "openai_project",
    "LINGUACHAT_MODEL": "model",
    "LINGUACHAT_STORE_BACKEND": "store_backend",
    "LINGUACHAT_REDIS_URL": "redis_url",
    "LINGUACHAT_STORE_PREFIX": "store_prefix",
    "LINGUACHAT_USER_ID": "user_id",
    "LINGUACHAT_LANGUAGE": "language",
    "LINGUACHAT_MISTAKE_EXPLANATION_LANGUAGE": "mistake_explanation_language",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "LINGUACHAT_DEBUG_LOGGING": "debug_logging",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "LINGUACHAT_REQUEST_TIMEOUT": "request_timeout",
    "LINGUACHAT_TEMPERATURE": "temperature",
    "LINGUACHAT_RETRY_MIN_SECONDS": "retry_min_seconds",
    "LINGUACHAT_RETRY_MAX_SECONDS": "retry_max_seconds",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "LINGUACHAT_MAX_RETRIES": "max_retries",
    "LINGUACHAT_MAX_TRANSACTION_RETRIES": "max_transaction_retries",
    "LINGUACHAT_MESSAGE_COUNT_SUMMARY_THRESHOLD": "message_count_summary_threshold",
    "LINGUACHAT_TOKEN_COUNT_SUMMARY_THRESHOLD": "token_count_summary_threshold",
    "LINGUACHAT_CORRECT_MISTAKES_PREVIOUS_MESSAGE_COUNT": "correct_mistakes_previous_message_count",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_API_KEY_FIELD = "openai_api_key_ciphertext"

BACKEND_CHOICES: tuple[str, ...] = ("http", "openai")
STORE_BACKEND_CHOICES: tuple[str, ...] = ("memory", "redis")
MISTAKE_EXPLANATION_LANGUAGES: tuple[str, ...] = ("English", "Language")


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    backend: str = "http"
    api_base_url: str = "http://localhost:5001"
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_project: str | None = None
    model: str = DEFAULT_MODEL
    temperature: float = 0.5
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    store_backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    store_prefix: str = "linguachat"
    max_transaction_retries: int = 25
    user_id: str = "local"
    language: str = "Spanish"
    message_count_summary_threshold: int = 50
    token_count_summary_threshold: int = 30_000
    correct_mistakes_previous_message_count: int = 4
    mistake_explanation_language: str = "English"
    debug_logging: bool = False

    def validate(self) -> list[str]:
        """Return human-readable problems; an empty list means the settings are usable."""

        problems: list[str] = []
        if self.backend not in BACKEND_CHOICES:
            problems.append(f"backend must be one of {', '.join(BACKEND_CHOICES)}")
        if self.store_backend not in STORE_BACKEND_CHOICES:
            problems.append(f"store_backend must be one of {', '.join(STORE_BACKEND_CHOICES)}")
        if self.model not in SUPPORTED_MODELS:
            problems.append(f"model must be one of {', '.join(SUPPORTED_MODELS)}")
        if not 0.0 <= self.temperature <= 1.0:
            problems.append("temperature must be between 0 and 1")
        if self.mistake_explanation_language not in MISTAKE_EXPLANATION_LANGUAGES:
            problems.append(f"mistake_explanation_language must be one of {', '.join(MISTAKE_EXPLANATION_LANGUAGES)}")
        if self.backend == "openai" and not self.openai_api_key:
            problems.append("openai_api_key is required for the openai backend")
        if not self.user_id:
            problems.append("user_id must not be empty")
        return problems


class SecretVault:
    """Encrypts the API key with a symmetric Fernet key stored on disk."""

    name = "fernet"

    def __init__(self, *, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._fernet: Fernet | None = None

    @property
    def key_path(self) -> Path:
        return self._key_path

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        token = self._get_fernet().encrypt(secret.encode("utf-8"))
        return f"{self.name}:{token.decode('ascii')}"

    def decrypt(self, token: str | None) -> str:
        if not token:
            return ""
        prefix, _, payload = token.partition(":")
        if prefix != self.name or not payload:
            raise ValueError(f"Unknown secret token prefix {prefix!r}")
        try:
            return self._get_fernet().decrypt(payload.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("Invalid Fernet token") from exc

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._load_or_create_key())
        return self._fernet

    def _load_or_create_key(self) -> bytes:
        path = self._key_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            return path.read_bytes().strip()
        key = Fernet.generate_key()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(tmp_path, 0o600)
        tmp_path.replace(path)
        return key


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None, environment: bool = True) -> Settings:
        """Load settings from disk, then apply runtime and environment overrides.

        ``environment=False`` skips the ``LINGUACHAT_*`` variables, so a load
        that is about to be saved does not persist them.
        """

        payload = self._read_payload()
        settings = Settings()
        if payload:
            api_key = self._decrypt_api_key(payload.pop(_API_KEY_FIELD, None))
            data = _filter_fields(payload)
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            if api_key:
                settings = replace(settings, openai_api_key=api_key)
            LOGGER.debug("Settings loaded from %s", self._path)

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="CLI")
        if environment:
            settings = self._apply_env_overrides(settings)
        return settings

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes."""

        payload = self._serialize(settings)
        body = json.dumps(payload, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _serialize(self, settings: Settings) -> Dict[str, Any]:
        data = asdict(settings)
        api_key = data.pop("openai_api_key", "") or ""
        if api_key:
            data[_API_KEY_FIELD] = self._vault.encrypt(api_key)
        data["version"] = _SETTINGS_VERSION
        return data

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Settings file %s does not contain an object", self._path)
            return {}
        return payload

    def _decrypt_api_key(self, ciphertext: str | None) -> str:
        if not ciphertext:
            return ""
        try:
            return self._vault.decrypt(ciphertext)
        except ValueError as exc:
            LOGGER.warning("Unable to decrypt API key: %s", exc)
            return ""

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> Settings:
        allowed = {field.name for field in fields(Settings)}
        filtered: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in allowed or value is None:
                if key not in allowed:
                    LOGGER.warning("Ignoring unknown %s setting %r", source, key)
                continue
            filtered[key] = value
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {field.name for field in fields(Settings)} - {"openai_api_key"}
    return {key: value for key, value in payload.items() if key in allowed}


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"
