"""Settings dataclasses and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Literal, Mapping

from cryptography.fernet import Fernet, InvalidToken

__all__ = [
    "PROVIDER_CHOICES",
    "Provider",
    "Settings",
    "SettingsStore",
    "provider_defaults",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".kernelagent"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_ENV_OVERRIDES: Mapping[str, str] = {
    "KERNELAGENT_PROVIDER": "provider",
    "KERNELAGENT_API_KEY": "api_key",
    "KERNELAGENT_BASE_URL": "base_url",
    "KERNELAGENT_MODEL": "model",
    "KERNELAGENT_ORGANIZATION": "organization",
    "KERNELAGENT_SYSTEM_PROMPT": "system_prompt",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "KERNELAGENT_DEBUG_LOGGING": "debug_logging",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "KERNELAGENT_REQUEST_TIMEOUT": "request_timeout",
    "KERNELAGENT_TEMPERATURE": "temperature",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "KERNELAGENT_MAX_STEPS": "max_steps",
    "KERNELAGENT_MAX_RETRIES": "max_retries",
    "KERNELAGENT_MAX_FINISHED_JOBS": "max_finished_jobs",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_API_KEY_FIELD = "api_key_ciphertext"
_SECRET_BACKEND = "fernet"

Provider = Literal["openai", "ollama", "custom"]
PROVIDER_CHOICES: tuple[str, ...] = ("openai", "ollama", "custom")
_PROVIDER_DEFAULTS: Mapping[str, Mapping[str, str]] = {
    "openai": {"base_url": "https://api.openai.com/v1/", "model": "gpt-4", "api_key": ""},
    "ollama": {"base_url": "http://localhost:11434/v1/", "model": "qwen2.5-coder:7b", "api_key": "ollama"},
    "custom": {"base_url": "", "model": "", "api_key": ""},
}


def provider_defaults(provider: str) -> dict[str, str]:
    """Return the connection defaults for ``provider`` (empty for unknown providers)."""

    return dict(_PROVIDER_DEFAULTS.get((provider or "").strip().lower(), {}))


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    provider: str = "ollama"
    base_url: str = "http://localhost:11434/v1/"
    api_key: str = "ollama"
    model: str = "qwen2.5-coder:7b"
    organization: str | None = None
    temperature: float = 0.7
    request_timeout: float = 90.0
    max_retries: int = 1
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    max_steps: int = 25
    system_prompt: str | None = None
    startup_script: str | None = None
    context_warning_chars: int = 200_000
    max_finished_jobs: int = 100
    debug_logging: bool = False
    default_headers: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    def with_provider(self, provider: str) -> Settings:
        """Switch provider, resetting the connection fields to its defaults."""

        normalized = (provider or "").strip().lower()
        if normalized not in PROVIDER_CHOICES:
            raise ValueError(f"Unknown provider: {provider!r}")
        return replace(self, provider=normalized, **provider_defaults(normalized))


class SettingsStore:
    """Persistence adapter for :class:`Settings`.

    The API key is stored as ``fernet:<token>``, encrypted with a symmetric
    key kept in a file beside the settings file.
    """

    def __init__(self, path: Path | None = None, *, key_path: Path | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH
        self._key_path = key_path or self._path.with_suffix(".key")
        self._fernet: Fernet | None = None

    @property
    def path(self) -> Path:
        """Return the resolved path backing this store."""

        return self._path

    @property
    def key_path(self) -> Path:
        return self._key_path

    @property
    def secret_backend(self) -> str:
        return _SECRET_BACKEND

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying CLI/environment overrides when present."""

        payload = self._read_payload()
        settings = Settings()
        needs_migration = False

        if payload:
            plaintext_key, migrated = self._decrypt_api_key(
                payload.pop(_API_KEY_FIELD, None), payload.pop("api_key", None)
            )
            needs_migration = migrated
            data = _filter_fields(payload)
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            fallback_key = provider_defaults(settings.provider).get("api_key", "")
            settings = replace(settings, api_key=plaintext_key or fallback_key)
            LOGGER.debug("Settings loaded from %s (provider=%s, model=%s)", self._path, settings.provider, settings.model)

        version_mismatch = bool(payload) and payload.get("version") != _SETTINGS_VERSION
        if needs_migration or version_mismatch:
            try:
                self.save(settings)
            except OSError as exc:  # pragma: no cover - defensive guard
                LOGGER.warning("Failed to migrate settings payload: %s", exc)

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="CLI")

        return self._apply_env_overrides(settings)

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

    def update(self, settings: Settings, changes: Mapping[str, Any]) -> Settings:
        """Merge ``changes`` into ``settings``, persist, and return the result."""

        updated = self._apply_overrides(settings, changes, source="update")
        self.save(updated)
        return updated

    def reset(self) -> Settings:
        """Delete the persisted settings file and return defaults."""

        try:
            self._path.unlink()
            LOGGER.info("Settings reset; removed %s", self._path)
        except FileNotFoundError:
            pass
        return Settings()

    def _serialize(self, settings: Settings) -> Dict[str, Any]:
        data = asdict(settings)
        api_key = data.pop("api_key", "") or ""
        ciphertext = self._encrypt_api_key(api_key)
        if ciphertext:
            data[_API_KEY_FIELD] = ciphertext
        data["version"] = _SETTINGS_VERSION
        data["secret_backend"] = _SECRET_BACKEND
        return data

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            text = self._path.read_text(encoding="utf-8")
            payload = json.loads(text)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Settings file %s does not contain a JSON object", self._path)
            return {}
        return payload

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
                continue
            filtered[key] = value
        metadata_override = filtered.get("metadata")
        if isinstance(metadata_override, Mapping):
            merged_metadata = dict(settings.metadata or {})
            merged_metadata.update(metadata_override)
            filtered["metadata"] = merged_metadata
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

    def _cipher(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._load_or_create_key())
        return self._fernet

    def _load_or_create_key(self) -> bytes:
        try:
            key = self._key_path.read_bytes().strip()
        except FileNotFoundError:
            key = b""
        if key:
            return key
        key = Fernet.generate_key()
        self._key_path.parent.mkdir(parents=True, exist_ok=True)
        staging = self._key_path.with_name(self._key_path.name + ".tmp")
        staging.write_bytes(key)
        try:
            os.chmod(staging, 0o600)
        except OSError:  # pragma: no cover - platform dependent
            LOGGER.debug("Unable to restrict permissions on %s", staging)
        staging.replace(self._key_path)
        LOGGER.info("Generated new settings encryption key at %s", self._key_path)
        return key

    def _encrypt_api_key(self, api_key: str) -> str | None:
        if not api_key:
            return None
        token = self._cipher().encrypt(api_key.encode("utf-8")).decode("ascii")
        return f"{_SECRET_BACKEND}:{token}"

    def _decrypt_api_key(self, ciphertext: str | None, legacy_plaintext: str | None) -> tuple[str, bool]:
        if ciphertext:
            backend, _, token = ciphertext.partition(":")
            if backend != _SECRET_BACKEND or not token:
                LOGGER.warning("Unable to decrypt API key: unsupported secret backend %r", backend)
                return "", False
            try:
                return self._cipher().decrypt(token.encode("utf-8")).decode("utf-8"), False
            except InvalidToken:
                LOGGER.warning("Unable to decrypt API key: invalid Fernet token (was %s replaced?)", self._key_path)
                return "", False
        if legacy_plaintext:
            LOGGER.info("Detected plaintext API key; migrating to encrypted storage.")
            return legacy_plaintext, True
        return "", False


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {field.name for field in fields(Settings)} - {"api_key"}
    return {key: value for key, value in payload.items() if key in allowed}


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"
