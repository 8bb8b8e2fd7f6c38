"""Settings dataclasses and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Sequence

from cryptography.fernet import Fernet, InvalidToken

__all__ = [
    "Settings",
    "SettingsStore",
    "SecretVault",
    "MAX_RECENT_FILES",
    "remember_recent_file",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".margin"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_ENV_OVERRIDES: Mapping[str, str] = {
    "MARGIN_API_KEY": "api_key",
    "MARGIN_BASE_URL": "base_url",
    "MARGIN_MODEL": "model",
    "MARGIN_ORGANIZATION": "organization",
    "MARGIN_CHATS_DIR": "chats_dir",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "MARGIN_DEBUG_LOGGING": "debug_logging",
    "MARGIN_CANCEL_SUPERSEDED_STREAMS": "cancel_superseded_streams",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "MARGIN_REQUEST_TIMEOUT": "request_timeout",
    "MARGIN_TEMPERATURE": "temperature",
    "MARGIN_PERSISTENCE_DEBOUNCE": "persistence_debounce",
    "MARGIN_STREAM_TIMEOUT": "stream_timeout",
}
_FALLBACK_API_KEY_ENV = "OPENAI_API_KEY"
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_API_KEY_FIELD = "api_key_ciphertext"
MAX_RECENT_FILES = 10


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    organization: str | None = None
    temperature: float = 0.7
    explain_max_tokens: int = 500
    chat_max_tokens: int = 1500
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: dict[str, str] = field(default_factory=dict)
    persistence_debounce: float = 0.3
    persistence_max_retries: int = 3
    flush_timeout: float = 2.0
    stream_timeout: float | None = None
    cancel_superseded_streams: bool = True
    chats_dir: str | None = None
    default_style: str = "Explain simply"
    recent_files: list[str] = field(default_factory=list)
    last_open_file: str | None = None
    debug_logging: bool = False


class SecretVault:
    """Encrypts the API key with a Fernet key stored next to the settings file."""

    strategy = "fernet"

    def __init__(self, *, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._fernet: Fernet | None = None

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        token = self._get_fernet().encrypt(secret.encode("utf-8"))
        return f"{self.strategy}:{token.decode('ascii')}"

    def decrypt(self, token: str | None) -> str:
        if not token:
            return ""
        prefix, _, payload = token.partition(":")
        if not payload:
            payload, prefix = prefix, self.strategy
        if prefix != self.strategy:
            raise ValueError(f"Unknown secret backend {prefix!r}")
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

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying CLI/environment overrides when present."""

        settings = self.load_persisted()
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="CLI")
        settings = self._apply_env_overrides(settings)
        if not settings.api_key:
            fallback_key = os.environ.get(_FALLBACK_API_KEY_ENV, "").strip()
            if fallback_key:
                settings = replace(settings, api_key=fallback_key)
        return settings

    def load_persisted(self) -> Settings:
        """Return the settings stored on disk, without any run-only overrides."""

        payload = self._read_payload()
        settings = Settings()
        if payload:
            ciphertext = payload.pop(_API_KEY_FIELD, None)
            legacy_plaintext = payload.pop("api_key", None)
            data = _filter_fields(payload)
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            api_key = self._decrypt_api_key(ciphertext)
            if not api_key and legacy_plaintext:
                LOGGER.info("Detected plaintext API key; migrating to encrypted storage.")
                api_key = str(legacy_plaintext)
                settings = replace(settings, api_key=api_key)
                self._migrate(settings)
            elif api_key:
                settings = replace(settings, api_key=api_key)
            if payload.get("version") != _SETTINGS_VERSION:
                self._migrate(settings)
        return settings

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes."""

        data = asdict(settings)
        api_key = data.pop("api_key", "") or ""
        if api_key:
            data[_API_KEY_FIELD] = self._vault.encrypt(api_key)
        data["version"] = _SETTINGS_VERSION
        body = json.dumps(data, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def save_recent_files(self, recent_files: Sequence[str], last_open_file: str | None) -> Path:
        """Write the recent-document fields onto the stored settings.

        Run-only CLI and environment overrides are left out of the file.
        """

        stored = replace(
            self.load_persisted(), recent_files=list(recent_files), last_open_file=last_open_file
        )
        return self.save(stored)

    def _migrate(self, settings: Settings) -> None:
        try:
            self.save(settings)
        except OSError as exc:  # pragma: no cover - defensive guard
            LOGGER.warning("Failed to migrate settings payload: %s", exc)

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        return dict(data) if isinstance(data, Mapping) else {}

    def _decrypt_api_key(self, ciphertext: Any) -> str:
        if not ciphertext:
            return ""
        try:
            return self._vault.decrypt(str(ciphertext))
        except ValueError as exc:
            LOGGER.warning("Unable to decrypt API key: %s", exc)
            return ""

    def _apply_overrides(self, settings: Settings, overrides: Mapping[str, Any], *, source: str) -> Settings:
        allowed = {item.name for item in fields(Settings)}
        filtered = {key: value for key, value in overrides.items() if key in allowed and value is not None}
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


def remember_recent_file(settings: Settings, document_key: str) -> Settings:
    """Move ``document_key`` to the front of the recent files list."""

    updated = [document_key]
    for existing in settings.recent_files:
        if existing == document_key:
            continue
        updated.append(existing)
        if len(updated) >= MAX_RECENT_FILES:
            break
    settings.recent_files = updated
    settings.last_open_file = document_key
    return settings


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {item.name for item in fields(Settings)} - {"api_key"}
    return {key: value for key, value in payload.items() if key in allowed}


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"
