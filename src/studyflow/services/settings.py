"""Client settings and their on-disk home.

Settings live in ``~/.studyflow/settings.json``. The access token never
touches that file in clear text: it is stored Fernet-encrypted under
``access_token_ciphertext`` with the key kept in a sibling ``.key`` file.
Command-line overrides are applied on top of the file, and ``STUDYFLOW_*``
environment variables on top of both.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Mapping

from cryptography.fernet import Fernet, InvalidToken

__all__ = [
    "Settings",
    "SettingsStore",
    "TokenCipher",
    "apply_overrides",
    "redact_secret",
    "DEFAULT_BASE_URL",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:5000"
SETTINGS_DIR = Path.home() / ".studyflow"
FORMAT_VERSION = 1
TOKEN_FIELD = "access_token_ciphertext"
TRUE_VALUES = frozenset({"1", "true", "yes", "on", "debug"})


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    base_url: str = DEFAULT_BASE_URL
    access_token: str = ""
    request_timeout: float = 30.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    tool_config_ttl: float = 300.0
    default_headers: dict[str, str] = field(default_factory=dict)
    debug_logging: bool = False


def _flag(value: str) -> bool:
    return value.strip().lower() in TRUE_VALUES


# variable -> (settings field, parser); parsers raise ValueError on bad input
ENVIRONMENT: Mapping[str, tuple[str, Callable[[str], Any]]] = {
    "STUDYFLOW_BASE_URL": ("base_url", str),
    "STUDYFLOW_ACCESS_TOKEN": ("access_token", str),
    "STUDYFLOW_DEBUG_LOGGING": ("debug_logging", _flag),
    "STUDYFLOW_REQUEST_TIMEOUT": ("request_timeout", float),
    "STUDYFLOW_MAX_RETRIES": ("max_retries", int),
}


class TokenCipher:
    """Fernet encryption for the stored access token.

    The key is created on first use and written with owner-only
    permissions. Stored values carry a ``fernet:`` prefix; anything else,
    or a value the key cannot open, raises :class:`ValueError`.
    """

    name = "fernet"
    prefix = "fernet:"

    def __init__(self, key_path: Path) -> None:
        self.key_path = key_path
        self._fernet: Fernet | None = None

    def encrypt(self, token: str) -> str:
        if not token:
            return ""
        return self.prefix + self._key().encrypt(token.encode("utf-8")).decode("ascii")

    def decrypt(self, stored: str) -> str:
        if not stored:
            return ""
        if not stored.startswith(self.prefix):
            raise ValueError(f"Stored token is not {self.name}-encrypted")
        try:
            raw = self._key().decrypt(stored[len(self.prefix):].encode("ascii"))
        except InvalidToken as exc:
            raise ValueError("Stored token does not match the key") from exc
        return raw.decode("utf-8")

    def _key(self) -> Fernet:
        if self._fernet is None:
            if self.key_path.exists():
                key = self.key_path.read_bytes().strip()
            else:
                key = Fernet.generate_key()
                _write_atomic(self.key_path, key, private=True)
                LOGGER.debug("Created token key at %s", self.key_path)
            self._fernet = Fernet(key)
        return self._fernet


class SettingsStore:
    """Reads and writes :class:`Settings` as JSON."""

    def __init__(self, path: Path | None = None, *, cipher: TokenCipher | None = None) -> None:
        self.path = path or SETTINGS_DIR / "settings.json"
        self.cipher = cipher or TokenCipher(self.path.with_suffix(".key"))

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Return the stored settings with command-line then environment overrides."""

        payload = self._read()
        settings = self._decode(payload) if payload else Settings()
        if payload and (payload.get("version") != FORMAT_VERSION or "access_token" in payload):
            # older layouts are rewritten once, encrypting any clear-text token
            try:
                self.save(settings)
            except OSError as exc:  # pragma: no cover - read-only home directories
                LOGGER.warning("Could not upgrade %s: %s", self.path, exc)
        if overrides:
            settings = apply_overrides(settings, overrides, source="command line")
        return apply_overrides(settings, environment_overrides(), source="environment")

    def save(self, settings: Settings) -> Path:
        payload = asdict(settings)
        token = payload.pop("access_token")
        if token:
            payload[TOKEN_FIELD] = self.cipher.encrypt(token)
        payload["version"] = FORMAT_VERSION
        payload["secret_backend"] = self.cipher.name
        _write_atomic(self.path, json.dumps(payload, indent=2, sort_keys=True).encode("utf-8"))
        LOGGER.debug("Settings saved to %s", self.path)
        return self.path

    def _read(self) -> dict[str, Any]:
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Ignoring %s: not valid JSON (%s)", self.path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Ignoring %s: expected a JSON object", self.path)
            return {}
        return payload

    def _decode(self, payload: Mapping[str, Any]) -> Settings:
        names = {item.name for item in fields(Settings)} - {"access_token"}
        values = {key: value for key, value in payload.items() if key in names}
        if not isinstance(values.get("default_headers", {}), Mapping):
            LOGGER.debug("Dropping default_headers that is not an object")
            del values["default_headers"]
        try:
            settings = Settings(**values)
        except TypeError as exc:
            LOGGER.warning("Settings in %s are malformed: %s", self.path, exc)
            settings = Settings()
        token = self._stored_token(payload)
        return replace(settings, access_token=token) if token else settings

    def _stored_token(self, payload: Mapping[str, Any]) -> str:
        ciphertext = payload.get(TOKEN_FIELD)
        if ciphertext:
            try:
                return self.cipher.decrypt(str(ciphertext))
            except ValueError as exc:
                LOGGER.warning("Discarding stored access token: %s", exc)
                return ""
        plaintext = payload.get("access_token")
        if plaintext:
            LOGGER.info("Found a clear-text access token in %s; it will be encrypted", self.path)
            return str(plaintext)
        return ""


def apply_overrides(settings: Settings, overrides: Mapping[str, Any], *, source: str) -> Settings:
    """Return ``settings`` with known, non-None ``overrides`` applied.

    ``default_headers`` overrides are merged into the existing headers.
    """

    names = {item.name for item in fields(Settings)}
    changes = {key: value for key, value in overrides.items() if key in names and value is not None}
    headers = changes.get("default_headers")
    if isinstance(headers, Mapping):
        changes["default_headers"] = {**settings.default_headers, **headers}
    if not changes:
        return settings
    LOGGER.debug("Applying %s overrides: %s", source, sorted(changes))
    return replace(settings, **changes)


def environment_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for variable, (name, parse) in ENVIRONMENT.items():
        raw = os.environ.get(variable)
        if raw is None:
            continue
        try:
            overrides[name] = parse(raw)
        except ValueError:
            LOGGER.warning("Ignoring %s=%r: not a valid %s", variable, raw, name)
    return overrides


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"


def _write_atomic(path: Path, data: bytes, *, private: bool = False) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    staging = path.with_name(path.name + ".tmp")
    staging.write_bytes(data)
    if private and os.name != "nt":  # pragma: no cover - depends on OS
        os.chmod(staging, 0o600)
    staging.replace(path)
