"""Settings dataclasses and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

__all__ = [
    "Settings",
    "SettingsStore",
    "SecretVault",
    "DEFAULT_SYSTEM_PROMPT",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".qtbot"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_ENV_OVERRIDES: Mapping[str, str] = {
    "QTBOT_API_KEY": "api_key",
    "QTBOT_API_URL": "api_url",
    "QTBOT_MODEL": "model",
    "QTBOT_SYSTEM_PROMPT": "system_prompt",
    "QTBOT_EMBEDDING_MODEL": "rag_embedding_model",
    "QTBOT_EMBEDDING_URL": "rag_embedding_url",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "QTBOT_DEBUG_LOGGING": "debug_logging",
    "QTBOT_RAG_ENABLED": "rag_enabled",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "QTBOT_REQUEST_TIMEOUT": "request_timeout",
    "QTBOT_TEMPERATURE": "temperature",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "QTBOT_MAX_RETRIES": "max_retries",
    "QTBOT_CONTEXT_WINDOW": "context_window_size",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_API_KEY_FIELD = "api_key_ciphertext"

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant with access to tools. Use the available tools "
    "when appropriate to provide accurate and helpful responses."
)


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    backend: str = "ollama"
    model: str = "gpt-oss:20b"
    api_url: str = "http://localhost:11434/api/generate"
    api_key: str = ""
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    context_window_size: int = 4096
    temperature: float = 0.7
    top_p: float = 0.9
    top_k: int = 40
    max_tokens: int = 2048
    override_context_window_size: bool = False
    override_temperature: bool = False
    override_top_p: bool = False
    override_top_k: bool = False
    override_max_tokens: bool = False
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_base_seconds: float = 1.0
    discovery_timeout: float = 5.0
    rag_enabled: bool = False
    rag_embedding_model: str = "nomic-embed-text"
    rag_embedding_url: str = "http://localhost:11434/api/embeddings"
    rag_chunk_size: int = 512
    rag_chunk_overlap: int = 50
    rag_top_k: int = 3
    rag_embedding_timeout: float = 60.0
    mcp_servers: list[dict[str, Any]] = field(default_factory=list)
    debug_logging: bool = False


class SecretVault:
    """Encrypts and decrypts the API key with a Fernet key stored beside the settings."""

    name = "fernet"

    def __init__(self, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._fernet: Fernet | None = None

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
            LOGGER.warning("Unknown secret token prefix %s; returning ciphertext.", prefix)
            return token
        try:
            raw = self._get_fernet().decrypt(payload.encode("ascii"))
        except InvalidToken as exc:  # pragma: no cover - indicates tampering
            raise ValueError("Invalid Fernet token") from exc
        return raw.decode("utf-8")

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
        self._vault = vault or SecretVault(self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        """Return the resolved path backing this store."""

        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying runtime/environment overrides when present."""

        payload = self._read_payload()
        settings = Settings()
        if payload:
            plaintext_key = self._decrypt_api_key(payload.pop(_API_KEY_FIELD, None))
            if not plaintext_key and isinstance(payload.get("api_key"), str):
                plaintext_key = payload["api_key"]
            data = _filter_fields(payload)
            data["mcp_servers"] = _normalize_servers(data.get("mcp_servers"))
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            if plaintext_key:
                settings = replace(settings, api_key=plaintext_key)
        LOGGER.debug(
            "Settings loaded from %s: model=%s, %d MCP server(s)",
            self._path,
            settings.model,
            len(settings.mcp_servers),
        )

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="runtime")
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

    def _serialize(self, settings: Settings) -> Dict[str, Any]:
        data = asdict(settings)
        api_key = data.pop("api_key", "") or ""
        ciphertext = self._vault.encrypt(api_key)
        if ciphertext:
            data[_API_KEY_FIELD] = ciphertext
        data["version"] = _SETTINGS_VERSION
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
            LOGGER.warning("Settings file %s does not contain an object", self._path)
            return {}
        return payload

    def _decrypt_api_key(self, ciphertext: Any) -> str:
        if not isinstance(ciphertext, str) or not ciphertext:
            return ""
        try:
            return self._vault.decrypt(ciphertext)
        except ValueError as exc:
            LOGGER.warning("Stored API key could not be decrypted: %s", exc)
            return ""

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> Settings:
        allowed = {item.name for item in fields(Settings)}
        filtered: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in allowed or value is None:
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
    allowed = {item.name for item in fields(Settings)} - {"api_key"}
    return {key: value for key, value in payload.items() if key in allowed}


def _normalize_servers(payload: Any) -> list[dict[str, Any]]:
    if not isinstance(payload, list):
        return []
    servers: list[dict[str, Any]] = []
    for entry in payload:
        if not isinstance(entry, Mapping):
            LOGGER.debug("Ignoring malformed MCP server entry: %r", entry)
            continue
        servers.append(
            {
                "name": str(entry.get("name") or ""),
                "url": str(entry.get("url") or ""),
                "type": str(entry.get("type") or "http").lower(),
                "enabled": bool(entry.get("enabled", True)),
            }
        )
    return servers


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"
