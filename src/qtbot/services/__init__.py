"""Service layer helpers (settings persistence)."""

from .settings import DEFAULT_SYSTEM_PROMPT, SecretVault, Settings, SettingsStore, redact_secret

__all__ = [
    "DEFAULT_SYSTEM_PROMPT",
    "SecretVault",
    "Settings",
    "SettingsStore",
    "redact_secret",
]
