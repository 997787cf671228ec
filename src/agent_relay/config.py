import logging
import os
import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Optional, Protocol

from agent_relay.providers.registry import ProviderKind

logger = logging.getLogger(__name__)

PROJECT_DIR_KEY = "AGENT_RELAY_PROJECT_DIR"
PROVIDER_KEY = "AGENT_RELAY_PROVIDER"
CUSTOM_COMMAND_KEY = "AGENT_RELAY_CUSTOM_COMMAND"
ANTHROPIC_FALLBACK_KEY = "ANTHROPIC_FALLBACK_API_KEY"
OPENAI_FALLBACK_KEY = "OPENAI_FALLBACK_API_KEY"
GOOGLE_FALLBACK_KEY = "GOOGLE_FALLBACK_API_KEY"
ANTHROPIC_MODEL_KEY = "ANTHROPIC_MODEL"
OPENCLAW_URL_KEY = "OPENCLAW_GATEWAY_URL"
OPENCLAW_TOKEN_KEY = "OPENCLAW_GATEWAY_TOKEN"

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "agent-relay"


@dataclass(frozen=True)
class AgentSettings:
    """Read-only snapshot of everything an invocation consults."""

    project_dir: str = ""
    provider: str = ""
    custom_command: str = ""
    anthropic_fallback_key: str = ""
    openai_fallback_key: str = ""
    google_fallback_key: str = ""
    anthropic_model: str = ""
    openclaw_url: str = ""
    openclaw_token: str = ""

    def fallback_key_for(self, kind: ProviderKind) -> str:
        if kind is ProviderKind.CLAUDE:
            return self.anthropic_fallback_key
        if kind is ProviderKind.CODEX:
            return self.openai_fallback_key
        if kind is ProviderKind.GEMINI:
            return self.google_fallback_key
        return ""


class SettingsSource(Protocol):
    def snapshot(self) -> AgentSettings:
        ...


def load_env_file(path: Path) -> Dict[str, str]:
    data: Dict[str, str] = {}
    if not path.exists():
        return data
    try:
        for line in path.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            k, v = line.split("=", 1)
            data[k.strip()] = _unquote(v.strip())
    except OSError as exc:
        logger.warning("Failed to read %s: %s", path, exc)
    return data


def get_env_value(key: str, env_file: Dict[str, str]) -> Optional[str]:
    return os.environ.get(key) or env_file.get(key)


def get_env_path(config_dir: Path) -> Path:
    return config_dir / ".env"


def settings_from_env(env_file: Dict[str, str]) -> AgentSettings:
    def _value(key: str) -> str:
        return (get_env_value(key, env_file) or "").strip()

    return AgentSettings(
        project_dir=_value(PROJECT_DIR_KEY),
        provider=_value(PROVIDER_KEY),
        custom_command=_value(CUSTOM_COMMAND_KEY),
        anthropic_fallback_key=_value(ANTHROPIC_FALLBACK_KEY),
        openai_fallback_key=_value(OPENAI_FALLBACK_KEY),
        google_fallback_key=_value(GOOGLE_FALLBACK_KEY),
        anthropic_model=_value(ANTHROPIC_MODEL_KEY),
        openclaw_url=_value(OPENCLAW_URL_KEY),
        openclaw_token=_value(OPENCLAW_TOKEN_KEY),
    )


class EnvSettingsSource:
    """Settings from the process environment layered over ``<config_dir>/.env``.

    The file is re-read on every snapshot so edits apply to the next
    invocation without a restart.
    """

    def __init__(self, config_dir: Path = DEFAULT_CONFIG_DIR):
        self.config_dir = config_dir

    @property
    def env_path(self) -> Path:
        return get_env_path(self.config_dir)

    def snapshot(self) -> AgentSettings:
        return settings_from_env(load_env_file(self.env_path))


class InMemorySettingsSource:
    """Mutable settings holder for embedding hosts (and tests)."""

    def __init__(self, settings: Optional[AgentSettings] = None):
        self._settings = settings or AgentSettings()
        self._lock = threading.Lock()

    def snapshot(self) -> AgentSettings:
        with self._lock:
            return self._settings

    def update(self, **changes: str) -> AgentSettings:
        with self._lock:
            self._settings = replace(self._settings, **changes)
            return self._settings


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
        return value[1:-1]
    return value
