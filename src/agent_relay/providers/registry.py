"""Provider registry: maps a provider identifier to its behavior table.

The set of providers is closed. Each ``ProviderKind`` has exactly one
``ProviderBehavior`` entry describing how its CLI is invoked, which API-key
environment variable it understands and which hints to show when it is
missing or logged out.

Usage::

    config = ProviderConfig.resolve("Codex")
    config.api_key_env_var()   # "OPENAI_API_KEY"
    config.install_hint()      # "Agent CLI (Codex) is not installed ..."
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Dict, Optional


class ProviderKind(enum.Enum):
    CLAUDE = "claude"
    CODEX = "codex"
    GEMINI = "gemini"
    OPENCLAW = "openclaw"
    CUSTOM = "custom"


DEFAULT_PROVIDER = ProviderKind.CLAUDE


@dataclass(frozen=True)
class ProviderBehavior:
    kind: ProviderKind
    display_name: str
    binary: Optional[str]
    api_key_env_var: Optional[str]
    install_hint: str
    reauth_hint: str
    supports_system_flag: bool = False
    structured_output: bool = False
    http_only: bool = False


_BEHAVIORS: Dict[ProviderKind, ProviderBehavior] = {
    ProviderKind.CLAUDE: ProviderBehavior(
        kind=ProviderKind.CLAUDE,
        display_name="Claude Code",
        binary="claude",
        api_key_env_var="ANTHROPIC_API_KEY",
        install_hint=(
            "Agent CLI (Claude Code) is not installed or not on PATH.\n"
            "Install it with: npm install -g @anthropic-ai/claude-code\n"
            "Then retry the request."
        ),
        reauth_hint="Run `claude login` to restore local auth",
        supports_system_flag=True,
        structured_output=True,
    ),
    ProviderKind.CODEX: ProviderBehavior(
        kind=ProviderKind.CODEX,
        display_name="Codex",
        binary="codex",
        api_key_env_var="OPENAI_API_KEY",
        install_hint=(
            "Agent CLI (Codex) is not installed or not on PATH.\n"
            "Install it with: npm install -g @openai/codex\n"
            "Then retry the request."
        ),
        reauth_hint="Run `codex auth` to restore local auth",
    ),
    ProviderKind.GEMINI: ProviderBehavior(
        kind=ProviderKind.GEMINI,
        display_name="Gemini",
        binary="gemini",
        api_key_env_var="GOOGLE_API_KEY",
        install_hint=(
            "Agent CLI (Gemini) is not installed or not on PATH.\n"
            "Install it with: npm install -g @google/gemini-cli\n"
            "Then retry the request."
        ),
        reauth_hint="Run `gemini auth login` to restore local auth",
    ),
    ProviderKind.OPENCLAW: ProviderBehavior(
        kind=ProviderKind.OPENCLAW,
        display_name="OpenClaw",
        binary=None,
        api_key_env_var=None,
        install_hint=(
            "OpenClaw gateway not found. Install OpenClaw and run `openclaw gateway start`.\n"
            "https://openclaw.ai"
        ),
        reauth_hint="Check your OpenClaw gateway config at ~/.openclaw/openclaw.json",
        http_only=True,
    ),
    ProviderKind.CUSTOM: ProviderBehavior(
        kind=ProviderKind.CUSTOM,
        display_name="Custom agent",
        binary=None,
        api_key_env_var=None,
        install_hint="Custom agent command not found. Verify the command is installed and on PATH.",
        reauth_hint="Re-authenticate your agent CLI",
    ),
}


def parse_provider(value: Optional[str]) -> ProviderKind:
    """Case-insensitive lookup; anything unrecognized is the flagship CLI."""
    normalized = str(value or "").strip().lower()
    for kind in ProviderKind:
        if kind.value == normalized:
            return kind
    return DEFAULT_PROVIDER


def behavior_for(kind: ProviderKind) -> ProviderBehavior:
    return _BEHAVIORS[kind]


@dataclass(frozen=True)
class ProviderConfig:
    kind: ProviderKind
    custom_command: Optional[str] = None

    @classmethod
    def resolve(cls, provider: Optional[str], custom_command: Optional[str] = None) -> "ProviderConfig":
        kind = parse_provider(provider)
        template = (custom_command or "").strip() or None
        return cls(kind=kind, custom_command=template if kind is ProviderKind.CUSTOM else None)

    @property
    def behavior(self) -> ProviderBehavior:
        return behavior_for(self.kind)

    @property
    def name(self) -> str:
        return self.kind.value

    def api_key_env_var(self) -> Optional[str]:
        return self.behavior.api_key_env_var

    def install_hint(self) -> str:
        return self.behavior.install_hint

    def reauth_hint(self) -> str:
        return self.behavior.reauth_hint
