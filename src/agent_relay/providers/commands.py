"""Shell command construction for CLI providers.

Prompt text never appears in a built command. Commands reference
``"$AGENT_RELAY_PROMPT"`` and ``"$AGENT_RELAY_SYSTEM"`` and the runner passes
the actual text through the child environment, so nothing the user types is
ever parsed by the shell.
"""
from __future__ import annotations

from agent_relay.domain.invocations import PROMPT_ENV_VAR, SYSTEM_ENV_VAR, InvocationCommand
from agent_relay.providers.registry import ProviderConfig, ProviderKind

PROMPT_REF = f'"${PROMPT_ENV_VAR}"'
SYSTEM_REF = f'"${SYSTEM_ENV_VAR}"'
CUSTOM_PROMPT_PLACEHOLDER = "{prompt}"

_SHELL_ENV = r"""export NVM_DIR="$HOME/.nvm"
[ -s "$NVM_DIR/nvm.sh" ] && . "$NVM_DIR/nvm.sh"
[ -f "$HOME/.bashrc" ] && . "$HOME/.bashrc" 2>/dev/null
[ -f "$HOME/.profile" ] && . "$HOME/.profile" 2>/dev/null
[ -f "$HOME/.zshrc" ] && . "$HOME/.zshrc" 2>/dev/null
export PATH="$PATH:$HOME/.local/bin:/usr/local/bin:/usr/bin"
for _d in "$HOME/AppData/Roaming/Claude/claude-code"/*/; do
  [ -d "$_d" ] && export PATH="$PATH:$_d"
done"""


def build_shell_env() -> str:
    """Bootstrap that makes user-installed CLIs (nvm, ~/.local, Windows installs) visible."""
    return _SHELL_ENV


def build_oneshot_command(config: ProviderConfig) -> InvocationCommand:
    kind = config.kind
    env_var = config.api_key_env_var()
    if kind is ProviderKind.CLAUDE:
        body = f"claude --print --dangerously-skip-permissions {PROMPT_REF}"
    elif kind is ProviderKind.CODEX:
        body = f"codex --quiet --full-auto {PROMPT_REF}"
    elif kind is ProviderKind.GEMINI:
        body = f"gemini -p {PROMPT_REF}"
    elif kind is ProviderKind.OPENCLAW:
        return _http_only_placeholder(config)
    elif kind is ProviderKind.CUSTOM:
        body = _custom_body(config)
    else:
        raise AssertionError(f"unhandled provider kind: {kind!r}")
    return InvocationCommand(shell_command=_with_env(body), api_key_env_var=env_var)


def build_stream_command(config: ProviderConfig, has_system_prompt: bool = False) -> InvocationCommand:
    """Streaming variant.

    Only Claude Code has a dedicated system-prompt flag. For the other CLIs
    the caller folds the system prompt into the prompt text before the run.
    """
    kind = config.kind
    env_var = config.api_key_env_var()
    if kind is ProviderKind.CLAUDE:
        flags = ["claude", "--print", "--verbose", "--output-format", "stream-json"]
        if has_system_prompt:
            flags += ["--append-system-prompt", SYSTEM_REF]
        flags += ["--dangerously-skip-permissions", PROMPT_REF]
        body = " ".join(flags)
    elif kind is ProviderKind.CODEX:
        body = f"codex --quiet --full-auto {PROMPT_REF}"
    elif kind is ProviderKind.GEMINI:
        body = f"gemini -p {PROMPT_REF}"
    elif kind is ProviderKind.OPENCLAW:
        return _http_only_placeholder(config)
    elif kind is ProviderKind.CUSTOM:
        body = _custom_body(config)
    else:
        raise AssertionError(f"unhandled provider kind: {kind!r}")
    return InvocationCommand(shell_command=_with_env(body), api_key_env_var=env_var)


def _with_env(body: str) -> str:
    return f"{build_shell_env()}\n{body}"


def _custom_body(config: ProviderConfig) -> str:
    template = (config.custom_command or "").strip()
    if not template:
        return "echo 'No custom agent command configured' >&2; exit 2"
    return template.replace(CUSTOM_PROMPT_PLACEHOLDER, PROMPT_REF)


def _http_only_placeholder(config: ProviderConfig) -> InvocationCommand:
    name = config.behavior.display_name
    return InvocationCommand(
        shell_command=f"echo '{name} uses HTTP, not a CLI provider' >&2; exit 64",
        api_key_env_var=None,
        spawnable=False,
    )
