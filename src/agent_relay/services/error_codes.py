from dataclasses import dataclass
from typing import List

from agent_relay.domain.errors import AgentError


@dataclass(frozen=True)
class RecoveryAction:
    action_id: str
    label: str
    description: str


@dataclass(frozen=True)
class ErrorCatalogEntry:
    code: str
    title: str
    user_message: str
    triggers: List[str]
    actions: List[RecoveryAction]


ERROR_CATALOG: List[ErrorCatalogEntry] = [
    ErrorCatalogEntry(
        code="ERR_SPAWN_FAILED",
        title="Agent could not be started",
        user_message="The agent process or connection could not be started.",
        triggers=["No project directory configured.", "Project directory does not exist:", "Failed to start agent process:"],
        actions=[
            RecoveryAction("set_project_dir", "Set project directory", "Point the agent at an existing directory."),
            RecoveryAction("switch_provider", "Switch provider", "Pick a CLI provider for process runs."),
        ],
    ),
    ErrorCatalogEntry(
        code="ERR_CLI_NOT_FOUND",
        title="Agent CLI not available",
        user_message="The selected agent CLI is not installed or not on PATH.",
        triggers=["is not installed or not on PATH", "OpenClaw config not found", "Custom agent command not found."],
        actions=[
            RecoveryAction("install_cli", "Install CLI", "Follow the install hint, then retry."),
            RecoveryAction("switch_provider", "Switch provider", "Use another installed agent."),
        ],
    ),
    ErrorCatalogEntry(
        code="ERR_AUTH_FAILED",
        title="Agent authentication failed",
        user_message="The agent CLI rejected its local login and no fallback key could recover it.",
        triggers=["authentication failed."],
        actions=[
            RecoveryAction("reauth", "Log in again", "Run the provider's login command."),
            RecoveryAction("set_fallback_key", "Add fallback key", "Store a fallback API key in settings."),
        ],
    ),
    ErrorCatalogEntry(
        code="ERR_EXEC_TIMEOUT",
        title="Execution timeout",
        user_message="The agent produced no output before the idle timeout.",
        triggers=["before the idle timeout", "Execution timeout."],
        actions=[
            RecoveryAction("retry_same_agent", "Retry same agent", "Send the same prompt again."),
            RecoveryAction("raise_timeout", "Raise timeout", "Increase AGENT_IDLE_TIMEOUT_SEC."),
        ],
    ),
    ErrorCatalogEntry(
        code="ERR_EXIT_NONZERO",
        title="Agent exited with error",
        user_message="The agent returned a non-zero exit code without output.",
        triggers=["exited with code"],
        actions=[
            RecoveryAction("retry_same_agent", "Retry same agent", "Send the same prompt again."),
            RecoveryAction("inspect_stderr", "Inspect stderr", "Read the stderr tail in the error message."),
        ],
    ),
    ErrorCatalogEntry(
        code="ERR_STREAM_PROTOCOL",
        title="Malformed provider stream",
        user_message="The provider sent an error event or an unreadable stream.",
        triggers=["Malformed event payload", "Unexpected event payload", "Stream read error:"],
        actions=[
            RecoveryAction("retry_same_agent", "Retry same agent", "Send the same prompt again."),
        ],
    ),
    ErrorCatalogEntry(
        code="ERR_PROVIDER_HTTP",
        title="Provider request failed",
        user_message="The HTTP provider could not be reached or rejected the request.",
        triggers=["Cannot connect to", "request timed out.", "rate limit exceeded", "returned 4", "returned 5"],
        actions=[
            RecoveryAction("check_key", "Check API key", "Verify the key in settings."),
            RecoveryAction("retry_later", "Retry later", "Wait for rate limits or the gateway to recover."),
        ],
    ),
    ErrorCatalogEntry(
        code="ERR_UNKNOWN",
        title="Unknown execution error",
        user_message="An unknown error occurred.",
        triggers=[],
        actions=[
            RecoveryAction("retry_same_agent", "Retry same agent", "Retry once to confirm reproducibility."),
            RecoveryAction("raise_log_level", "Raise log level", "Re-run with --log-level DEBUG for details."),
        ],
    ),
]


def detect_error_code(text: str) -> str:
    value = text or ""
    for entry in ERROR_CATALOG:
        if any(trigger in value for trigger in entry.triggers):
            return entry.code
    return "ERR_UNKNOWN"


def error_code_for(exc: BaseException) -> str:
    if isinstance(exc, AgentError):
        return exc.code
    return detect_error_code(str(exc))


def get_catalog_entry(code: str) -> ErrorCatalogEntry:
    for entry in ERROR_CATALOG:
        if entry.code == code:
            return entry
    return next(entry for entry in ERROR_CATALOG if entry.code == "ERR_UNKNOWN")
