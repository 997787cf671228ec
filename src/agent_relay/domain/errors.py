"""Failure taxonomy for agent invocations.

Every error carries a stable ``code`` that maps onto an entry of
``agent_relay.services.error_codes.ERROR_CATALOG``. ``str(exc)`` is the
actionable, user-facing message that ends up in a terminal ``StreamEvent``.
"""

from typing import Optional


class AgentError(Exception):
    code = "ERR_UNKNOWN"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class SpawnFailure(AgentError):
    code = "ERR_SPAWN_FAILED"


class NotInstalled(AgentError):
    code = "ERR_CLI_NOT_FOUND"


class AuthFailure(AgentError):
    code = "ERR_AUTH_FAILED"

    def __init__(self, message: str, stderr_tail: str = ""):
        super().__init__(message)
        self.stderr_tail = stderr_tail


class AgentTimeout(AgentError):
    code = "ERR_EXEC_TIMEOUT"


class NonZeroExit(AgentError):
    code = "ERR_EXIT_NONZERO"

    def __init__(self, message: str, exit_code: int, stderr_tail: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail


class StreamProtocolError(AgentError):
    code = "ERR_STREAM_PROTOCOL"


class ProviderHttpError(AgentError):
    code = "ERR_PROVIDER_HTTP"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
