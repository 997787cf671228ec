from dataclasses import dataclass
from typing import Awaitable, Callable, Mapping, Optional, Protocol, Union

from agent_relay.domain.events import AuthFallbackNotice, StreamEvent


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False


ChunkCallback = Callable[[str], Awaitable[None]]
SinkEvent = Union[StreamEvent, AuthFallbackNotice]


class ExecutionRunner(Protocol):
    async def run(
        self,
        shell_command: str,
        cwd: str,
        env: Mapping[str, str],
        timeout_sec: Optional[float] = None,
    ) -> CommandResult:
        ...
