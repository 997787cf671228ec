import asyncio
import logging
import signal
from typing import Mapping, Optional

from agent_relay.domain.contracts import CommandResult, ExecutionRunner
from agent_relay.domain.errors import SpawnFailure
from agent_relay.execution.stream_runner import _read_timeout_env, signal_group
from agent_relay.observability.structured_log import log_json

logger = logging.getLogger(__name__)

DEFAULT_ONESHOT_TIMEOUT_SEC = 600


class LocalShellRunner(ExecutionRunner):
    """Runs a bash script to completion and collects its output.

    Output is buffered as it arrives, so a run stopped by the timeout still
    returns whatever stdout it produced.
    """

    def __init__(self, timeout_sec: Optional[float] = None):
        self._timeout_sec = timeout_sec or _read_timeout_env("AGENT_ONESHOT_TIMEOUT_SEC", DEFAULT_ONESHOT_TIMEOUT_SEC)

    async def run(
        self,
        shell_command: str,
        cwd: str,
        env: Mapping[str, str],
        timeout_sec: Optional[float] = None,
    ) -> CommandResult:
        constrained_timeout = max(0.1, float(timeout_sec or self._timeout_sec))
        try:
            proc = await asyncio.create_subprocess_exec(
                "bash",
                "-c",
                shell_command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
                cwd=cwd,
                env=dict(env),
                start_new_session=True,
            )
        except OSError as exc:
            raise SpawnFailure(f"Failed to start agent process: {exc}") from exc

        stdout = bytearray()
        stderr = bytearray()

        async def communicate() -> int:
            await asyncio.gather(_collect(proc.stdout, stdout), _collect(proc.stderr, stderr))
            return await proc.wait()

        try:
            returncode = await asyncio.wait_for(communicate(), timeout=constrained_timeout)
        except asyncio.TimeoutError:
            log_json(
                logger,
                "oneshot.timeout",
                pid=proc.pid,
                timeout_sec=constrained_timeout,
                stdout_bytes=len(stdout),
            )
            signal_group(proc, signal.SIGKILL)
            await proc.wait()
            return CommandResult(returncode=124, stdout=_decode(stdout), stderr="Execution timeout.", timed_out=True)

        return CommandResult(returncode=returncode or 0, stdout=_decode(stdout), stderr=_decode(stderr))


async def _collect(stream: Optional[asyncio.StreamReader], buffer: bytearray) -> None:
    if stream is None:
        return
    while True:
        data = await stream.read(4096)
        if not data:
            return
        buffer.extend(data)


def _decode(data: bytearray) -> str:
    return data.decode("utf-8", errors="replace") if data else ""
