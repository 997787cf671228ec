"""Subprocess lifecycle for streaming CLI invocations.

One ``StreamRunner.run`` call is one attempt: spawn ``bash -c`` in a new
process group, read stdout line by line through the output parser, enforce
the two-tier idle timeout, then reconcile the exit status into a
``RunnerOutcome``.

Timeouts (seconds) come from the constructor or the environment:
  AGENT_IDLE_TIMEOUT_SEC         – before the first chunk (default 300)
  AGENT_OUTPUT_IDLE_TIMEOUT_SEC  – after the first chunk (default 60)
  AGENT_EXIT_WAIT_SEC            – wait for exit after stdout EOF (default 30)
  AGENT_TERMINATE_GRACE_SEC      – SIGTERM to SIGKILL grace (default 2)
"""
import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import Dict, Mapping, Optional

from agent_relay.domain.contracts import ChunkCallback
from agent_relay.domain.errors import AgentError, AgentTimeout, AuthFailure, NonZeroExit, NotInstalled, SpawnFailure
from agent_relay.domain.invocations import PROMPT_ENV_VAR, SYSTEM_ENV_VAR, InvocationCommand
from agent_relay.domain.outcomes import Completed, Failed, RunnerOutcome, TimedOut
from agent_relay.observability.structured_log import log_json
from agent_relay.providers.auth import is_auth_error, is_command_not_found
from agent_relay.providers.output_parser import extract_text_from_line
from agent_relay.providers.registry import ProviderConfig, ProviderKind, behavior_for
from agent_relay.util import tail_text

logger = logging.getLogger(__name__)

NO_OUTPUT_IDLE_TIMEOUT_SEC = 300
OUTPUT_IDLE_TIMEOUT_SEC = 60
EXIT_WAIT_SEC = 30
TERMINATE_GRACE_SEC = 2
STDERR_CAP_BYTES = 4096
# stream-json lines can carry whole tool results
STREAM_LIMIT_BYTES = 10 * 1024 * 1024
_STDERR_DRAIN_SEC = 1.0


def _read_timeout_env(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(1, value)


def build_child_env(
    command: InvocationCommand,
    prompt: str,
    system_prompt: str = "",
    credential: Optional[str] = None,
    base_env: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """Inherited environment plus prompt variables.

    The provider's API-key variable is present only when this attempt
    supplies a credential.
    """
    env = dict(os.environ if base_env is None else base_env)
    key_var = command.api_key_env_var
    if key_var:
        env.pop(key_var, None)
        if credential:
            env[key_var] = credential
    env[PROMPT_ENV_VAR] = prompt or ""
    env[SYSTEM_ENV_VAR] = system_prompt or ""
    return env


def validate_cwd(cwd: str) -> str:
    value = (cwd or "").strip()
    if not value:
        raise SpawnFailure("No project directory configured. Set a project directory and retry.")
    path = Path(value).expanduser()
    if not path.is_dir():
        raise SpawnFailure(f"Project directory does not exist: {path}")
    return str(path)


def ensure_spawnable(command: InvocationCommand, kind: ProviderKind) -> None:
    if not command.spawnable:
        name = behavior_for(kind).display_name
        raise SpawnFailure(f"{name} is served over HTTP and cannot be run as a CLI process.")


def signal_group(proc: asyncio.subprocess.Process, sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        return
    except PermissionError:
        # Fall back to the direct child when the group is not ours.
        try:
            proc.send_signal(sig)
        except ProcessLookupError:
            return


class _StderrTail:
    def __init__(self, cap: int):
        self._cap = cap
        self._data = bytearray()

    def feed(self, data: bytes) -> None:
        self._data.extend(data)
        if len(self._data) > self._cap:
            del self._data[: len(self._data) - self._cap]

    def text(self) -> str:
        return self._data.decode("utf-8", errors="replace")


class StreamRunner:
    def __init__(
        self,
        no_output_idle_sec: Optional[float] = None,
        output_idle_sec: Optional[float] = None,
        exit_wait_sec: Optional[float] = None,
        terminate_grace_sec: Optional[float] = None,
        stderr_cap_bytes: int = STDERR_CAP_BYTES,
    ):
        self.no_output_idle_sec = no_output_idle_sec or _read_timeout_env(
            "AGENT_IDLE_TIMEOUT_SEC", NO_OUTPUT_IDLE_TIMEOUT_SEC
        )
        self.output_idle_sec = output_idle_sec or _read_timeout_env(
            "AGENT_OUTPUT_IDLE_TIMEOUT_SEC", OUTPUT_IDLE_TIMEOUT_SEC
        )
        self.exit_wait_sec = exit_wait_sec or _read_timeout_env("AGENT_EXIT_WAIT_SEC", EXIT_WAIT_SEC)
        self.terminate_grace_sec = terminate_grace_sec or _read_timeout_env(
            "AGENT_TERMINATE_GRACE_SEC", TERMINATE_GRACE_SEC
        )
        self._stderr_cap_bytes = max(1, int(stderr_cap_bytes))

    async def run(
        self,
        command: InvocationCommand,
        *,
        kind: ProviderKind,
        cwd: str,
        prompt: str,
        system_prompt: str = "",
        credential: Optional[str] = None,
        on_chunk: ChunkCallback,
    ) -> RunnerOutcome:
        ensure_spawnable(command, kind)
        workdir = validate_cwd(cwd)
        env = build_child_env(command, prompt, system_prompt, credential)
        try:
            proc = await asyncio.create_subprocess_exec(
                "bash",
                "-c",
                command.shell_command,
                cwd=workdir,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
                limit=STREAM_LIMIT_BYTES,
            )
        except OSError as exc:
            raise SpawnFailure(f"Failed to start agent process: {exc}") from exc

        log_json(
            logger,
            "runner.start",
            provider=kind.value,
            pid=proc.pid,
            with_credential=bool(credential),
            prompt_len=len(prompt or ""),
        )
        stderr_tail = _StderrTail(self._stderr_cap_bytes)
        stderr_task = asyncio.create_task(_drain(proc.stderr, stderr_tail))
        produced = False
        try:
            timed_out = False
            while True:
                tier = self.output_idle_sec if produced else self.no_output_idle_sec
                try:
                    raw = await asyncio.wait_for(proc.stdout.readline(), timeout=tier)
                except asyncio.TimeoutError:
                    timed_out = True
                    log_json(logger, "runner.idle_timeout", provider=kind.value, had_output=produced, idle_sec=tier)
                    break
                except ValueError:
                    # line longer than STREAM_LIMIT_BYTES; the reader already dropped it
                    log_json(logger, "runner.line_too_long", provider=kind.value, limit_bytes=STREAM_LIMIT_BYTES)
                    continue
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace").rstrip("\n").rstrip("\r")
                text = extract_text_from_line(kind, line)
                if not text:
                    continue
                if not produced:
                    log_json(logger, "runner.first_chunk", provider=kind.value)
                produced = True
                await on_chunk(text)

            if timed_out:
                await self._terminate(proc)
                return Completed(produced_output=True) if produced else TimedOut(had_output=False)

            try:
                returncode = await asyncio.wait_for(proc.wait(), timeout=self.exit_wait_sec)
            except asyncio.TimeoutError:
                log_json(logger, "runner.exit_wait_timeout", provider=kind.value, had_output=produced)
                await self._terminate(proc)
                return Completed(produced_output=True) if produced else TimedOut(had_output=False)
        finally:
            if proc.returncode is None:
                signal_group(proc, signal.SIGKILL)
            await _finish_drain(stderr_task)

        log_json(logger, "runner.finish", provider=kind.value, returncode=returncode, had_output=produced)
        if returncode == 0 or produced:
            return Completed(produced_output=produced)
        tail = tail_text(stderr_tail.text(), self._stderr_cap_bytes)
        log_json(logger, "runner.failed", provider=kind.value, returncode=returncode, stderr_tail=tail[-500:])
        return Failed(exit_code=returncode, stderr_tail=tail)

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        signal_group(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.terminate_grace_sec)
            return
        except asyncio.TimeoutError:
            pass
        log_json(logger, "runner.force_kill", pid=proc.pid)
        signal_group(proc, signal.SIGKILL)
        await proc.wait()


async def _drain(stream: Optional[asyncio.StreamReader], sink: _StderrTail) -> None:
    if stream is None:
        return
    while True:
        data = await stream.read(4096)
        if not data:
            return
        sink.feed(data)


async def _finish_drain(task: "asyncio.Task[None]") -> None:
    # A surviving grandchild can hold stderr open past our child's exit.
    try:
        await asyncio.wait_for(task, timeout=_STDERR_DRAIN_SEC)
    except asyncio.TimeoutError:
        pass


def outcome_to_error(outcome: RunnerOutcome, config: ProviderConfig) -> Optional[AgentError]:
    """Classify a terminal outcome. ``None`` means success."""
    if isinstance(outcome, Completed):
        return None
    if isinstance(outcome, TimedOut):
        return AgentTimeout(
            f"{config.behavior.display_name} produced no output before the idle timeout and was stopped."
        )
    if isinstance(outcome, Failed):
        return classify_failure(outcome.exit_code, outcome.stderr_tail, config)
    raise AssertionError(f"unhandled outcome: {outcome!r}")


def classify_failure(exit_code: int, stderr_tail: str, config: ProviderConfig) -> AgentError:
    if is_command_not_found(stderr_tail):
        return NotInstalled(config.install_hint())
    if is_auth_error(stderr_tail):
        return AuthFailure(
            f"{config.behavior.display_name} authentication failed. {config.reauth_hint()}.",
            stderr_tail=stderr_tail,
        )
    detail = stderr_tail.strip() or "(no stderr output)"
    return NonZeroExit(
        f"{config.behavior.display_name} exited with code {exit_code}: {detail}",
        exit_code=exit_code,
        stderr_tail=stderr_tail,
    )
