"""Invocation orchestrator.

``AgentService`` turns an ``InvocationRequest`` into a stream of events on
the ``EventBus`` (``start_stream`` / ``start_api_stream``) or into the full
stdout of a one-shot run (``run_oneshot``). Streaming calls return the
response id immediately; the work runs in a background task that always
ends with exactly one terminal event for that id.
"""
import asyncio
import logging
import uuid
from contextlib import aclosing
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Coroutine, Optional, Set, Tuple

import httpx

from agent_relay.config import AgentSettings, SettingsSource
from agent_relay.domain.contracts import CommandResult
from agent_relay.domain.errors import AgentError, AgentTimeout, AuthFailure
from agent_relay.domain.invocations import InvocationRequest
from agent_relay.domain.outcomes import RunnerOutcome
from agent_relay.events.event_bus import EventBus, ResponseEmitter
from agent_relay.execution.local_shell import LocalShellRunner
from agent_relay.execution.stream_runner import (
    STDERR_CAP_BYTES,
    StreamRunner,
    build_child_env,
    classify_failure,
    ensure_spawnable,
    outcome_to_error,
    validate_cwd,
)
from agent_relay.observability.structured_log import log_json
from agent_relay.providers.anthropic_api import resolve_model, stream_anthropic_api
from agent_relay.providers.commands import build_oneshot_command, build_stream_command
from agent_relay.providers.openclaw import resolve_openclaw_config, stream_openclaw
from agent_relay.providers.registry import ProviderConfig, ProviderKind
from agent_relay.services.fallback import FallbackRetryController
from agent_relay.util import tail_text

logger = logging.getLogger(__name__)

GENERIC_FAILURE_MESSAGE = "Unexpected error while running the agent. See logs for details."


def new_response_id() -> str:
    return uuid.uuid4().hex


def merge_system_prompt(system_prompt: str, prompt: str) -> str:
    if not system_prompt:
        return prompt
    return f"{system_prompt}\n\n{prompt}"


def prompt_parts(request: InvocationRequest, config: ProviderConfig) -> Tuple[str, str]:
    """(prompt, system prompt) as the streaming CLI will receive them."""
    full_prompt = request.full_prompt()
    if config.behavior.supports_system_flag:
        return full_prompt, request.system_prompt
    return merge_system_prompt(request.system_prompt, full_prompt), ""


class AgentService:
    def __init__(
        self,
        settings_source: SettingsSource,
        event_bus: EventBus,
        stream_runner: Optional[StreamRunner] = None,
        oneshot_runner: Optional[LocalShellRunner] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        openclaw_home: Optional[Path] = None,
    ):
        self._settings = settings_source
        self._bus = event_bus
        self._stream_runner = stream_runner or StreamRunner()
        self._oneshot_runner = oneshot_runner or LocalShellRunner()
        self._http_client = http_client
        self._openclaw_home = openclaw_home
        self._tasks: Set["asyncio.Task[None]"] = set()

    @property
    def event_bus(self) -> EventBus:
        return self._bus

    def start_stream(self, request: InvocationRequest, response_id: Optional[str] = None) -> str:
        """Schedule a provider run and return its response id without waiting."""
        settings = self._settings.snapshot()
        rid = response_id or new_response_id()
        emitter = self._bus.emitter_for(rid)
        self._spawn(self._guarded(emitter, lambda: self._stream_provider(request, settings, emitter)))
        return rid

    def start_api_stream(self, request: InvocationRequest, response_id: Optional[str] = None) -> str:
        """Like ``start_stream`` but talks to the Anthropic Messages API directly."""
        settings = self._settings.snapshot()
        rid = response_id or new_response_id()
        emitter = self._bus.emitter_for(rid)
        self._spawn(self._guarded(emitter, lambda: self._stream_api(request, settings, emitter)))
        return rid

    async def wait_idle(self) -> None:
        """Wait until every scheduled stream has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def run_oneshot(
        self,
        request: InvocationRequest,
        on_notice: Optional[Callable[[str], None]] = None,
    ) -> str:
        """Run to completion and return stdout; failures raise ``AgentError``."""
        settings = self._settings.snapshot()
        config = self._resolve_config(request, settings)
        log_json(logger, "oneshot.start", provider=config.name, prompt_len=len(request.prompt))
        if config.kind is ProviderKind.OPENCLAW:
            parts = []
            async with aclosing(self._openclaw_chunks(request, settings)) as chunks:
                async for text in chunks:
                    parts.append(text)
            return "".join(parts)

        command = build_oneshot_command(config)
        ensure_spawnable(command, config.kind)
        cwd = validate_cwd(request.project_dir or settings.project_dir)
        prompt = merge_system_prompt(request.system_prompt, request.full_prompt())

        async def attempt(credential: Optional[str]) -> CommandResult:
            cmd = build_oneshot_command(config)
            env = build_child_env(cmd, prompt, "", credential)
            return await self._oneshot_runner.run(cmd.shell_command, cwd, env)

        def result_error(result: CommandResult) -> Optional[AgentError]:
            if result.stdout.strip():
                return None
            if result.timed_out:
                return AgentTimeout(f"{config.behavior.display_name} did not finish before the timeout and was stopped.")
            if result.returncode == 0:
                return None
            return classify_failure(result.returncode, tail_text(result.stderr, STDERR_CAP_BYTES), config)

        def notify(message: str) -> None:
            logger.warning(message)
            if on_notice is not None:
                on_notice(message)

        controller: FallbackRetryController[CommandResult] = FallbackRetryController(
            lambda result: isinstance(result_error(result), AuthFailure)
        )
        result = await controller.run(
            attempt,
            behavior=config.behavior,
            credential=self._credential_for(request, settings, config),
            notify=notify,
        )
        error = result_error(result)
        log_json(logger, "oneshot.finish", provider=config.name, returncode=result.returncode, ok=error is None)
        if error is not None:
            raise error
        return result.stdout

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guarded(self, emitter: ResponseEmitter, body: Callable[[], Awaitable[None]]) -> None:
        rid = emitter.response_id
        try:
            await body()
        except AgentError as exc:
            log_json(logger, "stream.failed", response_id=rid, code=exc.code, chunks=emitter.chunks_emitted)
            emitter.fail(exc.message)
            return
        except asyncio.CancelledError:
            emitter.fail("Agent run was cancelled.")
            raise
        except Exception:
            logger.exception("stream %s failed unexpectedly", rid)
            emitter.fail(GENERIC_FAILURE_MESSAGE)
            return
        log_json(logger, "stream.done", response_id=rid, chunks=emitter.chunks_emitted)
        emitter.done()

    async def _stream_provider(self, request: InvocationRequest, settings: AgentSettings, emitter: ResponseEmitter) -> None:
        config = self._resolve_config(request, settings)
        log_json(
            logger,
            "stream.start",
            response_id=emitter.response_id,
            provider=config.name,
            prompt_len=len(request.prompt),
            context_len=len(request.conversation_context),
        )
        if config.kind is ProviderKind.OPENCLAW:
            async with aclosing(self._openclaw_chunks(request, settings)) as chunks:
                async for text in chunks:
                    emitter.chunk(text)
            return

        cwd = request.project_dir or settings.project_dir
        prompt, system_prompt = prompt_parts(request, config)

        async def on_chunk(text: str) -> None:
            emitter.chunk(text)

        async def attempt(credential: Optional[str]) -> RunnerOutcome:
            command = build_stream_command(config, has_system_prompt=bool(system_prompt))
            return await self._stream_runner.run(
                command,
                kind=config.kind,
                cwd=cwd,
                prompt=prompt,
                system_prompt=system_prompt,
                credential=credential,
                on_chunk=on_chunk,
            )

        controller: FallbackRetryController[RunnerOutcome] = FallbackRetryController(
            lambda outcome: isinstance(outcome_to_error(outcome, config), AuthFailure)
        )
        outcome = await controller.run(
            attempt,
            behavior=config.behavior,
            credential=self._credential_for(request, settings, config),
            notify=lambda message: emitter.notice(config.name, message),
        )
        error = outcome_to_error(outcome, config)
        if error is not None:
            raise error

    async def _stream_api(self, request: InvocationRequest, settings: AgentSettings, emitter: ResponseEmitter) -> None:
        api_key = (request.credential_override or settings.anthropic_fallback_key or "").strip()
        model = resolve_model(settings.anthropic_model or None)
        log_json(
            logger,
            "stream.start",
            response_id=emitter.response_id,
            provider="anthropic-api",
            model=model,
            attachments=len(request.attachments),
        )
        chunks = stream_anthropic_api(request, api_key, model=model, client=self._http_client)
        async with aclosing(chunks):
            async for text in chunks:
                emitter.chunk(text)

    def _openclaw_chunks(self, request: InvocationRequest, settings: AgentSettings) -> AsyncIterator[str]:
        config = resolve_openclaw_config(settings.openclaw_url, settings.openclaw_token, home=self._openclaw_home)
        return stream_openclaw(config, request.system_prompt, request.full_prompt(), client=self._http_client)

    @staticmethod
    def _resolve_config(request: InvocationRequest, settings: AgentSettings) -> ProviderConfig:
        return ProviderConfig.resolve(
            request.provider or settings.provider,
            request.custom_command or settings.custom_command,
        )

    @staticmethod
    def _credential_for(request: InvocationRequest, settings: AgentSettings, config: ProviderConfig) -> str:
        return (request.credential_override or settings.fallback_key_for(config.kind) or "").strip()
