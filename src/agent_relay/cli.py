import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from agent_relay.app_container import build_agent_service
from agent_relay.config import (
    DEFAULT_CONFIG_DIR,
    EnvSettingsSource,
    get_env_path,
)
from agent_relay.domain.contracts import SinkEvent
from agent_relay.domain.errors import AgentError
from agent_relay.domain.events import AuthFallbackNotice, StreamEvent
from agent_relay.domain.invocations import InvocationRequest
from agent_relay.events.event_bus import channel_for
from agent_relay.providers.registry import ProviderConfig, ProviderKind
from agent_relay.services.error_codes import detect_error_code, error_code_for, get_catalog_entry


def _configure_logging(level: str) -> None:
    level = (level or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _print_config(config_dir: Path) -> None:
    settings = EnvSettingsSource(config_dir).snapshot()
    config = ProviderConfig.resolve(settings.provider, settings.custom_command)
    print(f"Config dir: {config_dir}")
    print(f"Env file: {get_env_path(config_dir)}")
    print(f"Provider: {config.name}")
    print(f"Project dir: {settings.project_dir or '(not set)'}")
    print(f"Custom command set: {'yes' if settings.custom_command else 'no'}")
    for kind in (ProviderKind.CLAUDE, ProviderKind.CODEX, ProviderKind.GEMINI):
        print(f"Fallback key ({kind.value}): {'yes' if settings.fallback_key_for(kind) else 'no'}")
    print(f"OpenClaw gateway: {settings.openclaw_url or '(discover)'}")


def _print_next_steps(code: str) -> None:
    entry = get_catalog_entry(code)
    print(f"[{entry.code}] {entry.title}", file=sys.stderr)
    for action in entry.actions:
        print(f"  - {action.label}: {action.description}", file=sys.stderr)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run a coding-agent CLI and stream its reply")
    parser.add_argument("prompt", nargs="?", default="", help="Prompt text (reads stdin when omitted)")
    parser.add_argument("--provider", default="", help="claude, codex, gemini, openclaw or custom")
    parser.add_argument("--system", default="", help="System prompt")
    parser.add_argument("--context", default="", help="Recent conversation history to prepend")
    parser.add_argument("--project-dir", default="", help="Working directory for the agent")
    parser.add_argument("--custom-command", default="", help="Command template with a {prompt} placeholder")
    parser.add_argument("--oneshot", action="store_true", help="Wait for completion and print full output")
    parser.add_argument("--api", action="store_true", help="Use the Anthropic Messages API directly")
    parser.add_argument("--json", action="store_true", help="Print wire payloads as JSON lines")
    parser.add_argument(
        "--config-dir",
        default=str(DEFAULT_CONFIG_DIR),
        help="Directory holding the .env config (default: ~/.config/agent-relay)",
    )
    parser.add_argument("--print-config", action="store_true", help="Print active config summary")
    parser.add_argument("--log-level", default=os.environ.get("LOG_LEVEL", "WARNING"))
    return parser


class _StreamPrinter:
    def __init__(self, as_json: bool):
        self._as_json = as_json
        self.error: Optional[str] = None
        self.finished = asyncio.Event()

    def __call__(self, event: SinkEvent) -> None:
        if self._as_json:
            print(json.dumps({"channel": channel_for(event), "payload": event.to_payload()}), flush=True)
        elif isinstance(event, AuthFallbackNotice):
            print(event.message, file=sys.stderr, flush=True)
        elif isinstance(event, StreamEvent) and event.chunk:
            sys.stdout.write(event.chunk)
            sys.stdout.flush()
        if isinstance(event, StreamEvent) and event.is_terminal:
            self.error = event.error
            self.finished.set()


async def _run(args: argparse.Namespace, prompt: str) -> int:
    service = build_agent_service(config_dir=Path(args.config_dir).expanduser())
    request = InvocationRequest(
        prompt=prompt,
        system_prompt=args.system,
        conversation_context=args.context,
        project_dir=args.project_dir or os.getcwd(),
        provider=args.provider,
        custom_command=args.custom_command or None,
    )
    if args.oneshot:
        try:
            output = await service.run_oneshot(request, on_notice=lambda msg: print(msg, file=sys.stderr))
        except AgentError as exc:
            print(f"Error: {exc.message}", file=sys.stderr)
            _print_next_steps(error_code_for(exc))
            return 1
        sys.stdout.write(output)
        return 0

    printer = _StreamPrinter(as_json=args.json)
    service.event_bus.subscribe(printer)
    if args.api:
        service.start_api_stream(request)
    else:
        service.start_stream(request)
    await printer.finished.wait()
    await service.wait_idle()
    if printer.error is not None:
        if not args.json:
            print(f"\nError: {printer.error}", file=sys.stderr)
            _print_next_steps(detect_error_code(printer.error))
        return 1
    if not args.json:
        print()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    config_dir = Path(args.config_dir).expanduser().resolve()

    _configure_logging(args.log_level)

    if args.print_config:
        _print_config(config_dir)
        return 0

    prompt = args.prompt or ("" if sys.stdin.isatty() else sys.stdin.read())
    if not prompt.strip():
        parser.error("a prompt is required")
    return asyncio.run(_run(args, prompt))


if __name__ == "__main__":
    sys.exit(main())
