import logging
import shutil
from pathlib import Path
from typing import Optional

from agent_relay.config import DEFAULT_CONFIG_DIR, EnvSettingsSource, SettingsSource
from agent_relay.events.event_bus import EventBus
from agent_relay.execution.local_shell import LocalShellRunner
from agent_relay.execution.stream_runner import StreamRunner
from agent_relay.observability.structured_log import log_json
from agent_relay.providers.registry import ProviderKind, behavior_for
from agent_relay.services.agent_service import AgentService

logger = logging.getLogger(__name__)


def build_agent_service(
    config_dir: Optional[Path] = None,
    settings_source: Optional[SettingsSource] = None,
    event_bus: Optional[EventBus] = None,
) -> AgentService:
    resolved_config_dir = (config_dir or DEFAULT_CONFIG_DIR).expanduser().resolve()
    source = settings_source or EnvSettingsSource(resolved_config_dir)
    _log_agent_toolchain_status()
    return AgentService(
        settings_source=source,
        event_bus=event_bus or EventBus(),
        stream_runner=StreamRunner(),
        oneshot_runner=LocalShellRunner(),
    )


def _log_agent_toolchain_status() -> None:
    found = {}
    for kind in ProviderKind:
        binary = behavior_for(kind).binary
        if binary:
            found[kind.value] = bool(shutil.which(binary))
    log_json(logger, "agent.toolchain", bash=bool(shutil.which("bash")), **found)
