"""Provider registry and shell command construction."""
import pytest

from agent_relay.domain.invocations import CONTEXT_PREAMBLE, CONTEXT_SEPARATOR, InvocationRequest
from agent_relay.providers.commands import (
    PROMPT_REF,
    SYSTEM_REF,
    build_oneshot_command,
    build_shell_env,
    build_stream_command,
)
from agent_relay.providers.registry import (
    DEFAULT_PROVIDER,
    ProviderConfig,
    ProviderKind,
    behavior_for,
    parse_provider,
)


class TestParseProvider:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("claude", ProviderKind.CLAUDE),
            ("Codex", ProviderKind.CODEX),
            ("  GEMINI ", ProviderKind.GEMINI),
            ("openclaw", ProviderKind.OPENCLAW),
            ("custom", ProviderKind.CUSTOM),
        ],
    )
    def test_known_identifiers(self, raw, expected):
        assert parse_provider(raw) is expected

    @pytest.mark.parametrize("raw", ["", None, "gpt", "claude-code"])
    def test_unknown_falls_back_to_default(self, raw):
        assert parse_provider(raw) is DEFAULT_PROVIDER
        assert DEFAULT_PROVIDER is ProviderKind.CLAUDE


class TestProviderBehavior:
    def test_api_key_variables(self):
        assert ProviderConfig.resolve("claude").api_key_env_var() == "ANTHROPIC_API_KEY"
        assert ProviderConfig.resolve("codex").api_key_env_var() == "OPENAI_API_KEY"
        assert ProviderConfig.resolve("gemini").api_key_env_var() == "GOOGLE_API_KEY"
        assert ProviderConfig.resolve("openclaw").api_key_env_var() is None
        assert ProviderConfig.resolve("custom", "my-agent {prompt}").api_key_env_var() is None

    def test_every_kind_has_hints(self):
        for kind in ProviderKind:
            behavior = behavior_for(kind)
            assert behavior.kind is kind
            assert behavior.install_hint
            assert behavior.reauth_hint

    def test_install_hint_mentions_package(self):
        assert "@anthropic-ai/claude-code" in ProviderConfig.resolve("claude").install_hint()
        assert "@openai/codex" in ProviderConfig.resolve("codex").install_hint()

    def test_custom_command_only_kept_for_custom(self):
        assert ProviderConfig.resolve("codex", "x {prompt}").custom_command is None
        assert ProviderConfig.resolve("custom", "  x {prompt} ").custom_command == "x {prompt}"
        assert ProviderConfig.resolve("custom", "   ").custom_command is None


class TestCommandBuilder:
    PROMPT = "hello $(rm -rf /) `whoami` \"quoted\" 'single'"

    @pytest.mark.parametrize("provider", ["claude", "codex", "gemini", "custom"])
    def test_prompt_is_referenced_never_embedded(self, provider):
        config = ProviderConfig.resolve(provider, "agent --ask {prompt}")
        for command in (build_oneshot_command(config), build_stream_command(config, has_system_prompt=True)):
            assert PROMPT_REF in command.shell_command
            assert self.PROMPT not in command.shell_command
            assert command.spawnable

    def test_claude_stream_flags(self):
        cmd = build_stream_command(ProviderConfig.resolve("claude")).shell_command
        last = cmd.splitlines()[-1]
        assert last.startswith("claude --print --verbose --output-format stream-json")
        assert "--dangerously-skip-permissions" in last
        assert "--append-system-prompt" not in last
        assert last.endswith(PROMPT_REF)

    def test_claude_system_prompt_uses_flag(self):
        cmd = build_stream_command(ProviderConfig.resolve("claude"), has_system_prompt=True).shell_command
        assert f"--append-system-prompt {SYSTEM_REF}" in cmd

    def test_other_clis_have_no_system_flag(self):
        for provider in ("codex", "gemini"):
            cmd = build_stream_command(ProviderConfig.resolve(provider), has_system_prompt=True).shell_command
            assert SYSTEM_REF not in cmd
            assert " -i " not in cmd

    def test_commands_start_with_shell_bootstrap(self):
        cmd = build_oneshot_command(ProviderConfig.resolve("codex")).shell_command
        assert cmd.startswith(build_shell_env())
        assert '$HOME/.local/bin' in build_shell_env()
        assert 'NVM_DIR' in build_shell_env()

    def test_retry_builds_identical_command(self):
        config = ProviderConfig.resolve("gemini")
        assert build_stream_command(config) == build_stream_command(config)

    def test_custom_placeholder_replaced(self):
        cmd = build_oneshot_command(ProviderConfig.resolve("custom", "my-agent run {prompt} --fast"))
        assert cmd.shell_command.splitlines()[-1] == f"my-agent run {PROMPT_REF} --fast"
        assert cmd.api_key_env_var is None

    def test_custom_without_template_reports_config_error(self):
        cmd = build_stream_command(ProviderConfig.resolve("custom"))
        assert "No custom agent command configured" in cmd.shell_command
        assert cmd.spawnable

    def test_openclaw_placeholder_is_not_spawnable(self):
        cmd = build_stream_command(ProviderConfig.resolve("openclaw"))
        assert cmd.spawnable is False
        assert cmd.api_key_env_var is None


class TestFullPrompt:
    def test_without_context_is_prompt(self):
        assert InvocationRequest(prompt="hi").full_prompt() == "hi"

    def test_context_is_prefixed_once(self):
        request = InvocationRequest(prompt="and now?", conversation_context="alice: hello")
        full = request.full_prompt()
        assert full == CONTEXT_PREAMBLE + "alice: hello" + CONTEXT_SEPARATOR + "and now?"
        assert full.count("alice: hello") == 1
