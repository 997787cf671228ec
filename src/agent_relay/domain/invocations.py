from dataclasses import dataclass, field
from typing import Optional, Tuple

PROMPT_ENV_VAR = "AGENT_RELAY_PROMPT"
SYSTEM_ENV_VAR = "AGENT_RELAY_SYSTEM"

CONTEXT_PREAMBLE = (
    "Below is the recent conversation history for context. "
    "Respond ONLY to the final user message. "
    "Be conversational and concise, and reply directly to the user as a chat participant. "
    "Do NOT narrate your thought process, planning steps, or internal reasoning. "
    'Do NOT describe actions you would take (e.g. "I should...", "Let me...", "I will..."). '
    "Just answer.\n\n"
)
CONTEXT_SEPARATOR = "\n\n---\n\n"


@dataclass(frozen=True)
class Attachment:
    filename: str
    mime_type: str
    url: str
    file_size: int = 0


@dataclass(frozen=True)
class InvocationRequest:
    prompt: str
    system_prompt: str = ""
    conversation_context: str = ""
    project_dir: str = ""
    provider: str = ""
    custom_command: Optional[str] = None
    credential_override: Optional[str] = None
    attachments: Tuple[Attachment, ...] = field(default_factory=tuple)

    def full_prompt(self) -> str:
        if not self.conversation_context:
            return self.prompt
        return CONTEXT_PREAMBLE + self.conversation_context + CONTEXT_SEPARATOR + self.prompt


@dataclass(frozen=True)
class InvocationCommand:
    """A resolved bash script for one attempt.

    ``shell_command`` only ever references the prompt through
    ``$AGENT_RELAY_PROMPT`` and the system prompt through
    ``$AGENT_RELAY_SYSTEM``; their values travel in the child environment.
    """

    shell_command: str
    api_key_env_var: Optional[str]
    spawnable: bool = True
