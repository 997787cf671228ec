from dataclasses import dataclass
from typing import Any, Dict, Optional

CHUNK_CHANNEL = "agent-chunk"
AUTH_FALLBACK_CHANNEL = "agent-auth-fallback"


@dataclass(frozen=True)
class StreamEvent:
    response_id: str
    chunk: str
    done: bool
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.done or self.error is not None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "responseId": self.response_id,
            "chunk": self.chunk,
            "done": self.done,
            "error": self.error,
        }


@dataclass(frozen=True)
class AuthFallbackNotice:
    response_id: str
    provider: str
    message: str

    def to_payload(self) -> Dict[str, Any]:
        return {
            "responseId": self.response_id,
            "provider": self.provider,
            "message": self.message,
        }


def chunk_event(response_id: str, chunk: str) -> StreamEvent:
    return StreamEvent(response_id=response_id, chunk=chunk, done=False)


def done_event(response_id: str) -> StreamEvent:
    return StreamEvent(response_id=response_id, chunk="", done=True)


def error_event(response_id: str, message: str) -> StreamEvent:
    return StreamEvent(response_id=response_id, chunk="", done=False, error=message)
