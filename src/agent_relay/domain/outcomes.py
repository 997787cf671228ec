"""Terminal states of a single execution attempt."""

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class Completed:
    produced_output: bool


@dataclass(frozen=True)
class Failed:
    exit_code: int
    stderr_tail: str


@dataclass(frozen=True)
class TimedOut:
    had_output: bool


RunnerOutcome = Union[Completed, Failed, TimedOut]
