"""Finite State Machine for agent run phases."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field

from .provider import TokenUsage


class RunPhase(StrEnum):
    START = "start"
    PREPARE_CONTEXT = "prepare_context"
    INVOKE = "invoke"
    EXECUTE_TOOLS = "execute_tools"
    END = "end"
    ERROR = "error"


# Valid phase transitions (one agent run)
_TRANSITIONS: dict[RunPhase, list[RunPhase]] = {
    RunPhase.START: [RunPhase.PREPARE_CONTEXT, RunPhase.ERROR],
    RunPhase.PREPARE_CONTEXT: [RunPhase.INVOKE, RunPhase.ERROR],
    RunPhase.INVOKE: [RunPhase.EXECUTE_TOOLS, RunPhase.END, RunPhase.ERROR],
    RunPhase.EXECUTE_TOOLS: [RunPhase.PREPARE_CONTEXT, RunPhase.END, RunPhase.ERROR],  # max turns
    RunPhase.END: [],
    RunPhase.ERROR: [],
}


class RunUsage(BaseModel):
    """Token usage accumulated across the turns of a run."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    def add(self, usage: TokenUsage) -> None:
        self.input_tokens += usage.input_tokens
        self.output_tokens += usage.output_tokens
        self.cache_creation_input_tokens += usage.cache_creation_input_tokens
        self.cache_read_input_tokens += usage.cache_read_input_tokens


class RunState(BaseModel):
    run_id: str
    session_key: str
    phase: RunPhase = RunPhase.START
    turns: int = 0
    tool_calls: int = 0
    usage: RunUsage = Field(default_factory=RunUsage)

    @property
    def finished(self) -> bool:
        return self.phase in (RunPhase.END, RunPhase.ERROR)

    def can_transition(self, target: RunPhase) -> bool:
        return target in _TRANSITIONS.get(self.phase, [])

    def transition(self, target: RunPhase) -> RunState:
        if not self.can_transition(target):
            raise ValueError(f"Invalid transition: {self.phase} -> {target}")
        return self.model_copy(update={"phase": target})
