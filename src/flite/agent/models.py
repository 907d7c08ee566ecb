"""Data models shared by the agent loop and its collaborators."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Literal, cast

from flite.shell.base import ExecutionResult

Role = Literal["system", "user", "assistant"]
VALID_ROLES: set[Role] = {"system", "user", "assistant"}


@dataclass(frozen=True, slots=True)
class Message:
    """A single transcript entry in chat-completion format."""

    role: Role
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, data: object) -> Message | None:
        """Build a message from persisted data, or ``None`` when malformed."""
        if not isinstance(data, dict):
            return None
        role = data.get("role")
        content = data.get("content")
        if role not in VALID_ROLES or not isinstance(content, str):
            return None
        return cls(role=cast(Role, role), content=content)


@dataclass(slots=True)
class SessionMetrics:
    """Token and cost totals for the lifetime of the process."""

    tokens_used: int = 0
    cost_accrued: Decimal = field(default_factory=Decimal)

    def add(self, *, tokens: int = 0, cost: Decimal | None = None) -> None:
        self.tokens_used += tokens
        if cost is not None:
            self.cost_accrued += cost


@dataclass(slots=True)
class SessionTurn:
    """Captured request/response data for one loop iteration."""

    user_input: str
    response: str | None
    commands: list[str] = field(default_factory=list)
    results: list[ExecutionResult] = field(default_factory=list)
    declined: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def has_commands(self) -> bool:
        return bool(self.commands)
