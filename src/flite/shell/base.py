"""Base shell adapter primitives shared by concrete executors."""

from __future__ import annotations

import abc
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0

OutputCallback = Callable[[str, str], None]

_SECRET_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"(--?(?:password|token|secret|api[-_]?key)\s+)([^\s]+)",
        r"((?:password|token|secret|api[-_]?key)\s*=\s*)([^\s]+)",
        r"(authorization:\s*bearer\s+)([^\s'\"]+)",
    )
]


@dataclass(slots=True)
class ExecutionResult:
    """Result of one command execution as the model will read it."""

    command: str
    combined_output: str
    exit_code: int | None
    timed_out: bool = False
    duration_seconds: float = 0.0


class ShellAdapter(abc.ABC):
    """Abstract adapter for shell-specific command execution."""

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        cwd: str | None = None,
    ) -> None:
        self.timeout = timeout
        self.cwd = cwd

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Friendly shell adapter name."""

    @abc.abstractmethod
    async def execute(
        self,
        command: str,
        *,
        on_output: OutputCallback | None = None,
    ) -> ExecutionResult:
        """Execute a shell command and return its combined output."""

    def log_request(self, command: str) -> None:
        LOGGER.info(
            "command_request",
            extra={
                "shell": self.name,
                "command": self._sanitize_command(command),
                "timeout": self.timeout,
                "cwd": self.cwd,
            },
        )

    def log_result(self, result: ExecutionResult) -> None:
        LOGGER.info(
            "command_result",
            extra={
                "shell": self.name,
                "exit_code": result.exit_code,
                "timed_out": result.timed_out,
                "duration_seconds": round(result.duration_seconds, 4),
                "output_length": len(result.combined_output),
            },
        )

    def timeout_note(self) -> str:
        seconds = int(self.timeout) if float(self.timeout).is_integer() else self.timeout
        return f"\n[Command timed out after {seconds} seconds]"

    @staticmethod
    def exit_code_note(exit_code: int) -> str:
        return f"\n[Exit code: {exit_code}]"

    @staticmethod
    def monotonic_now() -> float:
        return time.monotonic()

    def _sanitize_command(self, command: str) -> str:
        sanitized = command
        for pattern in _SECRET_PATTERNS:
            sanitized = pattern.sub(r"\1***", sanitized)
        return sanitized
