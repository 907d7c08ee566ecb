"""Shell adapter implementations."""

from .base import DEFAULT_TIMEOUT_SECONDS, ExecutionResult, OutputCallback, ShellAdapter
from .bash_adapter import BashAdapter


def create_shell_adapter(
    shell_name: str,
    *,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    cwd: str | None = None,
) -> ShellAdapter:
    normalized = shell_name.strip().lower()
    if normalized in {"bash", "sh", "shell"}:
        return BashAdapter(
            executable="sh" if normalized == "sh" else None,
            timeout=timeout,
            cwd=cwd,
        )
    msg = f"Unsupported shell adapter: {shell_name}"
    raise ValueError(msg)


__all__ = [
    "DEFAULT_TIMEOUT_SECONDS",
    "BashAdapter",
    "ExecutionResult",
    "OutputCallback",
    "ShellAdapter",
    "create_shell_adapter",
]
