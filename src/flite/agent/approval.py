"""Per-command approval decisions for model-requested shell commands."""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum

LOGGER = logging.getLogger(__name__)

PromptForApproval = Callable[[str], str]

APPROVAL_PROMPT = "[y]es / [n]o / [a]lways for this command: "

_RUN_ANSWERS = {"y", "yes"}
_ALWAYS_ANSWERS = {"a", "always"}


class ApprovalDecision(str, Enum):
    RUN = "run"
    ALWAYS = "always"
    REMEMBERED = "remembered"
    SKIP = "skip"

    @property
    def executes(self) -> bool:
        return self is not ApprovalDecision.SKIP


class ApprovalGate:
    """Decides whether each command runs, is skipped, or is remembered.

    Commands approved with "always" are remembered by exact string for the
    lifetime of the gate. Nothing is persisted. In non-interactive mode every
    command runs without prompting.
    """

    def __init__(
        self,
        *,
        interactive: bool,
        prompt: PromptForApproval | None = None,
    ) -> None:
        if interactive and prompt is None:
            msg = "interactive approval requires a prompt callback"
            raise ValueError(msg)
        self.interactive = interactive
        self.prompt = prompt
        self._approved: set[str] = set()

    @property
    def approved_commands(self) -> frozenset[str]:
        return frozenset(self._approved)

    def is_remembered(self, command: str) -> bool:
        return command in self._approved

    def review(self, command: str) -> ApprovalDecision:
        if not self.interactive:
            return ApprovalDecision.RUN
        if command in self._approved:
            LOGGER.info("approval_remembered", extra={"command": command})
            return ApprovalDecision.REMEMBERED

        if self.prompt is None:
            msg = "interactive approval requires a prompt callback"
            raise RuntimeError(msg)
        answer = self.prompt(command).strip().lower()
        if answer in _RUN_ANSWERS:
            decision = ApprovalDecision.RUN
        elif answer in _ALWAYS_ANSWERS:
            self._approved.add(command)
            decision = ApprovalDecision.ALWAYS
        else:
            decision = ApprovalDecision.SKIP

        LOGGER.info("approval_decided", extra={"command": command, "decision": decision.value})
        return decision
