"""Conversation loop: request, extract commands, approve, execute, repeat."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from flite.agent.approval import ApprovalDecision, ApprovalGate
from flite.agent.extractor import extract_commands
from flite.agent.models import Message, SessionMetrics, SessionTurn
from flite.llm.client import DeltaCallback, ModelReply
from flite.shell import ExecutionResult, OutputCallback

LOGGER = logging.getLogger(__name__)

CommandNotice = Callable[[str, ApprovalDecision], None]


class CompletionClient(Protocol):
    async def complete(
        self,
        messages: Sequence[Message],
        *,
        on_delta: DeltaCallback | None = None,
    ) -> ModelReply: ...


class CommandExecutor(Protocol):
    async def execute(
        self,
        command: str,
        *,
        on_output: OutputCallback | None = None,
    ) -> ExecutionResult: ...


class AgentLoop:
    """Owns the transcript and runs the model-proposes/system-executes cycle.

    The loop keeps requesting responses while the previous response asked for
    at least one command, and stops once a response asks for none or the
    request fails. Commands run one at a time in the order they were
    extracted.
    """

    def __init__(
        self,
        *,
        client: CompletionClient,
        shell: CommandExecutor,
        approval: ApprovalGate,
        log_dir: str | Path | None = None,
        metrics: SessionMetrics | None = None,
        on_delta: DeltaCallback | None = None,
        on_output: OutputCallback | None = None,
        on_command: CommandNotice | None = None,
    ) -> None:
        self.client = client
        self.shell = shell
        self.approval = approval
        self.log_dir = Path(log_dir) if log_dir is not None else None
        self.metrics = metrics or SessionMetrics()
        self.on_delta = on_delta
        self.on_output = on_output
        self.on_command = on_command
        self._messages: list[Message] = []

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    def restore(self, messages: Iterable[Message]) -> None:
        self._messages = list(messages)

    def clear(self) -> None:
        """Forget the transcript; metrics and remembered approvals survive."""
        self._messages = []

    async def run(self, user_input: str) -> list[SessionTurn]:
        turns: list[SessionTurn] = []
        self._messages.append(Message(role="user", content=user_input))

        while True:
            turn = SessionTurn(user_input=user_input, response=None)
            turns.append(turn)

            reply = await self.client.complete(self._messages, on_delta=self.on_delta)
            self.metrics.add(tokens=reply.tokens, cost=reply.cost)
            if not reply.ok:
                turn.error = reply.error or "Model returned no response"
                LOGGER.warning("agent_turn_failed", extra={"error": turn.error})
                self._append_log(turn, iteration=len(turns))
                break

            response = reply.text or ""
            turn.response = response
            self._messages.append(Message(role="assistant", content=response))

            turn.commands = extract_commands(response)
            for command in turn.commands:
                await self._handle_command(command, turn)

            self._append_log(turn, iteration=len(turns))
            if not turn.has_commands:
                break

        return turns

    async def _handle_command(self, command: str, turn: SessionTurn) -> None:
        decision = self.approval.review(command)
        if self.on_command is not None:
            self.on_command(command, decision)

        if not decision.executes:
            turn.declined.append(command)
            self._messages.append(
                Message(role="system", content=f"User declined to execute: {command}")
            )
            return

        result = await self.shell.execute(command, on_output=self.on_output)
        turn.results.append(result)
        self._messages.append(Message(role="system", content=self._format_result(result)))

    @staticmethod
    def _format_result(result: ExecutionResult) -> str:
        return f"Command: {result.command}\nOutput:\n{result.combined_output}"

    def _append_log(self, turn: SessionTurn, *, iteration: int) -> None:
        if self.log_dir is None:
            return
        self.log_dir.mkdir(parents=True, exist_ok=True)
        day_file = self.log_dir / f"session-{datetime.now(timezone.utc).date().isoformat()}.log"
        entry = {
            "log_version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "model": getattr(self.client, "model", None),
            "shell": getattr(self.shell, "name", self.shell.__class__.__name__),
            "iteration": iteration,
            "user_input": turn.user_input,
            "response": turn.response,
            "error": turn.error,
            "commands": [
                {
                    "command": result.command,
                    "exit_code": result.exit_code,
                    "timed_out": result.timed_out,
                    "duration": round(result.duration_seconds, 4),
                }
                for result in turn.results
            ],
            "declined": turn.declined,
            "tokens_used": self.metrics.tokens_used,
            "cost_accrued": str(self.metrics.cost_accrued),
        }
        with day_file.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry) + "\n")
