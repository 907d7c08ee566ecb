"""Best-effort persistence of input history and the recent transcript."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from flite.agent.models import Message

LOGGER = logging.getLogger(__name__)

MAX_HISTORY = 100
MAX_SAVED_MESSAGES = 20


@dataclass(slots=True)
class SavedContext:
    history: list[str] = field(default_factory=list)
    messages: list[Message] = field(default_factory=list)
    timestamp: int | None = None


class HistoryStore:
    """Reads and writes ``history.json`` in the application directory."""

    def __init__(
        self,
        path: str | Path,
        *,
        max_history: int = MAX_HISTORY,
        max_messages: int = MAX_SAVED_MESSAGES,
    ) -> None:
        self.path = Path(path)
        self.max_history = max_history
        self.max_messages = max_messages

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> SavedContext:
        """Load the saved context.

        Raises ``OSError`` or ``ValueError`` when the file cannot be read or
        is not a JSON object, so callers can report it and start fresh.
        """
        with self.path.open("r", encoding="utf-8") as fh:
            parsed = json.load(fh)
        if not isinstance(parsed, dict):
            msg = "history file does not contain a JSON object"
            raise ValueError(msg)

        raw_history = parsed.get("history")
        raw_messages = parsed.get("messages")
        history = (
            [item for item in raw_history if isinstance(item, str)]
            if isinstance(raw_history, list)
            else []
        )
        messages: list[Message] = []
        if isinstance(raw_messages, list):
            for item in raw_messages:
                message = Message.from_dict(item)
                if message is not None:
                    messages.append(message)
        timestamp = parsed.get("timestamp")
        return SavedContext(
            history=history,
            messages=messages,
            timestamp=timestamp if isinstance(timestamp, int) else None,
        )

    def save(self, history: Sequence[str], messages: Sequence[Message]) -> None:
        """Write the capped context atomically via a temporary file."""
        data = {
            "history": list(history[-self.max_history :]) if self.max_history > 0 else [],
            "messages": [
                message.to_dict()
                for message in (messages[-self.max_messages :] if self.max_messages > 0 else [])
            ],
            "timestamp": int(time.time() * 1000),
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".history-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        LOGGER.debug(
            "history_saved",
            extra={
                "path": str(self.path),
                "history_entries": len(data["history"]),
                "saved_messages": len(data["messages"]),
            },
        )
