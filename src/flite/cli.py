"""Command-line interface for flite."""

from __future__ import annotations

import argparse
import asyncio
import atexit
import logging
import os
import signal
import sys
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TextIO, cast

from .agent.approval import APPROVAL_PROMPT, ApprovalDecision, ApprovalGate
from .agent.loop import AgentLoop
from .agent.models import Message, SessionTurn
from .config import AppConfig
from .history import HistoryStore
from .llm.client import ChatClient, build_system_prompt
from .shell import create_shell_adapter

try:
    import readline
except ImportError:  # pragma: no cover - not shipped on every platform
    readline = None  # type: ignore[assignment]

VERSION = "0.1.0"
INTERRUPT_WINDOW_SECONDS = 2.0
LOGGER = logging.getLogger(__name__)

HELP_TEXT = "\n".join(
    [
        "  /help   - Show this help",
        "  /cost   - Show session cost",
        "  /clear  - Clear conversation",
        "  /exit   - Exit flite",
        "",
        "Just type to chat with AI!",
    ]
)


class CLIArgs(argparse.Namespace):
    prompt: list[str]
    resume: bool


@dataclass(frozen=True, slots=True)
class Palette:
    reset: str = ""
    bold: str = ""
    dim: str = ""
    red: str = ""
    yellow: str = ""
    cyan: str = ""

    @classmethod
    def detect(cls, stream: TextIO) -> Palette:
        if os.getenv("NO_COLOR") or not stream.isatty():
            return cls()
        return cls(
            reset="\x1b[0m",
            bold="\x1b[1m",
            dim="\x1b[2m",
            red="\x1b[91m",
            yellow="\x1b[93m",
            cyan="\x1b[96m",
        )


class ShutdownHook:
    """Runs a persistence callback at most once, whichever exit path comes first."""

    def __init__(self, callback: Callable[[], None]) -> None:
        self.callback = callback
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    def run(self) -> None:
        if self._done:
            return
        self._done = True
        self.callback()


class InterruptDebouncer:
    """Report whether a Ctrl+C is the second one inside the exit window."""

    def __init__(
        self,
        *,
        window: float = INTERRUPT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window = window
        self.clock = clock
        self._last: float | None = None

    def press(self) -> bool:
        now = self.clock()
        should_exit = self._last is not None and now - self._last <= self.window
        self._last = None if should_exit else now
        return should_exit


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="flite", description="The minimal AI assistant")
    parser.add_argument(
        "--resume",
        action="store_true",
        help="Continue the previously saved conversation.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument(
        "prompt",
        nargs="*",
        help="Run a single prompt non-interactively instead of starting the REPL.",
    )
    return parser


class CliSession:
    """Terminal glue around one :class:`AgentLoop` for the process lifetime."""

    def __init__(
        self,
        config: AppConfig,
        *,
        interactive: bool,
        resume: bool = False,
        stdout: TextIO | None = None,
        input_fn: Callable[[str], str] = input,
    ) -> None:
        self.config = config
        self.interactive = interactive
        self.resume = resume
        self.stdout = stdout or sys.stdout
        self.input_fn = input_fn
        self.palette = Palette.detect(self.stdout) if interactive else Palette()
        self.history: list[str] = []
        self.running = True
        self.store = HistoryStore(config.history_file)
        self._at_line_start = True

        client = ChatClient(
            api_key=config.api_key,
            model=config.model,
            api_url=config.api_url,
            system_prompt=config.system_prompt or build_system_prompt(),
            temperature=config.temperature,
            context_messages=config.context_messages,
        )
        approval = ApprovalGate(
            interactive=interactive,
            prompt=self._prompt_approval if interactive else None,
        )
        self.loop = AgentLoop(
            client=client,
            shell=create_shell_adapter(config.shell, timeout=config.command_timeout),
            approval=approval,
            log_dir=config.log_dir,
            on_delta=self._write_delta,
            on_output=self._write_output if interactive else None,
            on_command=self._announce_command if interactive else None,
        )
        self.shutdown = ShutdownHook(self.save_state)

    def println(self, text: str = "", color: str = "") -> None:
        reset = self.palette.reset if color else ""
        self.stdout.write(f"{color}{text}{reset}\n")
        self.stdout.flush()
        self._at_line_start = True

    def info(self, text: str) -> None:
        if self.interactive:
            self.println(text, self.palette.cyan)

    def error(self, text: str) -> None:
        if self.interactive:
            self.println(f"Error: {text}", self.palette.red)
        else:
            print(f"Error: {text}", file=sys.stderr)

    def end_line(self) -> None:
        if not self._at_line_start:
            self.println()

    def load_context(self) -> str:
        """Restore saved state when resuming and describe what was loaded."""
        if not (self.resume and self.store.exists()):
            return "Starting fresh context"
        try:
            saved = self.store.load()
        except (OSError, ValueError) as exc:
            print(f"History load error: {exc}", file=sys.stderr)
            return "Starting fresh context"

        self.loop.restore(saved.messages)
        if self.interactive:
            self.history = list(saved.history)
        return describe_context(saved.messages, dim=self.palette.dim, reset=self.palette.reset)

    def save_state(self) -> None:
        if not self.interactive and not (self.config.app_dir.exists() or self.resume):
            return
        history = self.history if self.interactive else []
        try:
            self.store.save(history, self.loop.messages)
        except (OSError, ValueError) as exc:
            print(f"Save state error: {exc}", file=sys.stderr)

    def handle_command(self, text: str) -> bool:
        """Dispatch a slash command; return ``False`` for input meant for the model."""
        trimmed = text.strip()
        if trimmed in {"/exit", "/quit"}:
            self.running = False
            return True
        if trimmed == "/clear":
            self.loop.clear()
            self.info("Conversation cleared")
            return True
        if trimmed == "/cost":
            metrics = self.loop.metrics
            self.println(f"Session cost: ${metrics.cost_accrued:.4f}")
            self.println(f"Tokens used: {metrics.tokens_used}")
            return True
        if trimmed == "/help":
            self.println("\nflite commands:", self.palette.bold)
            self.println(HELP_TEXT)
            return True
        if trimmed.startswith("/"):
            self.error(f"Unknown command: {trimmed}")
            return True
        return False

    def print_stats(self) -> None:
        metrics = self.loop.metrics
        self.println("\nSession stats:", self.palette.dim)
        self.println(f"  Tokens: {metrics.tokens_used}", self.palette.dim)
        self.println(f"  Cost: ${metrics.cost_accrued:.4f}", self.palette.dim)

    def _prompt_approval(self, command: str) -> str:
        self.end_line()
        self.println(
            f"Execute command: {self.palette.bold}{command}",
            self.palette.yellow,
        )
        return self.input_fn(f"{self.palette.cyan}{APPROVAL_PROMPT}{self.palette.reset}")

    def _announce_command(self, command: str, decision: ApprovalDecision) -> None:
        self.end_line()
        if decision is ApprovalDecision.REMEMBERED:
            self.info(f"Auto-executing (previously approved): {command}")
        elif decision is ApprovalDecision.ALWAYS:
            self.info(f'Will auto-execute "{command}" for this session')
        elif decision is ApprovalDecision.SKIP:
            self.info("Command skipped")
            return
        self.info(f"Running: {command}")

    def _write_delta(self, text: str) -> None:
        self.stdout.write(text)
        self.stdout.flush()
        self._at_line_start = text.endswith("\n")

    def _write_output(self, text: str, stream_name: str) -> None:
        color = self.palette.red if stream_name == "stderr" else self.palette.dim
        reset = self.palette.reset if color else ""
        self.stdout.write(f"{color}{text}{reset}")
        self.stdout.flush()
        self._at_line_start = text.endswith("\n")


def describe_context(messages: Sequence[Message], *, dim: str = "", reset: str = "") -> str:
    user_messages = [message for message in messages if message.role == "user"]
    if not user_messages:
        return "Starting fresh context"

    count = len(user_messages)
    status = f"Resumed context with {count} previous exchange{'' if count == 1 else 's'}"
    assistant_messages = [message for message in messages if message.role == "assistant"]
    if assistant_messages:
        status += (
            f'\n{dim}Last: "{_preview(user_messages[-1].content)}"'
            f' → "{_preview(assistant_messages[-1].content)}"{reset}'
        )
    return status


def _preview(text: str, limit: int = 30) -> str:
    preview = text[:limit].replace("\n", " ")
    return f"{preview}..." if len(text) > limit else preview


def run_non_interactive(session: CliSession, prompt: str) -> int:
    session.load_context()
    with asyncio.Runner() as runner:
        turns = runner.run(session.loop.run(prompt))
    session.end_line()
    session.shutdown.run()

    failure = turns[-1].error if turns else None
    if failure:
        session.error(f"Failed: {failure}")
        return 1
    return 0


def run_interactive(session: CliSession) -> int:
    palette = session.palette
    session.println("\nflite", palette.bold)
    session.println(f"v{VERSION} | {session.config.model}", palette.dim)

    status = session.load_context()
    session.config.app_dir.mkdir(parents=True, exist_ok=True)
    _setup_readline(session.history)

    session.println(status, palette.yellow)
    if not session.resume and session.store.exists():
        session.println("Use --resume to continue previous conversation", palette.dim)
    session.println("Type /help for commands\n", palette.dim)

    debouncer = InterruptDebouncer()
    prompt = f"{palette.cyan}> {palette.reset}"
    with asyncio.Runner() as runner:
        while session.running:
            try:
                line = session.input_fn(prompt)
            except KeyboardInterrupt:
                if _interrupted(session, debouncer):
                    return 0
                continue
            except EOFError:
                session.println()
                break

            if not line.strip():
                continue
            session.history.append(line)

            if not session.handle_command(line):
                try:
                    turns = runner.run(_run_turn(session, line, debouncer))
                except asyncio.CancelledError:
                    return 0
                except KeyboardInterrupt:
                    if _interrupted(session, debouncer):
                        return 0
                    continue
                session.end_line()
                if turns and turns[-1].error:
                    session.error(f"Failed: {turns[-1].error}")

            session.save_state()

    session.print_stats()
    session.shutdown.run()
    return 0


async def _run_turn(
    session: CliSession,
    line: str,
    debouncer: InterruptDebouncer,
) -> list[SessionTurn]:
    """Run one turn with SIGINT routed through the debouncer.

    A single Ctrl+C only warns and the turn keeps going. A second one inside
    the window saves state and cancels the turn.
    """
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()

    def _on_sigint() -> None:
        if _interrupted(session, debouncer) and task is not None:
            task.cancel()

    try:
        loop.add_signal_handler(signal.SIGINT, _on_sigint)
    except (NotImplementedError, RuntimeError, ValueError):
        LOGGER.debug("sigint_handler_unavailable")
        return await session.loop.run(line)
    try:
        return await session.loop.run(line)
    finally:
        loop.remove_signal_handler(signal.SIGINT)


def _interrupted(session: CliSession, debouncer: InterruptDebouncer) -> bool:
    session.end_line()
    if debouncer.press():
        session.println("\nExiting...", session.palette.dim)
        session.shutdown.run()
        return True
    session.println("\nPress Ctrl+C again to exit", session.palette.yellow)
    return False


def _setup_readline(history: Sequence[str]) -> None:
    if readline is None:
        return
    readline.set_history_length(100)
    for entry in history:
        readline.add_history(entry)


def _print_missing_key(interactive: bool) -> None:
    if not interactive:
        print("Error: Missing OpenRouter API key", file=sys.stderr)
        return
    print("Missing OpenRouter API key")
    print("\nTo get started:")
    print("1. Get an API key from https://openrouter.ai")
    print("2. Either:")
    print("   - Run: export OPENROUTER_API_KEY=sk-or-...")
    print("   - Or create a config at `~/.flite/config.json` with `apiKey`")
    print("     (you can also set `defaultModel` in the config)")
    print("3. Try again: flite")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = cast(CLIArgs, parser.parse_args(argv))
    config = AppConfig.from_env()
    _configure_logging(config.log_level)

    interactive = not args.prompt
    if not config.api_key:
        _print_missing_key(interactive)
        return 1

    try:
        session = CliSession(config, interactive=interactive, resume=args.resume)
    except Exception as exc:
        print(f"Failed to start: {exc}", file=sys.stderr)
        return 1

    atexit.register(session.shutdown.run)
    _install_sigterm_handler(session)
    try:
        if interactive:
            return run_interactive(session)
        return run_non_interactive(session, " ".join(args.prompt))
    except Exception as exc:
        LOGGER.exception("fatal_error")
        print(f"Unexpected error: {exc}", file=sys.stderr)
        session.shutdown.run()
        return 1


def _install_sigterm_handler(session: CliSession) -> None:
    def _terminate(_signum: int, _frame: object) -> None:
        session.shutdown.run()
        raise SystemExit(0)

    try:
        signal.signal(signal.SIGTERM, _terminate)
    except ValueError:
        LOGGER.debug("sigterm_handler_unavailable")


if __name__ == "__main__":
    raise SystemExit(main())
