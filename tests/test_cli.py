from __future__ import annotations

import asyncio
import io
import json
import os
import signal
from collections.abc import Sequence
from pathlib import Path

import pytest

from flite import cli
from flite.agent.models import Message
from flite.config import AppConfig
from flite.llm.client import DeltaCallback, ModelReply
from flite.shell import ExecutionResult, OutputCallback


def _fake_config(app_dir: Path, *, api_key: str | None = "sk-or-test") -> AppConfig:
    return AppConfig(
        api_key=api_key,
        model="test/model",
        api_url="https://llm.example/v1/chat/completions",
        system_prompt="prompt",
        temperature=0.7,
        context_messages=10,
        command_timeout=30.0,
        shell="bash",
        app_dir=app_dir,
        log_dir=None,
        log_level="WARNING",
    )


class FakeChatClient:
    replies: list[ModelReply] = []
    requests: list[list[Message]] = []

    def __init__(self, **kwargs: object) -> None:
        self.kwargs = kwargs

    async def complete(
        self,
        messages: Sequence[Message],
        *,
        on_delta: DeltaCallback | None = None,
    ) -> ModelReply:
        FakeChatClient.requests.append(list(messages))
        reply = FakeChatClient.replies.pop(0)
        if on_delta is not None and reply.text:
            on_delta(reply.text)
        return reply


class FakeShell:
    name = "fake"

    def __init__(self) -> None:
        self.commands: list[str] = []

    async def execute(
        self,
        command: str,
        *,
        on_output: OutputCallback | None = None,
    ) -> ExecutionResult:
        self.commands.append(command)
        if on_output is not None:
            on_output("ran\n", "stdout")
        return ExecutionResult(command=command, combined_output="ran\n", exit_code=0)


@pytest.fixture
def fake_runtime(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> FakeShell:
    shell = FakeShell()
    FakeChatClient.replies = []
    FakeChatClient.requests = []
    monkeypatch.setattr(cli, "ChatClient", FakeChatClient)
    monkeypatch.setattr(cli, "create_shell_adapter", lambda _name, **_kwargs: shell)
    monkeypatch.setattr(cli, "_install_sigterm_handler", lambda _session: None)
    monkeypatch.setattr(cli.atexit, "register", lambda _func: None)
    monkeypatch.setattr(
        cli,
        "AppConfig",
        type("FakeConfig", (), {"from_env": staticmethod(lambda: _fake_config(tmp_path / "home"))}),
    )
    return shell


def _scripted_input(*lines: str | type[BaseException]):
    remaining = list(lines)
    prompts: list[str] = []

    def fake_input(prompt: str) -> str:
        prompts.append(prompt)
        if not remaining:
            raise EOFError
        item = remaining.pop(0)
        if isinstance(item, type):
            raise item()
        return item

    fake_input.prompts = prompts  # type: ignore[attr-defined]
    return fake_input


def test_parser_defaults() -> None:
    args = cli.build_parser().parse_args([])

    assert args.prompt == []
    assert args.resume is False


def test_parser_collects_prompt_words_and_resume_flag() -> None:
    args = cli.build_parser().parse_args(["--resume", "list", "files"])

    assert args.resume is True
    assert args.prompt == ["list", "files"]


def test_main_fails_without_api_key(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.setattr(
        cli,
        "AppConfig",
        type(
            "FakeConfig",
            (),
            {"from_env": staticmethod(lambda: _fake_config(tmp_path, api_key=None))},
        ),
    )

    assert cli.main(["hello"]) == 1
    assert "Missing OpenRouter API key" in capsys.readouterr().err


def test_non_interactive_plain_answer(
    fake_runtime: FakeShell,
    capsys: pytest.CaptureFixture[str],
) -> None:
    FakeChatClient.replies = [ModelReply(text="4")]

    assert cli.main(["what", "is", "2+2"]) == 0

    assert capsys.readouterr().out == "4\n"
    assert FakeChatClient.requests[0] == [Message(role="user", content="what is 2+2")]
    assert fake_runtime.commands == []


def test_non_interactive_runs_commands_without_prompting(
    fake_runtime: FakeShell,
    capsys: pytest.CaptureFixture[str],
) -> None:
    FakeChatClient.replies = [
        ModelReply(text="Let me check: `fff/execute:echo hi`"),
        ModelReply(text="done"),
    ]

    assert cli.main(["check"]) == 0

    assert fake_runtime.commands == ["echo hi"]
    assert len(FakeChatClient.requests) == 2
    out = capsys.readouterr().out
    assert "ran" not in out


def test_non_interactive_failure_exits_with_error(
    fake_runtime: FakeShell,
    capsys: pytest.CaptureFixture[str],
) -> None:
    FakeChatClient.replies = [ModelReply(text=None, error="API error: 401")]

    assert cli.main(["hello"]) == 1
    assert "Failed: API error: 401" in capsys.readouterr().err


def test_non_interactive_saves_context_when_app_dir_exists(
    tmp_path: Path,
    fake_runtime: FakeShell,
) -> None:
    (tmp_path / "home").mkdir()
    FakeChatClient.replies = [ModelReply(text="hello there")]

    assert cli.main(["hi"]) == 0

    data = json.loads((tmp_path / "home" / "history.json").read_text(encoding="utf-8"))
    assert data["history"] == []
    assert data["messages"] == [
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "hello there"},
    ]


def test_non_interactive_skips_saving_without_app_dir(
    tmp_path: Path,
    fake_runtime: FakeShell,
) -> None:
    FakeChatClient.replies = [ModelReply(text="ok")]

    assert cli.main(["hi"]) == 0
    assert not (tmp_path / "home").exists()


def test_resume_restores_saved_messages(
    tmp_path: Path,
    fake_runtime: FakeShell,
) -> None:
    home = tmp_path / "home"
    home.mkdir()
    (home / "history.json").write_text(
        json.dumps(
            {
                "history": ["old input"],
                "messages": [
                    {"role": "user", "content": "earlier"},
                    {"role": "assistant", "content": "answer"},
                ],
                "timestamp": 1,
            }
        ),
        encoding="utf-8",
    )
    FakeChatClient.replies = [ModelReply(text="again")]

    assert cli.main(["--resume", "follow", "up"]) == 0

    assert [message.content for message in FakeChatClient.requests[0]] == [
        "earlier",
        "answer",
        "follow up",
    ]


def test_interactive_session_dispatches_commands_and_chats(
    tmp_path: Path,
    fake_runtime: FakeShell,
) -> None:
    FakeChatClient.replies = [ModelReply(text="hello!", tokens=7)]
    stdout = io.StringIO()
    session = cli.CliSession(
        _fake_config(tmp_path / "home"),
        interactive=True,
        stdout=stdout,
        input_fn=_scripted_input("/help", "  ", "hi", "/cost", "/bogus", "/clear", "/exit"),
    )

    assert cli.run_interactive(session) == 0

    out = stdout.getvalue()
    assert "Starting fresh context" in out
    assert "/clear  - Clear conversation" in out
    assert "hello!\n" in out
    assert "Tokens used: 7" in out
    assert "Error: Unknown command: /bogus" in out
    assert "Conversation cleared" in out
    assert "Session stats:" in out
    assert session.loop.messages == []
    assert session.shutdown.done is True

    data = json.loads((tmp_path / "home" / "history.json").read_text(encoding="utf-8"))
    assert data["history"] == ["/help", "hi", "/cost", "/bogus", "/clear", "/exit"]


def test_interactive_session_prompts_before_running_commands(
    tmp_path: Path,
    fake_runtime: FakeShell,
) -> None:
    FakeChatClient.replies = [
        ModelReply(text="`fff/execute:ls`"),
        ModelReply(text="`fff/execute:ls` `fff/execute:pwd`"),
        ModelReply(text="all done"),
    ]
    stdout = io.StringIO()
    fake_input = _scripted_input("look around", "a", "n", "/quit")
    session = cli.CliSession(
        _fake_config(tmp_path / "home"),
        interactive=True,
        stdout=stdout,
        input_fn=fake_input,
    )

    assert cli.run_interactive(session) == 0

    assert fake_runtime.commands == ["ls", "ls"]
    approval_prompts = [p for p in fake_input.prompts if "[a]lways" in p]  # type: ignore[attr-defined]
    assert len(approval_prompts) == 2
    out = stdout.getvalue()
    assert "Execute command: ls" in out
    assert 'Will auto-execute "ls" for this session' in out
    assert "Auto-executing (previously approved): ls" in out
    assert "Command skipped" in out
    assert "ran\n" in out


def test_double_interrupt_exits_and_saves(
    tmp_path: Path,
    fake_runtime: FakeShell,
) -> None:
    stdout = io.StringIO()
    session = cli.CliSession(
        _fake_config(tmp_path / "home"),
        interactive=True,
        stdout=stdout,
        input_fn=_scripted_input(KeyboardInterrupt, KeyboardInterrupt),
    )

    assert cli.run_interactive(session) == 0

    out = stdout.getvalue()
    assert "Press Ctrl+C again to exit" in out
    assert "Exiting..." in out
    assert session.shutdown.done is True
    assert (tmp_path / "home" / "history.json").exists()


class SlowChatClient:
    """Answers slowly and sends itself SIGINT while the first request is in flight."""

    interrupts: list[float] = []
    replies: list[tuple[float, ModelReply]] = []

    def __init__(self, **kwargs: object) -> None:
        self.kwargs = kwargs

    async def complete(
        self,
        messages: Sequence[Message],
        *,
        on_delta: DeltaCallback | None = None,
    ) -> ModelReply:
        loop = asyncio.get_running_loop()
        for delay in SlowChatClient.interrupts:
            loop.call_later(delay, os.kill, os.getpid(), signal.SIGINT)
        SlowChatClient.interrupts = []
        delay, reply = SlowChatClient.replies.pop(0)
        await asyncio.sleep(delay)
        if on_delta is not None and reply.text:
            on_delta(reply.text)
        return reply


needs_posix_signals = pytest.mark.skipif(os.name == "nt", reason="POSIX signal delivery")


@needs_posix_signals
def test_single_interrupt_during_turn_warns_and_finishes_turn(
    tmp_path: Path,
    fake_runtime: FakeShell,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(cli, "ChatClient", SlowChatClient)
    SlowChatClient.interrupts = [0.1]
    SlowChatClient.replies = [
        (0.5, ModelReply(text="`fff/execute:echo x`")),
        (0.0, ModelReply(text="done")),
    ]
    stdout = io.StringIO()
    session = cli.CliSession(
        _fake_config(tmp_path / "home"),
        interactive=True,
        stdout=stdout,
        input_fn=_scripted_input("list files", "/exit"),
    )

    assert cli.run_interactive(session) == 0

    out = stdout.getvalue()
    assert "Press Ctrl+C again to exit" in out
    assert "Exiting..." not in out
    assert fake_runtime.commands == ["echo x"]
    assert session.loop.messages == [
        Message(role="user", content="list files"),
        Message(role="assistant", content="`fff/execute:echo x`"),
        Message(role="system", content="Command: echo x\nOutput:\nran\n"),
        Message(role="assistant", content="done"),
    ]
    assert signal.getsignal(signal.SIGINT) is signal.default_int_handler


@needs_posix_signals
def test_second_interrupt_during_turn_abandons_it_and_exits(
    tmp_path: Path,
    fake_runtime: FakeShell,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(cli, "ChatClient", SlowChatClient)
    SlowChatClient.interrupts = [0.1, 0.2]
    SlowChatClient.replies = [(5.0, ModelReply(text="`fff/execute:echo x`"))]
    stdout = io.StringIO()
    session = cli.CliSession(
        _fake_config(tmp_path / "home"),
        interactive=True,
        stdout=stdout,
        input_fn=_scripted_input("list files", "never read"),
    )

    assert cli.run_interactive(session) == 0

    out = stdout.getvalue()
    assert "Press Ctrl+C again to exit" in out
    assert "Exiting..." in out
    assert fake_runtime.commands == []
    assert session.shutdown.done is True
    saved = json.loads((tmp_path / "home" / "history.json").read_text(encoding="utf-8"))
    assert saved["history"] == ["list files"]


def test_interrupt_debouncer_window() -> None:
    now = [0.0]
    debouncer = cli.InterruptDebouncer(window=2.0, clock=lambda: now[0])

    assert debouncer.press() is False
    now[0] = 3.0
    assert debouncer.press() is False
    now[0] = 4.5
    assert debouncer.press() is True
    now[0] = 5.0
    assert debouncer.press() is False


def test_shutdown_hook_runs_once() -> None:
    calls: list[int] = []
    hook = cli.ShutdownHook(lambda: calls.append(1))

    hook.run()
    hook.run()

    assert calls == [1]
    assert hook.done is True


def test_describe_context_previews_last_exchange() -> None:
    messages = [
        Message(role="user", content="first question"),
        Message(role="assistant", content="first answer"),
        Message(role="user", content="a much longer question that keeps going\nand going"),
        Message(role="system", content="Command: ls\nOutput:\n"),
        Message(role="assistant", content="short"),
    ]

    status = cli.describe_context(messages)

    assert status.startswith("Resumed context with 2 previous exchanges")
    assert 'Last: "a much longer question that ke..." → "short"' in status
    assert cli.describe_context([]) == "Starting fresh context"
