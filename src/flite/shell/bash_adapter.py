"""Bash shell adapter implementation."""

from __future__ import annotations

import asyncio
import codecs
import os
import shutil
import signal

from .base import DEFAULT_TIMEOUT_SECONDS, ExecutionResult, OutputCallback, ShellAdapter

_READ_SIZE = 4096


class BashAdapter(ShellAdapter):
    """Adapter for command execution via ``bash -c`` (or ``sh -c``)."""

    def __init__(
        self,
        executable: str | None = None,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        cwd: str | None = None,
        fallback_to_sh: bool = True,
    ) -> None:
        super().__init__(timeout=timeout, cwd=cwd)
        self.executable = executable or _default_executable(fallback_to_sh=fallback_to_sh)

    @property
    def name(self) -> str:
        return "bash"

    async def execute(
        self,
        command: str,
        *,
        on_output: OutputCallback | None = None,
    ) -> ExecutionResult:
        if not command.strip():
            return ExecutionResult(command=command, combined_output="", exit_code=0)

        self.log_request(command)
        started = self.monotonic_now()
        try:
            process = await asyncio.create_subprocess_exec(
                self.executable,
                "-c",
                command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                start_new_session=os.name != "nt",
            )
        except FileNotFoundError:
            result = ExecutionResult(
                command=command,
                combined_output=f"{self.name} executable not found: {self.executable}",
                exit_code=127,
                duration_seconds=self.monotonic_now() - started,
            )
            self.log_result(result)
            return result

        chunks: list[str] = []
        if process.stdout is None or process.stderr is None:
            msg = "subprocess was started without output pipes"
            raise RuntimeError(msg)
        readers = [
            asyncio.create_task(_pump(process.stdout, "stdout", chunks, on_output)),
            asyncio.create_task(_pump(process.stderr, "stderr", chunks, on_output)),
        ]

        timed_out = False
        try:
            await asyncio.wait_for(asyncio.gather(*readers, process.wait()), self.timeout)
        except TimeoutError:
            timed_out = True
            _kill_process_group(process)
            await process.wait()
        except asyncio.CancelledError:
            _kill_process_group(process)
            raise
        finally:
            for reader in readers:
                reader.cancel()

        output = "".join(chunks)
        if timed_out:
            output += self.timeout_note()
        elif process.returncode:
            output += self.exit_code_note(process.returncode)

        result = ExecutionResult(
            command=command,
            combined_output=output,
            exit_code=process.returncode,
            timed_out=timed_out,
            duration_seconds=self.monotonic_now() - started,
        )
        self.log_result(result)
        return result


async def _pump(
    stream: asyncio.StreamReader,
    stream_name: str,
    chunks: list[str],
    on_output: OutputCallback | None,
) -> None:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        data = await stream.read(_READ_SIZE)
        final = not data
        text = decoder.decode(data, final=final)
        if text:
            chunks.append(text)
            if on_output is not None:
                on_output(text, stream_name)
        if final:
            return


def _kill_process_group(process: asyncio.subprocess.Process) -> None:
    # Background children can outlive the shell and keep the pipes open.
    try:
        if os.name != "nt":
            os.killpg(process.pid, signal.SIGKILL)
        elif process.returncode is None:
            process.kill()
    except ProcessLookupError:
        pass


def _default_executable(*, fallback_to_sh: bool) -> str:
    if shutil.which("bash"):
        return "bash"
    if fallback_to_sh and shutil.which("sh"):
        return "sh"
    return "bash"
