"""Running external build tools: real subprocesses or a recorder for dry runs and tests."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Mapping, Sequence
import os
import shlex
import subprocess


def quote_command(command: Sequence[str]) -> str:
    return " ".join(shlex.quote(part) for part in command)


@dataclass
class CommandResult:
    command: Sequence[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    # Output went straight to the terminal and was not captured.
    streamed: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandError(RuntimeError):
    """A checked command exited with a non-zero status."""

    def __init__(self, result: CommandResult):
        lines = [f"{quote_command(result.command)} exited with status {result.returncode}"]
        if result.streamed:
            lines.append("See the tool output above.")
        else:
            for label, text in (("stdout", result.stdout), ("stderr", result.stderr)):
                if text.strip():
                    lines.append(f"{label}: {text.strip()}")
        super().__init__("\n".join(lines))
        self.result = result


class CommandRunner:
    """Interface shared by the real and the recording runner.

    ``env`` holds overrides for one call only. They are layered on a copy of
    the process environment; :data:`os.environ` itself is never modified.
    """

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = True,
        note: str | None = None,
        stream: bool = False,
    ) -> CommandResult:
        raise NotImplementedError

    def format_command(self, command: Sequence[str]) -> str:
        return quote_command(command)

    @staticmethod
    def _checked(result: CommandResult, check: bool) -> CommandResult:
        if check and not result.ok:
            raise CommandError(result)
        return result


class SubprocessCommandRunner(CommandRunner):
    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = True,
        note: str | None = None,
        stream: bool = False,
    ) -> CommandResult:
        options: Dict[str, object] = {"cwd": str(cwd) if cwd else None, "check": False}
        if env is not None:
            options["env"] = {**os.environ, **env}
        if not stream:
            # Compiler probes may print in the host code page.
            options.update(capture_output=True, text=True, errors="replace")

        process = subprocess.run(list(command), **options)
        if stream:
            result = CommandResult(command=command, returncode=process.returncode, streamed=True)
        else:
            result = CommandResult(
                command=command,
                returncode=process.returncode,
                stdout=process.stdout,
                stderr=process.stderr,
            )
        return self._checked(result, check)


@dataclass(slots=True)
class RecordedCommand:
    command: List[str]
    cwd: str | None
    env: Dict[str, str]
    note: str | None
    stream: bool


Responder = Callable[[Sequence[str]], CommandResult]


class RecordingCommandRunner(CommandRunner):
    """Records every command instead of running it.

    Unscripted commands succeed with empty output. :meth:`respond` scripts the
    result for one executable name, so host probes such as
    ``clang --print-search-dirs`` can be exercised without the tool installed.
    """

    def __init__(self) -> None:
        self.commands: List[RecordedCommand] = []
        self._responders: Dict[str, Responder] = {}

    def respond(
        self,
        executable: str,
        *,
        stdout: str = "",
        stderr: str = "",
        returncode: int = 0,
        responder: Responder | None = None,
    ) -> None:
        if responder is None:
            def responder(command: Sequence[str]) -> CommandResult:
                return CommandResult(command=command, returncode=returncode, stdout=stdout, stderr=stderr)

        self._responders[executable] = responder

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = True,
        note: str | None = None,
        stream: bool = False,
    ) -> CommandResult:
        self.commands.append(
            RecordedCommand(
                command=list(command),
                cwd=str(cwd) if cwd else None,
                env=dict(env or {}),
                note=note,
                stream=stream,
            )
        )
        responder = self._responders.get(Path(command[0]).name) if command else None
        if responder is None:
            return CommandResult(command=command, returncode=0)
        return self._checked(responder(command), check)

    def iter_formatted(self, *, workspace: Path | None = None) -> Iterator[str]:
        """Yield ``[dry-run] <note> (cwd=<dir>) <command>`` for each recorded command."""

        for record in self.commands:
            cwd = record.cwd or (str(workspace) if workspace else None)
            parts = ["[dry-run]"]
            if record.note:
                parts.append(record.note)
            if cwd:
                parts.append(f"(cwd={cwd})")
            parts.append(self.format_command(record.command))
            yield " ".join(parts)
