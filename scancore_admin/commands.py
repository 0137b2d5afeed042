from __future__ import annotations

import asyncio
import os
import shlex
from asyncio.subprocess import PIPE
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Iterable


class CommandError(RuntimeError):
    pass


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Whatever the command said, preferring stderr when it failed."""
        primary, secondary = (self.stdout, self.stderr) if self.ok else (self.stderr, self.stdout)
        text = primary if primary.strip() else secondary
        return text.strip()


CommandRunner = Callable[..., Awaitable[CommandResult]]


def cmd_to_str(cmd: Iterable[str]) -> str:
    return " ".join(shlex.quote(part) for part in cmd)


def command_env(project_name: str | None = None) -> dict[str, str]:
    env = os.environ.copy()
    env.setdefault("GIT_TERMINAL_PROMPT", "0")
    if project_name and "COMPOSE_PROJECT_NAME" not in env:
        env["COMPOSE_PROJECT_NAME"] = project_name
    return env


async def run_command(
    cmd: list[str],
    *,
    cwd: Path | None = None,
    timeout: float | None = None,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """Run ``cmd`` without a shell and capture its output.

    A missing binary or an exceeded ``timeout`` raises :class:`CommandError`;
    a non-zero exit status is returned to the caller untouched.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=PIPE,
            stderr=PIPE,
            cwd=str(cwd) if cwd else None,
            env=env,
        )
    except OSError as exc:
        raise CommandError(f"{cmd_to_str(cmd)}: {exc.strerror or exc}") from exc
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise CommandError(f"{cmd_to_str(cmd)}: timed out after {timeout:g}s") from None
    return CommandResult(
        process.returncode,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


async def run_checked(runner: CommandRunner, cmd: list[str], **kwargs) -> CommandResult:
    result = await runner(cmd, **kwargs)
    if not result.ok:
        detail = result.output or f"exit code {result.returncode}"
        raise CommandError(f"{cmd_to_str(cmd)}: {detail}")
    return result


__all__ = ["CommandError", "CommandResult", "CommandRunner", "cmd_to_str", "command_env", "run_command", "run_checked"]
