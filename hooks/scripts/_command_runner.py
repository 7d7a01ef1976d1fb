#!/usr/bin/env python3
"""Stop command runner.

Runs the configured stop commands strictly in order through ``bash -c`` and
stops at the first failure. A failure produces a message a human (or the
agent) can act on: which command, what it was for, how it exited, and the
tail of its output.

States:
    pending -> running(i) -> succeeded
                          -> failed(i)

Design Principles:
    1. Fail-fast: remaining commands never start after a failure
    2. Spawn errors and timeouts are failures exactly like non-zero exits
    3. Full technical detail always goes to the log; the block message is trimmed
"""

import os
import re
import signal
import subprocess
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable

from _conclaude_utils import indent_block, log_conclaude, truncate_command

# ============================================================
# Constants
# ============================================================

DEFAULT_MAX_OUTPUT_LINES = 100
"""Lines of stdout/stderr kept in a failure message when not configured."""

MAX_OUTPUT_LINES_LIMIT = 10_000
"""Upper bound accepted for maxOutputLines."""

TIMEOUT_EXIT_CODE = 124
"""Exit code reported for a command killed by its timeout (as timeout(1) does)."""

COMMAND_NOT_FOUND_EXIT_CODE = 127
PERMISSION_DENIED_EXIT_CODE = 126

LOG_SEPARATOR = "-" * 60

# Checked in order; the first purpose with a matching keyword wins.
_PURPOSE_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    (
        "typecheck",
        ("typecheck", "type-check", "check-types", "tsc", "mypy", "pyright",
         "cargo check", "go vet", "flow check"),
    ),
    (
        "lint",
        ("lint", "eslint", "ruff", "flake8", "pylint", "clippy", "golangci-lint",
         "rubocop", "shellcheck", "stylelint", "biome", "prettier", "black",
         "fmt"),
    ),
    (
        "test",
        ("test", "tests", "pytest", "jest", "vitest", "mocha", "rspec",
         "go test", "cargo test", "phpunit", "ctest"),
    ),
    (
        "build",
        ("build", "compile", "make", "webpack", "rollup", "esbuild", "gradle",
         "mvn", "cargo build", "go build", "tsup"),
    ),
)

_PURPOSE_PATTERNS = tuple(
    (
        purpose,
        re.compile(
            "|".join(rf"(?<![a-z0-9_]){re.escape(kw)}(?![a-z0-9_])" for kw in keywords)
        ),
    )
    for purpose, keywords in _PURPOSE_KEYWORDS
)


# ============================================================
# Data Model
# ============================================================


@dataclass(frozen=True)
class StopCommand:
    """One configured stop command.

    Attributes:
        run: Shell text passed to ``bash -c``.
        message: Custom failure message replacing the synthesized one.
        show_stdout: Include stdout in the custom message, echo it on success.
        show_stderr: Include stderr in the custom message, echo it on success.
        max_output_lines: Output lines kept per stream (default 100).
        timeout: Seconds before the command is killed; None waits forever.
    """

    run: str
    message: str | None = None
    show_stdout: bool = False
    show_stderr: bool = False
    max_output_lines: int | None = None
    timeout: float | None = None

    @property
    def output_line_limit(self) -> int:
        return self.max_output_lines or DEFAULT_MAX_OUTPUT_LINES


@dataclass(frozen=True)
class CommandOutcome:
    """Result of running one command."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    spawn_error: str | None = None
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and self.spawn_error is None and not self.timed_out


class RunState(Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class RunResult:
    """Outcome of a whole stop-command run.

    failed_index is 1-based. echo_stdout / echo_stderr collect the output of
    successful commands that asked for it to be shown.
    """

    blocked: bool
    message: str | None = None
    executed: int = 0
    failed_index: int | None = None
    outcome: CommandOutcome | None = None
    echo_stdout: str = ""
    echo_stderr: str = ""


# ============================================================
# Pure Helpers
# ============================================================


def classify_command(command: str) -> str:
    """Infer what a command is for: typecheck, lint, test, build or other.

    Args:
        command: Shell text of the command.

    Returns:
        The first purpose (in that order) whose keyword table matches.
    """
    lowered = command.lower()
    for purpose, pattern in _PURPOSE_PATTERNS:
        if pattern.search(lowered):
            return purpose
    return "other"


def split_legacy_script(script: str) -> list[str]:
    """Split a multi-line ``stop.run`` script into individual commands.

    Blank lines and lines starting with ``#`` are dropped.
    """
    commands = []
    for line in script.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        commands.append(stripped)
    return commands


def trim_output(text: str, max_lines: int) -> tuple[str, int]:
    """Keep the last max_lines lines of text.

    Returns:
        (excerpt, number of lines omitted from the start)
    """
    lines = text.rstrip("\n").splitlines()
    if len(lines) <= max_lines:
        return "\n".join(lines), 0
    omitted = len(lines) - max_lines
    return "\n".join(lines[-max_lines:]), omitted


def format_output_excerpt(label: str, text: str, max_lines: int) -> str:
    """Render one output stream for a failure message."""
    if not text.strip():
        return f"{label}: (empty)"
    excerpt, omitted = trim_output(text, max_lines)
    header = f"{label}:"
    if omitted:
        header = f"{label} (last {max_lines} lines, {omitted} earlier lines omitted):"
    return f"{header}\n{indent_block(excerpt)}"


def build_command_env(
    project_root: Path,
    session_id: str = "",
    hook_event: str = "",
    grep_violations: int = 0,
    base_env: dict[str, str] | None = None,
) -> dict[str, str]:
    """Environment for stop commands: the inherited one plus CONCLAUDE_* context."""
    env = dict(os.environ if base_env is None else base_env)
    env["CONCLAUDE_CWD"] = str(project_root)
    env["CONCLAUDE_SESSION_ID"] = session_id
    env["CONCLAUDE_HOOK_EVENT"] = hook_event
    env["CONCLAUDE_GREP_VIOLATIONS"] = str(grep_violations)
    return env


def _as_text(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


# ============================================================
# Running One Command
# ============================================================


def run_command(
    command: StopCommand,
    cwd: Path,
    env: dict[str, str] | None = None,
) -> CommandOutcome:
    """Run one command through ``bash -c`` and capture its result.

    Never raises for command problems: spawn errors and timeouts are
    reported through the returned CommandOutcome. The command runs in its
    own session so a timeout kills everything it started, not just bash.
    """
    start = time.monotonic()
    try:
        proc = subprocess.Popen(
            ["bash", "-c", command.run],
            cwd=str(cwd),
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            encoding="utf-8",
            errors="replace",
            start_new_session=True,
        )
    except PermissionError as e:
        return CommandOutcome(
            exit_code=PERMISSION_DENIED_EXIT_CODE,
            duration=time.monotonic() - start,
            spawn_error=str(e),
        )
    except OSError as e:
        return CommandOutcome(
            exit_code=COMMAND_NOT_FOUND_EXIT_CODE,
            duration=time.monotonic() - start,
            spawn_error=str(e),
        )

    try:
        stdout, stderr = proc.communicate(timeout=command.timeout)
    except subprocess.TimeoutExpired:
        _kill_process_group(proc)
        stdout, stderr = proc.communicate()
        return CommandOutcome(
            exit_code=TIMEOUT_EXIT_CODE,
            stdout=_as_text(stdout),
            stderr=_as_text(stderr),
            duration=time.monotonic() - start,
            timed_out=True,
        )

    return CommandOutcome(
        exit_code=proc.returncode,
        stdout=stdout or "",
        stderr=stderr or "",
        duration=time.monotonic() - start,
    )


def _kill_process_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        # group already gone; make sure bash itself is dead
        proc.kill()


# ============================================================
# Failure Messages
# ============================================================


def synthesize_failure_message(
    command: StopCommand, outcome: CommandOutcome, index: int, total: int
) -> str:
    """Build the block message for a failed command.

    Args:
        command: The command that failed.
        outcome: Its outcome.
        index: 1-based position of the command.
        total: Number of commands in the run.
    """
    limit = command.output_line_limit

    if command.message:
        parts = [command.message]
        if command.show_stdout and outcome.stdout.strip():
            parts.append(format_output_excerpt("Stdout", outcome.stdout, limit))
        if command.show_stderr and outcome.stderr.strip():
            parts.append(format_output_excerpt("Stderr", outcome.stderr, limit))
        return "\n".join(parts)

    purpose = classify_command(command.run)
    if outcome.spawn_error is not None:
        reason = f"could not be started ({outcome.spawn_error})"
    elif outcome.timed_out:
        reason = f"timed out after {command.timeout:g}s"
    else:
        reason = f"failed with exit code {outcome.exit_code}"

    lines = [
        f"Stop command {index}/{total} ({purpose}) {reason}.",
        f"Command: {command.run}",
        format_output_excerpt("Stdout", outcome.stdout, limit),
        format_output_excerpt("Stderr", outcome.stderr, limit),
    ]
    return "\n".join(lines)


def _log_outcome(command: StopCommand, outcome: CommandOutcome, index: int, total: int) -> None:
    status = "Success" if outcome.succeeded else f"Failed (exit code: {outcome.exit_code})"
    if outcome.spawn_error is not None:
        status += f", spawn error: {outcome.spawn_error}"
    if outcome.timed_out:
        status += ", timed out"
    log_conclaude(
        "INFO" if outcome.succeeded else "ERROR",
        f"Stop command {index}/{total}:\n{LOG_SEPARATOR}\n"
        f"  Command: {command.run}\n"
        f"  Status: {status}\n"
        f"  Duration: {outcome.duration:.2f}s\n"
        f"  Stdout:\n{indent_block(outcome.stdout, prefix='    ', empty='(no stdout)')}\n"
        f"  Stderr:\n{indent_block(outcome.stderr, prefix='    ', empty='(no stderr)')}\n"
        f"{LOG_SEPARATOR}",
    )


# ============================================================
# Runner
# ============================================================


class CommandRunner:
    """Fail-fast sequential runner over a fixed list of commands.

    Args:
        commands: Commands in execution order.
        cwd: Working directory for every command.
        env: Environment for every command.
        execute: Function running a single command (injectable for tests).
    """

    def __init__(
        self,
        commands: tuple[StopCommand, ...] | list[StopCommand],
        cwd: Path,
        env: dict[str, str] | None = None,
        execute: Callable[[StopCommand, Path, dict[str, str] | None], CommandOutcome] = run_command,
    ):
        self.commands = tuple(commands)
        self.cwd = cwd
        self.env = env
        self.execute = execute
        self.state = RunState.PENDING
        self.current_index: int | None = None

    def run(self) -> RunResult:
        """Run every command in order, stopping at the first failure."""
        self.state = RunState.PENDING
        self.current_index = None
        total = len(self.commands)
        if total:
            log_conclaude("INFO", f"Executing {total} stop command(s)")

        echo_stdout: list[str] = []
        echo_stderr: list[str] = []

        for i, command in enumerate(self.commands, start=1):
            self.state = RunState.RUNNING
            self.current_index = i
            log_conclaude("INFO", f"Running command {i}/{total}: {truncate_command(command.run)}")

            outcome = self.execute(command, self.cwd, self.env)
            _log_outcome(command, outcome, i, total)

            if not outcome.succeeded:
                self.state = RunState.FAILED
                return RunResult(
                    blocked=True,
                    message=synthesize_failure_message(command, outcome, i, total),
                    executed=i,
                    failed_index=i,
                    outcome=outcome,
                )

            if command.show_stdout and outcome.stdout:
                echo_stdout.append(outcome.stdout)
            if command.show_stderr and outcome.stderr:
                echo_stderr.append(outcome.stderr)

        self.state = RunState.SUCCEEDED
        if total:
            log_conclaude("INFO", "All stop commands completed successfully")
        return RunResult(
            blocked=False,
            executed=total,
            echo_stdout="".join(echo_stdout),
            echo_stderr="".join(echo_stderr),
        )


def run_stop_commands(
    commands: tuple[StopCommand, ...] | list[StopCommand],
    cwd: Path,
    env: dict[str, str] | None = None,
) -> RunResult:
    """Convenience wrapper: build a CommandRunner and run it once."""
    return CommandRunner(commands, cwd, env).run()
