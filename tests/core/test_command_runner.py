#!/usr/bin/env python3
"""Tests for the fail-fast stop command runner.

Run:
    python -m pytest tests/core/test_command_runner.py -v
    python3 tests/core/test_command_runner.py
"""

import os
import shutil
import sys
import tempfile
import time
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
import _bootstrap  # noqa: F401, E402

from _command_runner import (
    TIMEOUT_EXIT_CODE,
    CommandOutcome,
    CommandRunner,
    RunState,
    StopCommand,
    build_command_env,
    classify_command,
    run_command,
    run_stop_commands,
    split_legacy_script,
    synthesize_failure_message,
    trim_output,
)


# ============================================================
# Pure helpers
# ============================================================


class TestClassifyCommand(unittest.TestCase):

    def test_purposes(self):
        cases = {
            "npx tsc --noEmit": "typecheck",
            "mypy src": "typecheck",
            "npm run lint": "lint",
            "cargo clippy -- -D warnings": "lint",
            "npm test": "test",
            "pytest -q": "test",
            "npm run test:unit": "test",
            "cargo build --release": "build",
            "make": "build",
            "echo done": "other",
        }
        for command, purpose in cases.items():
            self.assertEqual(classify_command(command), purpose, command)

    def test_typecheck_wins_over_later_purposes(self):
        self.assertEqual(classify_command("npm run typecheck && npm test"), "typecheck")

    def test_keywords_match_whole_words(self):
        self.assertEqual(classify_command("./scripts/latest.sh"), "other")
        self.assertEqual(classify_command("cmake-format --check"), "other")


class TestSplitLegacyScript(unittest.TestCase):

    def test_drops_blank_and_comment_lines(self):
        script = "npm run lint\n\n  # comment\n  npm test  \n"
        self.assertEqual(split_legacy_script(script), ["npm run lint", "npm test"])

    def test_empty(self):
        self.assertEqual(split_legacy_script(""), [])


class TestTrimOutput(unittest.TestCase):

    def test_keeps_tail(self):
        text = "\n".join(f"line {i}" for i in range(1, 11)) + "\n"
        excerpt, omitted = trim_output(text, 3)
        self.assertEqual(excerpt, "line 8\nline 9\nline 10")
        self.assertEqual(omitted, 7)

    def test_short_output_untouched(self):
        self.assertEqual(trim_output("a\nb\n", 5), ("a\nb", 0))


class TestFailureMessage(unittest.TestCase):

    def test_synthesized_message(self):
        command = StopCommand(run="npm test", max_output_lines=2)
        outcome = CommandOutcome(exit_code=1, stdout="a\nb\nc\n", stderr="boom\n")
        msg = synthesize_failure_message(command, outcome, 2, 3)
        self.assertIn("2/3", msg)
        self.assertIn("(test)", msg)
        self.assertIn("exit code 1", msg)
        self.assertIn("Command: npm test", msg)
        self.assertIn("1 earlier lines omitted", msg)
        self.assertIn("    b\n    c", msg)
        self.assertNotIn("    a", msg)
        self.assertIn("boom", msg)

    def test_custom_message_with_show_flags(self):
        command = StopCommand(run="npm run lint", message="Fix lint first", show_stderr=True)
        outcome = CommandOutcome(exit_code=1, stdout="out-text", stderr="err-text")
        msg = synthesize_failure_message(command, outcome, 1, 1)
        self.assertTrue(msg.startswith("Fix lint first"))
        self.assertIn("err-text", msg)
        self.assertNotIn("out-text", msg)

    def test_custom_message_alone(self):
        command = StopCommand(run="x", message="Nope")
        self.assertEqual(synthesize_failure_message(command, CommandOutcome(exit_code=3, stdout="o"), 1, 1), "Nope")

    def test_spawn_error_and_timeout(self):
        spawn = CommandOutcome(exit_code=127, spawn_error="No such file or directory: 'bash'")
        self.assertIn("could not be started", synthesize_failure_message(StopCommand(run="x"), spawn, 1, 1))
        timeout = CommandOutcome(exit_code=TIMEOUT_EXIT_CODE, timed_out=True)
        self.assertIn("timed out after 5s", synthesize_failure_message(StopCommand(run="x", timeout=5), timeout, 1, 1))


class TestBuildCommandEnv(unittest.TestCase):

    def test_conclaude_variables(self):
        env = build_command_env(Path("/proj"), "sess-1", "Stop", 4, base_env={"PATH": "/bin"})
        self.assertEqual(env["PATH"], "/bin")
        self.assertEqual(env["CONCLAUDE_CWD"], str(Path("/proj")))
        self.assertEqual(env["CONCLAUDE_SESSION_ID"], "sess-1")
        self.assertEqual(env["CONCLAUDE_HOOK_EVENT"], "Stop")
        self.assertEqual(env["CONCLAUDE_GREP_VIOLATIONS"], "4")


# ============================================================
# Runner state machine (fake executor)
# ============================================================


class _FakeExecutor:
    def __init__(self, exit_codes):
        self.exit_codes = dict(exit_codes)
        self.calls = []

    def __call__(self, command, cwd, env):
        self.calls.append(command.run)
        return CommandOutcome(exit_code=self.exit_codes.get(command.run, 0), stdout=f"{command.run} out\n")


class TestCommandRunner(unittest.TestCase):

    def test_stops_at_first_failure(self):
        fake = _FakeExecutor({"fail": 1})
        commands = [StopCommand("ok1"), StopCommand("fail"), StopCommand("ok2")]
        runner = CommandRunner(commands, Path("."), execute=fake)
        result = runner.run()
        self.assertEqual(fake.calls, ["ok1", "fail"])
        self.assertTrue(result.blocked)
        self.assertEqual(result.failed_index, 2)
        self.assertEqual(result.executed, 2)
        self.assertIn("2/3", result.message)
        self.assertEqual(runner.state, RunState.FAILED)
        self.assertEqual(runner.current_index, 2)

    def test_all_succeed(self):
        fake = _FakeExecutor({})
        runner = CommandRunner([StopCommand("a"), StopCommand("b")], Path("."), execute=fake)
        result = runner.run()
        self.assertFalse(result.blocked)
        self.assertEqual(result.executed, 2)
        self.assertEqual(runner.state, RunState.SUCCEEDED)

    def test_rerun_gives_independent_results(self):
        fake = _FakeExecutor({})
        runner = CommandRunner([StopCommand("a")], Path("."), execute=fake)
        first = runner.run()
        second = runner.run()
        self.assertFalse(first.blocked)
        self.assertFalse(second.blocked)
        self.assertEqual(fake.calls, ["a", "a"])

    def test_empty_command_list(self):
        runner = CommandRunner((), Path("."))
        self.assertEqual(runner.state, RunState.PENDING)
        result = runner.run()
        self.assertFalse(result.blocked)
        self.assertEqual(result.executed, 0)

    def test_success_echo_only_for_show_flags(self):
        fake = _FakeExecutor({})
        commands = [StopCommand("quiet"), StopCommand("loud", show_stdout=True)]
        result = CommandRunner(commands, Path("."), execute=fake).run()
        self.assertEqual(result.echo_stdout, "loud out\n")
        self.assertEqual(result.echo_stderr, "")


# ============================================================
# Real subprocesses
# ============================================================


@unittest.skipIf(shutil.which("bash") is None, "bash not installed")
class TestRunCommand(unittest.TestCase):

    def setUp(self):
        self.cwd = Path(tempfile.mkdtemp(prefix="conclaude_cmd_")).resolve()

    def tearDown(self):
        shutil.rmtree(self.cwd, ignore_errors=True)

    def test_captures_output_and_exit_code(self):
        outcome = run_command(StopCommand("echo out; echo err >&2; exit 3"), self.cwd)
        self.assertEqual(outcome.exit_code, 3)
        self.assertEqual(outcome.stdout, "out\n")
        self.assertEqual(outcome.stderr, "err\n")
        self.assertFalse(outcome.succeeded)

    def test_runs_in_project_root_with_env(self):
        env = build_command_env(self.cwd, "s-42", "Stop", 0)
        outcome = run_command(StopCommand('pwd; echo "$CONCLAUDE_SESSION_ID"'), self.cwd, env)
        self.assertTrue(outcome.succeeded)
        lines = outcome.stdout.splitlines()
        self.assertEqual(os.path.realpath(lines[0]), str(self.cwd))
        self.assertEqual(lines[1], "s-42")

    def test_timeout_is_a_failure(self):
        outcome = run_command(StopCommand("sleep 5", timeout=0.2), self.cwd)
        self.assertTrue(outcome.timed_out)
        self.assertEqual(outcome.exit_code, TIMEOUT_EXIT_CODE)
        self.assertFalse(outcome.succeeded)

    def test_timeout_kills_background_children(self):
        late = self.cwd / "late.flag"
        command = StopCommand(f"(sleep 1.5; touch '{late}') & sleep 30", timeout=0.3)
        outcome = run_command(command, self.cwd)
        self.assertTrue(outcome.timed_out)
        time.sleep(2.5)
        self.assertFalse(late.exists())

    def test_missing_working_directory_is_spawn_error(self):
        outcome = run_command(StopCommand("true"), self.cwd / "missing")
        self.assertIsNotNone(outcome.spawn_error)
        self.assertFalse(outcome.succeeded)

    def test_fail_fast_sequence(self):
        marker = self.cwd / "third-ran"
        commands = [
            StopCommand("true"),
            StopCommand("exit 4"),
            StopCommand(f"touch '{marker}'"),
        ]
        result = run_stop_commands(commands, self.cwd)
        self.assertTrue(result.blocked)
        self.assertEqual(result.failed_index, 2)
        self.assertIn("exit code 4", result.message)
        self.assertFalse(marker.exists())


# ============================================================
# Entry point for direct execution
# ============================================================

if __name__ == "__main__":
    unittest.main()
