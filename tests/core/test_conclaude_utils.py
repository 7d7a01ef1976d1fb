#!/usr/bin/env python3
"""Unit tests for _conclaude_utils: glob dialect, path forms, regex timeout
defense, logging and dry-run switches.

Run: python3 -m pytest tests/core/test_conclaude_utils.py -v
  or: python3 tests/core/test_conclaude_utils.py
"""
import os
import shutil
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
import _bootstrap  # noqa: F401, E402

from _conclaude_utils import (
    GlobPatternError,
    compile_regex,
    expand_braces,
    get_log_file_path,
    indent_block,
    is_dry_run,
    log_conclaude,
    match_any_form,
    match_glob,
    path_forms,
    relative_to_root,
    safe_regex_search,
    truncate_command,
    truncate_path,
)


# ============================================================
# Glob dialect
# ============================================================


class TestGlobMatching(unittest.TestCase):

    def test_lock_files(self):
        self.assertTrue(match_glob("bun.lock", "*.lock"))
        self.assertTrue(match_glob("Cargo.lock", "*.lock"))
        self.assertFalse(match_glob("lockfile.txt", "*.lock"))

    def test_brace_alternation_exact_names(self):
        pattern = "{package,tsconfig}.json"
        self.assertTrue(match_glob("package.json", pattern))
        self.assertTrue(match_glob("tsconfig.json", pattern))
        self.assertFalse(match_glob("jsconfig.json", pattern))
        self.assertFalse(match_glob("package.json.bak", pattern))

    def test_nested_braces(self):
        self.assertEqual(
            expand_braces("a{b,c{d,e}}f"),
            ["abf", "acdf", "acef"],
        )

    def test_star_crosses_separators(self):
        self.assertTrue(match_glob("src/deep/file.lock", "*.lock"))
        self.assertTrue(match_glob("src/a/b.ts", "src/*.ts"))

    def test_question_mark_and_classes(self):
        self.assertTrue(match_glob("v1.txt", "v?.txt"))
        self.assertTrue(match_glob("b.txt", "[abc].txt"))
        self.assertFalse(match_glob("d.txt", "[abc].txt"))
        self.assertTrue(match_glob("d.txt", "[!abc].txt"))

    def test_double_star_component(self):
        self.assertTrue(match_glob("dist/main.js", "dist/**"))
        self.assertTrue(match_glob("dist/a/b/c.js", "dist/**"))
        self.assertTrue(match_glob("src/a/b/c.py", "src/**/*.py"))
        self.assertTrue(match_glob("src/c.py", "src/**/*.py"))
        self.assertFalse(match_glob("lib/c.py", "src/**/*.py"))

    def test_malformed_globs_raise(self):
        for pattern in ("{a,b", "a}b", "[abc", ""):
            with self.assertRaises(GlobPatternError, msg=pattern):
                match_glob("abc", pattern)

    def test_match_any_form_skips_malformed(self):
        self.assertFalse(match_any_form(["abc"], "{abc"))
        self.assertTrue(match_any_form(["x/y.env", "y.env"], "y.env"))


# ============================================================
# Path forms
# ============================================================


class TestPathForms(unittest.TestCase):

    def setUp(self):
        self.root = Path(tempfile.mkdtemp(prefix="conclaude_paths_")).resolve()
        (self.root / "src").mkdir()

    def tearDown(self):
        shutil.rmtree(self.root, ignore_errors=True)

    def test_relative_input(self):
        forms = path_forms("src/a.py", self.root)
        self.assertEqual(forms, ["src/a.py", (self.root / "src" / "a.py").as_posix()])

    def test_absolute_input(self):
        absolute = str(self.root / "src" / "a.py")
        forms = path_forms(absolute, self.root)
        self.assertEqual(forms[0], Path(absolute).as_posix())
        self.assertIn("src/a.py", forms)

    def test_outside_root_has_no_relative_form(self):
        outside = Path(tempfile.gettempdir()).resolve() / "elsewhere.txt"
        self.assertIsNone(relative_to_root(outside, self.root))
        self.assertNotIn("elsewhere.txt", path_forms(str(outside), self.root))


# ============================================================
# Regex timeout defense
# ============================================================


class TestSafeRegex(unittest.TestCase):

    def test_match_and_no_match(self):
        pattern = compile_regex(r"console\.log\(")
        self.assertIsNotNone(safe_regex_search(pattern, "  console.log('x')"))
        self.assertIsNone(safe_regex_search(pattern, "logger.info('x')"))

    def test_timeout_returns_none(self):
        pattern = compile_regex(r"(a+)+$")
        text = "a" * 40 + "!"
        self.assertIsNone(safe_regex_search(pattern, text, timeout=0.01))


# ============================================================
# Display helpers
# ============================================================


class TestDisplayHelpers(unittest.TestCase):

    def test_truncate_path_keeps_tail(self):
        path = "/very/long/" + "x" * 100 + "/file.py"
        result = truncate_path(path)
        self.assertTrue(result.startswith("..."))
        self.assertTrue(result.endswith("file.py"))
        self.assertEqual(len(result), 60)

    def test_truncate_command_keeps_head(self):
        result = truncate_command("npm run " + "x" * 200)
        self.assertTrue(result.startswith("npm run"))
        self.assertTrue(result.endswith("..."))

    def test_indent_block(self):
        self.assertEqual(indent_block("a\nb\n", prefix="  "), "  a\n  b")
        self.assertEqual(indent_block("  ", empty="(none)"), "    (none)")


# ============================================================
# Logging and dry-run
# ============================================================


class TestLogging(unittest.TestCase):

    def setUp(self):
        self.project = tempfile.mkdtemp(prefix="conclaude_log_")
        self.env = mock.patch.dict(
            os.environ,
            {
                "CLAUDE_PROJECT_DIR": self.project,
                "CONCLAUDE_DISABLE_FILE_LOGGING": "false",
                "CONCLAUDE_LOG_LEVEL": "info",
            },
        )
        self.env.start()

    def tearDown(self):
        self.env.stop()
        shutil.rmtree(self.project, ignore_errors=True)

    def _log_text(self):
        return get_log_file_path().read_text(encoding="utf-8")

    def test_writes_to_project_log(self):
        log_conclaude("BLOCK", "blocked something")
        self.assertEqual(
            get_log_file_path(),
            Path(self.project) / ".claude" / "conclaude" / "conclaude.log",
        )
        self.assertIn("[BLOCK] blocked something", self._log_text())

    def test_level_threshold(self):
        log_conclaude("DEBUG", "hidden detail")
        log_conclaude("WARN", "visible warning")
        text = self._log_text()
        self.assertNotIn("hidden detail", text)
        self.assertIn("visible warning", text)

    def test_file_logging_can_be_disabled(self):
        with mock.patch.dict(os.environ, {"CONCLAUDE_DISABLE_FILE_LOGGING": "true"}):
            log_conclaude("ERROR", "nothing written")
        self.assertFalse(get_log_file_path().exists())

    def test_dry_run_tag(self):
        with mock.patch.dict(os.environ, {"CONCLAUDE_DRY_RUN": "yes"}):
            self.assertTrue(is_dry_run())
            log_conclaude("INFO", "simulated")
        self.assertIn("[DRY-RUN] simulated", self._log_text())

    def test_unknown_project_dir_is_silent(self):
        with mock.patch.dict(os.environ, {"CLAUDE_PROJECT_DIR": ""}):
            self.assertIsNone(get_log_file_path())
            log_conclaude("ERROR", "goes nowhere")


# ============================================================
# Entry point for direct execution
# ============================================================

if __name__ == "__main__":
    unittest.main()
