#!/usr/bin/env python3
"""Configuration model and loading for the conclaude hooks.

Config resolution chain (first hit wins):
    1. $CLAUDE_PROJECT_DIR/.claude/conclaude/config.json (user custom)
    2. .conclaude.json, searched upward from the project root (max 12 levels)
    3. $CLAUDE_PLUGIN_ROOT/assets/conclaude.default.json (plugin default)
    4. FALLBACK_CONFIG (built-in: root-addition and generated-file guards only)

Unlike a best-effort loader, a config file that exists but is malformed is
fatal: load_conclaude_config() raises ConfigError and the hook exits 1
instead of silently running with weaker protection.

The loaded config is an immutable value. It is loaded once per hook process
and passed explicitly to every component; nothing here is cached at module
level.
"""

import difflib
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import regex

from _command_runner import MAX_OUTPUT_LINES_LIMIT, StopCommand, split_legacy_script
from _content_rules import GrepRule
from _conclaude_utils import compile_regex, log_conclaude

# ============================================================
# Constants
# ============================================================

PROJECT_CONFIG_PATH = Path(".claude") / "conclaude" / "config.json"
DISCOVERY_FILE_NAME = ".conclaude.json"
PLUGIN_DEFAULT_CONFIG_PATH = Path("assets") / "conclaude.default.json"
MAX_SEARCH_LEVELS = 12

_TOP_LEVEL_KEYS = ("preToolUse", "stop", "$schema")
_PRE_TOOL_USE_KEYS = (
    "uneditableFiles",
    "preventRootAdditions",
    "preventAdditions",
    "preventGeneratedFileEdits",
    "generatedFileMessage",
    "preventUpdateGitIgnored",
    "grepRules",
    "toolUsageValidation",
)
_STOP_KEYS = ("run", "commands", "grepRules", "infinite", "infiniteMessage")
_COMMAND_KEYS = ("run", "message", "showStdout", "showStderr", "maxOutputLines", "timeout")
_GREP_RULE_KEYS = ("filePattern", "forbiddenPattern", "description")
_UNEDITABLE_RULE_KEYS = ("pattern", "message")
_TOOL_USAGE_RULE_KEYS = ("tool", "pattern", "action", "message")
TOOL_USAGE_ACTIONS = ("block", "allow")

# Keys of the wider conclaude config format that these hooks do not act on
_IGNORED_KEYS = {
    "": ("subagentStop", "notifications", "permissionRequest", "database"),
    "stop": ("rounds",),
}
# Bash command matching is handled by other tooling
_IGNORED_TOOL_USAGE_KEYS = ("commandPattern", "matchMode")


# ============================================================
# Errors
# ============================================================


class ConfigError(Exception):
    """Configuration could not be read, parsed, or validated.

    Attributes:
        source: Path (or label) of the offending config.
        errors: Every problem found, one line each.
    """

    def __init__(self, source: str, errors: list[str]):
        self.source = source
        self.errors = list(errors)
        details = "\n".join(f"  - {e}" for e in self.errors)
        super().__init__(f"Invalid conclaude configuration in {source}:\n{details}")


# ============================================================
# Data Model
# ============================================================


@dataclass(frozen=True)
class UneditableRule:
    """A glob of files that must never be modified, with an optional message."""

    pattern: str
    message: str | None = None


@dataclass(frozen=True)
class ToolUsageRule:
    """Per-tool path rule.

    action "block" denies the tool on paths matching pattern; "allow" denies
    it on every path that does NOT match. tool "*" applies to all tools.
    """

    tool: str
    pattern: str
    action: str
    message: str | None = None

    def applies_to(self, tool_name: str) -> bool:
        return self.tool == "*" or self.tool == tool_name


@dataclass(frozen=True)
class PreToolUseConfig:
    uneditable_files: tuple[UneditableRule, ...] = ()
    prevent_root_additions: bool = True
    prevent_additions: tuple[str, ...] = ()
    prevent_generated_file_edits: bool = True
    generated_file_message: str | None = None
    prevent_update_git_ignored: bool = False
    grep_rules: tuple[GrepRule, ...] = ()
    tool_usage_rules: tuple[ToolUsageRule, ...] = ()


@dataclass(frozen=True)
class StopConfig:
    """Stop gate settings.

    commands already holds the legacy ``run`` script lines (first) followed
    by the structured ``commands`` entries. With infinite set, a stop whose
    commands all pass is still blocked with infinite_message so the agent
    keeps working.
    """

    commands: tuple[StopCommand, ...] = ()
    grep_rules: tuple[GrepRule, ...] = ()
    infinite: bool = False
    infinite_message: str | None = None


FALLBACK_SOURCE = "built-in fallback"


@dataclass(frozen=True)
class ConclaudeConfig:
    pre_tool_use: PreToolUseConfig = field(default_factory=PreToolUseConfig)
    stop: StopConfig = field(default_factory=StopConfig)
    source: str = FALLBACK_SOURCE

    @property
    def is_fallback(self) -> bool:
        return self.source == FALLBACK_SOURCE


FALLBACK_CONFIG = ConclaudeConfig(source=FALLBACK_SOURCE)
"""Used when no config file exists anywhere in the resolution chain."""


# ============================================================
# Validation Helpers
# ============================================================


def _suggest(key: str, valid: tuple[str, ...]) -> str:
    matches = difflib.get_close_matches(key, valid, n=3, cutoff=0.6)
    if not matches:
        return ""
    return f" (did you mean {', '.join(repr(m) for m in matches)}?)"


def _check_keys(
    section: dict,
    valid: tuple[str, ...],
    where: str,
    errors: list[str],
    ignored: tuple[str, ...] | None = None,
) -> None:
    if ignored is None:
        ignored = _IGNORED_KEYS.get(where, ())
    for key in section:
        if key in valid:
            continue
        if key in ignored:
            log_conclaude("WARN", f"Config key '{_join(where, key)}' is not supported by these hooks; ignoring")
            continue
        errors.append(f"Unknown key '{_join(where, key)}'{_suggest(key, valid)}")


def _join(where: str, key: str) -> str:
    return f"{where}.{key}" if where else key


def _expect_bool(section: dict, key: str, default: bool, where: str, errors: list[str]) -> bool:
    value = section.get(key, default)
    if not isinstance(value, bool):
        errors.append(f"{_join(where, key)} must be a boolean, got {type(value).__name__}")
        return default
    return value


def _expect_optional_str(section: dict, key: str, where: str, errors: list[str]) -> str | None:
    value = section.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        errors.append(f"{_join(where, key)} must be a string, got {type(value).__name__}")
        return None
    return value


def _expect_list(section: dict, key: str, where: str, errors: list[str]) -> list:
    value = section.get(key, [])
    if not isinstance(value, list):
        errors.append(f"{_join(where, key)} must be a list, got {type(value).__name__}")
        return []
    return value


def _expect_section(data: dict, key: str, errors: list[str]) -> dict:
    value = data.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        errors.append(f"{key} must be an object, got {type(value).__name__}")
        return {}
    return value


# ============================================================
# Section Parsers
# ============================================================


def _parse_uneditable_files(section: dict, errors: list[str]) -> tuple[UneditableRule, ...]:
    rules = []
    for i, entry in enumerate(_expect_list(section, "uneditableFiles", "preToolUse", errors)):
        where = f"preToolUse.uneditableFiles[{i}]"
        if isinstance(entry, str):
            if not entry:
                errors.append(f"{where} must not be empty")
                continue
            rules.append(UneditableRule(entry))
        elif isinstance(entry, dict):
            _check_keys(entry, _UNEDITABLE_RULE_KEYS, where, errors)
            pattern = entry.get("pattern")
            if not isinstance(pattern, str) or not pattern:
                errors.append(f"{where} object missing 'pattern' field")
                continue
            rules.append(UneditableRule(pattern, _expect_optional_str(entry, "message", where, errors)))
        else:
            errors.append(f"{where} must be string or object, got {type(entry).__name__}")
    return tuple(rules)


def _parse_string_list(section: dict, key: str, where: str, errors: list[str]) -> tuple[str, ...]:
    items = []
    for i, entry in enumerate(_expect_list(section, key, where, errors)):
        if not isinstance(entry, str) or not entry:
            errors.append(f"{where}.{key}[{i}] must be a non-empty string")
            continue
        items.append(entry)
    return tuple(items)


def _parse_grep_rules(section: dict, where: str, errors: list[str]) -> tuple[GrepRule, ...]:
    rules = []
    for i, entry in enumerate(_expect_list(section, "grepRules", where, errors)):
        rule_where = f"{where}.grepRules[{i}]"
        if not isinstance(entry, dict):
            errors.append(f"{rule_where} must be an object")
            continue
        _check_keys(entry, _GREP_RULE_KEYS, rule_where, errors)

        file_pattern = entry.get("filePattern")
        forbidden = entry.get("forbiddenPattern")
        if not isinstance(file_pattern, str) or not file_pattern:
            errors.append(f"{rule_where} missing 'filePattern' field")
            continue
        if not isinstance(forbidden, str) or not forbidden:
            errors.append(f"{rule_where} missing 'forbiddenPattern' field")
            continue
        try:
            compiled = compile_regex(forbidden)
        except regex.error as e:
            errors.append(f"Invalid regex in {rule_where}.forbiddenPattern: {e}")
            continue
        description = _expect_optional_str(entry, "description", rule_where, errors) or ""
        rules.append(GrepRule(file_pattern, compiled, description))
    return tuple(rules)


def _parse_tool_usage_rules(section: dict, errors: list[str]) -> tuple[ToolUsageRule, ...]:
    rules = []
    for i, entry in enumerate(_expect_list(section, "toolUsageValidation", "preToolUse", errors)):
        where = f"preToolUse.toolUsageValidation[{i}]"
        if not isinstance(entry, dict):
            errors.append(f"{where} must be an object")
            continue
        _check_keys(entry, _TOOL_USAGE_RULE_KEYS, where, errors, ignored=_IGNORED_TOOL_USAGE_KEYS)

        tool = entry.get("tool")
        pattern = entry.get("pattern")
        action = entry.get("action")
        if not isinstance(tool, str) or not tool:
            errors.append(f"{where} missing 'tool' field")
            continue
        if not isinstance(pattern, str) or not pattern:
            errors.append(f"{where} missing 'pattern' field")
            continue
        if action not in TOOL_USAGE_ACTIONS:
            errors.append(f"{where}.action must be 'block' or 'allow', got {action!r}")
            continue
        rules.append(ToolUsageRule(tool, pattern, action, _expect_optional_str(entry, "message", where, errors)))
    return tuple(rules)


def _parse_command(entry: Any, where: str, errors: list[str]) -> StopCommand | None:
    if not isinstance(entry, dict):
        errors.append(f"{where} must be an object")
        return None
    _check_keys(entry, _COMMAND_KEYS, where, errors)

    run = entry.get("run")
    if not isinstance(run, str) or not run.strip():
        errors.append(f"{where} missing 'run' field")
        return None

    max_lines = entry.get("maxOutputLines")
    if max_lines is not None:
        if isinstance(max_lines, bool) or not isinstance(max_lines, int):
            errors.append(f"{where}.maxOutputLines must be an integer, got {type(max_lines).__name__}")
            max_lines = None
        elif not 1 <= max_lines <= MAX_OUTPUT_LINES_LIMIT:
            errors.append(
                f"{where}.maxOutputLines is {max_lines}; valid range is 1 to {MAX_OUTPUT_LINES_LIMIT}"
            )
            max_lines = None

    timeout = entry.get("timeout")
    if timeout is not None:
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            errors.append(f"{where}.timeout must be a positive number of seconds")
            timeout = None

    return StopCommand(
        run=run.strip(),
        message=_expect_optional_str(entry, "message", where, errors),
        show_stdout=_expect_bool(entry, "showStdout", False, where, errors),
        show_stderr=_expect_bool(entry, "showStderr", False, where, errors),
        max_output_lines=max_lines,
        timeout=timeout,
    )


def _parse_stop(section: dict, errors: list[str]) -> StopConfig:
    commands: list[StopCommand] = []

    legacy = section.get("run", "")
    if not isinstance(legacy, str):
        errors.append(f"stop.run must be a string, got {type(legacy).__name__}")
    else:
        commands.extend(StopCommand(run=line) for line in split_legacy_script(legacy))

    for i, entry in enumerate(_expect_list(section, "commands", "stop", errors)):
        command = _parse_command(entry, f"stop.commands[{i}]", errors)
        if command is not None:
            commands.append(command)

    return StopConfig(
        commands=tuple(commands),
        grep_rules=_parse_grep_rules(section, "stop", errors),
        infinite=_expect_bool(section, "infinite", False, "stop", errors),
        infinite_message=_expect_optional_str(section, "infiniteMessage", "stop", errors),
    )


def _parse_pre_tool_use(section: dict, errors: list[str]) -> PreToolUseConfig:
    where = "preToolUse"
    return PreToolUseConfig(
        uneditable_files=_parse_uneditable_files(section, errors),
        prevent_root_additions=_expect_bool(section, "preventRootAdditions", True, where, errors),
        prevent_additions=_parse_string_list(section, "preventAdditions", where, errors),
        prevent_generated_file_edits=_expect_bool(section, "preventGeneratedFileEdits", True, where, errors),
        generated_file_message=_expect_optional_str(section, "generatedFileMessage", where, errors),
        prevent_update_git_ignored=_expect_bool(section, "preventUpdateGitIgnored", False, where, errors),
        grep_rules=_parse_grep_rules(section, where, errors),
        tool_usage_rules=_parse_tool_usage_rules(section, errors),
    )


def parse_config(data: Any, source: str = "<memory>") -> ConclaudeConfig:
    """Validate a decoded JSON document and build the config value.

    Every problem is collected before raising, so one error report lists
    them all.

    Args:
        data: Decoded JSON.
        source: Where the document came from (for messages).

    Returns:
        The immutable ConclaudeConfig.

    Raises:
        ConfigError: If the document is not a valid configuration.
    """
    if not isinstance(data, dict):
        raise ConfigError(source, [f"Top level must be an object, got {type(data).__name__}"])

    errors: list[str] = []
    _check_keys(data, _TOP_LEVEL_KEYS, "", errors)

    pre_section = _expect_section(data, "preToolUse", errors)
    stop_section = _expect_section(data, "stop", errors)
    _check_keys(pre_section, _PRE_TOOL_USE_KEYS, "preToolUse", errors)
    _check_keys(stop_section, _STOP_KEYS, "stop", errors)

    pre_tool_use = _parse_pre_tool_use(pre_section, errors)
    stop = _parse_stop(stop_section, errors)

    if errors:
        raise ConfigError(source, errors)
    return ConclaudeConfig(pre_tool_use=pre_tool_use, stop=stop, source=source)


# ============================================================
# Loading
# ============================================================


def read_config_file(path: Path) -> ConclaudeConfig:
    """Read and parse one config file.

    Raises:
        ConfigError: If the file cannot be read, is not JSON, or is invalid.
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(str(path), [f"Invalid JSON at line {e.lineno}, column {e.colno}: {e.msg}"]) from e
    except OSError as e:
        raise ConfigError(str(path), [f"Cannot read file: {e}"]) from e
    return parse_config(data, str(path))


def find_config_file(project_root: Path) -> Path | None:
    """Locate the config file for a project, following the resolution chain.

    Returns:
        Path of the first existing candidate, or None (use FALLBACK_CONFIG).
    """
    project_config = project_root / PROJECT_CONFIG_PATH
    if project_config.is_file():
        return project_config

    current = project_root
    for _ in range(MAX_SEARCH_LEVELS):
        candidate = current / DISCOVERY_FILE_NAME
        if candidate.is_file():
            return candidate
        if current.parent == current:
            break
        current = current.parent

    plugin_root = os.environ.get("CLAUDE_PLUGIN_ROOT", "")
    if plugin_root:
        default_config = Path(plugin_root) / PLUGIN_DEFAULT_CONFIG_PATH
        if default_config.is_file():
            return default_config

    return None


def load_conclaude_config(project_root: Path) -> ConclaudeConfig:
    """Load the configuration for one hook invocation.

    Raises:
        ConfigError: If the selected config file is malformed or invalid.
    """
    path = find_config_file(project_root)
    if path is None:
        log_conclaude(
            "INFO",
            f"No config found (searched {PROJECT_CONFIG_PATH.as_posix()}, {DISCOVERY_FILE_NAME}, "
            "plugin default); using built-in fallback",
        )
        return FALLBACK_CONFIG

    config = read_config_file(path)
    log_conclaude("DEBUG", f"Loaded config from {path}")
    return config


# ============================================================
# Module Self-Test (when run directly)
# ============================================================


if __name__ == "__main__":
    import sys

    from _conclaude_utils import resolve_project_root

    root = resolve_project_root()
    print(f"Project root: {root}")
    print(f"Config file: {find_config_file(root) or FALLBACK_SOURCE}")
    try:
        loaded = load_conclaude_config(root)
    except ConfigError as e:
        print(e, file=sys.stderr)
        sys.exit(1)
    print(f"Stop commands: {len(loaded.stop.commands)}")
    print(f"Uneditable patterns: {[r.pattern for r in loaded.pre_tool_use.uneditable_files]}")
