#!/usr/bin/env python3
"""PreToolUse Guard Hook.

Protects files from unwanted modification by Write, Edit, MultiEdit and
NotebookEdit:
0. Applying toolUsageValidation rules to any tool that names a file
1. Blocking uneditable files (uneditableFiles globs)
2. Blocking new files in the project root and under preventAdditions globs
3. Blocking git-ignored and auto-generated files (when enabled)
4. Blocking edits that touch conclaude-uneditable line ranges
5. Blocking edits that would leave forbidden content in a file (grepRules)

Design Principles:
- Fail-Close: if the guard itself cannot load, block the operation
- Thin wrapper: all logic in run_pre_tool_use_hook()
"""

import sys
from pathlib import Path

# Add hooks directory to path
sys.path.insert(0, str(Path(__file__).parent))

try:
    from _conclaude_utils import log_conclaude
    from _protection_engine import EXIT_BLOCK, run_pre_tool_use_hook
except ImportError as e:
    # Fail-close: protection unavailable = block
    print(f"conclaude guard unavailable: {e}", file=sys.stderr)
    sys.exit(2)


def main() -> None:
    """Main hook entry point."""
    try:
        code = run_pre_tool_use_hook()
    except Exception as e:
        # Fail-close: on unexpected errors, block for safety
        log_conclaude("ERROR", f"PreToolUse guard error: {type(e).__name__}: {e}")
        print(f"conclaude guard error: {type(e).__name__}: {e}", file=sys.stderr)
        code = EXIT_BLOCK
    sys.exit(code)


if __name__ == "__main__":
    main()
