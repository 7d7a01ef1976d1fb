#!/usr/bin/env python3
"""Stop Gate Hook.

Runs before the agent is allowed to end its turn:
1. Scans the project for forbidden content (stop.grepRules) and reports it
2. Runs the stop commands in order, stopping at the first failure
3. Blocks the stop (exit 2) with an actionable message if a command fails
4. In infinite mode, blocks with infiniteMessage even when every command passes

Design Principles:
- Fail-fast: later commands never start after a failure
- An internal error (bad config, crash) exits 1 and does not trap the session
- Thin wrapper: all logic in run_stop_hook()
"""

import sys
from pathlib import Path

# Add hooks directory to path
sys.path.insert(0, str(Path(__file__).parent))

try:
    from _conclaude_utils import log_conclaude
    from _protection_engine import EXIT_ERROR, run_stop_hook
except ImportError as e:
    print(f"conclaude stop gate unavailable: {e}", file=sys.stderr)
    sys.exit(1)


def main() -> None:
    """Main hook entry point."""
    try:
        code = run_stop_hook()
    except Exception as e:
        log_conclaude("ERROR", f"Stop gate error: {type(e).__name__}: {e}")
        print(f"conclaude stop gate error: {type(e).__name__}: {e}", file=sys.stderr)
        code = EXIT_ERROR
    sys.exit(code)


if __name__ == "__main__":
    main()
