"""Bootstrap module for conclaude tests.

Discovers the repo root and adds hooks/scripts/ to sys.path.
Also sets default environment variables the hooks read.

Usage at top of any test file:
    import _bootstrap  # noqa: F401 (side-effect import)
    from _uneditable_ranges import parse_uneditable_ranges, ...
"""
import os
import sys
from pathlib import Path

def _find_repo_root():
    """Walk up from this file to find the repo root (contains hooks/scripts/)."""
    current = Path(__file__).resolve().parent
    while current != current.parent:
        if (current / "hooks" / "scripts" / "_protection_engine.py").exists():
            return current
        current = current.parent
    raise RuntimeError("Cannot find conclaude repo root from tests/_bootstrap.py")

_REPO_ROOT = _find_repo_root()
_SCRIPTS_DIR = str(_REPO_ROOT / "hooks" / "scripts")

if _SCRIPTS_DIR not in sys.path:
    sys.path.insert(0, _SCRIPTS_DIR)

# Keep test runs from writing into a real project's log or dry-running
os.environ.setdefault("CONCLAUDE_DISABLE_FILE_LOGGING", "true")
os.environ.pop("CONCLAUDE_DRY_RUN", None)
