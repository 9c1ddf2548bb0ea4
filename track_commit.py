#!/usr/bin/env python3
"""
TDD Cycle Metrics post-commit hook.

Link this file as .git/hooks/post-commit. It takes no arguments, inspects
the commit that was just made, appends one record to
~/.claude/logs/tdd-cycle.jsonl and, when LANGFUSE_HOST,
LANGFUSE_PUBLIC_KEY and LANGFUSE_SECRET_KEY are set, forwards it to
Langfuse in the background.

It always exits with status 0.

Usage:
    ln -sf ../../track_commit.py .git/hooks/post-commit
    python track_commit.py            # process HEAD by hand
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))


def main() -> int:
    try:
        from services.commit_tracker.main import run_hook
    except Exception as e:
        print(f"tdd-metrics: disabled ({e})", file=sys.stderr)
        return 0
    return run_hook()


if __name__ == "__main__":
    sys.exit(main())
