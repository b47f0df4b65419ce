"""Local stand-in for the codex binary, used in dispatcher integration tests."""

from __future__ import annotations

import argparse
import os
import re
import sys
import time

_ATTEMPT_RE = re.compile(r"^Attempt:\s*(\d+)\s*$", re.MULTILINE)


def main(argv: list[str] | None = None) -> int:
    """Echo the task header, then exit according to the flags."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--fail-attempts", type=int, default=0)
    parser.add_argument("--exit-code", type=int, default=1)
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--stderr-message", default="")
    parser.add_argument("prompt", nargs="?", default="")
    args, _ = parser.parse_known_args(argv)

    matched = _ATTEMPT_RE.search(args.prompt)
    attempt = int(matched.group(1)) if matched else 1
    task_id = os.getenv("ORGX_TASK_ID", "unknown")

    print(f"echo worker task={task_id} attempt={attempt}", flush=True)
    if args.sleep > 0:
        time.sleep(args.sleep)
    if attempt <= args.fail_attempts:
        if args.stderr_message:
            print(args.stderr_message, file=sys.stderr, flush=True)
        return args.exit_code
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
