"""Local stand-in agent used by integration tests and demos.

Prints the prompt back, optionally sleeping first. A prompt containing
``FAIL`` makes it exit with status 1.
"""

from __future__ import annotations

import argparse
import os
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    parser.add_argument("--sleep", type=float, default=0.0)
    args = parser.parse_args(argv)

    prompt = Path(args.prompt_file).read_text("utf-8")
    if args.sleep > 0:
        time.sleep(args.sleep)
    session_id = os.getenv("TICKETFLOW_SESSION_ID", "")
    print(f"[{session_id}] {prompt.strip()}")
    if "FAIL" in prompt:
        print("echo agent asked to fail", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
