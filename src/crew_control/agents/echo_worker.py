"""Deterministic stand-in worker: echoes its input payload line by line."""

from __future__ import annotations

import argparse
import os
import sys
import time


def main(argv: list[str] | None = None) -> int:
    """Echo stdin to stdout, then exit with the requested code."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--stderr", default="")
    parser.add_argument("--interactive", action="store_true")
    args = parser.parse_args(argv)

    worker_id = os.getenv("CREW_CONTROL_WORKER_ID", "unknown")
    print(f"worker {worker_id} started", flush=True)
    for line in sys.stdin:
        text = line.rstrip("\n")
        if args.interactive and text == "quit":
            break
        print(f"echo: {text}", flush=True)
    if args.stderr:
        print(args.stderr, file=sys.stderr, flush=True)
    if args.sleep > 0:
        time.sleep(args.sleep)
    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
