"""Local demo agent for executor integration tests."""

from __future__ import annotations

import argparse
import sys
import time


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt, optionally report a PR and cost, then exit."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt", required=True)
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--pr-url", default="")
    parser.add_argument("--cost-usd", type=float, default=None)
    parser.add_argument("--sleep", type=float, default=0.0)
    args = parser.parse_args(argv)

    print(f"working on: {args.prompt.strip() or 'empty prompt'}", flush=True)
    if args.sleep > 0:
        time.sleep(args.sleep)
    if args.pr_url:
        print(f"opened pull request {args.pr_url}", flush=True)
    if args.cost_usd is not None:
        print(f"COST_USD={args.cost_usd:.4f}", flush=True)
    if args.exit_code != 0:
        print(f"giving up with exit code {args.exit_code}", flush=True)
    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
