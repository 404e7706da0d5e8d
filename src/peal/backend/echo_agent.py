"""Local deterministic agent for CLI and executor integration tests.

Accepts the same argv layout as the real agent CLI, prints a short plan-like
echo of the prompt and exits 0. A prompt containing ``ECHO_AGENT_FAIL`` makes
it exit 1 so failure paths can be exercised end to end.
"""

from __future__ import annotations

import argparse
import sys

FAIL_MARKER = "ECHO_AGENT_FAIL"


def main(argv: list[str] | None = None) -> int:
    """Echo the trailing prompt argument."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--print", action="store_true", dest="print_mode")
    parser.add_argument("--plan", action="store_true")
    parser.add_argument("--workspace", default=None)
    parser.add_argument("--output-format", default="text")
    parser.add_argument("--sandbox", default=None)
    parser.add_argument("--model", default=None)
    parser.add_argument("prompt")
    args = parser.parse_args(argv)

    if FAIL_MARKER in args.prompt:
        sys.stderr.write("echo agent: failure requested\n")
        return 1

    mode = "plan" if args.plan else "execute"
    sys.stdout.write(f"[echo-agent {mode}]\n{args.prompt}\n")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
