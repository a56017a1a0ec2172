from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Sequence, TextIO

import httpx

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from src.folio.client import RetryCoordinator, TurnOutcome  # noqa: E402

PROMPT = "you> "


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Chat with the portfolio assistant")
    parser.add_argument("--url", default="http://localhost:8000", help="base URL of the server")
    parser.add_argument("--timeout", type=float, default=30.0, help="seconds without activity before a retry")
    parser.add_argument("--verbose", action="store_true")
    return parser.parse_args(argv)


def _render(outcome: TurnOutcome) -> str:
    if outcome.status == "completed" and outcome.message is not None:
        lines = [str(outcome.message.get("content") or "")]
        for part in outcome.message.get("parts") or []:
            invocation = part.get("toolInvocation") or {}
            if invocation.get("state") == "result":
                lines.append(f"[{invocation.get('toolName')}]\n{invocation.get('result')}")
        return "\n".join(line for line in lines if line)
    if outcome.status == "duplicate":
        return "(already sent, waiting for the answer)"
    return f"! {outcome.notice or outcome.status}"


async def run(base_url: str, timeout: float, stdin: TextIO, stdout: TextIO) -> int:
    async with httpx.AsyncClient(base_url=base_url, timeout=None) as client:
        coordinator = RetryCoordinator(client, response_timeout=timeout)
        status = await coordinator.preflight()
        if status is None:
            stdout.write("! server health check failed, continuing anyway\n")
        else:
            primary = status.get("providers", {}).get("primary") or {}
            stdout.write(f"connected, primary provider: {primary.get('name') or 'none'}\n")
        while True:
            stdout.write(PROMPT)
            stdout.flush()
            line = stdin.readline()
            if not line:
                return 0
            if not line.strip():
                continue
            outcome = await coordinator.submit(line)
            stdout.write(_render(outcome) + "\n")


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)
    try:
        return asyncio.run(run(args.url, args.timeout, sys.stdin, sys.stdout))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
