"""Admin tasks: pool statistics, token issuing and metrics dump."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from core.errors import GachaError  # noqa: E402
from gacha_service import build_service  # noqa: E402
from logging_utils import init_logging  # noqa: E402
from metrics import render_metrics  # noqa: E402
from token_codes import tokens_csv  # noqa: E402

log = logging.getLogger("gacha-admin")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Gacha reward admin tool")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("stats", help="print pool totals")

    issue = sub.add_parser("issue-tokens", help="generate redeemable token codes")
    issue.add_argument("--prefix", default="")
    issue.add_argument("--count", type=int, default=5)
    issue.add_argument("--value", type=int, default=100)
    issue.add_argument("--output", help="write CSV here instead of stdout")

    sub.add_parser("metrics", help="print Prometheus metrics")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    init_logging("gacha-admin")

    try:
        service = build_service()
        if args.command == "stats":
            stats = service.pool_stats()
            print(f"total={stats.total} consumed={stats.consumed} available={stats.available}")
        elif args.command == "issue-tokens":
            tokens = service.issue_tokens(args.prefix, args.count, args.value)
            payload = tokens_csv(tokens)
            if args.output:
                Path(args.output).write_text(payload, encoding="utf-8")
                print(f"wrote {len(tokens)} tokens to {args.output}")
            else:
                sys.stdout.write(payload)
        elif args.command == "metrics":
            service.pool_stats()
            sys.stdout.write(render_metrics().decode("utf-8"))
    except GachaError as exc:
        log.error("gacha-admin.failed | code=%s err=%s", exc.code, exc)
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
