from __future__ import annotations

import argparse
import asyncio
import json
import sys

from tokenvault.core.logging import configure_logging
from tokenvault.persistence.db import SessionLocal
from tokenvault.services.maintenance import MAINTENANCE_TASKS, run_maintenance


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run TokenVault maintenance tasks")
    parser.add_argument(
        "--task",
        action="append",
        choices=MAINTENANCE_TASKS,
        help="Task to run; repeat for several. Defaults to the full sweep.",
    )
    return parser


async def _run(args: argparse.Namespace) -> int:
    configure_logging()
    async with SessionLocal() as session:
        results = await run_maintenance(session, tasks=tuple(args.task) if args.task else None)
    print(json.dumps(results, indent=2, sort_keys=True))
    return 1 if any(isinstance(value, dict) and "error" in value for value in results.values()) else 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - report sweep failures with a non-zero exit
        print(f"vault_maintenance failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
