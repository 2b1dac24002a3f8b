from __future__ import annotations

import argparse
import asyncio
from datetime import datetime
import json

from statewatch.core.logging import configure_logging
from statewatch.services.detector import run_detector


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run one transition detector pass.")
    parser.add_argument("--tenant", default=None, help="Tenant id; omit to scan every tenant")
    parser.add_argument(
        "--since",
        default=None,
        type=datetime.fromisoformat,
        help="ISO 8601 lower bound overriding the stored watermark",
    )
    return parser


async def _main() -> None:
    configure_logging()
    args = _build_parser().parse_args()
    summary = await run_detector(tenant_id=args.tenant, since=args.since)
    print(json.dumps(summary.as_dict(), indent=2, sort_keys=True))


if __name__ == "__main__":
    asyncio.run(_main())
