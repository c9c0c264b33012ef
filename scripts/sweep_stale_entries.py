"""Move entries stuck in pending/processing to error (one sweep)."""

from __future__ import annotations

import argparse
import json

from backend.app.config import load_settings
from backend.app.domain.entrystore.gateway import build_entry_store_gateway
from backend.app.infra.logging import configure_logging
from backend.app.jobs.stale_entry_sweeper import sweep


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--stale-after",
        type=int,
        default=None,
        help="Age in seconds after which an open entry is swept (defaults to the profile).",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Maximum number of entries to sweep in this run.",
    )
    args = parser.parse_args()

    settings = load_settings()
    configure_logging(settings.logging)
    report = sweep(
        entry_gateway=build_entry_store_gateway(),
        stale_after_seconds=args.stale_after or settings.sweeper.stale_after_seconds,
        batch_size=args.batch_size or settings.sweeper.batch_size,
    )
    print(json.dumps(report.to_dict(), indent=2))


if __name__ == "__main__":
    main()
