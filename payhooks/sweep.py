"""Flag pending orders that never got a payment row as abandoned."""
import argparse
from datetime import timedelta

import structlog

from payhooks.dependencies import get_checkout
from payhooks.logging_config import setup_logging

logger = structlog.get_logger(__name__)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--older-than-minutes", type=int, default=30)
    parser.add_argument("--max", type=int, default=100)
    args = parser.parse_args(argv)

    setup_logging()
    swept = get_checkout().sweep_abandoned_orders(
        timedelta(minutes=args.older_than_minutes), limit=args.max
    )
    logger.info("abandoned_sweep_finished", swept=len(swept))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
