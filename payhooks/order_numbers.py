import secrets
import time
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

logger = structlog.get_logger(__name__)

MAX_ATTEMPTS = 5
ORDER_NUMBER_PREFIX = "Order"


class OrderNumberGenerator:
    """
    Produces ``Order-YYYYMMDD-NNNNNN`` codes.

    A random six-digit sequence is checked against the order store up to
    ``MAX_ATTEMPTS`` times. When every draw collides the generator falls back
    to the last six digits of the current millisecond timestamp, so it always
    terminates. Store errors during the existence check propagate unchanged.
    """

    def __init__(
        self,
        order_store,
        clock: Optional[Callable[[], datetime]] = None,
        millis: Optional[Callable[[], int]] = None,
        sequence: Optional[Callable[[], int]] = None,
    ):
        self.order_store = order_store
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._millis = millis or (lambda: int(time.time() * 1000))
        self._sequence = sequence or (lambda: 100000 + secrets.randbelow(900000))

    def generate(self) -> str:
        prefix = f"{ORDER_NUMBER_PREFIX}-{self._clock().strftime('%Y%m%d')}"

        for attempt in range(1, MAX_ATTEMPTS + 1):
            candidate = f"{prefix}-{self._sequence():06d}"
            if self.order_store.count_by_field("order_number", candidate) == 0:
                return candidate
            logger.info("order_number_collision", candidate=candidate, attempt=attempt)

        fallback = f"{prefix}-{str(self._millis())[-6:].zfill(6)}"
        logger.warning("order_number_fallback", order_number=fallback, attempts=MAX_ATTEMPTS)
        return fallback
