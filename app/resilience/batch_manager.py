"""Adaptive batch sizing for provider lookups."""

import random
from collections import deque
from dataclasses import dataclass
from typing import Any

from app.errors import BatchSizeError
from app.telemetry.logger import get_logger

ABSOLUTE_MAX_BATCH_SIZE = 5


@dataclass
class BatchRecord:
    size: int
    successes: int

    @property
    def success_rate(self) -> float:
        return self.successes / self.size if self.size else 0.0


class BatchManager:
    """Small state machine that decides how many lookups share one browser.

    State is the current size plus consecutive good and bad batch counts.
    A batch whose success rate is below the threshold shrinks the size by
    one (down to ``min_size``); ``growth_streak`` good batches in a row grow
    it by one (up to ``max_size``).
    """

    def __init__(
        self,
        min_size: int = 3,
        max_size: int = 5,
        success_rate_threshold: float = 0.5,
        growth_streak: int = 3,
        history_size: int = 10,
        inter_batch_delay: tuple[float, float] = (2.0, 5.0),
    ):
        if max_size > ABSOLUTE_MAX_BATCH_SIZE:
            raise BatchSizeError(
                f"max_size cannot exceed {ABSOLUTE_MAX_BATCH_SIZE} lookups per browser"
            )
        if min_size < 1 or min_size > max_size:
            raise BatchSizeError("min_size must be between 1 and max_size")

        self.min_size = min_size
        self.max_size = max_size
        self.success_rate_threshold = success_rate_threshold
        self.growth_streak = growth_streak
        self.delay_min, self.delay_max = inter_batch_delay
        self.delay_factor = 1.0

        self.current_size = max_size
        self.consecutive_successes = 0
        self.consecutive_failures = 0
        self.history: deque[BatchRecord] = deque(maxlen=history_size)
        self.logger = get_logger(__name__)

    def get_next_batch_size(self) -> int:
        return self.current_size

    def create_batches(self, items: list[Any], size: int | None = None) -> list[list[Any]]:
        """Split ``items`` into consecutive batches of the current size."""
        size = size or self.current_size
        return [items[i : i + size] for i in range(0, len(items), size)]

    def record_batch(self, size: int, successes: int) -> None:
        """Feed a finished batch into the controller."""
        record = BatchRecord(size=size, successes=successes)
        self.history.append(record)

        if record.success_rate < self.success_rate_threshold:
            self.consecutive_failures += 1
            self.consecutive_successes = 0
            if self.current_size > self.min_size:
                self.current_size -= 1
                self.logger.warning(
                    f"Batch success rate {record.success_rate:.2f} below threshold, "
                    f"batch size now {self.current_size}",
                    extra={"operation": "batch_shrink"},
                )
            return

        self.consecutive_successes += 1
        self.consecutive_failures = 0
        if self.consecutive_successes >= self.growth_streak and self.current_size < self.max_size:
            self.current_size += 1
            self.consecutive_successes = 0
            self.logger.info(
                f"Sustained success, batch size now {self.current_size}",
                extra={"operation": "batch_grow"},
            )

    def shrink_to_floor(self) -> None:
        self.current_size = self.min_size
        self.consecutive_successes = 0

    def increase_delay(self, factor: float = 1.5) -> None:
        self.delay_factor *= factor

    def get_inter_batch_delay(self) -> float:
        """Randomized pause between batches, in seconds."""
        return random.uniform(self.delay_min, self.delay_max) * self.delay_factor

    def success_rate(self) -> float:
        total = sum(record.size for record in self.history)
        if not total:
            return 1.0
        return sum(record.successes for record in self.history) / total

    def get_stats(self) -> dict[str, Any]:
        return {
            "current_size": self.current_size,
            "consecutive_successes": self.consecutive_successes,
            "consecutive_failures": self.consecutive_failures,
            "success_rate": self.success_rate(),
            "batches_recorded": len(self.history),
            "delay_factor": self.delay_factor,
        }

    def reset(self) -> None:
        self.current_size = self.max_size
        self.consecutive_successes = 0
        self.consecutive_failures = 0
        self.delay_factor = 1.0
        self.history.clear()
