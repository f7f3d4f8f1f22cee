"""Sequential batch runner."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Iterable, TypeVar

from shotsmith.errors import ApiKeyError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class BatchReport(Generic[T]):
    """Outcome of a batch run.

    Attributes:
        total: Number of items in the batch.
        succeeded: Items whose worker returned.
        failed: (item, error) pairs for items whose worker raised.
    """
    total: int = 0
    succeeded: list[T] = field(default_factory=list)
    failed: list[tuple[T, Exception]] = field(default_factory=list)

    @property
    def done(self) -> int:
        return len(self.succeeded) + len(self.failed)

    def summary(self, describe: Callable[[T], str] = str) -> str:
        if not self.failed:
            return f"All {self.total} item(s) generated"
        lines = [f"{len(self.failed)} of {self.total} item(s) failed:"]
        for item, error in self.failed:
            lines.append(f"  - {describe(item)}: {error}")
        return "\n".join(lines)


class BatchCoordinator:
    """Runs a worker over items one at a time.

    Items are spaced by ``delay`` seconds to stay under provider rate
    limits. A missing API key stops the batch, since every later item would
    fail the same way; any other failure is recorded and the batch goes on.
    """

    def __init__(
        self,
        delay: float = 3.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.delay = delay
        self._sleep = sleep

    async def run(
        self,
        items: Iterable[T],
        worker: Callable[[T], Awaitable[Any]],
        on_progress: Callable[[int, int], None] | None = None,
        describe: Callable[[T], str] = str,
    ) -> BatchReport[T]:
        """Run ``worker`` on every item in order.

        Args:
            items: Items to process.
            worker: Coroutine function called once per item.
            on_progress: Called with (done, total) after each item.
            describe: Item label for log messages.

        Returns:
            The BatchReport.

        Raises:
            ApiKeyError: As soon as any item raises it.
        """
        items = list(items)
        report: BatchReport[T] = BatchReport(total=len(items))

        for index, item in enumerate(items):
            if index > 0 and self.delay > 0:
                await self._sleep(self.delay)
            try:
                await worker(item)
            except ApiKeyError:
                logger.error("Batch stopped at %s: API key missing", describe(item))
                raise
            except Exception as exc:
                logger.error("Batch item %s failed: %s", describe(item), exc)
                report.failed.append((item, exc))
            else:
                report.succeeded.append(item)

            if on_progress is not None:
                on_progress(report.done, report.total)

        logger.info(
            "Batch finished: %d succeeded, %d failed",
            len(report.succeeded), len(report.failed),
        )
        return report
