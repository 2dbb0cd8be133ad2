import math
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence, Tuple

from tokenfeed.utils.logger import get_logger, log_metric


@dataclass
class ChunkFailure:
    index: int
    chunk: List[Any]
    error: Exception


@dataclass
class BatchOutcome:
    results: List[Tuple[int, Any]] = field(default_factory=list)
    failures: List[ChunkFailure] = field(default_factory=list)
    cancelled: bool = False

    @property
    def succeeded(self) -> int:
        return len(self.results)

    @property
    def failed(self) -> int:
        return len(self.failures)


class BatchPlanner:
    def __init__(
        self,
        max_chunk_size: int = 50,
        inter_chunk_delay: float = 0.3,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        if max_chunk_size <= 0:
            raise ValueError("max_chunk_size must be > 0")
        self.logger = get_logger("BatchPlanner")
        self.max_chunk_size = max_chunk_size
        self.inter_chunk_delay = inter_chunk_delay
        self._sleep = sleep

    def _wait(self, cancel_event: Optional[threading.Event]) -> bool:
        """Sleep the inter-chunk delay; True if cancellation was requested."""
        if self._sleep is not None:
            self._sleep(self.inter_chunk_delay)
            return cancel_event is not None and cancel_event.is_set()
        if cancel_event is not None:
            return cancel_event.wait(self.inter_chunk_delay)
        time.sleep(self.inter_chunk_delay)
        return False

    def plan(self, ids: Sequence[Any], max_chunk_size: Optional[int] = None) -> List[List[Any]]:
        size = max_chunk_size if max_chunk_size is not None else self.max_chunk_size
        if size <= 0:
            raise ValueError("max_chunk_size must be > 0")

        ids = list(ids)
        chunks = [ids[i:i + size] for i in range(0, len(ids), size)]
        self.logger.debug(
            f"Planned {len(chunks)} chunks (size<={size}) for {len(ids)} ids, "
            f"expected {math.ceil(len(ids) / size)}"
        )
        return chunks

    def dispatch(
        self,
        chunks: Sequence[Sequence[Any]],
        handler: Callable[[int, List[Any]], Any],
        cancel_event: Optional[threading.Event] = None,
    ) -> BatchOutcome:
        """Run ``handler`` over each chunk strictly in order.

        A chunk that raises is recorded in ``failures`` and does not stop the
        remaining chunks. The inter-chunk delay is skipped after the last one.
        """
        outcome = BatchOutcome()
        total = len(chunks)

        for index, chunk in enumerate(chunks):
            if cancel_event is not None and cancel_event.is_set():
                self.logger.warning(f"Dispatch cancelled before chunk {index + 1}/{total}")
                outcome.cancelled = True
                break

            try:
                self.logger.debug(f"Processing chunk {index + 1}/{total} ({len(chunk)} items)")
                outcome.results.append((index, handler(index, list(chunk))))
            except Exception as e:
                self.logger.warning(f"Chunk {index + 1}/{total} failed: {str(e)}")
                outcome.failures.append(ChunkFailure(index=index, chunk=list(chunk), error=e))

            if index < total - 1 and self.inter_chunk_delay > 0 and self._wait(cancel_event):
                self.logger.warning(f"Dispatch cancelled after chunk {index + 1}/{total}")
                outcome.cancelled = True
                break

        log_metric(
            "batch_dispatch_complete",
            1,
            {"chunks": total, "succeeded": outcome.succeeded, "failed": outcome.failed},
        )
        return outcome
