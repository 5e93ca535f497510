# src/vmsync/export/batch.py
"""BatchExporter: accumulate change rows and flush them on a fixed cadence.

Two execution contexts take part:
1. The subscription thread calls submit() for every eligible change
2. The export thread owns the Batch, drains the hand-off queue and flushes

The queue is the only shared state. The Batch, its rows and its dirty
flag are touched only by the export thread, so they need no lock. Rows
submitted while a flush is uploading stay in the queue until the flush
returns and land in the next batch.

Delivery is at-least-once: a failed upload leaves the batch intact and it
is retried, together with anything that arrived since, on the next tick.

Thread Safety:
    submit(), flush(), close() and health_metrics are safe from any thread.
    _export_loop() and everything it calls run only on the export thread.
"""

from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any

import structlog

from vmsync.contracts.errors import BackpressureTimeout, ConnectivityError, ExporterClosedError, UploadError
from vmsync.contracts.protocols import IngestionClient
from vmsync.contracts.records import RowRecord
from vmsync.export.formatting import serialize_rows

logger = structlog.get_logger(__name__)

DEFAULT_FLUSH_INTERVAL = 60.0
DEFAULT_QUEUE_SIZE = 500

# Shutdown sentinel
_SHUTDOWN = object()


@dataclass
class _FlushRequest:
    """Control item asking the export thread to flush immediately."""

    done: threading.Event = field(default_factory=threading.Event)
    uploaded: bool = False


class Batch:
    """Rows accumulated since the last successful flush.

    Thread Safety:
        NOT thread-safe. Owned by the BatchExporter export thread.
    """

    def __init__(self) -> None:
        self._rows: list[RowRecord] = []
        self.dirty = False

    def append(self, row: RowRecord) -> None:
        self._rows.append(row)
        self.dirty = True

    def payload(self) -> bytes:
        """Serialize header plus all accumulated rows."""
        return serialize_rows(self._rows)

    def reset(self) -> None:
        """Drop all rows after a successful upload."""
        self._rows.clear()
        self.dirty = False

    @property
    def rows(self) -> tuple[RowRecord, ...]:
        return tuple(self._rows)

    def __len__(self) -> int:
        return len(self._rows)


class BatchExporter:
    """Periodically ship accumulated rows to the ingestion platform with append semantics.

    Lifecycle:
        1. start() launches the export thread
        2. submit(row) hands rows over through a bounded queue
        3. Every flush_interval seconds, if the batch is dirty, it is uploaded
        4. close() stops the thread after one final best-effort flush

    Backpressure:
        submit() blocks while the queue is full. It never drops a row: it
        either enqueues, raises BackpressureTimeout when an explicit timeout
        elapses, or raises ExporterClosedError once shutdown has begun.

    Failure handling:
        Upload failures keep the batch for the next tick. Each failure is
        logged as a warning; an error is logged once consecutive failures
        reach _ERROR_THRESHOLD and then every _LOG_INTERVAL failures after.

    Example:
        >>> exporter = BatchExporter(client, flush_interval=60.0)
        >>> exporter.start()
        >>> exporter.submit(row)
        >>> exporter.close()
    """

    _ERROR_THRESHOLD = 3
    _LOG_INTERVAL = 10

    def __init__(
        self,
        client: IngestionClient,
        *,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        """Initialize the exporter. The export thread is not started yet.

        Args:
            client: Ingestion client used for uploads
            flush_interval: Seconds between flush checks
            queue_size: Capacity of the hand-off queue

        Raises:
            ValueError: If flush_interval <= 0 or queue_size < 1
        """
        if flush_interval <= 0:
            raise ValueError(f"flush_interval must be > 0, got {flush_interval}")
        if queue_size < 1:
            raise ValueError(f"queue_size must be >= 1, got {queue_size}")

        self._client = client
        self._flush_interval = flush_interval
        self._batch = Batch()

        # Health metrics, written only by the export thread
        self._rows_received = 0
        self._rows_exported = 0
        self._flushes = 0
        self._failed_flushes = 0
        self._consecutive_failures = 0

        # Thread coordination
        self._queue: queue.Queue[Any] = queue.Queue(maxsize=queue_size)
        self._shutdown_event = threading.Event()
        self._submit_lock = threading.Lock()
        self._close_lock = threading.Lock()
        self._ready = threading.Event()
        self._closed = False
        self._thread: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Caller side
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the export thread.

        Raises:
            RuntimeError: If already started
        """
        if self._thread is not None:
            raise RuntimeError("BatchExporter already started")
        self._thread = threading.Thread(
            target=self._export_loop,
            name="batch-export",
            daemon=False,
        )
        self._thread.start()
        self._ready.wait(timeout=5.0)
        logger.info(
            "Batch exporter started",
            flush_interval=self._flush_interval,
            queue_size=self._queue.maxsize,
        )

    def submit(self, row: RowRecord, timeout: float | None = None) -> None:
        """Hand a row to the export thread.

        Blocks while the queue is full.

        Args:
            row: Row to export in a later flush
            timeout: Give up after this many seconds. None waits for as
                long as the exporter is running.

        Raises:
            ExporterClosedError: If the exporter is not running or shutting down
            BackpressureTimeout: If timeout elapsed with the queue still full
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._submit_lock:
            while True:
                self._check_accepting()
                wait = 0.5 if deadline is None else min(0.5, deadline - time.monotonic())
                if wait <= 0:
                    raise BackpressureTimeout(f"Hand-off queue full for {timeout}s, row for {row.name} not accepted")
                try:
                    self._queue.put(row, timeout=wait)
                    return
                except queue.Full:
                    continue

    def flush(self, timeout: float | None = 30.0) -> bool:
        """Flush immediately and wait for the outcome.

        Rows submitted before this call are included.

        Returns:
            True if an upload succeeded, False if the batch was clean or the
            upload failed (rows are then retained)

        Raises:
            ExporterClosedError: If the exporter is not running
            TimeoutError: If the export thread did not answer in time
        """
        request = _FlushRequest()
        with self._submit_lock:
            self._check_accepting()
            try:
                self._queue.put(request, timeout=timeout)
            except queue.Full:
                raise TimeoutError("Hand-off queue stayed full, flush not requested") from None
        if not request.done.wait(timeout):
            raise TimeoutError("Export thread did not complete flush in time")
        return request.uploaded

    def close(self, timeout: float = 30.0) -> None:
        """Stop the export thread after a final best-effort flush.

        Rows already queued are drained into the final flush. Idempotent.
        """
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        self._shutdown_event.set()

        if self._thread is not None:
            # Wait for an in-flight submit to land before the sentinel goes in
            with self._submit_lock:
                sentinel_sent = False
                deadline = time.monotonic() + timeout
                while time.monotonic() < deadline and self._thread.is_alive():
                    try:
                        self._queue.put(_SHUTDOWN, timeout=0.1)
                        sentinel_sent = True
                        break
                    except queue.Full:
                        continue
            if not sentinel_sent:
                logger.error("Failed to send shutdown sentinel - export thread may be stuck")

            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.error("Export thread did not exit cleanly within timeout")

        logger.info("Batch exporter closed", **self.health_metrics)

    @property
    def health_metrics(self) -> dict[str, Any]:
        """Snapshot of exporter health.

        Reads from another thread are approximately consistent, which is
        enough for operational monitoring.
        """
        return {
            "rows_received": self._rows_received,
            "rows_exported": self._rows_exported,
            "flushes": self._flushes,
            "failed_flushes": self._failed_flushes,
            "consecutive_failures": self._consecutive_failures,
            "pending_rows": len(self._batch),
            "queue_depth": self._queue.qsize(),
            "queue_maxsize": self._queue.maxsize,
        }

    def _check_accepting(self) -> None:
        if self._shutdown_event.is_set():
            raise ExporterClosedError("BatchExporter is shutting down")
        if self._thread is None or not self._thread.is_alive():
            raise ExporterClosedError("BatchExporter export thread is not running")

    # ------------------------------------------------------------------
    # Export thread
    # ------------------------------------------------------------------

    def _export_loop(self) -> None:
        """Background thread: accumulate rows, flush on every tick."""
        self._ready.set()
        next_tick = time.monotonic() + self._flush_interval

        while True:
            control: Any = None
            tick_uploaded = False
            try:
                item = self._queue.get(timeout=max(0.0, next_tick - time.monotonic()))
            except queue.Empty:
                pass
            else:
                control = self._accept(item)
                if control is None:
                    control = self._drain()

            now = time.monotonic()
            if now >= next_tick:
                if control is None:
                    control = self._drain()
                tick_uploaded = self._flush_if_dirty("interval")
                next_tick += self._flush_interval
                if next_tick <= now:
                    next_tick = now + self._flush_interval

            if control is _SHUTDOWN:
                self._flush_if_dirty("shutdown")
                break
            if isinstance(control, _FlushRequest):
                # A tick in the same pass may already have shipped the requester's rows
                control.uploaded = self._flush_if_dirty("requested") or tick_uploaded
                control.done.set()

    def _accept(self, item: Any) -> Any:
        """Add a row to the batch. Returns the item if it is a control item."""
        if isinstance(item, RowRecord):
            self._batch.append(item)
            self._rows_received += 1
            return None
        return item

    def _drain(self) -> Any:
        """Move every queued row into the batch without blocking.

        Stops at the first control item and returns it.
        """
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return None
            control = self._accept(item)
            if control is not None:
                return control

    def _flush_if_dirty(self, reason: str) -> bool:
        """Upload the batch if it has rows. Returns True on a successful upload."""
        if not self._batch.dirty:
            return False

        rows = len(self._batch)
        payload = self._batch.payload()
        logger.info("Exporting batch", rows=rows, reason=reason)
        try:
            status = self._client.upload(payload, append=True)
        except (UploadError, ConnectivityError) as e:
            self._record_failure(rows, e)
            return False
        except Exception as e:
            # Never let the export thread die; rows stay for the next tick
            logger.error("Batch upload failed unexpectedly", rows=rows, error=str(e), error_type=type(e).__name__)
            self._record_failure(rows, e)
            return False

        self._batch.reset()
        self._flushes += 1
        self._rows_exported += rows
        self._consecutive_failures = 0
        logger.info("Batch exported", rows=rows, status=status)
        return True

    def _record_failure(self, rows: int, error: Exception) -> None:
        self._failed_flushes += 1
        self._consecutive_failures += 1
        logger.warning(
            "Batch upload failed, rows retained for next flush",
            rows=rows,
            error=str(error),
            consecutive_failures=self._consecutive_failures,
        )
        over = self._consecutive_failures - self._ERROR_THRESHOLD
        if over >= 0 and over % self._LOG_INTERVAL == 0:
            logger.error(
                "Batch uploads failing repeatedly",
                consecutive_failures=self._consecutive_failures,
                failed_flushes_total=self._failed_flushes,
                pending_rows=rows,
            )
