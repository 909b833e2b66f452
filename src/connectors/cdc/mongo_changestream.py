"""
MongoDB CDC watcher on top of the resumable change stream.

1. Load the last checkpointed resume token
2. Open the change stream after it, resuming transparently on resumable errors
3. Buffer changes in memory (configurable size and time thresholds)
4. Hand batches to a callback and checkpoint the last delivered resume token
5. Graceful shutdown (flush buffer, save checkpoint)

Fatal errors are not retried here; they reach the caller of ``start``.
"""

import logging
import signal
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from bson import Timestamp
from prometheus_client import Counter, Gauge, Histogram
from pymongo.collection import Collection
from pymongo.database import Database

from .change_stream import ResumableChangeStream, StreamState
from .cursor import ChangeStreamOpener, ResumeFactory
from .errors import CheckpointError
from ...utils.logging import StreamContext

logger = logging.getLogger(__name__)

cdc_records_processed = Counter(
    'changestream_cdc_records_total',
    'Total CDC records processed',
    ['namespace', 'operation']
)

cdc_lag_seconds = Gauge(
    'changestream_cdc_lag_seconds',
    'Lag between cluster time and processing',
    ['namespace']
)

cdc_batch_duration = Histogram(
    'changestream_cdc_batch_seconds',
    'Time to process batch',
    ['namespace']
)

cdc_errors_total = Counter(
    'changestream_cdc_errors_total',
    'Total CDC errors',
    ['namespace', 'error_type']
)


@dataclass
class CDCConfig:
    """Configuration for CDC watcher."""
    batch_size: int = 1000  # Max records before flush
    batch_interval: int = 10  # Max seconds before flush
    full_document: Optional[str] = "updateLookup"
    cursor_batch_size: int = 100
    max_await_time_ms: int = 1000
    pipeline_filter: Optional[List[Dict]] = None  # Stages appended after $changeStream

    def __post_init__(self):
        """Validate configuration values."""
        if self.batch_size <= 0:
            raise ValueError("batch_size must be positive")
        if self.batch_interval <= 0:
            raise ValueError("batch_interval must be positive")
        if self.cursor_batch_size <= 0:
            raise ValueError("cursor_batch_size must be positive")
        if self.max_await_time_ms < 0:
            raise ValueError("max_await_time_ms must be non-negative")

    @classmethod
    def from_settings(cls, settings=None, **overrides) -> "CDCConfig":
        """Build a config from ChangeStreamSettings."""
        if settings is None:
            from config.settings import get_settings
            settings = get_settings().changestream

        values = {
            "full_document": settings.full_document,
            "cursor_batch_size": settings.batch_size,
            "max_await_time_ms": settings.max_await_time_ms,
        }
        values.update(overrides)
        return cls(**values)


class ChangeStreamWatcher:
    """
    Watch a MongoDB change stream and process it in batches.

    Features:
    - Transparent resume on resumable errors (via ResumableChangeStream)
    - Restart from the checkpointed resume token
    - Micro-batching for efficiency (time or size threshold)
    - Graceful shutdown on SIGTERM/SIGINT

    Thread Safety: NOT thread-safe. Use one instance per namespace.

    Example:
        >>> watcher = ChangeStreamWatcher(
        ...     target=db['users'],
        ...     checkpoint_store=store,
        ...     config=CDCConfig(batch_size=1000),
        ...     job_id="users-sync"
        ... )
        >>> watcher.start(callback=process_batch)
    """

    def __init__(
        self,
        target: Any,
        checkpoint_store: Any,
        config: CDCConfig,
        job_id: str,
        opener: Optional[ResumeFactory] = None
    ):
        """
        Initialize changestream watcher.

        Args:
            target: PyMongo collection or database to watch
            checkpoint_store: Store for resume token persistence
            config: CDC configuration
            job_id: Job identifier for checkpoint storage
            opener: Resume factory, defaults to a ChangeStreamOpener on target

        Raises:
            TypeError: If target or checkpoint store have the wrong type
        """
        if not isinstance(target, (Collection, Database)):
            raise TypeError("target must be a PyMongo Collection or Database instance")

        if not hasattr(checkpoint_store, 'save_checkpoint'):
            raise TypeError("checkpoint_store must be a CheckpointStore instance")

        self.target = target
        self.checkpoint_store = checkpoint_store
        self.config = config
        self.job_id = job_id
        self.namespace = getattr(target, 'full_name', None) or target.name

        self.opener = opener or ChangeStreamOpener(
            target,
            pipeline=config.pipeline_filter,
            full_document=config.full_document,
            batch_size=config.cursor_batch_size,
            max_await_time_ms=config.max_await_time_ms
        )

        # State management
        self.stream: Optional[ResumableChangeStream] = None
        self.buffer: List[Mapping[str, Any]] = []
        self.last_flush: float = time.time()
        self.running: bool = False
        self.stop_requested: bool = False
        self.current_resume_token: Optional[Mapping[str, Any]] = None
        self.current_key: Optional[int] = None
        self.records_processed: int = 0

        self._original_sigterm = None
        self._original_sigint = None

        logger.info(
            f"Initialized ChangeStreamWatcher for {self.namespace}",
            extra={
                "job_id": self.job_id,
                "namespace": self.namespace,
                "batch_size": self.config.batch_size,
                "batch_interval": self.config.batch_interval
            }
        )

    @property
    def stream_name(self) -> str:
        return f"{self.job_id}:{self.namespace}"

    def start(self, callback: Callable[[List[Mapping[str, Any]]], None]) -> None:
        """
        Start watching the change stream (blocking call).

        Args:
            callback: Function called with each batch. Must be idempotent.
                     Signature: callback(batch: List[Mapping]) -> None

        Raises:
            PyMongoError: Fatal change stream errors, unchanged
            ResumeTokenError: If a change document carries no usable resume token
            Exception: Whatever the callback raises

        Note: Returns when stopped or when the server closes the stream.
        """
        self.running = True
        self.stop_requested = False
        self.stream = None
        self._setup_signal_handlers()

        resume_token = self._load_resume_token()
        self.current_resume_token = resume_token

        with StreamContext(self.stream_name):
            try:
                logger.info(
                    f"Opening changestream for {self.namespace}",
                    extra={
                        "job_id": self.job_id,
                        "namespace": self.namespace,
                        "has_resume_token": resume_token is not None
                    }
                )
                self.stream = ResumableChangeStream(
                    self.opener(resume_token),
                    self.opener,
                    name=self.stream_name,
                    initial_resume_token=resume_token
                )
                self._process_changestream(callback)
            except Exception as e:
                cdc_errors_total.labels(namespace=self.namespace, error_type=type(e).__name__).inc()
                self._close_stream()
                self._restore_signal_handlers()
                self.running = False
                raise

            self._shutdown(callback)

    def _load_resume_token(self) -> Optional[Mapping[str, Any]]:
        try:
            resume_token = self.checkpoint_store.load_checkpoint(self.job_id, self.namespace)
        except CheckpointError as e:
            logger.warning(
                f"Failed to load checkpoint, starting from latest: {e}",
                extra={"job_id": self.job_id, "namespace": self.namespace}
            )
            return None

        if resume_token:
            logger.info(
                f"Resuming from checkpoint for {self.namespace}",
                extra={"job_id": self.job_id, "namespace": self.namespace}
            )
        return resume_token

    def _process_changestream(self, callback: Callable[[List[Mapping[str, Any]]], None]) -> None:
        """Drive the stream until stopped or exhausted."""
        stream = self.stream
        stream.position_first()

        while not self.stop_requested:
            if stream.is_valid():
                change = stream.current()
                self.buffer.append(change)
                self.current_resume_token = stream.resume_token
                self.current_key = stream.key()

                if 'clusterTime' in change:
                    cdc_lag_seconds.labels(namespace=self.namespace).set(
                        self._calculate_lag(change['clusterTime'])
                    )
            elif stream.state is StreamState.EXHAUSTED:
                logger.info(
                    f"Changestream for {self.namespace} was closed by the server",
                    extra={"job_id": self.job_id, "namespace": self.namespace}
                )
                break

            if self._should_flush():
                self._flush_buffer(callback)

            stream.position_next()

    def _should_flush(self) -> bool:
        if not self.buffer:
            return False
        if len(self.buffer) >= self.config.batch_size:
            logger.debug(
                f"Buffer size threshold reached: {len(self.buffer)}",
                extra={"job_id": self.job_id, "namespace": self.namespace}
            )
            return True
        elapsed = time.time() - self.last_flush
        if elapsed >= self.config.batch_interval:
            logger.debug(
                f"Batch interval threshold reached: {elapsed}s",
                extra={"job_id": self.job_id, "namespace": self.namespace}
            )
            return True
        return False

    def _flush_buffer(self, callback: Callable[[List[Mapping[str, Any]]], None]) -> None:
        """
        Flush current buffer to callback.

        Steps:
        1. Call callback with buffered changes
        2. If success: save checkpoint, clear buffer
        3. If failure: raise, leaving buffer and checkpoint untouched
        """
        if not self.buffer:
            return

        batch_start_time = time.time()
        batch = list(self.buffer)
        batch_size = len(batch)

        try:
            callback(batch)
        except Exception as e:
            logger.error(
                f"Error processing batch: {e}",
                extra={
                    "job_id": self.job_id,
                    "namespace": self.namespace,
                    "batch_size": batch_size,
                    "error": str(e)
                }
            )
            raise

        operation_counts: Dict[str, int] = {}
        for change in batch:
            op_type = change.get('operationType', 'unknown')
            operation_counts[op_type] = operation_counts.get(op_type, 0) + 1
            cdc_records_processed.labels(namespace=self.namespace, operation=op_type).inc()

        self.records_processed += batch_size
        self._save_checkpoint()

        self.buffer.clear()
        self.last_flush = time.time()

        batch_duration = time.time() - batch_start_time
        cdc_batch_duration.labels(namespace=self.namespace).observe(batch_duration)

        logger.info(
            f"Flushed batch of {batch_size} records",
            extra={
                "job_id": self.job_id,
                "namespace": self.namespace,
                "batch_size": batch_size,
                "duration_seconds": batch_duration,
                "operations": operation_counts,
                "total_processed": self.records_processed
            }
        )

    def _save_checkpoint(self) -> None:
        if not self.current_resume_token:
            return
        try:
            self.checkpoint_store.save_checkpoint(
                job_id=self.job_id,
                namespace=self.namespace,
                resume_token=self.current_resume_token,
                last_key=self.current_key,
                records_processed=self.records_processed
            )
        except CheckpointError as e:
            # Next successful save covers this batch too
            logger.error(
                f"Failed to save checkpoint: {e}",
                extra={"job_id": self.job_id, "namespace": self.namespace}
            )

    def stop(self) -> None:
        """Request a graceful stop; the loop exits before its next fetch."""
        logger.info(
            f"Stopping changestream watcher for {self.namespace}",
            extra={"job_id": self.job_id, "namespace": self.namespace}
        )
        self.stop_requested = True
        self.running = False

    def _shutdown(self, callback: Callable[[List[Mapping[str, Any]]], None]) -> None:
        """Flush remaining changes, save the final checkpoint and close the stream."""
        if self.buffer:
            logger.info(
                f"Flushing {len(self.buffer)} remaining records",
                extra={"job_id": self.job_id, "namespace": self.namespace}
            )
            try:
                self._flush_buffer(callback)
            except Exception as e:
                logger.error(
                    f"Error flushing final buffer: {e}",
                    extra={"job_id": self.job_id, "namespace": self.namespace}
                )
        else:
            self._save_checkpoint()

        self._close_stream()
        self._restore_signal_handlers()
        self.running = False

        logger.info(
            f"Shutdown complete for {self.namespace}",
            extra={
                "job_id": self.job_id,
                "namespace": self.namespace,
                "total_processed": self.records_processed
            }
        )

    def _close_stream(self) -> None:
        if self.stream is not None:
            self.stream.close()

    def _calculate_lag(self, cluster_time: Timestamp) -> float:
        """Lag in seconds between a change's cluster time and now."""
        if not isinstance(cluster_time, Timestamp):
            return 0.0
        lag = (datetime.now(timezone.utc) - cluster_time.as_datetime()).total_seconds()
        return max(0.0, lag)

    def _setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown (main thread only)."""
        if threading.current_thread() is not threading.main_thread():
            return

        def signal_handler(signum, frame):
            logger.info(
                f"Received shutdown signal {signum}",
                extra={"job_id": self.job_id, "namespace": self.namespace}
            )
            self.stop()

        self._original_sigterm = signal.signal(signal.SIGTERM, signal_handler)
        self._original_sigint = signal.signal(signal.SIGINT, signal_handler)

    def _restore_signal_handlers(self) -> None:
        """Restore original signal handlers."""
        if self._original_sigterm is not None:
            signal.signal(signal.SIGTERM, self._original_sigterm)
            self._original_sigterm = None
        if self._original_sigint is not None:
            signal.signal(signal.SIGINT, self._original_sigint)
            self._original_sigint = None
