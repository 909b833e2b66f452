"""
Stream job processor running change stream watchers in background threads.

Builds the MongoDB client, checkpoint store and watcher from Settings.
"""

import logging
import threading
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

import pymongo

from config.settings import Settings, get_settings
from ..connectors.cdc.checkpoint_store import CheckpointStore
from ..connectors.cdc.mongo_changestream import CDCConfig, ChangeStreamWatcher
from ..utils.logging import configure_logging

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    """Job status enumeration."""
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StreamJobProcessor:
    """Processor for change stream jobs.

    Example:
        >>> processor = StreamJobProcessor()
        >>> execution_id = processor.start_stream_job("orders-sync", callback=process_batch)
        >>> processor.stop_stream_job(execution_id)
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
        client: Optional[pymongo.MongoClient] = None
    ):
        """Initialize stream job processor.

        Args:
            settings: Application settings, defaults to get_settings()
            checkpoint_store: Resume token store, defaults to one built from settings
            client: MongoDB client, defaults to one built from settings
        """
        self.settings = settings or get_settings()
        configure_logging(self.settings.logging)

        self.checkpoint_store = checkpoint_store or CheckpointStore(
            database_url=self.settings.checkpoint.database_url,
            pool_size=self.settings.checkpoint.pool_size,
            max_overflow=self.settings.checkpoint.max_overflow
        )
        self.client = client or pymongo.MongoClient(
            self.settings.mongo.uri,
            **self.settings.mongo.client_kwargs
        )
        self.running_jobs: Dict[str, Dict[str, Any]] = {}

        logger.info(
            "Initialized StreamJobProcessor",
            extra={"environment": self.settings.environment, "database": self.settings.mongo.database}
        )

    def get_target(self) -> Any:
        """Collection to watch, or the whole database if no collection is configured."""
        database = self.client[self.settings.mongo.database]
        if self.settings.mongo.collection:
            return database[self.settings.mongo.collection]
        return database

    def create_watcher(self, job_id: str, config: Optional[CDCConfig] = None) -> ChangeStreamWatcher:
        if config is None:
            config = CDCConfig.from_settings(self.settings.changestream)
        return ChangeStreamWatcher(
            target=self.get_target(),
            checkpoint_store=self.checkpoint_store,
            config=config,
            job_id=job_id
        )

    def start_stream_job(
        self,
        job_id: str,
        callback: Callable[[List[Mapping[str, Any]]], None],
        config: Optional[CDCConfig] = None
    ) -> str:
        """Start a stream job.

        Args:
            job_id: Job identifier, also the checkpoint key
            callback: Called with each batch of change documents
            config: Watcher configuration, defaults to one built from settings

        Returns:
            Execution ID
        """
        execution_id = f"stream_{job_id}_{int(time.time())}"
        watcher = self.create_watcher(job_id, config)

        thread = threading.Thread(
            target=self._process_stream_job,
            args=(watcher, callback, execution_id)
        )
        thread.daemon = True

        self.running_jobs[execution_id] = {
            "watcher": watcher,
            "thread": thread,
            "started_at": datetime.now(timezone.utc),
            "status": JobStatus.RUNNING,
            "error": None
        }
        thread.start()

        logger.info(
            f"Started stream job {execution_id}",
            extra={"job_id": job_id, "namespace": watcher.namespace}
        )
        return execution_id

    def stop_stream_job(self, execution_id: str) -> bool:
        """Request a stream job to stop after its current batch.

        Returns:
            True if the job exists
        """
        job_info = self.running_jobs.get(execution_id)
        if job_info is None:
            return False

        job_info["watcher"].stop()
        job_info["status"] = JobStatus.CANCELLED
        return True

    def get_stream_job_status(self, execution_id: str) -> Optional[Dict[str, Any]]:
        if execution_id not in self.running_jobs:
            return None

        job_info = self.running_jobs[execution_id]
        watcher = job_info["watcher"]
        return {
            "execution_id": execution_id,
            "status": job_info["status"].value,
            "started_at": job_info["started_at"],
            "is_running": job_info["thread"].is_alive(),
            "records_processed": watcher.records_processed,
            "error": job_info["error"]
        }

    def cleanup_completed_jobs(self) -> None:
        """Forget jobs whose thread has finished."""
        completed_jobs = [
            execution_id
            for execution_id, job_info in self.running_jobs.items()
            if not job_info["thread"].is_alive()
        ]
        for execution_id in completed_jobs:
            del self.running_jobs[execution_id]

    def close(self, timeout: float = 30.0) -> None:
        """Stop all jobs and release the client and checkpoint store."""
        for execution_id in list(self.running_jobs):
            self.stop_stream_job(execution_id)
        for job_info in self.running_jobs.values():
            job_info["thread"].join(timeout)
        self.client.close()
        self.checkpoint_store.close()

    def _process_stream_job(
        self,
        watcher: ChangeStreamWatcher,
        callback: Callable[[List[Mapping[str, Any]]], None],
        execution_id: str
    ) -> None:
        job_info = self.running_jobs[execution_id]
        try:
            watcher.start(callback=callback)
        except Exception as e:
            logger.exception(f"Fatal error in stream job {execution_id}: {e}")
            job_info["status"] = JobStatus.FAILED
            job_info["error"] = f"{type(e).__name__}: {e}"
            return

        if job_info["status"] is JobStatus.RUNNING:
            job_info["status"] = JobStatus.SUCCESS
