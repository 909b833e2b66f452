"""Unit tests for the stream job processor."""

import pytest
from unittest.mock import MagicMock, Mock, patch
from pymongo.collection import Collection
from pymongo.command_cursor import CommandCursor
from pymongo.database import Database
from pymongo.errors import OperationFailure

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../'))

from src.jobs.stream_jobs import JobStatus, StreamJobProcessor
from src.connectors.cdc.checkpoint_store import CheckpointStore
from config.settings import ChangeStreamSettings, MongoSettings, Settings


@pytest.fixture
def settings():
    return Settings(
        mongo=MongoSettings(
            uri="mongodb://db.example:27017",
            database="shop",
            collection="orders",
            connect_timeout=2,
            server_selection_timeout=3
        ),
        changestream=ChangeStreamSettings(batch_size=20, max_await_time_ms=50)
    )


@pytest.fixture
def collection():
    collection = Mock(spec=Collection)
    collection.name = "orders"
    collection.full_name = "shop.orders"
    return collection


@pytest.fixture
def client(collection):
    client = MagicMock()
    client.__getitem__.return_value.__getitem__.return_value = collection
    return client


@pytest.fixture
def checkpoint_store():
    store = Mock(spec=CheckpointStore)
    store.load_checkpoint.return_value = None
    return store


@pytest.fixture
def processor(settings, checkpoint_store, client):
    return StreamJobProcessor(settings=settings, checkpoint_store=checkpoint_store, client=client)


def _drained_cursor():
    cursor = Mock(spec=CommandCursor)
    cursor.cursor_id = 0
    cursor.try_next.return_value = None
    return cursor


class TestStreamJobProcessor:
    """Test StreamJobProcessor."""

    def test_client_built_from_mongo_settings(self, settings, checkpoint_store):
        """Test the MongoDB client uses the configured URI and timeouts."""
        with patch("src.jobs.stream_jobs.pymongo.MongoClient") as mongo_client:
            StreamJobProcessor(settings=settings, checkpoint_store=checkpoint_store)

        mongo_client.assert_called_once_with(
            "mongodb://db.example:27017",
            connectTimeoutMS=2000,
            serverSelectionTimeoutMS=3000
        )

    def test_watcher_targets_configured_collection(self, processor, client, collection):
        watcher = processor.create_watcher("orders-sync")

        client.__getitem__.assert_called_with("shop")
        client.__getitem__.return_value.__getitem__.assert_called_with("orders")
        assert watcher.target is collection
        assert watcher.namespace == "shop.orders"
        assert watcher.config.cursor_batch_size == 20
        assert watcher.opener.max_await_time_ms == 50

    def test_watches_database_without_collection(self, settings, checkpoint_store, client):
        """Test the whole database is watched when no collection is configured."""
        database = Mock(spec=Database)
        database.name = "shop"
        client.__getitem__.return_value = database
        settings.mongo.collection = None

        processor = StreamJobProcessor(settings=settings, checkpoint_store=checkpoint_store, client=client)

        assert processor.create_watcher("shop-sync").namespace == "shop"

    def test_job_runs_to_completion(self, processor, collection, checkpoint_store):
        """Test a job whose stream is exhausted ends with success."""
        collection.aggregate.return_value = _drained_cursor()

        execution_id = processor.start_stream_job("orders-sync", callback=Mock())
        processor.running_jobs[execution_id]["thread"].join(timeout=5)

        status = processor.get_stream_job_status(execution_id)
        assert status["status"] == JobStatus.SUCCESS.value
        assert status["is_running"] is False
        assert status["error"] is None
        checkpoint_store.load_checkpoint.assert_called_once_with("orders-sync", "shop.orders")

    def test_job_failure_recorded(self, processor, collection):
        """Test a fatal error marks the job failed."""
        collection.aggregate.side_effect = OperationFailure("interrupted", code=11601)

        execution_id = processor.start_stream_job("orders-sync", callback=Mock())
        processor.running_jobs[execution_id]["thread"].join(timeout=5)

        status = processor.get_stream_job_status(execution_id)
        assert status["status"] == JobStatus.FAILED.value
        assert status["error"].startswith("OperationFailure")

    def test_stop_unknown_job(self, processor):
        assert processor.stop_stream_job("missing") is False
        assert processor.get_stream_job_status("missing") is None

    def test_cleanup_and_close(self, processor, collection, client, checkpoint_store):
        """Test finished jobs are forgotten and resources are released on close."""
        collection.aggregate.return_value = _drained_cursor()
        execution_id = processor.start_stream_job("orders-sync", callback=Mock())
        processor.running_jobs[execution_id]["thread"].join(timeout=5)

        processor.cleanup_completed_jobs()
        assert execution_id not in processor.running_jobs

        processor.close()
        client.close.assert_called_once_with()
        checkpoint_store.close.assert_called_once_with()
