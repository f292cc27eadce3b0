import logging
import unittest
from datetime import timedelta
from types import SimpleNamespace
from typing import Dict, List

from ravendb_subscriptions.documents.conventions import DocumentConventions
from ravendb_subscriptions.documents.subscriptions.batch import BatchFromServer, SubscriptionBatch
from ravendb_subscriptions.documents.subscriptions.options import (
    SubscriptionOpeningStrategy,
    SubscriptionUpdateOptions,
    SubscriptionWorkerOptions,
)
from ravendb_subscriptions.documents.subscriptions.revision import Revision
from ravendb_subscriptions.documents.subscriptions.worker import SubscriptionConnectionServerMessage
from ravendb_subscriptions.exceptions.exceptions import InvalidDocumentInBatchException
from ravendb_subscriptions.infrastructure.entities import User


def _document(key: str, change_vector: str, **fields) -> Dict:
    document = dict(fields)
    document["@metadata"] = {"@id": key, "@change-vector": change_vector, "@collection": "Users"}
    return document


def _batch_from(frames: List[Dict]) -> BatchFromServer:
    batch = BatchFromServer()
    batch.messages = [SubscriptionConnectionServerMessage.from_json(frame) for frame in frames]
    return batch


class TestSubscriptionBatch(unittest.TestCase):
    def _batch(self, object_type=User, revisions=False) -> SubscriptionBatch:
        executor = SimpleNamespace(conventions=DocumentConventions())
        return SubscriptionBatch(object_type, revisions, executor, None, "db", logging.getLogger("test"))

    def test_initialize_returns_last_change_vector(self):
        batch = self._batch()

        last = batch.initialize(
            _batch_from(
                [
                    {"Type": "Data", "Data": _document("users/1", "A:1-x", name="first")},
                    {"Type": "Data", "Data": _document("users/2", "A:2-x", name="second")},
                ]
            )
        )

        self.assertEqual("A:2-x", last)
        self.assertEqual("A:2-x", batch.last_change_vector)
        self.assertEqual(2, batch.number_of_items_in_batch)
        self.assertEqual(["users/1", "users/2"], [item.key for item in batch.items])
        self.assertGreater(batch.size_in_bytes, 0)

    def test_items_convert_lazily_to_the_requested_type(self):
        batch = self._batch()
        batch.initialize(_batch_from([{"Type": "Data", "Data": _document("users/1", "A:1-x", name="first", age=3)}]))

        item = batch.items[0]
        self.assertEqual("Users", item.collection)
        self.assertFalse(item.is_revision)
        self.assertIsInstance(item.result, User)
        self.assertEqual("first", item.result.name)
        self.assertEqual(3, item.result.age)
        self.assertIs(item.result, item.result)

    def test_dict_batch_returns_raw_documents(self):
        batch = self._batch(dict)
        document = _document("users/1", "A:1-x", name="first")
        batch.initialize(_batch_from([{"Type": "Data", "Data": document}]))

        self.assertEqual(document, batch.items[0].result)

    def test_empty_batch_has_no_change_vector(self):
        batch = self._batch()
        batch.initialize(_batch_from([{"Type": "Data", "Data": _document("users/1", "A:1-x")}]))

        self.assertIsNone(batch.initialize(BatchFromServer()))
        self.assertIsNone(batch.last_change_vector)
        self.assertEqual([], batch.items)
        self.assertEqual(0, batch.size_in_bytes)

    def test_documents_must_carry_identity(self):
        for data in (
            {"name": "no metadata"},
            {"@metadata": {"@change-vector": "A:1-x"}},
            {"@metadata": {"@id": "users/1"}},
        ):
            with self.subTest(data=data):
                with self.assertRaises(RuntimeError):
                    self._batch().initialize(_batch_from([{"Type": "Data", "Data": data}]))

        batch = BatchFromServer()
        batch.messages = [SubscriptionConnectionServerMessage(SubscriptionConnectionServerMessage.MessageType.DATA)]
        with self.assertRaises(RuntimeError):
            self._batch().initialize(batch)

    def test_invalid_document_raises_on_access(self):
        batch = self._batch()
        batch.initialize(
            _batch_from(
                [
                    {
                        "Type": "Data",
                        "Data": _document("users/1", "A:1-x"),
                        "Exception": "Projection failed",
                    },
                    {"Type": "Data", "Data": _document("users/2", "A:2-x", name="fine")},
                ]
            )
        )

        broken, fine = batch.items
        self.assertTrue(broken.has_error)
        with self.assertRaises(InvalidDocumentInBatchException) as context:
            _ = broken.result
        self.assertEqual("users/1", context.exception.key)
        self.assertEqual("A:1-x", context.exception.change_vector)
        self.assertEqual("fine", fine.result.name)

    def test_revision_items_hold_both_sides(self):
        batch = self._batch(revisions=True)
        batch.initialize(
            _batch_from(
                [
                    {
                        "Type": "Data",
                        "Data": {
                            "Previous": {"name": "before"},
                            "Current": {"name": "after"},
                            "@metadata": {"@id": "users/1", "@change-vector": "A:3-x"},
                        },
                    },
                    {
                        "Type": "Data",
                        "Data": {
                            "Current": {"name": "created"},
                            "@metadata": {"@id": "users/2", "@change-vector": "A:4-x"},
                        },
                    },
                ]
            )
        )

        updated, created = [item.result for item in batch.items]
        self.assertIsInstance(updated, Revision)
        self.assertEqual("before", updated.previous.name)
        self.assertEqual("after", updated.current.name)
        self.assertFalse(updated.is_creation)
        self.assertTrue(created.is_creation)
        self.assertIsNone(created.previous)

    def test_client_connection_id_is_read_from_either_place(self):
        top_level = SubscriptionConnectionServerMessage.from_json(
            {"Type": "ConnectionStatus", "Status": "Accepted", "ClientConnectionId": "abc"}
        )
        nested = SubscriptionConnectionServerMessage.from_json(
            {"Type": "ConnectionStatus", "Status": "Accepted", "Data": {"ClientConnectionId": "def"}}
        )

        self.assertEqual("abc", top_level.client_connection_id)
        self.assertEqual("def", nested.client_connection_id)
        self.assertEqual(SubscriptionConnectionServerMessage.ConnectionStatus.ACCEPTED, nested.status)


class TestSubscriptionOptions(unittest.TestCase):
    def test_worker_options_json_keeps_local_timeouts_out(self):
        options = SubscriptionWorkerOptions(
            "users",
            strategy=SubscriptionOpeningStrategy.TAKE_OVER,
            max_docs_per_batch=10,
            time_to_wait_before_connection_retry=timedelta(seconds=2),
            close_when_no_docs_left=True,
            connection_timeout=timedelta(seconds=3),
        )

        json_dict = options.to_json()

        self.assertEqual("users", json_dict["SubscriptionName"])
        self.assertEqual("TakeOver", json_dict["Strategy"])
        self.assertEqual(10, json_dict["MaxDocsPerBatch"])
        self.assertEqual("00:00:02", json_dict["TimeToWaitBeforeConnectionRetry"])
        self.assertTrue(json_dict["CloseWhenNoDocsLeft"])
        self.assertFalse(json_dict["IgnoreSubscriberErrors"])
        self.assertNotIn("MaxBatchSizeInBytes", json_dict)
        for local in ("ConnectionTimeout", "HeartbeatInterval", "HeartbeatGrace", "RequestExecutor"):
            self.assertNotIn(local, json_dict)

    def test_heartbeat_timeout_adds_grace(self):
        options = SubscriptionWorkerOptions(
            "users", heartbeat_interval=timedelta(seconds=1), heartbeat_grace=timedelta(milliseconds=500)
        )

        self.assertEqual(timedelta(seconds=1.5), options.heartbeat_timeout)

    def test_max_batch_size_is_sent_when_set(self):
        json_dict = SubscriptionWorkerOptions("users", max_batch_size_in_bytes=1024).to_json()

        self.assertEqual(1024, json_dict["MaxBatchSizeInBytes"])

        with self.assertRaises(ValueError):
            SubscriptionWorkerOptions("users", max_batch_size_in_bytes=0)

    def test_update_options_json(self):
        json_dict = SubscriptionUpdateOptions("users", "from Users", key=7).to_json()

        self.assertEqual(7, json_dict["Id"])
        self.assertFalse(json_dict["CreateNew"])
        self.assertEqual("from Users", json_dict["Query"])
        self.assertFalse(json_dict["Disabled"])
