import time
from datetime import timedelta
from threading import Event
from typing import List

from ravendb_subscriptions.documents.subscriptions.batch import SubscriptionBatch
from ravendb_subscriptions.documents.subscriptions.options import SubscriptionWorkerOptions, SubscriptionOpeningStrategy
from ravendb_subscriptions.documents.subscriptions.worker import SubscriptionWorkerState
from ravendb_subscriptions.exceptions.exceptions import (
    AllTopologyNodesDownException,
    SubscriptionClosedException,
    SubscriptionDoesNotExistException,
    SubscriptionErrorKind,
    SubscriptionException,
    SubscriptionInUseException,
    SubscriptionInvalidStateException,
)
from ravendb_subscriptions.infrastructure.entities import User
from ravendb_subscriptions.tests.test_base import TestBase


class TestSubscriptionConnection(TestBase):
    def setUp(self):
        super(TestSubscriptionConnection, self).setUp()
        self.retry_wait = timedelta(milliseconds=50)

    def _options(self, key: str, **kwargs) -> SubscriptionWorkerOptions:
        kwargs.setdefault("time_to_wait_before_connection_retry", self.retry_wait)
        return SubscriptionWorkerOptions(key, **kwargs)

    def _wait_for_state(self, worker, state: SubscriptionWorkerState) -> bool:
        return self.wait_for_value(lambda: worker.state == state)

    def test_second_worker_fails_when_subscription_is_in_use(self):
        key = self.store.subscriptions.create_for_class(User)
        self.store_users(1)
        event = Event()

        with self.store.subscriptions.get_subscription_worker(self._options(key)) as first:
            first.run(lambda batch: event.set())
            self.assertTrue(event.wait(self.reasonable_amount_of_time))

            with self.store.subscriptions.get_subscription_worker(self._options(key)) as second:
                task = second.run(lambda batch: None)
                with self.assertRaises(SubscriptionInUseException):
                    task.result(self.reasonable_amount_of_time)
                self.assertEqual(SubscriptionWorkerState.FAULTED, second.state)

            self.assertNotEqual(SubscriptionWorkerState.FAULTED, first.state)

    def test_wait_for_free_retries_until_the_subscription_is_released(self):
        key = self.store.subscriptions.create_for_class(User)
        self.store_users(1)
        first_received = Event()
        second_received = Event()
        retries: List[Exception] = []

        first = self.store.subscriptions.get_subscription_worker(self._options(key))
        try:
            first.run(lambda batch: first_received.set())
            self.assertTrue(first_received.wait(self.reasonable_amount_of_time))

            options = self._options(key, strategy=SubscriptionOpeningStrategy.WAIT_FOR_FREE)
            with self.store.subscriptions.get_subscription_worker(options, User) as second:
                second.add_on_subscription_connection_retry(retries.append)
                second.run(lambda batch: second_received.set())

                self.assertTrue(self.wait_for_value(lambda: len(retries) >= 1))
                self.assertIsInstance(retries[0], SubscriptionInUseException)
                self.assertNotEqual(SubscriptionWorkerState.FAULTED, second.state)

                first.close()
                self.store_users(1, start=1)

                self.assertTrue(second_received.wait(self.reasonable_amount_of_time))
        finally:
            first.close()

    def test_take_over_terminates_the_current_connection(self):
        key = self.store.subscriptions.create_for_class(User)
        self.store_users(1)
        first_received = Event()
        taken_over_keys = []
        second_received = Event()

        def __second(batch: SubscriptionBatch[User]):
            taken_over_keys.extend(item.key for item in batch.items)
            second_received.set()

        with self.store.subscriptions.get_subscription_worker(self._options(key), User) as first:
            first_task = first.run(lambda batch: first_received.set())
            self.assertTrue(first_received.wait(self.reasonable_amount_of_time))
            self.assertTrue(self.database.wait_for(lambda: self.database.subscriptions[key].position > 0, 5))

            options = self._options(key, strategy=SubscriptionOpeningStrategy.TAKE_OVER)
            with self.store.subscriptions.get_subscription_worker(options, User) as second:
                second.run(__second)

                with self.assertRaises(SubscriptionInUseException):
                    first_task.result(self.reasonable_amount_of_time)
                self.assertEqual(SubscriptionWorkerState.FAULTED, first.state)

                self.assertTrue(self._wait_for_state(second, SubscriptionWorkerState.CONNECTED))
                self.store_users(1, start=1)
                self.assertTrue(second_received.wait(self.reasonable_amount_of_time))

        self.assertEqual(["users/1"], taken_over_keys)

    def test_can_release_subscription_with_drop_connection(self):
        key = self.store.subscriptions.create_for_class(User)
        self.store_users(1)
        event = Event()

        with self.store.subscriptions.get_subscription_worker(self._options(key)) as worker:
            task = worker.run(lambda batch: event.set())
            self.assertTrue(event.wait(self.reasonable_amount_of_time))

            self.store.subscriptions.drop_connection(key)
            with self.assertRaises(SubscriptionClosedException):
                task.result(self.reasonable_amount_of_time)
            self.assertEqual(SubscriptionWorkerState.FAULTED, worker.state)

        event.clear()
        with self.store.subscriptions.get_subscription_worker(self._options(key)) as worker:
            worker.run(lambda batch: event.set())
            self.store_users(1, start=1)
            self.assertTrue(event.wait(self.reasonable_amount_of_time))

    def test_reconnects_when_heartbeats_stop(self):
        key = self.store.subscriptions.create_for_class(User)
        retries: List[Exception] = []
        received = Event()

        options = self._options(
            key, heartbeat_interval=timedelta(milliseconds=100), heartbeat_grace=timedelta(milliseconds=200)
        )
        with self.store.subscriptions.get_subscription_worker(options, User) as worker:
            worker.add_on_subscription_connection_retry(retries.append)
            worker.run(lambda batch: received.set())
            self.assertTrue(self._wait_for_state(worker, SubscriptionWorkerState.CONNECTED))

            # heartbeats alone keep the connection alive
            time.sleep(0.6)
            self.assertEqual([], retries)

            self.server.stalled = True
            self.assertTrue(self.wait_for_value(lambda: len(retries) >= 1))
            self.server.stalled = False

            self.store_users(1)
            self.assertTrue(received.wait(self.reasonable_amount_of_time))
            self.assertNotEqual(SubscriptionWorkerState.FAULTED, worker.state)

    def test_close_does_not_wait_for_a_withheld_confirm(self):
        key = self.store.subscriptions.create_for_class(User)
        subscription = self.database.subscriptions[key]
        subscription.withhold_confirm = True
        self.store_users(1)
        errors = []

        options = self._options(key, connection_timeout=timedelta(seconds=60))
        worker = self.store.subscriptions.get_subscription_worker(options, User)
        worker.add_error_listener(errors.append)
        task = worker.run(lambda batch: None)

        self.assertTrue(self.database.wait_for(lambda: len(subscription.acknowledgments) == 1, 5))
        self.assertTrue(self._wait_for_state(worker, SubscriptionWorkerState.AWAITING_ACK))

        started = time.monotonic()
        worker.close()
        self.assertLess(time.monotonic() - started, 5)

        self.assertTrue(task.done())
        self.assertIsNone(task.result())
        self.assertEqual(SubscriptionWorkerState.CLOSED, worker.state)
        self.assertEqual([], errors)

    def test_unconfirmed_acknowledgment_reconnects_after_connection_timeout(self):
        key = self.store.subscriptions.create_for_class(User)
        subscription = self.database.subscriptions[key]
        subscription.withhold_confirm = True
        self.store_users(1)
        retries: List[Exception] = []

        options = self._options(key, connection_timeout=timedelta(milliseconds=300))
        with self.store.subscriptions.get_subscription_worker(options, User) as worker:
            worker.add_on_subscription_connection_retry(retries.append)
            worker.run(lambda batch: None)

            self.assertTrue(self.wait_for_value(lambda: len(retries) >= 1))
            self.assertNotEqual(SubscriptionWorkerState.FAULTED, worker.state)

    def test_empty_batches_are_acknowledged_with_the_last_change_vector(self):
        key = self.store.subscriptions.create_for_class(User)
        subscription = self.database.subscriptions[key]
        subscription.empty_batches = 1
        self.store_users(1)
        sizes = []

        with self.store.subscriptions.get_subscription_worker(self._options(key), User) as worker:
            worker.run(lambda batch: sizes.append(batch.number_of_items_in_batch))
            self.assertTrue(self.database.wait_for(lambda: len(subscription.acknowledgments) == 2, 5))

            with self.database.lock:
                subscription.empty_batches = 1
                self.database.lock.notify_all()
            self.assertTrue(self.database.wait_for(lambda: len(subscription.acknowledgments) == 3, 5))

        self.assertEqual([0, 1, 0], sizes)
        last_change_vector = self.database.change_vector(1)
        self.assertEqual([None, last_change_vector, last_change_vector], subscription.acknowledgments)

    def test_close_when_no_docs_left(self):
        key = self.store.subscriptions.create_for_class(User)
        self.store_users(2)
        keys = []

        options = self._options(key, close_when_no_docs_left=True)
        with self.store.subscriptions.get_subscription_worker(options, User) as worker:
            task = worker.run(lambda batch: keys.extend(item.key for item in batch.items))
            with self.assertRaises(SubscriptionClosedException) as context:
                task.result(self.reasonable_amount_of_time)

        self.assertFalse(context.exception.can_reconnect)
        self.assertEqual(["users/0", "users/1"], keys)

    def test_gives_up_after_max_erroneous_period(self):
        key = self.store.subscriptions.create_for_class(User)
        self.server.refuse_handshake = True
        retries: List[Exception] = []
        errors: List[Exception] = []

        options = self._options(key, max_erroneous_period=timedelta(milliseconds=300))
        with self.store.subscriptions.get_subscription_worker(options, User) as worker:
            worker.add_on_subscription_connection_retry(retries.append)
            worker.add_error_listener(errors.append)
            task = worker.run(lambda batch: None)

            with self.assertRaises(SubscriptionInvalidStateException):
                task.result(self.reasonable_amount_of_time)

        self.assertGreaterEqual(len(retries), 1)
        self.assertEqual(1, len(errors))
        self.assertEqual(SubscriptionErrorKind.INVALID_STATE, errors[0].kind)

    def test_server_error_frame_is_fatal(self):
        key = self.store.subscriptions.create_for_class(User)

        with self.store.subscriptions.get_subscription_worker(self._options(key), User) as worker:
            task = worker.run(lambda batch: None)
            self.assertTrue(self._wait_for_state(worker, SubscriptionWorkerState.CONNECTED))

            self.database.inject_error(key, "System.InvalidOperationException", "Something broke on the server")
            with self.assertRaises(SubscriptionException) as context:
                task.result(self.reasonable_amount_of_time)

        self.assertEqual(SubscriptionErrorKind.SERVER_ERROR, context.exception.kind)
        self.assertIn("Something broke on the server", str(context.exception))

    def test_error_frame_instead_of_connection_status_is_fatal(self):
        key = self.store.subscriptions.create_for_class(User)
        self.database.refuse_connections_with_error(
            key, "Raven.Client.Exceptions.Documents.Subscriptions.SubscriptionInvalidStateException", "invalid query"
        )
        retries: List[Exception] = []
        errors: List[Exception] = []

        with self.store.subscriptions.get_subscription_worker(self._options(key), User) as worker:
            worker.add_on_subscription_connection_retry(retries.append)
            worker.add_error_listener(errors.append)
            task = worker.run(lambda batch: None)

            with self.assertRaises(SubscriptionInvalidStateException) as context:
                task.result(self.reasonable_amount_of_time)
            self.assertEqual(SubscriptionWorkerState.FAULTED, worker.state)

        self.assertIn("invalid query", str(context.exception))
        self.assertEqual([], retries)
        self.assertEqual(1, len(errors))

    def test_unknown_error_frame_at_connect_is_fatal(self):
        key = self.store.subscriptions.create_for_class(User)
        self.database.refuse_connections_with_error(
            key, "Raven.Server.Documents.Queries.Parser.QueryParserException", "Expected FROM clause"
        )

        with self.store.subscriptions.get_subscription_worker(self._options(key), User) as worker:
            task = worker.run(lambda batch: None)

            with self.assertRaises(SubscriptionException) as context:
                task.result(self.reasonable_amount_of_time)

        self.assertEqual(SubscriptionErrorKind.SERVER_ERROR, context.exception.kind)
        self.assertIn("Expected FROM clause", str(context.exception))

    def test_deleting_the_subscription_stops_the_worker(self):
        key = self.store.subscriptions.create_for_class(User)

        with self.store.subscriptions.get_subscription_worker(self._options(key), User) as worker:
            task = worker.run(lambda batch: None)
            self.assertTrue(self._wait_for_state(worker, SubscriptionWorkerState.CONNECTED))

            self.store.subscriptions.delete(key)
            with self.assertRaises(SubscriptionDoesNotExistException):
                task.result(self.reasonable_amount_of_time)

    def test_missing_subscription_is_fatal(self):
        with self.store.subscriptions.get_subscription_worker(self._options("no-such-subscription")) as worker:
            task = worker.run(lambda batch: None)
            with self.assertRaises(SubscriptionDoesNotExistException):
                task.result(self.reasonable_amount_of_time)
            self.assertEqual(SubscriptionWorkerState.FAULTED, worker.state)

    def test_unreachable_cluster_is_fatal(self):
        key = self.store.subscriptions.create_for_class(User)
        self.server.down = True

        with self.store.subscriptions.get_subscription_worker(self._options(key)) as worker:
            task = worker.run(lambda batch: None)
            with self.assertRaises(AllTopologyNodesDownException):
                task.result(self.reasonable_amount_of_time)

    def test_exposes_connection_details(self):
        key = self.store.subscriptions.create_for_class(User)

        with self.store.subscriptions.get_subscription_worker(self._options(key), User) as worker:
            self.assertEqual(key, worker.subscription_name)
            self.assertEqual(SubscriptionWorkerState.UNINITIALIZED, worker.state)
            worker.run(lambda batch: None)
            self.assertTrue(self._wait_for_state(worker, SubscriptionWorkerState.CONNECTED))

            connections = self.database.subscriptions[key].connections
            self.assertEqual(1, len(connections))
            self.assertEqual(connections[0].connection_id, worker.client_connection_id)
            self.assertEqual("A", worker.current_node_tag)

        self.assertEqual(SubscriptionWorkerState.CLOSED, worker.state)
