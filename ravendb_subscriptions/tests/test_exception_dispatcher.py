import unittest

from ravendb_subscriptions.exceptions.exception_dispatcher import ExceptionDispatcher
from ravendb_subscriptions.exceptions.exceptions import (
    SubscriptionErrorKind,
    SubscriptionException,
    SubscriptionInUseException,
    DatabaseDoesNotExistException,
)
from ravendb_subscriptions.exceptions.raven_exceptions import (
    ConcurrencyException,
    DocumentConflictException,
    RavenException,
)


class TestExceptionDispatcher(unittest.TestCase):
    def test_subscription_error_with_qualified_type_and_details(self):
        error = ExceptionDispatcher.get_subscription_error(
            "Raven.Client.Exceptions.Documents.Subscriptions.SubscriptionInUseException: already connected",
            "Subscription 'users' is in use",
        )

        self.assertIsInstance(error, SubscriptionInUseException)
        self.assertEqual(SubscriptionErrorKind.IN_USE, error.kind)
        self.assertIn("Subscription 'users' is in use", str(error))

    def test_unknown_subscription_error_is_a_server_error(self):
        error = ExceptionDispatcher.get_subscription_error("System.InvalidOperationException: boom", None)

        self.assertIs(SubscriptionException, type(error))
        self.assertEqual(SubscriptionErrorKind.SERVER_ERROR, error.kind)

    def test_missing_exception_text_is_a_server_error(self):
        error = ExceptionDispatcher.get_subscription_error(None, "no details")

        self.assertIs(SubscriptionException, type(error))
        self.assertEqual(SubscriptionErrorKind.SERVER_ERROR, error.kind)

    def test_conflict_status_is_a_concurrency_error(self):
        schema = ExceptionDispatcher.ExceptionSchema.from_json(
            {"Url": "/databases/db/bulk_docs", "Type": "ConcurrencyException", "Message": "cv mismatch"}
        )

        error = ExceptionDispatcher.get(schema, 409)

        self.assertIsInstance(error, ConcurrencyException)
        self.assertEqual("cv mismatch", str(error))

    def test_document_conflict_status(self):
        schema = ExceptionDispatcher.ExceptionSchema.from_json(
            {"Type": "DocumentConflictException", "Message": "Conflict detected on users/1"}
        )

        self.assertIsInstance(ExceptionDispatcher.get(schema, 409), DocumentConflictException)

    def test_known_type_is_mapped(self):
        schema = ExceptionDispatcher.ExceptionSchema.from_json(
            {
                "Url": "/databases/missing/docs",
                "Type": "Raven.Client.Exceptions.Database.DatabaseDoesNotExistException",
                "Error": "Database 'missing' was not found",
            }
        )

        error = ExceptionDispatcher.get(schema, 503)

        self.assertIsInstance(error, DatabaseDoesNotExistException)
        self.assertIn("503", str(error))

    def test_unknown_type_is_a_raven_exception(self):
        schema = ExceptionDispatcher.ExceptionSchema.from_json({"Type": "System.Exception", "Error": "oops"})

        error = ExceptionDispatcher.get(schema, 500)

        self.assertIs(RavenException, type(error))

    def test_timeout_type_is_wrapped(self):
        schema = ExceptionDispatcher.ExceptionSchema.from_json({"Type": "System.TimeoutException", "Error": "slow"})

        error = ExceptionDispatcher.get(schema, 500)

        self.assertIs(RavenException, type(error))
        self.assertIsInstance(error.cause, TimeoutError)
