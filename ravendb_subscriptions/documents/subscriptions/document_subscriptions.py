from __future__ import annotations

import logging
import threading
from typing import Optional, Type, TypeVar, Dict, List, Union, TYPE_CHECKING

from ravendb_subscriptions.documents.commands.subscriptions import (
    CreateSubscriptionCommand,
    GetSubscriptionsCommand,
    DeleteSubscriptionCommand,
    GetSubscriptionStateCommand,
    DropSubscriptionConnectionCommand,
    UpdateSubscriptionCommand,
)
from ravendb_subscriptions.documents.subscriptions.options import (
    SubscriptionCreationOptions,
    SubscriptionWorkerOptions,
    SubscriptionUpdateOptions,
)
from ravendb_subscriptions.documents.subscriptions.revision import Revision
from ravendb_subscriptions.documents.subscriptions.state import SubscriptionState
from ravendb_subscriptions.documents.subscriptions.worker import SubscriptionWorker
from ravendb_subscriptions.tools.utils import Utils

_T = TypeVar("_T")

if TYPE_CHECKING:
    from ravendb_subscriptions.documents.store.definition import DocumentStore


class DocumentSubscriptions:
    def __init__(self, store: DocumentStore):
        self._store = store
        self._subscriptions: Dict[SubscriptionWorker, bool] = {}
        self._subscriptions_lock = threading.Lock()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def create_for_options(self, options: SubscriptionCreationOptions, database: Optional[str] = None) -> str:
        if options is None:
            raise ValueError("Cannot create a subscription if options is None")

        if options.query is None:
            raise ValueError("Cannot create a subscriptions if the script is None")

        request_executor = self._store.get_request_executor(self._store.get_effective_database(database))

        command = CreateSubscriptionCommand(options)
        request_executor.execute_command(command)

        return command.result.name

    def create_for_class(
        self,
        object_type: Type[_T],
        options: Optional[SubscriptionCreationOptions] = None,
        database: Optional[str] = None,
    ) -> str:
        options = options or SubscriptionCreationOptions()
        return self.create_for_options(self.ensure_criteria(options, object_type, False), database)

    def create_for_revisions(
        self,
        object_type: Type[_T],
        options: Optional[SubscriptionCreationOptions] = None,
        database: Optional[str] = None,
    ) -> str:
        options = options or SubscriptionCreationOptions()
        return self.create_for_options(self.ensure_criteria(options, object_type, True), database)

    def ensure_criteria(
        self, criteria: Optional[SubscriptionCreationOptions], object_type: Type[_T], revisions: bool
    ) -> SubscriptionCreationOptions:
        if criteria is None:
            criteria = SubscriptionCreationOptions()

        if criteria.query:
            return criteria

        collection_name = self._store.conventions.get_collection_name(object_type)
        if collection_name is None:
            raise ValueError(f"Cannot build a subscription query for {object_type}, it has no collection")

        query_builder = ["from '", Utils.escape_collection_name(collection_name), "'"]

        if revisions:
            query_builder.append(" (Revisions = true)")

        query_builder.append(" as doc")

        criteria.query = "".join(query_builder)
        return criteria

    def get_subscription_worker(
        self,
        options: Union[SubscriptionWorkerOptions, str],
        object_type: Optional[Type[_T]] = None,
        database: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ) -> SubscriptionWorker[_T]:
        return self._create_worker(options, object_type, False, database, logger)

    def get_subscription_worker_for_revisions(
        self,
        options: Union[SubscriptionWorkerOptions, str],
        object_type: Optional[Type[_T]] = None,
        database: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ) -> SubscriptionWorker[Revision[_T]]:
        return self._create_worker(options, object_type, True, database, logger)

    def _create_worker(
        self,
        options: Union[SubscriptionWorkerOptions, str],
        object_type: Optional[Type[_T]],
        revisions: bool,
        database: Optional[str],
        logger: Optional[logging.Logger],
    ) -> SubscriptionWorker:
        self._store.assert_initialized()
        if options is None:
            raise ValueError("Cannot open a subscription if options are None")

        if isinstance(options, str):
            options = SubscriptionWorkerOptions(options)

        subscription = SubscriptionWorker(object_type, options, revisions, self._store, database, logger)
        subscription._on_closed = self._forget
        with self._subscriptions_lock:
            self._subscriptions[subscription] = True

        return subscription

    def _forget(self, worker: SubscriptionWorker) -> None:
        with self._subscriptions_lock:
            self._subscriptions.pop(worker, None)

    def get_subscriptions(self, start: int, take: int, database: Optional[str] = None) -> List[SubscriptionState]:
        request_executor = self._store.get_request_executor(self._store.get_effective_database(database))

        command = GetSubscriptionsCommand(start, take)
        request_executor.execute_command(command)

        return command.result

    def delete(self, name: str, database: Optional[str] = None) -> None:
        request_executor = self._store.get_request_executor(self._store.get_effective_database(database))

        command = DeleteSubscriptionCommand(name)
        request_executor.execute_command(command)

    def get_subscription_state(self, subscription_name: str, database: Optional[str] = None) -> SubscriptionState:
        if not subscription_name or subscription_name.isspace():
            raise ValueError("Subscription name cannot be None")

        request_executor = self._store.get_request_executor(self._store.get_effective_database(database))

        command = GetSubscriptionStateCommand(subscription_name)
        request_executor.execute_command(command)
        return command.result

    def drop_connection(self, name: str, database: Optional[str] = None) -> None:
        request_executor = self._store.get_request_executor(self._store.get_effective_database(database))

        command = DropSubscriptionConnectionCommand(name)
        request_executor.execute_command(command)

    def update(self, options: SubscriptionUpdateOptions, database: Optional[str] = None) -> str:
        if options is None:
            raise ValueError("Cannot update a subscription if options is None")

        if not options.name and options.key is None:
            raise ValueError("Cannot update a subscription if both options.name and options.key are None")

        request_executor = self._store.get_request_executor(self._store.get_effective_database(database))
        command = UpdateSubscriptionCommand(options)
        request_executor.execute_command(command, None)

        return command.result.name

    def close(self) -> None:
        with self._subscriptions_lock:
            subscriptions = list(self._subscriptions)

        for subscription in subscriptions:
            subscription.close()
