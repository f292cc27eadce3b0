from __future__ import annotations

from datetime import timedelta
from enum import Enum
from typing import Optional, Dict, TYPE_CHECKING

from ravendb_subscriptions import constants
from ravendb_subscriptions.tools.utils import Utils

if TYPE_CHECKING:
    from ravendb_subscriptions.http.request_executor import RequestExecutor


class SubscriptionOpeningStrategy(Enum):
    OPEN_IF_FREE = "OpenIfFree"
    TAKE_OVER = "TakeOver"
    WAIT_FOR_FREE = "WaitForFree"
    CONCURRENT = "Concurrent"

    def __str__(self):
        return self.value


class SubscriptionCreationOptions:
    def __init__(
        self,
        name: Optional[str] = None,
        query: Optional[str] = None,
        change_vector: Optional[str] = None,
        mentor_node: Optional[str] = None,
        disabled: Optional[bool] = None,
    ):
        self.name = name
        self.query = query
        self.change_vector = change_vector
        self.mentor_node = mentor_node
        self.disabled = disabled

    def to_json(self) -> Dict:
        return {
            "Name": self.name,
            "Query": self.query,
            "ChangeVector": self.change_vector,
            "MentorNode": self.mentor_node,
            "Disabled": self.disabled or False,
        }


class SubscriptionUpdateOptions(SubscriptionCreationOptions):
    def __init__(
        self,
        name: Optional[str] = None,
        query: Optional[str] = None,
        change_vector: Optional[str] = None,
        mentor_node: Optional[str] = None,
        disabled: Optional[bool] = None,
        key: Optional[int] = None,
        create_new: Optional[bool] = None,
    ):
        super(SubscriptionUpdateOptions, self).__init__(name, query, change_vector, mentor_node, disabled)
        self.key = key
        self.create_new = create_new

    def to_json(self) -> Dict:
        json_dict = super().to_json()
        json_dict.update({"Id": self.key, "CreateNew": self.create_new or False})
        return json_dict


class SubscriptionWorkerOptions:
    """
    Client side settings of a single subscription worker.

    Only the connection related settings travel to the server (see to_json). The timeouts that guard
    the client side waits (connection_timeout, heartbeat_interval, heartbeat_grace) and the
    request_executor override stay local.
    """

    def __init__(
        self,
        subscription_name: str,
        strategy: SubscriptionOpeningStrategy = SubscriptionOpeningStrategy.OPEN_IF_FREE,
        max_docs_per_batch: int = constants.Subscriptions.DEFAULT_MAX_DOCS_PER_BATCH,
        time_to_wait_before_connection_retry: timedelta = timedelta(
            seconds=constants.Subscriptions.DEFAULT_TIME_TO_WAIT_BEFORE_CONNECTION_RETRY_SECONDS
        ),
        max_erroneous_period: timedelta = timedelta(seconds=constants.Subscriptions.DEFAULT_MAX_ERRONEOUS_PERIOD_SECONDS),
        receive_buffer_size: int = constants.Subscriptions.DEFAULT_BUFFER_SIZE,
        send_buffer_size: int = constants.Subscriptions.DEFAULT_BUFFER_SIZE,
        ignore_subscriber_errors: Optional[bool] = None,
        close_when_no_docs_left: Optional[bool] = None,
        max_batch_size_in_bytes: Optional[int] = None,
        connection_timeout: timedelta = timedelta(seconds=constants.Subscriptions.DEFAULT_CONNECTION_TIMEOUT_SECONDS),
        heartbeat_interval: timedelta = timedelta(seconds=constants.Subscriptions.DEFAULT_HEARTBEAT_INTERVAL_SECONDS),
        heartbeat_grace: timedelta = timedelta(seconds=constants.Subscriptions.DEFAULT_HEARTBEAT_GRACE_SECONDS),
        request_executor: Optional[RequestExecutor] = None,
    ):
        if not subscription_name or subscription_name.isspace():
            raise ValueError("Subscription name cannot be None or empty")
        if max_docs_per_batch is not None and max_docs_per_batch <= 0:
            raise ValueError("max_docs_per_batch must be positive")
        if max_batch_size_in_bytes is not None and max_batch_size_in_bytes <= 0:
            raise ValueError("max_batch_size_in_bytes must be positive")

        self.subscription_name = subscription_name
        self.strategy = strategy
        self.max_docs_per_batch = max_docs_per_batch
        self.time_to_wait_before_connection_retry = time_to_wait_before_connection_retry
        self.max_erroneous_period = max_erroneous_period
        self.receive_buffer_size = receive_buffer_size
        self.send_buffer_size = send_buffer_size
        self.ignore_subscriber_errors = ignore_subscriber_errors
        self.close_when_no_docs_left = close_when_no_docs_left
        self.max_batch_size_in_bytes = max_batch_size_in_bytes
        self.connection_timeout = connection_timeout
        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_grace = heartbeat_grace
        self.request_executor = request_executor

    @property
    def heartbeat_timeout(self) -> timedelta:
        return self.heartbeat_interval + self.heartbeat_grace

    def to_json(self) -> Dict:
        json_dict = {
            "SubscriptionName": self.subscription_name,
            "Strategy": self.strategy.value,
            "MaxDocsPerBatch": self.max_docs_per_batch,
            "TimeToWaitBeforeConnectionRetry": Utils.timedelta_to_str(self.time_to_wait_before_connection_retry),
            "MaxErroneousPeriod": Utils.timedelta_to_str(self.max_erroneous_period),
            "ReceiveBufferSize": self.receive_buffer_size,
            "SendBufferSize": self.send_buffer_size,
            "IgnoreSubscriberErrors": self.ignore_subscriber_errors or False,
            "CloseWhenNoDocsLeft": self.close_when_no_docs_left or False,
        }
        if self.max_batch_size_in_bytes is not None:
            json_dict["MaxBatchSizeInBytes"] = self.max_batch_size_in_bytes
        return json_dict
