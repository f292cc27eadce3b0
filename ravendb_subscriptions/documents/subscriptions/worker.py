from __future__ import annotations

import concurrent.futures
import logging
import os
import socket
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from typing import TypeVar, Generic, Type, Optional, Callable, List, Dict, Any, Tuple, TYPE_CHECKING

import ijson

from ravendb_subscriptions.documents.commands.subscriptions import GetTcpInfoForRemoteTaskCommand, TcpConnectionInfo
from ravendb_subscriptions.documents.subscriptions.batch import SubscriptionBatch, BatchFromServer, BatchHandlerOutcome
from ravendb_subscriptions.documents.subscriptions.options import SubscriptionWorkerOptions, SubscriptionOpeningStrategy
from ravendb_subscriptions.exceptions.exception_dispatcher import ExceptionDispatcher
from ravendb_subscriptions.exceptions.exceptions import (
    AllTopologyNodesDownException,
    AuthorizationException,
    DatabaseDoesNotExistException,
    SubscriberErrorException,
    SubscriptionChangeVectorUpdateConcurrencyException,
    SubscriptionClosedException,
    SubscriptionConnectionTransientException,
    SubscriptionDoesNotBelongToNodeException,
    SubscriptionDoesNotExistException,
    SubscriptionInUseException,
    SubscriptionInvalidStateException,
    SubscriptionProtocolMismatchException,
)
from ravendb_subscriptions.http.server_node import ServerNode
from ravendb_subscriptions.primitives.exceptions import OperationCancelledException
from ravendb_subscriptions.primitives.misc import CancellationTokenSource
from ravendb_subscriptions.serverwide.tcp import (
    TcpConnectionHeaderMessage,
    TcpConnectionHeaderResponse,
    TcpConnectionStatus,
    TcpNegotiateParameters,
    TcpNegotiation,
)
from ravendb_subscriptions.tools.parsers import TcpStream
from ravendb_subscriptions.util.tcp_utils import TcpUtils

if TYPE_CHECKING:
    from ravendb_subscriptions.documents.store.definition import DocumentStore
    from ravendb_subscriptions.http.request_executor import RequestExecutor

_T = TypeVar("_T")


class SubscriptionConnectionServerMessage:
    class MessageType(Enum):
        NONE = "None"
        CONNECTION_STATUS = "ConnectionStatus"
        END_OF_BATCH = "EndOfBatch"
        DATA = "Data"
        INCLUDES = "Includes"
        COUNTER_INCLUDES = "CounterIncludes"
        TIME_SERIES_INCLUDES = "TimeSeriesIncludes"
        CONFIRM = "Confirm"
        ERROR = "Error"

        def __str__(self):
            return self.value

    class ConnectionStatus(Enum):
        NONE = "None"
        ACCEPTED = "Accepted"
        IN_USE = "InUse"
        CLOSED = "Closed"
        NOT_FOUND = "NotFound"
        REDIRECT = "Redirect"
        FORBIDDEN_READ_ONLY = "ForbiddenReadOnly"
        FORBIDDEN = "Forbidden"
        INVALID = "Invalid"
        CONCURRENCY_RECONNECT = "ConcurrencyReconnect"

        def __str__(self):
            return self.value

    def __init__(
        self,
        type_of_message: Optional[MessageType] = None,
        status: Optional[ConnectionStatus] = None,
        data: Optional[Dict] = None,
        includes: Optional[Dict] = None,
        counter_includes: Optional[Dict] = None,
        included_counter_names: Optional[Dict[str, List[str]]] = None,
        time_series_includes: Optional[Dict] = None,
        exception: Optional[str] = None,
        message: Optional[str] = None,
        client_connection_id: Optional[str] = None,
    ):
        self.type_of_message = type_of_message
        self.status = status
        self.data = data
        self.includes = includes
        self.counter_includes = counter_includes
        self.included_counter_names = included_counter_names
        self.time_series_includes = time_series_includes
        self.exception = exception
        self.message = message
        self.client_connection_id = client_connection_id

    @classmethod
    def from_json(cls, json_dict: Dict) -> SubscriptionConnectionServerMessage:
        data = json_dict.get("Data")
        client_connection_id = json_dict.get("ClientConnectionId")
        if client_connection_id is None and isinstance(data, dict):
            client_connection_id = data.get("ClientConnectionId")

        return cls(
            SubscriptionConnectionServerMessage.MessageType(json_dict["Type"]),
            SubscriptionConnectionServerMessage.ConnectionStatus(json_dict["Status"])
            if "Status" in json_dict
            else None,
            data,
            json_dict.get("Includes"),
            json_dict.get("CounterIncludes"),
            json_dict.get("IncludedCounterNames"),
            json_dict.get("TimeSeriesIncludes"),
            json_dict.get("Exception"),
            json_dict.get("Message"),
            client_connection_id,
        )


class SubscriptionConnectionClientMessage:
    class MessageType(Enum):
        NONE = "None"
        ACKNOWLEDGE = "Acknowledge"

    def __init__(self, type_of_message: Optional[MessageType] = None, change_vector: Optional[str] = None):
        self.type_of_message = type_of_message
        self.change_vector = change_vector

    def to_json(self) -> Dict:
        return {"Type": self.type_of_message.value, "ChangeVector": self.change_vector}


class SubscriptionWorkerState(Enum):
    UNINITIALIZED = "Uninitialized"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    PROCESSING = "Processing"
    AWAITING_ACK = "AwaitingAck"
    RECONNECTING = "Reconnecting"
    CLOSED = "Closed"
    FAULTED = "Faulted"

    def __str__(self):
        return self.value

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionWorkerState.CLOSED, SubscriptionWorkerState.FAULTED)


class SubscriptionWorker(Generic[_T]):
    """
    Long lived connection to one subscription. Pulls batches from the server, runs the batch handlers and
    acknowledges each batch before the next one is requested. Transient failures reconnect with a wait of
    time_to_wait_before_connection_retry, fatal ones end the worker and are reported once to the error listeners.

    The read loop and the handlers run on the worker's own two threads, at most one batch is in flight.
    """

    def __init__(
        self,
        object_type: Optional[Type[_T]],
        options: SubscriptionWorkerOptions,
        with_revisions: bool,
        document_store: DocumentStore,
        db_name: Optional[str],
        logger: Optional[logging.Logger] = None,
    ):
        if options is None:
            raise ValueError("Options cannot be None")
        if not options.subscription_name or options.subscription_name.isspace():
            raise ValueError("SubscriptionConnectionOptions must specify the subscription name")

        self._object_type = object_type
        self._options = options
        self._revisions = with_revisions
        self._store = document_store
        self._db_name = self._store.get_effective_database(db_name)
        self._logger = logger or logging.getLogger("SubscriptionWorker")

        self._batch_handlers: List[Callable[[SubscriptionBatch[_T]], Any]] = []
        self._error_listeners: List[Callable[[Exception], None]] = []
        self._after_acknowledgment: List[Callable[[SubscriptionBatch[_T]], None]] = []
        self._on_subscription_connection_retry: List[Callable[[Exception], None]] = []
        self._on_unexpected_subscription_error: List[Callable[[Exception], None]] = []

        self._processing_cts = CancellationTokenSource()
        self._executor = ThreadPoolExecutor(
            max_workers=2, thread_name_prefix=f"subscription-{options.subscription_name}"
        )
        self._state = SubscriptionWorkerState.UNINITIALIZED
        self._state_lock = threading.Lock()
        self._error_emitted = False

        self._tcp_stream: Optional[TcpStream] = None
        self._disposed = False
        self._subscription_task: Optional[Future] = None
        self._supervisor_thread: Optional[threading.Thread] = None
        self._forced_topology_update_attempts = 0

        self._redirect_node: Optional[ServerNode] = None
        self._subscription_local_request_executor: Optional[RequestExecutor] = None
        self._on_closed: Optional[Callable[[SubscriptionWorker[_T]], None]] = None

        self._last_connection_failure: Optional[float] = None
        self._last_change_vector: Optional[str] = None
        self._client_connection_id: Optional[str] = None
        self._supported_features: Optional[TcpConnectionHeaderMessage.SupportedFeatures] = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # --- registration ---

    def add_batch_handler(self, handler: Callable[[SubscriptionBatch[_T]], Any]) -> None:
        if handler is None:
            raise ValueError("Batch handler cannot be None")
        self._batch_handlers.append(handler)

    def add_error_listener(self, listener: Callable[[Exception], None]) -> None:
        self._error_listeners.append(listener)

    def remove_error_listener(self, listener: Callable[[Exception], None]) -> None:
        self._error_listeners.remove(listener)

    def add_after_acknowledgment(self, handler: Callable[[SubscriptionBatch[_T]], None]) -> None:
        self._after_acknowledgment.append(handler)

    def remove_after_acknowledgment(self, handler: Callable[[SubscriptionBatch[_T]], None]) -> None:
        self._after_acknowledgment.remove(handler)

    def add_on_subscription_connection_retry(self, handler: Callable[[Exception], None]) -> None:
        self._on_subscription_connection_retry.append(handler)

    def remove_on_subscription_connection_retry(self, handler: Callable[[Exception], None]) -> None:
        self._on_subscription_connection_retry.remove(handler)

    def add_on_unexpected_subscription_error(self, handler: Callable[[Exception], None]) -> None:
        self._on_unexpected_subscription_error.append(handler)

    def remove_on_unexpected_subscription_error(self, handler: Callable[[Exception], None]) -> None:
        self._on_unexpected_subscription_error.remove(handler)

    def _invoke_listeners(self, listeners: List[Callable], argument: Any, what: str) -> None:
        for listener in list(listeners):
            try:
                listener(argument)
            except Exception as e:
                self._logger.info(
                    f"Subscription {self._options.subscription_name}. A {what} listener failed", exc_info=e
                )

    # --- properties ---

    @property
    def state(self) -> SubscriptionWorkerState:
        return self._state

    @property
    def current_node_tag(self) -> Optional[str]:
        if self._redirect_node is not None:
            return self._redirect_node.cluster_tag
        return None

    @property
    def subscription_name(self) -> Optional[str]:
        if self._options is not None:
            return self._options.subscription_name
        return None

    @property
    def client_connection_id(self) -> Optional[str]:
        return self._client_connection_id

    def _set_state(self, state: SubscriptionWorkerState) -> None:
        with self._state_lock:
            if self._state.is_terminal:
                return
            self._state = state

    # --- lifecycle ---

    def run(self, handler: Optional[Callable[[SubscriptionBatch[_T]], Any]] = None) -> Future:
        """
        Starts pulling batches. The returned future completes when the worker is closed and
        raises the fatal error that stopped the worker, if any.
        """
        if self._subscription_task is not None:
            raise RuntimeError("The subscription is already running")
        if self._disposed:
            raise RuntimeError("The subscription worker was closed")

        if handler is not None:
            self.add_batch_handler(handler)

        if not self._batch_handlers:
            raise ValueError("At least one batch handler is required to run the subscription")

        self._set_state(SubscriptionWorkerState.CONNECTING)
        self._subscription_task = self._executor.submit(self._run_subscription_async)
        return self._subscription_task

    def close(self, wait_for_subscription_task: bool = True) -> None:
        if self._disposed:
            return

        try:
            self._disposed = True
            self._processing_cts.cancel()

            self._close_tcp_stream()  # we disconnect immediately

            task = self._subscription_task
            on_own_thread = threading.current_thread() is self._supervisor_thread
            if task is not None and wait_for_subscription_task and not on_own_thread:
                concurrent.futures.wait([task])

            self._executor.shutdown(wait=False)

            if self._subscription_local_request_executor is not None:
                self._subscription_local_request_executor.close()
        except Exception as ex:
            self._logger.debug(f"Error during close of subscription {self._options.subscription_name}", exc_info=ex)
        finally:
            self._set_state(SubscriptionWorkerState.CLOSED)
            if self._on_closed is not None:
                self._on_closed(self)

    def _fault(self, error: Exception) -> None:
        with self._state_lock:
            if self._error_emitted or self._disposed:
                return
            self._error_emitted = True
            self._state = SubscriptionWorkerState.FAULTED

        self._processing_cts.cancel()
        self._close_tcp_stream()
        self._logger.error(
            f"Connection to subscription {self._options.subscription_name} have been shut down because of an error",
            exc_info=error,
        )
        self._invoke_listeners(self._error_listeners, error, "error")

    def _close_tcp_stream(self) -> None:
        stream = self._tcp_stream
        if stream is not None:
            self._tcp_stream = None
            stream.close()

    def _get_request_executor(self) -> RequestExecutor:
        return self._options.request_executor or self._store.get_request_executor(self._db_name)

    # --- connection negotiator ---

    def _connect_to_server(self) -> TcpStream:
        command = GetTcpInfoForRemoteTaskCommand(
            f"Subscription/{self._db_name}", self._db_name, self._options.subscription_name, True
        )

        request_executor = self._get_request_executor()

        if self._redirect_node is not None:
            try:
                request_executor.execute(self._redirect_node, None, command, False, None)
            except Exception:
                # the node did not answer, forget it and let the topology decide
                self._redirect_node = None
                raise
        else:
            request_executor.execute_command(command)
            if command.result is not None and command.result.node_tag is not None:
                equal_nodes = [x for x in request_executor.topology_nodes if x.cluster_tag == command.result.node_tag]
                self._redirect_node = equal_nodes[0] if equal_nodes else None

        tcp_info: TcpConnectionInfo = command.result
        connection_timeout = self._options.connection_timeout.total_seconds()
        try:
            sock, chosen_url = TcpUtils.connect_with_priority(
                tcp_info,
                tcp_info.certificate,
                self._store.certificate_pem_path,
                None,
                connection_timeout,
                self._options.receive_buffer_size,
                self._options.send_buffer_size,
            )
        except OSError as e:
            raise SubscriptionConnectionTransientException(
                f"Could not open a tcp connection to {tcp_info.url} for subscription {self._options.subscription_name}",
                e,
            )

        stream = TcpStream(sock, self._options.receive_buffer_size, self._options.heartbeat_timeout.total_seconds())
        self._tcp_stream = stream
        if self._disposed:
            # close() ran while we were connecting and did not see this stream
            self._close_tcp_stream()
            raise OperationCancelledException()

        parameters = TcpNegotiateParameters(
            operation=TcpConnectionHeaderMessage.OperationTypes.SUBSCRIPTION,
            version=TcpConnectionHeaderMessage.SUBSCRIPTION_TCP_VERSION,
            database=self._db_name,
            destination_node_tag=self.current_node_tag,
            destination_url=chosen_url,
            read_response_and_get_version_callback=lambda url: self._read_server_response_and_get_version(
                stream, url
            ),
        )

        self._supported_features = TcpNegotiation.negotiate_protocol_version(stream, parameters)

        if self._supported_features.protocol_version <= 0:
            raise SubscriptionProtocolMismatchException(
                f"{self._options.subscription_name}: TCP negotiation resulted with an invalid protocol version: "
                f"{self._supported_features.protocol_version}"
            )

        stream.send_json(self._options.to_json())

        if self._subscription_local_request_executor is not None:
            self._subscription_local_request_executor.close()

        self._subscription_local_request_executor = (
            type(request_executor).create_for_single_node_without_configuration_updates(
                command.requested_node.url,
                self._db_name,
                self._store.conventions,
                request_executor.certificate_path,
                request_executor.trust_store_path,
                self._store.thread_pool_executor,
            )
        )

        return stream

    def _read_server_response_and_get_version(self, stream: TcpStream, url: str) -> int:
        json_dict = self._read_frame(stream, self._options.connection_timeout.total_seconds())
        reply = TcpConnectionHeaderResponse.from_json(json_dict)

        if reply.status == TcpConnectionStatus.OK:
            return reply.version
        if reply.status == TcpConnectionStatus.AUTHORIZATION_FAILED:
            raise AuthorizationException(f"Cannot access database {self._db_name} because {reply.message}")
        if reply.status == TcpConnectionStatus.TCP_VERSION_MISMATCH:
            if reply.version != TcpNegotiation.OUT_OF_RANGE_STATUS:
                return reply.version
            # Kindly request the server to drop the connection
            self._send_drop_message(stream, reply)
            raise SubscriptionProtocolMismatchException(
                f"Can't connect to database {self._db_name} at {url} because: {reply.message}"
            )

        return reply.version

    def _send_drop_message(self, stream: TcpStream, reply: TcpConnectionHeaderResponse) -> None:
        drop_msg = TcpConnectionHeaderMessage()
        drop_msg.operation = TcpConnectionHeaderMessage.OperationTypes.DROP
        drop_msg.database_name = self._db_name
        drop_msg.operation_version = TcpConnectionHeaderMessage.SUBSCRIPTION_TCP_VERSION
        drop_msg.info = (
            f"Couldn't agree on subscription tcp version "
            f"ours: {TcpConnectionHeaderMessage.SUBSCRIPTION_TCP_VERSION} theirs: {reply.version}"
        )
        stream.send_json(drop_msg.to_json())

    def _assert_connection_state(self, connection_status: SubscriptionConnectionServerMessage) -> None:
        if connection_status.type_of_message == SubscriptionConnectionServerMessage.MessageType.ERROR:
            if "DatabaseDoesNotExistException" in (connection_status.exception or ""):
                raise DatabaseDoesNotExistException(f"{self._db_name} does not exists. {connection_status.message}")
            self._throw_subscription_error(connection_status)

        if connection_status.type_of_message != SubscriptionConnectionServerMessage.MessageType.CONNECTION_STATUS:
            raise RuntimeError(
                f"Server returned illegal type message when expecting connection status, "
                f"was: {connection_status.type_of_message}"
            )

        status = connection_status.status
        data = connection_status.data or {}
        if status == SubscriptionConnectionServerMessage.ConnectionStatus.ACCEPTED:
            pass
        elif status == SubscriptionConnectionServerMessage.ConnectionStatus.IN_USE:
            raise SubscriptionInUseException(
                f"Subscription with id {self._options.subscription_name} cannot be "
                f"opened, because it's in use and the connection strategy "
                f"is {self._options.strategy}"
            )
        elif status == SubscriptionConnectionServerMessage.ConnectionStatus.CLOSED:
            raise SubscriptionClosedException(
                f"Subscription with id {self._options.subscription_name} was closed. {connection_status.exception}",
                can_reconnect=bool(data.get("CanReconnect")),
            )
        elif status == SubscriptionConnectionServerMessage.ConnectionStatus.INVALID:
            raise SubscriptionInvalidStateException(
                f"Subscription with id {self._options.subscription_name} "
                f"cannot be opened, because it is in invalid state. "
                f"{connection_status.exception}"
            )
        elif status == SubscriptionConnectionServerMessage.ConnectionStatus.NOT_FOUND:
            raise SubscriptionDoesNotExistException(
                f"Subscription with id {self._options.subscription_name} "
                f"cannot be opened, because it does not exist. "
                f"{connection_status.exception}"
            )
        elif status == SubscriptionConnectionServerMessage.ConnectionStatus.REDIRECT:
            appropriate_node = data.get("RedirectedTag")
            current_node = data.get("CurrentTag")
            reasons_dictionary = {}
            for item in data.get("Reasons") or []:
                if isinstance(item, dict):
                    reasons_dictionary.update(item)

            raise SubscriptionDoesNotBelongToNodeException(
                f"Subscription with id '{self._options.subscription_name}' cannot be processed by current node "
                f"'{current_node}', it will be redirected to {appropriate_node}{os.linesep}{reasons_dictionary}",
                appropriate_node=appropriate_node,
                reasons=reasons_dictionary,
            )
        elif status == SubscriptionConnectionServerMessage.ConnectionStatus.CONCURRENCY_RECONNECT:
            raise SubscriptionChangeVectorUpdateConcurrencyException(connection_status.message)
        elif status in (
            SubscriptionConnectionServerMessage.ConnectionStatus.FORBIDDEN,
            SubscriptionConnectionServerMessage.ConnectionStatus.FORBIDDEN_READ_ONLY,
        ):
            raise AuthorizationException(
                f"Cannot access subscription {self._options.subscription_name} of database {self._db_name}: "
                f"{status}. {connection_status.message}"
            )
        else:
            raise RuntimeError(
                f"Subscription {self._options.subscription_name} could not be opened, reason: {status}"
            )

    # --- batch receiver ---

    def _read_frame(self, stream: TcpStream, timeout: Optional[float] = None) -> Dict:
        try:
            json_dict = stream.read_next_object(timeout)
        except socket.timeout as e:
            raise SubscriptionConnectionTransientException(
                f"Subscription {self._options.subscription_name}. Nothing was received from the server in time, "
                f"not even a heartbeat",
                e,
            )
        except (OSError, ijson.JSONError) as e:
            raise SubscriptionConnectionTransientException(
                f"Subscription {self._options.subscription_name}. Failed to read from the server", e
            )

        if json_dict is None:
            raise SubscriptionConnectionTransientException(
                f"Subscription {self._options.subscription_name}. The server closed the connection"
            )
        return json_dict

    def _read_next_message(
        self, stream: TcpStream, timeout: Optional[float] = None
    ) -> SubscriptionConnectionServerMessage:
        return SubscriptionConnectionServerMessage.from_json(self._read_frame(stream, timeout))

    def _read_single_subscription_batch_from_server(self, stream: TcpStream) -> BatchFromServer:
        token = self._processing_cts.get_token()
        batch_from_server = BatchFromServer()

        while True:
            received_message = self._read_next_message(stream)
            token.throw_if_cancellation_requested()

            message_type = received_message.type_of_message
            if message_type == SubscriptionConnectionServerMessage.MessageType.DATA:
                batch_from_server.messages.append(received_message)
            elif message_type == SubscriptionConnectionServerMessage.MessageType.INCLUDES:
                batch_from_server.includes.append(received_message.includes)
            elif message_type == SubscriptionConnectionServerMessage.MessageType.COUNTER_INCLUDES:
                batch_from_server.counter_includes.append(
                    BatchFromServer.CounterIncludeItem(
                        received_message.counter_includes, received_message.included_counter_names
                    )
                )
            elif message_type == SubscriptionConnectionServerMessage.MessageType.TIME_SERIES_INCLUDES:
                batch_from_server.time_series_includes.append(received_message.time_series_includes)
            elif message_type == SubscriptionConnectionServerMessage.MessageType.END_OF_BATCH:
                return batch_from_server
            elif message_type == SubscriptionConnectionServerMessage.MessageType.CONFIRM:
                self._logger.debug(
                    f"Subscription {self._options.subscription_name}. Ignoring a Confirm that arrived between batches"
                )
            elif message_type == SubscriptionConnectionServerMessage.MessageType.CONNECTION_STATUS:
                self._assert_connection_state(received_message)
            elif message_type == SubscriptionConnectionServerMessage.MessageType.ERROR:
                self._throw_subscription_error(received_message)
            else:
                self._throw_invalid_server_response(received_message)

    @staticmethod
    def _throw_invalid_server_response(received_message: SubscriptionConnectionServerMessage) -> None:
        raise ValueError(f"Unrecognized message {received_message.type_of_message} type received from server")

    def _throw_subscription_error(self, received_message: SubscriptionConnectionServerMessage) -> None:
        # the server ended the subscription, there is nothing to reconnect to
        self._processing_cts.cancel()
        raise ExceptionDispatcher.get_subscription_error(received_message.exception, received_message.message)

    # --- acknowledgment driver ---

    def _process_subscription(self) -> None:
        token = self._processing_cts.get_token()
        try:
            token.throw_if_cancellation_requested()

            with self._connect_to_server() as stream:
                token.throw_if_cancellation_requested()

                connection_status = self._read_next_message(stream, self._options.connection_timeout.total_seconds())
                token.throw_if_cancellation_requested()

                if (
                    connection_status.type_of_message
                    != SubscriptionConnectionServerMessage.MessageType.CONNECTION_STATUS
                    or connection_status.status != SubscriptionConnectionServerMessage.ConnectionStatus.ACCEPTED
                ):
                    self._assert_connection_state(connection_status)

                self._client_connection_id = connection_status.client_connection_id
                if self._client_connection_id is None:
                    self._logger.debug(
                        f"Subscription {self._options.subscription_name}. The server did not send a client connection id"
                    )

                self._last_connection_failure = None
                self._set_state(SubscriptionWorkerState.CONNECTED)
                self._logger.info(
                    f"Subscription {self._options.subscription_name}. Connected "
                    f"(protocol version {self._supported_features.protocol_version}, "
                    f"connection id {self._client_connection_id})"
                )

                batch = SubscriptionBatch(
                    self._object_type,
                    self._revisions,
                    self._subscription_local_request_executor,
                    self._store,
                    self._db_name,
                    self._logger,
                )

                while not token.is_cancellation_requested():
                    incoming_batch = self._read_single_subscription_batch_from_server(stream)

                    last_received_change_vector = batch.initialize(incoming_batch)
                    if last_received_change_vector is not None:
                        self._last_change_vector = last_received_change_vector

                    self._set_state(SubscriptionWorkerState.PROCESSING)
                    self._logger.debug(
                        f"Subscription {self._options.subscription_name}. "
                        f"Got a batch of {batch.number_of_items_in_batch} documents ({batch.size_in_bytes} bytes)"
                    )
                    if not self._process_batch(batch):
                        return

                    self._set_state(SubscriptionWorkerState.AWAITING_ACK)
                    self._send_ack(stream, self._last_change_vector)
                    self._wait_for_confirm(stream, batch)
                    self._set_state(SubscriptionWorkerState.CONNECTED)

        except OperationCancelledException:
            if not self._disposed:
                raise

            # otherwise this is thrown when shutting down,
            # it isn't an error, so we don't need to treat it as such

    def _process_batch(self, batch: SubscriptionBatch[_T]) -> bool:
        """
        Runs the handlers and decides whether the batch can be acknowledged.
        Returns False when the worker was closed while the handlers were running.
        """
        token = self._processing_cts.get_token()
        handlers_task = self._executor.submit(self._run_handlers, batch)
        concurrent.futures.wait([handlers_task, token.future], return_when=concurrent.futures.FIRST_COMPLETED)
        if token.is_cancellation_requested():
            return False

        abstained, errors = handlers_task.result()

        if abstained:
            raise SubscriberErrorException(
                f"A batch handler of subscription {self._options.subscription_name} abstained from acknowledging "
                f"the batch ending at {batch.last_change_vector}"
            )

        if errors:
            if not self._options.ignore_subscriber_errors:
                raise SubscriberErrorException(
                    f"Subscriber threw an exception in subscription {self._options.subscription_name}", errors[0]
                )

            for error in errors:
                self._logger.info(
                    f"Subscription {self._options.subscription_name}. Ignoring a batch handler error", exc_info=error
                )

        return True

    def _run_handlers(self, batch: SubscriptionBatch[_T]) -> Tuple[bool, List[Exception]]:
        token = self._processing_cts.get_token()
        results = []
        for handler in list(self._batch_handlers):
            try:
                results.append(handler(batch))
            except Exception as ex:
                self._logger.debug(
                    f"Subscription {self._options.subscription_name}. Subscriber threw an exception on document batch",
                    exc_info=ex,
                )
                results.append(ex)

        abstained = False
        errors: List[Exception] = []
        for result in results:
            if isinstance(result, Future):
                concurrent.futures.wait([result, token.future], return_when=concurrent.futures.FIRST_COMPLETED)
                if not result.done():
                    break
                try:
                    result = result.result()
                except Exception as ex:
                    result = ex

            if isinstance(result, Exception):
                errors.append(result)
            elif result is None or result == BatchHandlerOutcome.ACKNOWLEDGE:
                continue
            elif result == BatchHandlerOutcome.ABSTAIN:
                abstained = True
            else:
                errors.append(TypeError(f"A batch handler returned {result!r}, expected None or BatchHandlerOutcome"))

        return abstained, errors

    def _send_ack(self, stream: TcpStream, last_received_change_vector: Optional[str]) -> None:
        msg = SubscriptionConnectionClientMessage(
            SubscriptionConnectionClientMessage.MessageType.ACKNOWLEDGE, last_received_change_vector
        )
        try:
            stream.send_json(msg.to_json())
        except OSError as e:
            raise SubscriptionConnectionTransientException(
                f"Subscription {self._options.subscription_name}. Failed to send the acknowledgment", e
            )

    def _wait_for_confirm(self, stream: TcpStream, batch: SubscriptionBatch[_T]) -> None:
        token = self._processing_cts.get_token()
        deadline = time.monotonic() + self._options.connection_timeout.total_seconds()
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise SubscriptionConnectionTransientException(
                    f"Subscription {self._options.subscription_name}. "
                    f"The server did not confirm the acknowledgment in time"
                )

            received_message = self._read_next_message(stream, remaining)
            token.throw_if_cancellation_requested()

            message_type = received_message.type_of_message
            if message_type == SubscriptionConnectionServerMessage.MessageType.CONFIRM:
                self._invoke_after_acknowledgment(batch)
                return
            if message_type == SubscriptionConnectionServerMessage.MessageType.ERROR:
                self._throw_subscription_error(received_message)
            if message_type == SubscriptionConnectionServerMessage.MessageType.CONNECTION_STATUS:
                self._assert_connection_state(received_message)
                continue

            raise SubscriptionConnectionTransientException(
                f"Subscription {self._options.subscription_name}. "
                f"Expected a Confirm after the acknowledgment but got {message_type}"
            )

    def _invoke_after_acknowledgment(self, batch: SubscriptionBatch[_T]) -> None:
        for listener in list(self._after_acknowledgment):
            try:
                listener(batch)
            except Exception as ex:
                if not self._options.ignore_subscriber_errors:
                    raise SubscriberErrorException(
                        f"Subscriber threw an exception in after acknowledgment of subscription "
                        f"{self._options.subscription_name}",
                        ex,
                    )
                self._logger.info(
                    f"Subscription {self._options.subscription_name}. Ignoring an after acknowledgment error",
                    exc_info=ex,
                )

    # --- reconnection / lifecycle ---

    def _run_subscription_async(self) -> None:
        self._supervisor_thread = threading.current_thread()
        token = self._processing_cts.get_token()
        while not token.is_cancellation_requested():
            try:
                self._close_tcp_stream()
                self._set_state(SubscriptionWorkerState.CONNECTING)
                self._logger.info(f"Subscription {self._options.subscription_name}. Connecting to server...")
                self._process_subscription()
            except Exception as ex:
                if self._disposed:
                    return

                if token.is_cancellation_requested():
                    self._fault(ex)
                    raise ex

                self._logger.info(
                    f"Subscription {self._options.subscription_name}. Pulling task threw the following exception",
                    exc_info=ex,
                )

                try:
                    should_reconnect = self._should_try_to_reconnect(ex)
                except Exception as e:
                    self._fault(e)
                    raise

                if not should_reconnect:
                    self._fault(ex)
                    raise ex

                self._set_state(SubscriptionWorkerState.RECONNECTING)
                self._close_tcp_stream()
                if token.wait(self._options.time_to_wait_before_connection_retry.total_seconds()):
                    return

                if self._redirect_node is None:
                    self._rotate_redirect_node(ex)

                self._invoke_listeners(self._on_subscription_connection_retry, ex, "connection retry")

    def _rotate_redirect_node(self, ex: Exception) -> None:
        cur_topology = self._get_request_executor().topology_nodes
        if not cur_topology:
            # will let topology to decide
            return

        self._forced_topology_update_attempts += 1
        next_node_index = self._forced_topology_update_attempts % len(cur_topology)
        self._redirect_node = cur_topology[next_node_index]
        self._logger.info(
            f"Subscription '{self._options.subscription_name}'. "
            f"Will modify redirect node from None to {self._redirect_node.cluster_tag}",
            exc_info=ex,
        )

    def _assert_last_connection_failure(self) -> None:
        if self._last_connection_failure is None:
            self._last_connection_failure = time.monotonic()
            return

        if time.monotonic() - self._last_connection_failure > self._options.max_erroneous_period.total_seconds():
            raise SubscriptionInvalidStateException(
                f"Subscription connection was in invalid state for more than "
                f"{self._options.max_erroneous_period.total_seconds()} seconds "
                f"and therefore will be terminated."
            )

    def _should_try_to_reconnect(self, ex: Exception) -> bool:
        if isinstance(ex, SubscriptionDoesNotBelongToNodeException):
            if ex.appropriate_node is None:
                self._assert_last_connection_failure()
                self._redirect_node = None
                return True

            request_executor = self._get_request_executor()
            proper_nodes = [x for x in request_executor.topology_nodes if x.cluster_tag == ex.appropriate_node]
            if not proper_nodes:
                raise RuntimeError(
                    f"Could not redirect to {ex.appropriate_node}, "
                    f"because it was not found in local topology, even after retrying"
                )

            self._redirect_node = proper_nodes[0]
            return True

        if isinstance(ex, SubscriptionChangeVectorUpdateConcurrencyException):
            return True

        if isinstance(ex, SubscriptionClosedException):
            if ex.can_reconnect:
                return True

            self._processing_cts.cancel()
            return False

        if (
            isinstance(ex, SubscriptionInUseException)
            and self._options.strategy == SubscriptionOpeningStrategy.WAIT_FOR_FREE
        ):
            return True

        if isinstance(ex, SubscriptionConnectionTransientException):
            self._assert_last_connection_failure()
            return True

        if isinstance(
            ex,
            (
                SubscriptionInUseException,
                SubscriptionDoesNotExistException,
                DatabaseDoesNotExistException,
                AuthorizationException,
                AllTopologyNodesDownException,
                SubscriberErrorException,
                SubscriptionInvalidStateException,
                SubscriptionProtocolMismatchException,
            ),
        ):
            self._processing_cts.cancel()
            return False

        self._invoke_listeners(self._on_unexpected_subscription_error, ex, "unexpected subscription error")
        self._assert_last_connection_failure()
        return True
