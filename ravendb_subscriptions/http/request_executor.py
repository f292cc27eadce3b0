from __future__ import annotations

import datetime
import json
import logging
import os
from concurrent.futures import ThreadPoolExecutor, Future
from copy import copy
from http import HTTPStatus
from threading import Lock
from typing import TYPE_CHECKING, List, Optional

import requests

from ravendb_subscriptions import constants
from ravendb_subscriptions.exceptions.exception_dispatcher import ExceptionDispatcher
from ravendb_subscriptions.exceptions.exceptions import (
    AuthorizationException,
    DatabaseDoesNotExistException,
)
from ravendb_subscriptions.http.raven_command import RavenCommand, RavenCommandResponseType
from ravendb_subscriptions.http.server_node import ServerNode
from ravendb_subscriptions.http.topology import Topology, NodeSelector, CurrentIndexAndNode
from ravendb_subscriptions.serverwide.commands import GetDatabaseTopologyCommand

if TYPE_CHECKING:
    from ravendb_subscriptions.documents.conventions import DocumentConventions
    from ravendb_subscriptions.documents.session.misc import SessionInfo


class RequestExecutor:
    __INITIAL_TOPOLOGY_ETAG = -2
    CLIENT_VERSION = "5.2.5"
    logger = logging.getLogger("request_executor")

    def __init__(
        self,
        database_name: str,
        conventions: DocumentConventions,
        certificate_path: Optional[str] = None,
        trust_store_path: Optional[str] = None,
        thread_pool_executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.conventions = copy(conventions)
        self._node_selector: Optional[NodeSelector] = None
        self.__default_timeout: Optional[datetime.timedelta] = conventions.request_timeout

        self.__certificate_path = certificate_path
        self.__trust_store_path = trust_store_path

        self.__database_name = database_name

        self._thread_pool_executor = (
            ThreadPoolExecutor(max_workers=10) if not thread_pool_executor else thread_pool_executor
        )

        self.number_of_server_requests = 0

        self._topology_etag: Optional[int] = None
        self._disable_topology_updates: Optional[bool] = None

        self.__http_session: Optional[requests.Session] = None

        self._first_topology_update_task: Optional[Future] = None
        self._last_known_urls: Optional[List[str]] = None
        self._disposed: Optional[bool] = None

        self.__synchronized_lock = Lock()
        self.__update_database_topology_lock = Lock()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self):
        if self._disposed:
            return

        self._disposed = True
        if self.__http_session is not None:
            self.__http_session.close()

    @property
    def certificate_path(self) -> Optional[str]:
        return self.__certificate_path

    @property
    def trust_store_path(self) -> Optional[str]:
        return self.__trust_store_path

    @property
    def database_name(self) -> str:
        return self.__database_name

    @property
    def url(self) -> Optional[str]:
        if self._node_selector is None:
            return None

        preferred_node = self._node_selector.get_preferred_node()
        return preferred_node.current_node.url if preferred_node is not None else None

    @property
    def topology_etag(self) -> int:
        return self._topology_etag

    @property
    def topology(self) -> Optional[Topology]:
        return self._node_selector.topology if self._node_selector else None

    @property
    def topology_nodes(self) -> List[ServerNode]:
        return self.topology.nodes if self.topology else []

    @property
    def http_session(self) -> requests.Session:
        http_session = self.__http_session
        if http_session:
            return http_session
        with self.__synchronized_lock:
            if self.__http_session is None:
                self.__http_session = self.__create_http_session()
            return self.__http_session

    def __create_http_session(self) -> requests.Session:
        session = requests.session()
        session.cert = self.__certificate_path
        session.verify = self.__trust_store_path if self.__trust_store_path else True
        return session

    @property
    def default_timeout(self) -> Optional[datetime.timedelta]:
        return self.__default_timeout

    @default_timeout.setter
    def default_timeout(self, value: datetime.timedelta) -> None:
        self.__default_timeout = value

    @property
    def preferred_node(self) -> CurrentIndexAndNode:
        self.__ensure_node_selector()
        return self._node_selector.get_preferred_node()

    @classmethod
    def create(
        cls,
        initial_urls: List[str],
        database_name: str,
        conventions: DocumentConventions,
        certificate_path: Optional[str] = None,
        trust_store_path: Optional[str] = None,
        thread_pool_executor: Optional[ThreadPoolExecutor] = None,
    ) -> RequestExecutor:
        executor = cls(database_name, conventions, certificate_path, trust_store_path, thread_pool_executor)
        executor._disable_topology_updates = conventions.disable_topology_updates
        executor._first_topology_update_task = executor._first_topology_update(initial_urls)
        return executor

    @classmethod
    def create_for_single_node_without_configuration_updates(
        cls,
        url: str,
        database_name: str,
        conventions: DocumentConventions,
        certificate_path: Optional[str] = None,
        trust_store_path: Optional[str] = None,
        thread_pool_executor: Optional[ThreadPoolExecutor] = None,
    ) -> RequestExecutor:
        initial_urls = cls.validate_urls([url])
        executor = cls(database_name, conventions, certificate_path, trust_store_path, thread_pool_executor)

        topology = Topology(-1, [ServerNode(initial_urls[0], database_name)])
        executor._node_selector = NodeSelector(topology)
        executor._topology_etag = cls.__INITIAL_TOPOLOGY_ETAG
        executor._disable_topology_updates = True

        return executor

    @staticmethod
    def validate_urls(initial_urls: List[str]) -> List[str]:
        if not initial_urls:
            raise ValueError("Urls cannot be None or empty")

        validated = []
        for url in initial_urls:
            if not url.lower().startswith(("http://", "https://")):
                raise ValueError(f"The url '{url}' is not valid, it must start with http:// or https://")
            validated.append(url.rstrip("/"))
        return validated

    def update_topology(self, node: ServerNode, force_update: bool = False) -> bool:
        if self._disable_topology_updates or self._disposed:
            return False

        with self.__update_database_topology_lock:
            command = GetDatabaseTopologyCommand("update-topology")
            self.execute(node, None, command, False, None)
            topology = command.result
            if topology is None:
                return False

            for topology_node in topology.nodes:
                topology_node.database = topology_node.database or self.__database_name

            if self._node_selector is None:
                self._node_selector = NodeSelector(topology)
            elif not self._node_selector.on_update_topology(topology, force_update):
                return False

            self._topology_etag = self._node_selector.topology.etag
            self.logger.info(
                f"Topology of database '{self.__database_name}' updated to etag {self._topology_etag}: "
                f"{[n.cluster_tag for n in topology.nodes]}"
            )
            return True

    def _first_topology_update(self, input_urls: List[str]) -> Future:
        initial_urls = self.validate_urls(input_urls)

        def __run():
            errors = []
            if not self._disable_topology_updates:
                for url in initial_urls:
                    try:
                        self.update_topology(ServerNode(url, self.__database_name), True)
                        return
                    except (AuthorizationException, DatabaseDoesNotExistException):
                        self._last_known_urls = initial_urls
                        raise
                    except Exception as e:
                        self.logger.info(f"Failed to load the topology from {url}", exc_info=e)
                        errors.append((url, e))

            # topology updates are disabled or nobody answered, use the urls we were given
            self._node_selector = NodeSelector(
                Topology(
                    self._topology_etag or self.__INITIAL_TOPOLOGY_ETAG,
                    [ServerNode(url, self.__database_name) for url in initial_urls],
                )
            )
            self._last_known_urls = initial_urls

        return self._thread_pool_executor.submit(__run)

    def __ensure_node_selector(self) -> None:
        if self._first_topology_update_task is not None:
            # raises the first update failure (e.g. authorization) to the caller
            self._first_topology_update_task.result()

        if self._node_selector is None:
            raise RuntimeError("No topology is available, the request executor was not initialized")

    def execute_command(self, command: RavenCommand, session_info: Optional[SessionInfo] = None) -> None:
        self.__ensure_node_selector()
        current_index_and_node = self.choose_node_for_request(command, session_info)
        self.execute(
            current_index_and_node.current_node, current_index_and_node.current_index, command, True, session_info
        )

    def choose_node_for_request(self, command: RavenCommand, session_info: Optional[SessionInfo]) -> CurrentIndexAndNode:
        return self._node_selector.get_preferred_node()

    def execute(
        self,
        chosen_node: ServerNode = None,
        node_index: Optional[int] = None,
        command: RavenCommand = None,
        should_retry: bool = True,
        session_info: Optional[SessionInfo] = None,
    ) -> None:
        request = command.create_request(chosen_node)
        if request is None:
            return

        self.__set_request_headers(request)
        command.requested_node = chosen_node

        try:
            response = self._send(chosen_node, command, request)
        except (requests.RequestException, IOError) as e:
            self.logger.info(f"Request {request.method} {request.url} failed", exc_info=e)
            command.failed_nodes[chosen_node] = e
            if not should_retry:
                raise
            self.__handle_server_down(chosen_node, node_index, command, session_info)
            return

        command.status_code = response.status_code

        if response.status_code >= 400:
            self.__handle_unsuccessful_response(chosen_node, node_index, command, request, response, should_retry)
            return

        if node_index is not None and self._node_selector is not None:
            self._node_selector.restore_node_index(node_index)

        command.process_response(response)

    def _send(self, chosen_node: ServerNode, command: RavenCommand, request: requests.Request) -> requests.Response:
        self.number_of_server_requests += 1
        if command.timeout is None and self.__default_timeout is not None:
            command.timeout = self.__default_timeout
        return command.send(self.http_session, request)

    def __set_request_headers(self, request: requests.Request) -> None:
        if request.headers is None:
            request.headers = {}
        request.headers[constants.Headers.CLIENT_VERSION] = RequestExecutor.CLIENT_VERSION
        if request.data and not request.files:
            request.headers.setdefault(constants.Headers.CONTENT_TYPE, "application/json; charset=utf-8")

    def __handle_server_down(
        self,
        chosen_node: ServerNode,
        node_index: Optional[int],
        command: RavenCommand,
        session_info: Optional[SessionInfo],
    ) -> None:
        if node_index is None or self._node_selector is None:
            # the request went to a node outside of the topology, there is nothing to fail over to
            NodeSelector.throw_all_nodes_down(command.failed_nodes)

        self._node_selector.on_failed_request(node_index)

        for index, node in enumerate(self.topology_nodes):
            if node in command.failed_nodes:
                continue
            self.logger.info(f"Failing over from {chosen_node.url} to {node.url}")
            self.execute(node, index, command, True, session_info)
            return

        NodeSelector.throw_all_nodes_down(command.failed_nodes)

    def __handle_unsuccessful_response(
        self,
        chosen_node: ServerNode,
        node_index: Optional[int],
        command: RavenCommand,
        request: requests.Request,
        response: requests.Response,
        should_retry: bool,
    ) -> None:
        try:
            if response.status_code == HTTPStatus.NOT_FOUND and command.is_read_request():
                if command.response_type == RavenCommandResponseType.OBJECT:
                    command.set_response(None, False)
                return

            if response.status_code == HTTPStatus.FORBIDDEN:
                builder = ["Forbidden access to ", str(chosen_node.database), "@", chosen_node.url, ", "]
                if self.__certificate_path is None:
                    builder.append("a certificate is required. ")
                else:
                    builder.append("certificate does not have permission to access it or is unknown. ")
                builder.extend([" Method: ", request.method, ", Request: ", request.url, os.linesep])
                builder.append(self.__try_get_response_of_error(response))
                raise AuthorizationException("".join(builder))

            if response.status_code == HTTPStatus.SERVICE_UNAVAILABLE and should_retry:
                command.failed_nodes[chosen_node] = self.__read_exception_from_server(request, response)
                self.__handle_server_down(chosen_node, node_index, command, None)
                return

            db_missing_header = response.headers.get("Database-Missing", None)
            if db_missing_header is not None:
                raise DatabaseDoesNotExistException(db_missing_header)

            raise self.__read_exception_from_server(request, response)
        finally:
            response.close()

    @staticmethod
    def __try_get_response_of_error(response: requests.Response) -> str:
        try:
            return response.content.decode("utf-8")
        except UnicodeDecodeError as e:
            return f"Could not read request: {e.args[0]}"

    @staticmethod
    def __read_exception_from_server(request: requests.Request, response: requests.Response) -> Exception:
        response_json = RequestExecutor.__try_get_response_of_error(response)
        try:
            schema = ExceptionDispatcher.ExceptionSchema.from_json(json.loads(response_json))
        except ValueError:
            schema = ExceptionDispatcher.ExceptionSchema(
                request.url, "Unparsable Server Response", "Get unrecognized response from the server", response_json
            )
        if schema.url is None:
            schema.url = request.url
        return ExceptionDispatcher.get(schema, response.status_code)
