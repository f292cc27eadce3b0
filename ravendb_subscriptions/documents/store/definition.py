from __future__ import annotations

import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Union, Optional, List, Dict

from ravendb_subscriptions.documents.conventions import DocumentConventions
from ravendb_subscriptions.documents.session.document_session import DocumentSession
from ravendb_subscriptions.documents.session.misc import SessionOptions
from ravendb_subscriptions.documents.subscriptions.document_subscriptions import DocumentSubscriptions
from ravendb_subscriptions.http.request_executor import RequestExecutor


class DocumentStore:
    def __init__(self, urls: Optional[Union[str, List[str]]] = None, database: Optional[str] = None):
        self.__conventions: Optional[DocumentConventions] = None
        self._initialized = False
        self._disposed: Optional[bool] = None

        self.__certificate_pem_path: Optional[str] = None
        self.__trust_store_path: Optional[str] = None

        self._urls: List[str] = []
        self._database: Optional[str] = None

        self.__subscriptions = DocumentSubscriptions(self)
        self.__thread_pool_executor = ThreadPoolExecutor()
        self.urls = [urls] if isinstance(urls, str) else urls
        self.database = database
        self.__request_executors: Dict[str, RequestExecutor] = {}
        self.__request_executors_lock = threading.Lock()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def disposed(self) -> bool:
        return bool(self._disposed)

    @property
    def conventions(self) -> DocumentConventions:
        if self.__conventions is None:
            self.__conventions = DocumentConventions()
        return self.__conventions

    @conventions.setter
    def conventions(self, value: DocumentConventions):
        self.__assert_not_initialized("conventions")
        self.__conventions = value

    @property
    def urls(self) -> List[str]:
        return self._urls

    @urls.setter
    def urls(self, value: List[str]):
        self.__assert_not_initialized("urls")

        if value is None:
            raise ValueError("Value is None")

        for url in value:
            if url is None:
                raise ValueError("Urls cannot contain None")

        self._urls = [url.rstrip("/") for url in value]

    @property
    def database(self) -> Optional[str]:
        return self._database

    @database.setter
    def database(self, value: str):
        self.__assert_not_initialized("database")
        self._database = value

    @property
    def certificate_pem_path(self) -> Optional[str]:
        return self.__certificate_pem_path

    @certificate_pem_path.setter
    def certificate_pem_path(self, value: str):
        self.__assert_not_initialized("certificate_pem_path")
        if value.endswith("pfx"):
            raise ValueError("Invalid certificate format. Please use .pem file.")
        with open(value) as file:
            content = file.read()
            if "BEGIN CERTIFICATE" not in content:
                raise ValueError(
                    f"Invalid file. File stored under the path '{value}' isn't valid .pem certificate. "
                    f"BEGIN CERTIFICATE header wasn't found."
                )
            if "PRIVATE KEY" not in content:
                raise ValueError(
                    f"Invalid file. File stored under the path '{value}' isn't valid .pem certificate. "
                    f"PRIVATE KEY header wasn't found."
                )
        self.__certificate_pem_path = value

    @property
    def trust_store_path(self) -> Optional[str]:
        return self.__trust_store_path

    @trust_store_path.setter
    def trust_store_path(self, value: str):
        self.__trust_store_path = value

    @property
    def thread_pool_executor(self) -> ThreadPoolExecutor:
        return self.__thread_pool_executor

    @property
    def subscriptions(self) -> DocumentSubscriptions:
        return self.__subscriptions

    def _ensure_not_closed(self) -> None:
        if self.disposed:
            raise ValueError("The document store has already been disposed and cannot be used")

    def __assert_not_initialized(self, property_name: str) -> None:
        if self._initialized:
            raise RuntimeError(f"You cannot set '{property_name}' after the document store has been initialized.")

    def assert_initialized(self) -> None:
        if not self._initialized:
            raise RuntimeError(
                "You cannot open a session or access the database commands before initializing the "
                "document store. Did you forget calling initialize()?"
            )

    def get_effective_database(self, database: Optional[str]) -> str:
        if database is None:
            database = self.database

        if database and not database.isspace():
            return database

        raise ValueError(
            "Cannot determine database to operate on. "
            "Please either specify 'database' directly as an action parameter "
            "or set the default database to operate on using 'DocumentStore.database'. "
            "Did you forget to pass 'database' parameter?"
        )

    def initialize(self) -> DocumentStore:
        if self._initialized:
            return self

        if not self.urls:
            raise ValueError("Document URLs cannot be empty.")

        RequestExecutor.validate_urls(self.urls)

        self.conventions.freeze()
        self._initialized = True
        return self

    def open_session(
        self, database: Optional[str] = None, session_options: Optional[SessionOptions] = None
    ) -> DocumentSession:
        if not database and not session_options:
            session_options = SessionOptions()
        if not ((session_options is not None) ^ (database is not None)):
            raise ValueError("Pass either database str or session_options object")
        if database:
            session_options = SessionOptions(database=database)
        self.assert_initialized()
        self._ensure_not_closed()

        return DocumentSession(self, uuid.uuid4(), session_options)

    def get_request_executor(self, database: Optional[str] = None) -> RequestExecutor:
        self.assert_initialized()

        database = self.get_effective_database(database)

        with self.__request_executors_lock:
            executor = self.__request_executors.get(database)
            if executor is None:
                executor = self._create_request_executor(database)
                self.__request_executors[database] = executor
            return executor

    def _create_request_executor(self, database: str) -> RequestExecutor:
        if self.conventions.disable_topology_updates:
            return RequestExecutor.create_for_single_node_without_configuration_updates(
                self.urls[0],
                database,
                self.conventions,
                self.certificate_pem_path,
                self.trust_store_path,
                self.thread_pool_executor,
            )

        return RequestExecutor.create(
            self.urls,
            database,
            self.conventions,
            self.certificate_pem_path,
            self.trust_store_path,
            self.thread_pool_executor,
        )

    def close(self):
        if self._disposed:
            return

        self.__subscriptions.close()

        self._disposed = True

        with self.__request_executors_lock:
            executors = list(self.__request_executors.values())
            self.__request_executors.clear()

        for executor in executors:
            executor.close()

        self.__thread_pool_executor.shutdown()
