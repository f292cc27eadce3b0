from __future__ import annotations

import threading
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from ravendb_subscriptions.documents.session.document_session import DocumentSession
    from ravendb_subscriptions.documents.store.definition import DocumentStore
    from ravendb_subscriptions.http.request_executor import RequestExecutor


class SessionOptions:
    def __init__(
        self,
        database: Optional[str] = None,
        no_tracking: Optional[bool] = None,
        no_caching: Optional[bool] = None,
        request_executor: Optional[RequestExecutor] = None,
    ):
        self.database = database
        self.no_tracking = no_tracking
        self.no_caching = no_caching
        self.request_executor = request_executor


class SessionInfo:
    __client_session_id_counter = 0
    __counter_lock = threading.Lock()

    def __init__(self, session: DocumentSession, options: SessionOptions, document_store: DocumentStore):
        if not document_store:
            raise ValueError("DocumentStore cannot be None")
        if not session:
            raise ValueError("Session cannot be None")
        self.document_store = document_store
        self.no_caching = options.no_caching
        with SessionInfo.__counter_lock:
            SessionInfo.__client_session_id_counter += 1
            self.__session_id = SessionInfo.__client_session_id_counter

    @property
    def session_id(self) -> int:
        return self.__session_id
