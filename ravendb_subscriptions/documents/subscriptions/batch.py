from __future__ import annotations

import json
import logging
from enum import Enum
from typing import TypeVar, Generic, Type, Optional, Dict, List, Callable, Any, TYPE_CHECKING

from ravendb_subscriptions import constants
from ravendb_subscriptions.documents.session.document_info import DocumentInfo
from ravendb_subscriptions.documents.session.entity_to_json import EntityToJson
from ravendb_subscriptions.documents.session.misc import SessionOptions
from ravendb_subscriptions.documents.subscriptions.revision import Revision
from ravendb_subscriptions.exceptions.exceptions import InvalidDocumentInBatchException

if TYPE_CHECKING:
    from ravendb_subscriptions.documents.session.document_session import DocumentSession
    from ravendb_subscriptions.documents.store.definition import DocumentStore
    from ravendb_subscriptions.http.request_executor import RequestExecutor

_T = TypeVar("_T")
_T_Item = TypeVar("_T_Item")


class BatchHandlerOutcome(Enum):
    """
    What a batch handler reports back to the worker. Returning None means ACKNOWLEDGE.
    ABSTAIN stops the worker without acknowledging the batch, the server will deliver it again
    to the next connection.
    """

    ACKNOWLEDGE = "Acknowledge"
    ABSTAIN = "Abstain"

    def __str__(self):
        return self.value


class BatchFromServer:
    def __init__(self):
        self.messages: List[Any] = []
        self.includes: List[Dict] = []
        self.counter_includes: List[BatchFromServer.CounterIncludeItem] = []
        self.time_series_includes: List[Dict] = []

    class CounterIncludeItem:
        def __init__(self, includes: Dict, counter_includes: Dict[str, List[str]]):
            self._includes = includes
            self._counter_includes = counter_includes

        @property
        def includes(self) -> Dict:
            return self._includes

        @property
        def counter_includes(self) -> Dict:
            return self._counter_includes


class SubscriptionBatch(Generic[_T]):
    class Item(Generic[_T_Item]):
        """
        Represents a single item in a subscription batch results.
        This class should be used only inside the subscription's batch handler,
        using it outside this scope might cause unexpected behavior.
        """

        def __init__(
            self,
            key: str,
            change_vector: str,
            raw_result: Dict,
            raw_metadata: Dict,
            converter: Callable[[], _T_Item],
            exception_message: Optional[str] = None,
            projection: bool = False,
            revision: bool = False,
        ):
            self._key = key
            self._change_vector = change_vector
            self._converter = converter
            self._converted = False
            self._result: Optional[_T_Item] = None
            self._exception_message = exception_message
            self._projection = projection
            self._revision = revision

            self.raw_result = raw_result
            self.raw_metadata = raw_metadata

        @property
        def key(self) -> str:
            return self._key

        @property
        def change_vector(self) -> str:
            return self._change_vector

        @property
        def is_projection(self) -> bool:
            return self._projection

        @property
        def is_revision(self) -> bool:
            return self._revision

        @property
        def exception_message(self) -> Optional[str]:
            return self._exception_message

        @property
        def has_error(self) -> bool:
            return self._exception_message is not None

        @property
        def collection(self) -> Optional[str]:
            return self.raw_metadata.get(constants.Documents.Metadata.COLLECTION)

        @property
        def metadata(self) -> Dict:
            return dict(self.raw_metadata)

        @property
        def result(self) -> _T_Item:
            if self._exception_message is not None:
                raise InvalidDocumentInBatchException(
                    f"Failed to process document {self._key} with Change Vector {self._change_vector} because: "
                    f"{self._exception_message}",
                    self._key,
                    self._change_vector,
                )
            if not self._converted:
                self._result = self._converter()
                self._converted = True
            return self._result

    def __init__(
        self,
        object_type: Optional[Type[_T]],
        revisions: bool,
        request_executor: RequestExecutor,
        store: DocumentStore,
        db_name: str,
        logger: logging.Logger,
    ):
        self._object_type = object_type
        self._revisions = revisions
        self._request_executor = request_executor
        self._store = store
        self._db_name = db_name
        self._logger = logger

        self._items: List[SubscriptionBatch.Item[_T]] = []
        self._size_in_bytes = 0
        self._last_change_vector: Optional[str] = None
        self._includes: List[Dict] = []
        self._counter_includes: List[BatchFromServer.CounterIncludeItem] = []
        self._time_series_includes: List[Dict] = []

    @property
    def items(self) -> List[Item[_T]]:
        return self._items

    @property
    def number_of_items_in_batch(self) -> int:
        return len(self._items)

    @property
    def size_in_bytes(self) -> int:
        return self._size_in_bytes

    @property
    def last_change_vector(self) -> Optional[str]:
        return self._last_change_vector

    @property
    def includes(self) -> List[Dict]:
        return self._includes

    @property
    def counter_includes(self) -> List[BatchFromServer.CounterIncludeItem]:
        return self._counter_includes

    @property
    def time_series_includes(self) -> List[Dict]:
        return self._time_series_includes

    def open_session(self, options: Optional[SessionOptions] = None) -> DocumentSession:
        if not options:
            options = SessionOptions()
        else:
            self._validate_session_options(options)

        options.database = self._db_name
        options.request_executor = self._request_executor
        session = self._store.open_session(session_options=options)
        self._load_data_to_session(session)
        return session

    @staticmethod
    def _validate_session_options(options: SessionOptions) -> None:
        if options.database is not None:
            raise RuntimeError("Cannot set database when session is opened in subscription")

        if options.request_executor is not None:
            raise RuntimeError("Cannot set request_executor when session is opened in subscription")

    def _load_data_to_session(self, session: DocumentSession) -> None:
        if session.no_tracking:
            return

        for item in self._items:
            if item.is_projection or item.is_revision or item.has_error:
                continue

            document_info = DocumentInfo(
                item.key,
                item.change_vector,
                document=item.raw_result,
                metadata=item.raw_metadata,
                entity=item.result,
                new_document=False,
            )
            session.register_external_loaded_into_the_session(document_info)

    def initialize(self, batch: BatchFromServer) -> Optional[str]:
        """
        Replaces the content of this batch with the messages of the next one.
        Returns the change vector of the last document, None when the batch is empty.
        """
        self._includes = batch.includes
        self._counter_includes = batch.counter_includes
        self._time_series_includes = batch.time_series_includes

        self._items = []
        self._size_in_bytes = 0
        last_received_change_vector: Optional[str] = None

        for message in batch.messages:
            cur_doc = message.data
            if cur_doc is None:
                self.__throw_required("Data field")

            metadata = cur_doc.get(constants.Documents.Metadata.KEY)
            if metadata is None:
                self.__throw_required("@metadata field")

            key = metadata.get(constants.Documents.Metadata.ID)
            if key is None:
                self.__throw_required("@id field")

            change_vector = metadata.get(constants.Documents.Metadata.CHANGE_VECTOR)
            if change_vector is None:
                self.__throw_required("@change-vector field")

            last_received_change_vector = change_vector
            size = len(json.dumps(cur_doc).encode("utf-8"))
            self._size_in_bytes += size

            projection = metadata.get(constants.Documents.Metadata.PROJECTION) or False
            self._logger.debug(f"Got {key} (change vector: [{change_vector}], size: {size})")

            self._items.append(
                SubscriptionBatch.Item(
                    key,
                    change_vector,
                    cur_doc,
                    metadata,
                    self.__converter_for(key, cur_doc),
                    message.exception,
                    projection,
                    self._revisions,
                )
            )

        self._last_change_vector = last_received_change_vector
        return last_received_change_vector

    def __converter_for(self, key: str, cur_doc: Dict) -> Callable[[], Any]:
        conventions = self._request_executor.conventions

        def __convert():
            if self._object_type == dict:
                return cur_doc

            if self._revisions:
                # Previous/Current are the two sides of the change, either can be missing
                previous = cur_doc.get("Previous")
                current = cur_doc.get("Current")
                revision = Revision()
                if current:
                    revision.current = EntityToJson.convert_to_entity_by_key_static(
                        self._object_type, key, current, conventions
                    )
                if previous:
                    revision.previous = EntityToJson.convert_to_entity_by_key_static(
                        self._object_type, key, previous, conventions
                    )
                return revision

            return EntityToJson.convert_to_entity_by_key_static(self._object_type, key, cur_doc, conventions)

        return __convert

    @staticmethod
    def __throw_required(name: str):
        raise RuntimeError(f"Document must have a {name}")
