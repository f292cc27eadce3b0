from __future__ import annotations

import logging
import uuid
from typing import Dict, List, Optional, Set, Type, TypeVar, Union, TYPE_CHECKING

from ravendb_subscriptions import constants
from ravendb_subscriptions.documents.commands.batches import (
    BatchCommandResult,
    BatchOptions,
    CommandData,
    CommandType,
    DeleteAttachmentCommandData,
    DeleteCommandData,
    PutAttachmentCommandData,
    PutCommandData,
    SingleNodeBatchCommand,
)
from ravendb_subscriptions.documents.commands.crud import GetDocumentsCommand
from ravendb_subscriptions.documents.session.deferred import DeferredCommandLedger, FlushAttempt, IdTypeAndName
from ravendb_subscriptions.documents.session.document_info import DocumentInfo
from ravendb_subscriptions.documents.session.entity_to_json import EntityToJson
from ravendb_subscriptions.documents.session.misc import SessionInfo, SessionOptions
from ravendb_subscriptions.exceptions.exceptions import DeferredCommandConflictException, InvalidOperationException

if TYPE_CHECKING:
    from ravendb_subscriptions.documents.conventions import DocumentConventions
    from ravendb_subscriptions.documents.store.definition import DocumentStore
    from ravendb_subscriptions.http.request_executor import RequestExecutor

_T = TypeVar("_T")


class DocumentSession:
    """
    Unit of work over one database. Tracks stored, loaded and deleted entities and the deferred commands,
    and sends all of them in a single batch on save_changes().
    """

    logger = logging.getLogger("DocumentSession")

    def __init__(self, store: DocumentStore, key: uuid.UUID, options: SessionOptions):
        self.__id = key
        self._store = store
        self.database_name = options.database or store.database
        if not self.database_name:
            self.__throw_no_database()

        self._request_executor = options.request_executor or store.get_request_executor(self.database_name)
        self.no_tracking = bool(options.no_tracking)

        self._documents_by_id: Dict[str, DocumentInfo] = {}
        self._documents_by_entity: Dict[int, DocumentInfo] = {}
        self._deleted_entities: Dict[int, object] = {}
        self._known_missing_ids: Set[str] = set()
        self._deferred = DeferredCommandLedger(self.logger)
        self._save_changes_options: Optional[BatchOptions] = None

        self._number_of_requests = 0
        self._max_number_of_requests_per_session = self._request_executor.conventions.max_number_of_requests_per_session
        self._closed = False

        self.entity_to_json = EntityToJson(self)
        self.session_info = SessionInfo(self, options, store)
        self._advanced = AdvancedSessionOperations(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def id(self) -> uuid.UUID:
        return self.__id

    @property
    def advanced(self) -> AdvancedSessionOperations:
        return self._advanced

    @property
    def conventions(self) -> DocumentConventions:
        return self._request_executor.conventions

    @property
    def request_executor(self) -> RequestExecutor:
        return self._request_executor

    @property
    def deferred_commands(self) -> DeferredCommandLedger:
        return self._deferred

    @property
    def number_of_requests(self) -> int:
        return self._number_of_requests

    def increment_requests_count(self) -> None:
        self._number_of_requests += 1
        if self._number_of_requests > self._max_number_of_requests_per_session:
            raise RuntimeError(
                f"The maximum number of requests ({self._max_number_of_requests_per_session}) allowed for this "
                f"session has been reached. You can increase the limit by setting "
                f"DocumentConventions.max_number_of_requests_per_session, "
                f"but it is advisable to group the work into fewer requests."
            )

    def _assert_not_closed(self) -> None:
        if self._closed:
            raise RuntimeError("Cannot use the session after it was closed")

    # --- tracking ---

    def _get_document_info(self, entity: object) -> DocumentInfo:
        document_info = self._documents_by_entity.get(id(entity))
        if document_info is None:
            raise ValueError(f"{entity!r} is not associated with the session, cannot find its document info")
        return document_info

    def is_loaded(self, key: str) -> bool:
        return key in self._documents_by_id and id(self._documents_by_id[key].entity) not in self._deleted_entities

    def is_deleted(self, key: str) -> bool:
        document_info = self._documents_by_id.get(key)
        return document_info is not None and id(document_info.entity) in self._deleted_entities

    def register_external_loaded_into_the_session(self, document_info: DocumentInfo) -> None:
        if self.no_tracking:
            return

        existing = self._documents_by_id.get(document_info.key)
        if existing is not None and existing.entity is not document_info.entity:
            raise InvalidOperationException(
                f"The document {document_info.key} is already in the session with a different entity instance"
            )

        self._documents_by_id[document_info.key] = document_info
        self._documents_by_entity[id(document_info.entity)] = document_info
        self._known_missing_ids.discard(document_info.key)

    def _track_loaded_document(self, document: Dict, object_type: Optional[Type[_T]]) -> _T:
        document_info = DocumentInfo.get_new_document_info(document)
        existing = self._documents_by_id.get(document_info.key)
        if existing is not None:
            return existing.entity

        document_info.entity = self.entity_to_json.convert_to_entity(object_type, document_info.key, document)
        document_info.new_document = False
        if not self.no_tracking:
            self.register_external_loaded_into_the_session(document_info)
        return document_info.entity

    # --- operations ---

    def store(self, entity: object, key: Optional[str] = None, change_vector: Optional[str] = None) -> None:
        self._assert_not_closed()
        if entity is None:
            raise ValueError("Entity cannot be None")

        value = self._documents_by_entity.get(id(entity))
        if value is not None:
            value.change_vector = change_vector if change_vector else value.change_vector
            return

        if key is None:
            key = getattr(entity, "Id", None)
            if not key:
                raise ValueError("Key cannot be None, pass the document id or set the Id of the entity")
        elif hasattr(entity, "Id") and not getattr(entity, "Id"):
            entity.Id = key

        if self._deferred.commands_for(key):
            raise InvalidOperationException(
                f"Can't store document, there is a deferred command registered for this document in the session. "
                f"Document id: {key}"
            )

        if self.is_deleted(key):
            raise RuntimeError(f"Can't store object, it was already deleted in this session. Document id {key}")

        if key in self._documents_by_id:
            raise InvalidOperationException(
                f"Attempted to associate a different object with id '{key}', which is already tracked by the session"
            )

        metadata = {}
        collection_name = self.conventions.get_collection_name(entity)
        if collection_name:
            metadata[constants.Documents.Metadata.COLLECTION] = collection_name
        python_type = self.conventions.find_python_class_name(type(entity))
        if python_type:
            metadata[constants.Documents.Metadata.RAVEN_PYTHON_TYPE] = python_type

        self._known_missing_ids.discard(key)
        document_info = DocumentInfo(
            key=key,
            metadata=metadata,
            change_vector=change_vector,
            entity=entity,
            new_document=True,
            document=None,
        )
        self._documents_by_entity[id(entity)] = document_info
        self._documents_by_id[key] = document_info

    def delete(self, key_or_entity: Union[str, object], expected_change_vector: Optional[str] = None) -> None:
        self._assert_not_closed()
        if key_or_entity is None:
            raise ValueError("Key or entity cannot be None")

        if not isinstance(key_or_entity, str):
            document_info = self._documents_by_entity.get(id(key_or_entity))
            if document_info is None:
                raise ValueError(
                    f"{key_or_entity!r} is not associated with the session, cannot delete unknown entity instance"
                )
        else:
            document_info = self._documents_by_id.get(key_or_entity)
            if document_info is None:
                # not loaded, the server side delete goes through the ledger
                self._deferred.defer(DeleteCommandData(key_or_entity, expected_change_vector))
                self._known_missing_ids.add(key_or_entity)
                return

        pending = self._deferred.commands_for(document_info.key)
        if pending:
            raise DeferredCommandConflictException(
                f"Can't delete document {document_info.key}, there is a deferred {pending[0].command_type} "
                f"command registered for this document in the session",
                document_info.key,
            )

        if expected_change_vector is not None:
            document_info.change_vector = expected_change_vector
        self._deleted_entities[id(document_info.entity)] = document_info.entity

    def load(
        self, key_or_keys: Union[str, List[str]], object_type: Optional[Type[_T]] = None
    ) -> Union[Optional[_T], Dict[str, Optional[_T]]]:
        self._assert_not_closed()
        if key_or_keys is None:
            raise ValueError("Key cannot be None")

        if isinstance(key_or_keys, str):
            return self._load_many([key_or_keys], object_type)[key_or_keys]

        return self._load_many(list(key_or_keys), object_type)

    def _load_many(self, keys: List[str], object_type: Optional[Type[_T]]) -> Dict[str, Optional[_T]]:
        fetched = {}
        to_fetch = [
            key
            for key in keys
            if key not in self._documents_by_id and key not in self._known_missing_ids
        ]
        if to_fetch:
            command = GetDocumentsCommand.from_multiple_ids(to_fetch)
            self.increment_requests_count()
            self._request_executor.execute_command(command, self.session_info)
            results = command.result.results if command.result is not None else []
            for document in results or []:
                if document is not None:
                    entity = self._track_loaded_document(document, object_type)
                    fetched[document[constants.Documents.Metadata.KEY][constants.Documents.Metadata.ID]] = entity

            for key in to_fetch:
                if key not in fetched:
                    self._known_missing_ids.add(key)

        loaded = {}
        for key in keys:
            if key in fetched and self.no_tracking:
                loaded[key] = fetched[key]
                continue
            document_info = self._documents_by_id.get(key)
            if document_info is None or id(document_info.entity) in self._deleted_entities:
                loaded[key] = None
            else:
                loaded[key] = document_info.entity
        return loaded

    def has_changes(self) -> bool:
        for document_info in self._documents_by_entity.values():
            if self._entity_changed(document_info):
                return True
        return len(self._deleted_entities) != 0

    def has_changed(self, entity: object) -> bool:
        return self._entity_changed(self._get_document_info(entity))

    def _entity_changed(self, document_info: DocumentInfo) -> bool:
        if document_info.ignore_changes:
            return False
        if document_info.new_document or document_info.document is None:
            return True
        document = self.entity_to_json.convert_entity_to_json(document_info.entity, document_info)
        return document != document_info.document

    def save_changes(self) -> None:
        self._assert_not_closed()
        if self.no_tracking and self._documents_by_entity:
            raise RuntimeError("Cannot execute save_changes when entity tracking is disabled.")

        attempt = self._deferred.flush()
        session_commands, tracked = self._prepare_for_save_changes(attempt)
        for deferred_command in attempt.commands:
            if deferred_command.on_before_save_changes:
                deferred_command.on_before_save_changes(self)

        all_commands = session_commands + attempt.commands
        if not all_commands:
            return

        self.increment_requests_count()
        command = SingleNodeBatchCommand(self.conventions, all_commands, self._save_changes_options)
        try:
            self._request_executor.execute_command(command, self.session_info)
        except Exception as e:
            self._deferred.fail(attempt, e)
            raise

        self._deferred.confirm(attempt)
        self._after_save_changes(command.result, all_commands, tracked)

    def _prepare_for_save_changes(self, attempt: FlushAttempt):
        session_commands: List[CommandData] = []
        tracked: Dict[str, DocumentInfo] = {}

        for entity_id, entity in self._deleted_entities.items():
            document_info = self._documents_by_entity.get(entity_id)
            if document_info is None:
                continue
            self.__assert_no_deferred_command(document_info.key, attempt, "deleted")
            change_vector = document_info.change_vector if self.conventions.use_optimistic_concurrency else None
            session_commands.append(DeleteCommandData(document_info.key, change_vector))

        for entity_id, document_info in self._documents_by_entity.items():
            if entity_id in self._deleted_entities or not self._entity_changed(document_info):
                continue

            self.__assert_no_deferred_command(document_info.key, attempt, "modified")
            document = self.entity_to_json.convert_entity_to_json(document_info.entity, document_info)
            change_vector = (
                (document_info.change_vector or "") if self.conventions.use_optimistic_concurrency else None
            )
            session_commands.append(PutCommandData(document_info.key, change_vector, document))
            tracked[document_info.key] = document_info

        return session_commands, tracked

    @staticmethod
    def __assert_no_deferred_command(key: str, attempt: FlushAttempt, what: str) -> None:
        for command in attempt.commands:
            if command.key == key and command.command_type in (CommandType.PUT, CommandType.PATCH, CommandType.DELETE):
                raise RuntimeError(
                    f"Cannot perform save because document {key} has been {what} by "
                    f"the session and is also taking part in deferred {command.command_type} command"
                )

    def _after_save_changes(
        self, result: BatchCommandResult, commands: List[CommandData], tracked: Dict[str, DocumentInfo]
    ) -> None:
        if result is None or result.results is None:
            raise ValueError(
                "Received empty response from the server. This is not supposed to happen and is likely a bug."
            )

        for batch_result in result.results[: len(commands)]:
            if batch_result is None:
                continue
            command_type = batch_result.get("Type")
            if command_type == str(CommandType.PUT):
                self.__handle_put(batch_result, tracked)
            elif command_type == str(CommandType.DELETE):
                self.__handle_delete(batch_result)

        for entity_id in list(self._deleted_entities):
            document_info = self._documents_by_entity.pop(entity_id, None)
            if document_info is not None:
                self._documents_by_id.pop(document_info.key, None)
                self._known_missing_ids.add(document_info.key)
        self._deleted_entities.clear()

    def __handle_put(self, batch_result: Dict, tracked: Dict[str, DocumentInfo]) -> None:
        key = batch_result.get(constants.Documents.Metadata.ID)
        document_info = tracked.get(key) or self._documents_by_id.get(key)
        if document_info is None:
            return

        change_vector = batch_result.get(constants.Documents.Metadata.CHANGE_VECTOR)
        metadata = dict(document_info.metadata or {})
        metadata[constants.Documents.Metadata.ID] = key
        if change_vector is not None:
            metadata[constants.Documents.Metadata.CHANGE_VECTOR] = change_vector
        for name in (constants.Documents.Metadata.COLLECTION, constants.Documents.Metadata.LAST_MODIFIED):
            if batch_result.get(name) is not None:
                metadata[name] = batch_result[name]

        document_info.metadata = metadata
        document_info.change_vector = change_vector
        document_info.new_document = False
        document_info.document = self.entity_to_json.convert_entity_to_json(document_info.entity, document_info)

    def __handle_delete(self, batch_result: Dict) -> None:
        key = batch_result.get("Id")
        document_info = self._documents_by_id.pop(key, None)
        if document_info is not None:
            self._documents_by_entity.pop(id(document_info.entity), None)
            self._deleted_entities.pop(id(document_info.entity), None)
        self._known_missing_ids.add(key)

    def defer(self, *commands: CommandData) -> None:
        self._assert_not_closed()
        self._deferred.defer(*commands)

    def clear(self) -> None:
        self._documents_by_id.clear()
        self._documents_by_entity.clear()
        self._deleted_entities.clear()
        self._known_missing_ids.clear()
        self._deferred.clear()

    def close(self) -> None:
        self._closed = True

    @staticmethod
    def __throw_no_database() -> None:
        raise RuntimeError(
            "Cannot open a Session without specifying a name of a database to operate on. "
            "Database name can be passed as an argument when Session is being opened "
            "or default database can be defined using DocumentStore.database property"
        )


class AdvancedSessionOperations:
    def __init__(self, session: DocumentSession):
        self._session = session
        self._attachments: Optional[SessionAttachments] = None

    @property
    def attachments(self) -> SessionAttachments:
        if self._attachments is None:
            self._attachments = SessionAttachments(self._session)
        return self._attachments

    @property
    def number_of_requests(self) -> int:
        return self._session.number_of_requests

    @property
    def last_failed_flush(self) -> Optional[FlushAttempt]:
        return self._session.deferred_commands.last_failed_flush

    @property
    def request_executor(self) -> RequestExecutor:
        return self._session.request_executor

    @property
    def save_changes_options(self) -> Optional[BatchOptions]:
        return self._session._save_changes_options

    @save_changes_options.setter
    def save_changes_options(self, value: Optional[BatchOptions]) -> None:
        self._session._save_changes_options = value

    def defer(self, *commands: CommandData) -> None:
        self._session.defer(*commands)

    def is_loaded(self, key: str) -> bool:
        return self._session.is_loaded(key)

    def has_changed(self, entity: object) -> bool:
        return self._session.has_changed(entity)

    def ignore_changes_for(self, entity: object) -> None:
        self._session._get_document_info(entity).ignore_changes = True

    def get_document_id(self, entity: object) -> Optional[str]:
        document_info = self._session._documents_by_entity.get(id(entity))
        return document_info.key if document_info is not None else None

    def get_change_vector_for(self, entity: object) -> Optional[str]:
        return self._session._get_document_info(entity).change_vector

    def get_metadata_for(self, entity: object) -> Dict:
        return dict(self._session._get_document_info(entity).metadata or {})

    def clear(self) -> None:
        self._session.clear()


class SessionAttachments:
    def __init__(self, session: DocumentSession):
        self.__session = session

    def __document_id(self, entity_or_document_id: Union[str, object]) -> str:
        if not isinstance(entity_or_document_id, str):
            document_info = self.__session._documents_by_entity.get(id(entity_or_document_id))
            if document_info is None:
                raise ValueError(
                    f"{entity_or_document_id!r} is not associated with the session, cannot add attachment to it. "
                    "Use document Id instead or track the entity in the session."
                )
            return document_info.key
        return entity_or_document_id

    def store(
        self,
        entity_or_document_id: Union[str, object],
        name: str,
        stream: bytes,
        content_type: Optional[str] = None,
        change_vector: Optional[str] = None,
    ) -> None:
        document_id = self.__document_id(entity_or_document_id)
        if not document_id:
            raise ValueError("Document id cannot be None")
        if not name:
            raise ValueError("Name cannot be None")

        if self.__session.is_deleted(document_id):
            raise InvalidOperationException(
                f"Can't store attachment {name} of document {document_id}, "
                f"the document was already deleted in this session."
            )

        self.__session.defer(PutAttachmentCommandData(document_id, name, stream, content_type, change_vector))

    def delete(self, entity_or_document_id: Union[str, object], name: str) -> None:
        document_id = self.__document_id(entity_or_document_id)
        if not document_id:
            raise ValueError("Document id cannot be None")
        if not name:
            raise ValueError("Name cannot be None")

        ledger = self.__session.deferred_commands
        if ledger.has_delete(document_id) or IdTypeAndName.create(
            document_id, CommandType.ATTACHMENT_DELETE, name
        ) in ledger:
            return

        if self.__session.is_deleted(document_id):
            return

        self.__session.defer(DeleteAttachmentCommandData(document_id, name, None))
