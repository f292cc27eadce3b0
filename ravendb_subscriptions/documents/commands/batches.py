from __future__ import annotations

import datetime
import json
from abc import abstractmethod
from enum import Enum
from typing import Callable, Optional, TYPE_CHECKING, List, Dict, Any

import requests

from ravendb_subscriptions.http.raven_command import RavenCommand
from ravendb_subscriptions.http.server_node import ServerNode
from ravendb_subscriptions.tools.utils import Utils

if TYPE_CHECKING:
    from ravendb_subscriptions.documents.conventions import DocumentConventions
    from ravendb_subscriptions.documents.session.document_session import DocumentSession


class CommandType(Enum):
    NONE = "None"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"
    ATTACHMENT_PUT = "AttachmentPUT"
    ATTACHMENT_DELETE = "AttachmentDELETE"
    ATTACHMENT_MOVE = "AttachmentMOVE"
    ATTACHMENT_COPY = "AttachmentCOPY"

    def __str__(self):
        return self.value


class BatchCommandResult:
    def __init__(self, results: Optional[List[Dict]], transaction_index: Optional[int]):
        self.results = results
        self.transaction_index = transaction_index

    @classmethod
    def from_json(cls, json_dict: Dict) -> BatchCommandResult:
        return cls(json_dict.get("Results", None), json_dict.get("TransactionIndex", None))


# --------------COMMAND--------------
class SingleNodeBatchCommand(RavenCommand[BatchCommandResult]):
    def __init__(
        self,
        conventions: DocumentConventions,
        commands: List[CommandData],
        options: Optional[BatchOptions] = None,
    ):
        if not conventions:
            raise ValueError("Conventions cannot be None")
        if commands is None:
            raise ValueError("Commands cannot be None")
        for command in commands:
            if command is None:
                raise ValueError("Command cannot be None")

        super().__init__(BatchCommandResult)
        self.__conventions = conventions
        self.__commands = commands
        self.__options = options
        self.__attachment_streams: List[Any] = []

        for command in commands:
            if isinstance(command, PutAttachmentCommandData):
                stream = command.stream
                if any(stream is existing for existing in self.__attachment_streams):
                    raise RuntimeError(
                        "It is forbidden to re-use the same stream for more than one attachment. "
                        "Use a unique stream per put attachment command."
                    )
                self.__attachment_streams.append(stream)

    @property
    def commands(self) -> List[CommandData]:
        return self.__commands

    def is_read_request(self) -> bool:
        return False

    def create_request(self, node: ServerNode) -> requests.Request:
        request = requests.Request(method="POST")
        files = []
        body = {"Commands": []}
        for command in self.__commands:
            if command.command_type == CommandType.ATTACHMENT_PUT:
                command: PutAttachmentCommandData
                files.append(
                    (
                        command.name,
                        (command.name, command.stream, command.content_type, {"Command-Type": "AttachmentStream"}),
                    )
                )
            body["Commands"].append(command.serialize(self.__conventions))

        main = json.dumps(body, default=self.__conventions.json_default_method)
        if files:
            # the json batch must be the first part, attachment streams follow in command order
            request.files = [("main", (None, main, "application/json"))] + files
        else:
            request.data = main

        sb = [f"{node.url}/databases/{node.database}/bulk_docs"]
        self._append_options(sb)

        request.url = "".join(sb)

        return request

    def _append_options(self, sb: List[str]) -> None:
        if self.__options is None:
            return

        parameters = []
        replication_options = self.__options.replication_options
        if replication_options:
            parameters.append(
                f"waitForReplicasTimeout={Utils.timedelta_to_str(replication_options.wait_for_replicas_timeout)}"
            )
            parameters.append(
                f"throwOnTimeoutInWaitForReplicas="
                f"{'true' if replication_options.throw_on_timeout_in_wait_for_replicas else 'false'}"
            )
            parameters.append(
                f"numberOfReplicasToWaitFor="
                f"{'majority' if replication_options.majority else replication_options.number_of_replicas_to_wait_for}"
            )

        index_options = self.__options.index_options
        if index_options:
            parameters.append(f"waitForIndexesTimeout={Utils.timedelta_to_str(index_options.wait_for_indexes_timeout)}")
            parameters.append(
                f"waitForIndexThrow={'true' if index_options.throw_on_timeout_in_wait_for_indexes else 'false'}"
            )
            for specific_index in index_options.wait_for_specific_indexes or []:
                parameters.append(f"waitForSpecificIndex={Utils.quote_key(specific_index)}")

        if parameters:
            sb.append("?")
            sb.append("&".join(parameters))

    def set_response(self, response: Optional[str], from_cache: bool) -> None:
        if response is None:
            raise ValueError(
                "Got None response from the server after doing a batch, something is very wrong."
                " Probably a garbled response."
            )
        self.result = BatchCommandResult.from_json(json.loads(response))


# -------------- DATA ---------------
class CommandData:
    def __init__(
        self,
        key: str = None,
        name: str = None,
        change_vector: str = None,
        command_type: CommandType = None,
        on_before_save_changes: Callable = None,
    ):
        self._key = key
        self._name = name
        self._change_vector = change_vector
        self._command_type = command_type
        self._on_before_save_changes = on_before_save_changes

    @property
    def key(self) -> str:
        return self._key

    @property
    def name(self) -> str:
        return self._name

    @property
    def change_vector(self) -> str:
        return self._change_vector

    @property
    def command_type(self) -> CommandType:
        return self._command_type

    @property
    def on_before_save_changes(self) -> Optional[Callable[[DocumentSession], None]]:
        return self._on_before_save_changes

    @abstractmethod
    def serialize(self, conventions: DocumentConventions) -> dict:
        pass

    def __repr__(self):
        name = f"/{self._name}" if self._name else ""
        return f"{self.__class__.__name__}({self._command_type} {self._key}{name})"


class DeleteCommandData(CommandData):
    def __init__(self, key: str, change_vector: Optional[str] = None):
        if not key:
            raise ValueError("Key cannot be None")
        super(DeleteCommandData, self).__init__(key=key, change_vector=change_vector, command_type=CommandType.DELETE)

    def serialize(self, conventions: DocumentConventions) -> dict:
        return {"Id": self.key, "ChangeVector": self.change_vector, "Type": str(CommandType.DELETE)}


class PutCommandData(CommandData):
    def __init__(self, key: str, change_vector: Optional[str], document: Dict):
        if not key:
            raise ValueError("Key cannot be None")
        if document is None:
            raise ValueError("Document cannot be None")
        super(PutCommandData, self).__init__(
            key=key, name=None, change_vector=change_vector, command_type=CommandType.PUT
        )
        self.__document = document

    @property
    def document(self) -> Dict:
        return self.__document

    def serialize(self, conventions: DocumentConventions) -> dict:
        return {
            "Id": self._key,
            "ChangeVector": self._change_vector,
            "Document": self.__document,
            "Type": str(CommandType.PUT),
        }


class PatchRequest:
    def __init__(self, script: Optional[str] = "", values: Optional[Dict[str, Any]] = None):
        self.values: Dict[str, Any] = values or {}
        self.script = script

    @classmethod
    def for_script(cls, script: str) -> PatchRequest:
        return cls(script)

    def serialize(self) -> Dict:
        return {"Script": self.script, "Values": self.values}


class PatchCommandData(CommandData):
    def __init__(
        self,
        key: str,
        change_vector: Optional[str],
        patch: PatchRequest,
        patch_if_missing: Optional[PatchRequest] = None,
    ):
        if not key:
            raise ValueError("Key cannot be None")
        if not patch:
            raise ValueError("Patch cannot be None")
        super().__init__(key, None, change_vector, CommandType.PATCH, self.__consumer)
        self.create_if_missing: Optional[dict] = None
        self.__patch = patch
        self.__patch_if_missing = patch_if_missing
        self.return_document: Optional[bool] = None

    def __consumer(self, session: DocumentSession) -> None:
        self.return_document = session.advanced.is_loaded(self.key)

    @property
    def patch(self) -> PatchRequest:
        return self.__patch

    @property
    def patch_if_missing(self) -> Optional[PatchRequest]:
        return self.__patch_if_missing

    def serialize(self, conventions: DocumentConventions) -> dict:
        data = {"Id": self.key, "ChangeVector": self.change_vector, "Patch": self.patch.serialize(), "Type": "PATCH"}
        if self.patch_if_missing:
            data.update({"PatchIfMissing": self.patch_if_missing.serialize()})
        if self.create_if_missing:
            data.update({"CreateIfMissing": self.create_if_missing})
        if self.return_document:
            data.update({"ReturnDocument": self.return_document})
        return data


class PutAttachmentCommandData(CommandData):
    def __init__(
        self,
        document_id: str,
        name: str,
        stream: bytes,
        content_type: Optional[str] = None,
        change_vector: Optional[str] = None,
    ):
        if not document_id:
            raise ValueError("Document id cannot be None")
        if not name:
            raise ValueError("Name cannot be None")

        super(PutAttachmentCommandData, self).__init__(document_id, name, change_vector, CommandType.ATTACHMENT_PUT)
        self.__stream = stream
        self.__content_type = content_type

    @property
    def stream(self):
        return self.__stream

    @property
    def content_type(self):
        return self.__content_type

    def serialize(self, conventions: DocumentConventions) -> dict:
        return {
            "Id": self._key,
            "Name": self._name,
            "ContentType": self.__content_type,
            "ChangeVector": self._change_vector,
            "Type": str(self._command_type),
        }


class CopyAttachmentCommandData(CommandData):
    def __init__(
        self,
        source_document_id: str,
        source_name: str,
        destination_document_id: str,
        destination_name: str,
        change_vector: Optional[str] = None,
    ):
        if not source_document_id or source_document_id.isspace():
            raise ValueError("source_document_id is required")
        if not source_name or source_name.isspace():
            raise ValueError("source_name is required")
        if not destination_document_id or destination_document_id.isspace():
            raise ValueError("destination_document_id is required")
        if not destination_name or destination_name.isspace():
            raise ValueError("destination_name is required")
        super().__init__(source_document_id, source_name, change_vector, CommandType.ATTACHMENT_COPY)
        self.destination_id = destination_document_id
        self.destination_name = destination_name

    def serialize(self, conventions: DocumentConventions) -> dict:
        return {
            "Id": self.key,
            "Name": self.name,
            "DestinationId": self.destination_id,
            "DestinationName": self.destination_name,
            "ChangeVector": self.change_vector,
            "Type": str(CommandType.ATTACHMENT_COPY),
        }


class MoveAttachmentCommandData(CommandData):
    def __init__(
        self,
        key: str,
        name: str,
        destination_id: str,
        destination_name: str,
        change_vector: Optional[str] = None,
    ):
        if not key or key.isspace():
            raise ValueError("source_document_id is required")
        if not name or name.isspace():
            raise ValueError("source_name is required")
        if not destination_id or destination_id.isspace():
            raise ValueError("destination_document_id is required")
        if not destination_name or destination_name.isspace():
            raise ValueError("destination_name is required")
        super().__init__(key, name, change_vector, CommandType.ATTACHMENT_MOVE)
        self.destination_id = destination_id
        self.destination_name = destination_name

    def serialize(self, conventions: DocumentConventions) -> dict:
        return {
            "Id": self.key,
            "Name": self.name,
            "DestinationId": self.destination_id,
            "DestinationName": self.destination_name,
            "ChangeVector": self.change_vector,
            "Type": str(CommandType.ATTACHMENT_MOVE),
        }


class DeleteAttachmentCommandData(CommandData):
    def __init__(self, document_id: str, name: str, change_vector: Optional[str] = None):
        if not document_id:
            raise ValueError("Document id cannot be None")
        if not name:
            raise ValueError("Name cannot be None")
        super().__init__(document_id, name, change_vector, CommandType.ATTACHMENT_DELETE)

    def serialize(self, conventions: DocumentConventions) -> dict:
        return {
            "Id": self._key,
            "Name": self.name,
            "ChangeVector": self.change_vector,
            "Type": str(self.command_type),
        }


# ------------ OPTIONS ------------


class ReplicationBatchOptions:
    def __init__(
        self,
        wait_for_replicas: bool = None,
        number_of_replicas_to_wait_for: int = None,
        wait_for_replicas_timeout: datetime.timedelta = None,
        majority: bool = None,
        throw_on_timeout_in_wait_for_replicas: bool = True,
    ):
        self.wait_for_replicas = wait_for_replicas
        self.number_of_replicas_to_wait_for = number_of_replicas_to_wait_for
        self.wait_for_replicas_timeout = wait_for_replicas_timeout
        self.majority = majority
        self.throw_on_timeout_in_wait_for_replicas = throw_on_timeout_in_wait_for_replicas


class IndexBatchOptions:
    def __init__(
        self,
        wait_for_indexes: bool = None,
        wait_for_indexes_timeout: datetime.timedelta = None,
        throw_on_timeout_in_wait_for_indexes: bool = None,
        wait_for_specific_indexes: List[str] = None,
    ):
        self.wait_for_indexes = wait_for_indexes
        self.wait_for_indexes_timeout = wait_for_indexes_timeout
        self.throw_on_timeout_in_wait_for_indexes = throw_on_timeout_in_wait_for_indexes
        self.wait_for_specific_indexes = wait_for_specific_indexes


class BatchOptions:
    def __init__(
        self,
        replication_options: Optional[ReplicationBatchOptions] = None,
        index_options: Optional[IndexBatchOptions] = None,
    ):
        self.replication_options = replication_options
        self.index_options = index_options
