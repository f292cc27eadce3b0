from __future__ import annotations

from copy import deepcopy
from typing import Optional, TYPE_CHECKING, Type, TypeVar, Dict

from ravendb_subscriptions import constants
from ravendb_subscriptions.documents.session.document_info import DocumentInfo
from ravendb_subscriptions.tools.utils import Utils

if TYPE_CHECKING:
    from ravendb_subscriptions.documents.conventions import DocumentConventions
    from ravendb_subscriptions.documents.session.document_session import DocumentSession


_T = TypeVar("_T")


class EntityToJson:
    def __init__(self, session: DocumentSession):
        self._session = session

    def convert_entity_to_json(self, entity: object, document_info: Optional[DocumentInfo]) -> dict:
        return EntityToJson.convert_entity_to_json_static(entity, self._session.conventions, document_info)

    @staticmethod
    def convert_entity_to_json_static(
        entity, conventions: DocumentConventions, document_info: Optional[DocumentInfo]
    ) -> dict:
        json_node = Utils.entity_to_dict(entity, conventions.json_default_method)
        json_node.pop(constants.Documents.Metadata.KEY, None)
        EntityToJson.write_metadata(json_node, document_info)
        return json_node

    def convert_to_entity(self, entity_type: Optional[Type[_T]], key: str, document: dict) -> _T:
        return EntityToJson.convert_to_entity_by_key_static(entity_type, key, document, self._session.conventions)

    @staticmethod
    def write_metadata(json_node: dict, document_info: Optional[DocumentInfo]) -> None:
        if document_info is None:
            return

        metadata_node = {}
        if document_info.metadata:
            for name, value in document_info.metadata.items():
                metadata_node[name] = deepcopy(value)

        if document_info.collection:
            metadata_node[constants.Documents.Metadata.COLLECTION] = document_info.collection

        if metadata_node:
            json_node[constants.Documents.Metadata.KEY] = metadata_node

    @staticmethod
    def convert_to_entity_by_key_static(
        entity_class: Optional[Type[_T]], key: str, document: Dict, conventions: DocumentConventions
    ) -> _T:
        try:
            return EntityToJson.convert_to_entity_static(document, entity_class, conventions)
        except Exception as e:
            raise RuntimeError(f"Could not convert document {key} to entity of type {entity_class}", e)

    @staticmethod
    def convert_to_entity_static(
        document: dict, object_type: Optional[Type[_T]], conventions: DocumentConventions
    ) -> _T:
        if object_type == dict:
            return deepcopy(document)

        # the stored python type wins when it is the requested type or one of its subclasses
        type_name = conventions.get_python_class(None, document)
        if type_name is not None:
            type_from_metadata = Utils.import_class(type_name)
            if type_from_metadata is not None and (object_type is None or issubclass(type_from_metadata, object_type)):
                object_type = type_from_metadata

        return Utils.convert_json_dict_to_object(deepcopy(document), object_type)
