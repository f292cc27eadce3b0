from __future__ import annotations

import inspect
from datetime import timedelta, datetime
from enum import Enum
from typing import Dict, Callable, Union, Optional, Type

import inflect

from ravendb_subscriptions import constants
from ravendb_subscriptions.tools.utils import Utils

inflect.def_classical["names"] = False
inflector = inflect.engine()


class DocumentConventions(object):
    __cached_default_type_collection_names: Dict[type, str] = {}

    def __init__(self):
        self._frozen = False

        # Value constraints
        self.identity_parts_separator = "/"
        self.max_number_of_requests_per_session = 30

        # Flags
        self.disable_topology_updates = False
        self.use_optimistic_concurrency = False

        # Configuration
        self.json_default_method = DocumentConventions.json_default

        # Utilities
        self._find_python_class: Optional[Callable[[str, Dict], str]] = None
        self._find_collection_name: Callable[[Type], str] = self.default_get_collection_name
        self._find_python_class_name: Callable[
            [Type], str
        ] = lambda object_type: f"{object_type.__module__}.{object_type.__name__}"

        # Timeouts
        self.request_timeout: Optional[timedelta] = None

    def freeze(self):
        self._frozen = True

    @property
    def find_collection_name(self) -> Callable[[type], str]:
        return self._find_collection_name

    @find_collection_name.setter
    def find_collection_name(self, value) -> None:
        self.__assert_not_frozen()
        self._find_collection_name = value

    @property
    def find_python_class(self) -> Callable[[str, Dict], Optional[str]]:
        def __default(key: str, doc: Dict) -> Optional[str]:
            metadata = doc.get(constants.Documents.Metadata.KEY)
            if metadata:
                return metadata.get(constants.Documents.Metadata.RAVEN_PYTHON_TYPE)
            return None

        return self._find_python_class or __default

    @find_python_class.setter
    def find_python_class(self, value: Callable[[str, Dict], str]):
        self.__assert_not_frozen()
        self._find_python_class = value

    def get_python_class(self, key: str, document: Dict) -> str:
        return self.find_python_class(key, document)

    @property
    def find_python_class_name(self) -> Callable[[type], str]:
        return self._find_python_class_name

    @find_python_class_name.setter
    def find_python_class_name(self, value) -> None:
        self.__assert_not_frozen()
        self._find_python_class_name = value

    @staticmethod
    def json_default(o):
        if o is None:
            return None
        if isinstance(o, datetime):
            return Utils.datetime_to_string(o)
        elif isinstance(o, timedelta):
            return Utils.timedelta_to_str(o)
        elif isinstance(o, Enum):
            return o.value
        elif getattr(o, "to_json", None) and getattr(o.to_json, "__call__", None):
            return o.to_json()
        elif getattr(o, "__dict__", None):
            return o.__dict__
        elif isinstance(o, set):
            return list(o)
        else:
            raise TypeError(repr(o) + " is not JSON serializable (Try add a json default method to convention)")

    def get_collection_name(self, entity_or_type: Union[type, object]) -> Optional[str]:
        if not entity_or_type:
            return None
        object_type = type(entity_or_type) if not isinstance(entity_or_type, type) else entity_or_type
        if object_type == dict:
            return None
        collection_name = self._find_collection_name(object_type)
        if collection_name:
            return collection_name

        return self.default_get_collection_name(object_type)

    @staticmethod
    def default_get_collection_name(object_type: type) -> str:
        result = DocumentConventions.__cached_default_type_collection_names.get(object_type)
        if result:
            return result
        # abstract types are only meaningful for polymorphic use, which needs customized conventions
        if inspect.isabstract(object_type):
            raise ValueError(
                f"Cannot find collection name for abstract class {object_type}, "
                f"only concrete class are supported. "
                f"Did you forget to customize conventions.find_collection_name?"
            )
        result = inflector.plural(str(object_type.__name__))
        DocumentConventions.__cached_default_type_collection_names[object_type] = result
        return result

    def __assert_not_frozen(self) -> None:
        if self._frozen:
            raise RuntimeError(
                "Conventions has been frozen after documentStore.initialize()" " and no changes can be applied to them"
            )
