from __future__ import annotations

import json
import urllib.parse
from datetime import datetime, timedelta
from typing import Optional, Dict, TypeVar, Type, Union

from ravendb_subscriptions import constants

_T = TypeVar("_T")


class _DynamicStructure(object):
    def __init__(self, **entries):
        self.__dict__.update(entries)

    def __str__(self):
        return str(self.__dict__)


class Utils(object):
    @staticmethod
    def quote_key(key, reserved_slash=False, reserved_at=False) -> str:
        reserved = "%:=&?~#+!$,;'*[]"
        if reserved_slash:
            reserved += "/"
        if reserved_at:
            reserved += "@"
        if key:
            return urllib.parse.quote(key, safe=reserved)
        return ""

    @staticmethod
    def import_class(name) -> Optional[Type]:
        components = name.split(".")
        module_name = ".".join(components[:-1])
        try:
            return getattr(__import__(module_name, fromlist=[components[-1]]), components[-1])
        except (ImportError, ValueError, AttributeError):
            return None

    @staticmethod
    def convert_json_dict_to_object(
        json_dict: Dict, object_type: Optional[Type[_T]] = None
    ) -> Union[_DynamicStructure, _T, Dict]:
        if object_type == dict:
            return json_dict

        fields = {key: value for key, value in json_dict.items() if key != constants.Documents.Metadata.KEY}
        if object_type is None:
            return _DynamicStructure(**fields)

        from_json = getattr(object_type, "from_json", None)
        if callable(from_json):
            return from_json(fields)

        # skip __init__, entities are restored from their stored fields
        entity = object_type.__new__(object_type)
        entity.__dict__.update(fields)
        return entity

    @staticmethod
    def datetime_to_string(datetime_obj: datetime):
        add_suffix = "0" if datetime_obj != datetime.max else "9"
        return datetime_obj.strftime(f"%Y-%m-%dT%H:%M:%S.%f{add_suffix}") if datetime_obj else ""

    @staticmethod
    def string_to_datetime(datetime_str):
        if datetime_str is None:
            return None
        if datetime_str.endswith("Z"):
            datetime_str = datetime_str[:-1]
        try:
            return datetime.strptime(datetime_str, "%Y-%m-%dT%H:%M:%S.%f")
        except ValueError:
            return datetime.strptime(datetime_str[:-1], "%Y-%m-%dT%H:%M:%S.%f")

    @staticmethod
    def timedelta_to_str(timedelta_obj: timedelta):
        timedelta_str = None
        if isinstance(timedelta_obj, timedelta):
            timedelta_str = ""
            total_seconds = timedelta_obj.seconds
            days = timedelta_obj.days
            hours = total_seconds // 3600
            minutes = (total_seconds // 60) % 60
            seconds = (total_seconds % 3600) % 60
            microseconds = timedelta_obj.microseconds
            if days > 0:
                timedelta_str += "{0}.".format(days)
            timedelta_str += "{:02}:{:02}:{:02}".format(hours, minutes, seconds)
            if microseconds > 0:
                timedelta_str += f".{str(microseconds).rjust(6, '0')}"
        return timedelta_str

    @staticmethod
    def entity_to_dict(entity, default_method) -> dict:
        return json.loads(json.dumps(entity, default=default_method))

    @staticmethod
    def escape_collection_name(collection_name: str):
        special = ["'", '"', "\\"]
        buffer = []
        for char in collection_name:
            if char in special:
                buffer.append("\\")
            buffer.append(char)

        return "".join(buffer)
