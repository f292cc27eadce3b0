from __future__ import annotations

import http
import os
from typing import Dict, Optional, Type

from ravendb_subscriptions.exceptions import exceptions
from ravendb_subscriptions.exceptions.raven_exceptions import (
    ConcurrencyException,
    DocumentConflictException,
    RavenException,
)


class ExceptionDispatcher:
    _KNOWN_TYPES: Dict[str, Type[Exception]] = {
        "DatabaseDoesNotExistException": exceptions.DatabaseDoesNotExistException,
        "AuthorizationException": exceptions.AuthorizationException,
        "ConcurrencyException": ConcurrencyException,
        "DocumentConflictException": DocumentConflictException,
        "SubscriptionException": exceptions.SubscriptionException,
        "SubscriptionInUseException": exceptions.SubscriptionInUseException,
        "SubscriptionClosedException": exceptions.SubscriptionClosedException,
        "SubscriptionInvalidStateException": exceptions.SubscriptionInvalidStateException,
        "SubscriptionDoesNotExistException": exceptions.SubscriptionDoesNotExistException,
        "SubscriptionDoesNotBelongToNodeException": exceptions.SubscriptionDoesNotBelongToNodeException,
        "SubscriptionChangeVectorUpdateConcurrencyException": (
            exceptions.SubscriptionChangeVectorUpdateConcurrencyException
        ),
        "SubscriberErrorException": exceptions.SubscriberErrorException,
    }

    class ExceptionSchema:
        def __init__(self, url: str = None, object_type: str = None, message: str = None, error: str = None):
            self.url = url
            self.type = object_type
            self.message = message
            self.error = error

        @classmethod
        def from_json(cls, json_dict: Dict) -> ExceptionDispatcher.ExceptionSchema:
            return cls(json_dict.get("Url"), json_dict.get("Type"), json_dict.get("Message"), json_dict.get("Error"))

    @staticmethod
    def get(schema: ExceptionDispatcher.ExceptionSchema, code: int, inner: Exception = None) -> RavenException:
        message = schema.message
        type_as_string = schema.type or ""

        if code == http.HTTPStatus.CONFLICT:
            if "DocumentConflictException" in type_as_string:
                return DocumentConflictException.from_message(message)
            return ConcurrencyException(message)

        error = f"{schema.error}{os.linesep}The server at {schema.url} responded with status code: {code}"

        error_type = ExceptionDispatcher.get_type(type_as_string)
        if error_type is None:
            return RavenException(error, inner)

        exception = error_type(error)

        if not isinstance(exception, RavenException):
            return RavenException(error, exception)

        return exception

    @staticmethod
    def get_subscription_error(exception_text: Optional[str], message: Optional[str]) -> RavenException:
        """
        Converts the payload of a subscription ``Error`` frame into a typed exception.
        The server sends the exception type name (possibly followed by its details), unknown types
        become a plain ``SubscriptionException`` so the caller can still match on ``kind``.
        """
        error = f"Connection terminated by server. Exception: {exception_text}"
        if message:
            error = f"{error}{os.linesep}{message}"

        error_type = ExceptionDispatcher.get_type(exception_text or "")
        if error_type is None or not issubclass(error_type, RavenException):
            return exceptions.SubscriptionException(error)
        return error_type(error)

    @staticmethod
    def get_type(type_as_string: str) -> Optional[Type[Exception]]:
        if "System.TimeoutException" == type_as_string:
            return TimeoutError

        # "Raven.Client.Exceptions.Documents.Subscriptions.SubscriptionInUseException: details..."
        head = type_as_string.split(":", 1)[0].strip()
        name = head.rsplit(".", 1)[-1]
        return ExceptionDispatcher._KNOWN_TYPES.get(name)
