from enum import Enum
from typing import Optional, Dict

from ravendb_subscriptions.exceptions.raven_exceptions import RavenException


class InvalidOperationException(Exception):
    pass


class DatabaseDoesNotExistException(RavenException):
    pass


class AuthorizationException(RavenException):
    pass


class AllTopologyNodesDownException(Exception):
    pass


class DeferredCommandConflictException(InvalidOperationException):
    def __init__(self, message: str, doc_id: Optional[str] = None):
        super(DeferredCommandConflictException, self).__init__(message)
        self.doc_id = doc_id


# <---------- Subscription Exceptions ---------->


class SubscriptionErrorKind(Enum):
    PROTOCOL_MISMATCH = "ProtocolMismatch"
    DOES_NOT_EXIST = "SubscriptionDoesNotExist"
    IN_USE = "SubscriptionInUse"
    CLOSED = "SubscriptionClosed"
    SUBSCRIBER_ERROR = "SubscriberError"
    CONNECTION_TRANSIENT = "ConnectionTransient"
    INVALID_DOCUMENT_IN_BATCH = "InvalidDocumentInBatch"
    INVALID_STATE = "SubscriptionInvalidState"
    DOES_NOT_BELONG_TO_NODE = "SubscriptionDoesNotBelongToNode"
    CHANGE_VECTOR_UPDATE_CONCURRENCY = "SubscriptionChangeVectorUpdateConcurrency"
    SERVER_ERROR = "ServerError"

    def __str__(self):
        return self.value


class SubscriptionException(RavenException):
    kind = SubscriptionErrorKind.SERVER_ERROR


class SubscriptionProtocolMismatchException(SubscriptionException):
    kind = SubscriptionErrorKind.PROTOCOL_MISMATCH


class SubscriptionInUseException(SubscriptionException):
    kind = SubscriptionErrorKind.IN_USE


class SubscriptionClosedException(SubscriptionException):
    kind = SubscriptionErrorKind.CLOSED

    def __init__(self, message: str = None, cause: BaseException = None, can_reconnect: Optional[bool] = None):
        super(SubscriptionClosedException, self).__init__(message, cause)
        self.can_reconnect = can_reconnect


class SubscriptionInvalidStateException(SubscriptionException):
    kind = SubscriptionErrorKind.INVALID_STATE


class SubscriptionDoesNotExistException(SubscriptionException):
    kind = SubscriptionErrorKind.DOES_NOT_EXIST


class SubscriptionDoesNotBelongToNodeException(SubscriptionException):
    kind = SubscriptionErrorKind.DOES_NOT_BELONG_TO_NODE

    def __init__(
        self,
        message: str = None,
        cause: BaseException = None,
        appropriate_node: Optional[str] = None,
        reasons: Dict[str, str] = None,
    ):
        super(SubscriptionDoesNotBelongToNodeException, self).__init__(message, cause)
        self.appropriate_node = appropriate_node
        self.reasons = reasons or {}


class SubscriptionChangeVectorUpdateConcurrencyException(SubscriptionException):
    kind = SubscriptionErrorKind.CHANGE_VECTOR_UPDATE_CONCURRENCY


class SubscriptionConnectionTransientException(SubscriptionException):
    kind = SubscriptionErrorKind.CONNECTION_TRANSIENT


class SubscriberErrorException(SubscriptionException):
    kind = SubscriptionErrorKind.SUBSCRIBER_ERROR


class InvalidDocumentInBatchException(SubscriptionException):
    kind = SubscriptionErrorKind.INVALID_DOCUMENT_IN_BATCH

    def __init__(self, message: str = None, key: Optional[str] = None, change_vector: Optional[str] = None):
        super(InvalidDocumentInBatchException, self).__init__(message)
        self.key = key
        self.change_vector = change_vector
