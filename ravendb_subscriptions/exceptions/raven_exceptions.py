from __future__ import annotations

from abc import abstractmethod


class RavenException(RuntimeError):
    def __init__(self, message: str = None, cause: BaseException = None):
        super(RavenException, self).__init__(message)
        self.cause = cause


class ConflictException(RavenException):
    @abstractmethod
    def __init__(self, message: str = None, cause: BaseException = None):
        super().__init__(message, cause)


class ConcurrencyException(ConflictException):
    def __init__(self, message: str = None, cause: BaseException = None):
        super().__init__(message, cause)


class DocumentConflictException(ConflictException):
    def __init__(self, message: str, doc_id: str = None, largest_etag: int = None):
        super(DocumentConflictException, self).__init__(message)
        self.doc_id = doc_id
        self.largest_etag = largest_etag

    @classmethod
    def from_message(cls, message: str) -> DocumentConflictException:
        return cls(message, None, 0)
