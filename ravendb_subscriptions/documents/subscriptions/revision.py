from typing import Generic, TypeVar, Optional

_T = TypeVar("_T")


class Revision(Generic[_T]):
    """
    A single change delivered by a revisions subscription: the document before and after it.
    previous is None for a creation, current is None for a deletion.
    """

    def __init__(self, previous: Optional[_T] = None, current: Optional[_T] = None):
        self.previous = previous
        self.current = current

    @property
    def is_creation(self) -> bool:
        return self.previous is None and self.current is not None

    @property
    def is_deletion(self) -> bool:
        return self.current is None and self.previous is not None
