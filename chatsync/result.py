import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Generic, List, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorKind(str, Enum):
    WRITE_FAILED = "write_failed"
    SUBSCRIPTION_FAILED = "subscription_failed"
    RECONCILIATION_ANOMALY = "reconciliation_anomaly"
    BULK_LOAD_FAILED = "bulk_load_failed"
    NOT_FOUND = "not_found"
    INVALID = "invalid"
    NOT_ALLOWED = "not_allowed"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T = None

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str = ""

    @property
    def ok(self) -> bool:
        return False

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}" if self.message else self.kind.value


Result = Union[Ok[T], Err]

ErrorListener = Callable[[Err], Any]


class ErrorChannel:
    """Collects user-facing failures so the UI can decide how to present them."""

    def __init__(self, history_size: int = 100):
        self.history: Deque[Err] = deque(maxlen=history_size)
        self._listeners: List[ErrorListener] = []

    def add_listener(self, listener: ErrorListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: ErrorListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def report(self, error: Err) -> Err:
        logger.warning("Reported error %s", error)
        self.history.append(error)
        for listener in list(self._listeners):
            try:
                listener(error)
            except Exception:
                logger.exception("Error listener %r failed", listener)
        return error

    def clear(self) -> None:
        self.history.clear()
