"""
Human-visible notifications about what the operator did to an object.
"""

from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
import threading

from sops_operator.resources import KubernetesResource

COMPONENT = "sopssecret-controller"
""" The component name that events are reported under. """


class EventType(str, Enum):
    NORMAL = "Normal"
    WARNING = "Warning"


class EventRecorder(ABC):
    """
    Records events about objects. Recording is best-effort: implementations must not raise, and events may be
    reported out of order relative to other writes.
    """

    @abstractmethod
    def event(self, obj: KubernetesResource, type: EventType, reason: str, message: str) -> None: ...


@dataclass
class RecordingEventRecorder(EventRecorder):
    """
    Keeps the most recent events in memory, formatted as `"<type> <reason> <message>"`.
    """

    maxlen: int = 100
    events: deque[str] = field(init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        self.events = deque(maxlen=self.maxlen)

    def pop(self) -> str:
        """
        Remove and return the oldest recorded event.

        Raises:
            IndexError: If no events were recorded.
        """

        with self._lock:
            return self.events.popleft()

    # EventRecorder

    def event(self, obj: KubernetesResource, type: EventType, reason: str, message: str) -> None:
        with self._lock:
            self.events.append(f"{type.value} {reason} {message}")
