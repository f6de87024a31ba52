"""Message protocol connecting the simulation subsystems.

Each message type has its own double-buffered queue. A message sent during
step N stays readable through the end of step N+1; ``MessageBus.update()``
at the end of every step drops the older buffer. Every consumer owns a
``MessageReader`` with its own cursor, so several consumers can read the same
messages and nobody reads a message twice.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Generic, List, Optional, Tuple, Type, TypeVar

from dispatchsim.universal.universal import Direction, LampState, SignalAspect, TrackPoint

if TYPE_CHECKING:
    from dispatchsim.trainModel.train_model_backend import VehicleProfile

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

M = TypeVar("M")


@dataclass(frozen=True)
class OccupancyChanged:
    """A block's set of occupying trains changed."""
    block_id: int
    train_ids: Tuple[int, ...]

    @property
    def occupied(self) -> bool:
        return bool(self.train_ids)


@dataclass(frozen=True)
class AspectChanged:
    """A signal shows a new aspect."""
    signal_id: int
    aspect: SignalAspect


@dataclass(frozen=True)
class SwitchChanged:
    """A switch was set to a new route (destination block ID)."""
    switch_id: int
    route: int


@dataclass(frozen=True)
class LampUpdate:
    """Visual state for a lamp correlated with a block or signal."""
    lamp_id: int
    state: LampState


@dataclass(frozen=True)
class SpawnRequest:
    """Ask a spawner to create a train with the given vehicle profile."""
    spawner_id: int
    profile: "VehicleProfile"


@dataclass(frozen=True)
class TrainDespawnRequest:
    """Ask for a train to be removed unconditionally."""
    train_id: int


@dataclass(frozen=True)
class SwitchRequest:
    """Queued request to throw a switch at the next step."""
    switch_id: int
    route: int


@dataclass(frozen=True)
class TrainSpawned:
    """Creation notification for a new train."""
    train_id: int
    spawner_id: int
    number: str
    direction: Direction


@dataclass(frozen=True)
class TrainDespawned:
    """Destruction notification for a removed train."""
    train_id: int
    number: str


@dataclass(frozen=True)
class TrainStateUpdate:
    """Per-step kinematic state of a live train."""
    train_id: int
    position: TrackPoint
    speed_mps: float
    speed_limit_mps: float


class _MessageQueue(Generic[M]):
    """Two buffers of one message type plus the absolute index of the oldest."""

    def __init__(self) -> None:
        self.previous: List[M] = []
        self.current: List[M] = []
        self.start = 0

    @property
    def end(self) -> int:
        return self.start + len(self.previous) + len(self.current)

    def send(self, message: M) -> None:
        self.current.append(message)

    def since(self, cursor: int) -> List[M]:
        index = max(cursor, self.start) - self.start
        retained = self.previous + self.current
        return retained[index:]

    def update(self) -> None:
        self.start += len(self.previous)
        self.previous = self.current
        self.current = []


class MessageReader(Generic[M]):
    """Cursor over one message type on a bus."""

    def __init__(self, queue: _MessageQueue[M]) -> None:
        self._queue = queue
        self._cursor = queue.start

    def read(self) -> List[M]:
        """Return messages sent since the previous read, oldest first."""
        messages = self._queue.since(self._cursor)
        self._cursor = self._queue.end
        return messages

    def skip(self) -> None:
        """Mark every retained message as read."""
        self._cursor = self._queue.end

    def __len__(self) -> int:
        return self._queue.end - max(self._cursor, self._queue.start)


class MessageBus:
    """Step-scoped message queues for every message type in use."""

    def __init__(self) -> None:
        self._queues: Dict[type, _MessageQueue] = {}
        self.sent_this_step = 0

    def _queue(self, message_type: Type[M]) -> _MessageQueue[M]:
        queue = self._queues.get(message_type)
        if queue is None:
            queue = _MessageQueue()
            self._queues[message_type] = queue
        return queue

    def send(self, message: object) -> None:
        self._queue(type(message)).send(message)
        self.sent_this_step += 1

    def send_batch(self, messages) -> None:
        for message in messages:
            self.send(message)

    def reader(self, message_type: Type[M]) -> MessageReader[M]:
        return MessageReader(self._queue(message_type))

    def retained(self, message_type: Type[M]) -> List[M]:
        """All messages of a type still held by the bus, oldest first."""
        queue = self._queue(message_type)
        return queue.since(queue.start)

    def latest(self, message_type: Type[M]) -> Optional[M]:
        retained = self.retained(message_type)
        return retained[-1] if retained else None

    def update(self) -> None:
        """Swap buffers; called once at the end of every step."""
        for queue in self._queues.values():
            queue.update()
        logger.debug("Message bus swapped buffers after %d messages", self.sent_this_step)
        self.sent_this_step = 0
