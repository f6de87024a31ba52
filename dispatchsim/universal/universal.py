"""
Universal data structures, errors and conversion functions for the dispatch simulation.
"""
from dataclasses import dataclass
from enum import Enum


class Direction(Enum):
    """Travel direction along a block.

    Forward is defined as increasing offset (towards the block's far end),
    and Backward is decreasing offset (towards the block's start)."""
    FORWARD = 1
    BACKWARD = -1

    def reverse(self) -> "Direction":
        """Return the opposite direction."""
        if self is Direction.FORWARD:
            return Direction.BACKWARD
        return Direction.FORWARD

    def apply_sign(self, value: float) -> float:
        """Multiply a magnitude by this direction's sign."""
        return value * self.value

    @classmethod
    def from_sign(cls, value: float) -> "Direction":
        """Direction matching the sign of a non-zero offset delta."""
        if value == 0:
            raise ValueError("Direction is undefined for a zero delta.")
        return cls.FORWARD if value > 0 else cls.BACKWARD


class SignalAspect(Enum):
    """Enumeration of signal aspects, from most to least restrictive."""
    STOP = "stop"
    CAUTION = "caution"
    CLEAR = "clear"


class LampState(Enum):
    """Visual state of a lamp as consumed by the rendering collaborator."""
    OFF = "off"
    ON = "on"
    RED = "red"
    YELLOW = "yellow"
    GREEN = "green"

    @staticmethod
    def for_aspect(aspect: SignalAspect) -> "LampState":
        return {
            SignalAspect.STOP: LampState.RED,
            SignalAspect.CAUTION: LampState.YELLOW,
            SignalAspect.CLEAR: LampState.GREEN,
        }[aspect]

    @staticmethod
    def for_occupancy(occupied: bool) -> "LampState":
        return LampState.ON if occupied else LampState.OFF


class SpawnerKind(Enum):
    """What a spawner is allowed to do at its network edge."""
    SPAWN = "spawn"
    DESPAWN = "despawn"
    BOTH = "both"

    @property
    def can_spawn(self) -> bool:
        return self is not SpawnerKind.DESPAWN

    @property
    def can_despawn(self) -> bool:
        return self is not SpawnerKind.SPAWN


@dataclass(frozen=True)
class TrackPoint:
    """A position on the network.

    Attributes:
        block_id: ID of the block the point lies on.
        offset_m: Distance from the block's start in meters.
    """
    block_id: int
    offset_m: float

    def __str__(self) -> str:
        return f"block {self.block_id} at {self.offset_m:.0f} m"


class SimulationError(Exception):
    """Base class for every rejection raised by the simulation core."""


class ConfigurationError(SimulationError, ValueError):
    """Raised when a level description or tuning config is malformed."""


class UnknownEntityError(SimulationError, ValueError):
    """Raised when a request names an entity ID the simulation does not know."""


class InvalidRouteError(SimulationError, ValueError):
    """Raised when a switch route is not one of its declared alternatives."""


class SwitchLockedError(SimulationError):
    """Raised when a switch is thrown while a train occupies its throat."""


class SpawnerBusyError(SimulationError):
    """Raised when a spawner cannot place a train in its virtual block."""


class TrackError(SimulationError):
    """Base class for traversal defects found while moving along the track."""


class DeadEndError(TrackError):
    """Raised when a traversal runs off a block with no onward connection."""


class SwitchMisalignedError(TrackError):
    """Raised when a traversal trails through a switch set against it."""


class OccupancyConflictError(TrackError):
    """Raised when a move would overlap another train's extent."""


class ConversionFunctions:
    """Holds conversion factors for various units."""

    @staticmethod
    def kmh_to_mps(kmh):
        return kmh / 3.6  # conversion factor

    @staticmethod
    def mps_to_kmh(mps):
        return mps * 3.6  # conversion factor

    @staticmethod
    def kw_to_w(kw):
        return kw * 1000.0

    @staticmethod
    def kn_to_n(kn):
        return kn * 1000.0

    @staticmethod
    def tonnes_to_kg(tonnes):
        """Convert metric tonnes to kilograms."""
        return tonnes * 1000.0
