"""
Switch state for the track network.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple

from dispatchsim.universal.indexed_store import IndexedStore
from dispatchsim.universal.universal import (
    ConfigurationError,
    Direction,
    InvalidRouteError,
    UnknownEntityError,
)

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


@dataclass
class Switch:
    """Branch point with a selectable route.

    A train leaving the ``base`` (throat) block in ``direction`` continues into
    whichever alternative is selected. Travelling the other way, a train may
    only pass from the selected alternative into the throat.

    Attributes:
        switch_id: Unique identifier for the switch.
        base: Throat block ID.
        alternatives: Block IDs the throat can lead to.
        direction: Travel direction in which the throat diverges.
        route: Currently selected alternative.
        lamp_id: Optional lamp correlated with the switch.
    """
    switch_id: int
    base: int
    alternatives: Tuple[int, ...]
    direction: Direction
    route: int
    lamp_id: Optional[int] = None

    def is_aligned_for(self, from_block: int, to_block: int) -> bool:
        """Whether moving from one block into the next agrees with the route.

        Moves that do not pass through the throat are always aligned.
        """
        if from_block == self.base and to_block in self.alternatives:
            return to_block == self.route
        if to_block == self.base and from_block in self.alternatives:
            return from_block == self.route
        return True


class SwitchStore:
    """Owns every switch and its selected route."""

    def __init__(self) -> None:
        self._switches: IndexedStore[Switch] = IndexedStore(first_id=0)
        self._facing: Dict[Tuple[int, Direction], int] = {}
        self._trailing: Dict[Tuple[int, int, Direction], int] = {}

    def __len__(self) -> int:
        return len(self._switches)

    def __contains__(self, switch_id: object) -> bool:
        return switch_id in self._switches

    def __iter__(self) -> Iterator[Switch]:
        return iter(self._switches)

    def add(self, switch: Switch) -> None:
        """Register a switch.

        Raises:
            ConfigurationError: If the ID is taken, the alternatives are not
                distinct, the route is not an alternative, or the throat
                already diverges in that direction.
        """
        if switch.switch_id in self._switches:
            raise ConfigurationError(f"Duplicate switch ID {switch.switch_id}.")
        if len(set(switch.alternatives)) != len(switch.alternatives) or len(switch.alternatives) < 2:
            raise ConfigurationError(
                f"Switch {switch.switch_id} needs at least two distinct alternatives.")
        if switch.route not in switch.alternatives:
            raise ConfigurationError(
                f"Switch {switch.switch_id} route {switch.route} is not one of its alternatives.")
        key = (switch.base, switch.direction)
        if key in self._facing:
            raise ConfigurationError(
                f"Block {switch.base} already has switch {self._facing[key]} "
                f"diverging {switch.direction.name.lower()}.")
        self._switches.insert_at(switch.switch_id, switch)
        self._facing[key] = switch.switch_id
        for alternative in switch.alternatives:
            self._trailing[(alternative, switch.base, switch.direction.reverse())] = switch.switch_id

    def get(self, switch_id: int) -> Switch:
        switch = self._switches.get(switch_id)
        if switch is None:
            raise UnknownEntityError(f"Switch ID {switch_id} not found in track network.")
        return switch

    def get_route(self, switch_id: int) -> int:
        return self.get(switch_id).route

    def set_route(self, switch_id: int, route: int) -> bool:
        """Select a route. Returns True if the route actually changed.

        Raises:
            UnknownEntityError: If the switch does not exist.
            InvalidRouteError: If the route is not one of the alternatives.
        """
        switch = self.get(switch_id)
        if route not in switch.alternatives:
            raise InvalidRouteError(
                f"Block {route} is not an alternative of switch {switch_id} "
                f"(alternatives: {list(switch.alternatives)}).")
        if switch.route == route:
            return False
        switch.route = route
        return True

    def facing(self, block_id: int, direction: Direction) -> Optional[Switch]:
        """Switch a train meets throat-first when leaving ``block_id`` in ``direction``."""
        switch_id = self._facing.get((block_id, direction))
        return None if switch_id is None else self._switches[switch_id]

    def trailing(self, from_block: int, to_block: int,
                 direction: Direction) -> Optional[Switch]:
        """Switch a train passes branch-first moving from one block into the throat."""
        switch_id = self._trailing.get((from_block, to_block, direction))
        return None if switch_id is None else self._switches[switch_id]

    def switches_at(self, block_id: int) -> List[Switch]:
        """All switches whose throat is ``block_id``."""
        return [s for s in self._switches if s.base == block_id]
