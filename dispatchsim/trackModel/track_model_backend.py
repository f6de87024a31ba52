"""
Track Model Backend
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Set, Tuple, TYPE_CHECKING

from dispatchsim.trackModel.switch_store import Switch, SwitchStore
from dispatchsim.universal.indexed_store import IndexedStore
from dispatchsim.universal.messages import LampUpdate, MessageBus, OccupancyChanged, SwitchChanged
from dispatchsim.universal.universal import (
    ConfigurationError,
    DeadEndError,
    Direction,
    LampState,
    OccupancyConflictError,
    SwitchLockedError,
    SwitchMisalignedError,
    TrackPoint,
    UnknownEntityError,
)

if TYPE_CHECKING:
    from dispatchsim.universal.config import LevelDescription

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


def _no_exits() -> Dict[Direction, List[int]]:
    return {Direction.FORWARD: [], Direction.BACKWARD: []}


@dataclass
class Block:
    """A single block of track.

    Offsets run from 0 at the block's start to ``length`` at its end. Travel
    in the forward direction leaves through the end, backward through the start.

    Attributes:
        block_id: Unique identifier for the block.
        length: Length of the block in meters.
        lamp_id: Optional lamp showing the block's occupancy.
        virtual: Whether the block was generated for a spawner.
        exits: Blocks reachable when leaving in each direction.
    """
    block_id: int
    length: float
    lamp_id: Optional[int] = None
    virtual: bool = False
    exits: Dict[Direction, List[int]] = field(default_factory=_no_exits)

    def exit_offset(self, direction: Direction) -> float:
        """Offset at which travel in ``direction`` leaves the block."""
        return self.length if direction is Direction.FORWARD else 0.0

    def entry_offset(self, direction: Direction) -> float:
        """Offset at which travel in ``direction`` enters the block."""
        return 0.0 if direction is Direction.FORWARD else self.length

    def is_dead_end(self, direction: Direction) -> bool:
        return not self.exits[direction]


@dataclass(frozen=True)
class TrackSpan:
    """A stretch of one block covered while walking, from ``start`` to ``end``."""
    block_id: int
    start: float
    end: float

    @property
    def low(self) -> float:
        return min(self.start, self.end)

    @property
    def high(self) -> float:
        return max(self.start, self.end)

    @property
    def length(self) -> float:
        return self.high - self.low


@dataclass
class TrainPlacement:
    """Where a train sits on the network: its front point and length behind it."""
    front: TrackPoint
    direction: Direction
    length: float


class OccupancyTracker:
    """Per-block record of which trains cover which offset ranges."""

    def __init__(self) -> None:
        self._blocks: Dict[int, Dict[int, Tuple[float, float]]] = {}
        self._trains: Dict[int, Set[int]] = {}

    def ranges_on(self, block_id: int) -> Dict[int, Tuple[float, float]]:
        return dict(self._blocks.get(block_id, {}))

    def trains_on(self, block_id: int) -> Tuple[int, ...]:
        return tuple(sorted(self._blocks.get(block_id, {})))

    def blocks_of(self, train_id: int) -> Set[int]:
        return set(self._trains.get(train_id, ()))

    def is_occupied(self, block_id: int) -> bool:
        return bool(self._blocks.get(block_id))

    def occupied_blocks(self) -> List[int]:
        return sorted(b for b, trains in self._blocks.items() if trains)

    def find_conflict(self, train_id: int,
                      ranges: Dict[int, Tuple[float, float]]) -> Optional[Tuple[int, int]]:
        """First (block, other train) pair whose extent overlaps ``ranges``."""
        for block_id in sorted(ranges):
            low, high = ranges[block_id]
            for other_id, (other_low, other_high) in sorted(self._blocks.get(block_id, {}).items()):
                if other_id == train_id:
                    continue
                if low < other_high and other_low < high:
                    return block_id, other_id
        return None

    def replace(self, train_id: int, ranges: Dict[int, Tuple[float, float]]) -> Set[int]:
        """Swap a train's records for ``ranges`` and return blocks whose train set changed."""
        old = self._trains.get(train_id, set())
        new = set(ranges)
        for block_id in old - new:
            del self._blocks[block_id][train_id]
            if not self._blocks[block_id]:
                del self._blocks[block_id]
        for block_id, extent in ranges.items():
            self._blocks.setdefault(block_id, {})[train_id] = extent
        if new:
            self._trains[train_id] = new
        else:
            self._trains.pop(train_id, None)
        return old ^ new


class TrackNetwork:
    """Track topology, train placement and occupancy.

    The network is the only writer of occupancy. Every change it commits is
    published on the message bus as ``OccupancyChanged``, together with a
    ``LampUpdate`` when a block's lamp flips between free and occupied.
    """

    def __init__(self, bus: MessageBus, switches: Optional[SwitchStore] = None) -> None:
        self.bus = bus
        self.switches = switches if switches is not None else SwitchStore()
        self.blocks: IndexedStore[Block] = IndexedStore(first_id=0)
        self.occupancy = OccupancyTracker()
        self._placements: Dict[int, TrainPlacement] = {}

    # ---- construction ----
    def add_block(self, block_id: int, length: float,
                  lamp_id: Optional[int] = None) -> Block:
        """Add a block under an explicit ID."""
        if length <= 0:
            raise ConfigurationError(f"Block {block_id} must have a positive length.")
        if block_id in self.blocks:
            raise ConfigurationError(f"Block ID {block_id} already exists in network.")
        block = Block(block_id, float(length), lamp_id)
        self.blocks.insert_at(block_id, block)
        return block

    def add_virtual_block(self, length: float) -> Block:
        """Append a generated block under the next free ID."""
        block_id = self.blocks.next_id
        block = Block(block_id, float(length), virtual=True)
        self.blocks.insert(block)
        logger.debug("Virtual block %d (%.0f m) added", block_id, length)
        return block

    def connect_blocks(self, start: int, end: int,
                       direction: Direction = Direction.FORWARD,
                       bidirectional: bool = True) -> None:
        """Leaving ``start`` in ``direction`` leads into ``end``.

        Args:
            start: Block the connection leaves.
            end: Block the connection enters.
            direction: Travel direction of the connection.
            bidirectional: Also register the reverse move from ``end`` to ``start``.
        """
        for block_id in (start, end):
            if block_id not in self.blocks:
                raise ConfigurationError(
                    f"Connection {start} -> {end} references unknown block {block_id}.")
        if start == end:
            raise ConfigurationError(f"Block {start} cannot connect to itself.")
        self._add_exit(start, end, direction)
        if bidirectional:
            self._add_exit(end, start, direction.reverse())

    def _add_exit(self, start: int, end: int, direction: Direction) -> None:
        exits = self.blocks[start].exits[direction]
        if end in exits:
            raise ConfigurationError(
                f"Duplicate connection from block {start} to block {end}.")
        exits.append(end)

    def add_switch(self, switch: Switch) -> None:
        """Register a switch after checking it against the connections."""
        for block_id in (switch.base,) + tuple(switch.alternatives):
            if block_id not in self.blocks:
                raise ConfigurationError(
                    f"Switch {switch.switch_id} references unknown block {block_id}.")
        exits = self.blocks[switch.base].exits[switch.direction]
        if sorted(exits) != sorted(switch.alternatives):
            raise ConfigurationError(
                f"Switch {switch.switch_id} alternatives {list(switch.alternatives)} do not "
                f"match the exits {exits} of block {switch.base}.")
        for alternative in switch.alternatives:
            back = self.blocks[alternative].exits[switch.direction.reverse()]
            if switch.base not in back:
                raise ConfigurationError(
                    f"Switch {switch.switch_id} alternative {alternative} does not lead "
                    f"back into block {switch.base}.")
        self.switches.add(switch)

    def load_level(self, level: "LevelDescription") -> None:
        """Build blocks, connections and switches from a level description.

        Raises:
            ConfigurationError: If the description is inconsistent.
        """
        for data in level.blocks:
            self.add_block(data.block_id, data.length_m, data.lamp_id)
        for data in level.connections:
            self.connect_blocks(data.start, data.end, data.direction, data.bidirectional)
        for data in level.switches:
            route = data.route if data.route is not None else data.alternatives[0]
            self.add_switch(Switch(data.switch_id, data.base, tuple(data.alternatives),
                                   data.direction, route, data.lamp_id))
        self.validate()
        logger.info("Track network loaded: %d blocks, %d switches",
                    len(self.blocks), len(self.switches))

    def validate(self) -> None:
        """Check every branching exit is controlled by a switch.

        Raises:
            ConfigurationError: If a block has several exits in one direction
                and no switch deciding between them.
        """
        for block in self.blocks:
            for direction, exits in block.exits.items():
                if len(exits) > 1 and self.switches.facing(block.block_id, direction) is None:
                    raise ConfigurationError(
                        f"Block {block.block_id} has {len(exits)} exits going "
                        f"{direction.name.lower()} but no switch.")

    def dead_ends(self) -> List[Tuple[int, Direction]]:
        """Every (block, direction) with nowhere to go."""
        return [(block.block_id, direction)
                for block in self.blocks
                for direction in (Direction.FORWARD, Direction.BACKWARD)
                if block.is_dead_end(direction)]

    def get_block(self, block_id: int) -> Block:
        block = self.blocks.get(block_id)
        if block is None:
            raise UnknownEntityError(f"Block ID {block_id} not found in track network.")
        return block

    # ---- traversal ----
    def next_block_id(self, block_id: int, direction: Direction,
                      strict: bool = True) -> Optional[int]:
        """Block entered when leaving ``block_id`` in ``direction``.

        Raises:
            DeadEndError: If there is no exit (strict only).
            SwitchMisalignedError: If a trailing switch is set against the
                move (strict only).
        """
        block = self.get_block(block_id)
        facing = self.switches.facing(block_id, direction)
        if facing is not None:
            return facing.route
        if block.is_dead_end(direction):
            if strict:
                raise DeadEndError(
                    f"Dead end leaving block {block_id} going {direction.name.lower()}.")
            return None
        target = block.exits[direction][0]
        trailing = self.switches.trailing(block_id, target, direction)
        if trailing is not None and not trailing.is_aligned_for(block_id, target):
            if strict:
                raise SwitchMisalignedError(
                    f"Switch {trailing.switch_id} is set for block {trailing.route}, "
                    f"not block {block_id}.")
            return None
        return target

    def available_length(self, point: TrackPoint, direction: Direction) -> float:
        """Distance from ``point`` to where ``direction`` leaves its block."""
        block = self.get_block(point.block_id)
        return abs(block.exit_offset(direction) - point.offset_m)

    def walk_spans(self, start: TrackPoint, length: float, direction: Direction,
                   strict: bool = True) -> Iterator[TrackSpan]:
        """Walk ``length`` meters from ``start`` and yield the stretch covered in each block.

        A walk ending exactly on a block boundary stays in the block it was
        leaving. A non-strict walk stops early where the track does.
        """
        point = start
        remaining = length
        while True:
            block = self.get_block(point.block_id)
            available = self.available_length(point, direction)
            if remaining < available:
                yield TrackSpan(block.block_id, point.offset_m,
                                point.offset_m + direction.apply_sign(remaining))
                return
            end = block.exit_offset(direction)
            yield TrackSpan(block.block_id, point.offset_m, end)
            remaining -= available
            if remaining <= 0:
                return
            next_id = self.next_block_id(block.block_id, direction, strict)
            if next_id is None:
                return
            point = TrackPoint(next_id, self.blocks[next_id].entry_offset(direction))

    def walk(self, start: TrackPoint, length: float, direction: Direction,
             strict: bool = True) -> Iterator[TrackPoint]:
        """Yield the block-end points crossed and the final point of a walk."""
        for span in self.walk_spans(start, length, direction, strict):
            yield TrackPoint(span.block_id, span.end)

    def step_by(self, start: TrackPoint, length: float, direction: Direction) -> TrackPoint:
        """Point reached after walking ``length`` meters from ``start``."""
        point = start
        for point in self.walk(start, length, direction):
            pass
        return point

    # ---- occupancy ----
    def _extent(self, front: TrackPoint, direction: Direction,
                length: float) -> Dict[int, Tuple[float, float]]:
        ranges: Dict[int, Tuple[float, float]] = {}
        spans = list(self.walk_spans(front, length, direction.reverse(), strict=False))
        for span in spans:
            if span.length == 0 and len(spans) > 1:
                continue
            if span.block_id in ranges:
                low, high = ranges[span.block_id]
                ranges[span.block_id] = (min(low, span.low), max(high, span.high))
            else:
                ranges[span.block_id] = (span.low, span.high)
        return ranges

    def _commit(self, train_id: int, placement: Optional[TrainPlacement],
                ranges: Dict[int, Tuple[float, float]]) -> None:
        conflict = self.occupancy.find_conflict(train_id, ranges)
        if conflict is not None:
            block_id, other_id = conflict
            raise OccupancyConflictError(
                f"Train {train_id} would overlap train {other_id} on block {block_id}.")
        was_occupied = {b: self.occupancy.is_occupied(b)
                        for b in self.occupancy.blocks_of(train_id) | set(ranges)}
        changed = self.occupancy.replace(train_id, ranges)
        if placement is None:
            self._placements.pop(train_id, None)
        else:
            self._placements[train_id] = placement
        for block_id in sorted(changed):
            self.bus.send(OccupancyChanged(block_id, self.occupancy.trains_on(block_id)))
            occupied = self.occupancy.is_occupied(block_id)
            lamp_id = self.blocks[block_id].lamp_id
            if lamp_id is not None and occupied != was_occupied[block_id]:
                self.bus.send(LampUpdate(lamp_id, LampState.for_occupancy(occupied)))
            if block_id in ranges:
                logger.debug("Train %d entered block %d", train_id, block_id)
            else:
                logger.debug("Train %d left block %d", train_id, block_id)

    def place_train(self, train_id: int, front: TrackPoint, direction: Direction,
                    length: float) -> None:
        """Put a train on the track with its front at ``front``.

        Raises:
            ValueError: If the train is already placed or the point is off its block.
            OccupancyConflictError: If it would overlap another train.
        """
        if train_id in self._placements:
            raise ValueError(f"Train {train_id} is already on the track.")
        block = self.get_block(front.block_id)
        if not 0 <= front.offset_m <= block.length:
            raise ValueError(f"Offset {front.offset_m} is outside block {block.block_id}.")
        placement = TrainPlacement(front, direction, float(length))
        self._commit(train_id, placement, self._extent(front, direction, length))

    def remove_train(self, train_id: int) -> None:
        """Take a train off the track and release every block it covered."""
        self.placement(train_id)
        self._commit(train_id, None, {})

    def advance(self, train_id: int, delta_offset: float) -> TrackPoint:
        """Move a train's front by ``delta_offset`` meters and update occupancy.

        The sign of ``delta_offset`` must match the train's travel direction.
        Either the whole move is committed or, on error, nothing changes.

        Returns:
            The new front point.

        Raises:
            ValueError: If the delta points against the train's direction.
            DeadEndError: If the move runs off the network.
            SwitchMisalignedError: If the move trails through a switch set against it.
            OccupancyConflictError: If the move would overlap another train.
        """
        placement = self.placement(train_id)
        if delta_offset == 0:
            return placement.front
        if Direction.from_sign(delta_offset) is not placement.direction:
            raise ValueError(
                f"Train {train_id} travels {placement.direction.name.lower()}; "
                f"cannot advance by {delta_offset}.")
        front = self.step_by(placement.front, abs(delta_offset), placement.direction)
        ranges = self._extent(front, placement.direction, placement.length)
        self._commit(train_id, TrainPlacement(front, placement.direction, placement.length),
                     ranges)
        return front

    def placement(self, train_id: int) -> TrainPlacement:
        placement = self._placements.get(train_id)
        if placement is None:
            raise UnknownEntityError(f"Train ID {train_id} not found in network.")
        return placement

    def front_of(self, train_id: int) -> TrackPoint:
        return self.placement(train_id).front

    def has_train(self, train_id: int) -> bool:
        return train_id in self._placements

    def occupancy_of(self, block_id: int) -> Dict[int, Tuple[float, float]]:
        """Trains on a block, each with its (low, high) offset range."""
        self.get_block(block_id)
        return self.occupancy.ranges_on(block_id)

    def trains_on(self, block_id: int) -> Tuple[int, ...]:
        return self.occupancy.trains_on(block_id)

    def blocks_of(self, train_id: int) -> Set[int]:
        return self.occupancy.blocks_of(train_id)

    def is_occupied(self, block_id: int) -> bool:
        return self.occupancy.is_occupied(block_id)

    # ---- switches ----
    def set_switch(self, switch_id: int, route: int) -> bool:
        """Throw a switch, refusing while a train covers its throat.

        Returns:
            True if the route changed.

        Raises:
            UnknownEntityError: If the switch does not exist.
            InvalidRouteError: If the route is not an alternative.
            SwitchLockedError: If a train occupies the throat block.
        """
        switch = self.switches.get(switch_id)
        if route != switch.route and route in switch.alternatives and self.is_occupied(switch.base):
            raise SwitchLockedError(
                f"Switch {switch_id} is locked: block {switch.base} is occupied by "
                f"train(s) {list(self.trains_on(switch.base))}.")
        changed = self.switches.set_route(switch_id, route)
        if changed:
            self.bus.send(SwitchChanged(switch_id, route))
            logger.info("Switch %d set to block %d", switch_id, route)
        return changed
