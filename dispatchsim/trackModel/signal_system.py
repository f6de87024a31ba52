"""
Signal aspects derived from occupancy and switch state.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

from dispatchsim.trackModel.track_model_backend import TrackNetwork
from dispatchsim.universal.config import LampData, SignalData, SimulationConfig
from dispatchsim.universal.indexed_store import IndexedStore
from dispatchsim.universal.messages import (
    AspectChanged,
    LampUpdate,
    MessageBus,
    OccupancyChanged,
    SwitchChanged,
)
from dispatchsim.universal.universal import (
    ConfigurationError,
    Direction,
    LampState,
    SignalAspect,
    TrackPoint,
    UnknownEntityError,
)

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


@dataclass
class Signal:
    """A guard point facing one travel direction.

    Attributes:
        signal_id: Unique identifier for the signal.
        position: Point the signal guards.
        direction: Travel direction the signal applies to.
        lookahead: Length of track ahead the signal watches.
        braking_distance: Occupancy closer than this gives stop.
        lamp_id: Optional lamp showing the aspect.
        name: Display name.
        route: Switch settings the signal protects, ``{switch_id: block_id}``.
        fixed_aspect: Aspect the signal always shows, if any.
        aspect: Aspect currently shown.
        window: Blocks the current aspect was computed from.
    """
    signal_id: int
    position: TrackPoint
    direction: Direction
    lookahead: float
    braking_distance: float
    lamp_id: Optional[int] = None
    name: str = ""
    route: Dict[int, int] = field(default_factory=dict)
    fixed_aspect: Optional[SignalAspect] = None
    aspect: SignalAspect = SignalAspect.STOP
    window: Tuple[int, ...] = ()

    @property
    def display_name(self) -> str:
        return self.name or f"S{self.signal_id}"


@dataclass(frozen=True)
class AspectResult:
    """Outcome of evaluating a signal against the current track state."""
    aspect: SignalAspect
    window: Tuple[int, ...]
    reason: str


class SignalSystem:
    """Owns the signals and keeps their aspects current.

    Aspects are recomputed only for signals whose watched blocks saw an
    occupancy or switch change, plus signals standing on an occupied block
    (a train moving within that block can pass the signal without any
    block-level change).
    """

    def __init__(self, network: TrackNetwork, bus: MessageBus,
                 config: Optional[SimulationConfig] = None,
                 lamps: Optional[Mapping[int, LampData]] = None) -> None:
        self.network = network
        self.bus = bus
        self.config = config if config is not None else SimulationConfig()
        self.lamps: Dict[int, LampData] = dict(lamps or {})
        self.signals: IndexedStore[Signal] = IndexedStore(first_id=0)
        self._by_position: Dict[Tuple[int, Direction], List[int]] = {}
        self._standing_on: Dict[int, Set[int]] = {}
        self._watchers: Dict[int, Set[int]] = {}
        self._occupancy = bus.reader(OccupancyChanged)
        self._switches = bus.reader(SwitchChanged)

    # ---- construction ----
    def add_signal(self, signal: Signal) -> Signal:
        """Register a signal under its own ID.

        Raises:
            ConfigurationError: If the ID is taken, the position is off the
                network, or the protected route names an unknown switch or route.
        """
        if signal.signal_id in self.signals:
            raise ConfigurationError(f"Duplicate signal ID {signal.signal_id}.")
        self._check_signal(signal)
        self.signals.insert_at(signal.signal_id, signal)
        self._index(signal)
        return signal

    def add_fixed_signal(self, position: TrackPoint, direction: Direction,
                         aspect: SignalAspect = SignalAspect.CLEAR, name: str = "") -> Signal:
        """Add a signal that always shows ``aspect``, under the next free ID."""
        signal_id = self.signals.next_id
        signal = Signal(signal_id, position, direction, lookahead=0.0, braking_distance=0.0,
                        name=name, fixed_aspect=aspect, aspect=aspect)
        self._check_signal(signal)
        self.signals.insert(signal)
        self._index(signal)
        return signal

    def load_signals(self, signals: Iterable[SignalData]) -> None:
        for data in signals:
            lookahead = data.lookahead_m or self.config.default_lookahead_m
            braking = data.braking_distance_m or self.config.signal_braking_distance_m
            self.add_signal(Signal(
                data.signal_id, TrackPoint(data.block_id, data.offset_m), data.direction,
                lookahead, braking, data.lamp_id, data.name, dict(data.route)))

    def _check_signal(self, signal: Signal) -> None:
        block = self.network.blocks.get(signal.position.block_id)
        if block is None:
            raise ConfigurationError(
                f"Signal {signal.signal_id} is on unknown block {signal.position.block_id}.")
        if not 0 <= signal.position.offset_m <= block.length:
            raise ConfigurationError(
                f"Signal {signal.signal_id} offset {signal.position.offset_m} is outside "
                f"block {block.block_id}.")
        for switch_id, route in signal.route.items():
            if switch_id not in self.network.switches:
                raise ConfigurationError(
                    f"Signal {signal.signal_id} protects unknown switch {switch_id}.")
            if route not in self.network.switches.get(switch_id).alternatives:
                raise ConfigurationError(
                    f"Signal {signal.signal_id} expects switch {switch_id} at block {route}, "
                    f"which is not one of its alternatives.")

    def _index(self, signal: Signal) -> None:
        key = (signal.position.block_id, signal.direction)
        ids = self._by_position.setdefault(key, [])
        ids.append(signal.signal_id)
        ids.sort(key=lambda i: self.signals[i].position.offset_m)
        if signal.fixed_aspect is None:
            self._standing_on.setdefault(signal.position.block_id, set()).add(signal.signal_id)

    def initialize(self) -> None:
        """Compute and publish the aspect of every signal."""
        for signal in self.signals:
            self._refresh(signal, force=True)
        self._occupancy.skip()
        self._switches.skip()
        logger.info("Signal system initialized with %d signals", len(self.signals))

    # ---- queries ----
    def get(self, signal_id: int) -> Signal:
        signal = self.signals.get(signal_id)
        if signal is None:
            raise UnknownEntityError(f"Signal ID {signal_id} not found.")
        return signal

    def aspect_of(self, signal_id: int) -> SignalAspect:
        return self.get(signal_id).aspect

    def aspect_speed_mps(self, aspect: SignalAspect) -> Optional[float]:
        """Speed allowed past a signal showing ``aspect``. None means unrestricted."""
        if aspect is SignalAspect.STOP:
            return 0.0
        if aspect is SignalAspect.CAUTION:
            return self.config.caution_speed_mps
        return None

    def watchers(self, block_id: int) -> Set[int]:
        """Signals whose current window includes ``block_id``."""
        return set(self._watchers.get(block_id, ()))

    def signals_ahead(self, point: TrackPoint, direction: Direction,
                      max_distance: float) -> Iterator[Tuple[Signal, float]]:
        """Yield signals facing ``direction`` ahead of ``point``, nearest first.

        A signal exactly at ``point`` is reported at distance zero.
        """
        travelled = 0.0
        for span in self.network.walk_spans(point, max_distance, direction, strict=False):
            ids = self._by_position.get((span.block_id, direction), [])
            if direction is Direction.BACKWARD:
                ids = list(reversed(ids))
            for signal_id in ids:
                signal = self.signals[signal_id]
                offset = signal.position.offset_m
                if span.low <= offset <= span.high:
                    yield signal, travelled + abs(offset - span.start)
            travelled += span.length

    def signal_at(self, x: float, y: float, tolerance: float = 0.0) -> Optional[Signal]:
        """Signal whose lamp rectangle contains the given point, if any."""
        for signal in self.signals:
            lamp = self.lamps.get(signal.lamp_id) if signal.lamp_id is not None else None
            if lamp is not None and lamp.contains(x, y, tolerance):
                return signal
        return None

    # ---- aspect computation ----
    def _occupied_ahead(self, block_id: int, offset: Optional[float],
                        direction: Direction) -> bool:
        ranges = self.network.occupancy.ranges_on(block_id)
        if offset is None:
            return bool(ranges)
        if direction is Direction.FORWARD:
            return any(high > offset for _, high in ranges.values())
        return any(low < offset for low, _ in ranges.values())

    def compute_aspect(self, signal: Signal) -> AspectResult:
        """Evaluate a signal against current occupancy and switch state.

        Does not modify the signal; calling it twice on unchanged state gives
        the same result.
        """
        if signal.fixed_aspect is not None:
            return AspectResult(signal.fixed_aspect, (), "fixed")
        network = self.network
        window: List[int] = []
        point = signal.position
        direction = signal.direction
        distance = 0.0
        own_block = True
        while True:
            block = network.get_block(point.block_id)
            window.append(block.block_id)
            if self._occupied_ahead(block.block_id, point.offset_m if own_block else None,
                                    direction):
                aspect = (SignalAspect.STOP if distance < signal.braking_distance
                          else SignalAspect.CAUTION)
                return AspectResult(aspect, _unique(window),
                                    f"block {block.block_id} occupied")
            distance += network.available_length(point, direction)
            if distance >= signal.lookahead:
                return AspectResult(SignalAspect.CLEAR, _unique(window), "line clear")
            facing = network.switches.facing(block.block_id, direction)
            if facing is not None:
                wanted = signal.route.get(facing.switch_id)
                if wanted is not None and facing.route != wanted:
                    return AspectResult(SignalAspect.STOP, _unique(window),
                                        f"switch {facing.switch_id} not set for block {wanted}")
                next_id = facing.route
            elif block.is_dead_end(direction) and block.virtual:
                return AspectResult(SignalAspect.CLEAR, _unique(window), "exit")
            elif block.is_dead_end(direction):
                return AspectResult(SignalAspect.STOP, _unique(window),
                                    f"dead end after block {block.block_id}")
            else:
                next_id = block.exits[direction][0]
                trailing = network.switches.trailing(block.block_id, next_id, direction)
                if trailing is not None and not trailing.is_aligned_for(block.block_id, next_id):
                    window.append(next_id)
                    return AspectResult(SignalAspect.STOP, _unique(window),
                                        f"switch {trailing.switch_id} set against")
            point = TrackPoint(next_id, network.blocks[next_id].entry_offset(direction))
            own_block = False

    def _refresh(self, signal: Signal, force: bool = False) -> bool:
        result = self.compute_aspect(signal)
        for block_id in signal.window:
            self._watchers.get(block_id, set()).discard(signal.signal_id)
        for block_id in result.window:
            self._watchers.setdefault(block_id, set()).add(signal.signal_id)
        signal.window = result.window
        if result.aspect is signal.aspect and not force:
            return False
        if result.aspect is not signal.aspect:
            logger.debug("Signal %s: %s -> %s (%s)", signal.display_name,
                         signal.aspect.value, result.aspect.value, result.reason)
        signal.aspect = result.aspect
        self.bus.send(AspectChanged(signal.signal_id, signal.aspect))
        if signal.lamp_id is not None:
            self.bus.send(LampUpdate(signal.lamp_id, LampState.for_aspect(signal.aspect)))
        return True

    def update(self) -> List[int]:
        """Recompute the signals affected by this step's changes.

        Returns:
            IDs of signals whose aspect changed, in ascending order.
        """
        dirty_blocks: Set[int] = set()
        for message in self._occupancy.read():
            dirty_blocks.add(message.block_id)
        for message in self._switches.read():
            dirty_blocks.add(self.network.switches.get(message.switch_id).base)
        for block_id in self.network.occupancy.occupied_blocks():
            if block_id in self._standing_on:
                dirty_blocks.add(block_id)
        dirty: Set[int] = set()
        for block_id in dirty_blocks:
            dirty |= self._watchers.get(block_id, set())
            dirty |= self._standing_on.get(block_id, set())
        changed = [signal_id for signal_id in sorted(dirty)
                   if self._refresh(self.signals[signal_id])]
        return changed

    def recompute_all(self) -> List[int]:
        return [signal.signal_id for signal in self.signals if self._refresh(signal)]


def _unique(block_ids: List[int]) -> Tuple[int, ...]:
    return tuple(dict.fromkeys(block_ids))
