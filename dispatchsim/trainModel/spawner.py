"""
Spawners: virtual blocks at the network edges where trains appear and leave.
"""
import logging
from random import Random
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set, Tuple

from dispatchsim.trackModel.signal_system import SignalSystem
from dispatchsim.trackModel.track_model_backend import TrackNetwork
from dispatchsim.trainModel.train_model_backend import Train, VehicleProfile
from dispatchsim.universal.config import SimulationConfig, SpawnerData
from dispatchsim.universal.indexed_store import IndexedStore
from dispatchsim.universal.messages import (
    MessageBus,
    OccupancyChanged,
    SpawnRequest,
    TrainDespawned,
    TrainDespawnRequest,
    TrainSpawned,
)
from dispatchsim.universal.universal import (
    ConfigurationError,
    Direction,
    OccupancyConflictError,
    SignalAspect,
    SimulationError,
    SpawnerBusyError,
    SpawnerKind,
    TrackPoint,
    UnknownEntityError,
)

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


@dataclass
class Spawner:
    """A network edge owning one virtual block.

    Attributes:
        spawner_id: Unique identifier for the spawner.
        block_id: The generated virtual block.
        attach_block_id: Real block the virtual block is joined to.
        direction: Travel direction of trains entering the network.
        kind: Whether the spawner creates trains, removes them, or both.
        signal_ids: The permanently clear signals on the virtual block.
    """
    spawner_id: int
    block_id: int
    attach_block_id: int
    direction: Direction
    kind: SpawnerKind = SpawnerKind.BOTH
    signal_ids: Tuple[int, ...] = ()


class SpawnerSystem:
    """Creates trains in virtual blocks and removes those that leave the network."""

    def __init__(self, network: TrackNetwork, signals: SignalSystem,
                 trains: IndexedStore[Train], bus: MessageBus,
                 config: Optional[SimulationConfig] = None,
                 rng: Optional[Random] = None) -> None:
        self.network = network
        self.signals = signals
        self.trains = trains
        self.bus = bus
        self.config = config if config is not None else SimulationConfig()
        self.rng = rng if rng is not None else Random(self.config.seed)
        self.spawners: IndexedStore[Spawner] = IndexedStore(first_id=0)
        self._by_block: Dict[int, Set[int]] = {}
        self._occupancy = bus.reader(OccupancyChanged)
        self._spawn_requests = bus.reader(SpawnRequest)
        self._despawn_requests = bus.reader(TrainDespawnRequest)

    # ---- construction ----
    def add_spawner(self, data: SpawnerData) -> Spawner:
        """Generate the virtual block and its signals for a declared spawner.

        Raises:
            ConfigurationError: If the ID is taken, the attachment block is
                unknown, or its open end is taken or ambiguous.
        """
        if data.spawner_id in self.spawners:
            raise ConfigurationError(f"Duplicate spawner ID {data.spawner_id}.")
        attach = self.network.blocks.get(data.block_id)
        if attach is None:
            raise ConfigurationError(
                f"Spawner {data.spawner_id} is attached to unknown block {data.block_id}.")
        direction = data.direction
        if direction is None:
            open_ends = [d for d in (Direction.FORWARD, Direction.BACKWARD)
                         if attach.is_dead_end(d)]
            if len(open_ends) != 1:
                raise ConfigurationError(
                    f"Spawner {data.spawner_id}: block {data.block_id} has "
                    f"{len(open_ends)} open ends; declare the direction.")
            direction = open_ends[0].reverse()
        elif not attach.is_dead_end(direction.reverse()):
            raise ConfigurationError(
                f"Spawner {data.spawner_id}: block {data.block_id} is already connected "
                f"going {direction.reverse().name.lower()}.")

        virtual = self.network.add_virtual_block(self.config.virtual_block_length_m)
        self.network.connect_blocks(virtual.block_id, attach.block_id, direction)
        boundary = virtual.exit_offset(direction)
        signal_offset = boundary - direction.apply_sign(self.config.spawner_signal_offset_m)
        signal_point = TrackPoint(virtual.block_id, signal_offset)
        entering = self.signals.add_fixed_signal(
            signal_point, direction, SignalAspect.CLEAR, f"Spawner{data.spawner_id}In")
        leaving = self.signals.add_fixed_signal(
            signal_point, direction.reverse(), SignalAspect.CLEAR, f"Spawner{data.spawner_id}Out")

        spawner = Spawner(data.spawner_id, virtual.block_id, attach.block_id, direction,
                          data.kind, (entering.signal_id, leaving.signal_id))
        self.spawners.insert_at(spawner.spawner_id, spawner)
        for block_id in (virtual.block_id, attach.block_id):
            self._by_block.setdefault(block_id, set()).add(spawner.spawner_id)
        logger.info("Spawner %d attached to block %d through virtual block %d",
                    spawner.spawner_id, attach.block_id, virtual.block_id)
        return spawner

    def load_spawners(self, spawners: Iterable[SpawnerData]) -> None:
        for data in spawners:
            self.add_spawner(data)

    def get(self, spawner_id: int) -> Spawner:
        spawner = self.spawners.get(spawner_id)
        if spawner is None:
            raise UnknownEntityError(f"Spawner ID {spawner_id} not found.")
        return spawner

    def spawner_for_block(self, block_id: int) -> Optional[Spawner]:
        """Spawner owning ``block_id``, else the lowest-numbered one attached to it."""
        spawner_ids = sorted(self._by_block.get(block_id, ()))
        for spawner_id in spawner_ids:
            if self.spawners[spawner_id].block_id == block_id:
                return self.spawners[spawner_id]
        return self.spawners[spawner_ids[0]] if spawner_ids else None

    def _train_number(self) -> str:
        return str(self.rng.randint(1000, 9999))

    # ---- lifecycle ----
    def spawn(self, spawner_id: int, profile: VehicleProfile) -> Train:
        """Create a stationary train at the closed end of a spawner's virtual block.

        Raises:
            UnknownEntityError: If the spawner does not exist.
            SpawnerBusyError: If the spawner cannot spawn, the train does not
                fit, or the spawn area is occupied.
        """
        spawner = self.get(spawner_id)
        if not spawner.kind.can_spawn:
            raise SpawnerBusyError(f"Spawner {spawner_id} only removes trains.")
        block = self.network.get_block(spawner.block_id)
        room = (block.length - self.config.spawn_point_offset_m
                - self.config.spawner_signal_offset_m)
        if profile.length_m > room:
            raise SpawnerBusyError(
                f"Train of {profile.length_m:.0f} m does not fit spawner {spawner_id} "
                f"({room:.0f} m available).")
        direction = spawner.direction
        closed_end = block.entry_offset(direction)
        front = TrackPoint(block.block_id, closed_end + direction.apply_sign(
            self.config.spawn_point_offset_m + profile.length_m))

        train = Train(self.trains.next_id, self._train_number(), profile, direction, spawner_id)
        try:
            self.network.place_train(train.train_id, front, direction, profile.length_m)
        except OccupancyConflictError as exc:
            raise SpawnerBusyError(f"Spawner {spawner_id} is occupied: {exc}") from exc
        self.trains.insert(train)
        self.bus.send(TrainSpawned(train.train_id, spawner_id, train.number, direction))
        logger.info("Train %s (%s) spawned at spawner %d", train.number, profile.name, spawner_id)
        return train

    def despawn(self, train_id: int) -> Train:
        """Remove a train from the track and the registry unconditionally.

        Raises:
            UnknownEntityError: If the train does not exist.
        """
        train = self.trains.get(train_id)
        if train is None:
            raise UnknownEntityError(f"Train ID {train_id} not found.")
        if self.network.has_train(train_id):
            self.network.remove_train(train_id)
        self.trains.remove(train_id)
        self.bus.send(TrainDespawned(train_id, train.number))
        logger.info("Train %s despawned", train.number)
        return train

    def ready_to_despawn(self, spawner: Spawner, train_id: int) -> bool:
        """Whether a train sits wholly in the virtual block heading away from the network."""
        train = self.trains.get(train_id)
        if train is None or not spawner.kind.can_despawn:
            return False
        return (train.direction is spawner.direction.reverse() and
                self.network.blocks_of(train_id) == {spawner.block_id})

    def update(self) -> List[SimulationError]:
        """Remove trains that left the network, then serve queued requests.

        Returns:
            Rejected requests, each already logged.
        """
        dirty = set()
        for message in self._occupancy.read():
            dirty.update(self._by_block.get(message.block_id, ()))
        for spawner_id in sorted(dirty):
            spawner = self.spawners[spawner_id]
            for train_id in self.network.trains_on(spawner.block_id):
                if self.ready_to_despawn(spawner, train_id):
                    self.despawn(train_id)

        errors: List[SimulationError] = []
        for request in self._despawn_requests.read():
            try:
                self.despawn(request.train_id)
            except SimulationError as exc:
                logger.warning("Despawn request rejected: %s", exc)
                errors.append(exc)
        for request in self._spawn_requests.read():
            try:
                self.spawn(request.spawner_id, request.profile)
            except SimulationError as exc:
                logger.warning("Spawn request rejected: %s", exc)
                errors.append(exc)
        return errors
