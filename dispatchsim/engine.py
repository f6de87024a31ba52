"""
Simulation engine: owns the registries and runs one step at a time.

Stage order inside a step is fixed: queued requests, train kinematics
(which moves trains and so updates occupancy), signals, spawners. Each stage
reads what earlier stages committed in the same step; nothing feeds back to an
earlier stage before the next step.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Union

from dispatchsim.trackModel.signal_system import SignalSystem
from dispatchsim.trackModel.track_model_backend import TrackNetwork
from dispatchsim.trainModel.spawner import SpawnerSystem
from dispatchsim.trainModel.train_model_backend import Train, TrainKinematics, VehicleProfile
from dispatchsim.universal.config import LampData, LevelDescription, SimulationConfig
from dispatchsim.universal.indexed_store import IndexedStore
from dispatchsim.universal.messages import (
    MessageBus,
    SpawnRequest,
    SwitchRequest,
    TrainDespawnRequest,
)
from dispatchsim.universal.universal import (
    ConfigurationError,
    ConversionFunctions,
    SimulationError,
    UnknownEntityError,
)

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

ExternalRequest = Union[SpawnRequest, TrainDespawnRequest, SwitchRequest]


@dataclass
class StepReport:
    """What happened during one call to ``Simulation.step``."""
    step_index: int
    elapsed_s: float
    errors: List[SimulationError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class Simulation:
    """The dispatch simulation core.

    Args:
        level: Topology description, mapping or ``LevelDescription``.
        config: Tuning values, mapping or ``SimulationConfig``.

    Raises:
        ConfigurationError: If the level is inconsistent.
    """

    def __init__(self, level: Union[LevelDescription, Mapping],
                 config: Union[SimulationConfig, Mapping, None] = None) -> None:
        if not isinstance(level, LevelDescription):
            level = LevelDescription.from_dict(level)
        if config is None:
            config = SimulationConfig()
        elif not isinstance(config, SimulationConfig):
            config = SimulationConfig.from_dict(config)
        self.config = config
        self.level = level
        self.bus = MessageBus()
        self.lamps: Dict[int, LampData] = {}
        for lamp in level.lamps:
            if lamp.lamp_id in self.lamps:
                raise ConfigurationError(f"Duplicate lamp ID {lamp.lamp_id}.")
            self.lamps[lamp.lamp_id] = lamp

        self.network = TrackNetwork(self.bus)
        self.network.load_level(level)
        self.signals = SignalSystem(self.network, self.bus, config, self.lamps)
        self.signals.load_signals(level.signals)
        self.trains: IndexedStore[Train] = IndexedStore(reuse_ids=False)
        self.spawners = SpawnerSystem(self.network, self.signals, self.trains, self.bus, config)
        self.spawners.load_spawners(level.spawners)
        self.kinematics = TrainKinematics(self.trains, self.network, self.signals,
                                          self.bus, config)
        for block_id, direction in self.network.dead_ends():
            if not self.network.blocks[block_id].virtual:
                logger.warning("Block %d is a dead end going %s with no spawner",
                               block_id, direction.name.lower())
        self.signals.initialize()

        self.step_index = 0
        self.elapsed_s = 0.0
        self._queued: List[ExternalRequest] = []
        logger.info("Simulation ready: %d blocks, %d signals, %d spawners",
                    len(self.network.blocks), len(self.signals.signals),
                    len(self.spawners.spawners))

    # ---- stepping ----
    def submit(self, request: ExternalRequest) -> None:
        """Queue a request for the next step."""
        if not isinstance(request, (SpawnRequest, TrainDespawnRequest, SwitchRequest)):
            raise TypeError(f"Unsupported request {type(request).__name__}.")
        self._queued.append(request)

    def _apply_queued(self) -> List[SimulationError]:
        errors: List[SimulationError] = []
        queued, self._queued = self._queued, []
        for request in queued:
            if isinstance(request, SwitchRequest):
                try:
                    self.network.set_switch(request.switch_id, request.route)
                except SimulationError as exc:
                    logger.warning("Switch request rejected: %s", exc)
                    errors.append(exc)
            else:
                self.bus.send(request)
        return errors

    def step(self, elapsed_s: float) -> StepReport:
        """Advance the simulation by ``elapsed_s`` simulated seconds.

        A zero duration is a valid step (paused clock): trains do not move
        but signals and spawners still process pending messages.
        """
        if elapsed_s < 0:
            raise ValueError("Elapsed time cannot be negative.")
        started = time.perf_counter()
        report = StepReport(self.step_index, elapsed_s)
        report.errors.extend(self._apply_queued())
        report.errors.extend(self.kinematics.update(elapsed_s))
        self.signals.update()
        report.errors.extend(self.spawners.update())
        self.bus.update()
        self.network.blocks.collect()
        self.signals.signals.collect()
        self.trains.collect()
        self.step_index += 1
        self.elapsed_s += elapsed_s
        logger.debug("Step %d (%.3f s) took %.2f ms", report.step_index, elapsed_s,
                     (time.perf_counter() - started) * 1000.0)
        return report

    # ---- immediate requests ----
    def spawn_train(self, spawner_id: int, profile: VehicleProfile) -> Train:
        return self.spawners.spawn(spawner_id, profile)

    def despawn_train(self, train_id: int) -> Train:
        return self.spawners.despawn(train_id)

    def set_switch(self, switch_id: int, route: int) -> bool:
        return self.network.set_switch(switch_id, route)

    # ---- hit-testing ----
    def lamp_at(self, x: float, y: float, tolerance: float = 0.0) -> Optional[int]:
        """ID of the lamp whose rectangle contains the point, if any."""
        for lamp_id in sorted(self.lamps):
            if self.lamps[lamp_id].contains(x, y, tolerance):
                return lamp_id
        return None

    def describe_lamp(self, lamp_id: int) -> str:
        """Hover text for whatever the lamp belongs to.

        Raises:
            UnknownEntityError: If no block, signal or switch carries the lamp.
        """
        for signal in self.signals.signals:
            if signal.lamp_id == lamp_id:
                speed = self.signals.aspect_speed_mps(signal.aspect)
                allowed = ("unrestricted" if speed is None
                           else f"{ConversionFunctions.mps_to_kmh(speed):.0f} km/h")
                return f"Signal {signal.display_name}: {signal.aspect.value}, {allowed}"
        for block in self.network.blocks:
            if block.lamp_id == lamp_id:
                trains = self.network.trains_on(block.block_id)
                if not trains:
                    return f"Block {block.block_id}: free"
                numbers = ", ".join(self.trains[t].number for t in trains if t in self.trains)
                return f"Block {block.block_id}: occupied by {numbers}"
        for switch in self.network.switches:
            if switch.lamp_id == lamp_id:
                return f"Switch {switch.switch_id}: set to block {switch.route}"
        raise UnknownEntityError(f"Lamp ID {lamp_id} is not used by any block, signal or switch.")
