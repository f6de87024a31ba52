"""Train Model Backend
"""
import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from dispatchsim.trackModel.signal_system import SignalSystem
from dispatchsim.trackModel.track_model_backend import TrackNetwork
from dispatchsim.universal.config import SimulationConfig
from dispatchsim.universal.indexed_store import IndexedStore
from dispatchsim.universal.messages import MessageBus, TrainStateUpdate
from dispatchsim.universal.universal import (
    ConversionFunctions,
    Direction,
    SignalAspect,
    SimulationError,
    TrackError,
    TrackPoint,
)

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


@dataclass(frozen=True)
class RailVehicle:
    """A single locomotive or car.

    Attributes:
        name: Vehicle class name.
        mass_t: Empty mass in tonnes.
        length_m: Length over buffers in meters.
        max_braking_force_kn: Braking force in kilonewtons.
        power_kw: Traction power. Zero for unpowered cars.
        max_tractive_effort_kn: Starting tractive effort.
        cargo_mass_t: Load carried, in tonnes.
    """
    name: str
    mass_t: float
    length_m: float
    max_braking_force_kn: float
    power_kw: float = 0.0
    max_tractive_effort_kn: float = 0.0
    cargo_mass_t: float = 0.0

    @property
    def is_locomotive(self) -> bool:
        return self.power_kw > 0

    @property
    def total_mass_kg(self) -> float:
        return ConversionFunctions.tonnes_to_kg(self.mass_t + self.cargo_mass_t)


@dataclass(frozen=True)
class VehicleProfile:
    """A consist of rail vehicles and the limits that come with it."""
    name: str
    vehicles: Tuple[RailVehicle, ...]
    top_speed_kmh: float = 80.0

    def __post_init__(self) -> None:
        if not self.vehicles:
            raise ValueError("A vehicle profile needs at least one vehicle.")
        if self.power_w <= 0 or self.max_braking_force_n <= 0:
            raise ValueError(f"Profile {self.name} cannot move or cannot stop.")
        if self.top_speed_kmh <= 0:
            raise ValueError("Top speed must be positive.")

    @classmethod
    def consist(cls, name: str, locomotive: RailVehicle, locomotives: int,
                car: Optional[RailVehicle] = None, cars: int = 0,
                top_speed_kmh: float = 80.0) -> "VehicleProfile":
        vehicles = (locomotive,) * locomotives
        if car is not None:
            vehicles += (car,) * cars
        return cls(name, vehicles, top_speed_kmh)

    @property
    def length_m(self) -> float:
        return sum(v.length_m for v in self.vehicles)

    @property
    def mass_kg(self) -> float:
        return sum(v.total_mass_kg for v in self.vehicles)

    @property
    def power_w(self) -> float:
        return sum(ConversionFunctions.kw_to_w(v.power_kw) for v in self.vehicles)

    @property
    def max_tractive_effort_n(self) -> float:
        return sum(ConversionFunctions.kn_to_n(v.max_tractive_effort_kn) for v in self.vehicles)

    @property
    def max_braking_force_n(self) -> float:
        return sum(ConversionFunctions.kn_to_n(v.max_braking_force_kn) for v in self.vehicles)

    @property
    def top_speed_mps(self) -> float:
        return ConversionFunctions.kmh_to_mps(self.top_speed_kmh)

    @property
    def max_deceleration(self) -> float:
        """Full braking deceleration in m/s^2."""
        return self.max_braking_force_n / self.mass_kg


CARGO_LOCOMOTIVE = RailVehicle("Cargo locomotive", mass_t=138.0, length_m=18.15,
                               max_braking_force_kn=50.0, power_kw=2250.0,
                               max_tractive_effort_kn=375.0)
CARGO_CAR = RailVehicle("Cargo car", mass_t=24.0, length_m=15.0,
                        max_braking_force_kn=12.0, cargo_mass_t=70.0)
PASSENGER_LOCOMOTIVE = RailVehicle("Passenger locomotive", mass_t=80.0, length_m=16.0,
                                   max_braking_force_kn=50.0, power_kw=2942.0,
                                   max_tractive_effort_kn=300.0)
PASSENGER_CAR = RailVehicle("Passenger car", mass_t=40.0, length_m=24.0,
                            max_braking_force_kn=12.0, cargo_mass_t=5.0)

CARGO = VehicleProfile.consist("Cargo", CARGO_LOCOMOTIVE, 2, CARGO_CAR, 60)
PASSENGER = VehicleProfile.consist("Passenger", PASSENGER_LOCOMOTIVE, 1, PASSENGER_CAR, 25)
LOCOMOTIVE = VehicleProfile.consist("Locomotive", CARGO_LOCOMOTIVE, 2)


class SpawnTrainType(Enum):
    """Train kinds offered when spawning from the user interface."""
    CARGO = "cargo"
    PASSENGER = "passenger"
    LOCOMOTIVE = "locomotive"

    @property
    def profile(self) -> VehicleProfile:
        return {
            SpawnTrainType.CARGO: CARGO,
            SpawnTrainType.PASSENGER: PASSENGER,
            SpawnTrainType.LOCOMOTIVE: LOCOMOTIVE,
        }[self]


@dataclass
class Train:
    """A live train. Its position is owned by the track network.

    Attributes:
        train_id: Registry ID.
        number: Four-digit display number.
        profile: Vehicle consist.
        direction: Travel direction.
        spawner_id: Spawner that created the train, if any.
        speed_mps: Current speed.
        speed_limit_mps: Limit enforced during the latest step.
        governing_signal_id: Signal that set the latest limit, if any.
        halted_reason: Why the last move failed, None while moving freely.
        halted_block_id: Block the front was in when the train halted.
        distance_m: Distance travelled since spawning.
    """
    train_id: int
    number: str
    profile: VehicleProfile
    direction: Direction
    spawner_id: Optional[int] = None
    speed_mps: float = 0.0
    speed_limit_mps: float = 0.0
    governing_signal_id: Optional[int] = None
    halted_reason: Optional[str] = None
    halted_block_id: Optional[int] = None
    distance_m: float = 0.0

    @property
    def length_m(self) -> float:
        return self.profile.length_m


class TrainKinematics:
    """Physics integration for every live train.

    Each step, a train looks at the signals ahead within sighting distance
    and derives a braking curve from each one. The lowest curve, capped by the
    train's top speed, is the enforced limit. Above it the train brakes at full
    capability; below it the train accelerates by its power and tractive effort.
    """

    V_EPS = 0.2  # m/s to avoid P/v blow-up at low speed

    def __init__(self, trains: IndexedStore[Train], network: TrackNetwork,
                 signals: SignalSystem, bus: MessageBus,
                 config: Optional[SimulationConfig] = None) -> None:
        self.trains = trains
        self.network = network
        self.signals = signals
        self.bus = bus
        self.config = config if config is not None else SimulationConfig()
        self._listeners: List[Callable[[Train], None]] = []

    def add_listener(self, callback: Callable[[Train], None]) -> None:
        """Register a callback receiving every train after it was integrated."""
        if callback not in self._listeners:
            self._listeners.append(callback)

    def _notify_listeners(self, train: Train) -> None:
        for cb in list(self._listeners):
            try:
                cb(train)
            except Exception:
                logger.exception("Listener raised an exception")

    def enforced_limit(self, train: Train) -> Tuple[float, Optional[int]]:
        """Current speed limit of a train and the signal imposing it.

        Returns:
            ``(limit_mps, signal_id)``; the signal is None when the top speed governs.
        """
        profile = train.profile
        limit = profile.top_speed_mps
        governing: Optional[int] = None
        b_plan = profile.max_deceleration * self.config.braking_safety_factor
        front = self.network.front_of(train.train_id)
        for signal, distance in self.signals.signals_ahead(
                front, train.direction, self.config.signal_sighting_distance_m):
            aspect_speed = self.signals.aspect_speed_mps(signal.aspect)
            if aspect_speed is None:
                continue
            if signal.aspect is SignalAspect.STOP:
                distance -= self.config.stop_offset_m
            if distance <= 0:
                curve = aspect_speed
            else:
                curve = math.sqrt(aspect_speed ** 2 + 2.0 * b_plan * distance)
            if curve < limit:
                limit = curve
                governing = signal.signal_id
            if signal.aspect is SignalAspect.STOP:
                break
        return limit, governing

    def _step_dt(self, train: Train, dt: float) -> float:
        """Integrate one sub-step and return the distance covered."""
        profile = train.profile
        limit, governing = self.enforced_limit(train)
        train.speed_limit_mps = limit
        train.governing_signal_id = governing

        v_old = train.speed_mps
        if v_old > limit:
            v_new = max(limit, v_old - profile.max_deceleration * dt)
        else:
            v_eff = max(self.V_EPS, v_old)
            f_tractive = min(profile.power_w / v_eff, profile.max_tractive_effort_n)
            v_new = min(limit, v_old + f_tractive / profile.mass_kg * dt)
        v_new = max(0.0, v_new)
        train.speed_mps = v_new
        return 0.5 * (v_old + v_new) * dt

    def _check_signals_passed(self, train: Train, start: TrackPoint, distance: float) -> None:
        for signal, ahead in self.signals.signals_ahead(start, train.direction, distance):
            if ahead < distance and signal.aspect is SignalAspect.STOP:
                logger.warning("Train %s passed signal %s at stop",
                               train.number, signal.display_name)

    def step_train(self, train: Train, elapsed_s: float) -> Optional[SimulationError]:
        """Integrate one train over ``elapsed_s`` simulated seconds.

        Returns:
            The track error that halted the train this step, if any.
        """
        # Substep big dt in chunks of max_substep_s to keep physics stable
        remaining = max(0.0, float(elapsed_s))
        while remaining > 1e-6:
            step = min(self.config.max_substep_s, remaining)
            remaining -= step
            dx = self._step_dt(train, step)
            if dx <= 0:
                continue
            start = self.network.front_of(train.train_id)
            try:
                self.network.advance(train.train_id, train.direction.apply_sign(dx))
            except TrackError as exc:
                train.speed_mps = 0.0
                reason = str(exc)
                if train.halted_reason != reason:
                    train.halted_reason = reason
                    train.halted_block_id = start.block_id
                    logger.error("Train %s halted: %s", train.number, reason)
                    return exc
                return None
            if self.network.front_of(train.train_id).block_id != train.halted_block_id:
                train.halted_reason = None
                train.halted_block_id = None
            train.distance_m += dx
            self._check_signals_passed(train, start, dx)
        if elapsed_s <= 0:
            train.speed_limit_mps, train.governing_signal_id = self.enforced_limit(train)
        return None

    def update(self, elapsed_s: float) -> List[SimulationError]:
        """Integrate every live train and publish its state.

        Returns:
            Errors raised by trains that became halted during this step.
        """
        errors: List[SimulationError] = []
        for train_id, train in list(self.trains.items()):
            if not self.network.has_train(train_id):
                continue
            error = self.step_train(train, elapsed_s)
            if error is not None:
                errors.append(error)
            self.bus.send(TrainStateUpdate(train_id, self.network.front_of(train_id),
                                           train.speed_mps, train.speed_limit_mps))
            self._notify_listeners(train)
        return errors

    def report_state(self, train_id: int) -> Dict[str, object]:
        """Get complete train state as dictionary.

        Returns:
            Dictionary containing all train state variables.
        """
        train = self.trains[train_id]
        front = self.network.front_of(train_id)
        return {
            "train_id": train.train_id,
            "number": train.number,
            "profile": train.profile.name,
            "direction": train.direction.name.lower(),
            "block_id": front.block_id,
            "offset_m": front.offset_m,
            "speed_kmh": ConversionFunctions.mps_to_kmh(train.speed_mps),
            "speed_limit_kmh": ConversionFunctions.mps_to_kmh(train.speed_limit_mps),
            "governing_signal_id": train.governing_signal_id,
            "occupied_blocks": sorted(self.network.blocks_of(train_id)),
            "distance_m": train.distance_m,
            "halted_reason": train.halted_reason,
        }
