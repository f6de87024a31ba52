"""Configuration for the dispatch simulation.

``SimulationConfig`` carries the tuning values of the core (speed policy,
signal thresholds, spawner geometry, time scales). ``LevelDescription`` is the
topology handed over by the external level loader: it accepts the plain
mapping a TOML or JSON reader produces and checks it section by section.
"""
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from dispatchsim.universal.universal import (
    ConfigurationError,
    Direction,
    SpawnerKind,
)


@dataclass
class SimulationConfig:
    """Tuning values for the simulation core.

    Attributes:
        caution_speed_kmh: Speed allowed past a signal showing caution.
        signal_braking_distance_m: Occupancy closer than this to a signal
            gives stop, farther (within lookahead) gives caution.
        default_lookahead_m: Lookahead for signals that do not declare one.
        signal_sighting_distance_m: How far ahead a train looks for signals.
        stop_offset_m: Distance short of a stop signal a train aims to halt.
        braking_safety_factor: Share of the braking force used when planning
            braking curves. Mandatory braking always uses the full force.
        max_substep_s: Largest integration step for train physics.
        virtual_block_length_m: Length of every spawner's virtual block.
        spawn_point_offset_m: Gap between a spawned train's tail and the
            closed end of the virtual block.
        spawner_signal_offset_m: Distance of the virtual block's signals from
            the network boundary.
        time_multipliers: Time scales the clock steps through.
        default_multiplier_index: Index of the starting time scale.
        seed: Seed for train number generation. None draws from the OS.
    """
    caution_speed_kmh: float = 40.0
    signal_braking_distance_m: float = 400.0
    default_lookahead_m: float = 1000.0
    signal_sighting_distance_m: float = 3000.0
    stop_offset_m: float = 10.0
    braking_safety_factor: float = 0.8
    max_substep_s: float = 0.25
    virtual_block_length_m: float = 2000.0
    spawn_point_offset_m: float = 50.0
    spawner_signal_offset_m: float = 5.0
    time_multipliers: Tuple[float, ...] = (0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 20.0)
    default_multiplier_index: int = 2
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        positive = (
            "caution_speed_kmh", "signal_braking_distance_m",
            "default_lookahead_m", "signal_sighting_distance_m",
            "max_substep_s", "virtual_block_length_m",
        )
        for name in positive:
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"'{name}' must be positive.")
        non_negative = ("stop_offset_m", "spawn_point_offset_m", "spawner_signal_offset_m")
        for name in non_negative:
            if getattr(self, name) < 0:
                raise ConfigurationError(f"'{name}' must not be negative.")
        if not 0 < self.braking_safety_factor <= 1:
            raise ConfigurationError("'braking_safety_factor' must be in (0, 1].")
        if self.spawner_signal_offset_m >= self.virtual_block_length_m:
            raise ConfigurationError(
                "'spawner_signal_offset_m' must be shorter than the virtual block.")
        self.time_multipliers = tuple(float(m) for m in self.time_multipliers)
        if not self.time_multipliers or any(m <= 0 for m in self.time_multipliers):
            raise ConfigurationError("'time_multipliers' must be positive values.")
        if not 0 <= self.default_multiplier_index < len(self.time_multipliers):
            raise ConfigurationError("'default_multiplier_index' out of range.")

    @property
    def caution_speed_mps(self) -> float:
        return self.caution_speed_kmh / 3.6

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SimulationConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown simulation settings: {', '.join(unknown)}.")
        try:
            return cls(**data)
        except TypeError as exc:
            raise ConfigurationError(f"Invalid simulation settings: {exc}") from exc


@dataclass(frozen=True)
class BlockData:
    block_id: int
    length_m: float
    lamp_id: Optional[int] = None


@dataclass(frozen=True)
class ConnectionData:
    """Traveling ``direction`` out of ``start`` leads into ``end``."""
    start: int
    end: int
    direction: Direction = Direction.FORWARD
    bidirectional: bool = True


@dataclass(frozen=True)
class SwitchData:
    """A branch point at the ``base`` (throat) block.

    Attributes:
        switch_id: Unique identifier.
        base: Throat block ID.
        alternatives: Block IDs the throat can lead to, in declared order.
        direction: Travel direction in which the throat diverges.
        route: Initially selected alternative. Defaults to the first.
        lamp_id: Optional lamp showing the switch position.
    """
    switch_id: int
    base: int
    alternatives: Tuple[int, ...]
    direction: Direction = Direction.FORWARD
    route: Optional[int] = None
    lamp_id: Optional[int] = None


@dataclass(frozen=True)
class SignalData:
    """A signal guarding travel in ``direction`` from a point on a block.

    Attributes:
        route: Switch settings the signal protects, as ``{switch_id: block_id}``.
    """
    signal_id: int
    block_id: int
    offset_m: float
    direction: Direction = Direction.FORWARD
    lookahead_m: Optional[float] = None
    braking_distance_m: Optional[float] = None
    name: str = ""
    lamp_id: Optional[int] = None
    route: Tuple[Tuple[int, int], ...] = ()


@dataclass(frozen=True)
class SpawnerData:
    """A network edge where trains appear and leave.

    Attributes:
        direction: Travel direction of trains entering the network. None
            infers it from the attachment block's unconnected end.
    """
    spawner_id: int
    block_id: int
    direction: Optional[Direction] = None
    kind: SpawnerKind = SpawnerKind.BOTH


@dataclass(frozen=True)
class LampData:
    """Purely visual lamp rectangle, used only for hit-testing."""
    lamp_id: int
    x: float
    y: float
    width: float
    height: float = 6.0

    def contains(self, x: float, y: float, tolerance: float = 0.0) -> bool:
        return (self.x - tolerance <= x <= self.x + self.width + tolerance and
                self.y - tolerance <= y <= self.y + self.height + tolerance)


@dataclass
class LevelDescription:
    """Structured topology description consumed once at startup."""
    blocks: List[BlockData] = field(default_factory=list)
    connections: List[ConnectionData] = field(default_factory=list)
    switches: List[SwitchData] = field(default_factory=list)
    signals: List[SignalData] = field(default_factory=list)
    spawners: List[SpawnerData] = field(default_factory=list)
    lamps: List[LampData] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LevelDescription":
        """Build a description from a loader's mapping.

        Args:
            data: Mapping with optional sections ``blocks``, ``connections``,
                ``switches``, ``signals``, ``spawners`` and ``lamps``, each a
                list of mappings.

        Raises:
            ConfigurationError: If a section or field is missing or invalid.
        """
        known = {"blocks", "connections", "switches", "signals", "spawners", "lamps"}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown level sections: {', '.join(unknown)}.")
        return cls(
            blocks=[_parse_block(row, i) for i, row in _rows(data, "blocks")],
            connections=[_parse_connection(row, i) for i, row in _rows(data, "connections")],
            switches=[_parse_switch(row, i) for i, row in _rows(data, "switches")],
            signals=[_parse_signal(row, i) for i, row in _rows(data, "signals")],
            spawners=[_parse_spawner(row, i) for i, row in _rows(data, "spawners")],
            lamps=[_parse_lamp(row, i) for i, row in _rows(data, "lamps")],
        )


def _rows(data: Mapping[str, Any], section: str):
    rows = data.get(section, [])
    if not isinstance(rows, Sequence) or isinstance(rows, (str, bytes)):
        raise ConfigurationError(f"Section '{section}' must be a list.")
    for index, row in enumerate(rows):
        if not isinstance(row, Mapping):
            raise ConfigurationError(
                f"Invalid entry in section '{section}' at row {index}.")
        yield index, (section, row)


def _field(entry, index: int, name: str, kind, required: bool = True, default=None):
    section, row = entry
    if name not in row or row[name] is None:
        if required:
            raise ConfigurationError(
                f"Missing '{name}' field in section '{section}' at row {index}.")
        return default
    value = row[name]
    try:
        if kind is int:
            if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
                raise ValueError(value)
            return int(value)
        if kind is float:
            if isinstance(value, bool):
                raise ValueError(value)
            return float(value)
        if kind is bool:
            if not isinstance(value, bool):
                raise ValueError(value)
            return value
        if kind is str:
            return str(value)
        if kind is Direction:
            return _direction(value)
        if kind is SpawnerKind:
            return SpawnerKind(str(value).lower())
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(
            f"Invalid '{name}' field in section '{section}' at row {index}.") from exc
    raise TypeError(f"Unsupported field kind {kind!r}")


def _direction(value) -> Direction:
    if isinstance(value, Direction):
        return value
    if isinstance(value, str):
        aliases = {"forward": Direction.FORWARD, "even": Direction.FORWARD, "+": Direction.FORWARD,
                   "backward": Direction.BACKWARD, "odd": Direction.BACKWARD, "-": Direction.BACKWARD}
        if value.lower() in aliases:
            return aliases[value.lower()]
        raise ValueError(value)
    if isinstance(value, bool):
        raise ValueError(value)
    return Direction(int(value))


def _positive(entry, index: int, name: str, value: float) -> float:
    if value <= 0:
        section, _ = entry
        raise ConfigurationError(
            f"Field '{name}' in section '{section}' at row {index} must be positive.")
    return value


def _parse_block(entry, i: int) -> BlockData:
    return BlockData(
        block_id=_field(entry, i, "id", int),
        length_m=_positive(entry, i, "length", _field(entry, i, "length", float)),
        lamp_id=_field(entry, i, "lamp_id", int, required=False),
    )


def _parse_connection(entry, i: int) -> ConnectionData:
    return ConnectionData(
        start=_field(entry, i, "start", int),
        end=_field(entry, i, "end", int),
        direction=_field(entry, i, "direction", Direction, False, Direction.FORWARD),
        bidirectional=_field(entry, i, "bidirectional", bool, False, True),
    )


def _parse_switch(entry, i: int) -> SwitchData:
    section, row = entry
    alternatives = row.get("alternatives")
    if (not isinstance(alternatives, Sequence) or isinstance(alternatives, (str, bytes))
            or len(alternatives) < 2):
        raise ConfigurationError(
            f"Invalid 'alternatives' field in section '{section}' at row {i}: "
            "expected a list of at least two block IDs.")
    try:
        parsed = tuple(int(a) for a in alternatives)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(
            f"Invalid 'alternatives' field in section '{section}' at row {i}.") from exc
    return SwitchData(
        switch_id=_field(entry, i, "id", int),
        base=_field(entry, i, "base", int),
        alternatives=parsed,
        direction=_field(entry, i, "direction", Direction, False, Direction.FORWARD),
        route=_field(entry, i, "route", int, required=False),
        lamp_id=_field(entry, i, "lamp_id", int, required=False),
    )


def _parse_signal(entry, i: int) -> SignalData:
    section, row = entry
    route = row.get("route") or {}
    if not isinstance(route, Mapping):
        raise ConfigurationError(
            f"Invalid 'route' field in section '{section}' at row {i}: expected a mapping.")
    try:
        parsed_route = tuple(sorted((int(k), int(v)) for k, v in route.items()))
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(
            f"Invalid 'route' field in section '{section}' at row {i}.") from exc
    lookahead = _field(entry, i, "lookahead", float, required=False)
    braking = _field(entry, i, "braking_distance", float, required=False)
    offset = _field(entry, i, "offset", float)
    if offset < 0:
        raise ConfigurationError(
            f"Field 'offset' in section '{section}' at row {i} must not be negative.")
    return SignalData(
        signal_id=_field(entry, i, "id", int),
        block_id=_field(entry, i, "block_id", int),
        offset_m=offset,
        direction=_field(entry, i, "direction", Direction, False, Direction.FORWARD),
        lookahead_m=None if lookahead is None else _positive(entry, i, "lookahead", lookahead),
        braking_distance_m=(None if braking is None
                            else _positive(entry, i, "braking_distance", braking)),
        name=_field(entry, i, "name", str, False, ""),
        lamp_id=_field(entry, i, "lamp_id", int, required=False),
        route=parsed_route,
    )


def _parse_spawner(entry, i: int) -> SpawnerData:
    return SpawnerData(
        spawner_id=_field(entry, i, "id", int),
        block_id=_field(entry, i, "block_id", int),
        direction=_field(entry, i, "direction", Direction, required=False),
        kind=_field(entry, i, "kind", SpawnerKind, False, SpawnerKind.BOTH),
    )


def _parse_lamp(entry, i: int) -> LampData:
    return LampData(
        lamp_id=_field(entry, i, "id", int),
        x=_field(entry, i, "x", float),
        y=_field(entry, i, "y", float),
        width=_positive(entry, i, "width", _field(entry, i, "width", float)),
        height=_positive(entry, i, "height", _field(entry, i, "height", float, False, 6.0)),
    )
