import pytest

from dispatchsim.trackModel.signal_system import Signal, SignalSystem
from dispatchsim.trackModel.track_model_backend import TrackNetwork
from dispatchsim.universal.config import LampData, SignalData, SimulationConfig
from dispatchsim.universal.messages import AspectChanged, LampUpdate
from dispatchsim.universal.universal import (
    ConfigurationError,
    Direction,
    LampState,
    SignalAspect,
    TrackPoint,
    UnknownEntityError,
)

F = Direction.FORWARD
B = Direction.BACKWARD
STOP = SignalAspect.STOP
CAUTION = SignalAspect.CAUTION
CLEAR = SignalAspect.CLEAR


def make_signal(signal_id, block_id, offset, direction=F, lookahead=1000.0,
                braking=400.0, **kwargs):
    return Signal(signal_id, TrackPoint(block_id, offset), direction, lookahead, braking,
                  **kwargs)


@pytest.fixture
def network(bus):
    """Blocks 1 (1000 m), 2 (500 m), 3 (1000 m) joined end to end."""
    n = TrackNetwork(bus)
    n.add_block(1, 1000)
    n.add_block(2, 500)
    n.add_block(3, 1000)
    n.connect_blocks(1, 2)
    n.connect_blocks(2, 3)
    return n


@pytest.fixture
def system(network, bus):
    return SignalSystem(network, bus, SimulationConfig(),
                        lamps={201: LampData(201, 0, 0, 6, 6)})


def test_guarded_block_occupied_gives_stop(network, system):
    system.add_signal(make_signal(2, 2, 0, lookahead=300))
    system.initialize()
    assert system.aspect_of(2) is CLEAR
    network.place_train(9, TrackPoint(2, 100), F, 50)
    assert system.update() == [2]
    assert system.aspect_of(2) is STOP


def test_distant_occupancy_gives_caution(network, system):
    system.add_signal(make_signal(1, 1, 0, lookahead=2000))
    system.initialize()
    network.place_train(9, TrackPoint(2, 100), F, 50)
    system.update()
    assert system.aspect_of(1) is CAUTION
    network.place_train(8, TrackPoint(1, 500), F, 50)
    system.update()
    assert system.aspect_of(1) is STOP


def test_occupancy_beyond_lookahead_ignored(network, system):
    system.add_signal(make_signal(1, 1, 0, lookahead=900))
    system.initialize()
    network.place_train(9, TrackPoint(2, 100), F, 50)
    system.update()
    assert system.aspect_of(1) is CLEAR
    assert system.get(1).window == (1,)


def test_dead_end_within_lookahead_gives_stop(system):
    system.add_signal(make_signal(1, 3, 0, lookahead=2000))
    system.add_signal(make_signal(2, 3, 0, lookahead=1000))
    system.initialize()
    assert system.aspect_of(1) is STOP
    assert system.aspect_of(2) is CLEAR


def test_network_exit_beyond_virtual_block_is_clear(network, system):
    exit_block = network.add_virtual_block(200)
    network.connect_blocks(3, exit_block.block_id)
    system.add_signal(make_signal(1, 3, 0, lookahead=3000))
    system.initialize()
    assert system.aspect_of(1) is CLEAR
    assert system.get(1).window == (3, exit_block.block_id)
    network.place_train(9, TrackPoint(exit_block.block_id, 100), F, 50)
    system.update()
    assert system.aspect_of(1) is CAUTION


def test_only_track_ahead_of_signal_counts(network, system):
    system.add_signal(make_signal(1, 2, 250, lookahead=300))
    system.initialize()
    network.place_train(9, TrackPoint(2, 200), F, 100)
    system.update()
    assert system.aspect_of(1) is CLEAR
    # moving within the block produces no occupancy message
    network.advance(9, 100)
    assert system.update() == [1]
    assert system.aspect_of(1) is STOP


def test_backward_signal_looks_towards_block_start(network, system):
    system.add_signal(make_signal(1, 2, 250, direction=B, lookahead=300))
    system.initialize()
    assert system.get(1).window == (2, 1)
    network.place_train(9, TrackPoint(2, 400), F, 100)
    system.update()
    assert system.aspect_of(1) is CLEAR
    network.place_train(8, TrackPoint(2, 200), F, 100)
    system.update()
    assert system.aspect_of(1) is STOP


def test_facing_switch_against_route(junction_network, bus):
    system = SignalSystem(junction_network, bus)
    system.add_signal(make_signal(1, 1, 0, lookahead=300, route={1: 3}))
    system.add_signal(make_signal(2, 1, 0, lookahead=300))
    system.initialize()
    assert system.aspect_of(1) is CLEAR
    assert 1 in system.watchers(2)
    junction_network.set_switch(1, 4)
    system.update()
    assert system.aspect_of(1) is STOP
    assert system.aspect_of(2) is CLEAR
    assert system.get(2).window == (1, 2, 4)


def test_trailing_switch_against_gives_stop(junction_network, bus):
    system = SignalSystem(junction_network, bus)
    system.add_signal(make_signal(1, 4, 200, direction=B, lookahead=300))
    system.initialize()
    assert system.aspect_of(1) is STOP
    assert system.get(1).window == (4, 2)
    junction_network.set_switch(1, 4)
    assert system.update() == [1]
    assert system.aspect_of(1) is CLEAR


def test_fixed_signal_ignores_occupancy(network, system):
    fixed = system.add_fixed_signal(TrackPoint(2, 10), F, CLEAR, "Fixed")
    system.initialize()
    network.place_train(9, TrackPoint(2, 100), F, 50)
    system.update()
    assert system.aspect_of(fixed.signal_id) is CLEAR
    assert system.compute_aspect(fixed).window == ()


def test_fixed_signals_take_next_ids(system):
    system.add_signal(make_signal(4, 1, 0))
    assert system.add_fixed_signal(TrackPoint(1, 5), F).signal_id == 5


def test_initialize_publishes_every_aspect(network, system, bus):
    aspects = bus.reader(AspectChanged)
    lamps = bus.reader(LampUpdate)
    system.add_signal(make_signal(1, 1, 0, lamp_id=201))
    system.add_signal(make_signal(2, 3, 0, lookahead=2000))
    system.initialize()
    assert aspects.read() == [AspectChanged(1, CLEAR), AspectChanged(2, STOP)]
    assert lamps.read() == [LampUpdate(201, LampState.GREEN)]


def test_aspect_change_lights_lamp(network, system, bus):
    system.add_signal(make_signal(1, 2, 0, lamp_id=201))
    system.initialize()
    lamps = bus.reader(LampUpdate)
    lamps.skip()
    network.place_train(9, TrackPoint(2, 100), F, 50)
    system.update()
    assert lamps.read() == [LampUpdate(201, LampState.RED)]


def test_compute_aspect_is_repeatable(network, system):
    signal = system.add_signal(make_signal(1, 1, 0, lookahead=2000))
    network.place_train(9, TrackPoint(2, 100), F, 50)
    first = system.compute_aspect(signal)
    assert system.compute_aspect(signal) == first
    assert first.aspect is CAUTION
    assert signal.aspect is STOP


def test_only_watching_signals_recomputed(network, system, monkeypatch):
    system.add_signal(make_signal(1, 1, 0, lookahead=900))
    system.add_signal(make_signal(2, 2, 0, lookahead=900))
    system.initialize()
    assert system.watchers(3) == {2}
    calls = []
    compute = system.compute_aspect
    monkeypatch.setattr(system, "compute_aspect",
                        lambda signal: calls.append(signal.signal_id) or compute(signal))
    network.place_train(9, TrackPoint(3, 800), F, 50)
    system.update()
    assert calls == [2]
    assert system.aspect_of(2) is CAUTION


def test_signals_ahead(system):
    system.add_signal(make_signal(1, 1, 0))
    system.add_signal(make_signal(2, 1, 500))
    system.add_signal(make_signal(3, 2, 0))
    system.add_signal(make_signal(4, 2, 100, direction=B))
    found = [(s.signal_id, d) for s, d in system.signals_ahead(TrackPoint(1, 200), F, 2000)]
    assert found == [(2, 300.0), (3, 800.0)]
    found = [(s.signal_id, d) for s, d in system.signals_ahead(TrackPoint(1, 500), F, 400)]
    assert found == [(2, 0.0)]
    found = [(s.signal_id, d) for s, d in system.signals_ahead(TrackPoint(2, 300), B, 1000)]
    assert found == [(4, 200.0)]


def test_signal_at(system):
    system.add_signal(make_signal(1, 1, 0, lamp_id=201))
    system.add_signal(make_signal(2, 2, 0))
    assert system.signal_at(3, 3).signal_id == 1
    assert system.signal_at(50, 50) is None


def test_aspect_speeds(system):
    assert system.aspect_speed_mps(STOP) == 0.0
    assert system.aspect_speed_mps(CAUTION) == pytest.approx(40 / 3.6)
    assert system.aspect_speed_mps(CLEAR) is None


def test_load_signals_uses_defaults(system):
    system.load_signals([SignalData(1, 1, 10.0, F, name="A")])
    signal = system.get(1)
    assert signal.lookahead == 1000.0
    assert signal.braking_distance == 400.0
    assert signal.display_name == "A"
    with pytest.raises(UnknownEntityError):
        system.get(2)


@pytest.mark.parametrize("signal", [
    make_signal(1, 9, 0),
    make_signal(1, 2, 600),
    make_signal(1, 1, 0, route={5: 1}),
])
def test_invalid_signals_rejected(system, signal):
    with pytest.raises(ConfigurationError):
        system.add_signal(signal)


def test_duplicate_signal_rejected(system):
    system.add_signal(make_signal(1, 1, 0))
    with pytest.raises(ConfigurationError):
        system.add_signal(make_signal(1, 2, 0))
