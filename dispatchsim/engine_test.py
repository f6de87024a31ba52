"""
Simulation Engine Testing
"""
import logging

import pytest

from dispatchsim.engine import Simulation
from dispatchsim.main import DEMO_LEVEL
from dispatchsim.universal.messages import (
    AspectChanged,
    SpawnRequest,
    SwitchRequest,
    TrainDespawnRequest,
)
from dispatchsim.universal.universal import (
    ConfigurationError,
    Direction,
    SignalAspect,
    SwitchLockedError,
    TrackPoint,
    UnknownEntityError,
)


@pytest.fixture
def sim(line_level):
    return Simulation(line_level, {"seed": 11})


def run_until(sim, condition, steps=1000, dt=1.0):
    for _ in range(steps):
        report = sim.step(dt)
        assert report.ok, report.errors
        if condition():
            return
    pytest.fail("condition not reached")


def assert_no_overlap(sim):
    for block_id in sim.network.blocks.ids():
        ranges = sorted(sim.network.occupancy_of(block_id).values())
        for (_, high), (low, _) in zip(ranges, ranges[1:]):
            assert low >= high, f"overlap on block {block_id}: {ranges}"


"""
Construction
"""
def test_virtual_blocks_and_signals(sim):
    assert sim.spawners.get(1).block_id == 4
    assert sim.spawners.get(2).block_id == 5
    assert sim.spawners.get(2).direction is Direction.BACKWARD
    assert sorted(sim.signals.signals.ids()) == [1, 2, 3, 4, 5, 6, 7]
    assert sim.signals.get(4).display_name == "Spawner1In"


def test_initial_aspects_published(sim):
    retained = sim.bus.retained(AspectChanged)
    assert AspectChanged(2, SignalAspect.CLEAR) in retained
    assert all(sim.signals.aspect_of(i) is SignalAspect.CLEAR for i in (1, 2, 3))


def test_level_errors_surface():
    with pytest.raises(ConfigurationError):
        Simulation({"blocks": [{"id": 1, "length": 10}],
                    "connections": [{"start": 1, "end": 2}]})
    with pytest.raises(ConfigurationError):
        Simulation({"blocks": [{"id": 1, "length": 10}],
                    "lamps": [{"id": 1, "x": 0, "y": 0, "width": 1},
                              {"id": 1, "x": 5, "y": 0, "width": 1}]})


def test_config_errors_surface(line_level):
    with pytest.raises(ConfigurationError):
        Simulation(line_level, {"caution_speed_kmh": -1})


def test_unguarded_dead_end_warns(caplog):
    with caplog.at_level(logging.WARNING):
        Simulation({"blocks": [{"id": 1, "length": 100}]})
    assert "Block 1 is a dead end going forward with no spawner" in caplog.text
    assert "Block 1 is a dead end going backward with no spawner" in caplog.text


"""
Stepping
"""
def test_standing_train_sets_stop(sim):
    sim.network.place_train(50, TrackPoint(2, 100), Direction.FORWARD, 20)
    report = sim.step(0.0)
    assert report.ok
    assert sim.signals.aspect_of(2) is SignalAspect.STOP
    assert sim.signals.aspect_of(4) is SignalAspect.CLEAR
    assert AspectChanged(2, SignalAspect.STOP) in sim.bus.retained(AspectChanged)


def test_negative_step_rejected(sim):
    with pytest.raises(ValueError):
        sim.step(-1.0)


def test_step_counts(sim):
    sim.step(0.5)
    report = sim.step(1.5)
    assert report.step_index == 1
    assert sim.step_index == 2
    assert sim.elapsed_s == pytest.approx(2.0)


def test_queued_spawn_and_despawn(sim, shunter):
    sim.submit(SpawnRequest(1, shunter))
    assert sim.step(0.0).ok
    assert len(sim.trains) == 1
    train_id = next(sim.trains.ids())
    sim.submit(TrainDespawnRequest(train_id))
    sim.submit(TrainDespawnRequest(train_id))
    report = sim.step(0.0)
    assert not report.ok
    assert [type(e) for e in report.errors] == [UnknownEntityError]
    assert len(sim.trains) == 0
    assert not sim.network.has_train(train_id)


def test_submit_rejects_other_objects(sim):
    with pytest.raises(TypeError):
        sim.submit("spawn please")


def test_immediate_requests_raise(sim, shunter):
    with pytest.raises(UnknownEntityError):
        sim.spawn_train(9, shunter)
    with pytest.raises(UnknownEntityError):
        sim.despawn_train(9)
    with pytest.raises(UnknownEntityError):
        sim.set_switch(1, 2)


def test_train_ids_not_reused(sim, shunter):
    first = sim.spawn_train(1, shunter)
    sim.despawn_train(first.train_id)
    sim.step(0.0)
    sim.step(0.0)
    second = sim.spawn_train(1, shunter)
    assert second.train_id != first.train_id


def test_train_crosses_network_and_leaves(sim, shunter):
    train = sim.spawn_train(1, shunter)
    seen = set()
    sim.kinematics.add_listener(lambda t: seen.update(sim.network.blocks_of(t.train_id)))
    run_until(sim, lambda: train.train_id not in sim.trains)
    assert not sim.network.has_train(train.train_id)
    assert seen == {1, 2, 3, 4, 5}
    assert sim.network.occupied_blocks() == []


def test_following_trains_keep_apart(sim, shunter):
    first = sim.spawn_train(1, shunter)
    for _ in range(60):
        assert sim.step(1.0).ok
    second = sim.spawn_train(1, shunter)
    for _ in range(600):
        assert sim.step(1.0).ok
        assert_no_overlap(sim)
    assert first.train_id not in sim.trains
    assert second.train_id not in sim.trains


"""
Switches
"""
def test_passing_loop_route(shunter):
    sim = Simulation(DEMO_LEVEL, {"seed": 3})
    sim.submit(SwitchRequest(1, 4))
    sim.submit(SwitchRequest(2, 4))
    assert sim.step(0.0).ok
    assert sim.network.switches.get_route(1) == 4
    train = sim.spawn_train(1, shunter)
    seen = set()
    sim.kinematics.add_listener(lambda t: seen.update(sim.network.blocks_of(t.train_id)))
    run_until(sim, lambda: train.train_id not in sim.trains)
    assert 4 in seen
    assert 3 not in seen


def test_switch_locked_under_train(shunter):
    sim = Simulation(DEMO_LEVEL, {"seed": 3})
    sim.network.place_train(50, TrackPoint(2, 100), Direction.FORWARD, 20)
    with pytest.raises(SwitchLockedError):
        sim.set_switch(1, 4)
    sim.submit(SwitchRequest(1, 4))
    report = sim.step(0.0)
    assert [type(e) for e in report.errors] == [SwitchLockedError]
    assert sim.network.switches.get_route(1) == 3


"""
Lamps
"""
def test_lamp_at(sim):
    assert sim.lamp_at(3, 3) == 21
    assert sim.lamp_at(50, 3) == 11
    assert sim.lamp_at(500, 500) is None


def test_describe_lamp(sim, shunter):
    assert sim.describe_lamp(21) == "Signal A: clear, unrestricted"
    assert sim.describe_lamp(11) == "Block 1: free"
    train = sim.spawn_train(1, shunter)
    run_until(sim, lambda: 1 in sim.network.blocks_of(train.train_id))
    assert sim.describe_lamp(11) == f"Block 1: occupied by {train.number}"
    assert sim.describe_lamp(21) == "Signal A: stop, 0 km/h"
    with pytest.raises(UnknownEntityError):
        sim.describe_lamp(999)
