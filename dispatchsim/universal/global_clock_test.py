import datetime
import logging
from unittest.mock import Mock

import pytest

from dispatchsim.universal.global_clock import SimulationClock


@pytest.fixture
def clock():
    return SimulationClock(start_point=datetime.datetime(2024, 1, 1, 6, 0, 0))


def test_tick_scales_real_time(clock):
    assert clock.time_multiplier == 1.0
    assert clock.tick(0.5) == pytest.approx(0.5)
    clock.increase_speed()
    assert clock.tick(0.5) == pytest.approx(1.0)
    assert clock.elapsed_seconds == pytest.approx(1.5)


def test_paused_tick_has_zero_duration(clock):
    listener = Mock()
    clock.register_listener(listener)
    clock.pause()
    assert clock.tick(1.0) == 0.0
    listener.assert_called_once_with(0.0)
    assert clock.toggle_pause() is False
    assert clock.tick(1.0) == pytest.approx(1.0)


def test_negative_real_time_is_ignored(clock):
    assert clock.tick(-1.0) == 0.0


def test_speed_limits_and_logging(clock, caplog):
    with caplog.at_level(logging.INFO):
        for _ in range(10):
            clock.increase_speed()
    assert clock.time_multiplier == 20.0
    assert "20x" in caplog.text
    for _ in range(10):
        clock.decrease_speed()
    assert clock.time_multiplier == 0.1
    assert clock.time_scale_formatted() == "0.1x"


def test_time_string(clock):
    clock.tick(90)
    assert clock.get_time_string() == "06:01:30"
    assert repr(clock) == "06:01:30"
    moment = datetime.datetime(2024, 1, 1, 7, 0, 0)
    assert clock.datetime_to_elapsed_seconds(moment) == 3600.0


def test_periodic_events_fire_in_order(clock):
    clock.subscribe_event("minute", 60.0)
    clock.subscribe_event("tenth", 10.0)
    sim_dt = clock.tick(25.0)
    fired = clock.fire_due_events(sim_dt)
    assert [e.name for e in fired] == ["tenth", "tenth"]
    assert [e.elapsed_time for e in fired] == [pytest.approx(10.0), pytest.approx(20.0)]
    sim_dt = clock.tick(40.0)
    fired = clock.fire_due_events(sim_dt)
    assert [e.name for e in fired] == ["tenth", "tenth", "tenth", "minute", "tenth"]


def test_event_with_start_time(clock):
    clock.subscribe_event("late", 30.0, start_at=datetime.datetime(2024, 1, 1, 6, 0, 5))
    assert clock.fire_due_events(clock.tick(4.0)) == []
    fired = clock.fire_due_events(clock.tick(2.0))
    assert [e.name for e in fired] == ["late"]


def test_invalid_setup():
    with pytest.raises(ValueError):
        SimulationClock(multipliers=())
    with pytest.raises(ValueError):
        SimulationClock(multiplier_index=7)
    with pytest.raises(ValueError):
        SimulationClock().subscribe_event("never", 0)
