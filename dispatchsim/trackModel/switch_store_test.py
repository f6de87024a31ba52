import pytest

from dispatchsim.trackModel.switch_store import Switch, SwitchStore
from dispatchsim.universal.universal import (
    ConfigurationError,
    Direction,
    InvalidRouteError,
    UnknownEntityError,
)


@pytest.fixture
def store():
    s = SwitchStore()
    s.add(Switch(1, base=2, alternatives=(3, 4), direction=Direction.FORWARD, route=3))
    return s


def test_get_and_route(store):
    assert len(store) == 1
    assert 1 in store
    assert store.get(1).base == 2
    assert store.get_route(1) == 3


def test_set_route_reports_change(store):
    assert store.set_route(1, 4) is True
    assert store.get_route(1) == 4
    assert store.set_route(1, 4) is False


def test_set_route_rejects_non_alternative(store):
    with pytest.raises(InvalidRouteError):
        store.set_route(1, 9)
    assert store.get_route(1) == 3


def test_unknown_switch(store):
    with pytest.raises(UnknownEntityError):
        store.get(7)
    with pytest.raises(UnknownEntityError):
        store.set_route(7, 3)


def test_facing_and_trailing_lookup(store):
    assert store.facing(2, Direction.FORWARD).switch_id == 1
    assert store.facing(2, Direction.BACKWARD) is None
    assert store.trailing(4, 2, Direction.BACKWARD).switch_id == 1
    assert store.trailing(4, 2, Direction.FORWARD) is None
    assert [s.switch_id for s in store.switches_at(2)] == [1]
    assert store.switches_at(3) == []


def test_alignment(store):
    switch = store.get(1)
    assert switch.is_aligned_for(2, 3)
    assert not switch.is_aligned_for(2, 4)
    assert switch.is_aligned_for(3, 2)
    assert not switch.is_aligned_for(4, 2)
    # moves that do not use the throat are unaffected
    assert switch.is_aligned_for(1, 2)


@pytest.mark.parametrize("switch", [
    Switch(1, base=5, alternatives=(6, 7), direction=Direction.FORWARD, route=6),
    Switch(2, base=5, alternatives=(6, 6), direction=Direction.FORWARD, route=6),
    Switch(2, base=5, alternatives=(6, 7), direction=Direction.FORWARD, route=8),
    Switch(2, base=2, alternatives=(5, 6), direction=Direction.FORWARD, route=5),
])
def test_add_rejects_bad_switches(store, switch):
    with pytest.raises(ConfigurationError):
        store.add(switch)
