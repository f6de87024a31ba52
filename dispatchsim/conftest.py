"""
Shared fixtures: small networks and a light test locomotive.
"""
import pytest

from dispatchsim.trackModel.switch_store import Switch
from dispatchsim.trackModel.track_model_backend import TrackNetwork
from dispatchsim.trainModel.train_model_backend import RailVehicle, VehicleProfile
from dispatchsim.universal.messages import MessageBus
from dispatchsim.universal.universal import Direction


@pytest.fixture
def bus():
    return MessageBus()


@pytest.fixture
def line_network(bus):
    """Blocks 1 (100 m), 2 (200 m), 3 (300 m) joined end to end."""
    network = TrackNetwork(bus)
    network.add_block(1, 100)
    network.add_block(2, 200)
    network.add_block(3, 300)
    network.connect_blocks(1, 2)
    network.connect_blocks(2, 3)
    return network


@pytest.fixture
def junction_network(bus):
    """Block 1 leads to throat 2, which diverges forward into 3 or 4."""
    network = TrackNetwork(bus)
    network.add_block(1, 100)
    network.add_block(2, 50)
    network.add_block(3, 200)
    network.add_block(4, 200)
    network.connect_blocks(1, 2)
    network.connect_blocks(2, 3)
    network.connect_blocks(2, 4)
    network.add_switch(Switch(1, base=2, alternatives=(3, 4),
                              direction=Direction.FORWARD, route=3))
    return network


@pytest.fixture
def shunter():
    """60 t, 20 m, 2 m/s^2 braking, 60 km/h top speed."""
    engine = RailVehicle("Shunter", mass_t=60.0, length_m=20.0, max_braking_force_kn=120.0,
                         power_kw=1000.0, max_tractive_effort_kn=200.0)
    return VehicleProfile("Shunter", (engine,), top_speed_kmh=60.0)


@pytest.fixture
def line_level():
    """Three real blocks with a spawner at each end."""
    return {
        "blocks": [
            {"id": 1, "length": 1500, "lamp_id": 11},
            {"id": 2, "length": 500, "lamp_id": 12},
            {"id": 3, "length": 1500, "lamp_id": 13},
        ],
        "connections": [
            {"start": 1, "end": 2},
            {"start": 2, "end": 3},
        ],
        "signals": [
            {"id": 1, "block_id": 1, "offset": 0, "name": "A", "lamp_id": 21},
            {"id": 2, "block_id": 2, "offset": 0, "lookahead": 300, "name": "B",
             "lamp_id": 22},
            {"id": 3, "block_id": 3, "offset": 0, "name": "C"},
        ],
        "spawners": [
            {"id": 1, "block_id": 1},
            {"id": 2, "block_id": 3},
        ],
        "lamps": [
            {"id": 21, "x": 0, "y": 0, "width": 6, "height": 6},
            {"id": 11, "x": 10, "y": 0, "width": 100, "height": 6},
        ],
    }
