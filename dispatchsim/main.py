"""
Headless demo: a single line with a passing loop, two spawners and a train
running from one end to the other.
"""
import logging
import sys

from PyQt6.QtCore import QCoreApplication, QTimer

from dispatchsim.engine import Simulation
from dispatchsim.qt_bridge import QtStepDriver
from dispatchsim.trainModel.train_model_backend import SpawnTrainType

logger = logging.getLogger(__name__)

DEMO_LEVEL = {
    "blocks": [
        {"id": 1, "length": 800, "lamp_id": 101},
        {"id": 2, "length": 300, "lamp_id": 102},
        {"id": 3, "length": 1200, "lamp_id": 103},
        {"id": 4, "length": 1200, "lamp_id": 104},
        {"id": 5, "length": 300, "lamp_id": 105},
        {"id": 6, "length": 800, "lamp_id": 106},
    ],
    "connections": [
        {"start": 1, "end": 2},
        {"start": 2, "end": 3},
        {"start": 2, "end": 4},
        {"start": 3, "end": 5},
        {"start": 4, "end": 5},
        {"start": 5, "end": 6},
    ],
    "switches": [
        {"id": 1, "base": 2, "alternatives": [3, 4], "direction": "forward"},
        {"id": 2, "base": 5, "alternatives": [3, 4], "direction": "backward"},
    ],
    "signals": [
        {"id": 1, "block_id": 1, "offset": 0, "direction": "forward", "name": "A1", "lamp_id": 201},
        {"id": 2, "block_id": 2, "offset": 0, "direction": "forward", "name": "A2", "lamp_id": 202},
        {"id": 3, "block_id": 5, "offset": 0, "direction": "forward", "name": "A3", "lamp_id": 203},
        {"id": 4, "block_id": 6, "offset": 800, "direction": "backward", "name": "B1",
         "lamp_id": 204},
    ],
    "spawners": [
        {"id": 1, "block_id": 1},
        {"id": 2, "block_id": 6},
    ],
    "lamps": [
        {"id": 101, "x": 0, "y": 0, "width": 80},
        {"id": 201, "x": 0, "y": 10, "width": 6},
    ],
}


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(name)s: %(message)s")
    app = QCoreApplication(sys.argv)
    simulation = Simulation(DEMO_LEVEL, {"seed": 7, "default_multiplier_index": 6})
    driver = QtStepDriver(simulation, interval_ms=50)

    train = simulation.spawn_train(1, SpawnTrainType.PASSENGER.profile)
    driver.signals.train_despawned.connect(lambda train_id, number: app.quit())
    driver.signals.aspect_changed.connect(
        lambda signal_id, aspect: logger.info("Signal %s shows %s",
                                              simulation.signals.get(signal_id).display_name,
                                              aspect))

    def report(name: str) -> None:
        if simulation.network.has_train(train.train_id):
            state = simulation.kinematics.report_state(train.train_id)
            logger.info("%s train %s in block %d at %.0f km/h (limit %.0f km/h)",
                        driver.clock.get_time_string(), train.number, state["block_id"],
                        state["speed_kmh"], state["speed_limit_kmh"])

    driver.clock.subscribe_event("report", 60.0)
    driver.signals.clock_event.connect(report)

    QTimer.singleShot(10 * 60 * 1000, app.quit)
    driver.start()
    return app.exec()


if __name__ == "__main__":
    sys.exit(main())
