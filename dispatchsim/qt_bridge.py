"""
PyQt6 adapter between the simulation core and a Qt front end.

``QtStepDriver`` turns wall-clock time into simulation steps through the
simulation clock. ``SimulationSignals`` re-emits the rendering messages of
each step as Qt signals; it only reads the bus and never touches simulation
state.
"""
import logging
from typing import Optional

from PyQt6.QtCore import QElapsedTimer, QObject, QTimer, pyqtSignal

from dispatchsim.engine import Simulation, StepReport
from dispatchsim.universal.global_clock import SimulationClock
from dispatchsim.universal.messages import (
    AspectChanged,
    LampUpdate,
    MessageBus,
    OccupancyChanged,
    SwitchChanged,
    TrainDespawned,
    TrainSpawned,
    TrainStateUpdate,
)

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


class SimulationSignals(QObject):
    """Qt signals mirroring the messages a renderer consumes."""

    occupancy_changed = pyqtSignal(int, tuple)  # block_id, train ids
    aspect_changed = pyqtSignal(int, str)  # signal_id, aspect
    switch_changed = pyqtSignal(int, int)  # switch_id, route block
    lamp_updated = pyqtSignal(int, str)  # lamp_id, lamp state
    train_spawned = pyqtSignal(int, str)  # train_id, number
    train_despawned = pyqtSignal(int, str)  # train_id, number
    train_moved = pyqtSignal(int, int, float, float)  # train_id, block_id, offset, speed m/s
    clock_event = pyqtSignal(str)
    stepped = pyqtSignal(object)  # StepReport

    def __init__(self, bus: MessageBus, parent: Optional[QObject] = None) -> None:
        super().__init__(parent)
        self._occupancy = bus.reader(OccupancyChanged)
        self._aspects = bus.reader(AspectChanged)
        self._switches = bus.reader(SwitchChanged)
        self._lamps = bus.reader(LampUpdate)
        self._spawned = bus.reader(TrainSpawned)
        self._despawned = bus.reader(TrainDespawned)
        self._states = bus.reader(TrainStateUpdate)

    def publish(self) -> None:
        """Emit every message received since the previous call."""
        for m in self._spawned.read():
            self.train_spawned.emit(m.train_id, m.number)
        for m in self._occupancy.read():
            self.occupancy_changed.emit(m.block_id, m.train_ids)
        for m in self._switches.read():
            self.switch_changed.emit(m.switch_id, m.route)
        for m in self._aspects.read():
            self.aspect_changed.emit(m.signal_id, m.aspect.value)
        for m in self._lamps.read():
            self.lamp_updated.emit(m.lamp_id, m.state.value)
        for m in self._states.read():
            self.train_moved.emit(m.train_id, m.position.block_id,
                                  m.position.offset_m, m.speed_mps)
        for m in self._despawned.read():
            self.train_despawned.emit(m.train_id, m.number)


class QtStepDriver(QObject):
    """Runs the simulation from a QTimer.

    Args:
        simulation: Simulation to step.
        clock: Clock converting real time into simulated time. Defaults to
            one built from the simulation's config.
        interval_ms: Timer period in milliseconds.
    """

    def __init__(self, simulation: Simulation, clock: Optional[SimulationClock] = None,
                 interval_ms: int = 50, parent: Optional[QObject] = None) -> None:
        super().__init__(parent)
        self.simulation = simulation
        if clock is None:
            clock = SimulationClock(multipliers=simulation.config.time_multipliers,
                                    multiplier_index=simulation.config.default_multiplier_index)
        self.clock = clock
        self.signals = SimulationSignals(simulation.bus, self)
        self._elapsed = QElapsedTimer()
        self._timer = QTimer(self)
        self._timer.setInterval(interval_ms)
        self._timer.timeout.connect(self._on_timeout)

    def start(self) -> None:
        self._elapsed.start()
        self._timer.start()
        logger.info("Step driver started (%d ms interval)", self._timer.interval())

    def stop(self) -> None:
        self._timer.stop()
        logger.info("Step driver stopped")

    def is_running(self) -> bool:
        return self._timer.isActive()

    def _on_timeout(self) -> None:
        real_dt = self._elapsed.restart() / 1000.0
        self.tick(real_dt)

    def tick(self, real_dt: float) -> StepReport:
        """Run one step for ``real_dt`` seconds of wall-clock time."""
        sim_dt = self.clock.tick(real_dt)
        report = self.simulation.step(sim_dt)
        for event in self.clock.fire_due_events(sim_dt):
            self.signals.clock_event.emit(event.name)
        self.signals.publish()
        self.signals.stepped.emit(report)
        return report
