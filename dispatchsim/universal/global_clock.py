# universal/global_clock.py
import bisect
import datetime
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

DEFAULT_MULTIPLIERS = (0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 20.0)


@dataclass
class ClockEvent:
    """A periodic event fired by the clock."""
    name: str
    elapsed_time: float
    current_time: datetime.datetime


@dataclass
class _PeriodicEvent:
    name: str
    period: float
    left: float


class SimulationClock:
    """Simulation clock driving the step cadence.

    Converts real elapsed time into simulated elapsed time using a time
    multiplier, and notifies registered listeners whenever it ticks.
    A paused clock still ticks, with zero simulated duration, so the number
    of simulation steps stays the same whether or not time is frozen.
    """

    def __init__(self, start_point: Optional[datetime.datetime] = None,
                 multipliers: Sequence[float] = DEFAULT_MULTIPLIERS,
                 multiplier_index: int = 2) -> None:
        if not multipliers:
            raise ValueError("At least one time multiplier is required.")
        if not 0 <= multiplier_index < len(multipliers):
            raise ValueError(f"Multiplier index {multiplier_index} out of range.")
        if start_point is None:
            start_point = datetime.datetime.now().replace(
                hour=0, minute=0, second=0, microsecond=0)
        self.start_point = start_point
        self.elapsed_seconds = 0.0
        self.multipliers = tuple(multipliers)
        self.multiplier_index = multiplier_index
        self.paused = False
        self._periodic: List[_PeriodicEvent] = []
        self._listeners: List[Callable[[float], None]] = []

    @property
    def time_multiplier(self) -> float:
        return self.multipliers[self.multiplier_index]

    # ---- core time control ----
    def tick(self, real_dt: float) -> float:
        """Advance by ``real_dt`` real seconds and return the simulated duration."""
        sim_dt = 0.0 if self.paused else max(0.0, real_dt) * self.time_multiplier
        self.elapsed_seconds += sim_dt
        for cb in self._listeners:
            cb(sim_dt)
        return sim_dt

    def pause(self) -> None:
        self.paused = True

    def resume(self) -> None:
        self.paused = False

    def toggle_pause(self) -> bool:
        self.paused = not self.paused
        return self.paused

    def increase_speed(self) -> float:
        """Step to the next faster multiplier, if any."""
        if self.multiplier_index < len(self.multipliers) - 1:
            self.multiplier_index += 1
            logger.info("Time scale set to %s", self.time_scale_formatted())
        return self.time_multiplier

    def decrease_speed(self) -> float:
        """Step to the next slower multiplier, if any."""
        if self.multiplier_index > 0:
            self.multiplier_index -= 1
            logger.info("Time scale set to %s", self.time_scale_formatted())
        return self.time_multiplier

    def time_scale_formatted(self) -> str:
        if self.time_multiplier >= 1.0:
            return f"{int(self.time_multiplier)}x"
        return f"{self.time_multiplier:.1f}x"

    # ---- manual + info ----
    def current(self) -> datetime.datetime:
        return self.start_point + datetime.timedelta(seconds=self.elapsed_seconds)

    def get_time_string(self) -> str:
        return self.current().strftime("%H:%M:%S")

    def datetime_to_elapsed_seconds(self, moment: datetime.datetime) -> float:
        return (moment - self.start_point).total_seconds()

    def register_listener(self, callback: Callable[[float], None]) -> None:
        """Receive the simulated duration of every tick."""
        if callback not in self._listeners:
            self._listeners.append(callback)

    # ---- periodic events ----
    def subscribe_event(self, name: str, period: float,
                        start_at: Optional[datetime.datetime] = None) -> None:
        """Fire ``name`` every ``period`` simulated seconds.

        Args:
            name: Identifier returned in the fired ClockEvent.
            period: Simulated seconds between firings.
            start_at: Moment of the first firing. Defaults to one period from now.
        """
        if period <= 0:
            raise ValueError("Event period must be positive.")
        if start_at is None:
            left = period
        else:
            left = self.datetime_to_elapsed_seconds(start_at) - self.elapsed_seconds
        self._insert_event(_PeriodicEvent(name, period, left))

    def _insert_event(self, event: _PeriodicEvent) -> None:
        keys = [e.left for e in self._periodic]
        self._periodic.insert(bisect.bisect_right(keys, event.left), event)

    def fire_due_events(self, sim_dt: float) -> List[ClockEvent]:
        """Count ``sim_dt`` down on every subscription and return those due, in order."""
        for event in self._periodic:
            event.left -= sim_dt
        fired: List[ClockEvent] = []
        now = self.current()
        while self._periodic and self._periodic[0].left <= 0.0:
            event = self._periodic.pop(0)
            fired.append(ClockEvent(event.name, self.elapsed_seconds + event.left, now))
            event.left += event.period
            self._insert_event(event)
        return fired

    def __repr__(self):
        return self.get_time_string()
