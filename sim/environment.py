"""Simulated airlock environments for tests and the simulator.

The environment is the only source of button presses, obstruction sensor
changes and mode requests. RandomEnvironment keeps to the fairness contract
the arbiter relies on for liveness: it never presses both doors on more than
max_burst consecutive ticks, and every obstruction eventually clears unless
a sensor has failed.
"""
from __future__ import annotations

import logging
import random
import time
from typing import Dict, Iterator, List, Optional

from airlock_controller import (
    ButtonSide,
    DoorId,
    InputPanel,
    OperatingMode,
    SensorState,
    StepInputs,
)

_LOGGER = logging.getLogger(__name__)


class MockObstructionSensor:
    def __init__(self, id: str, door: DoorId, blocked: bool = False, healthy: bool = True):
        self.id = id
        self.door = door
        self._blocked = blocked
        self.healthy = healthy
        self._last_read = time.time()
        self._error: Optional[str] = None

    def read(self) -> SensorState:
        if not self.healthy:
            raise RuntimeError(f"Sensor {self.id} failed")
        self._last_read = time.time()
        return SensorState.BLOCKED if self._blocked else SensorState.CLEAR

    def is_triggered(self) -> bool:
        return self.read() is SensorState.BLOCKED

    def set(self, blocked: bool) -> None:
        self._blocked = blocked
        self._last_read = time.time()

    def simulate_failure(self) -> None:
        self.healthy = False

    def self_check(self) -> bool:
        return self.healthy

    def report_error(self, error_msg: str) -> None:
        self._error = error_msg
        self.healthy = False


def sensor_level(sensor: MockObstructionSensor) -> SensorState:
    """Read a sensor, treating a failed sensor as blocked."""
    try:
        return sensor.read()
    except RuntimeError as e:
        _LOGGER.warning("%s, reporting %s door as blocked", e, sensor.door.value)
        return SensorState.BLOCKED


class ScriptedEnvironment:
    """Replays a fixed sequence of inputs.

    Built by chaining then() calls:

        ScriptedEnvironment().then(inner_press_inside=True).then(3)
    """

    def __init__(self, steps: Optional[List[StepInputs]] = None):
        self.steps: List[StepInputs] = list(steps or [])

    def then(self, count: int = 1, **fields) -> "ScriptedEnvironment":
        self.steps.extend(StepInputs(**fields) for _ in range(count))
        return self

    def __iter__(self) -> Iterator[StepInputs]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)


class RandomEnvironment:
    """Seeded random environment feeding an InputPanel.

    Each tick every button is pressed with press_prob. A clear sensor becomes
    blocked with block_prob and stays blocked for 1..max_block ticks. A
    degraded episode starts with degrade_prob and lasts 1..max_degraded ticks.
    """

    def __init__(
        self,
        steps: int,
        seed: Optional[int] = None,
        press_prob: float = 0.3,
        block_prob: float = 0.05,
        max_block: int = 5,
        degrade_prob: float = 0.0,
        max_degraded: int = 10,
        max_burst: int = 4,
        sensor_fail_prob: float = 0.0,
    ):
        for name, prob in (("press_prob", press_prob), ("block_prob", block_prob),
                           ("degrade_prob", degrade_prob), ("sensor_fail_prob", sensor_fail_prob)):
            if not 0.0 <= prob <= 1.0:
                raise ValueError(f"{name} must be between 0.0 and 1.0, got {prob}")
        if max_burst < 1:
            raise ValueError("max_burst must be at least 1")
        self.steps = steps
        self.rng = random.Random(seed)
        self.press_prob = press_prob
        self.block_prob = block_prob
        self.max_block = max(1, max_block)
        self.degrade_prob = degrade_prob
        self.max_degraded = max(1, max_degraded)
        self.max_burst = max_burst
        self.sensor_fail_prob = sensor_fail_prob
        self.panel = InputPanel()
        self.sensors: Dict[DoorId, MockObstructionSensor] = {
            door: MockObstructionSensor(f"{door.value}-obstruction", door) for door in DoorId
        }
        self._block_left = {door: 0 for door in DoorId}
        self._degraded_left = 0
        self._burst = 0

    def _press_buttons(self) -> None:
        pressed = {
            door: [side for side in ButtonSide if self.rng.random() < self.press_prob]
            for door in DoorId
        }
        if pressed[DoorId.INNER] and pressed[DoorId.OUTER]:
            self._burst += 1
            if self._burst > self.max_burst:
                idle = self.rng.choice(list(DoorId))
                pressed[idle] = []
                self._burst = 0
        else:
            self._burst = 0
        for door, sides in pressed.items():
            for side in sides:
                self.panel.press(door, side)

    def _update_sensors(self) -> None:
        for door, sensor in self.sensors.items():
            if sensor.healthy and self.rng.random() < self.sensor_fail_prob:
                sensor.simulate_failure()
            if self._block_left[door]:
                self._block_left[door] -= 1
                if not self._block_left[door]:
                    sensor.set(False)
            elif self.rng.random() < self.block_prob:
                self._block_left[door] = self.rng.randint(1, self.max_block)
                sensor.set(True)
            self.panel.set_sensor(door, sensor_level(sensor))

    def _update_mode(self) -> None:
        if self._degraded_left:
            self._degraded_left -= 1
            if not self._degraded_left:
                self.panel.request_mode(OperatingMode.NORMAL)
        elif self.rng.random() < self.degrade_prob:
            self._degraded_left = self.rng.randint(1, self.max_degraded)
            self.panel.request_mode(OperatingMode.DEGRADED)

    def next_inputs(self) -> StepInputs:
        self._press_buttons()
        self._update_sensors()
        self._update_mode()
        return self.panel.snapshot()

    def __iter__(self) -> Iterator[StepInputs]:
        for _ in range(self.steps):
            yield self.next_inputs()
