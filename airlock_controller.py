"""Airlock access controller module

Implements the interlocked two-door airlock:
- RequestLatch
- DoorActuator
- ModeController
- Arbiter
- InputPanel
- SafetyMonitor
- AirlockController

The controller is a synchronous discrete-step loop. Every tick reads one
snapshot of buttons, obstruction sensors and the requested operating mode,
decides one command per door and applies it. Hardware is abstract; the
sensors and buttons are fed in through StepInputs.
"""
from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, Iterable, Iterator, List, Optional, Set, Tuple

_LOGGER = logging.getLogger(__name__)


class DoorId(Enum):
    INNER = "inner"
    OUTER = "outer"

    @property
    def opposite(self) -> "DoorId":
        return DoorId.OUTER if self is DoorId.INNER else DoorId.INNER


class DoorStatus(Enum):
    CLOSED = 0
    OPEN = 1


class DoorCommand(Enum):
    HOLD = 0
    OPEN = 1
    CLOSE = 2


class SensorState(Enum):
    CLEAR = 0
    BLOCKED = 1


class OperatingMode(Enum):
    NORMAL = 0
    DEGRADED = 1


class ButtonSide(Enum):
    INSIDE = "inside"
    OUTSIDE = "outside"


class AirlockError(RuntimeError):
    pass


class DoorProtocolError(AirlockError):
    """An actuator received a command that is illegal in its current state."""


class LatchProtocolError(AirlockError):
    """A latch was acknowledged while not pressed under the strict policy."""


class InterlockViolation(AirlockError):
    """A safety invariant failed after a tick."""


class ConfigurationError(AirlockError, ValueError):
    pass


@dataclass
class AirlockConfig:
    """Policy knobs covering the airlock variants.

    primary: door favored when both doors request at once.
    split_buttons: separate inside/outside latches per door; merged otherwise.
    obstruction_sensors: sensors veto close commands while blocked.
    degraded_mode: whether a degraded (inside-only) mode may be entered.
    strict_ack: acknowledging an unpressed latch is a fatal error.
    """

    primary: DoorId = DoorId.INNER
    split_buttons: bool = True
    obstruction_sensors: bool = True
    degraded_mode: bool = True
    strict_ack: bool = True
    history_size: int = 256

    def validate(self) -> None:
        errors = []
        if not isinstance(self.primary, DoorId):
            errors.append(f"primary must be a DoorId, got {self.primary!r}")
        if self.degraded_mode and not self.split_buttons:
            errors.append("degraded mode needs split inside/outside buttons")
        if self.history_size < 1:
            errors.append("history_size must be at least 1")
        if errors:
            raise ConfigurationError("; ".join(errors))


@dataclass
class RequestLatch:
    """Sticky request flag for one door side.

    Set by a press, cleared only by the controller when the door opens to
    serve it.
    """

    id: str
    door: DoorId
    side: Optional[ButtonSide] = None
    strict_ack: bool = True
    pressed: bool = False
    press_count: int = 0

    def press(self) -> bool:
        """Register a press. Returns True if the latch changed state."""
        self.press_count += 1
        if self.pressed:
            return False
        self.pressed = True
        return True

    def ack_if_served(self) -> None:
        """Clear the latch after its door opened to serve it.

        Raises:
            LatchProtocolError: latch not pressed and the strict policy is on
        """
        if not self.pressed:
            if self.strict_ack:
                raise LatchProtocolError(f"Latch {self.id} acknowledged while not pressed")
            _LOGGER.debug("Latch %s reset while not pressed", self.id)
            return
        self.pressed = False


@dataclass
class DoorActuator:
    door: DoorId
    veto_enabled: bool = True
    status: DoorStatus = DoorStatus.CLOSED
    last_command: DoorCommand = DoorCommand.HOLD
    vetoed: bool = False
    open_count: int = 0

    def apply(self, command: DoorCommand, sensor: SensorState) -> DoorStatus:
        """Advance the door one tick and return its new status.

        A close command is vetoed while the obstruction sensor reports
        BLOCKED; the door stays open.

        Raises:
            DoorProtocolError: OPEN on an open door or CLOSE on a closed one
        """
        if command is DoorCommand.OPEN and self.status is DoorStatus.OPEN:
            raise DoorProtocolError(f"{self.door.value} door commanded open while already open")
        if command is DoorCommand.CLOSE and self.status is DoorStatus.CLOSED:
            raise DoorProtocolError(f"{self.door.value} door commanded closed while already closed")

        self.last_command = command
        if command is DoorCommand.OPEN:
            self.status = DoorStatus.OPEN
            self.open_count += 1
        elif command is DoorCommand.CLOSE:
            if self.veto_enabled and sensor is SensorState.BLOCKED:
                if not self.vetoed:
                    _LOGGER.warning("%s door obstructed, holding open", self.door.value)
                else:
                    _LOGGER.debug("%s door still obstructed", self.door.value)
                self.vetoed = True
                return self.status
            self.status = DoorStatus.CLOSED
        self.vetoed = False
        return self.status

    def get_status(self) -> Dict[str, Any]:
        return {
            "door": self.door.value,
            "status": self.status.name,
            "last_command": self.last_command.name,
            "vetoed": self.vetoed,
            "open_count": self.open_count,
        }


class ModeController:
    """Tracks the operating mode and filters request sources by it."""

    def __init__(self, latches: Dict[DoorId, List[RequestLatch]], degraded_enabled: bool = True):
        self.latches = latches
        self.degraded_enabled = degraded_enabled
        self._mode = OperatingMode.NORMAL
        self._pending: Optional[OperatingMode] = None
        self.degraded_refused = False

    @property
    def mode(self) -> OperatingMode:
        return self._mode

    def set_mode(self, mode: OperatingMode) -> None:
        """Request a mode; it takes effect at the start of the next tick."""
        if mode is OperatingMode.DEGRADED and not self.degraded_enabled:
            if not self.degraded_refused:
                _LOGGER.warning("Degraded mode requested but not enabled, staying %s", self._mode.name)
            self.degraded_refused = True
            return
        self.degraded_refused = False
        self._pending = mode

    def advance(self) -> OperatingMode:
        """Apply the pending mode request. Called once per tick."""
        if self._pending is not None and self._pending is not self._mode:
            _LOGGER.info("Operating mode %s -> %s", self._mode.name, self._pending.name)
            self._mode = self._pending
        self._pending = None
        return self._mode

    def honored(self, door: DoorId, mode: Optional[OperatingMode] = None) -> List[RequestLatch]:
        """Latches of a door whose requests the given mode accepts."""
        mode = self._mode if mode is None else mode
        if mode is OperatingMode.NORMAL:
            return list(self.latches[door])
        return [latch for latch in self.latches[door] if latch.side is ButtonSide.INSIDE]

    def effective_request(self, door: DoorId, mode: Optional[OperatingMode] = None) -> bool:
        return any(latch.pressed for latch in self.honored(door, mode))


@dataclass(frozen=True)
class TickSnapshot:
    """Pre-tick view of the airlock that every decision reads from."""

    status: Dict[DoorId, DoorStatus]
    requests: Dict[DoorId, bool]
    contributing: Dict[DoorId, Tuple[str, ...]]
    latches: Dict[DoorId, Tuple[str, ...]]
    sensors: Dict[DoorId, SensorState]
    mode: OperatingMode


@dataclass(frozen=True)
class Decision:
    commands: Dict[DoorId, DoorCommand]
    acks: Tuple[str, ...] = ()
    granted: Optional[DoorId] = None


@dataclass
class ArbiterState:
    last_served: Optional[DoorId] = None
    mode: OperatingMode = OperatingMode.NORMAL


class Arbiter:
    """Decides which door may move each tick.

    Open doors are always told to close. A closed door opens only when it is
    requested, the other door is closed and the precedence rule allows it.
    The primary door wins a simultaneous request unless it won the previous
    one, in which case the secondary door gets its turn.

    The arbiter owns last_served; it changes only when a door goes from
    closed to open.
    """

    def __init__(self, primary: DoorId = DoorId.INNER, strict_ack: bool = True):
        self.primary = primary
        self.secondary = primary.opposite
        self.strict_ack = strict_ack
        self._state = ArbiterState()

    @property
    def last_served(self) -> Optional[DoorId]:
        return self._state.last_served

    @property
    def mode(self) -> OperatingMode:
        return self._state.mode

    def precedence_holds(self, door: DoorId, snapshot: TickSnapshot) -> bool:
        if door is self.primary:
            return not snapshot.requests[self.secondary] or self._state.last_served is not self.primary
        return not snapshot.requests[self.primary] or self._state.last_served is self.primary

    def decide(self, snapshot: TickSnapshot) -> Decision:
        """Compute one command per door. Does not mutate any state."""
        commands: Dict[DoorId, DoorCommand] = {}
        acks: List[str] = []
        granted: Optional[DoorId] = None

        for door in (self.primary, self.secondary):
            other = door.opposite
            if snapshot.status[door] is DoorStatus.OPEN:
                commands[door] = DoorCommand.CLOSE
            elif (
                snapshot.requests[door]
                and snapshot.status[other] is DoorStatus.CLOSED
                and self.precedence_holds(door, snapshot)
            ):
                commands[door] = DoorCommand.OPEN
                granted = door
                # relaxed policy resets every latch of the door, pressed or not
                acks.extend(snapshot.contributing[door] if self.strict_ack else snapshot.latches[door])
            else:
                commands[door] = DoorCommand.HOLD

        return Decision(commands=commands, acks=tuple(acks), granted=granted)

    def execute(
        self,
        decision: Decision,
        snapshot: TickSnapshot,
        actuators: Dict[DoorId, DoorActuator],
        latches: Dict[str, RequestLatch],
    ) -> List[DoorId]:
        """Apply a decision: move the doors, acknowledge latches, update history.

        Returns the doors that went from closed to open this tick. Latches are
        acknowledged before any door moves, so a LatchProtocolError leaves
        the doors untouched.
        """
        for latch_id in decision.acks:
            latches[latch_id].ack_if_served()
        for door in (self.primary, self.secondary):
            actuators[door].apply(decision.commands[door], snapshot.sensors[door])

        opened = [
            door for door in (self.primary, self.secondary)
            if snapshot.status[door] is DoorStatus.CLOSED and actuators[door].status is DoorStatus.OPEN
        ]
        for door in opened:
            _LOGGER.debug("%s door opened (previously served: %s)", door.value,
                          self._state.last_served.value if self._state.last_served else None)
            self._state.last_served = door
        self._state.mode = snapshot.mode
        return opened


@dataclass(frozen=True)
class StepInputs:
    """Environment inputs serialized into one tick."""

    inner_press_inside: bool = False
    inner_press_outside: bool = False
    outer_press_inside: bool = False
    outer_press_outside: bool = False
    inner_sensor: SensorState = SensorState.CLEAR
    outer_sensor: SensorState = SensorState.CLEAR
    mode_request: OperatingMode = OperatingMode.NORMAL

    def presses(self) -> List[Tuple[DoorId, ButtonSide]]:
        flags = [
            (DoorId.INNER, ButtonSide.INSIDE, self.inner_press_inside),
            (DoorId.INNER, ButtonSide.OUTSIDE, self.inner_press_outside),
            (DoorId.OUTER, ButtonSide.INSIDE, self.outer_press_inside),
            (DoorId.OUTER, ButtonSide.OUTSIDE, self.outer_press_outside),
        ]
        return [(door, side) for door, side, pressed in flags if pressed]

    def sensor(self, door: DoorId) -> SensorState:
        return self.inner_sensor if door is DoorId.INNER else self.outer_sensor


@dataclass(frozen=True)
class StepOutputs:
    tick: int
    inner_door_status: DoorStatus
    outer_door_status: DoorStatus
    inner_latch_pressed: bool
    outer_latch_pressed: bool
    last_served: Optional[DoorId]
    mode: OperatingMode
    inner_command: DoorCommand = DoorCommand.HOLD
    outer_command: DoorCommand = DoorCommand.HOLD

    def door_status(self, door: DoorId) -> DoorStatus:
        return self.inner_door_status if door is DoorId.INNER else self.outer_door_status

    def latch_pressed(self, door: DoorId) -> bool:
        return self.inner_latch_pressed if door is DoorId.INNER else self.outer_latch_pressed

    def command(self, door: DoorId) -> DoorCommand:
        return self.inner_command if door is DoorId.INNER else self.outer_command


class InputPanel:
    """Collects asynchronous button presses and sensor changes.

    Producers may call press/set_sensor/request_mode from any thread; the
    control loop calls snapshot() once per tick. Presses are consumed by the
    snapshot, sensor levels and the mode request persist.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._presses: Set[Tuple[DoorId, ButtonSide]] = set()
        self._sensors = {DoorId.INNER: SensorState.CLEAR, DoorId.OUTER: SensorState.CLEAR}
        self._mode = OperatingMode.NORMAL

    def press(self, door: DoorId, side: ButtonSide = ButtonSide.INSIDE) -> None:
        with self._lock:
            self._presses.add((door, side))

    def set_sensor(self, door: DoorId, state: SensorState) -> None:
        with self._lock:
            self._sensors[door] = state

    def request_mode(self, mode: OperatingMode) -> None:
        with self._lock:
            self._mode = mode

    def snapshot(self) -> StepInputs:
        with self._lock:
            presses = self._presses
            self._presses = set()
            return StepInputs(
                inner_press_inside=(DoorId.INNER, ButtonSide.INSIDE) in presses,
                inner_press_outside=(DoorId.INNER, ButtonSide.OUTSIDE) in presses,
                outer_press_inside=(DoorId.OUTER, ButtonSide.INSIDE) in presses,
                outer_press_outside=(DoorId.OUTER, ButtonSide.OUTSIDE) in presses,
                inner_sensor=self._sensors[DoorId.INNER],
                outer_sensor=self._sensors[DoorId.OUTER],
                mode_request=self._mode,
            )


@dataclass
class SafetyMonitor:
    """Checks the airlock invariants after each tick."""

    checks: int = 0
    violations: int = 0
    last_violation: Optional[str] = None

    def check(self, snapshot: TickSnapshot, outputs: StepOutputs, previous_served: Optional[DoorId]) -> None:
        self.checks += 1
        errors = []

        if outputs.inner_door_status is DoorStatus.OPEN and outputs.outer_door_status is DoorStatus.OPEN:
            errors.append("both doors open")

        opened = [
            door for door in DoorId
            if snapshot.status[door] is DoorStatus.CLOSED and outputs.door_status(door) is DoorStatus.OPEN
        ]
        for door in opened:
            if not snapshot.requests[door]:
                errors.append(f"{door.value} door opened without a request")

        if opened:
            if outputs.last_served is not opened[-1]:
                errors.append("last served not updated on door opening")
        elif outputs.last_served is not previous_served:
            errors.append("last served changed without a door opening")

        if errors:
            self.violations += 1
            self.last_violation = f"tick {outputs.tick}: {', '.join(errors)}"
            _LOGGER.error("Interlock violation at %s", self.last_violation)
            raise InterlockViolation(self.last_violation)


@dataclass
class AirlockController:
    config: AirlockConfig = field(default_factory=AirlockConfig)
    safety_monitor: SafetyMonitor = field(default_factory=SafetyMonitor)
    tick_count: int = 0

    def __post_init__(self) -> None:
        self.config.validate()
        self.latches: Dict[DoorId, List[RequestLatch]] = {door: self._make_latches(door) for door in DoorId}
        self._latch_index: Dict[str, RequestLatch] = {
            latch.id: latch for door in DoorId for latch in self.latches[door]
        }
        self.actuators: Dict[DoorId, DoorActuator] = {
            door: DoorActuator(door, veto_enabled=self.config.obstruction_sensors) for door in DoorId
        }
        self.mode_controller = ModeController(self.latches, degraded_enabled=self.config.degraded_mode)
        self.arbiter = Arbiter(primary=self.config.primary, strict_ack=self.config.strict_ack)
        self.history: Deque[StepOutputs] = deque(maxlen=self.config.history_size)

    def _make_latches(self, door: DoorId) -> List[RequestLatch]:
        if not self.config.split_buttons:
            return [RequestLatch(door.value, door, strict_ack=self.config.strict_ack)]
        return [
            RequestLatch(f"{door.value}-{side.value}", door, side, strict_ack=self.config.strict_ack)
            for side in ButtonSide
        ]

    def latch(self, door: DoorId, side: ButtonSide = ButtonSide.INSIDE) -> RequestLatch:
        """Latch fed by a button; merged configurations have one per door."""
        for latch in self.latches[door]:
            if latch.side is None or latch.side is side:
                return latch
        raise KeyError((door, side))

    def door_status(self, door: DoorId) -> DoorStatus:
        return self.actuators[door].status

    @property
    def last_served(self) -> Optional[DoorId]:
        return self.arbiter.last_served

    @property
    def mode(self) -> OperatingMode:
        return self.mode_controller.mode

    def _snapshot(self, inputs: StepInputs, mode: OperatingMode) -> TickSnapshot:
        contributing = {
            door: tuple(latch.id for latch in self.mode_controller.honored(door, mode) if latch.pressed)
            for door in DoorId
        }
        return TickSnapshot(
            status={door: self.actuators[door].status for door in DoorId},
            requests={door: bool(contributing[door]) for door in DoorId},
            contributing=contributing,
            latches={door: tuple(latch.id for latch in self.latches[door]) for door in DoorId},
            sensors={door: inputs.sensor(door) for door in DoorId},
            mode=mode,
        )

    def step(self, inputs: StepInputs) -> StepOutputs:
        """Run one control tick.

        Presses are latched and the mode request applied before the decision,
        so everything the arbiter reads comes from the same snapshot.

        Raises:
            DoorProtocolError, LatchProtocolError, InterlockViolation: internal
            consistency failures; the airlock must not keep running after one.
        """
        for door, side in inputs.presses():
            if self.latch(door, side).press():
                _LOGGER.debug("%s %s button pressed", door.value, side.value)
        self.mode_controller.set_mode(inputs.mode_request)
        mode = self.mode_controller.advance()

        snapshot = self._snapshot(inputs, mode)
        decision = self.arbiter.decide(snapshot)
        previous_served = self.arbiter.last_served
        opened = self.arbiter.execute(decision, snapshot, self.actuators, self._latch_index)
        self.tick_count += 1

        outputs = StepOutputs(
            tick=self.tick_count,
            inner_door_status=self.actuators[DoorId.INNER].status,
            outer_door_status=self.actuators[DoorId.OUTER].status,
            inner_latch_pressed=any(latch.pressed for latch in self.latches[DoorId.INNER]),
            outer_latch_pressed=any(latch.pressed for latch in self.latches[DoorId.OUTER]),
            last_served=self.arbiter.last_served,
            mode=mode,
            inner_command=decision.commands[DoorId.INNER],
            outer_command=decision.commands[DoorId.OUTER],
        )
        self.safety_monitor.check(snapshot, outputs, previous_served)
        self.history.append(outputs)
        if opened:
            _LOGGER.info("Tick %d: %s door opened", self.tick_count, opened[0].value)
        return outputs

    def run(self, inputs: Iterable[StepInputs]) -> Iterator[StepOutputs]:
        for step_inputs in inputs:
            yield self.step(step_inputs)

    def status_report(self) -> Dict[str, Any]:
        """Diagnostic snapshot of doors, latches, arbitration history and monitor counters."""
        return {
            "tick": self.tick_count,
            "mode": self.mode.name,
            "last_served": self.last_served.value if self.last_served else None,
            "doors": {door.value: self.actuators[door].get_status() for door in DoorId},
            "latches": {
                latch.id: {"pressed": latch.pressed, "press_count": latch.press_count}
                for latch in self._latch_index.values()
            },
            "config": {
                "primary": self.config.primary.value,
                "split_buttons": self.config.split_buttons,
                "obstruction_sensors": self.config.obstruction_sensors,
                "degraded_mode": self.config.degraded_mode,
                "strict_ack": self.config.strict_ack,
            },
            "safety": {
                "checks": self.safety_monitor.checks,
                "violations": self.safety_monitor.violations,
                "last_violation": self.safety_monitor.last_violation,
            },
        }
