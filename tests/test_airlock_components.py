import logging

import pytest

from airlock_controller import (
    Arbiter,
    ButtonSide,
    DoorActuator,
    DoorCommand,
    DoorId,
    DoorProtocolError,
    DoorStatus,
    InterlockViolation,
    LatchProtocolError,
    ModeController,
    OperatingMode,
    RequestLatch,
    SafetyMonitor,
    SensorState,
    StepOutputs,
    TickSnapshot,
)


def make_snapshot(inner=DoorStatus.CLOSED, outer=DoorStatus.CLOSED, inner_req=False, outer_req=False,
                  mode=OperatingMode.NORMAL):
    return TickSnapshot(
        status={DoorId.INNER: inner, DoorId.OUTER: outer},
        requests={DoorId.INNER: inner_req, DoorId.OUTER: outer_req},
        contributing={
            DoorId.INNER: ("inner-inside",) if inner_req else (),
            DoorId.OUTER: ("outer-inside",) if outer_req else (),
        },
        latches={
            DoorId.INNER: ("inner-inside", "inner-outside"),
            DoorId.OUTER: ("outer-inside", "outer-outside"),
        },
        sensors={DoorId.INNER: SensorState.CLEAR, DoorId.OUTER: SensorState.CLEAR},
        mode=mode,
    )


def make_outputs(inner, outer, last_served=None, tick=1):
    return StepOutputs(
        tick=tick,
        inner_door_status=inner,
        outer_door_status=outer,
        inner_latch_pressed=False,
        outer_latch_pressed=False,
        last_served=last_served,
        mode=OperatingMode.NORMAL,
    )


def test_latch_press_is_idempotent():
    latch = RequestLatch("inner-inside", DoorId.INNER, ButtonSide.INSIDE)
    assert latch.press() is True
    assert latch.press() is False
    assert latch.pressed is True
    assert latch.press_count == 2


def test_latch_ack_clears():
    latch = RequestLatch("outer", DoorId.OUTER)
    latch.press()
    latch.ack_if_served()
    assert latch.pressed is False


def test_strict_latch_rejects_unpressed_ack():
    latch = RequestLatch("outer", DoorId.OUTER, strict_ack=True)
    with pytest.raises(LatchProtocolError):
        latch.ack_if_served()


def test_relaxed_latch_allows_unpressed_ack():
    latch = RequestLatch("outer", DoorId.OUTER, strict_ack=False)
    latch.ack_if_served()
    assert latch.pressed is False


@pytest.mark.parametrize("start, command, sensor, expected", [
    (DoorStatus.CLOSED, DoorCommand.OPEN, SensorState.CLEAR, DoorStatus.OPEN),
    (DoorStatus.CLOSED, DoorCommand.OPEN, SensorState.BLOCKED, DoorStatus.OPEN),
    (DoorStatus.CLOSED, DoorCommand.HOLD, SensorState.CLEAR, DoorStatus.CLOSED),
    (DoorStatus.OPEN, DoorCommand.CLOSE, SensorState.CLEAR, DoorStatus.CLOSED),
    (DoorStatus.OPEN, DoorCommand.CLOSE, SensorState.BLOCKED, DoorStatus.OPEN),
    (DoorStatus.OPEN, DoorCommand.HOLD, SensorState.BLOCKED, DoorStatus.OPEN),
])
def test_actuator_transitions(start, command, sensor, expected):
    actuator = DoorActuator(DoorId.INNER, status=start)
    assert actuator.apply(command, sensor) is expected
    assert actuator.status is expected


def test_actuator_veto_can_be_disabled():
    actuator = DoorActuator(DoorId.OUTER, veto_enabled=False, status=DoorStatus.OPEN)
    assert actuator.apply(DoorCommand.CLOSE, SensorState.BLOCKED) is DoorStatus.CLOSED


def test_actuator_rejects_illegal_commands():
    closed = DoorActuator(DoorId.INNER)
    with pytest.raises(DoorProtocolError):
        closed.apply(DoorCommand.CLOSE, SensorState.CLEAR)

    opened = DoorActuator(DoorId.INNER, status=DoorStatus.OPEN)
    with pytest.raises(DoorProtocolError):
        opened.apply(DoorCommand.OPEN, SensorState.CLEAR)


def test_actuator_status_report():
    actuator = DoorActuator(DoorId.OUTER)
    actuator.apply(DoorCommand.OPEN, SensorState.CLEAR)
    actuator.apply(DoorCommand.CLOSE, SensorState.BLOCKED)
    assert actuator.get_status() == {
        "door": "outer",
        "status": "OPEN",
        "last_command": "CLOSE",
        "vetoed": True,
        "open_count": 1,
    }


def test_mode_controller_filters_outside_latches():
    inside = RequestLatch("inner-inside", DoorId.INNER, ButtonSide.INSIDE)
    outside = RequestLatch("inner-outside", DoorId.INNER, ButtonSide.OUTSIDE)
    modes = ModeController({DoorId.INNER: [inside, outside], DoorId.OUTER: []})
    outside.press()

    assert modes.effective_request(DoorId.INNER, OperatingMode.NORMAL) is True
    assert modes.effective_request(DoorId.INNER, OperatingMode.DEGRADED) is False
    inside.press()
    assert modes.effective_request(DoorId.INNER, OperatingMode.DEGRADED) is True


def test_mode_change_applies_on_next_advance():
    modes = ModeController({DoorId.INNER: [], DoorId.OUTER: []})
    modes.set_mode(OperatingMode.DEGRADED)
    assert modes.mode is OperatingMode.NORMAL
    assert modes.advance() is OperatingMode.DEGRADED
    assert modes.mode is OperatingMode.DEGRADED
    # no pending request keeps the mode
    assert modes.advance() is OperatingMode.DEGRADED


def test_mode_controller_refuses_disabled_degraded_mode():
    modes = ModeController({DoorId.INNER: [], DoorId.OUTER: []}, degraded_enabled=False)
    modes.set_mode(OperatingMode.DEGRADED)
    assert modes.advance() is OperatingMode.NORMAL


def test_arbiter_closes_open_door_regardless_of_request():
    arbiter = Arbiter()
    decision = arbiter.decide(make_snapshot(inner=DoorStatus.OPEN, inner_req=True, outer_req=True))
    assert decision.commands == {DoorId.INNER: DoorCommand.CLOSE, DoorId.OUTER: DoorCommand.HOLD}
    assert decision.granted is None
    assert decision.acks == ()


def test_arbiter_first_contention_goes_to_primary():
    arbiter = Arbiter(primary=DoorId.INNER)
    decision = arbiter.decide(make_snapshot(inner_req=True, outer_req=True))
    assert decision.granted is DoorId.INNER
    assert decision.commands[DoorId.OUTER] is DoorCommand.HOLD
    assert decision.acks == ("inner-inside",)


def test_arbiter_decide_does_not_change_history():
    arbiter = Arbiter()
    arbiter.decide(make_snapshot(inner_req=True))
    assert arbiter.last_served is None


def test_arbiter_relaxed_acks_every_latch_of_granted_door():
    arbiter = Arbiter(strict_ack=False)
    decision = arbiter.decide(make_snapshot(outer_req=True))
    assert decision.granted is DoorId.OUTER
    assert decision.acks == ("outer-inside", "outer-outside")


def test_arbiter_execute_updates_last_served_on_opening():
    arbiter = Arbiter(primary=DoorId.OUTER)
    actuators = {door: DoorActuator(door) for door in DoorId}
    latch = RequestLatch("outer-inside", DoorId.OUTER, ButtonSide.INSIDE)
    latch.press()
    snapshot = make_snapshot(outer_req=True)

    decision = arbiter.decide(snapshot)
    opened = arbiter.execute(decision, snapshot, actuators, {"outer-inside": latch})

    assert opened == [DoorId.OUTER]
    assert arbiter.last_served is DoorId.OUTER
    assert latch.pressed is False
    assert actuators[DoorId.OUTER].status is DoorStatus.OPEN


def test_arbiter_never_grants_both_doors():
    for last in (None, DoorId.INNER, DoorId.OUTER):
        arbiter = Arbiter()
        arbiter._state.last_served = last
        decision = arbiter.decide(make_snapshot(inner_req=True, outer_req=True))
        granted = [d for d, c in decision.commands.items() if c is DoorCommand.OPEN]
        assert len(granted) == 1
        assert granted[0] is (DoorId.OUTER if last is DoorId.INNER else DoorId.INNER)


def test_safety_monitor_flags_both_doors_open():
    monitor = SafetyMonitor()
    snapshot = make_snapshot(inner=DoorStatus.OPEN, outer_req=True)
    with pytest.raises(InterlockViolation, match="both doors open"):
        monitor.check(snapshot, make_outputs(DoorStatus.OPEN, DoorStatus.OPEN, DoorId.OUTER), None)
    assert monitor.violations == 1
    assert monitor.last_violation.startswith("tick 1")


def test_safety_monitor_flags_unrequested_opening():
    monitor = SafetyMonitor()
    with pytest.raises(InterlockViolation, match="without a request"):
        monitor.check(make_snapshot(), make_outputs(DoorStatus.OPEN, DoorStatus.CLOSED, DoorId.INNER), None)


def test_safety_monitor_flags_history_rewrite():
    monitor = SafetyMonitor()
    with pytest.raises(InterlockViolation, match="last served changed"):
        monitor.check(make_snapshot(), make_outputs(DoorStatus.CLOSED, DoorStatus.CLOSED, DoorId.OUTER), DoorId.INNER)


def test_safety_monitor_accepts_legal_tick():
    monitor = SafetyMonitor()
    monitor.check(make_snapshot(inner_req=True), make_outputs(DoorStatus.OPEN, DoorStatus.CLOSED, DoorId.INNER), None)
    assert monitor.checks == 1
    assert monitor.violations == 0


def test_disabled_degraded_request_warns_once(caplog):
    modes = ModeController({DoorId.INNER: [], DoorId.OUTER: []}, degraded_enabled=False)
    with caplog.at_level(logging.WARNING, logger="airlock_controller"):
        for _ in range(5):
            modes.set_mode(OperatingMode.DEGRADED)
            modes.advance()
        modes.set_mode(OperatingMode.NORMAL)
        modes.set_mode(OperatingMode.DEGRADED)
    warnings = [r for r in caplog.records if "Degraded mode requested" in r.getMessage()]
    assert len(warnings) == 2


def test_arbiter_rejected_ack_leaves_doors_unmoved():
    arbiter = Arbiter()
    actuators = {door: DoorActuator(door) for door in DoorId}
    latch = RequestLatch("inner-inside", DoorId.INNER, ButtonSide.INSIDE, strict_ack=True)
    snapshot = make_snapshot(inner_req=True)
    decision = arbiter.decide(snapshot)

    with pytest.raises(LatchProtocolError):
        arbiter.execute(decision, snapshot, actuators, {"inner-inside": latch})
    assert actuators[DoorId.INNER].status is DoorStatus.CLOSED
    assert arbiter.last_served is None
