"""Airlock simulator that prints step-by-step messages.

Drives the airlock controller with a seeded random environment and prints
human-readable messages with timestamps: button presses, door openings and
closings, obstruction vetoes and mode changes.

Usage:
    python simulate_airlock.py --steps 50 --seed 7
"""
from __future__ import annotations

import argparse
import logging
import sys
import time
from typing import Callable, Dict, List, Optional

from airlock_config import load_config
from airlock_controller import (
    AirlockController,
    AirlockError,
    DoorCommand,
    DoorId,
    DoorStatus,
    StepInputs,
    StepOutputs,
)
from sim.environment import RandomEnvironment


def ts() -> str:
    return time.strftime("%H:%M:%S")


def print_step(msg: str) -> None:
    print(f"[{ts()}] {msg}")


def make_printer(verbose: bool):
    if verbose:
        return print_step
    else:
        return lambda *_args, **_kwargs: None


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


class AirlockSimulator:
    def __init__(self, controller: AirlockController, environment: RandomEnvironment,
                 printer: Callable[[str], None] = print_step):
        self.controller = controller
        self.environment = environment
        self.print = printer
        self.openings: Dict[DoorId, int] = {door: 0 for door in DoorId}
        self.vetoes: Dict[DoorId, int] = {door: 0 for door in DoorId}
        self._previous: Optional[StepOutputs] = None

    def describe(self, inputs: StepInputs, outputs: StepOutputs) -> List[str]:
        lines = []
        for door, side in inputs.presses():
            lines.append(f"{door.value} {side.value} button pressed")
        if self._previous is not None and outputs.mode is not self._previous.mode:
            lines.append(f"mode changed to {outputs.mode.name}")
        for door in DoorId:
            before = self._previous.door_status(door) if self._previous else DoorStatus.CLOSED
            after = outputs.door_status(door)
            if before is DoorStatus.CLOSED and after is DoorStatus.OPEN:
                self.openings[door] += 1
                lines.append(f"{door.value} door OPENED")
            elif before is DoorStatus.OPEN and after is DoorStatus.CLOSED:
                lines.append(f"{door.value} door closed")
            elif outputs.command(door) is DoorCommand.CLOSE and after is DoorStatus.OPEN:
                self.vetoes[door] += 1
                lines.append(f"{door.value} door obstructed, held open")
        return lines

    def run(self) -> bool:
        """Run every environment tick. Returns False if the airlock faulted."""
        for inputs in self.environment:
            try:
                outputs = self.controller.step(inputs)
            except AirlockError as e:
                self.print(f"Airlock fault at tick {self.controller.tick_count + 1}: {e}")
                return False
            for line in self.describe(inputs, outputs):
                self.print(f"tick {outputs.tick:>4}: {line}")
            self._previous = outputs
        return True

    def summary(self) -> str:
        report = self.controller.status_report()
        return (
            f"{report['tick']} ticks, inner opened {self.openings[DoorId.INNER]}x, "
            f"outer opened {self.openings[DoorId.OUTER]}x, "
            f"vetoes inner/outer {self.vetoes[DoorId.INNER]}/{self.vetoes[DoorId.OUTER]}, "
            f"last served {report['last_served']}"
        )


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Simulate an airlock under random button presses and obstructions")
    parser.add_argument("--steps", type=int, default=40, help="Number of control ticks to simulate (default: 40)")
    parser.add_argument("--seed", type=int, default=None, help="Random seed for a reproducible run")
    parser.add_argument("--press-prob", type=float, default=0.3, help="Probability (0.0-1.0) that a button is pressed in a tick (default: 0.3)")
    parser.add_argument("--block-prob", type=float, default=0.05, help="Probability (0.0-1.0) that an obstruction appears in a tick (default: 0.05)")
    parser.add_argument("--degrade-prob", type=float, default=0.0, help="Probability (0.0-1.0) that a degraded episode starts in a tick (default: 0.0)")
    parser.add_argument("--sensor-fail-prob", type=float, default=0.0, help="Probability (0.0-1.0) that an obstruction sensor fails in a tick (default: 0.0)")
    parser.add_argument("--config", help="JSON configuration file")
    parser.add_argument("--primary", choices=[d.value for d in DoorId], help="Door favored on simultaneous requests")
    parser.add_argument("--merged-buttons", action="store_true", help="One request latch per door instead of inside/outside")
    parser.add_argument("--no-sensors", action="store_true", help="Disable the obstruction sensor veto")
    parser.add_argument("--relaxed-ack", action="store_true", help="Allow resetting unpressed latches")
    parser.add_argument("--quiet", action="store_true", help="Suppress printed steps (except the summary)")
    parser.add_argument("--verbose", action="store_true", help="Verbose logging")
    args = parser.parse_args(argv)

    setup_logging(args.verbose)

    try:
        config = load_config(args.config)
        if args.primary:
            config.primary = DoorId(args.primary)
        if args.merged_buttons:
            config.split_buttons = False
            config.degraded_mode = False
        if args.no_sensors:
            config.obstruction_sensors = False
        if args.relaxed_ack:
            config.strict_ack = False
        controller = AirlockController(config=config)
        environment = RandomEnvironment(
            steps=max(1, args.steps),
            seed=args.seed,
            press_prob=args.press_prob,
            block_prob=args.block_prob,
            degrade_prob=args.degrade_prob if config.degraded_mode else 0.0,
            sensor_fail_prob=args.sensor_fail_prob,
        )
    except ValueError as e:
        parser.error(str(e))

    printer = make_printer(not args.quiet)
    printer("Starting airlock simulation")
    sim = AirlockSimulator(controller, environment, printer=printer)
    ok = sim.run()
    print_step(f"Simulation {'complete' if ok else 'aborted'}: {sim.summary()}")
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
