"""Simulation helper package.

Expose reusable airlock environments for tests and the simulator.
"""

from .environment import MockObstructionSensor, RandomEnvironment, ScriptedEnvironment
