"""Declarative scenario suites and their execution engine."""

from maci.scenario.engine import ScenarioExecutionEngine
from maci.scenario.loader import ScenarioSuite, Step, load_suites, parse_suites

__all__ = [
    "ScenarioExecutionEngine",
    "ScenarioSuite",
    "Step",
    "load_suites",
    "parse_suites",
]
