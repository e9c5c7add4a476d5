"""Load and validate scenario suites from JSON or YAML.

Suite files look like:

    suites:
      - description: one voter, one vote
        steps:
          - name: keys
            command: generateKeypair
            prerequisite: true
          - name: poll
            command: createPoll
            args: {maxUsers: 4, maxVoteOptions: 25}
            expect: {stateTreeDepth: 2, voteOptionTreeDepth: 2}
          ...

A file may also hold a single suite object or a bare list of suites.
Everything is validated here, before any step runs: commands and their
arguments, assertion names, expected error kinds, step names and the steps
each reference or ``requires`` entry points at, which must come earlier in
the suite.
"""

from __future__ import annotations

import inspect
import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

import yaml

from maci import errors
from maci.errors import MaciError, ScenarioValidationError
from maci.models.poll import validate_poll_id
from maci.scenario.assertions import ASSERTION_NAMES, ERROR_ASSERTION
from maci.scenario.commands import Reference, decode_command


_STEP_NAME_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
_STEP_KEYS = {"name", "command", "args", "expect", "prerequisite", "requires"}
_SUITE_KEYS = {"description", "pollId", "steps"}

# Steps only ever see MaciError subclasses; anything else is reported as an error.
ERROR_KINDS = frozenset(
    name for name, cls in inspect.getmembers(errors, inspect.isclass)
    if issubclass(cls, MaciError)
)


@dataclass(frozen=True)
class Step:
    name: str
    command: Any
    references: dict[str, Reference] = field(default_factory=dict)
    expect: dict[str, Any] = field(default_factory=dict)
    prerequisite: bool = False
    requires: tuple[str, ...] = ()

    @property
    def command_name(self) -> str:
        return self.command.command


@dataclass(frozen=True)
class ScenarioSuite:
    description: str
    steps: tuple[Step, ...]
    poll_id: Optional[str] = None


def _references_in(value: Any) -> list[Reference]:
    ref = Reference.parse(value)
    if ref is not None:
        return [ref]
    if isinstance(value, list):
        return [r for item in value for r in _references_in(item)]
    if isinstance(value, dict):
        return [r for item in value.values() for r in _references_in(item)]
    return []


def parse_step(raw: Any, index: int, earlier: set[str], where: str) -> Step:
    if not isinstance(raw, dict):
        raise ScenarioValidationError(f"{where} step {index}: must be a mapping")
    unknown = sorted(set(raw) - _STEP_KEYS)
    if unknown:
        raise ScenarioValidationError(
            f"{where} step {index}: unknown key(s) {', '.join(unknown)}"
        )
    command_name = raw.get("command")
    if not isinstance(command_name, str):
        raise ScenarioValidationError(f"{where} step {index}: missing command")

    name = raw.get("name", f"{command_name}-{index}")
    if not isinstance(name, str) or not _STEP_NAME_RE.match(name):
        raise ScenarioValidationError(f"{where} step {index}: invalid step name {name!r}")
    if name in earlier:
        raise ScenarioValidationError(f"{where}: duplicate step name {name!r}")
    here = f"{where} step {name!r}"

    command, references = decode_command(command_name, raw.get("args"), here)

    expect = raw.get("expect") or {}
    if not isinstance(expect, dict):
        raise ScenarioValidationError(f"{here}: expect must be a mapping")
    unknown = sorted(set(expect) - ASSERTION_NAMES)
    if unknown:
        raise ScenarioValidationError(f"{here}: unknown assertion(s) {', '.join(unknown)}")
    if ERROR_ASSERTION in expect:
        kind = expect[ERROR_ASSERTION]
        if not isinstance(kind, str):
            raise ScenarioValidationError(f"{here}: expected error must be an error kind name")
        if kind not in ERROR_KINDS:
            raise ScenarioValidationError(
                f"{here}: unknown error kind {kind!r}; "
                f"expected one of {', '.join(sorted(ERROR_KINDS))}"
            )

    for ref in [*references.values(), *_references_in(expect)]:
        if ref.step not in earlier:
            raise ScenarioValidationError(
                f"{here}: reference {ref} does not name an earlier step"
            )

    requires = raw.get("requires") or []
    if isinstance(requires, str):
        requires = [requires]
    if not isinstance(requires, list) or not all(isinstance(r, str) for r in requires):
        raise ScenarioValidationError(f"{here}: requires must be a list of step names")
    for required in requires:
        if required not in earlier:
            raise ScenarioValidationError(
                f"{here}: requires {required!r}, which is not an earlier step"
            )

    prerequisite = raw.get("prerequisite", False)
    if not isinstance(prerequisite, bool):
        raise ScenarioValidationError(f"{here}: prerequisite must be true or false")

    return Step(
        name=name,
        command=command,
        references=references,
        expect=dict(expect),
        prerequisite=prerequisite,
        requires=tuple(requires),
    )


def parse_suite(raw: Any, index: int = 0) -> ScenarioSuite:
    where = f"suite {index}"
    if not isinstance(raw, dict):
        raise ScenarioValidationError(f"{where}: must be a mapping")
    unknown = sorted(set(raw) - _SUITE_KEYS)
    if unknown:
        raise ScenarioValidationError(f"{where}: unknown key(s) {', '.join(unknown)}")
    description = raw.get("description")
    if not isinstance(description, str) or not description:
        raise ScenarioValidationError(f"{where}: missing description")
    where = f"suite {description!r}"

    poll_id = raw.get("pollId")
    if poll_id is not None:
        try:
            validate_poll_id(poll_id)
        except ValueError as exc:
            raise ScenarioValidationError(f"{where}: {exc}") from exc

    raw_steps = raw.get("steps")
    if not isinstance(raw_steps, list) or not raw_steps:
        raise ScenarioValidationError(f"{where}: steps must be a non-empty list")

    steps: list[Step] = []
    earlier: set[str] = set()
    for i, raw_step in enumerate(raw_steps):
        step = parse_step(raw_step, i, earlier, where)
        steps.append(step)
        earlier.add(step.name)
    return ScenarioSuite(description=description, steps=tuple(steps), poll_id=poll_id)


def parse_suites(data: Any) -> list[ScenarioSuite]:
    if isinstance(data, dict) and "suites" in data:
        data = data["suites"]
    elif isinstance(data, dict):
        data = [data]
    if not isinstance(data, list) or not data:
        raise ScenarioValidationError("expected a non-empty list of suites")
    return [parse_suite(raw, i) for i, raw in enumerate(data)]


def load_suites(path: Union[str, Path]) -> list[ScenarioSuite]:
    """Read suites from a ``.json``, ``.yaml`` or ``.yml`` file."""
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ScenarioValidationError(f"{path.name}: cannot parse: {exc}") from exc
    return parse_suites(data)
