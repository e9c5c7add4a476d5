"""Scenario commands, one dataclass per command kind.

Each variant carries only the arguments its command takes. Suite files
spell arguments in camelCase (``maxUsers``); the dataclass fields are the
snake_case equivalents. Any argument may instead hold a reference
``$<step>.<field>`` to a value produced by an earlier step.
"""

from __future__ import annotations

import re
import typing
from dataclasses import MISSING, dataclass, fields
from typing import Any, ClassVar, Optional, Union

from maci.errors import ScenarioValidationError


REFERENCE_RE = re.compile(r"^\$([A-Za-z0-9_-]+)\.([A-Za-z0-9_]+)$")


@dataclass(frozen=True)
class Reference:
    step: str
    field: str

    @staticmethod
    def parse(value: Any) -> Optional[Reference]:
        if not isinstance(value, str):
            return None
        match = REFERENCE_RE.match(value)
        return Reference(match.group(1), match.group(2)) if match else None

    def __str__(self) -> str:
        return f"${self.step}.{self.field}"


@dataclass(frozen=True)
class GenerateKeypair:
    """Coordinator keygen: the poll's first transition."""
    command: ClassVar[str] = "generateKeypair"
    privkey: Optional[str] = None


@dataclass(frozen=True)
class GenMaciKeypair:
    """Fresh voter keypair; no phase change."""
    command: ClassVar[str] = "genMaciKeypair"


@dataclass(frozen=True)
class GenMaciPubkey:
    command: ClassVar[str] = "genMaciPubkey"
    privkey: str


@dataclass(frozen=True)
class CreatePoll:
    command: ClassVar[str] = "createPoll"
    max_users: int
    max_vote_options: int
    max_messages: Optional[int] = None
    timeout: Optional[float] = None


@dataclass(frozen=True)
class Signup:
    """Without a pubkey, a voter keypair is generated for the step."""
    command: ClassVar[str] = "signup"
    pubkey: Optional[str] = None
    voice_credits: Optional[int] = None
    timeout: Optional[float] = None


@dataclass(frozen=True)
class Publish:
    command: ClassVar[str] = "publish"
    privkey: str
    state_index: int
    vote_option_index: int
    new_vote_weight: int
    nonce: int
    new_pubkey: Optional[str] = None
    salt: Optional[str] = None
    timeout: Optional[float] = None


@dataclass(frozen=True)
class CheckStateRoot:
    command: ClassVar[str] = "checkStateRoot"
    expected_root: Optional[str] = None


@dataclass(frozen=True)
class Process:
    command: ClassVar[str] = "process"
    privkey: Optional[str] = None
    timeout: Optional[float] = None


@dataclass(frozen=True)
class Tally:
    command: ClassVar[str] = "tally"
    timeout: Optional[float] = None


@dataclass(frozen=True)
class Verify:
    command: ClassVar[str] = "verify"
    timeout: Optional[float] = None


@dataclass(frozen=True)
class ProcessAndTallyWithoutProofs:
    command: ClassVar[str] = "processAndTallyWithoutProofs"
    privkey: Optional[str] = None
    timeout: Optional[float] = None


@dataclass(frozen=True)
class CoordinatorReset:
    command: ClassVar[str] = "coordinatorReset"


Command = Union[
    GenerateKeypair,
    GenMaciKeypair,
    GenMaciPubkey,
    CreatePoll,
    Signup,
    Publish,
    CheckStateRoot,
    Process,
    Tally,
    Verify,
    ProcessAndTallyWithoutProofs,
    CoordinatorReset,
]

COMMANDS: dict[str, type] = {cls.command: cls for cls in typing.get_args(Command)}
ALIASES: dict[str, str] = {"create": CreatePoll.command}


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _accepts(tp: Any, value: Any) -> bool:
    if typing.get_origin(tp) is Union:
        return any(_accepts(arg, value) for arg in typing.get_args(tp))
    if tp is type(None):
        return value is None
    if tp is float:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if tp is int:
        return isinstance(value, int) and not isinstance(value, bool)
    return isinstance(value, tp)


def command_args(cls: type) -> dict[str, str]:
    """Map each camelCase argument name to its field name."""
    return {_camel(f.name): f.name for f in fields(cls)}


def decode_command(name: str, args: Any, where: str = "") -> tuple[Any, dict[str, Reference]]:
    """Decode one command into its variant.

    Referenced arguments are left as None on the variant and returned
    separately as ``{field_name: Reference}`` for resolution at run time.
    """
    prefix = f"{where}: " if where else ""
    cls = COMMANDS.get(ALIASES.get(name, name))
    if cls is None:
        known = ", ".join(sorted([*COMMANDS, *ALIASES]))
        raise ScenarioValidationError(f"{prefix}unknown command {name!r} (known: {known})")
    if args is None:
        args = {}
    if not isinstance(args, dict):
        raise ScenarioValidationError(f"{prefix}args must be a mapping")

    arg_names = command_args(cls)
    unknown = sorted(set(args) - set(arg_names))
    if unknown:
        raise ScenarioValidationError(
            f"{prefix}unknown argument(s) for {cls.command}: {', '.join(unknown)}"
        )

    hints = typing.get_type_hints(cls)
    values: dict[str, Any] = {}
    references: dict[str, Reference] = {}
    for f in fields(cls):
        camel = _camel(f.name)
        if camel not in args:
            if f.default is MISSING:
                raise ScenarioValidationError(
                    f"{prefix}{cls.command} is missing argument {camel!r}"
                )
            continue
        value = args[camel]
        ref = Reference.parse(value)
        if ref is not None:
            references[f.name] = ref
            continue
        if not _accepts(hints[f.name], value):
            raise ScenarioValidationError(
                f"{prefix}argument {camel!r} of {cls.command} has invalid value {value!r}"
            )
        values[f.name] = value

    # Required fields that are references get a placeholder until resolved.
    for f in fields(cls):
        if f.name in references and f.default is MISSING:
            values[f.name] = None
    return cls(**values), references
