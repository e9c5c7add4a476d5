"""Append-only checkpoint store — the durable record of every poll.

Each poll has its own ordered log of phase checkpoints and accepted
artifacts (signups, messages). Records are immutable once written; nothing
is ever deleted or rewritten. The store serves as:
1. The source of truth for a poll's current phase.
2. The replay log for recovery after a crash or a failed transition.
3. The audit trail of what the coordinator committed and when.

With a storage directory, each poll is persisted to ``<poll_id>.jsonl``
(one JSON object per line). Every append is a single line write followed
by flush and fsync, so a crash leaves either the whole record or nothing.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from maci.models.poll import (
    ArtifactKind,
    ArtifactRecord,
    Phase,
    PhaseCheckpoint,
    validate_poll_id,
)


_CHECKPOINT = "checkpoint"
_ARTIFACT = "artifact"


@dataclass
class _PollLog:
    checkpoints: list[PhaseCheckpoint] = field(default_factory=list)
    artifacts: list[ArtifactRecord] = field(default_factory=list)
    artifact_keys: set[tuple[str, int]] = field(default_factory=set)


class CheckpointStore:
    """Append-only store keyed by ``(poll_id, phase)``.

    Checkpoints must arrive in phase order with no gaps: a checkpoint for
    phase N is rejected unless phase N-1 is the latest committed one.
    Duplicate checkpoints and duplicate artifact indices are rejected.
    """

    def __init__(self, storage_dir: Optional[Path] = None) -> None:
        self._storage_dir = Path(storage_dir) if storage_dir is not None else None
        self._polls: dict[str, _PollLog] = {}

        if self._storage_dir is not None:
            self._storage_dir.mkdir(parents=True, exist_ok=True)
            for path in sorted(self._storage_dir.glob("*.jsonl")):
                self._load_from_file(path)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, poll_id: str) -> list[PhaseCheckpoint]:
        """Return the poll's checkpoints in commit (= phase) order."""
        log = self._polls.get(poll_id)
        return list(log.checkpoints) if log else []

    def latest(self, poll_id: str) -> Optional[PhaseCheckpoint]:
        log = self._polls.get(poll_id)
        if not log or not log.checkpoints:
            return None
        return log.checkpoints[-1]

    def current_phase(self, poll_id: str) -> Phase:
        latest = self.latest(poll_id)
        return latest.phase if latest else Phase.UNINITIALIZED

    def checkpoint(self, poll_id: str, phase: Phase) -> Optional[PhaseCheckpoint]:
        for cp in self.get(poll_id):
            if cp.phase == phase:
                return cp
        return None

    def artifacts(
        self,
        poll_id: str,
        kind: Optional[ArtifactKind] = None,
    ) -> list[ArtifactRecord]:
        """Return artifacts in append order, optionally filtered by kind."""
        log = self._polls.get(poll_id)
        if not log:
            return []
        if kind is None:
            return list(log.artifacts)
        return [a for a in log.artifacts if a.kind == kind]

    def artifact(
        self, poll_id: str, kind: ArtifactKind, index: int,
    ) -> Optional[ArtifactRecord]:
        for record in self.artifacts(poll_id, kind):
            if record.index == index:
                return record
        return None

    def artifact_count(self, poll_id: str, kind: ArtifactKind) -> int:
        return len(self.artifacts(poll_id, kind))

    def poll_ids(self) -> list[str]:
        return sorted(self._polls)

    # ------------------------------------------------------------------
    # Appends
    # ------------------------------------------------------------------

    def append(self, checkpoint: PhaseCheckpoint) -> None:
        """Append a checkpoint.

        Raises ValueError on a duplicate phase or a skipped phase.
        """
        validate_poll_id(checkpoint.poll_id)
        log = self._polls.get(checkpoint.poll_id) or _PollLog()
        self._check_order(log, checkpoint)

        if self._storage_dir is not None:
            self._append_to_file(checkpoint.poll_id, _CHECKPOINT, checkpoint.to_dict())
        log.checkpoints.append(checkpoint)
        self._polls[checkpoint.poll_id] = log

    def append_artifact(self, record: ArtifactRecord) -> None:
        """Append a signup or message record.

        Raises ValueError on a duplicate ``(kind, index)`` or when the poll
        has no checkpoint yet.
        """
        log = self._polls.get(record.poll_id)
        if log is None or not log.checkpoints:
            raise ValueError(f"No checkpoints for poll {record.poll_id}")
        key = (record.kind.value, record.index)
        if key in log.artifact_keys:
            raise ValueError(
                f"Duplicate {record.kind.value} index {record.index} for poll {record.poll_id}"
            )

        if self._storage_dir is not None:
            self._append_to_file(record.poll_id, _ARTIFACT, record.to_dict())
        log.artifacts.append(record)
        log.artifact_keys.add(key)

    @staticmethod
    def _check_order(log: _PollLog, checkpoint: PhaseCheckpoint) -> None:
        # Deferred: maci.engine imports this module.
        from maci.engine.phase_machine import PollStateMachine

        current = log.checkpoints[-1].phase if log.checkpoints else Phase.UNINITIALIZED
        errors = PollStateMachine.validate_transition(current, checkpoint.phase)
        if not errors:
            return
        if checkpoint.phase.order <= current.order:
            problem = "Duplicate or out-of-order checkpoint"
        else:
            problem = "Phase skipping"
        raise ValueError(f"{problem} for poll {checkpoint.poll_id}: {errors[0]}")

    # ------------------------------------------------------------------
    # File persistence
    # ------------------------------------------------------------------

    def _path_for(self, poll_id: str) -> Path:
        assert self._storage_dir is not None
        return self._storage_dir / f"{validate_poll_id(poll_id)}.jsonl"

    def _append_to_file(self, poll_id: str, record_type: str, data: dict) -> None:
        line = json.dumps(
            {"record": record_type, **data}, sort_keys=True, ensure_ascii=False,
        )
        with self._path_for(poll_id).open("a", encoding="utf-8") as f:
            f.write(line + "\n")
            f.flush()
            os.fsync(f.fileno())

    def _load_from_file(self, path: Path) -> None:
        """Load one poll log with integrity verification.

        Fail-closed: rejects tampered records (hash mismatch), duplicates
        and out-of-order checkpoints.
        """
        log = _PollLog()
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                data = json.loads(line)
                record_type = data.pop("record", None)
                item: Union[PhaseCheckpoint, ArtifactRecord]

                if record_type == _CHECKPOINT:
                    item = PhaseCheckpoint.from_dict(data)
                    if not item.verify_hash():
                        raise ValueError(
                            f"Integrity check failed ({path.name} line {line_num}): "
                            f"checkpoint {item.phase.value}"
                        )
                    self._check_order(log, item)
                    log.checkpoints.append(item)
                elif record_type == _ARTIFACT:
                    item = ArtifactRecord.from_dict(data)
                    if not item.verify_hash():
                        raise ValueError(
                            f"Integrity check failed ({path.name} line {line_num}): "
                            f"{item.kind.value} {item.index}"
                        )
                    key = (item.kind.value, item.index)
                    if key in log.artifact_keys:
                        raise ValueError(
                            f"Duplicate {item.kind.value} index {item.index} on recovery "
                            f"({path.name} line {line_num})"
                        )
                    log.artifacts.append(item)
                    log.artifact_keys.add(key)
                else:
                    raise ValueError(
                        f"Unknown record type {record_type!r} ({path.name} line {line_num})"
                    )

        if log.checkpoints:
            self._polls[log.checkpoints[0].poll_id] = log
