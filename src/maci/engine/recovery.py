"""Coordinator reset — return a poll to its last committed checkpoint.

Reset never touches the checkpoint store. It only throws away working
state that never committed: signups and messages still waiting on the
chain, batch results of an interrupted process or tally run, and the
``Failed`` marker. The next transition then targets the phase right after
the highest committed one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from maci.engine.orchestrator import PhaseOrchestrator
from maci.engine.phase_machine import PollStateMachine
from maci.errors import NoCheckpointError
from maci.logs import get_logger, log_event
from maci.models.poll import Phase


logger = get_logger("recovery")


@dataclass(frozen=True)
class RecoveryReport:
    poll_id: str
    committed_phase: Phase
    next_phase: Optional[Phase]
    discarded: tuple[str, ...]
    cleared_failure: Optional[Phase] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "poll_id": self.poll_id,
            "committed_phase": self.committed_phase.value,
            "next_phase": self.next_phase.value if self.next_phase else None,
            "discarded": list(self.discarded),
            "cleared_failure": self.cleared_failure.value if self.cleared_failure else None,
        }


class RecoveryController:
    """Implements coordinatorReset on top of an orchestrator."""

    def __init__(self, orchestrator: PhaseOrchestrator) -> None:
        self._orchestrator = orchestrator

    async def reset(self, poll_id: str) -> RecoveryReport:
        """Discard uncommitted work for ``poll_id``.

        Waits for any transition in progress to finish. Raises
        NoCheckpointError if the poll was never created.
        """
        store = self._orchestrator.store
        session = self._orchestrator.session(poll_id)
        async with session.lock:
            if store.checkpoint(poll_id, Phase.POLL_CREATED) is None:
                raise NoCheckpointError(
                    "Nothing to recover: poll has no poll_created checkpoint",
                    poll_id=poll_id,
                    phase=store.current_phase(poll_id),
                )
            committed = store.current_phase(poll_id)
            cleared = session.failed
            session.failed = None
            discarded = session.discard_uncommitted()

        report = RecoveryReport(
            poll_id=poll_id,
            committed_phase=committed,
            next_phase=PollStateMachine.next_phase(committed),
            discarded=tuple(discarded),
            cleared_failure=cleared,
        )
        log_event(
            logger, logging.INFO, "coordinator_reset",
            poll_id=poll_id,
            committed_phase=committed.value,
            discarded=len(discarded),
            cleared_failure=cleared.value if cleared else None,
        )
        return report
