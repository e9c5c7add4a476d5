"""Process and tally without proofs.

Produces the same state root and tally as the proving path, for
correctness checks only. Both checkpoints are marked ``unproven`` so a
later verify() refuses them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from maci.engine.orchestrator import PhaseOrchestrator
from maci.models.poll import PhaseCheckpoint


@dataclass(frozen=True)
class FastPathResult:
    processed: PhaseCheckpoint
    tallied: PhaseCheckpoint

    @property
    def state_root(self) -> str:
        return self.processed.artifacts["state_root"]

    @property
    def results(self) -> list[int]:
        return list(self.tallied.artifacts["results"])

    @property
    def spent_voice_credits(self) -> int:
        return self.tallied.artifacts["spent_voice_credits"]

    def to_dict(self) -> dict[str, Any]:
        return {
            "poll_id": self.processed.poll_id,
            "state_root": self.state_root,
            "results": self.results,
            "spent_voice_credits": self.spent_voice_credits,
            "tally_commitment": self.tallied.artifacts["tally_commitment"],
            "unproven": self.processed.unproven or self.tallied.unproven,
        }


class FastPathRunner:
    def __init__(self, orchestrator: PhaseOrchestrator) -> None:
        self._orchestrator = orchestrator

    async def run(
        self,
        poll_id: str,
        privkey: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> FastPathResult:
        """Run process then tally with proof generation off.

        ``timeout`` applies to each transition separately.
        """
        processed = await self._orchestrator.process(
            poll_id, privkey=privkey, timeout=timeout, generate_proofs=False,
        )
        tallied = await self._orchestrator.tally(
            poll_id, timeout=timeout, generate_proofs=False,
        )
        return FastPathResult(processed=processed, tallied=tallied)
