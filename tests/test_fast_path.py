"""Tests for processAndTallyWithoutProofs."""

import pytest

from maci.config import CoordinatorConfig
from maci.engine.fast_path import FastPathRunner
from maci.engine.orchestrator import PhaseOrchestrator
from maci.errors import IllegalTransitionError, NoProofAvailableError
from maci.models.poll import Phase, PollSizing, VoteCommand
from maci.persistence.checkpoint_store import CheckpointStore
from maci.providers.local import local_providers


VOTES = ((2, 4), (2, 6), (0, 1))


async def _poll(orch: PhaseOrchestrator) -> str:
    keys = await orch.generate_keypair()
    await orch.create_poll(keys.poll_id, PollSizing.from_capacities(4, 5))
    voters = [await orch.providers.keys.generate_keypair() for _ in VOTES]
    for voter in voters:
        await orch.signup(keys.poll_id, voter.pubkey)
    for i, (option, weight) in enumerate(VOTES):
        await orch.publish(keys.poll_id, VoteCommand(voters[i].privkey, i + 1, option, weight, 1))
    return keys.poll_id


@pytest.fixture
def orch() -> PhaseOrchestrator:
    config = CoordinatorConfig(message_batch_size=2, tally_batch_size=3)
    return PhaseOrchestrator(local_providers(config), CheckpointStore(), config)


class TestFastPath:
    @pytest.mark.asyncio
    async def test_checkpoints_marked_unproven(self, orch: PhaseOrchestrator) -> None:
        poll_id = await _poll(orch)
        result = await FastPathRunner(orch).run(poll_id)
        assert result.processed.unproven and result.tallied.unproven
        assert orch.current_phase(poll_id) == Phase.TALLIED
        for batch in result.processed.artifacts["batches"] + result.tallied.artifacts["batches"]:
            assert batch["proof"] is None
        assert result.results == [1, 0, 10, 0, 0]
        assert result.spent_voice_credits == 16 + 36 + 1
        assert result.to_dict()["unproven"] is True

    @pytest.mark.asyncio
    async def test_verify_refuses_unproven(self, orch: PhaseOrchestrator) -> None:
        poll_id = await _poll(orch)
        await FastPathRunner(orch).run(poll_id)
        with pytest.raises(NoProofAvailableError) as exc_info:
            await orch.verify(poll_id)
        assert exc_info.value.phase == Phase.TALLIED
        assert orch.current_phase(poll_id) == Phase.TALLIED
        assert orch.failed_phase(poll_id) is None

    @pytest.mark.asyncio
    async def test_same_results_as_proving_path(self, orch: PhaseOrchestrator) -> None:
        fast_poll = await _poll(orch)
        proven_poll = await _poll(orch)
        fast = await FastPathRunner(orch).run(fast_poll)
        processed = await orch.process(proven_poll)
        tallied = await orch.tally(proven_poll)
        assert fast.results == tallied.artifacts["results"]
        assert fast.spent_voice_credits == tallied.artifacts["spent_voice_credits"]
        assert (
            fast.processed.artifacts["valid_messages"]
            == processed.artifacts["valid_messages"]
        )

    @pytest.mark.asyncio
    async def test_state_root_chains_from_signups(self, orch: PhaseOrchestrator) -> None:
        poll_id = await _poll(orch)
        fast = await FastPathRunner(orch).run(poll_id)
        state = orch.initial_state(poll_id)
        assert fast.processed.artifacts["initial_state_root"] == state.root()
        assert fast.state_root != state.root()

    @pytest.mark.asyncio
    async def test_requires_published_messages(self, orch: PhaseOrchestrator) -> None:
        keys = await orch.generate_keypair()
        await orch.create_poll(keys.poll_id, PollSizing.from_capacities(4, 5))
        with pytest.raises(IllegalTransitionError):
            await FastPathRunner(orch).run(keys.poll_id)
        assert orch.current_phase(keys.poll_id) == Phase.POLL_CREATED
