"""Tests for the scenario execution engine."""

from pathlib import Path
from typing import Any

import pytest

from maci.config import CoordinatorConfig
from maci.engine.orchestrator import PhaseOrchestrator
from maci.models.poll import Phase
from maci.models.scenario import StepOutcome
from maci.persistence.checkpoint_store import CheckpointStore
from maci.providers.local import local_providers
from maci.scenario import ScenarioExecutionEngine, load_suites
from maci.scenario.loader import parse_suite


SUITES_DIR = Path(__file__).resolve().parent.parent / "suites"

KEYS = {"name": "keys", "command": "generateKeypair", "prerequisite": True}
POLL = {"name": "poll", "command": "createPoll", "prerequisite": True,
        "args": {"maxUsers": 4, "maxVoteOptions": 5}}


def _suite(*steps: dict, **extra: Any) -> Any:
    return parse_suite({"description": "under test", "steps": list(steps), **extra})


def _vote(name: str, voter: str, option: int, weight: int, nonce: int = 1) -> dict:
    return {"name": name, "command": "publish", "args": {
        "privkey": f"${voter}.privkey", "stateIndex": f"${voter}.stateIndex",
        "voteOptionIndex": option, "newVoteWeight": weight, "nonce": nonce,
    }}


@pytest.fixture
def orch() -> PhaseOrchestrator:
    config = CoordinatorConfig(message_batch_size=2, tally_batch_size=2)
    return PhaseOrchestrator(local_providers(config), CheckpointStore(), config)


@pytest.fixture
def engine(orch: PhaseOrchestrator) -> ScenarioExecutionEngine:
    return ScenarioExecutionEngine(orch)


class TestBundledSuites:
    @pytest.mark.asyncio
    async def test_json_suites_pass(self, engine: ScenarioExecutionEngine) -> None:
        results = await engine.execute_all(load_suites(SUITES_DIR / "suites.json"))
        for result in results:
            failing = [r.to_dict() for r in result.step_results if r.outcome != StepOutcome.PASS]
            assert result.passed, (result.description, failing)
        assert len({r.poll_id for r in results}) == len(results)

    @pytest.mark.asyncio
    async def test_yaml_end_to_end(
        self, engine: ScenarioExecutionEngine, orch: PhaseOrchestrator,
    ) -> None:
        (suite,) = load_suites(SUITES_DIR / "end_to_end.yaml")
        result = await engine.execute(suite)
        assert result.passed, [r.to_dict() for r in result.step_results]
        assert result.poll_id == "e2e-quadratic"
        assert orch.current_phase("e2e-quadratic") == Phase.VERIFIED
        outcomes = result.outcomes()
        assert outcomes["signup-closed"] == StepOutcome.PASS
        signup_closed = next(r for r in result.step_results if r.step == "signup-closed")
        assert signup_closed.error_kind == "IllegalTransitionError"
        assert "as expected" in signup_closed.detail


class TestOutcomes:
    @pytest.mark.asyncio
    async def test_assertion_failure_is_recorded(self, engine: ScenarioExecutionEngine) -> None:
        result = await engine.execute(_suite(
            KEYS,
            {**POLL, "expect": {"stateTreeDepth": 7}},
            {"name": "alice", "command": "signup"},
        ))
        # The poll step is a prerequisite, so its failure halts the suite.
        assert result.outcomes() == {
            "keys": StepOutcome.PASS,
            "poll": StepOutcome.FAIL,
            "alice": StepOutcome.SKIPPED,
        }
        poll = result.step_results[1]
        assert "stateTreeDepth" in poll.detail and "7" in poll.detail
        assert not result.passed

    @pytest.mark.asyncio
    async def test_non_prerequisite_failure_continues(self, engine: ScenarioExecutionEngine) -> None:
        result = await engine.execute(_suite(
            KEYS, POLL,
            {"name": "alice", "command": "signup", "expect": {"stateIndex": 9}},
            {"name": "bob", "command": "signup", "expect": {"stateIndex": 2}},
        ))
        assert result.outcomes()["alice"] == StepOutcome.FAIL
        assert result.outcomes()["bob"] == StepOutcome.PASS
        assert result.counts() == {"pass": 3, "fail": 1, "error": 0, "skipped": 0}

    @pytest.mark.asyncio
    async def test_unexpected_error(self, engine: ScenarioExecutionEngine) -> None:
        result = await engine.execute(_suite(
            KEYS,
            {"name": "too-early", "command": "tally"},
            POLL,
        ))
        early = result.step_results[1]
        assert early.outcome == StepOutcome.ERROR
        assert early.error_kind == "IllegalTransitionError"
        assert result.outcomes()["poll"] == StepOutcome.PASS

    @pytest.mark.asyncio
    async def test_expected_error_not_raised(self, engine: ScenarioExecutionEngine) -> None:
        result = await engine.execute(_suite(
            KEYS, POLL,
            {"name": "alice", "command": "signup", "expect": {"error": "IllegalTransitionError"}},
        ))
        alice = result.step_results[2]
        assert alice.outcome == StepOutcome.FAIL
        assert "operation succeeded" in alice.detail

    @pytest.mark.asyncio
    async def test_expected_error_matches_base_class(self, engine: ScenarioExecutionEngine) -> None:
        result = await engine.execute(_suite(
            {"name": "early", "command": "verify", "expect": {"error": "MaciError"}},
        ))
        assert result.passed

    @pytest.mark.asyncio
    async def test_wrong_error_kind(self, engine: ScenarioExecutionEngine) -> None:
        result = await engine.execute(_suite(
            {"name": "early", "command": "verify", "expect": {"error": "NoProofAvailableError"}},
        ))
        assert result.step_results[0].outcome == StepOutcome.ERROR
        assert result.step_results[0].error_kind == "IllegalTransitionError"

    @pytest.mark.asyncio
    async def test_collaborator_bug_is_a_step_error(
        self, engine: ScenarioExecutionEngine, orch: PhaseOrchestrator, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        async def broken() -> Any:
            raise RuntimeError("entropy pool empty")

        monkeypatch.setattr(orch.providers.keys, "generate_keypair", broken)
        result = await engine.execute(_suite(
            {"name": "voter", "command": "genMaciKeypair"},
            {"name": "after", "command": "coordinatorReset", "expect": {"error": "NoCheckpointError"}},
        ))
        assert result.step_results[0].outcome == StepOutcome.ERROR
        assert result.step_results[0].error_kind == "RuntimeError"
        assert result.step_results[1].outcome == StepOutcome.PASS


class TestHaltingAndSkipping:
    @pytest.mark.asyncio
    async def test_requires_skips_dependents_only(self, engine: ScenarioExecutionEngine) -> None:
        result = await engine.execute(_suite(
            KEYS, POLL,
            {"name": "process", "command": "process"},
            {"name": "tally", "command": "tally", "requires": ["process"]},
            {"name": "root", "command": "checkStateRoot"},
        ))
        outcomes = result.outcomes()
        assert outcomes["process"] == StepOutcome.ERROR
        assert outcomes["tally"] == StepOutcome.SKIPPED
        assert outcomes["root"] == StepOutcome.PASS
        assert "process" in result.step_results[3].detail

    @pytest.mark.asyncio
    async def test_state_mismatch_halts(self, engine: ScenarioExecutionEngine) -> None:
        result = await engine.execute(_suite(
            KEYS, POLL,
            {"name": "alice", "command": "signup"},
            {"name": "root", "command": "checkStateRoot",
             "args": {"expectedRoot": "sha256:" + "0" * 64}},
            {"name": "bob", "command": "signup"},
        ))
        outcomes = result.outcomes()
        assert outcomes["root"] == StepOutcome.ERROR
        assert result.step_results[3].error_kind == "StateMismatchError"
        assert outcomes["bob"] == StepOutcome.SKIPPED
        assert "root" in result.step_results[4].detail

    @pytest.mark.asyncio
    async def test_expected_mismatch_does_not_halt(self, engine: ScenarioExecutionEngine) -> None:
        result = await engine.execute(_suite(
            KEYS, POLL,
            {"name": "root", "command": "checkStateRoot",
             "args": {"expectedRoot": "sha256:" + "0" * 64},
             "expect": {"error": "StateMismatchError"}},
            {"name": "alice", "command": "signup"},
        ))
        assert result.passed


class TestReferences:
    @pytest.mark.asyncio
    async def test_values_flow_between_steps(
        self, engine: ScenarioExecutionEngine, orch: PhaseOrchestrator,
    ) -> None:
        result = await engine.execute(_suite(
            KEYS, POLL,
            {"name": "voter", "command": "genMaciKeypair"},
            {"name": "derived", "command": "genMaciPubkey", "args": {"privkey": "$voter.privkey"},
             "expect": {}},
            {"name": "alice", "command": "signup",
             "args": {"pubkey": "$derived.pubkey", "voiceCredits": 16}},
            {"name": "vote", "command": "publish", "args": {
                "privkey": "$voter.privkey", "stateIndex": "$alice.stateIndex",
                "voteOptionIndex": 1, "newVoteWeight": 4, "nonce": 1,
            }},
            {"name": "process", "command": "process", "args": {"privkey": "$keys.privkey"}},
            {"name": "tally", "command": "tally",
             "expect": {"tally": [0, 4], "spentVoiceCredits": 16}},
        ))
        assert result.passed, [r.to_dict() for r in result.step_results]
        derived = result.step_results[3].data["pubkey"]
        voter = result.step_results[2].data["pubkey"]
        assert derived == voter

    @pytest.mark.asyncio
    async def test_missing_field_is_a_step_error(self, engine: ScenarioExecutionEngine) -> None:
        result = await engine.execute(_suite(
            KEYS, POLL,
            {"name": "alice", "command": "signup"},
            {"name": "vote", "command": "publish", "args": {
                "privkey": "$alice.privkey", "stateIndex": "$poll.stateIndex",
                "voteOptionIndex": 0, "newVoteWeight": 1, "nonce": 1,
            }},
        ))
        vote = result.step_results[3]
        assert vote.outcome == StepOutcome.ERROR
        assert vote.error_kind == "ScenarioValidationError"

    @pytest.mark.asyncio
    async def test_reported_data_hides_private_keys(self, engine: ScenarioExecutionEngine) -> None:
        result = await engine.execute(_suite(
            KEYS, POLL,
            {"name": "voter", "command": "genMaciKeypair"},
            {"name": "alice", "command": "signup"},
        ))
        for step in result.step_results:
            assert "privkey" not in step.data
        assert "pubkey" in result.step_results[2].data
        assert result.to_dict()["passed"] is True


class TestResetAndFastPath:
    @pytest.mark.asyncio
    async def test_reset_reports_next_phase(self, engine: ScenarioExecutionEngine) -> None:
        result = await engine.execute(_suite(
            KEYS, POLL,
            {"name": "alice", "command": "signup"},
            _vote("vote", "alice", option=0, weight=1),
            {"name": "reset", "command": "coordinatorReset", "expect": {"phase": "messages_published"}},
        ))
        assert result.passed
        reset = result.step_results[-1]
        assert reset.data["nextPhase"] == "processed"
        assert reset.data["discarded"] == []

    @pytest.mark.asyncio
    async def test_fast_path_step(self, engine: ScenarioExecutionEngine) -> None:
        result = await engine.execute(_suite(
            KEYS, POLL,
            {"name": "alice", "command": "signup"},
            _vote("vote", "alice", option=2, weight=3),
            {"name": "fast", "command": "processAndTallyWithoutProofs",
             "expect": {"tally": [0, 0, 3], "spentVoiceCredits": 9, "proven": False,
                        "phase": "tallied"}},
            {"name": "verify", "command": "verify", "expect": {"error": "NoProofAvailableError",
                                                                 "verified": False}},
        ))
        assert result.passed, [r.to_dict() for r in result.step_results]
        assert result.step_results[4].data["stateRoot"].startswith("sha256:")
