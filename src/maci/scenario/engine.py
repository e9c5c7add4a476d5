"""Scenario execution engine.

Runs the steps of a suite strictly in order against one orchestrator and
records an outcome per step:

- pass: the operation ran (or raised the expected error) and every
  assertion held.
- fail: an assertion did not hold, or an expected error never came.
- error: the operation raised an error the step did not expect.
- skipped: the step never ran because a prerequisite step did not pass,
  a state root mismatch halted the suite, or a step it ``requires`` did
  not pass.

Failures are recorded, never raised. The engine does no cleanup between
suites; each suite runs against its own poll id.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, Awaitable, Callable, Iterable, Optional

from maci.engine.fast_path import FastPathRunner
from maci.engine.orchestrator import PhaseOrchestrator
from maci.engine.recovery import RecoveryController
from maci.errors import MaciError, ScenarioValidationError, StateMismatchError
from maci.logs import get_logger, log_event
from maci.models.poll import Phase, PollSizing, VoteCommand, new_poll_id
from maci.models.scenario import ExecutionResult, StepOutcome, StepResult
from maci.scenario import commands as cmd
from maci.scenario.assertions import ERROR_ASSERTION, AssertionContext, evaluate
from maci.scenario.commands import Reference
from maci.scenario.loader import ScenarioSuite, Step


logger = get_logger("scenario")


class _Run:
    """Mutable bookkeeping for one suite execution."""

    def __init__(self, poll_id: str) -> None:
        self.poll_id = poll_id
        self.data: dict[str, dict[str, Any]] = {}
        self.outcomes: dict[str, StepOutcome] = {}
        self.halted_by: Optional[str] = None

    def resolve(self, ref: Reference) -> Any:
        data = self.data.get(ref.step, {})
        if ref.field not in data:
            raise ScenarioValidationError(f"{ref} is not available (step produced no {ref.field!r})")
        return data[ref.field]

    def resolve_value(self, value: Any) -> Any:
        ref = Reference.parse(value)
        if ref is not None:
            return self.resolve(ref)
        if isinstance(value, list):
            return [self.resolve_value(v) for v in value]
        if isinstance(value, dict):
            return {k: self.resolve_value(v) for k, v in value.items()}
        return value


def _matches_kind(exc: BaseException, kind: str) -> bool:
    return any(cls.__name__ == kind for cls in type(exc).__mro__)


class ScenarioExecutionEngine:
    """Executes ScenarioSuites against an orchestrator.

    Usage:
        engine = ScenarioExecutionEngine(orchestrator)
        result = await engine.execute(suite)
        assert result.passed
    """

    def __init__(
        self,
        orchestrator: PhaseOrchestrator,
        recovery: Optional[RecoveryController] = None,
        fast_path: Optional[FastPathRunner] = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._recovery = recovery or RecoveryController(orchestrator)
        self._fast_path = fast_path or FastPathRunner(orchestrator)
        self._handlers: dict[type, Callable[[Any, _Run], Awaitable[dict[str, Any]]]] = {
            cmd.GenerateKeypair: self._generate_keypair,
            cmd.GenMaciKeypair: self._gen_maci_keypair,
            cmd.GenMaciPubkey: self._gen_maci_pubkey,
            cmd.CreatePoll: self._create_poll,
            cmd.Signup: self._signup,
            cmd.Publish: self._publish,
            cmd.CheckStateRoot: self._check_state_root,
            cmd.Process: self._process,
            cmd.Tally: self._tally,
            cmd.Verify: self._verify,
            cmd.ProcessAndTallyWithoutProofs: self._fast_path_run,
            cmd.CoordinatorReset: self._reset,
        }

    async def execute_all(self, suites: Iterable[ScenarioSuite]) -> list[ExecutionResult]:
        return [await self.execute(suite) for suite in suites]

    async def execute(self, suite: ScenarioSuite) -> ExecutionResult:
        run = _Run(suite.poll_id or new_poll_id())
        results: list[StepResult] = []
        for step in suite.steps:
            result = await self._execute_step(step, run)
            run.outcomes[step.name] = result.outcome
            results.append(result)
            log_event(
                logger,
                logging.INFO if result.outcome == StepOutcome.PASS else logging.WARNING,
                "step_finished",
                suite=suite.description,
                poll_id=run.poll_id,
                step=step.name,
                command=step.command_name,
                outcome=result.outcome.value,
                detail=result.detail,
            )
            if run.halted_by is None and result.outcome != StepOutcome.PASS:
                if step.prerequisite:
                    run.halted_by = step.name
                elif result.error_kind == StateMismatchError.__name__:
                    run.halted_by = step.name

        execution = ExecutionResult(
            description=suite.description,
            poll_id=run.poll_id,
            step_results=tuple(results),
        )
        log_event(
            logger, logging.INFO, "suite_finished",
            suite=suite.description, poll_id=run.poll_id,
            passed=execution.passed, **execution.counts(),
        )
        return execution

    async def _execute_step(self, step: Step, run: _Run) -> StepResult:
        def result(outcome: StepOutcome, detail: str = "", **kwargs: Any) -> StepResult:
            return StepResult(step.name, step.command_name, outcome, detail, **kwargs)

        if run.halted_by is not None:
            return result(StepOutcome.SKIPPED, f"suite halted after {run.halted_by!r}")
        blocked = [r for r in step.requires if run.outcomes.get(r) != StepOutcome.PASS]
        if blocked:
            return result(StepOutcome.SKIPPED, f"required step(s) did not pass: {', '.join(blocked)}")

        expected_error = step.expect.get(ERROR_ASSERTION)
        try:
            command = self._bind(step, run)
            expect = run.resolve_value(
                {k: v for k, v in step.expect.items() if k != ERROR_ASSERTION}
            )
        except ScenarioValidationError as exc:
            return result(StepOutcome.ERROR, str(exc), error_kind=exc.kind)

        raised: Optional[str] = None
        try:
            data = await self._handlers[type(command)](command, run)
        except MaciError as exc:
            if not (expected_error and _matches_kind(exc, expected_error)):
                return result(StepOutcome.ERROR, str(exc), error_kind=exc.kind)
            raised = exc.kind
            data = {"error": exc.kind}
        except Exception as exc:
            # Collaborator bugs surface as step errors, the run goes on.
            logger.exception("step raised an unexpected exception")
            return result(StepOutcome.ERROR, f"{type(exc).__name__}: {exc}", error_kind=type(exc).__name__)

        run.data[step.name] = data
        if expected_error and raised is None:
            return result(
                StepOutcome.FAIL,
                f"expected {expected_error}, operation succeeded",
                data=_public(data),
            )

        ctx = AssertionContext(self._orchestrator, run.poll_id, data)
        failures = []
        for name, expected in expect.items():
            message = evaluate(name, expected, ctx)
            if message is not None:
                failures.append(message)
        if failures:
            return result(StepOutcome.FAIL, "; ".join(failures), data=_public(data), error_kind=raised)
        detail = f"raised {raised} as expected" if raised else ""
        return result(StepOutcome.PASS, detail, data=_public(data), error_kind=raised)

    def _bind(self, step: Step, run: _Run) -> Any:
        if not step.references:
            return step.command
        values = {name: run.resolve(ref) for name, ref in step.references.items()}
        return dataclasses.replace(step.command, **values)

    # ------------------------------------------------------------------
    # Command handlers
    # ------------------------------------------------------------------

    async def _generate_keypair(self, command: cmd.GenerateKeypair, run: _Run) -> dict[str, Any]:
        keys = await self._orchestrator.generate_keypair(run.poll_id, privkey=command.privkey)
        return {
            "pollId": keys.poll_id,
            "pubkey": keys.pubkey,
            "privkey": keys.privkey,
            "phase": keys.checkpoint.phase.value,
        }

    async def _gen_maci_keypair(self, command: cmd.GenMaciKeypair, run: _Run) -> dict[str, Any]:
        keypair = await self._orchestrator.providers.keys.generate_keypair()
        return {"pubkey": keypair.pubkey, "privkey": keypair.privkey}

    async def _gen_maci_pubkey(self, command: cmd.GenMaciPubkey, run: _Run) -> dict[str, Any]:
        pubkey = await self._orchestrator.providers.keys.derive_pubkey(command.privkey)
        return {"pubkey": pubkey}

    async def _create_poll(self, command: cmd.CreatePoll, run: _Run) -> dict[str, Any]:
        sizing = PollSizing.from_capacities(
            command.max_users, command.max_vote_options, command.max_messages,
        )
        cp = await self._orchestrator.create_poll(run.poll_id, sizing, timeout=command.timeout)
        return {
            "pollId": run.poll_id,
            "pollAddress": cp.artifacts["poll_address"],
            "stateTreeDepth": cp.artifacts["state_tree_depth"],
            "messageTreeDepth": cp.artifacts["message_tree_depth"],
            "voteOptionTreeDepth": cp.artifacts["vote_option_tree_depth"],
            "phase": cp.phase.value,
        }

    async def _signup(self, command: cmd.Signup, run: _Run) -> dict[str, Any]:
        data: dict[str, Any] = {}
        pubkey = command.pubkey
        if pubkey is None:
            voter = await self._orchestrator.providers.keys.generate_keypair()
            pubkey = voter.pubkey
            data["privkey"] = voter.privkey
        record = await self._orchestrator.signup(
            run.poll_id, pubkey, command.voice_credits, timeout=command.timeout,
        )
        data.update({
            "pubkey": pubkey,
            "stateIndex": record.index,
            "voiceCredits": record.payload["voice_credits"],
        })
        return data

    async def _publish(self, command: cmd.Publish, run: _Run) -> dict[str, Any]:
        vote = VoteCommand(
            privkey=command.privkey,
            state_index=command.state_index,
            vote_option_index=command.vote_option_index,
            new_vote_weight=command.new_vote_weight,
            nonce=command.nonce,
            new_pubkey=command.new_pubkey,
            salt=command.salt,
        )
        record = await self._orchestrator.publish(run.poll_id, vote, timeout=command.timeout)
        return {"messageIndex": record.index}

    async def _check_state_root(self, command: cmd.CheckStateRoot, run: _Run) -> dict[str, Any]:
        root = await self._orchestrator.check_state_root(run.poll_id, command.expected_root)
        return {"stateRoot": root}

    async def _process(self, command: cmd.Process, run: _Run) -> dict[str, Any]:
        cp = await self._orchestrator.process(
            run.poll_id, privkey=command.privkey, timeout=command.timeout,
        )
        return {
            "stateRoot": cp.artifacts["state_root"],
            "proven": not cp.unproven,
            "phase": cp.phase.value,
        }

    async def _tally(self, command: cmd.Tally, run: _Run) -> dict[str, Any]:
        cp = await self._orchestrator.tally(run.poll_id, timeout=command.timeout)
        return _tally_data(cp.artifacts, proven=not cp.unproven)

    async def _verify(self, command: cmd.Verify, run: _Run) -> dict[str, Any]:
        cp = await self._orchestrator.verify(run.poll_id, timeout=command.timeout)
        return {"verified": True, "phase": cp.phase.value}

    async def _fast_path_run(
        self, command: cmd.ProcessAndTallyWithoutProofs, run: _Run,
    ) -> dict[str, Any]:
        result = await self._fast_path.run(
            run.poll_id, privkey=command.privkey, timeout=command.timeout,
        )
        data = _tally_data(result.tallied.artifacts, proven=False)
        data["stateRoot"] = result.state_root
        return data

    async def _reset(self, command: cmd.CoordinatorReset, run: _Run) -> dict[str, Any]:
        report = await self._recovery.reset(run.poll_id)
        return {
            "phase": report.committed_phase.value,
            "nextPhase": report.next_phase.value if report.next_phase else None,
            "discarded": list(report.discarded),
        }


def _tally_data(artifacts: dict[str, Any], proven: bool) -> dict[str, Any]:
    return {
        "tally": list(artifacts["results"]),
        "spentVoiceCredits": artifacts["spent_voice_credits"],
        "tallyCommitment": artifacts["tally_commitment"],
        "proven": proven,
        "phase": Phase.TALLIED.value,
    }


def _public(data: dict[str, Any]) -> dict[str, Any]:
    """Step data as reported: private keys are kept for references only."""
    return {k: v for k, v in data.items() if k != "privkey"}
