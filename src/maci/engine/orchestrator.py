"""Phase orchestrator — drives one poll at a time through its lifecycle.

The orchestrator is the coordination layer between the caller, the
external operation providers and the checkpoint store. Every transition:

1. Takes the poll's lock (signup and publish release it around the
   provider call so independent voters can interleave).
2. Returns the prior checkpoint if the phase already committed.
3. Checks the operation against the phase machine.
4. Delegates the expensive work to a provider, under an optional timeout.
5. Appends the checkpoint as its single final step.

A provider failure marks the poll ``Failed(phase)`` in memory and commits
nothing. Timeouts and cancellation commit nothing either and leave no
marker; a retry is always safe. The orchestrator never retries on its own.

The chain owns signup and message indices. A receipt is always recorded,
and entries the chain accepted without a receipt reaching us are adopted
from the chain before the first message commits and before processing.

Independent polls share nothing but the store, whose per-poll logs are
disjoint.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Optional, TypeVar

from maci.config import CoordinatorConfig
from maci.engine.phase_machine import Operation, PollStateMachine
from maci.errors import (
    ChainSubmissionError,
    CoordinatorKeyError,
    IllegalTransitionError,
    KeyGenerationError,
    MaciError,
    NoProofAvailableError,
    OperationDiscardedError,
    ProviderError,
    ProvingError,
    StateMismatchError,
    TransitionTimeoutError,
    VerificationFailedError,
)
from maci.logs import get_logger, log_event
from maci.models.poll import (
    ArtifactKind,
    ArtifactRecord,
    Keypair,
    Phase,
    PhaseCheckpoint,
    PollSizing,
    VoteCommand,
    new_poll_id,
    validate_poll_id,
)
from maci.models.state import StateSnapshot
from maci.persistence.checkpoint_store import CheckpointStore
from maci.providers.base import PollContext, ProviderSet, TallyBatchOutcome


logger = get_logger("orchestrator")

T = TypeVar("T")

# Wrapper for unexpected provider exceptions, by the phase being attempted.
_PROVIDER_ERRORS: dict[Phase, type[ProviderError]] = {
    Phase.KEYS_GENERATED: KeyGenerationError,
    Phase.POLL_CREATED: ChainSubmissionError,
    Phase.SIGNUP_OPEN: ChainSubmissionError,
    Phase.MESSAGES_PUBLISHED: ChainSubmissionError,
    Phase.PROCESSED: ProvingError,
    Phase.TALLIED: ProvingError,
    Phase.VERIFIED: ProviderError,
}


@dataclass
class PollSession:
    """In-memory working state of one poll. Never persisted.

    ``in_flight`` holds signup/publish calls that are not yet appended;
    ``submitted`` marks those whose chain submission has started.
    ``pending`` holds batch results of the process or tally run in
    progress (or the one that failed).
    """
    poll_id: str
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    coordinator_privkey: Optional[str] = field(default=None, repr=False)
    failed: Optional[Phase] = None
    in_flight: dict[int, str] = field(default_factory=dict)
    submitted: set[int] = field(default_factory=set)
    pending: list[dict[str, Any]] = field(default_factory=list)
    _tickets: Any = field(default_factory=itertools.count, repr=False)

    def open_ticket(self, description: str) -> int:
        ticket = next(self._tickets)
        self.in_flight[ticket] = description
        return ticket

    def submit(self, ticket: int) -> None:
        """Mark a ticket as handed to the chain; raise if a reset discarded it."""
        if ticket not in self.in_flight:
            raise OperationDiscardedError(
                "Operation was discarded by a reset before it reached the chain",
                poll_id=self.poll_id,
            )
        self.submitted.add(ticket)

    def close_ticket(self, ticket: int) -> None:
        self.in_flight.pop(ticket, None)
        self.submitted.discard(ticket)

    def discard_uncommitted(self) -> list[str]:
        """Drop pending batches and submissions that never reached the chain.

        Submissions already on the chain stay in flight: the chain has
        assigned their index, so they are recorded when the receipt arrives.
        """
        discarded = [d for t, d in self.in_flight.items() if t not in self.submitted]
        discarded.extend(
            f"{batch['kind']} batch {batch['batch_index']}" for batch in self.pending
        )
        self.in_flight = {t: d for t, d in self.in_flight.items() if t in self.submitted}
        self.pending.clear()
        return discarded


@dataclass(frozen=True)
class KeygenResult:
    """Outcome of generate_keypair.

    ``privkey`` is None when the keys were generated in an earlier session
    and no private key was supplied to reload them.
    """
    poll_id: str
    pubkey: str
    privkey: Optional[str]
    checkpoint: PhaseCheckpoint

    def __repr__(self) -> str:
        return f"KeygenResult(poll_id={self.poll_id!r}, pubkey={self.pubkey!r})"


class PhaseOrchestrator:
    """Sequences poll transitions over a provider set and a checkpoint store.

    Usage:
        orch = PhaseOrchestrator(local_providers(config), CheckpointStore(), config)
        keys = await orch.generate_keypair()
        await orch.create_poll(keys.poll_id, PollSizing.from_capacities(4, 25))
        await orch.signup(keys.poll_id, voter.pubkey)
        ...
    """

    def __init__(
        self,
        providers: ProviderSet,
        store: Optional[CheckpointStore] = None,
        config: Optional[CoordinatorConfig] = None,
    ) -> None:
        self._providers = providers
        self._store = store if store is not None else CheckpointStore()
        self._config = config or CoordinatorConfig()
        self._sessions: dict[str, PollSession] = {}

    @property
    def store(self) -> CheckpointStore:
        return self._store

    @property
    def providers(self) -> ProviderSet:
        return self._providers

    @property
    def config(self) -> CoordinatorConfig:
        return self._config

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def session(self, poll_id: str) -> PollSession:
        session = self._sessions.get(poll_id)
        if session is None:
            session = PollSession(poll_id=validate_poll_id(poll_id))
            self._sessions[poll_id] = session
        return session

    def current_phase(self, poll_id: str) -> Phase:
        return self._store.current_phase(poll_id)

    def failed_phase(self, poll_id: str) -> Optional[Phase]:
        session = self._sessions.get(poll_id)
        return session.failed if session else None

    def checkpoints(self, poll_id: str) -> list[PhaseCheckpoint]:
        return self._store.get(poll_id)

    def poll_context(self, poll_id: str) -> PollContext:
        created = self._store.checkpoint(poll_id, Phase.POLL_CREATED)
        if created is None:
            raise IllegalTransitionError(
                "pollContext", (Phase.POLL_CREATED,), self.current_phase(poll_id),
                poll_id=poll_id,
            )
        return PollContext.from_artifacts(
            poll_id, created.artifacts["coordinator_pubkey"], created.artifacts,
        )

    def initial_state(self, poll_id: str) -> StateSnapshot:
        """Rebuild the pre-processing state tree from committed signups.

        Raises StateMismatchError when the recorded state indices have a gap.
        """
        ctx = self.poll_context(poll_id)
        signups = self._store.artifacts(poll_id, ArtifactKind.SIGNUP)
        try:
            return StateSnapshot.from_signups(
                ((s.index, s.payload["pubkey"], s.payload["voice_credits"]) for s in signups),
                ctx.state_tree_depth,
                ctx.max_vote_options,
            )
        except ValueError as exc:
            raise StateMismatchError(
                f"state indices 1..{len(signups)}",
                f"state indices {sorted(s.index for s in signups)}",
                poll_id=poll_id,
                phase=self.current_phase(poll_id),
                subject="State index",
            ) from exc

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def generate_keypair(
        self,
        poll_id: Optional[str] = None,
        privkey: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> KeygenResult:
        """Mint the poll handle and commit the coordinator public key.

        With ``privkey`` the key is imported instead of generated; on an
        already-keyed poll it reloads the session key after checking it.
        """
        poll_id = validate_poll_id(poll_id) if poll_id else new_poll_id()
        session = self.session(poll_id)
        async with session.lock:
            existing = self._store.checkpoint(poll_id, Phase.KEYS_GENERATED)
            if existing is not None:
                pubkey = existing.artifacts["coordinator_pubkey"]
                if privkey is not None:
                    await self._load_coordinator_key(session, pubkey, privkey)
                self._log_noop(poll_id, Phase.KEYS_GENERATED)
                return KeygenResult(poll_id, pubkey, session.coordinator_privkey, existing)

            self._require(session, Operation.GENERATE_KEYPAIR)

            async def work() -> Keypair:
                if privkey is None:
                    return await self._providers.keys.generate_keypair()
                pubkey = await self._providers.keys.derive_pubkey(privkey)
                return Keypair(privkey=privkey, pubkey=pubkey)

            keypair = await self._run(session, Phase.KEYS_GENERATED, work(), timeout)
            checkpoint = PhaseCheckpoint.create(
                poll_id, Phase.KEYS_GENERATED, {"coordinator_pubkey": keypair.pubkey},
            )
            self._commit(session, checkpoint)
            session.coordinator_privkey = keypair.privkey
            return KeygenResult(poll_id, keypair.pubkey, keypair.privkey, checkpoint)

    async def create_poll(
        self,
        poll_id: str,
        sizing: PollSizing,
        timeout: Optional[float] = None,
    ) -> PhaseCheckpoint:
        session = self.session(poll_id)
        params = sizing.to_artifacts()
        async with session.lock:
            existing = self._store.checkpoint(poll_id, Phase.POLL_CREATED)
            if existing is not None:
                changed = sorted(k for k, v in params.items() if existing.artifacts.get(k) != v)
                if changed:
                    raise IllegalTransitionError(
                        Operation.CREATE_POLL.value,
                        PollStateMachine.rule(Operation.CREATE_POLL).required,
                        self.current_phase(poll_id),
                        poll_id=poll_id,
                        reason=f"poll already created with different {', '.join(changed)}",
                    )
                self._log_noop(poll_id, Phase.POLL_CREATED)
                return existing

            self._require(session, Operation.CREATE_POLL)
            keys = self._committed(session, Operation.CREATE_POLL, Phase.KEYS_GENERATED)
            pubkey = keys.artifacts["coordinator_pubkey"]

            receipt = await self._run(
                session,
                Phase.POLL_CREATED,
                self._providers.chain.deploy_poll(poll_id, pubkey, params),
                timeout,
            )
            checkpoint = PhaseCheckpoint.create(poll_id, Phase.POLL_CREATED, {
                **params,
                "coordinator_pubkey": pubkey,
                "poll_address": receipt["poll_address"],
                "deploy_receipt": receipt,
            })
            self._commit(session, checkpoint)
            return checkpoint

    async def signup(
        self,
        poll_id: str,
        pubkey: str,
        voice_credits: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> ArtifactRecord:
        """Register a voter. The state index comes from the chain receipt.

        Once the chain returns a receipt the signup is recorded, whatever
        happened to the poll meanwhile: the chain has already assigned the
        state index.
        """
        session = self.session(poll_id)
        credits = self._config.initial_voice_credits if voice_credits is None else voice_credits
        async with session.lock:
            self._require(session, Operation.SIGNUP)
            ctx = self.poll_context(poll_id)
            ticket = session.open_ticket(f"signup {pubkey}")

        async def work() -> dict[str, Any]:
            session.submit(ticket)
            return await self._providers.chain.sign_up(ctx.poll_address, pubkey, credits)

        try:
            receipt = await self._run(
                session, Phase.SIGNUP_OPEN, work(), timeout, mark_failed=False,
            )
        finally:
            session.close_ticket(ticket)

        async with session.lock:
            return self._record_signup(session, ctx, receipt["state_index"], {
                "pubkey": pubkey,
                "voice_credits": credits,
                "tx_ref": receipt.get("tx_ref"),
            })

    async def publish(
        self,
        poll_id: str,
        command: VoteCommand,
        timeout: Optional[float] = None,
    ) -> ArtifactRecord:
        """Encrypt a vote command to the coordinator and publish it.

        The first publish closes signups. A reset that lands before the
        message reaches the chain discards it (OperationDiscardedError);
        after that the message is recorded once its receipt arrives.
        """
        session = self.session(poll_id)
        async with session.lock:
            self._require(session, Operation.PUBLISH)
            ctx = self.poll_context(poll_id)
            ticket = session.open_ticket(f"message from state index {command.state_index}")

        async def work() -> tuple[dict[str, Any], dict[str, Any]]:
            message = await self._providers.keys.encrypt_command(ctx.coordinator_pubkey, command)
            session.submit(ticket)
            receipt = await self._providers.chain.publish_message(ctx.poll_address, message)
            return message, receipt

        try:
            message, receipt = await self._run(
                session, Phase.MESSAGES_PUBLISHED, work(), timeout, mark_failed=False,
            )
        finally:
            session.close_ticket(ticket)

        async with session.lock:
            if self.current_phase(poll_id) == Phase.SIGNUP_OPEN:
                # Signups are final once a message is on chain.
                await self._reconcile(session, ctx, timeout, messages=False)
            return self._record_message(session, ctx, receipt["message_index"], {
                "message": message,
                "tx_ref": receipt.get("tx_ref"),
            })

    async def check_state_root(
        self,
        poll_id: str,
        expected_root: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """Compare the chain's state root with ``expected_root``.

        Without ``expected_root`` the root is rebuilt from the committed
        signups. Read-only: never changes the phase.
        """
        session = self.session(poll_id)
        current = self.current_phase(poll_id)
        PollStateMachine.require_operation(
            Operation.CHECK_STATE_ROOT, current, poll_id=poll_id,
        )
        ctx = self.poll_context(poll_id)
        actual = await self._run(
            session,
            Phase.POLL_CREATED,
            self._providers.chain.state_root(ctx.poll_address),
            timeout,
            mark_failed=False,
        )
        expected = expected_root if expected_root is not None else self.initial_state(poll_id).root()
        if actual != expected:
            log_event(
                logger, logging.WARNING, "state_root_mismatch",
                poll_id=poll_id, expected=expected, actual=actual,
            )
            raise StateMismatchError(expected, actual, poll_id=poll_id, phase=current)
        return actual

    async def process(
        self,
        poll_id: str,
        privkey: Optional[str] = None,
        timeout: Optional[float] = None,
        generate_proofs: bool = True,
    ) -> PhaseCheckpoint:
        """Process every published message in batches and commit the new state."""
        session = self.session(poll_id)
        async with session.lock:
            existing = self._store.checkpoint(poll_id, Phase.PROCESSED)
            if existing is not None:
                self._log_noop(poll_id, Phase.PROCESSED)
                return existing

            self._require(session, Operation.PROCESS)
            ctx = self.poll_context(poll_id)
            coordinator_privkey = await self._coordinator_key(session, ctx, privkey)
            await self._reconcile(session, ctx, timeout)
            messages = sorted(
                self._store.artifacts(poll_id, ArtifactKind.MESSAGE), key=lambda a: a.index,
            )
            initial = self.initial_state(poll_id)
            batch_size = self._config.message_batch_size
            session.pending.clear()

            async def work() -> StateSnapshot:
                state = initial
                for batch_index, start in enumerate(range(0, len(messages), batch_size)):
                    outcome = await self._providers.prover.process_batch(
                        ctx,
                        coordinator_privkey,
                        state,
                        batch_index,
                        [m.payload["message"] for m in messages[start:start + batch_size]],
                        generate_proofs,
                    )
                    session.pending.append({"kind": "process", **outcome.to_artifact()})
                    state = outcome.state
                return state

            final = await self._run(session, Phase.PROCESSED, work(), timeout)
            batches = [_strip_kind(b) for b in session.pending]
            checkpoint = PhaseCheckpoint.create(
                poll_id,
                Phase.PROCESSED,
                {
                    "initial_state_root": initial.root(),
                    "state_root": final.root(),
                    "state": final.to_dict(),
                    "message_count": len(messages),
                    "valid_messages": sum(b["valid_messages"] for b in batches),
                    "invalid_messages": sum(b["invalid_messages"] for b in batches),
                    "batches": batches,
                },
                unproven=not generate_proofs,
            )
            self._commit(session, checkpoint)
            return checkpoint

    async def tally(
        self,
        poll_id: str,
        timeout: Optional[float] = None,
        generate_proofs: bool = True,
    ) -> PhaseCheckpoint:
        """Tally the processed state in batches of state leaves."""
        session = self.session(poll_id)
        async with session.lock:
            existing = self._store.checkpoint(poll_id, Phase.TALLIED)
            if existing is not None:
                self._log_noop(poll_id, Phase.TALLIED)
                return existing

            self._require(session, Operation.TALLY)
            ctx = self.poll_context(poll_id)
            processed = self._committed(session, Operation.TALLY, Phase.PROCESSED)
            state = StateSnapshot.from_dict(processed.artifacts["state"])
            batch_size = self._config.tally_batch_size
            session.pending.clear()

            async def work() -> TallyBatchOutcome:
                previous: Optional[TallyBatchOutcome] = None
                for batch_index, start in enumerate(range(0, len(state.leaves), batch_size)):
                    previous = await self._providers.tallier.tally_batch(
                        ctx, state, batch_index, start, batch_size, previous, generate_proofs,
                    )
                    session.pending.append({"kind": "tally", **previous.to_artifact()})
                if previous is None:
                    raise ProvingError("Processed state has no leaves to tally")
                return previous

            final = await self._run(session, Phase.TALLIED, work(), timeout)
            checkpoint = PhaseCheckpoint.create(
                poll_id,
                Phase.TALLIED,
                {
                    "state_root": processed.artifacts["state_root"],
                    "results": list(final.results),
                    "per_option_spent": list(final.per_option_spent),
                    "spent_voice_credits": final.spent_voice_credits,
                    "tally_commitment": final.new_commitment,
                    "batches": [_strip_kind(b) for b in session.pending],
                },
                unproven=not generate_proofs,
            )
            self._commit(session, checkpoint)
            return checkpoint

    async def verify(
        self,
        poll_id: str,
        timeout: Optional[float] = None,
    ) -> PhaseCheckpoint:
        session = self.session(poll_id)
        async with session.lock:
            existing = self._store.checkpoint(poll_id, Phase.VERIFIED)
            if existing is not None:
                self._log_noop(poll_id, Phase.VERIFIED)
                return existing

            self._require(session, Operation.VERIFY)
            ctx = self.poll_context(poll_id)
            processed = self._committed(session, Operation.VERIFY, Phase.PROCESSED)
            tallied = self._committed(session, Operation.VERIFY, Phase.TALLIED)

            unproven = [cp.phase.value for cp in (processed, tallied) if cp.unproven]
            if unproven:
                raise NoProofAvailableError(
                    f"No proofs to verify: {', '.join(unproven)} committed without proofs",
                    poll_id=poll_id,
                    phase=Phase.TALLIED,
                )

            valid = await self._run(
                session,
                Phase.VERIFIED,
                self._providers.verifier.verify(ctx, processed.artifacts, tallied.artifacts),
                timeout,
            )
            if not valid:
                session.failed = Phase.VERIFIED
                log_event(
                    logger, logging.ERROR, "verification_failed",
                    poll_id=poll_id, phase=Phase.VERIFIED.value,
                )
                raise VerificationFailedError(
                    "Proof verification failed", poll_id=poll_id, phase=Phase.VERIFIED,
                )

            checkpoint = PhaseCheckpoint.create(poll_id, Phase.VERIFIED, {
                "verified": True,
                "state_root": processed.artifacts["state_root"],
                "tally_commitment": tallied.artifacts["tally_commitment"],
            })
            self._commit(session, checkpoint)
            return checkpoint

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require(self, session: PollSession, operation: Operation) -> None:
        PollStateMachine.require_operation(
            operation,
            self.current_phase(session.poll_id),
            poll_id=session.poll_id,
            failed=session.failed,
        )

    def _committed(
        self, session: PollSession, operation: Operation, phase: Phase,
    ) -> PhaseCheckpoint:
        checkpoint = self._store.checkpoint(session.poll_id, phase)
        if checkpoint is None:
            raise IllegalTransitionError(
                operation.value,
                PollStateMachine.rule(operation).required,
                self.current_phase(session.poll_id),
                poll_id=session.poll_id,
                reason=f"no {phase.value} checkpoint",
            )
        return checkpoint

    def _commit(self, session: PollSession, checkpoint: PhaseCheckpoint) -> None:
        PollStateMachine.require_transition(
            self.current_phase(session.poll_id), checkpoint.phase, poll_id=session.poll_id,
        )
        self._store.append(checkpoint)
        session.pending.clear()
        if session.failed == checkpoint.phase:
            session.failed = None
        log_event(
            logger, logging.INFO, "phase_committed",
            poll_id=checkpoint.poll_id,
            phase=checkpoint.phase.value,
            unproven=checkpoint.unproven,
            checkpoint_hash=checkpoint.checkpoint_hash,
        )

    def _record_signup(
        self,
        session: PollSession,
        ctx: PollContext,
        state_index: int,
        payload: dict[str, Any],
    ) -> ArtifactRecord:
        """Append a chain-accepted signup, committing signup_open on the first."""
        existing = self._store.artifact(session.poll_id, ArtifactKind.SIGNUP, state_index)
        if existing is not None:
            return existing
        if self.current_phase(session.poll_id) == Phase.POLL_CREATED:
            self._commit(session, PhaseCheckpoint.create(
                session.poll_id, Phase.SIGNUP_OPEN, {"poll_address": ctx.poll_address},
            ))
        record = ArtifactRecord.create(session.poll_id, ArtifactKind.SIGNUP, state_index, payload)
        self._store.append_artifact(record)
        log_event(
            logger, logging.INFO, "signup_recorded",
            poll_id=session.poll_id, state_index=state_index,
            reconciled=payload.get("reconciled", False),
        )
        return record

    def _record_message(
        self,
        session: PollSession,
        ctx: PollContext,
        message_index: int,
        payload: dict[str, Any],
    ) -> ArtifactRecord:
        """Append a chain-accepted message, committing messages_published on the first."""
        poll_id = session.poll_id
        existing = self._store.artifact(poll_id, ArtifactKind.MESSAGE, message_index)
        if existing is not None:
            return existing
        if self.current_phase(poll_id) == Phase.SIGNUP_OPEN:
            self._commit(session, PhaseCheckpoint.create(
                poll_id, Phase.MESSAGES_PUBLISHED, {
                    "num_signups": self._store.artifact_count(poll_id, ArtifactKind.SIGNUP),
                },
            ))
        record = ArtifactRecord.create(poll_id, ArtifactKind.MESSAGE, message_index, payload)
        self._store.append_artifact(record)
        log_event(
            logger, logging.INFO, "message_recorded",
            poll_id=poll_id, message_index=message_index,
            reconciled=payload.get("reconciled", False),
        )
        return record

    async def _reconcile(
        self,
        session: PollSession,
        ctx: PollContext,
        timeout: Optional[float],
        messages: bool = True,
    ) -> None:
        """Record chain-accepted signups (and messages) the store is missing.

        Covers submissions whose receipt never came back: a timeout or
        cancellation after the chain accepted them. Caller holds the lock.
        """
        signups = await self._run(
            session, Phase.SIGNUP_OPEN, self._providers.chain.signups(ctx.poll_address),
            timeout, mark_failed=False,
        )
        for signup in signups:
            self._record_signup(session, ctx, signup["state_index"], {
                "pubkey": signup["pubkey"],
                "voice_credits": signup["voice_credits"],
                "tx_ref": None,
                "reconciled": True,
            })
        if not messages:
            return
        published = await self._run(
            session, Phase.MESSAGES_PUBLISHED, self._providers.chain.messages(ctx.poll_address),
            timeout, mark_failed=False,
        )
        for entry in published:
            self._record_message(session, ctx, entry["message_index"], {
                "message": entry["message"],
                "tx_ref": None,
                "reconciled": True,
            })

    def _log_noop(self, poll_id: str, phase: Phase) -> None:
        log_event(logger, logging.INFO, "phase_already_committed", poll_id=poll_id, phase=phase.value)

    async def _run(
        self,
        session: PollSession,
        phase: Phase,
        work: Awaitable[T],
        timeout: Optional[float],
        mark_failed: bool = True,
    ) -> T:
        """Await provider work with timeout and error context.

        Provider failures mark the poll failed in ``phase`` (unless
        ``mark_failed`` is off) and are re-raised as MaciError subclasses.
        """
        limit = timeout if timeout is not None else self._config.timeout_seconds
        try:
            if limit is None:
                return await work
            return await asyncio.wait_for(work, limit)
        except asyncio.TimeoutError:
            session.pending.clear()
            log_event(
                logger, logging.WARNING, "transition_timeout",
                poll_id=session.poll_id, phase=phase.value, timeout=limit,
            )
            raise TransitionTimeoutError(
                f"Timed out after {limit}s; nothing was committed",
                poll_id=session.poll_id,
                phase=phase,
            ) from None
        except asyncio.CancelledError:
            session.pending.clear()
            raise
        except OperationDiscardedError:
            raise
        except MaciError as exc:
            self._mark_failed(session, phase, exc, mark_failed)
            raise exc.with_context(session.poll_id, phase)
        except Exception as exc:
            wrapper = _PROVIDER_ERRORS[phase]
            error = wrapper(
                f"{type(exc).__name__}: {exc}", poll_id=session.poll_id, phase=phase,
            )
            self._mark_failed(session, phase, error, mark_failed)
            raise error from exc

    def _mark_failed(
        self,
        session: PollSession,
        phase: Phase,
        error: MaciError,
        mark_failed: bool,
    ) -> None:
        if mark_failed:
            session.failed = phase
        log_event(
            logger, logging.ERROR, "provider_failed",
            poll_id=session.poll_id,
            phase=phase.value,
            error_kind=error.kind,
            error=error.message,
            marked_failed=mark_failed,
        )

    async def _load_coordinator_key(
        self, session: PollSession, pubkey: str, privkey: str,
    ) -> str:
        try:
            derived = await self._providers.keys.derive_pubkey(privkey)
        except Exception as exc:
            raise CoordinatorKeyError(
                f"Invalid coordinator private key: {exc}", poll_id=session.poll_id,
            ) from exc
        if derived != pubkey:
            raise CoordinatorKeyError(
                "Private key does not match the coordinator public key",
                poll_id=session.poll_id,
            )
        session.coordinator_privkey = privkey
        return privkey

    async def _coordinator_key(
        self, session: PollSession, ctx: PollContext, privkey: Optional[str],
    ) -> str:
        if privkey is not None:
            return await self._load_coordinator_key(session, ctx.coordinator_pubkey, privkey)
        if session.coordinator_privkey is None:
            raise CoordinatorKeyError(
                "No coordinator private key loaded; pass privkey",
                poll_id=session.poll_id,
            )
        return session.coordinator_privkey


def _strip_kind(batch: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in batch.items() if k != "kind"}
