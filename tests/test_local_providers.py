"""Tests for the local reference providers — vote rules, chain, proofs."""

import copy
from pathlib import Path
from typing import Any

import pytest

from maci.config import CoordinatorConfig
from maci.engine.orchestrator import PhaseOrchestrator
from maci.errors import ChainSubmissionError, KeyGenerationError, ProvingError
from maci.models.poll import Keypair, Phase, PollSizing, VoteCommand
from maci.models.state import StateSnapshot
from maci.persistence.checkpoint_store import CheckpointStore
from maci.providers.base import PollContext
from maci.providers.local import (
    LocalChain,
    LocalKeyService,
    LocalProver,
    LocalVerifier,
    check_proof,
    decrypt_message,
    derive_pubkey,
    is_pubkey,
    local_providers,
    make_proof,
)


KEYS = LocalKeyService()


class Booth:
    """One coordinator, a few voters and a fresh state tree."""

    def __init__(self, coordinator: Keypair, voters: list[Keypair], credits: int) -> None:
        self.coordinator = coordinator
        self.voters = voters
        self.ctx = PollContext(
            poll_id="poll-booth",
            poll_address="0x" + "ab" * 20,
            coordinator_pubkey=coordinator.pubkey,
            state_tree_depth=2,
            message_tree_depth=3,
            vote_option_tree_depth=1,
            max_users=3,
            max_messages=8,
            max_vote_options=3,
        )
        self.state = StateSnapshot.from_signups(
            [(i + 1, v.pubkey, credits) for i, v in enumerate(voters)], 2, 3,
        )

    async def message(self, voter: int, **fields: Any) -> dict:
        command = VoteCommand(
            privkey=fields.pop("privkey", self.voters[voter].privkey),
            state_index=fields.pop("state_index", voter + 1),
            vote_option_index=fields.pop("option", 0),
            new_vote_weight=fields.pop("weight", 1),
            nonce=fields.pop("nonce", 1),
            **fields,
        )
        return await KEYS.encrypt_command(self.coordinator.pubkey, command)

    async def process(self, messages: list[dict]) -> Any:
        return await LocalProver().process_batch(
            self.ctx, self.coordinator.privkey, self.state, 0, messages, True,
        )


async def _booth(voters: int = 2, credits: int = 10) -> Booth:
    coordinator = await KEYS.generate_keypair()
    return Booth(coordinator, [await KEYS.generate_keypair() for _ in range(voters)], credits)


class TestKeys:
    @pytest.mark.asyncio
    async def test_generated_keypair(self) -> None:
        keypair = await KEYS.generate_keypair()
        assert keypair.privkey.startswith("macisk.")
        assert is_pubkey(keypair.pubkey)
        assert derive_pubkey(keypair.privkey) == keypair.pubkey

    @pytest.mark.parametrize("bad", ["", "macipk." + "0" * 64, "macisk.XYZ", "macisk." + "A" * 64])
    def test_invalid_privkey(self, bad: str) -> None:
        with pytest.raises(KeyGenerationError):
            derive_pubkey(bad)

    @pytest.mark.asyncio
    async def test_envelope_opens_only_for_coordinator(self) -> None:
        booth = await _booth()
        message = await booth.message(0, option=2, weight=3)
        opened = decrypt_message(booth.coordinator.privkey, message)
        assert opened["vote_option_index"] == 2
        assert opened["new_vote_weight"] == 3
        assert opened["new_pubkey"] == booth.voters[0].pubkey
        assert "signature" in opened
        assert decrypt_message(booth.voters[1].privkey, message) is None

    @pytest.mark.asyncio
    async def test_tampered_envelope(self) -> None:
        booth = await _booth()
        message = await booth.message(0)
        message["ciphertext"] = message["ciphertext"][:-4] + "AAAA"
        assert decrypt_message(booth.coordinator.privkey, message) is None

    @pytest.mark.asyncio
    async def test_encrypt_rejects_bad_new_key(self) -> None:
        booth = await _booth()
        with pytest.raises(KeyGenerationError):
            await booth.message(0, new_pubkey="not-a-key")


class TestVoteRules:
    @pytest.mark.asyncio
    async def test_quadratic_cost(self) -> None:
        booth = await _booth()
        outcome = await booth.process([await booth.message(0, option=1, weight=3)])
        leaf = outcome.state.leaf(1)
        assert leaf.voice_credits == 1
        assert leaf.nonce == 1
        assert leaf.votes == (0, 3, 0)
        assert outcome.valid_messages == 1

    @pytest.mark.asyncio
    async def test_revote_refunds_previous_weight(self) -> None:
        booth = await _booth()
        outcome = await booth.process([
            await booth.message(0, option=1, weight=3, nonce=1),
            await booth.message(0, option=1, weight=2, nonce=2),
        ])
        leaf = outcome.state.leaf(1)
        assert leaf.voice_credits == 6
        assert leaf.votes == (0, 2, 0)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("fields", [
        {"weight": 4},
        {"nonce": 2},
        {"option": 3},
        {"state_index": 3},
        {"state_index": 2},
    ], ids=["overspend", "nonce", "option", "unknown-leaf", "wrong-signer"])
    async def test_invalid_commands_skipped(self, fields: dict) -> None:
        booth = await _booth()
        outcome = await booth.process([await booth.message(0, **fields)])
        assert outcome.invalid_messages == 1
        assert outcome.valid_messages == 0
        assert outcome.state == booth.state
        assert outcome.new_state_root == outcome.prev_state_root

    @pytest.mark.asyncio
    async def test_message_sealed_to_other_coordinator(self) -> None:
        booth = await _booth()
        stranger = await KEYS.generate_keypair()
        command = VoteCommand(booth.voters[0].privkey, 1, 0, 1, 1)
        message = await KEYS.encrypt_command(stranger.pubkey, command)
        outcome = await booth.process([message])
        assert outcome.invalid_messages == 1

    @pytest.mark.asyncio
    async def test_key_rotation(self) -> None:
        booth = await _booth()
        rotated = await KEYS.generate_keypair()
        outcome = await booth.process([
            await booth.message(0, option=0, weight=1, nonce=1, new_pubkey=rotated.pubkey),
            await booth.message(0, option=2, weight=3, nonce=2),
            await booth.message(0, privkey=rotated.privkey, option=1, weight=2, nonce=2),
        ])
        leaf = outcome.state.leaf(1)
        assert leaf.pubkey == rotated.pubkey
        assert leaf.votes == (1, 2, 0)
        assert leaf.voice_credits == 10 - 1 - 4
        assert outcome.invalid_messages == 1

    @pytest.mark.asyncio
    async def test_wrong_coordinator_key(self) -> None:
        booth = await _booth()
        with pytest.raises(ProvingError):
            await LocalProver().process_batch(
                booth.ctx, booth.voters[0].privkey, booth.state, 0, [], True,
            )

    @pytest.mark.asyncio
    async def test_proof_only_when_asked(self) -> None:
        booth = await _booth()
        outcome = await LocalProver().process_batch(
            booth.ctx, booth.coordinator.privkey, booth.state, 0, [], False,
        )
        assert outcome.proof is None


class TestTally:
    @pytest.mark.asyncio
    async def test_batched_tally_matches_single_batch(self) -> None:
        booth = await _booth(voters=3, credits=20)
        processed = await booth.process([
            await booth.message(0, option=0, weight=2),
            await booth.message(1, option=2, weight=4),
            await booth.message(2, option=2, weight=1),
        ])
        prover = LocalProver()
        whole = await prover.tally_batch(booth.ctx, processed.state, 0, 0, 4, None, True)

        previous = None
        for batch_index, start in enumerate(range(0, 4, 1)):
            previous = await prover.tally_batch(
                booth.ctx, processed.state, batch_index, start, 1, previous, True,
            )
        assert previous.results == whole.results == (2, 0, 5)
        assert previous.spent_voice_credits == whole.spent_voice_credits == 4 + 16 + 1
        assert previous.per_option_spent == (4, 0, 17)
        assert previous.new_commitment == whole.new_commitment

    @pytest.mark.asyncio
    async def test_first_batch_starts_at_zero_commitment(self) -> None:
        booth = await _booth()
        outcome = await LocalProver().tally_batch(booth.ctx, booth.state, 0, 0, 2, None, False)
        assert outcome.prev_commitment == "sha256:" + "0" * 64
        assert outcome.proof is None


class TestProofs:
    def test_proof_bound_to_inputs(self) -> None:
        proof = make_proof("process", {"a": 1})
        assert check_proof("process", {"a": 1}, proof)
        assert not check_proof("process", {"a": 2}, proof)
        assert not check_proof("tally", {"a": 1}, proof)
        assert not check_proof("process", {"a": 1}, None)


async def _verified_artifacts() -> tuple[PhaseOrchestrator, str]:
    config = CoordinatorConfig(message_batch_size=1, tally_batch_size=2)
    orch = PhaseOrchestrator(local_providers(config), CheckpointStore(), config)
    keys = await orch.generate_keypair()
    await orch.create_poll(keys.poll_id, PollSizing.from_capacities(4, 5))
    voters = [await KEYS.generate_keypair() for _ in range(2)]
    for voter in voters:
        await orch.signup(keys.poll_id, voter.pubkey)
    await orch.publish(keys.poll_id, VoteCommand(voters[0].privkey, 1, 1, 3, 1))
    await orch.publish(keys.poll_id, VoteCommand(voters[1].privkey, 2, 4, 2, 1))
    await orch.process(keys.poll_id)
    await orch.tally(keys.poll_id)
    return orch, keys.poll_id


class TestVerifier:
    @pytest.mark.asyncio
    async def test_accepts_honest_run(self) -> None:
        orch, poll_id = await _verified_artifacts()
        processed = orch.store.checkpoint(poll_id, Phase.PROCESSED).artifacts
        tallied = orch.store.checkpoint(poll_id, Phase.TALLIED).artifacts
        assert await LocalVerifier().verify(orch.poll_context(poll_id), processed, tallied)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("tamper", [
        lambda p, t: t["results"].__setitem__(1, 4),
        lambda p, t: t.__setitem__("spent_voice_credits", 0),
        lambda p, t: p["batches"][0]["proof"].__setitem__("proof", "sha256:" + "1" * 64),
        lambda p, t: p.__setitem__("state_root", "sha256:" + "2" * 64),
        lambda p, t: t["batches"].pop(),
        lambda p, t: p["batches"].reverse(),
    ], ids=["results", "spent", "proof", "root", "dropped-batch", "reordered"])
    async def test_rejects_tampering(self, tamper: Any) -> None:
        orch, poll_id = await _verified_artifacts()
        processed = copy.deepcopy(orch.store.checkpoint(poll_id, Phase.PROCESSED).artifacts)
        tallied = copy.deepcopy(orch.store.checkpoint(poll_id, Phase.TALLIED).artifacts)
        tamper(processed, tallied)
        assert not await LocalVerifier().verify(orch.poll_context(poll_id), processed, tallied)


PARAMS = PollSizing.from_capacities(4, 5).to_artifacts()


class TestLocalChain:
    @pytest.mark.asyncio
    async def test_deploy_is_idempotent(self) -> None:
        chain = LocalChain()
        first = await chain.deploy_poll("p1", "macipk." + "1" * 64, PARAMS)
        second = await chain.deploy_poll("p1", "macipk." + "1" * 64, PARAMS)
        other = await chain.deploy_poll("p2", "macipk." + "1" * 64, PARAMS)
        assert first == second
        assert first["poll_address"] != other["poll_address"]
        assert "anchor" not in first

    @pytest.mark.asyncio
    async def test_signup_indices_and_capacity(self) -> None:
        chain = LocalChain()
        address = (await chain.deploy_poll("p1", "macipk." + "1" * 64, PARAMS))["poll_address"]
        voters = [await KEYS.generate_keypair() for _ in range(4)]
        indices = [(await chain.sign_up(address, v.pubkey, 5))["state_index"] for v in voters[:3]]
        assert indices == [1, 2, 3]
        with pytest.raises(ChainSubmissionError, match="full"):
            await chain.sign_up(address, voters[3].pubkey, 5)

    @pytest.mark.asyncio
    async def test_signup_rejections(self) -> None:
        chain = LocalChain()
        address = (await chain.deploy_poll("p1", "macipk." + "1" * 64, PARAMS))["poll_address"]
        voter = await KEYS.generate_keypair()
        with pytest.raises(ChainSubmissionError):
            await chain.sign_up(address, "garbage", 5)
        with pytest.raises(ChainSubmissionError):
            await chain.sign_up(address, voter.pubkey, -1)
        with pytest.raises(ChainSubmissionError):
            await chain.sign_up("0x" + "0" * 40, voter.pubkey, 5)

    @pytest.mark.asyncio
    async def test_publish_closes_signups(self) -> None:
        chain = LocalChain()
        address = (await chain.deploy_poll("p1", "macipk." + "1" * 64, PARAMS))["poll_address"]
        voter = await KEYS.generate_keypair()
        await chain.sign_up(address, voter.pubkey, 5)
        receipt = await chain.publish_message(address, {"ciphertext": "", "mac": ""})
        assert receipt["message_index"] == 0
        with pytest.raises(ChainSubmissionError, match="ended"):
            await chain.sign_up(address, voter.pubkey, 5)

    @pytest.mark.asyncio
    async def test_message_capacity(self) -> None:
        chain = LocalChain()
        address = (await chain.deploy_poll("p1", "macipk." + "1" * 64, PARAMS))["poll_address"]
        for _ in range(4):
            await chain.publish_message(address, {})
        with pytest.raises(ChainSubmissionError, match="full"):
            await chain.publish_message(address, {})

    @pytest.mark.asyncio
    async def test_state_root_and_persistence(self, tmp_path: Path) -> None:
        path = tmp_path / "chain.json"
        chain = LocalChain(storage_path=path)
        address = (await chain.deploy_poll("p1", "macipk." + "1" * 64, PARAMS))["poll_address"]
        voter = await KEYS.generate_keypair()
        await chain.sign_up(address, voter.pubkey, 7)

        expected = StateSnapshot.from_signups([(1, voter.pubkey, 7)], 2, 5).root()
        assert await chain.state_root(address) == expected

        reopened = LocalChain(storage_path=path)
        assert await reopened.state_root(address) == expected
        assert (await reopened.sign_up(address, (await KEYS.generate_keypair()).pubkey, 7))["state_index"] == 2
