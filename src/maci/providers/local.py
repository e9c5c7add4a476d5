"""Local reference providers.

A complete, deterministic, in-process implementation of the provider
interfaces so the coordinator can run end to end without a node, a prover
or a circuit build. It reproduces MACI's observable behaviour (state
indices, nonces, quadratic vote costs, key rotation, batch processing and
tallying, state roots and tally commitments) with SHA-256 in place of the
real primitives:

- Keys are random 32-byte secrets; the public key is a hash of the secret.
- "Encryption" is base64 plus a MAC bound to the coordinator public key.
- "Signatures" and "proofs" are hash commitments over the signed data or
  the public inputs.

None of this is cryptographically sound. It exists to exercise the
orchestrator and to give operators a dry-run chain; swap in real services
through ``ProviderSet`` for production.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import json
import re
import secrets
from pathlib import Path
from typing import Any, Optional, Sequence

from maci.config import CoordinatorConfig
from maci.crypto.anchor import anchor_to_chain, canonical_digest
from maci.crypto.merkle import MerkleTree, hash_leaf
from maci.crypto.tree_depth import QUINARY
from maci.errors import ChainSubmissionError, KeyGenerationError, ProvingError
from maci.logs import get_logger
from maci.models.poll import Keypair, VoteCommand
from maci.models.state import StateLeaf, StateSnapshot
from maci.providers.base import (
    PollContext,
    ProcessBatchOutcome,
    ProviderSet,
    TallyBatchOutcome,
)


logger = get_logger("providers.local")

PRIVKEY_PREFIX = "macisk."
PUBKEY_PREFIX = "macipk."
_KEY_RE = re.compile(r"^[0-9a-f]{64}$")

ZERO_COMMITMENT = "sha256:" + "0" * 64
VERIFYING_KEY_ID = "local-sha256-v1"


# ----------------------------------------------------------------------
# Keys, signatures, message envelopes
# ----------------------------------------------------------------------

def derive_pubkey(privkey: str) -> str:
    if not isinstance(privkey, str) or not privkey.startswith(PRIVKEY_PREFIX):
        raise KeyGenerationError(f"Private key must start with {PRIVKEY_PREFIX!r}")
    secret = privkey[len(PRIVKEY_PREFIX):]
    if not _KEY_RE.match(secret):
        raise KeyGenerationError("Private key must be 64 lowercase hex characters")
    digest = hashlib.sha256(f"maci-pubkey:{secret}".encode("utf-8")).hexdigest()
    return PUBKEY_PREFIX + digest


def is_pubkey(value: str) -> bool:
    return (
        isinstance(value, str)
        and value.startswith(PUBKEY_PREFIX)
        and bool(_KEY_RE.match(value[len(PUBKEY_PREFIX):]))
    )


def sign(pubkey: str, plaintext: dict[str, Any]) -> str:
    return "sha256:" + hash_leaf({"signer": pubkey, "command": plaintext})


def verify_signature(pubkey: str, plaintext: dict[str, Any], signature: str) -> bool:
    return secrets.compare_digest(sign(pubkey, plaintext), signature)


def _mac(coordinator_pubkey: str, ciphertext: str) -> str:
    return hashlib.sha256(f"{coordinator_pubkey}:{ciphertext}".encode("utf-8")).hexdigest()


def decrypt_message(coordinator_privkey: str, message: dict[str, Any]) -> Optional[dict[str, Any]]:
    """Open a message envelope. Returns None if it was not sealed to this key."""
    coordinator_pubkey = derive_pubkey(coordinator_privkey)
    ciphertext = message.get("ciphertext", "")
    if not secrets.compare_digest(_mac(coordinator_pubkey, ciphertext), message.get("mac", "")):
        return None
    try:
        return json.loads(base64.b64decode(ciphertext.encode("ascii")))
    except (binascii.Error, UnicodeError, json.JSONDecodeError):
        return None


class LocalKeyService:
    async def generate_keypair(self) -> Keypair:
        privkey = PRIVKEY_PREFIX + secrets.token_hex(32)
        return Keypair(privkey=privkey, pubkey=derive_pubkey(privkey))

    async def derive_pubkey(self, privkey: str) -> str:
        return derive_pubkey(privkey)

    async def encrypt_command(
        self, coordinator_pubkey: str, command: VoteCommand,
    ) -> dict[str, Any]:
        if not is_pubkey(coordinator_pubkey):
            raise KeyGenerationError(f"Invalid coordinator public key: {coordinator_pubkey!r}")
        voter_pubkey = derive_pubkey(command.privkey)
        if command.new_pubkey is not None and not is_pubkey(command.new_pubkey):
            raise KeyGenerationError(f"Invalid new public key: {command.new_pubkey!r}")
        plaintext = {
            "state_index": command.state_index,
            "vote_option_index": command.vote_option_index,
            "new_vote_weight": command.new_vote_weight,
            "nonce": command.nonce,
            "new_pubkey": command.new_pubkey or voter_pubkey,
            "salt": command.salt or secrets.token_hex(16),
        }
        sealed = {**plaintext, "signature": sign(voter_pubkey, plaintext)}
        ciphertext = base64.b64encode(
            json.dumps(sealed, sort_keys=True).encode("utf-8")
        ).decode("ascii")
        return {"ciphertext": ciphertext, "mac": _mac(coordinator_pubkey, ciphertext)}


# ----------------------------------------------------------------------
# Chain
# ----------------------------------------------------------------------

def _tx_ref(payload: dict[str, Any]) -> str:
    return "0x" + hash_leaf(payload)


class LocalChain:
    """A dry-run chain: poll contracts as JSON records.

    With ``storage_path`` the ledger survives across processes, which the
    CLI relies on. With anchoring configured, poll deployment also embeds
    the digest of the poll parameters in a real Ethereum transaction.
    """

    def __init__(
        self,
        storage_path: Optional[Path] = None,
        config: Optional[CoordinatorConfig] = None,
    ) -> None:
        self._storage_path = Path(storage_path) if storage_path is not None else None
        self._config = config or CoordinatorConfig()
        self._polls: dict[str, dict[str, Any]] = {}
        if self._storage_path is not None and self._storage_path.exists():
            self._polls = json.loads(self._storage_path.read_text(encoding="utf-8"))

    def _save(self) -> None:
        if self._storage_path is None:
            return
        self._storage_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._storage_path.with_suffix(".tmp")
        tmp.write_text(json.dumps(self._polls, sort_keys=True, indent=2), encoding="utf-8")
        tmp.replace(self._storage_path)

    def _poll(self, poll_address: str) -> dict[str, Any]:
        poll = self._polls.get(poll_address)
        if poll is None:
            raise ChainSubmissionError(f"No poll deployed at {poll_address}")
        return poll

    async def deploy_poll(
        self, poll_id: str, coordinator_pubkey: str, params: dict[str, Any],
    ) -> dict[str, Any]:
        deployment = {"poll_id": poll_id, "coordinator_pubkey": coordinator_pubkey, **params}
        digest = canonical_digest(deployment)
        address = "0x" + digest[:40]

        existing = self._polls.get(address)
        if existing is not None:
            return dict(existing["receipt"])

        receipt: dict[str, Any] = {
            "poll_address": address,
            "params_digest": digest,
            "tx_ref": _tx_ref({"deploy": deployment}),
        }
        if self._config.anchoring_enabled:
            record = await asyncio.to_thread(
                anchor_to_chain,
                digest,
                self._config.rpc_url,
                self._config.anchor_private_key,
                self._config.chain_id,
            )
            receipt["anchor"] = record.to_dict()

        self._polls[address] = {
            "deployment": deployment,
            "receipt": receipt,
            "signups": [],
            "messages": [],
            "signup_closed": False,
        }
        self._save()
        return dict(receipt)

    async def sign_up(
        self, poll_address: str, pubkey: str, voice_credits: int,
    ) -> dict[str, Any]:
        poll = self._poll(poll_address)
        if poll["signup_closed"]:
            raise ChainSubmissionError("Signup period has ended")
        if not is_pubkey(pubkey):
            raise ChainSubmissionError(f"Invalid public key: {pubkey!r}")
        if voice_credits < 0:
            raise ChainSubmissionError(f"Voice credits must be >= 0, got {voice_credits}")
        capacity = 2 ** poll["deployment"]["state_tree_depth"]
        # Leaf 0 is the blank leaf.
        if len(poll["signups"]) + 1 >= capacity:
            raise ChainSubmissionError(f"State tree is full ({capacity - 1} voters)")

        state_index = len(poll["signups"]) + 1
        signup = {"state_index": state_index, "pubkey": pubkey, "voice_credits": voice_credits}
        poll["signups"].append(signup)
        self._save()
        return {"state_index": state_index, "tx_ref": _tx_ref({"signup": signup, "poll": poll_address})}

    async def publish_message(
        self, poll_address: str, message: dict[str, Any],
    ) -> dict[str, Any]:
        poll = self._poll(poll_address)
        capacity = 2 ** poll["deployment"]["message_tree_depth"]
        if len(poll["messages"]) >= capacity:
            raise ChainSubmissionError(f"Message tree is full ({capacity} messages)")

        message_index = len(poll["messages"])
        poll["messages"].append(message)
        poll["signup_closed"] = True
        self._save()
        return {
            "message_index": message_index,
            "tx_ref": _tx_ref({"message": message, "index": message_index, "poll": poll_address}),
        }

    async def state_root(self, poll_address: str) -> str:
        poll = self._poll(poll_address)
        deployment = poll["deployment"]
        snapshot = StateSnapshot.from_signups(
            ((s["state_index"], s["pubkey"], s["voice_credits"]) for s in poll["signups"]),
            deployment["state_tree_depth"],
            deployment["max_vote_options"],
        )
        return snapshot.root()

    async def signups(self, poll_address: str) -> list[dict[str, Any]]:
        """Accepted signups in state index order."""
        return [dict(s) for s in self._poll(poll_address)["signups"]]

    async def messages(self, poll_address: str) -> list[dict[str, Any]]:
        """Accepted messages in publication order."""
        return [
            {"message_index": i, "message": dict(m)}
            for i, m in enumerate(self._poll(poll_address)["messages"])
        ]


# ----------------------------------------------------------------------
# Proving and verification
# ----------------------------------------------------------------------

def make_proof(circuit: str, public_inputs: dict[str, Any]) -> dict[str, Any]:
    return {
        "circuit": circuit,
        "verifying_key": VERIFYING_KEY_ID,
        "public_inputs_hash": "sha256:" + hash_leaf(public_inputs),
        "proof": "sha256:" + hash_leaf({
            "circuit": circuit,
            "inputs": public_inputs,
            "key": VERIFYING_KEY_ID,
        }),
    }


def check_proof(circuit: str, public_inputs: dict[str, Any], proof: Optional[dict[str, Any]]) -> bool:
    if not proof:
        return False
    return proof == make_proof(circuit, public_inputs)


def tally_commitment(
    results: Sequence[int],
    per_option_spent: Sequence[int],
    spent_voice_credits: int,
    vote_option_tree_depth: int,
) -> str:
    results_root = MerkleTree.from_leaves(
        QUINARY, vote_option_tree_depth, (hash_leaf(r) for r in results),
    ).compute_root()
    spent_root = MerkleTree.from_leaves(
        QUINARY, vote_option_tree_depth, (hash_leaf(s) for s in per_option_spent),
    ).compute_root()
    return "sha256:" + hash_leaf({
        "results_root": results_root,
        "per_option_spent_root": spent_root,
        "spent_voice_credits": spent_voice_credits,
    })


def _process_inputs(ctx: PollContext, batch: dict[str, Any]) -> dict[str, Any]:
    return {
        "poll_id": ctx.poll_id,
        "coordinator_pubkey": ctx.coordinator_pubkey,
        "batch_index": batch["batch_index"],
        "prev_state_root": batch["prev_state_root"],
        "new_state_root": batch["new_state_root"],
        "message_batch_hash": batch["message_batch_hash"],
    }


def _tally_inputs(ctx: PollContext, state_root: str, batch: dict[str, Any]) -> dict[str, Any]:
    return {
        "poll_id": ctx.poll_id,
        "batch_index": batch["batch_index"],
        "start_index": batch["start_index"],
        "state_root": state_root,
        "prev_tally_commitment": batch["prev_tally_commitment"],
        "new_tally_commitment": batch["new_tally_commitment"],
    }


class LocalProver:
    """Processes messages and tallies votes with quadratic vote costs.

    A command is applied only if it decrypts under the coordinator key,
    targets an existing state leaf, is signed by the leaf's current key,
    carries the next nonce, names a valid vote option and the leaf can
    afford ``new_weight ** 2`` after refunding its previous weight on that
    option. Invalid commands are skipped, not errors.
    """

    def _apply(
        self,
        state: StateSnapshot,
        coordinator_privkey: str,
        message: dict[str, Any],
    ) -> Optional[StateSnapshot]:
        sealed = decrypt_message(coordinator_privkey, message)
        if sealed is None:
            return None
        signature = sealed.pop("signature", "")
        try:
            state_index = int(sealed["state_index"])
            option = int(sealed["vote_option_index"])
            weight = int(sealed["new_vote_weight"])
            nonce = int(sealed["nonce"])
            new_pubkey = sealed["new_pubkey"]
        except (KeyError, TypeError, ValueError):
            return None

        if not 1 <= state_index <= state.num_signups:
            return None
        leaf = state.leaf(state_index)
        if not verify_signature(leaf.pubkey, sealed, signature):
            return None
        if nonce != leaf.nonce + 1:
            return None
        if not 0 <= option < len(leaf.votes) or weight < 0:
            return None
        credits_left = leaf.voice_credits + leaf.votes[option] ** 2 - weight ** 2
        if credits_left < 0:
            return None

        votes = list(leaf.votes)
        votes[option] = weight
        return state.with_leaf(state_index, StateLeaf(
            pubkey=new_pubkey,
            voice_credits=credits_left,
            nonce=nonce,
            votes=tuple(votes),
        ))

    async def process_batch(
        self,
        ctx: PollContext,
        coordinator_privkey: str,
        state: StateSnapshot,
        batch_index: int,
        messages: Sequence[dict[str, Any]],
        generate_proof: bool,
    ) -> ProcessBatchOutcome:
        if derive_pubkey(coordinator_privkey) != ctx.coordinator_pubkey:
            raise ProvingError("Coordinator key does not match the poll")

        prev_root = state.root()
        valid = invalid = 0
        for message in messages:
            updated = self._apply(state, coordinator_privkey, message)
            if updated is None:
                invalid += 1
            else:
                state = updated
                valid += 1

        new_root = state.root()
        batch = {
            "batch_index": batch_index,
            "prev_state_root": prev_root,
            "new_state_root": new_root,
            "message_batch_hash": "sha256:" + hash_leaf(list(messages)),
        }
        proof = make_proof("process", _process_inputs(ctx, batch)) if generate_proof else None
        logger.debug(
            "batch processed",
            extra={"structured": {
                "poll_id": ctx.poll_id, "batch_index": batch_index,
                "valid": valid, "invalid": invalid, "proof": generate_proof,
            }},
        )
        return ProcessBatchOutcome(
            batch_index=batch_index,
            state=state,
            prev_state_root=prev_root,
            new_state_root=new_root,
            message_batch_hash=batch["message_batch_hash"],
            valid_messages=valid,
            invalid_messages=invalid,
            proof=proof,
        )

    async def tally_batch(
        self,
        ctx: PollContext,
        state: StateSnapshot,
        batch_index: int,
        start_index: int,
        batch_size: int,
        previous: Optional[TallyBatchOutcome],
        generate_proof: bool,
    ) -> TallyBatchOutcome:
        num_options = ctx.max_vote_options
        if previous is None:
            results = [0] * num_options
            per_option_spent = [0] * num_options
            spent = 0
            prev_commitment = ZERO_COMMITMENT
        else:
            results = list(previous.results)
            per_option_spent = list(previous.per_option_spent)
            spent = previous.spent_voice_credits
            prev_commitment = previous.new_commitment

        end = min(start_index + batch_size, len(state.leaves))
        for leaf in state.leaves[start_index:end]:
            for option, weight in enumerate(leaf.votes[:num_options]):
                results[option] += weight
                per_option_spent[option] += weight * weight
                spent += weight * weight

        commitment = tally_commitment(
            results, per_option_spent, spent, ctx.vote_option_tree_depth,
        )
        batch = {
            "batch_index": batch_index,
            "start_index": start_index,
            "prev_tally_commitment": prev_commitment,
            "new_tally_commitment": commitment,
        }
        proof = (
            make_proof("tally", _tally_inputs(ctx, state.root(), batch))
            if generate_proof else None
        )
        return TallyBatchOutcome(
            batch_index=batch_index,
            start_index=start_index,
            results=tuple(results),
            per_option_spent=tuple(per_option_spent),
            spent_voice_credits=spent,
            prev_commitment=prev_commitment,
            new_commitment=commitment,
            proof=proof,
        )


class LocalVerifier:
    """Checks the proof chain of a processed and tallied poll.

    Every batch proof must verify, batch roots and commitments must chain
    from the initial state root and the zero commitment to the committed
    final values, and the committed tally must match its commitment.
    """

    async def verify(
        self,
        ctx: PollContext,
        processed: dict[str, Any],
        tallied: dict[str, Any],
    ) -> bool:
        root = processed["initial_state_root"]
        for batch in processed["batches"]:
            if batch["prev_state_root"] != root:
                return False
            if not check_proof("process", _process_inputs(ctx, batch), batch.get("proof")):
                return False
            root = batch["new_state_root"]
        if root != processed["state_root"]:
            return False

        commitment = ZERO_COMMITMENT
        for batch in tallied["batches"]:
            if batch["prev_tally_commitment"] != commitment:
                return False
            inputs = _tally_inputs(ctx, processed["state_root"], batch)
            if not check_proof("tally", inputs, batch.get("proof")):
                return False
            commitment = batch["new_tally_commitment"]
        if commitment != tallied["tally_commitment"]:
            return False

        recomputed = tally_commitment(
            tallied["results"],
            tallied["per_option_spent"],
            tallied["spent_voice_credits"],
            ctx.vote_option_tree_depth,
        )
        return recomputed == tallied["tally_commitment"]


def local_providers(
    config: Optional[CoordinatorConfig] = None,
    chain_path: Optional[Path] = None,
) -> ProviderSet:
    """Build a ProviderSet backed entirely by the local reference services."""
    prover = LocalProver()
    return ProviderSet(
        keys=LocalKeyService(),
        chain=LocalChain(storage_path=chain_path, config=config),
        prover=prover,
        tallier=prover,
        verifier=LocalVerifier(),
    )
