"""Blockchain anchoring of poll parameters.

When a poll is deployed, the coordinator can embed the SHA-256 digest of
the poll's public parameters (coordinator public key, tree depths,
capacities) in an Ethereum transaction. The transaction is a 0-ETH
self-send with the digest in the data field: no code executes on-chain, the
chain only witnesses that these parameters were fixed before signup opened.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any

from maci.logs import get_logger, log_event

logger = get_logger("anchor")


@dataclass(frozen=True)
class AnchorRecord:
    """A record of a successful blockchain anchor."""
    sha256_hash: str
    tx_hash: str
    block_number: int
    chain_id: int
    timestamp_utc: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def canonical_digest(params: dict[str, Any]) -> str:
    """SHA-256 hex digest of the canonical JSON form of ``params``.

    Canonical form: sorted keys, Unicode preserved, UTF-8 encoded.
    """
    canonical = json.dumps(params, sort_keys=True, ensure_ascii=False).encode("utf-8")
    return hashlib.sha256(canonical).hexdigest()


def anchor_to_chain(
    digest: str,
    rpc_url: str,
    private_key: str,
    chain_id: int = 11155111,
    gas: int = 30_000,
    gas_price_gwei: str = "2",
    timeout: int = 300,
) -> AnchorRecord:
    """Anchor a SHA-256 hex digest by embedding it in a transaction.

    Sends a 0-ETH self-send transaction with the digest in the data field
    and waits for one confirmation. Blocking; callers on an event loop run
    it in a worker thread.
    """
    from web3 import Web3, HTTPProvider
    from eth_account import Account

    w3 = Web3(HTTPProvider(rpc_url))
    acct = Account.from_key(private_key)

    nonce = w3.eth.get_transaction_count(acct.address)
    tx = {
        "to": acct.address,
        "value": 0,
        "gas": gas,
        "gasPrice": w3.to_wei(gas_price_gwei, "gwei"),
        "nonce": nonce,
        "chainId": chain_id,
        "data": bytes.fromhex(digest),
    }

    signed = acct.sign_transaction(tx)
    log_event(
        logger, logging.DEBUG, "anchor_submitting",
        sender=acct.address, nonce=nonce, chain_id=chain_id, digest=digest,
    )
    tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
    receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)

    record = AnchorRecord(
        sha256_hash=digest,
        tx_hash=tx_hash.hex(),
        block_number=receipt.blockNumber,
        chain_id=chain_id,
        timestamp_utc=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
    )
    log_event(
        logger, logging.INFO, "anchor_confirmed",
        digest=digest, tx_hash=record.tx_hash,
        block_number=record.block_number, chain_id=chain_id,
    )
    return record
