"""MACI coordinator CLI.

Usage:
    maci genMaciKeypair
    maci genMaciPubkey --privkey macisk.…
    maci create --max-users 4 --max-vote-options 25
    maci signup --poll-id poll-… --pubkey macipk.…
    maci publish --poll-id poll-… --privkey macisk.… --state-index 1 \\
        --vote-option-index 0 --new-vote-weight 3 --nonce 1
    maci checkStateRoot --poll-id poll-…
    maci process --poll-id poll-… --privkey macisk.…
    maci tally --poll-id poll-… --tally-file tally.json
    maci verify --poll-id poll-…
    maci processAndTallyWithoutProofs --poll-id poll-… --privkey macisk.…
    maci coordinatorReset --poll-id poll-…
    maci runSuite --suites suites/suites.json

Checkpoints and the local chain ledger live under the configured data
directory, so a poll can be driven across separate invocations. The
coordinator private key is never written to disk: pass ``--privkey`` to
``process``.
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from maci.config import CoordinatorConfig
from maci.engine.fast_path import FastPathRunner
from maci.engine.orchestrator import PhaseOrchestrator
from maci.engine.recovery import RecoveryController
from maci.errors import MaciError
from maci.logs import configure_logging
from maci.models.poll import PollSizing, VoteCommand
from maci.persistence.checkpoint_store import CheckpointStore
from maci.providers.local import local_providers
from maci.scenario.engine import ScenarioExecutionEngine
from maci.scenario.loader import load_suites


DEFAULT_CONFIG = Path(__file__).resolve().parents[2] / "config"

Handler = Callable[[argparse.Namespace, CoordinatorConfig], Awaitable[int]]


def _make_orchestrator(config: CoordinatorConfig) -> PhaseOrchestrator:
    """Create an orchestrator with durable checkpoints and chain ledger."""
    data_dir = Path(config.data_dir)
    data_dir.mkdir(parents=True, exist_ok=True)
    store = CheckpointStore(storage_dir=data_dir / "checkpoints")
    providers = local_providers(config, chain_path=data_dir / "chain.json")
    return PhaseOrchestrator(providers, store, config)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


def _write_tally(path: Optional[Path], data: dict[str, Any]) -> None:
    if path is None:
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")


async def cmd_gen_maci_keypair(args: argparse.Namespace, config: CoordinatorConfig) -> int:
    keypair = await local_providers(config).keys.generate_keypair()
    _print_json({"privkey": keypair.privkey, "pubkey": keypair.pubkey})
    return 0


async def cmd_gen_maci_pubkey(args: argparse.Namespace, config: CoordinatorConfig) -> int:
    pubkey = await local_providers(config).keys.derive_pubkey(args.privkey)
    _print_json({"pubkey": pubkey})
    return 0


async def cmd_create(args: argparse.Namespace, config: CoordinatorConfig) -> int:
    orch = _make_orchestrator(config)
    keys = await orch.generate_keypair(args.poll_id, privkey=args.privkey)
    sizing = PollSizing.from_capacities(args.max_users, args.max_vote_options, args.max_messages)
    cp = await orch.create_poll(keys.poll_id, sizing)
    output = {
        "poll_id": keys.poll_id,
        "coordinator_pubkey": keys.pubkey,
        "poll_address": cp.artifacts["poll_address"],
        "state_tree_depth": cp.artifacts["state_tree_depth"],
        "message_tree_depth": cp.artifacts["message_tree_depth"],
        "vote_option_tree_depth": cp.artifacts["vote_option_tree_depth"],
    }
    if args.privkey is None and keys.privkey is not None:
        output["coordinator_privkey"] = keys.privkey
    _print_json(output)
    return 0


async def cmd_signup(args: argparse.Namespace, config: CoordinatorConfig) -> int:
    orch = _make_orchestrator(config)
    record = await orch.signup(args.poll_id, args.pubkey, args.voice_credits)
    _print_json({"state_index": record.index, "voice_credits": record.payload["voice_credits"]})
    return 0


async def cmd_publish(args: argparse.Namespace, config: CoordinatorConfig) -> int:
    orch = _make_orchestrator(config)
    command = VoteCommand(
        privkey=args.privkey,
        state_index=args.state_index,
        vote_option_index=args.vote_option_index,
        new_vote_weight=args.new_vote_weight,
        nonce=args.nonce,
        new_pubkey=args.new_pubkey,
        salt=args.salt,
    )
    record = await orch.publish(args.poll_id, command)
    _print_json({"message_index": record.index})
    return 0


async def cmd_check_state_root(args: argparse.Namespace, config: CoordinatorConfig) -> int:
    orch = _make_orchestrator(config)
    root = await orch.check_state_root(args.poll_id, args.expected_root)
    _print_json({"state_root": root, "match": True})
    return 0


async def cmd_process(args: argparse.Namespace, config: CoordinatorConfig) -> int:
    orch = _make_orchestrator(config)
    cp = await orch.process(args.poll_id, privkey=args.privkey, timeout=args.timeout)
    _print_json({
        "state_root": cp.artifacts["state_root"],
        "valid_messages": cp.artifacts["valid_messages"],
        "invalid_messages": cp.artifacts["invalid_messages"],
        "unproven": cp.unproven,
    })
    return 0


async def cmd_tally(args: argparse.Namespace, config: CoordinatorConfig) -> int:
    orch = _make_orchestrator(config)
    cp = await orch.tally(args.poll_id, timeout=args.timeout)
    tally = {
        "poll_id": args.poll_id,
        "results": cp.artifacts["results"],
        "spent_voice_credits": cp.artifacts["spent_voice_credits"],
        "per_option_spent": cp.artifacts["per_option_spent"],
        "tally_commitment": cp.artifacts["tally_commitment"],
        "unproven": cp.unproven,
    }
    _write_tally(args.tally_file, tally)
    _print_json(tally)
    return 0


async def cmd_verify(args: argparse.Namespace, config: CoordinatorConfig) -> int:
    orch = _make_orchestrator(config)
    cp = await orch.verify(args.poll_id, timeout=args.timeout)
    _print_json({"verified": True, "tally_commitment": cp.artifacts["tally_commitment"]})
    return 0


async def cmd_process_and_tally_without_proofs(
    args: argparse.Namespace, config: CoordinatorConfig,
) -> int:
    orch = _make_orchestrator(config)
    result = await FastPathRunner(orch).run(args.poll_id, privkey=args.privkey, timeout=args.timeout)
    tally = result.to_dict()
    _write_tally(args.tally_file, tally)
    _print_json(tally)
    return 0


async def cmd_coordinator_reset(args: argparse.Namespace, config: CoordinatorConfig) -> int:
    orch = _make_orchestrator(config)
    report = await RecoveryController(orch).reset(args.poll_id)
    _print_json(report.to_dict())
    return 0


async def cmd_run_suite(args: argparse.Namespace, config: CoordinatorConfig) -> int:
    suites = load_suites(args.suites)
    if args.suite is not None:
        suites = [s for s in suites if s.description == args.suite]
        if not suites:
            print(f"No suite named {args.suite!r}", file=sys.stderr)
            return 1
    # Suites run against an in-memory store and chain.
    orch = PhaseOrchestrator(local_providers(config), CheckpointStore(), config)
    results = await ScenarioExecutionEngine(orch).execute_all(suites)
    report = [r.to_dict() for r in results]
    if args.output is not None:
        args.output.write_text(json.dumps(report, indent=2), encoding="utf-8")
    _print_json(report)
    return 0 if all(r.passed for r in results) else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="maci",
        description="MACI coordinator — poll lifecycle CLI",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG,
        help="Path to config directory (default: config/)",
    )
    parser.add_argument("--data-dir", help="Override the configured data directory")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override the configured log level",
    )
    sub = parser.add_subparsers(dest="command")

    def poll_parser(name: str, help_text: str) -> argparse.ArgumentParser:
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--poll-id", required=True, help="Poll ID")
        return p

    # genMaciKeypair / genMaciPubkey
    sub.add_parser("genMaciKeypair", help="Generate a MACI keypair")
    p_pub = sub.add_parser("genMaciPubkey", help="Derive the public key of a private key")
    p_pub.add_argument("--privkey", required=True, help="Serialized private key")

    # create
    p_create = sub.add_parser("create", help="Generate coordinator keys and create a poll")
    p_create.add_argument("--poll-id", help="Poll ID (default: generated)")
    p_create.add_argument("--privkey", help="Coordinator private key (default: generated)")
    p_create.add_argument("--max-users", type=int, required=True, help="Maximum voters")
    p_create.add_argument("--max-messages", type=int, help="Maximum messages (default: max users)")
    p_create.add_argument("--max-vote-options", type=int, required=True, help="Vote options")

    # signup
    p_signup = poll_parser("signup", help_text="Sign up a voter")
    p_signup.add_argument("--pubkey", required=True, help="Voter public key")
    p_signup.add_argument("--voice-credits", type=int, help="Voice credits (default: config)")

    # publish
    p_publish = poll_parser("publish", help_text="Publish an encrypted vote")
    p_publish.add_argument("--privkey", required=True, help="Voter private key")
    p_publish.add_argument("--state-index", type=int, required=True)
    p_publish.add_argument("--vote-option-index", type=int, required=True)
    p_publish.add_argument("--new-vote-weight", type=int, required=True)
    p_publish.add_argument("--nonce", type=int, required=True)
    p_publish.add_argument("--new-pubkey", help="Rotate the voter key")
    p_publish.add_argument("--salt")

    # checkStateRoot
    p_root = poll_parser("checkStateRoot", help_text="Compare the on-chain state root")
    p_root.add_argument("--expected-root", help="Expected root (default: from signups)")

    # process / tally / verify / fast path
    p_process = poll_parser("process", help_text="Process messages")
    p_process.add_argument("--privkey", help="Coordinator private key")
    p_process.add_argument("--timeout", type=float)

    p_tally = poll_parser("tally", help_text="Tally votes")
    p_tally.add_argument("--timeout", type=float)
    p_tally.add_argument("--tally-file", type=Path, help="Write the tally as JSON")

    p_verify = poll_parser("verify", help_text="Verify processing and tally proofs")
    p_verify.add_argument("--timeout", type=float)

    p_fast = poll_parser(
        "processAndTallyWithoutProofs", help_text="Process and tally without proofs",
    )
    p_fast.add_argument("--privkey", help="Coordinator private key")
    p_fast.add_argument("--timeout", type=float)
    p_fast.add_argument("--tally-file", type=Path, help="Write the tally as JSON")

    # coordinatorReset
    poll_parser("coordinatorReset", help_text="Discard uncommitted work for a poll")

    # runSuite
    p_suite = sub.add_parser("runSuite", help="Run scenario suites")
    p_suite.add_argument("--suites", type=Path, required=True, help="Suite file (JSON or YAML)")
    p_suite.add_argument("--suite", help="Only run the suite with this description")
    p_suite.add_argument("--output", type=Path, help="Write the report as JSON")

    return parser


COMMANDS: dict[str, Handler] = {
    "genMaciKeypair": cmd_gen_maci_keypair,
    "genMaciPubkey": cmd_gen_maci_pubkey,
    "create": cmd_create,
    "signup": cmd_signup,
    "publish": cmd_publish,
    "checkStateRoot": cmd_check_state_root,
    "process": cmd_process,
    "tally": cmd_tally,
    "verify": cmd_verify,
    "processAndTallyWithoutProofs": cmd_process_and_tally_without_proofs,
    "coordinatorReset": cmd_coordinator_reset,
    "runSuite": cmd_run_suite,
}


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    handler = COMMANDS.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    try:
        config = CoordinatorConfig.from_config_dir(args.config)
        if args.data_dir:
            config = dataclasses.replace(config, data_dir=args.data_dir)
        configure_logging(args.log_level or config.log_level)
        return asyncio.run(handler(args, config))
    except MaciError as exc:
        print(f"{exc.kind}: {exc}", file=sys.stderr)
        return 1
    except ValueError as exc:
        print(f"{type(exc).__name__}: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
