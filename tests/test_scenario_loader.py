"""Tests for scenario suite loading and validation."""

import json
from pathlib import Path
from typing import Any

import pytest

from maci.errors import ScenarioValidationError
from maci.scenario import commands as cmd
from maci.scenario.commands import Reference, decode_command
from maci.scenario.loader import load_suites, parse_suite, parse_suites


SUITES_DIR = Path(__file__).resolve().parent.parent / "suites"


def _suite(*steps: dict, **extra: Any) -> dict:
    return {"description": "under test", "steps": list(steps), **extra}


class TestDecodeCommand:
    def test_camel_case_arguments(self) -> None:
        command, refs = decode_command(
            "createPoll", {"maxUsers": 4, "maxVoteOptions": 25, "maxMessages": 8},
        )
        assert command == cmd.CreatePoll(max_users=4, max_vote_options=25, max_messages=8)
        assert refs == {}

    def test_alias(self) -> None:
        command, _ = decode_command("create", {"maxUsers": 2, "maxVoteOptions": 2})
        assert isinstance(command, cmd.CreatePoll)
        assert command.command == "createPoll"

    def test_references_left_for_run_time(self) -> None:
        command, refs = decode_command("publish", {
            "privkey": "$alice.privkey",
            "stateIndex": "$alice.stateIndex",
            "voteOptionIndex": 0,
            "newVoteWeight": 1,
            "nonce": 1,
        })
        assert command.privkey is None
        assert refs == {
            "privkey": Reference("alice", "privkey"),
            "state_index": Reference("alice", "stateIndex"),
        }

    def test_no_args(self) -> None:
        command, _ = decode_command("coordinatorReset", None)
        assert command == cmd.CoordinatorReset()

    @pytest.mark.parametrize("name,args,match", [
        ("launchRockets", {}, "unknown command"),
        ("createPoll", {"maxUsers": 4}, "missing argument 'maxVoteOptions'"),
        ("createPoll", {"maxUsers": "4", "maxVoteOptions": 5}, "invalid value"),
        ("createPoll", {"maxUsers": True, "maxVoteOptions": 5}, "invalid value"),
        ("createPoll", {"maxUsers": 4, "maxVoteOptions": 5, "colour": "red"}, "unknown argument"),
        ("signup", ["pubkey"], "must be a mapping"),
        ("tally", {"timeout": "soon"}, "invalid value"),
    ])
    def test_rejections(self, name: str, args: Any, match: str) -> None:
        with pytest.raises(ScenarioValidationError, match=match):
            decode_command(name, args)

    def test_float_timeout_accepts_int(self) -> None:
        command, _ = decode_command("process", {"timeout": 30})
        assert command.timeout == 30


class TestParseSuite:
    def test_default_step_names(self) -> None:
        suite = parse_suite(_suite({"command": "generateKeypair"}, {"command": "genMaciKeypair"}))
        assert [s.name for s in suite.steps] == ["generateKeypair-0", "genMaciKeypair-1"]

    def test_step_fields(self) -> None:
        suite = parse_suite(_suite(
            {"name": "keys", "command": "generateKeypair", "prerequisite": True},
            {"name": "poll", "command": "createPoll", "requires": "keys",
             "args": {"maxUsers": 4, "maxVoteOptions": 5}, "expect": {"stateTreeDepth": 2}},
            pollId="my-poll",
        ))
        keys, poll = suite.steps
        assert keys.prerequisite and not poll.prerequisite
        assert poll.requires == ("keys",)
        assert poll.expect == {"stateTreeDepth": 2}
        assert poll.command_name == "createPoll"
        assert suite.poll_id == "my-poll"

    @pytest.mark.parametrize("steps,match", [
        ([{"command": "verify", "bogus": 1}], "unknown key"),
        ([{"name": "x"}], "missing command"),
        ([{"name": "has space", "command": "verify"}], "invalid step name"),
        ([{"name": "a", "command": "verify"}, {"name": "a", "command": "tally"}], "duplicate"),
        ([{"command": "verify", "expect": {"luck": True}}], "unknown assertion"),
        ([{"command": "verify", "expect": {"error": 3}}], "error kind"),
        ([{"command": "verify", "expect": {"error": "ValueError"}}],
         "unknown error kind 'ValueError'"),
        ([{"command": "verify", "expect": {"error": "IllegalTransition"}}], "unknown error kind"),
        ([{"command": "verify", "expect": "verified"}], "expect must be a mapping"),
        ([{"command": "verify", "requires": ["later"]}, {"name": "later", "command": "tally"}],
         "not an earlier step"),
        ([{"command": "verify", "requires": [1]}], "list of step names"),
        ([{"command": "verify", "prerequisite": "yes"}], "prerequisite"),
        ([{"name": "p", "command": "genMaciPubkey", "args": {"privkey": "$p.privkey"}}],
         "does not name an earlier step"),
        ([{"name": "p", "command": "publish", "args": {
            "privkey": "$later.privkey", "stateIndex": 1, "voteOptionIndex": 0,
            "newVoteWeight": 1, "nonce": 1,
        }}, {"name": "later", "command": "signup"}], "does not name an earlier step"),
        ([{"name": "s", "command": "signup", "expect": {"stateIndex": "$ghost.stateIndex"}}],
         "does not name an earlier step"),
        (["verify"], "must be a mapping"),
    ])
    def test_step_rejections(self, steps: list, match: str) -> None:
        with pytest.raises(ScenarioValidationError, match=match):
            parse_suite(_suite(*steps))

    @pytest.mark.parametrize("kind", ["MaciError", "ProviderError", "NoProofAvailableError"])
    def test_error_kinds_include_base_classes(self, kind: str) -> None:
        suite = parse_suite(_suite({"command": "verify", "expect": {"error": kind}}))
        assert suite.steps[0].expect == {"error": kind}

    @pytest.mark.parametrize("raw,match", [
        ({"steps": [{"command": "verify"}]}, "missing description"),
        ({"description": "x", "steps": []}, "non-empty"),
        ({"description": "x", "steps": [{"command": "verify"}], "owner": "me"}, "unknown key"),
        ({"description": "x", "pollId": "../escape", "steps": [{"command": "verify"}]}, "suite"),
        ("not a suite", "must be a mapping"),
    ])
    def test_suite_rejections(self, raw: Any, match: str) -> None:
        with pytest.raises(ScenarioValidationError, match=match):
            parse_suite(raw)


class TestParseSuites:
    def test_accepts_all_shapes(self) -> None:
        one = _suite({"command": "generateKeypair"})
        assert len(parse_suites({"suites": [one, one]})) == 2
        assert len(parse_suites(one)) == 1
        assert len(parse_suites([one])) == 1

    @pytest.mark.parametrize("data", [[], {"suites": []}, None, "suites"])
    def test_rejects_empty(self, data: Any) -> None:
        with pytest.raises(ScenarioValidationError):
            parse_suites(data)


class TestLoadSuites:
    def test_bundled_json(self) -> None:
        suites = load_suites(SUITES_DIR / "suites.json")
        assert len(suites) == 4
        assert all(suite.steps for suite in suites)

    def test_bundled_yaml(self) -> None:
        (suite,) = load_suites(SUITES_DIR / "end_to_end.yaml")
        assert suite.poll_id == "e2e-quadratic"
        assert suite.steps[0].prerequisite
        assert [s.command_name for s in suite.steps][-3:] == ["process", "tally", "verify"]

    def test_yaml_and_json_agree(self, tmp_path: Path) -> None:
        data = {"suites": [_suite(
            {"name": "keys", "command": "generateKeypair"},
            {"name": "poll", "command": "createPoll", "args": {"maxUsers": 4, "maxVoteOptions": 5}},
        )]}
        (tmp_path / "s.json").write_text(json.dumps(data))
        (tmp_path / "s.yml").write_text(
            "suites:\n"
            "  - description: under test\n"
            "    steps:\n"
            "      - {name: keys, command: generateKeypair}\n"
            "      - name: poll\n"
            "        command: createPoll\n"
            "        args: {maxUsers: 4, maxVoteOptions: 5}\n"
        )
        assert load_suites(tmp_path / "s.json") == load_suites(tmp_path / "s.yml")

    def test_unparseable_file(self, tmp_path: Path) -> None:
        path = tmp_path / "broken.yaml"
        path.write_text("suites: [unclosed\n")
        with pytest.raises(ScenarioValidationError, match="cannot parse"):
            load_suites(path)
        bad_json = tmp_path / "broken.json"
        bad_json.write_text("{")
        with pytest.raises(ScenarioValidationError, match="cannot parse"):
            load_suites(bad_json)
