from __future__ import annotations

import json
from pathlib import Path

import pytest

from automerge_action.config import AutomergeConfig, ConfigError, GitHubContext, load_config


def _inputs(**values: str) -> dict[str, str]:
    environ = {"INPUT_TOKEN": "deadbeefcafebabedeadbeefcafebabedeadbeef"}
    for key, value in values.items():
        environ[f"INPUT_{key.upper().replace('_', '-')}"] = value
    return environ


def test_load_config_applies_defaults() -> None:
    loaded = load_config(_inputs())

    assert loaded == AutomergeConfig(token="deadbeefcafebabedeadbeefcafebabedeadbeef")
    assert loaded.merge_method is None
    assert loaded.do_not_merge_labels == ()
    assert loaded.required_labels == ()
    assert loaded.pull_request is None
    assert loaded.pull_request_author_associations == frozenset()
    assert loaded.review_author_associations == frozenset({"COLLABORATOR", "MEMBER", "OWNER"})
    assert loaded.minimum_approvals == 1
    assert loaded.dry_run is False
    assert loaded.squash_title is False


def test_load_config_parses_every_input() -> None:
    loaded = load_config(
        _inputs(
            merge_method="Squash",
            do_not_merge_labels="never-merge, blocked,,never-merge",
            required_labels="automerge",
            pull_request="1234",
            pull_request_author_associations="owner,member",
            review_author_associations="OWNER",
            minimum_approvals="2",
            dry_run="true",
            squash_title="TRUE",
            squash_commit_title="$title (#$number)",
            squash_commit_message="Merged #$number",
        )
    )

    assert loaded.merge_method == "squash"
    assert loaded.do_not_merge_labels == ("never-merge", "blocked")
    assert loaded.required_labels == ("automerge",)
    assert loaded.pull_request == 1234
    assert loaded.pull_request_author_associations == frozenset({"OWNER", "MEMBER"})
    assert loaded.review_author_associations == frozenset({"OWNER"})
    assert loaded.minimum_approvals == 2
    assert loaded.dry_run is True
    assert loaded.squash_title is True
    assert loaded.squash_commit_title == "$title (#$number)"
    assert loaded.squash_commit_message == "Merged #$number"


def test_load_config_treats_blank_inputs_as_unset() -> None:
    loaded = load_config(_inputs(pull_request="  ", merge_method=""))
    assert loaded.pull_request is None
    assert loaded.merge_method is None


def test_load_config_requires_token() -> None:
    with pytest.raises(ConfigError, match="token is required"):
        load_config({})
    with pytest.raises(ConfigError, match="token is required"):
        load_config({"INPUT_TOKEN": "   "})


@pytest.mark.parametrize("value", ["abc", "1.5", "0", "-3"])
def test_load_config_rejects_invalid_pull_request(value: str) -> None:
    with pytest.raises(ConfigError, match="pull-request"):
        load_config(_inputs(pull_request=value))


def test_load_config_rejects_invalid_minimum_approvals() -> None:
    with pytest.raises(ConfigError, match="minimum-approvals"):
        load_config(_inputs(minimum_approvals="abc"))
    with pytest.raises(ConfigError, match="minimum-approvals"):
        load_config(_inputs(minimum_approvals="-1"))


def test_load_config_rejects_unknown_merge_method() -> None:
    with pytest.raises(ConfigError, match="merge-method must be one of: merge, squash, rebase"):
        load_config(_inputs(merge_method="fast-forward"))


def test_load_config_rejects_non_boolean() -> None:
    with pytest.raises(ConfigError, match="dry-run must be a boolean"):
        load_config(_inputs(dry_run="yes"))


def test_required_labels_must_not_be_do_not_merge_labels() -> None:
    with pytest.raises(ConfigError, match="automerge"):
        load_config(_inputs(required_labels="automerge", do_not_merge_labels="automerge"))
    with pytest.raises(ConfigError):
        AutomergeConfig(token="t", required_labels=("a",), do_not_merge_labels=("a", "b"))


@pytest.mark.parametrize("label", ["do not merge", "dont-merge", "Do Not Merge", "DONT_MERGE"])
def test_required_labels_must_not_look_like_do_not_merge(label: str) -> None:
    with pytest.raises(ConfigError, match="both required and do-not-merge"):
        load_config(_inputs(required_labels=label))


def test_required_label_similar_to_do_not_merge_is_allowed() -> None:
    loaded = load_config(_inputs(required_labels="merge", do_not_merge_labels="blocked"))
    assert loaded.required_labels == ("merge",)


def test_context_from_environ_reads_event_payload(tmp_path: Path) -> None:
    event_path = tmp_path / "event.json"
    event_path.write_text(json.dumps({"action": "labeled", "pull_request": {"number": 3}}))

    context = GitHubContext.from_environ(
        {
            "GITHUB_REPOSITORY": "octo/widgets",
            "GITHUB_EVENT_NAME": "pull_request",
            "GITHUB_EVENT_PATH": str(event_path),
        }
    )

    assert context.owner == "octo"
    assert context.name == "widgets"
    assert context.full_name == "octo/widgets"
    assert context.event_name == "pull_request"
    assert context.payload == {"action": "labeled", "pull_request": {"number": 3}}


def test_context_from_environ_tolerates_missing_event_file(tmp_path: Path) -> None:
    context = GitHubContext.from_environ(
        {
            "GITHUB_REPOSITORY": "octo/widgets",
            "GITHUB_EVENT_NAME": "schedule",
            "GITHUB_EVENT_PATH": str(tmp_path / "missing.json"),
        }
    )
    assert context.payload == {}


@pytest.mark.parametrize("repository", ["", "octo", "octo/", "/widgets", "a/b/c"])
def test_context_from_environ_requires_repository(repository: str) -> None:
    with pytest.raises(ConfigError, match="GITHUB_REPOSITORY"):
        GitHubContext.from_environ({"GITHUB_REPOSITORY": repository})


def test_context_from_environ_rejects_bad_payload(tmp_path: Path) -> None:
    event_path = tmp_path / "event.json"
    event_path.write_text("[1, 2]")
    with pytest.raises(ConfigError, match="JSON object"):
        GitHubContext.from_environ(
            {"GITHUB_REPOSITORY": "octo/widgets", "GITHUB_EVENT_PATH": str(event_path)}
        )

    event_path.write_text("{not json")
    with pytest.raises(ConfigError, match="valid JSON"):
        GitHubContext.from_environ(
            {"GITHUB_REPOSITORY": "octo/widgets", "GITHUB_EVENT_PATH": str(event_path)}
        )
