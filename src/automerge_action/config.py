from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
import json
from pathlib import Path
from typing import cast

from automerge_action.labels import is_do_not_merge_label
from automerge_action.models import MERGE_METHODS, MergeMethod
from automerge_action.reviews import DEFAULT_REVIEW_AUTHOR_ASSOCIATIONS


@dataclass(frozen=True)
class AutomergeConfig:
    token: str
    merge_method: MergeMethod | None = None
    do_not_merge_labels: tuple[str, ...] = ()
    required_labels: tuple[str, ...] = ()
    pull_request: int | None = None
    pull_request_author_associations: frozenset[str] = frozenset()
    review_author_associations: frozenset[str] = DEFAULT_REVIEW_AUTHOR_ASSOCIATIONS
    minimum_approvals: int = 1
    dry_run: bool = False
    squash_title: bool = False
    squash_commit_title: str | None = None
    squash_commit_message: str | None = None

    def __post_init__(self) -> None:
        overlap = {
            label
            for label in self.required_labels
            if is_do_not_merge_label(label, self.do_not_merge_labels)
        }
        if overlap:
            joined = ", ".join(sorted(overlap))
            raise ConfigError(
                f"Labels cannot be both required and do-not-merge labels: {joined}"
            )
        if self.minimum_approvals < 0:
            raise ConfigError("minimum-approvals must be >= 0")


@dataclass(frozen=True)
class GitHubContext:
    owner: str
    name: str
    event_name: str
    payload: dict[str, object] = field(default_factory=dict)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @classmethod
    def from_environ(cls, environ: Mapping[str, str]) -> GitHubContext:
        repository = environ.get("GITHUB_REPOSITORY", "").strip()
        owner, sep, name = repository.partition("/")
        if not sep or not owner or not name or "/" in name:
            raise ConfigError("GITHUB_REPOSITORY is required and must look like owner/name")
        event_name = environ.get("GITHUB_EVENT_NAME", "").strip()
        event_path = environ.get("GITHUB_EVENT_PATH", "").strip()
        payload = _load_event_payload(Path(event_path)) if event_path else {}
        return cls(owner=owner, name=name, event_name=event_name, payload=payload)


class ConfigError(ValueError):
    pass


def load_config(environ: Mapping[str, str]) -> AutomergeConfig:
    """Read action inputs the way the Actions runner exposes them (``INPUT_<NAME>``)."""
    inputs = _action_inputs(environ)
    return AutomergeConfig(
        token=_require_str(inputs, "token"),
        merge_method=_optional_merge_method(inputs, "merge-method"),
        do_not_merge_labels=_list_of_str(inputs, "do-not-merge-labels"),
        required_labels=_list_of_str(inputs, "required-labels"),
        pull_request=_optional_positive_int(inputs, "pull-request"),
        pull_request_author_associations=_associations_with_default(
            inputs, "pull-request-author-associations", frozenset()
        ),
        review_author_associations=_associations_with_default(
            inputs, "review-author-associations", DEFAULT_REVIEW_AUTHOR_ASSOCIATIONS
        ),
        minimum_approvals=_non_negative_int_with_default(inputs, "minimum-approvals", 1),
        dry_run=_bool_with_default(inputs, "dry-run", False),
        squash_title=_bool_with_default(inputs, "squash-title", False),
        squash_commit_title=_optional_str(inputs, "squash-commit-title"),
        squash_commit_message=_optional_str(inputs, "squash-commit-message"),
    )


def _action_inputs(environ: Mapping[str, str]) -> dict[str, str]:
    inputs: dict[str, str] = {}
    for key, value in environ.items():
        if not key.startswith("INPUT_"):
            continue
        name = key[len("INPUT_") :].lower().replace("_", " ")
        stripped = value.strip()
        # The runner exports every declared input; empty means "not provided".
        if stripped:
            inputs[name] = stripped
    return inputs


def _load_event_payload(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as fh:
            payload = json.load(fh)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"GITHUB_EVENT_PATH does not contain valid JSON: {path}") from exc
    if not isinstance(payload, dict):
        raise ConfigError("GITHUB_EVENT_PATH must contain a JSON object")
    return cast(dict[str, object], payload)


def _require_str(data: dict[str, str], key: str) -> str:
    value = data.get(key)
    if not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _optional_str(data: dict[str, str], key: str) -> str | None:
    return data.get(key)


def _optional_positive_int(data: dict[str, str], key: str) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    try:
        parsed = int(value)
    except ValueError as exc:
        raise ConfigError(f"{key} must be an integer if provided, got {value!r}") from exc
    if parsed < 1:
        raise ConfigError(f"{key} must be an integer >= 1 if provided")
    return parsed


def _non_negative_int_with_default(data: dict[str, str], key: str, default: int) -> int:
    value = data.get(key)
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError as exc:
        raise ConfigError(f"{key} must be an integer, got {value!r}") from exc
    if parsed < 0:
        raise ConfigError(f"{key} must be an integer >= 0")
    return parsed


def _bool_with_default(data: dict[str, str], key: str, default: bool) -> bool:
    value = data.get(key)
    if value is None:
        return default
    normalized = value.lower()
    if normalized == "true":
        return True
    if normalized == "false":
        return False
    raise ConfigError(f"{key} must be a boolean (true or false), got {value!r}")


def _list_of_str(data: dict[str, str], key: str) -> tuple[str, ...]:
    value = data.get(key)
    if value is None:
        return ()
    out: list[str] = []
    for item in value.split(","):
        normalized = item.strip()
        if normalized and normalized not in out:
            out.append(normalized)
    return tuple(out)


def _associations_with_default(
    data: dict[str, str], key: str, default: frozenset[str]
) -> frozenset[str]:
    values = _list_of_str(data, key)
    if not values:
        return default
    return frozenset(value.upper() for value in values)


def _optional_merge_method(data: dict[str, str], key: str) -> MergeMethod | None:
    value = data.get(key)
    if value is None:
        return None
    normalized = value.lower()
    if normalized not in MERGE_METHODS:
        raise ConfigError(f"{key} must be one of: {', '.join(MERGE_METHODS)}")
    return cast(MergeMethod, normalized)
