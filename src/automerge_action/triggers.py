from __future__ import annotations

import logging
from typing import cast

from automerge_action.config import AutomergeConfig, GitHubContext
from automerge_action.github_gateway import GitHubGateway
from automerge_action.observability import log_event


LOGGER = logging.getLogger("automerge_action.triggers")

_PULL_REQUEST_EVENTS = frozenset({"pull_request", "pull_request_target"})
_PULL_REQUEST_ACTIONS = frozenset(
    {
        "opened",
        "edited",
        "labeled",
        "unlabeled",
        "ready_for_review",
        "reopened",
        "synchronize",
    }
)
_SWEEP_EVENTS = frozenset({"schedule", "workflow_dispatch", "repository_dispatch", "push"})


def resolve_pull_request_numbers(
    context: GitHubContext,
    config: AutomergeConfig,
    github: GitHubGateway,
) -> tuple[int, ...]:
    if config.pull_request is not None:
        numbers: tuple[int, ...] = (config.pull_request,)
        source = "input"
    else:
        numbers = _numbers_for_event(context, github)
        source = context.event_name or "<none>"
    log_event(
        LOGGER,
        "pull_requests_resolved",
        source=source,
        pr_numbers=numbers,
    )
    return numbers


def _numbers_for_event(context: GitHubContext, github: GitHubGateway) -> tuple[int, ...]:
    event_name = context.event_name
    payload = context.payload
    raw_action = payload.get("action")
    action = raw_action if isinstance(raw_action, str) else None

    if event_name == "pull_request_review":
        return _pull_request_review_numbers(payload)
    if event_name in _PULL_REQUEST_EVENTS:
        if action not in _PULL_REQUEST_ACTIONS:
            return _ignored(event_name, action)
        return _optional_number(_object_field(payload, "pull_request"))
    if event_name == "workflow_run":
        if action != "completed":
            return _ignored(event_name, action)
        workflow_run = _object_field(payload, "workflow_run")
        if workflow_run is None:
            return ()
        return github.resolve_pull_requests_for_workflow_run(workflow_run)
    if event_name == "check_suite":
        if action != "completed":
            return _ignored(event_name, action)
        return _check_suite_numbers(payload, github)
    if event_name == "status":
        sha = payload.get("sha")
        if not isinstance(sha, str) or not sha:
            return ()
        return github.list_pull_requests_for_commit(sha)
    if event_name in _SWEEP_EVENTS:
        return github.list_open_pull_requests()

    log_event(LOGGER, "unsupported_event", level=logging.WARNING, event_name=event_name)
    return ()


def _pull_request_review_numbers(payload: dict[str, object]) -> tuple[int, ...]:
    action = payload.get("action")
    review = _object_field(payload, "review")
    review_state = review.get("state") if review is not None else None
    if action != "submitted" or not isinstance(review_state, str):
        return _ignored("pull_request_review", action)
    if review_state.lower() != "approved":
        return _ignored("pull_request_review", action, review_state=review_state)
    return _optional_number(_object_field(payload, "pull_request"))


def _check_suite_numbers(payload: dict[str, object], github: GitHubGateway) -> tuple[int, ...]:
    check_suite = _object_field(payload, "check_suite")
    if check_suite is None:
        return ()
    linked = check_suite.get("pull_requests")
    numbers: list[int] = []
    if isinstance(linked, list):
        for raw in linked:
            if isinstance(raw, dict):
                numbers.extend(_optional_number(cast(dict[str, object], raw)))
    if numbers:
        return tuple(dict.fromkeys(numbers))
    head_sha = check_suite.get("head_sha")
    if isinstance(head_sha, str) and head_sha:
        return github.list_pull_requests_for_commit(head_sha)
    return ()


def _ignored(event_name: str, action: object, **fields: object) -> tuple[int, ...]:
    log_event(LOGGER, "event_ignored", event_name=event_name, action=action, **fields)
    return ()


def _object_field(payload: dict[str, object], key: str) -> dict[str, object] | None:
    value = payload.get(key)
    if not isinstance(value, dict):
        return None
    return cast(dict[str, object], value)


def _optional_number(pull_request: dict[str, object] | None) -> tuple[int, ...]:
    if pull_request is None:
        return ()
    number = pull_request.get("number")
    if isinstance(number, bool) or not isinstance(number, int):
        return ()
    return (number,)
