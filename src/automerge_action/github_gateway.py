from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import cast
from urllib.parse import quote, urlencode

from automerge_action.config import GitHubContext
from automerge_action.models import (
    MergeCapabilities,
    MergeMethod,
    MergeableState,
    PullRequest,
    PullRequestState,
    RequiredStatusChecks,
    Review,
)
from automerge_action.observability import log_event
from automerge_action.shell import run


LOGGER = logging.getLogger("automerge_action.github_gateway")
REVIEWS_PAGE_SIZE = 100
CHECK_RUNS_PAGE_SIZE = 100
_ACTIONS_GREEN_CONCLUSIONS = {"success", "neutral", "skipped"}


class GitHubApiError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class GitHubGateway:
    """Repository-scoped GitHub REST client driven through ``gh api``.

    Every call goes to the API; nothing is cached between calls so each
    evaluation attempt sees live pull request data.
    """

    owner: str
    name: str
    token: str

    @classmethod
    def for_context(cls, context: GitHubContext, token: str) -> GitHubGateway:
        return cls(owner=context.owner, name=context.name, token=token)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def get_pull_request(self, pr_number: int) -> PullRequest:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}"
        payload_obj = _as_object_dict(self._api_json("GET", path))
        if payload_obj is None:
            raise GitHubApiError("Unexpected GitHub response: expected object for pull request")

        head = _as_object_dict(payload_obj.get("head"))
        base = _as_object_dict(payload_obj.get("base"))
        if head is None or base is None:
            raise GitHubApiError("Unexpected GitHub response: missing pull request head/base")
        user_obj = _as_object_dict(payload_obj.get("user"))

        mergeable_state = MergeableState.parse(
            _as_optional_str(payload_obj.get("mergeable_state"))
        )

        pull_request = PullRequest(
            number=_as_int(payload_obj.get("number"), field="number"),
            title=_as_string(payload_obj.get("title")),
            merged=_as_bool(payload_obj.get("merged")),
            state=_as_pull_request_state(payload_obj.get("state")),
            author_login=_as_optional_str(user_obj.get("login")) if user_obj else None,
            author_association=_as_optional_str(payload_obj.get("author_association")),
            base_ref=_as_string(base.get("ref")),
            head_sha=_as_string(head.get("sha")),
            mergeable_state=mergeable_state,
            labels=_label_names(payload_obj.get("labels")),
        )
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request",
            pr_number=pull_request.number,
            mergeable_state=mergeable_state.value,
        )
        return pull_request

    def list_reviews(self, pr_number: int) -> tuple[Review, ...]:
        # A single page only; callers treat a full page as an overflow.
        query = urlencode({"per_page": REVIEWS_PAGE_SIZE})
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/reviews?{query}"
        payload = self._api_json("GET", path)
        if not isinstance(payload, list):
            raise GitHubApiError("Unexpected GitHub response: expected list of reviews")

        reviews: list[Review] = []
        for item in payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            user_obj = _as_object_dict(item_obj.get("user"))
            reviews.append(
                Review(
                    review_id=_as_int(item_obj.get("id"), field="id"),
                    author_login=_as_optional_str(user_obj.get("login")) if user_obj else None,
                    author_association=_as_optional_str(item_obj.get("author_association")),
                    state=_as_string(item_obj.get("state")),
                    submitted_at=_as_optional_str(item_obj.get("submitted_at")),
                    commit_id=_as_optional_str(item_obj.get("commit_id")),
                )
            )
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_reviews",
            pr_number=pr_number,
            count=len(reviews),
        )
        return tuple(reviews)

    def get_required_status_checks(self, branch: str) -> RequiredStatusChecks:
        """Required check contexts for ``branch``.

        Repository rulesets win when they name any required check; the
        classic branch protection settings are only consulted otherwise.
        """
        ruleset_contexts = self._ruleset_required_contexts(branch)
        if ruleset_contexts:
            checks = RequiredStatusChecks(contexts=ruleset_contexts, source="rulesets")
        else:
            protection_contexts = self._protection_required_contexts(branch)
            checks = RequiredStatusChecks(
                contexts=protection_contexts,
                source="protection" if protection_contexts else "none",
            )
        log_event(
            LOGGER,
            "github_read",
            endpoint="required_status_checks",
            branch=branch,
            source=checks.source,
            count=checks.count,
        )
        return checks

    def required_checks_passed(self, head_sha: str, contexts: tuple[str, ...]) -> bool:
        green: set[str] = set()

        latest_runs: dict[str, tuple[int, dict[str, object]]] = {}
        for item_obj in self._list_check_runs(head_sha):
            run_name = _as_string(item_obj.get("name"))
            run_id = _as_int(item_obj.get("id"), field="id")
            existing = latest_runs.get(run_name)
            if existing is None or existing[0] < run_id:
                latest_runs[run_name] = (run_id, item_obj)
        for run_name, (_, run_obj) in latest_runs.items():
            status = _normalize_optional_lower_str(run_obj.get("status"))
            conclusion = _normalize_optional_lower_str(run_obj.get("conclusion"))
            if status == "completed" and conclusion in _ACTIONS_GREEN_CONCLUSIONS:
                green.add(run_name)

        status_path = f"/repos/{self.owner}/{self.name}/commits/{head_sha}/status"
        status_obj = _as_object_dict(self._api_json("GET", status_path))
        if status_obj is None:
            raise GitHubApiError("Unexpected GitHub response: expected object for commit status")
        statuses = status_obj.get("statuses")
        if isinstance(statuses, list):
            for item in statuses:
                item_obj = _as_object_dict(item)
                if item_obj is None:
                    continue
                if _normalize_optional_lower_str(item_obj.get("state")) == "success":
                    green.add(_as_string(item_obj.get("context")))

        missing = tuple(context for context in contexts if context not in green)
        log_event(
            LOGGER,
            "github_read",
            endpoint="required_checks_status",
            head_sha=head_sha,
            required_count=len(contexts),
            missing=missing,
        )
        return not missing

    def list_open_pull_requests(self) -> tuple[int, ...]:
        return tuple(number for number, _ in self._list_open_pull_request_heads())

    def list_pull_requests_for_commit(self, sha: str) -> tuple[int, ...]:
        path = f"/repos/{self.owner}/{self.name}/commits/{sha}/pulls?per_page=100"
        payload = self._api_json("GET", path)
        if not isinstance(payload, list):
            raise GitHubApiError("Unexpected GitHub response: expected list of pull requests")
        numbers: list[int] = []
        for item in payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            if _as_string(item_obj.get("state")).lower() != "open":
                continue
            numbers.append(_as_int(item_obj.get("number"), field="number"))
        log_event(
            LOGGER,
            "github_read",
            endpoint="commit_pull_requests",
            sha=sha,
            count=len(numbers),
        )
        return tuple(numbers)

    def resolve_pull_requests_for_workflow_run(
        self, workflow_run: dict[str, object]
    ) -> tuple[int, ...]:
        numbers = _pull_request_numbers(workflow_run.get("pull_requests"))
        if numbers:
            return numbers
        # Runs for pull requests from forks carry no pull_requests entries.
        head_sha = _as_string(workflow_run.get("head_sha"))
        if not head_sha:
            return ()
        matched = tuple(
            number for number, sha in self._list_open_pull_request_heads() if sha == head_sha
        )
        log_event(
            LOGGER,
            "workflow_run_resolved_by_head_sha",
            head_sha=head_sha,
            count=len(matched),
        )
        return matched

    def get_merge_capabilities(self) -> MergeCapabilities:
        path = f"/repos/{self.owner}/{self.name}"
        payload_obj = _as_object_dict(self._api_json("GET", path))
        if payload_obj is None:
            raise GitHubApiError("Unexpected GitHub response: expected object for repository")
        capabilities = MergeCapabilities(
            allow_merge_commit=_as_optional_bool(payload_obj.get("allow_merge_commit")),
            allow_squash_merge=_as_optional_bool(payload_obj.get("allow_squash_merge")),
            allow_rebase_merge=_as_optional_bool(payload_obj.get("allow_rebase_merge")),
        )
        log_event(LOGGER, "github_read", endpoint="repository")
        return capabilities

    def merge_pull_request(
        self,
        pr_number: int,
        *,
        head_sha: str,
        method: MergeMethod | None,
        commit_title: str | None = None,
        commit_message: str | None = None,
    ) -> None:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/merge"
        body: dict[str, object] = {"sha": head_sha}
        if method is not None:
            body["merge_method"] = method
        if commit_title is not None:
            body["commit_title"] = commit_title
        if commit_message is not None:
            body["commit_message"] = commit_message
        try:
            payload_obj = _as_object_dict(self._api_json("PUT", path, payload=body))
            if payload_obj is None or payload_obj.get("merged") is not True:
                message = _as_string(payload_obj.get("message")) if payload_obj else ""
                raise GitHubApiError(f"GitHub did not merge pull request: {message or '<empty>'}")
        except Exception as exc:
            log_event(
                LOGGER,
                "github_merge_failed",
                level=logging.ERROR,
                repo_full_name=self.full_name,
                pr_number=pr_number,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        log_event(
            LOGGER,
            "github_pr_merged",
            repo_full_name=self.full_name,
            pr_number=pr_number,
            method=method,
        )

    def _ruleset_required_contexts(self, branch: str) -> tuple[str, ...]:
        path = f"/repos/{self.owner}/{self.name}/rules/branches/{quote(branch, safe='')}"
        payload = self._api_json("GET", path, not_found_ok=True)
        if payload is None:
            return ()
        if not isinstance(payload, list):
            raise GitHubApiError("Unexpected GitHub response: expected list of branch rules")
        contexts: list[str] = []
        for item in payload:
            item_obj = _as_object_dict(item)
            if item_obj is None or item_obj.get("type") != "required_status_checks":
                continue
            parameters = _as_object_dict(item_obj.get("parameters"))
            if parameters is None:
                continue
            checks = parameters.get("required_status_checks")
            if not isinstance(checks, list):
                continue
            for check in checks:
                check_obj = _as_object_dict(check)
                if check_obj is None:
                    continue
                context = _as_string(check_obj.get("context"))
                if context and context not in contexts:
                    contexts.append(context)
        return tuple(contexts)

    def _protection_required_contexts(self, branch: str) -> tuple[str, ...]:
        path = f"/repos/{self.owner}/{self.name}/branches/{quote(branch, safe='')}"
        payload_obj = _as_object_dict(self._api_json("GET", path))
        if payload_obj is None:
            raise GitHubApiError("Unexpected GitHub response: expected object for branch")
        protection = _as_object_dict(payload_obj.get("protection"))
        if protection is None:
            return ()
        required = _as_object_dict(protection.get("required_status_checks"))
        if required is None:
            return ()

        contexts: list[str] = []
        raw_contexts = required.get("contexts")
        if isinstance(raw_contexts, list):
            for raw in raw_contexts:
                if isinstance(raw, str) and raw and raw not in contexts:
                    contexts.append(raw)
        raw_checks = required.get("checks")
        if isinstance(raw_checks, list):
            for raw in raw_checks:
                check_obj = _as_object_dict(raw)
                if check_obj is None:
                    continue
                context = _as_string(check_obj.get("context"))
                if context and context not in contexts:
                    contexts.append(context)
        return tuple(contexts)

    def _list_check_runs(self, head_sha: str) -> list[dict[str, object]]:
        runs: list[dict[str, object]] = []
        page = 1
        while True:
            query = urlencode({"per_page": CHECK_RUNS_PAGE_SIZE, "page": page})
            path = f"/repos/{self.owner}/{self.name}/commits/{head_sha}/check-runs?{query}"
            payload_obj = _as_object_dict(self._api_json("GET", path))
            if payload_obj is None:
                raise GitHubApiError("Unexpected GitHub response: expected object for check runs")
            page_runs = payload_obj.get("check_runs")
            if not isinstance(page_runs, list):
                raise GitHubApiError("Unexpected GitHub response: expected check_runs list")
            for item in page_runs:
                item_obj = _as_object_dict(item)
                if item_obj is not None:
                    runs.append(item_obj)
            if len(page_runs) < CHECK_RUNS_PAGE_SIZE:
                return runs
            page += 1

    def _list_open_pull_request_heads(self) -> list[tuple[int, str]]:
        query = urlencode({"state": "open", "per_page": "100"})
        path = f"/repos/{self.owner}/{self.name}/pulls?{query}"
        payload = self._api_json("GET", path)
        if not isinstance(payload, list):
            raise GitHubApiError("Unexpected GitHub response: expected list of pull requests")
        heads: list[tuple[int, str]] = []
        for item in payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            head = _as_object_dict(item_obj.get("head"))
            heads.append(
                (
                    _as_int(item_obj.get("number"), field="number"),
                    _as_string(head.get("sha")) if head else "",
                )
            )
        log_event(
            LOGGER,
            "github_read",
            endpoint="open_pull_requests",
            count=len(heads),
        )
        return heads

    def _api_json(
        self,
        method: str,
        path: str,
        payload: dict[str, object] | None = None,
        *,
        not_found_ok: bool = False,
    ) -> object:
        method_upper = method.upper()
        cmd = ["gh", "api", "--method", method_upper, "--include", path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)

        try:
            raw = run(
                cmd,
                input_text=stdin_payload,
                extra_env={"GH_TOKEN": self.token},
                check=False,
            )
        except OSError as exc:
            log_event(
                LOGGER,
                "github_request_failed",
                level=logging.ERROR,
                method=method_upper,
                path=path,
                error=str(exc),
            )
            raise GitHubApiError(
                f"GitHub API {method_upper} {path} could not run gh: {exc}"
            ) from exc
        try:
            status_code, _headers, body = _parse_http_response(raw)
        except GitHubApiError as exc:
            log_event(
                LOGGER,
                "github_request_failed",
                level=logging.ERROR,
                method=method_upper,
                path=path,
                error=str(exc),
                raw_preview=_preview_for_log(raw),
            )
            raise

        if status_code == 404 and not_found_ok:
            return None
        if status_code < 200 or status_code >= 300:
            message = _error_message(body)
            log_event(
                LOGGER,
                "github_request_failed",
                level=logging.ERROR,
                method=method_upper,
                path=path,
                status_code=status_code,
                error=message,
            )
            raise GitHubApiError(
                f"GitHub API {method_upper} {path} failed with status {status_code}: {message}",
                status_code=status_code,
            )
        if not body.strip():
            return None
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise GitHubApiError(
                f"Unexpected GitHub response: invalid JSON for {path}: {_preview_for_log(body)}"
            ) from exc


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index

    if status_line_index < 0:
        raise GitHubApiError("Unexpected GitHub response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise GitHubApiError(f"Unexpected GitHub response status line: {status_line!r}")

    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise GitHubApiError(f"Unexpected GitHub response status line: {status_line!r}") from exc

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    body = "\n".join(lines[body_start:])
    return status_code, headers, body


def _error_message(body: str) -> str:
    try:
        parsed = json.loads(body)
    except json.JSONDecodeError:
        return body.strip() or "<empty>"
    parsed_obj = _as_object_dict(parsed)
    if parsed_obj is not None and isinstance(parsed_obj.get("message"), str):
        return cast(str, parsed_obj["message"])
    return body.strip() or "<empty>"


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _label_names(value: object) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    names: list[str] = []
    for entry in value:
        entry_obj = _as_object_dict(entry)
        if entry_obj is None:
            continue
        name = entry_obj.get("name")
        if isinstance(name, str) and name not in names:
            names.append(name)
    return tuple(names)


def _pull_request_numbers(value: object) -> tuple[int, ...]:
    if not isinstance(value, list):
        return ()
    numbers: list[int] = []
    for raw in value:
        pr_obj = _as_object_dict(raw)
        if pr_obj is None or "number" not in pr_obj:
            continue
        number = _as_int(pr_obj.get("number"), field="number")
        if number not in numbers:
            numbers.append(number)
    return tuple(numbers)


def _normalize_optional_lower_str(value: object) -> str | None:
    raw = _as_optional_str(value)
    if raw is None:
        return None
    normalized = raw.strip().lower()
    return normalized or None


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_optional_str(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise GitHubApiError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise GitHubApiError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise GitHubApiError(f"Unexpected GitHub response type for {field}")


def _as_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    raise GitHubApiError("Unexpected GitHub response type for bool field")


def _as_optional_bool(value: object) -> bool:
    if value is None:
        return False
    return _as_bool(value)


def _as_pull_request_state(value: object) -> PullRequestState:
    normalized = _as_string(value).strip().lower()
    if normalized not in {"open", "closed"}:
        raise GitHubApiError(f"Unexpected GitHub pull request state: {normalized!r}")
    return cast(PullRequestState, normalized)
