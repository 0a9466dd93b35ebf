from __future__ import annotations

from enum import Enum
import logging
from string import Template

from automerge_action.config import AutomergeConfig
from automerge_action.github_gateway import GitHubApiError, GitHubGateway, REVIEWS_PAGE_SIZE
from automerge_action.labels import do_not_merge_labels, missing_required_labels
from automerge_action.models import MERGE_METHODS, MergeMethod, MergeableState, PullRequest
from automerge_action.observability import FailureReport, log_event
from automerge_action.reviews import commit_has_minimum_approvals, is_author_allowed


LOGGER = logging.getLogger("automerge_action.evaluator")

_MERGEABLE_STATES_WORTH_ATTEMPTING = frozenset(
    {
        MergeableState.BLOCKED,
        MergeableState.CLEAN,
        MergeableState.HAS_HOOKS,
        MergeableState.UNKNOWN,
        MergeableState.UNSTABLE,
    }
)

_FAILURE_EVENTS = {"evaluate": "evaluation_failed", "merge": "merge_failed"}


class Verdict(Enum):
    SKIPPED = "skipped"
    DRY_RUN = "dry_run"
    MERGED = "merged"
    RETRY = "retry"


class PullRequestEvaluator:
    """Decides, for one attempt, whether a pull request gets merged.

    Nothing is remembered between attempts: every call re-reads the pull
    request, its reviews and the branch rules.
    """

    def __init__(
        self,
        config: AutomergeConfig,
        *,
        github: GitHubGateway,
        failures: FailureReport,
    ) -> None:
        self._config = config
        self._github = github
        self._failures = failures

    def evaluate(self, pr_number: int, *, tries_left: int) -> Verdict:
        log_event(
            LOGGER,
            "pull_request_evaluation_started",
            pr_number=pr_number,
            tries_left=tries_left,
        )
        try:
            pull_request = self._github.get_pull_request(pr_number)
            if not self._is_eligible(pull_request):
                return Verdict.SKIPPED
            merge_method = self._merge_method()
        except GitHubApiError as exc:
            return self._handle_failure(
                pr_number, tries_left=tries_left, step="evaluate", exc=exc
            )

        commit_title, commit_message = self._commit_text(pull_request, merge_method)
        if self._config.dry_run:
            log_event(
                LOGGER,
                "dry_run_merge",
                pr_number=pr_number,
                head_sha=pull_request.head_sha,
                method=merge_method,
                commit_title=commit_title,
            )
            return Verdict.DRY_RUN

        try:
            self._github.merge_pull_request(
                pr_number,
                head_sha=pull_request.head_sha,
                method=merge_method,
                commit_title=commit_title,
                commit_message=commit_message,
            )
        except GitHubApiError as exc:
            return self._handle_failure(
                pr_number, tries_left=tries_left, step="merge", exc=exc
            )

        log_event(LOGGER, "pull_request_merged", pr_number=pr_number, method=merge_method)
        return Verdict.MERGED

    def _is_eligible(self, pull_request: PullRequest) -> bool:
        number = pull_request.number
        if pull_request.merged:
            return self._skip(number, "already_merged")
        if pull_request.state == "closed":
            return self._skip(number, "closed")

        author_associations = self._config.pull_request_author_associations
        if author_associations and not is_author_allowed(pull_request, author_associations):
            return self._skip(
                number,
                "author_not_allowed",
                author_login=pull_request.author_login,
                author_association=pull_request.author_association,
            )

        checks = self._github.get_required_status_checks(pull_request.base_ref)
        if checks.count == 0:
            return self._skip(number, "branch_not_protected", base_ref=pull_request.base_ref)
        if not self._github.required_checks_passed(pull_request.head_sha, checks.contexts):
            return self._skip(number, "status_checks_not_passed", head_sha=pull_request.head_sha)

        if not self._has_approvals(pull_request):
            return False

        blocking = do_not_merge_labels(pull_request.labels, self._config.do_not_merge_labels)
        if blocking:
            return self._skip(number, "do_not_merge_label", labels=blocking)
        missing = missing_required_labels(pull_request.labels, self._config.required_labels)
        if missing:
            return self._skip(number, "missing_required_label", labels=missing)

        return self._is_mergeable_state_eligible(pull_request)

    def _has_approvals(self, pull_request: PullRequest) -> bool:
        reviews = self._github.list_reviews(pull_request.number)
        if len(reviews) >= REVIEWS_PAGE_SIZE:
            self._failures.fail(
                f"Pull request #{pull_request.number} has {REVIEWS_PAGE_SIZE} or more reviews, "
                "which is not supported.",
                pr_number=pull_request.number,
            )
            return self._skip(pull_request.number, "too_many_reviews", count=len(reviews))

        if not commit_has_minimum_approvals(
            reviews,
            self._config.review_author_associations,
            pull_request.head_sha,
            self._config.minimum_approvals,
        ):
            return self._skip(
                pull_request.number,
                "not_approved",
                head_sha=pull_request.head_sha,
                minimum_approvals=self._config.minimum_approvals,
            )
        return True

    def _is_mergeable_state_eligible(self, pull_request: PullRequest) -> bool:
        state = pull_request.mergeable_state
        if state is MergeableState.DRAFT:
            return self._skip(pull_request.number, "draft")
        if state is MergeableState.DIRTY:
            return self._skip(pull_request.number, "merge_conflicts")
        if state in _MERGEABLE_STATES_WORTH_ATTEMPTING:
            # GitHub computes mergeability lazily; the merge call has the final say.
            return True
        log_event(
            LOGGER,
            "pull_request_skipped",
            level=logging.WARNING,
            pr_number=pull_request.number,
            reason="unrecognized_mergeable_state",
            mergeable_state=state.value,
        )
        return False

    def _merge_method(self) -> MergeMethod | None:
        if self._config.merge_method is not None:
            return self._config.merge_method
        capabilities = self._github.get_merge_capabilities()
        for method in MERGE_METHODS:
            if capabilities.allows(method):
                return method
        return None

    def _commit_text(
        self, pull_request: PullRequest, method: MergeMethod | None
    ) -> tuple[str | None, str | None]:
        if method != "squash":
            return None, None
        values = {"title": pull_request.title, "number": str(pull_request.number)}
        title_template = self._config.squash_commit_title
        if title_template is None and self._config.squash_title:
            title_template = "$title (#$number)"
        title = Template(title_template).safe_substitute(values) if title_template else None
        message_template = self._config.squash_commit_message
        message = Template(message_template).safe_substitute(values) if message_template else None
        return title, message

    def _handle_failure(
        self, pr_number: int, *, tries_left: int, step: str, exc: Exception
    ) -> Verdict:
        if tries_left > 0:
            log_event(
                LOGGER,
                _FAILURE_EVENTS[step],
                level=logging.ERROR,
                pr_number=pr_number,
                tries_left=tries_left,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return Verdict.RETRY
        self._failures.fail(
            f"Failed to {step} pull request #{pr_number}: {exc}",
            pr_number=pr_number,
        )
        return Verdict.SKIPPED

    def _skip(self, pr_number: int, reason: str, **fields: object) -> bool:
        log_event(LOGGER, "pull_request_skipped", pr_number=pr_number, reason=reason, **fields)
        return False
