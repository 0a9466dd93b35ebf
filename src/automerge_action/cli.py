from __future__ import annotations

import argparse
from collections.abc import Mapping
from dataclasses import replace
import os
import sys

from automerge_action.config import AutomergeConfig, ConfigError, GitHubContext, load_config
from automerge_action.evaluator import PullRequestEvaluator
from automerge_action.github_gateway import GitHubApiError, GitHubGateway
from automerge_action.observability import FailureReport, configure_logging
from automerge_action.scheduler import RetryScheduler
from automerge_action.triggers import resolve_pull_request_numbers


EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="automerge-action",
        description="Merge pull requests that are approved, green and not blocked by labels",
    )
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log every event, including GitHub reads",
    )
    verbosity.add_argument(
        "--quiet",
        action="store_true",
        help="Disable runtime logging",
    )
    parser.add_argument(
        "--pull-request",
        type=int,
        help="Evaluate only this pull request (overrides the pull-request input)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log what would be merged without merging",
    )
    return parser


def main() -> None:
    args = build_parser().parse_args()
    configure_logging(_verbose_mode(args))
    sys.exit(run(os.environ, args))


def run(environ: Mapping[str, str], args: argparse.Namespace) -> int:
    try:
        config = _apply_overrides(load_config(environ), args)
        context = GitHubContext.from_environ(environ)
    except ConfigError as exc:
        print(f"::error::Invalid configuration: {exc}", file=sys.stdout)
        return EXIT_CONFIG_ERROR

    failures = FailureReport()
    github = GitHubGateway.for_context(context, config.token)
    try:
        pr_numbers = resolve_pull_request_numbers(context, config, github)
    except GitHubApiError as exc:
        failures.fail(f"Failed to resolve pull requests for {context.event_name}: {exc}")
        return EXIT_FAILURE
    scheduler = RetryScheduler(PullRequestEvaluator(config, github=github, failures=failures))
    scheduler.automerge_pull_requests(pr_numbers)
    return EXIT_FAILURE if failures.failed else 0


def _apply_overrides(config: AutomergeConfig, args: argparse.Namespace) -> AutomergeConfig:
    pull_request = getattr(args, "pull_request", None)
    if pull_request is not None and pull_request < 1:
        raise ConfigError("--pull-request must be an integer >= 1")
    if pull_request is not None:
        config = replace(config, pull_request=pull_request)
    if bool(getattr(args, "dry_run", False)):
        config = replace(config, dry_run=True)
    return config


def _verbose_mode(args: argparse.Namespace) -> str | None:
    if bool(getattr(args, "quiet", False)):
        return None
    if bool(getattr(args, "verbose", False)):
        return "high"
    return "low"
