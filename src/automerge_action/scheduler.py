from __future__ import annotations

from collections import deque
from collections.abc import Callable, Iterable
import logging
import time

from automerge_action.evaluator import PullRequestEvaluator, Verdict
from automerge_action.models import RetryTask
from automerge_action.observability import log_event, log_separator


LOGGER = logging.getLogger("automerge_action.scheduler")
MAX_TRIES = 5


class RetryScheduler:
    """Runs every queued pull request to a final verdict, one at a time.

    A retried pull request goes to the back of the queue, so other pull
    requests get their turn before it is looked at again. The backoff
    sleep blocks the whole queue.
    """

    def __init__(
        self,
        evaluator: PullRequestEvaluator,
        *,
        sleep: Callable[[float], None] = time.sleep,
        max_tries: int = MAX_TRIES,
    ) -> None:
        if max_tries < 1:
            raise ValueError("max_tries must be >= 1")
        self._evaluator = evaluator
        self._sleep = sleep
        self._max_tries = max_tries

    def automerge_pull_requests(self, pr_numbers: Iterable[int]) -> None:
        queue: deque[RetryTask] = deque(
            RetryTask(number=number) for number in dict.fromkeys(pr_numbers)
        )
        log_event(LOGGER, "retry_queue_seeded", task_count=len(queue))

        while queue:
            task = queue.popleft()
            if task.tries > 0:
                delay = 2**task.tries
                log_event(
                    LOGGER,
                    "merge_retry_backoff",
                    pr_number=task.number,
                    tries=task.tries,
                    delay_seconds=delay,
                )
                self._sleep(delay)

            tries_left = (self._max_tries - 1) - task.tries
            verdict = self._evaluator.evaluate(task.number, tries_left=tries_left)
            if verdict is Verdict.RETRY and tries_left > 0:
                queue.append(RetryTask(number=task.number, tries=task.tries + 1))
                log_event(
                    LOGGER,
                    "merge_retry_scheduled",
                    pr_number=task.number,
                    next_try=task.tries + 1,
                )
            log_separator(LOGGER)

        log_event(LOGGER, "retry_queue_drained")
