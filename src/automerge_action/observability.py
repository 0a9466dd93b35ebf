from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import sys
from typing import Final, Literal, TextIO, cast


_LOGGER_NAME: Final[str] = "automerge_action"
_MAX_VALUE_LEN: Final[int] = 120
_VERBOSE_FORMAT: Final[str] = "%(asctime)s %(levelname)s %(name)s %(message)s"
_LOW_VERBOSITY_EVENTS: Final[frozenset[str]] = frozenset(
    {
        "pull_requests_resolved",
        "pull_request_evaluation_started",
        "pull_request_skipped",
        "pull_request_merged",
        "dry_run_merge",
        "merge_retry_scheduled",
    }
)


VerboseMode = Literal["low", "high"]
LOGGER = logging.getLogger("automerge_action.observability")


def configure_logging(verbose: bool | str | None) -> None:
    logger = logging.getLogger(_LOGGER_NAME)
    logger.propagate = False
    logger.handlers.clear()
    mode = _normalize_verbose_mode(verbose)

    if mode is None:
        logger.addHandler(logging.NullHandler())
        logger.setLevel(logging.CRITICAL + 1)
        return

    stream_handler = logging.StreamHandler(sys.stderr)
    _configure_handler(stream_handler, mode)
    logger.addHandler(stream_handler)
    logger.setLevel(logging.INFO)


def log_event(
    logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: object
) -> None:
    logger.log(level, _build_event_message(event=event, fields=fields))


def log_separator(logger: logging.Logger) -> None:
    logger.info("")


@dataclass
class FailureReport:
    """Process-level failures that must turn the exit status non-zero.

    Recording a failure never interrupts the caller: the batch keeps going
    and the CLI inspects ``failed`` once everything has been processed.
    """

    stream: TextIO | None = None
    messages: list[str] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return bool(self.messages)

    def fail(self, message: str, **fields: object) -> None:
        self.messages.append(message)
        log_event(LOGGER, "process_failure", level=logging.ERROR, message=message, **fields)
        stream = self.stream if self.stream is not None else sys.stdout
        # GitHub Actions workflow command; renders as an error annotation.
        stream.write(f"::error::{_escape_workflow_command(message)}\n")
        stream.flush()


def _escape_workflow_command(message: str) -> str:
    return message.replace("%", "%25").replace("\r", "%0D").replace("\n", "%0A")


def _build_event_message(*, event: str, fields: dict[str, object]) -> str:
    parts = [f"event={_normalize_field_value(event)}"]
    for key in sorted(fields.keys()):
        parts.append(f"{key}={_normalize_field_value(fields[key])}")
    return " ".join(parts)


def _normalize_field_value(value: object) -> str:
    if value is None:
        normalized = "null"
    elif isinstance(value, bool):
        normalized = "true" if value else "false"
    elif isinstance(value, int | float):
        normalized = str(value)
    elif isinstance(value, str):
        collapsed = " ".join(value.split())
        if len(collapsed) > _MAX_VALUE_LEN:
            collapsed = f"{collapsed[:_MAX_VALUE_LEN]}..."
        normalized = collapsed if collapsed else "<empty>"
    elif isinstance(value, tuple | list | frozenset | set):
        items = sorted(value) if isinstance(value, frozenset | set) else list(value)
        normalized = ",".join(str(item) for item in items) or "<empty>"
    else:
        normalized = f"<{type(value).__name__}>"

    if any(ch.isspace() for ch in normalized) or "=" in normalized:
        return json.dumps(normalized)
    return normalized


def _normalize_verbose_mode(verbose: bool | str | None) -> VerboseMode | None:
    if verbose is None:
        return None
    if isinstance(verbose, bool):
        return "high" if verbose else None
    normalized = verbose.strip().lower()
    if normalized in {"low", "high"}:
        return cast(VerboseMode, normalized)
    raise ValueError(f"Unsupported verbose mode: {verbose!r}")


def _configure_handler(handler: logging.Handler, mode: VerboseMode) -> None:
    handler.setFormatter(logging.Formatter(_VERBOSE_FORMAT))
    if mode == "low":
        handler.addFilter(_LowVerbosityFilter())


def _extract_event_name(message: str) -> str | None:
    if not message.startswith("event="):
        return None
    first_field = message.split(" ", 1)[0]
    if first_field == "event=":
        return None
    return first_field[len("event=") :]


class _LowVerbosityFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.WARNING:
            return True
        message = record.getMessage()
        if not message:
            # Blank separators between pull requests.
            return True
        event_name = _extract_event_name(message)
        return event_name in _LOW_VERBOSITY_EVENTS
