from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import sys
from typing import Final, Literal, cast
import uuid


_LOGGER_NAME: Final[str] = "autorebase"
_MAX_VALUE_LEN: Final[int] = 120
_VERBOSE_FORMAT: Final[str] = "%(asctime)s %(levelname)s %(name)s [%(threadName)s] %(message)s"
_LOW_VERBOSITY_EVENTS: Final[frozenset[str]] = frozenset(
    {
        "action_decided",
        "pull_request_merged",
        "pull_request_rebased",
        "rebase_lock_held",
        "rebase_failed",
        "one_time_rebase_denied",
        "run_failed",
        "cherry_pick_conflict",
        "rebase_head_changed",
        "mergeable_state_timeout",
        "github_issue_comment_failed",
    }
)


VerboseMode = Literal["low", "high"]


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
    stream_handler.setFormatter(logging.Formatter(_VERBOSE_FORMAT))
    if mode == "low":
        stream_handler.addFilter(_LowVerbosityFilter())
    logger.addHandler(stream_handler)
    logger.setLevel(logging.INFO)


def log_event(
    logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: object
) -> None:
    logger.log(level, _build_event_message(event=event, fields=fields))


@dataclass(frozen=True)
class RunLog:
    """Per-invocation logging handle; every event it emits carries the run's fields."""

    run_id: str
    fields: tuple[tuple[str, object], ...] = ()

    @classmethod
    def start(cls, **fields: object) -> RunLog:
        return cls(run_id=uuid.uuid4().hex[:12], fields=tuple(sorted(fields.items())))

    def bind(self, **fields: object) -> RunLog:
        merged = dict(self.fields)
        merged.update(fields)
        return RunLog(run_id=self.run_id, fields=tuple(sorted(merged.items())))

    def event(
        self, logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: object
    ) -> None:
        merged: dict[str, object] = {**dict(self.fields), **fields, "run_id": self.run_id}
        log_event(logger, event, level=level, **merged)

    def warning(self, logger: logging.Logger, event: str, **fields: object) -> None:
        self.event(logger, event, level=logging.WARNING, **fields)


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
    elif isinstance(value, tuple | list):
        normalized = ",".join(_normalize_field_value(item) for item in value) or "<empty>"
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
        event_name = _extract_event_name(record.getMessage())
        return event_name in _LOW_VERBOSITY_EVENTS
