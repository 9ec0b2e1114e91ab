import json
import re
from datetime import timedelta
from typing import Any

import psutil
from loguru import logger
from pytimeparse2 import parse as parse_duration
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from .constants import LOG_TEXT_MAX, REDACTED_TEXT

__all__ = (
    "format_duration_hms",
    "get_memory_usage",
    "maybe_log_event_dump",
    "parse_duration_seconds",
    "redact_slack_token",
    "retry_async",
    "short_text",
)

_SLACK_TOKEN_RE = re.compile(r"\bx(?:app|oxb|oxp|oxa|oxr|oxe)-[A-Za-z0-9-]+")


def redact_slack_token(text: str) -> str:
    if not text:
        return text
    return _SLACK_TOKEN_RE.sub("***", text)


def retry_async(max_retries=3, retryable_exceptions=None):
    kwargs = {
        "stop": stop_after_attempt(max_retries),
        "wait": wait_random_exponential(multiplier=1, max=30),
        "reraise": True,
        "before_sleep": lambda retry_state: logger.info(
            f"Retry attempt #{retry_state.attempt_number}..."
        ),
    }
    if retryable_exceptions:
        kwargs["retry"] = retry_if_exception_type(retryable_exceptions)
    return retry(**kwargs)


def get_memory_usage() -> dict[str, Any]:
    process = psutil.Process()
    memory_info = process.memory_info()
    mb_factor = 1024 * 1024
    return {
        "rss_mb": round(memory_info.rss / mb_factor, 2),
        "vms_mb": round(memory_info.vms / mb_factor, 2),
        "percent": process.memory_percent(),
    }


def format_duration_hms(seconds: float) -> str:
    total = max(0, int(seconds))
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def parse_duration_seconds(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if not isinstance(value, str):
        return None
    s = value.strip().lower()
    if not s:
        return None
    if s.lstrip("-").isdigit():
        return int(s)
    try:
        seconds = parse_duration(s, as_timedelta=False)
    except Exception:
        return None
    if isinstance(seconds, (int, float)):
        return int(seconds)
    if isinstance(seconds, timedelta):
        return int(seconds.total_seconds())
    return None


def short_text(
    text: str | None, max_length: int = LOG_TEXT_MAX, *, redact: bool = False
) -> str:
    """Shorten ``text`` for log output.

    Truncates to ``max_length`` characters with a trailing ellipsis. With
    ``redact`` the text is replaced by a placeholder entirely.
    """
    if not text:
        return ""
    if redact:
        return REDACTED_TEXT
    if len(text) <= max_length:
        return text
    return f"{text[:max_length]}…"


def maybe_log_event_dump(enabled: bool, *, kind: str, payload: Any) -> None:
    if not enabled:
        return
    logger.opt(lazy=True).debug(
        "{} data: {}",
        lambda: kind,
        lambda: json.dumps(payload, ensure_ascii=False, indent=2, default=str),
    )
