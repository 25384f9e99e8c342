"""
Short excerpts of user text for DEBUG logs.

Callers only log when CHATGATE_LOG_LEVEL=debug; this module just trims and
formats.
"""

from __future__ import annotations

import logging

from chatgate.util.logger import logger

DEFAULT_EXCERPT_MAX_LEN = 500


def excerpt_for_debug(text: str, max_len: int = DEFAULT_EXCERPT_MAX_LEN) -> str:
    if not text:
        return ""
    s = str(text).strip()
    if len(s) <= max_len:
        return s
    return f"{s[:max_len]} ... [truncated, total {len(s)} chars]"


def debug_log_original(
    label: str,
    original_text: str,
    *,
    request_id: str = "",
    reason: str | None = None,
    max_len: int = DEFAULT_EXCERPT_MAX_LEN,
) -> None:
    """
    Log a trimmed copy of ``original_text`` when DEBUG is enabled.

    label: e.g. "command_detected", "dispatch_input"
    reason: optional extra tag such as the command kind
    """
    if not logger.isEnabledFor(logging.DEBUG):
        return
    excerpt = excerpt_for_debug(original_text, max_len=max_len)
    if reason:
        logger.debug("%s excerpt request_id=%s reason=%s text=%s", label, request_id, reason, excerpt)
    else:
        logger.debug("%s excerpt request_id=%s text=%s", label, request_id, excerpt)
