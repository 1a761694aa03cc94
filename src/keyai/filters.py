"""Event filtering for the capture pipeline.

should_drop() is a pure predicate evaluated before masking. Rules are checked
in order and short-circuit:

1. Modifier keys, unless capture_modifiers is set.
2. Function keys, unless capture_function_keys is set.
3. Events whose application name contains an ignored application
   (case-insensitive substring).
4. Events whose window title matches an ignored window pattern.

Events without window context never trip rules 3 and 4.
"""

from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import TYPE_CHECKING

from keyai.models import CapturedEvent

if TYPE_CHECKING:
    from keyai.config import AgentConfig

logger = logging.getLogger(__name__)


@lru_cache(maxsize=256)
def _compile_window_pattern(pattern: str) -> re.Pattern | None:
    """Compile an ignored-window pattern, or None if it is invalid."""
    try:
        return re.compile(pattern)
    except re.error as e:
        logger.warning(f"Ignoring invalid window pattern {pattern!r}: {e}")
        return None


def is_ignored_application(application: str, ignored_applications: list[str]) -> bool:
    """True if ``application`` contains any ignored entry, ignoring case."""
    app = application.lower()
    return any(entry and entry.lower() in app for entry in ignored_applications)


def is_ignored_window(title: str, ignored_window_patterns: list[str]) -> bool:
    """True if ``title`` matches any ignored window pattern."""
    for pattern in ignored_window_patterns:
        regex = _compile_window_pattern(pattern)
        if regex is not None and regex.search(title):
            return True
    return False


def should_drop(event: CapturedEvent, config: AgentConfig) -> bool:
    """Decide whether an event is discarded before it reaches the buffer.

    Args:
        event: Classified event, still unmasked.
        config: Current agent configuration.

    Returns:
        True if the event must be dropped.
    """
    if event.is_modifier and not config.capture_modifiers:
        return True

    if event.is_function_key and not config.capture_function_keys:
        return True

    window = event.window
    if window is None:
        return False

    if is_ignored_application(window.application, config.ignored_applications):
        return True

    return is_ignored_window(window.title, config.ignored_window_patterns)
