"""Global keyboard capture.

The platform key hook runs on its own thread (``keyai-hook``) and must never
be blocked by anything downstream. CaptureBridge turns every transition it
reports into a CapturedEvent, attaches the cached window snapshot with a
non-blocking read, and puts the event on an unbounded SimpleQueue that the
flusher drains.

When the hook cannot run, for lack of accessibility/input-monitoring
permission or because it failed to install or died later, the bridge logs
guidance and stays disabled. The rest of the agent (window tracking,
flushing, search) keeps running.
"""

from __future__ import annotations

import enum
import logging
import os
import queue
import re
import sys
from collections.abc import Callable
from typing import TYPE_CHECKING, Protocol

from keyai.errors import CaptureError, PermissionDeniedError
from keyai.metrics import CAPTURE_ERRORS, EVENTS_CAPTURED, AgentMetrics
from keyai.models import CapturedEvent, RawKeyTransition, Transition, WindowInfo, now_epoch

if TYPE_CHECKING:
    from pynput import keyboard

logger = logging.getLogger(__name__)

THREAD_NAME = "keyai-hook"

MODIFIER_SYMBOLS = frozenset(
    {
        "Shift",
        "ShiftLeft",
        "ShiftRight",
        "Ctrl",
        "CtrlLeft",
        "CtrlRight",
        "Alt",
        "AltLeft",
        "AltRight",
        "AltGr",
        "Meta",
        "MetaLeft",
        "MetaRight",
        "CapsLock",
    }
)

FUNCTION_KEY_PATTERN = re.compile(r"^F([1-9]|1[0-9]|2[0-4])$")

# pynput Key names that do not follow the plain CamelCase rule
_SPECIAL_KEY_NAMES = {
    "shift": "Shift",
    "shift_l": "ShiftLeft",
    "shift_r": "ShiftRight",
    "ctrl": "Ctrl",
    "ctrl_l": "CtrlLeft",
    "ctrl_r": "CtrlRight",
    "alt": "Alt",
    "alt_l": "AltLeft",
    "alt_r": "AltRight",
    "alt_gr": "AltGr",
    "cmd": "Meta",
    "cmd_l": "MetaLeft",
    "cmd_r": "MetaRight",
    "enter": "Return",
    "esc": "Escape",
    "up": "UpArrow",
    "down": "DownArrow",
    "left": "LeftArrow",
    "right": "RightArrow",
}


def key_symbol(key) -> str:
    """Return the stable symbol name for a pynput key.

    Printable keys map to their character (``a``, ``1``, ``;``). Named keys
    map to CamelCase names (``Space``, ``ShiftLeft``, ``F5``, ``PageDown``).
    Keys with neither become ``Key<vk>`` or ``Unknown``.
    """
    # pynput named keys are members of the keyboard.Key enum
    if isinstance(key, enum.Enum):
        name = key.name
        if name in _SPECIAL_KEY_NAMES:
            return _SPECIAL_KEY_NAMES[name]
        if re.fullmatch(r"f\d+", name):
            return name.upper()
        return "".join(part.capitalize() for part in name.split("_"))

    char = getattr(key, "char", None)
    if char:
        return char
    vk = getattr(key, "vk", None)
    if vk is not None:
        return f"Key{vk}"
    return "Unknown"


def is_modifier(symbol: str) -> bool:
    return symbol in MODIFIER_SYMBOLS


def is_function_key(symbol: str) -> bool:
    return FUNCTION_KEY_PATTERN.match(symbol) is not None


class KeyHook(Protocol):
    """Platform global key hook."""

    def start(self, callback: Callable[[RawKeyTransition], None]) -> None: ...

    def stop(self) -> None: ...

    def is_alive(self) -> bool: ...


class PermissionChecker(Protocol):
    """Platform accessibility / input-monitoring permission check."""

    def check(self) -> bool: ...

    def guidance(self) -> str: ...


class PynputKeyHook:
    """KeyHook backed by pynput.keyboard.Listener."""

    def __init__(self):
        self._listener: keyboard.Listener | None = None

    def start(self, callback: Callable[[RawKeyTransition], None]) -> None:
        """Install the hook and start the listener thread.

        Raises:
            CaptureError: If the listener cannot be started.
        """

        def on_press(key):
            callback(RawKeyTransition(now_epoch(), key_symbol(key), Transition.PRESS))

        def on_release(key):
            callback(RawKeyTransition(now_epoch(), key_symbol(key), Transition.RELEASE))

        try:
            # WHAT: Import on first start rather than at module load.
            # WHY: pynput picks its backend on import and fails without a display.
            from pynput import keyboard

            listener = keyboard.Listener(on_press=on_press, on_release=on_release)
            listener.name = THREAD_NAME
            listener.daemon = True
            listener.start()
        except Exception as e:
            raise CaptureError(f"Could not start keyboard listener: {e}") from e
        self._listener = listener

    def stop(self) -> None:
        if self._listener is not None:
            self._listener.stop()
            self._listener = None

    def is_alive(self) -> bool:
        return self._listener is not None and self._listener.is_alive()


class PlatformPermissionChecker:
    """Check the OS permission the key hook needs.

    - macOS: the process must be trusted for Accessibility.
    - Linux: pynput's X11 backend needs a display.
    - Windows: no extra permission.
    """

    def check(self) -> bool:
        if sys.platform == "darwin":
            try:
                from ApplicationServices import AXIsProcessTrusted
            except ImportError:
                logger.warning("pyobjc is not installed; cannot verify Accessibility permission")
                return False
            return bool(AXIsProcessTrusted())
        if sys.platform.startswith("linux"):
            return bool(os.environ.get("DISPLAY"))
        return True

    def guidance(self) -> str:
        if sys.platform == "darwin":
            return (
                "Grant Accessibility and Input Monitoring access to your terminal in "
                "System Settings > Privacy & Security, then restart KeyAI."
            )
        if sys.platform.startswith("linux"):
            return "Keyboard capture needs an X11 session. Set DISPLAY or run KeyAI inside your desktop session."
        return "Run KeyAI from an interactive desktop session."


class CaptureBridge:
    """Classify hook transitions and hand them to the flusher.

    Args:
        hook: Platform key hook.
        permissions: Permission precondition, checked once per start().
        channel: Unbounded queue shared with the flusher.
        window_snapshot: Non-blocking window cache read.
        metrics: Counter collector.
    """

    def __init__(
        self,
        hook: KeyHook,
        permissions: PermissionChecker,
        channel: queue.SimpleQueue,
        window_snapshot: Callable[[], WindowInfo | None],
        metrics: AgentMetrics,
    ):
        self._hook = hook
        self._permissions = permissions
        self._channel = channel
        self._window_snapshot = window_snapshot
        self._metrics = metrics
        self._active = False
        self._degraded_reason: str | None = None

    @property
    def active(self) -> bool:
        return self._active

    @property
    def degraded_reason(self) -> str | None:
        """Why capture is disabled, or None if it never failed."""
        return self._degraded_reason

    def start(self) -> bool:
        """Check permissions and install the hook.

        Returns:
            True if capture is running; False in degraded mode.
        """
        if self._active:
            return True

        try:
            if not self._permissions.check():
                raise PermissionDeniedError(self._permissions.guidance())
            self._hook.start(self.on_transition)
        except PermissionDeniedError as e:
            self._enter_degraded(f"permission denied: {e}")
            return False
        except CaptureError as e:
            self._enter_degraded(str(e))
            return False

        self._active = True
        self._degraded_reason = None
        logger.info("Keyboard capture started")
        return True

    def stop(self) -> None:
        if not self._active:
            return
        try:
            self._hook.stop()
        except Exception as e:
            logger.warning(f"Error while stopping key hook: {e}")
        self._active = False
        logger.info("Keyboard capture stopped")

    def check_hook(self) -> bool:
        """Detect a hook that died after it was installed.

        A dead hook moves the bridge into degraded mode; the agent keeps
        running without keyboard input.

        Returns:
            True if capture is still active.
        """
        if self._active and not self._hook.is_alive():
            self._enter_degraded("hook stopped")
        return self._active

    def _enter_degraded(self, reason: str) -> None:
        self._active = False
        self._degraded_reason = reason
        self._metrics.increment(CAPTURE_ERRORS)
        logger.error(f"Keyboard capture disabled, {reason}")

    def on_transition(self, raw: RawKeyTransition) -> None:
        """Hook callback. Never raises into the platform hook."""
        try:
            event = CapturedEvent(
                timestamp=raw.timestamp,
                symbol=raw.key_id,
                transition=raw.transition,
                window=self._window_snapshot(),
                is_modifier=is_modifier(raw.key_id),
                is_function_key=is_function_key(raw.key_id),
            )
            self._channel.put(event)
            self._metrics.increment(EVENTS_CAPTURED)
        except Exception as e:
            self._metrics.increment(CAPTURE_ERRORS)
            logger.error(f"Dropped key transition: {e}")
