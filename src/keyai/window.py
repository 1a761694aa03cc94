"""Active-window tracking.

A WindowQuery asks the platform for the foreground window. WindowTracker
polls it on its own thread (``keyai-window``) and keeps one cached
WindowInfo, replaced only when the title or application changes. The
capture path reads the cache without blocking; the admin API may block.

One WindowQuery implementation exists per platform and is chosen once at
startup by default_window_query().
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import sys
import threading
from typing import Protocol

import psutil

from keyai.metrics import WINDOW_ERRORS, WINDOW_UPDATES, AgentMetrics
from keyai.models import WindowInfo
from keyai.rwlock import ReadWriteLock

logger = logging.getLogger(__name__)

THREAD_NAME = "keyai-window"

# WHAT: Upper bound on one xdotool call.
XDOTOOL_TIMEOUT_SECS = 1.0


class WindowQuery(Protocol):
    """Platform collaborator reporting the foreground window."""

    def active_window(self) -> WindowInfo | None: ...


def _process_name(pid: int | None) -> str:
    if not pid:
        return "Unknown"
    try:
        return psutil.Process(pid).name()
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return "Unknown"


class MacOSWindowQuery:
    """Foreground window via AppKit NSWorkspace and the Quartz window list."""

    def __init__(self):
        from AppKit import NSWorkspace
        import Quartz

        self._workspace = NSWorkspace.sharedWorkspace()
        self._quartz = Quartz

    def active_window(self) -> WindowInfo | None:
        app = self._workspace.frontmostApplication()
        if app is None:
            return None

        application = app.localizedName() or "Unknown"
        pid = int(app.processIdentifier())

        title = ""
        windows = self._quartz.CGWindowListCopyWindowInfo(
            self._quartz.kCGWindowListOptionOnScreenOnly, self._quartz.kCGNullWindowID
        )
        for window in windows or []:
            if window.get("kCGWindowOwnerPID") == pid and window.get("kCGWindowName"):
                title = str(window["kCGWindowName"])
                break

        return WindowInfo(title=title, application=str(application), pid=pid)


class WindowsWindowQuery:
    """Foreground window via win32gui, process name via psutil."""

    def __init__(self):
        import win32gui
        import win32process

        self._win32gui = win32gui
        self._win32process = win32process

    def active_window(self) -> WindowInfo | None:
        hwnd = self._win32gui.GetForegroundWindow()
        if not hwnd:
            return None
        title = self._win32gui.GetWindowText(hwnd)
        _, pid = self._win32process.GetWindowThreadProcessId(hwnd)
        return WindowInfo(title=title, application=_process_name(pid), pid=pid)


class XdotoolWindowQuery:
    """Foreground window on X11 via the xdotool binary."""

    def __init__(self, binary: str = "xdotool"):
        self._binary = binary

    def _run(self, *args: str) -> str | None:
        try:
            result = subprocess.run(
                [self._binary, "getactivewindow", *args],
                capture_output=True,
                text=True,
                timeout=XDOTOOL_TIMEOUT_SECS,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug(f"xdotool call failed: {e}")
            return None
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    def active_window(self) -> WindowInfo | None:
        title = self._run("getwindowname")
        if title is None:
            return None
        pid_text = self._run("getwindowpid")
        pid = int(pid_text) if pid_text and pid_text.isdigit() else None
        return WindowInfo(title=title, application=_process_name(pid), pid=pid)


class NullWindowQuery:
    """Used where no platform backend is available; never reports a window."""

    def active_window(self) -> WindowInfo | None:
        return None


def default_window_query() -> WindowQuery:
    """Pick the WindowQuery for the current platform.

    Falls back to NullWindowQuery when the platform libraries are missing,
    so events are simply captured without window context.
    """
    try:
        if sys.platform == "darwin":
            return MacOSWindowQuery()
        if sys.platform == "win32":
            return WindowsWindowQuery()
    except ImportError as e:
        logger.warning(f"Window tracking unavailable ({e}). Install the platform extra: pip install 'keyai[macos]' or 'keyai[windows]'")
        return NullWindowQuery()

    if sys.platform.startswith("linux") and shutil.which("xdotool"):
        return XdotoolWindowQuery()

    logger.warning("No active-window backend for this platform; events will have no window context")
    return NullWindowQuery()


class WindowTracker:
    """Poll a WindowQuery and cache the latest foreground window.

    The poll thread is the only writer of the cache.

    Args:
        query: Platform window collaborator.
        metrics: Counter collector (window_updates, window_errors).
        poll_interval: Seconds between polls.
    """

    def __init__(self, query: WindowQuery, metrics: AgentMetrics, poll_interval: float = 0.5):
        self._query = query
        self._metrics = metrics
        self._poll_interval = poll_interval
        self._lock = ReadWriteLock()
        self._current: WindowInfo | None = None
        self._thread: threading.Thread | None = None

    @property
    def poll_interval(self) -> float:
        return self._poll_interval

    @poll_interval.setter
    def poll_interval(self, value: float) -> None:
        self._poll_interval = value

    def try_snapshot(self) -> WindowInfo | None:
        """Return the cached window without blocking; None under contention."""
        if not self._lock.acquire_read(blocking=False):
            return None
        try:
            return self._current
        finally:
            self._lock.release_read()

    def current(self) -> WindowInfo | None:
        """Return the cached window, waiting for an in-progress update."""
        with self._lock.read_locked():
            return self._current

    def poll_once(self) -> bool:
        """Query the platform once and update the cache on change.

        Returns:
            True if the cached window was replaced.
        """
        try:
            info = self._query.active_window()
        except Exception as e:
            self._metrics.increment(WINDOW_ERRORS)
            logger.warning(f"Active window query failed: {e}")
            return False

        if info is None:
            return False

        with self._lock.read_locked():
            unchanged = info.same_window(self._current)
        if unchanged:
            return False

        with self._lock.write_locked():
            self._current = info
        self._metrics.increment(WINDOW_UPDATES)
        logger.debug(f"Active application changed: {info.application}")
        return True

    def run(self, stop_event: threading.Event) -> None:
        """Poll until ``stop_event`` is set."""
        logger.debug("Window tracker started")
        while not stop_event.is_set():
            self.poll_once()
            stop_event.wait(self._poll_interval)
        logger.debug("Window tracker stopped")

    def start(self, stop_event: threading.Event) -> threading.Thread:
        self._thread = threading.Thread(target=self.run, args=(stop_event,), name=THREAD_NAME, daemon=True)
        self._thread.start()
        return self._thread

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
