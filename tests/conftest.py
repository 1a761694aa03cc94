"""Pytest configuration and shared fixtures for KeyAI tests."""

import queue
import threading
from pathlib import Path

import pytest

from keyai.config import KeyAIConfig
from keyai.masker import Masker
from keyai.metrics import AgentMetrics
from keyai.models import CapturedEvent, RawKeyTransition, Transition, WindowInfo
from keyai.store import EventStore

# --- Test doubles ---


class FakeEmbedder:
    """Deterministic Embedder: a bag-of-letters vector over a-z.

    Texts sharing letters are similar; texts with no letters embed to the
    zero vector, which has similarity 0 with everything.
    """

    def __init__(self, available: bool = True, fail: bool = False):
        self.available = available
        self.fail = fail
        self.calls: list[str] = []

    def is_available(self) -> bool:
        return self.available

    def embed(self, text: str) -> list[float] | None:
        self.calls.append(text)
        if self.fail:
            raise RuntimeError("model crashed")
        if not text or not text.strip():
            return None
        vector = [0.0] * 26
        for char in text.lower():
            if "a" <= char <= "z":
                vector[ord(char) - ord("a")] += 1.0
        return vector


class FakeWindowQuery:
    """WindowQuery returning a scripted sequence of windows."""

    def __init__(self, windows: list[WindowInfo | None] | None = None, error: Exception | None = None):
        self.windows = list(windows or [])
        self.error = error
        self.calls = 0

    def active_window(self) -> WindowInfo | None:
        self.calls += 1
        if self.error is not None:
            raise self.error
        if not self.windows:
            return None
        if len(self.windows) == 1:
            return self.windows[0]
        return self.windows.pop(0)


class FakeKeyHook:
    """KeyHook that lets tests emit transitions by hand."""

    def __init__(self, start_error: Exception | None = None):
        self.start_error = start_error
        self.callback = None
        self.started = False
        self.stopped = False
        self.dead = False

    def start(self, callback) -> None:
        if self.start_error is not None:
            raise self.start_error
        self.callback = callback
        self.started = True

    def stop(self) -> None:
        self.stopped = True

    def is_alive(self) -> bool:
        return self.started and not self.stopped and not self.dead

    def die(self) -> None:
        """Simulate the listener thread exiting on its own."""
        self.dead = True

    def emit(self, key_id: str, transition: Transition = Transition.PRESS, timestamp: int = 1000) -> None:
        assert self.callback is not None, "hook not started"
        self.callback(RawKeyTransition(timestamp, key_id, transition))


class FakePermissions:
    def __init__(self, granted: bool = True):
        self.granted = granted
        self.checks = 0

    def check(self) -> bool:
        self.checks += 1
        return self.granted

    def guidance(self) -> str:
        return "grant accessibility access"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# --- Fixtures ---


@pytest.fixture
def tmp_keyai_home(tmp_path: Path) -> Path:
    """A temporary ~/.keyai equivalent."""
    home = tmp_path / ".keyai"
    home.mkdir()
    return home


@pytest.fixture
def sample_config(tmp_keyai_home: Path) -> KeyAIConfig:
    """KeyAIConfig pointing at the tmp_keyai_home directory."""
    return KeyAIConfig(keyai_home=tmp_keyai_home)


@pytest.fixture
def store(tmp_keyai_home: Path):
    """An open EventStore backed by a temp database file."""
    event_store = EventStore(tmp_keyai_home / "keyai.db")
    event_store.open()
    yield event_store
    event_store.close()


@pytest.fixture
def metrics() -> AgentMetrics:
    return AgentMetrics()


@pytest.fixture
def masker() -> Masker:
    return Masker()


@pytest.fixture
def channel() -> queue.SimpleQueue:
    return queue.SimpleQueue()


@pytest.fixture
def stop_event() -> threading.Event:
    return threading.Event()


@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def editor_window() -> WindowInfo:
    return WindowInfo(title="notes.txt - Editor", application="TextEdit", pid=4242, timestamp=1000)


@pytest.fixture
def make_event():
    """Factory for CapturedEvent objects with sensible defaults."""

    def _make(
        symbol: str = "a",
        timestamp: int = 1000,
        transition: Transition = Transition.PRESS,
        window: WindowInfo | None = None,
        is_modifier: bool = False,
        is_function_key: bool = False,
    ) -> CapturedEvent:
        return CapturedEvent(
            timestamp=timestamp,
            symbol=symbol,
            transition=transition,
            window=window,
            is_modifier=is_modifier,
            is_function_key=is_function_key,
        )

    return _make


@pytest.fixture
def typed_events(make_event, editor_window: WindowInfo) -> list[CapturedEvent]:
    """Presses spelling "hello world" in the editor, one second apart."""
    text = "hello world"
    return [
        make_event(symbol="Space" if char == " " else char, timestamp=2000 + i, window=editor_window)
        for i, char in enumerate(text)
    ]
