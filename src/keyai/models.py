"""Core data models for the KeyAI capture pipeline.

Defines the Transition enum, the window snapshot, the in-flight CapturedEvent,
the persisted StoredEvent, and the derived-text rule. Everything else in KeyAI
depends on these types.
"""

import enum
import time
from dataclasses import dataclass, field, replace


class Transition(enum.Enum):
    """Direction of a physical key transition."""

    PRESS = "press"
    RELEASE = "release"


@dataclass(frozen=True)
class RawKeyTransition:
    """A transition as reported by the key hook, before classification.

    Lives only inside one hook callback and is never persisted.
    """

    timestamp: int
    key_id: str
    transition: Transition


@dataclass(frozen=True)
class WindowInfo:
    """Snapshot of the foreground window."""

    title: str
    application: str
    pid: int | None = None
    timestamp: int = field(default_factory=lambda: int(time.time()))

    def same_window(self, other: "WindowInfo | None") -> bool:
        """Return True if title and application match ``other``."""
        if other is None:
            return False
        return self.title == other.title and self.application == other.application

    def to_dict(self) -> dict:
        """Serialize to a JSON-compatible dictionary."""
        return {
            "title": self.title,
            "application": self.application,
            "pid": self.pid,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class CapturedEvent:
    """A classified key transition waiting in the flush buffer.

    Owned exclusively by the flusher until it is committed or discarded.
    """

    timestamp: int
    symbol: str
    transition: Transition
    window: WindowInfo | None = None
    is_modifier: bool = False
    is_function_key: bool = False

    def with_masked(self, symbol: str, window: WindowInfo | None) -> "CapturedEvent":
        """Return a copy carrying redacted symbol and window fields."""
        return replace(self, symbol=symbol, window=window)

    @property
    def derived_text(self) -> str | None:
        """Text this event contributes to the searchable stream."""
        return derive_text(self.symbol, self.transition)


@dataclass
class StoredEvent:
    """An event row as persisted in the events table.

    ``symbol`` and ``derived_text`` are always post-masking values.
    """

    id: int
    timestamp: int
    symbol: str
    transition: Transition
    window_title: str | None = None
    application: str | None = None
    derived_text: str | None = None
    created_at: str = ""

    def to_dict(self) -> dict:
        """Serialize to a JSON-compatible dictionary."""
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "symbol": self.symbol,
            "transition": self.transition.value,
            "window_title": self.window_title,
            "application": self.application,
            "derived_text": self.derived_text,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StoredEvent":
        """Deserialize from a dictionary (e.g., an exported JSON file)."""
        return cls(
            id=data.get("id", 0),
            timestamp=data.get("timestamp", 0),
            symbol=data.get("symbol", ""),
            transition=Transition(data.get("transition", Transition.PRESS.value)),
            window_title=data.get("window_title"),
            application=data.get("application"),
            derived_text=data.get("derived_text"),
            created_at=data.get("created_at", ""),
        )


@dataclass
class DatabaseStats:
    """Summary of the local event database."""

    total_events: int = 0
    total_size_bytes: int = 0
    oldest_event: int | None = None
    newest_event: int | None = None
    embedding_count: int = 0

    def to_dict(self) -> dict:
        """Serialize to a JSON-compatible dictionary."""
        return {
            "total_events": self.total_events,
            "total_size_bytes": self.total_size_bytes,
            "oldest_event": self.oldest_event,
            "newest_event": self.newest_event,
            "embedding_count": self.embedding_count,
        }


# WHAT: Named keys that still produce text in the searchable stream.
# WHY: Without Space, typed words would run together in the FTS index.
TEXT_PRODUCING_KEYS: dict[str, str] = {
    "Space": " ",
}


def derive_text(symbol: str, transition: Transition) -> str | None:
    """Return the text a key press contributes, or None.

    Only presses count. A single printable character stands for itself;
    a few named keys map to whitespace. Everything else (releases,
    modifiers, navigation keys, masked multi-character symbols) yields None.
    """
    if transition is not Transition.PRESS:
        return None
    if len(symbol) == 1 and symbol.isprintable():
        return symbol
    return TEXT_PRODUCING_KEYS.get(symbol)


def now_epoch() -> int:
    """Current time as whole epoch seconds."""
    return int(time.time())
