"""The KeyAI agent: capture, window tracking and flushing wired together.

Agent owns the three long-lived threads and everything they share:

- ``keyai-hook``: the platform key hook, feeding CaptureBridge
- ``keyai-window``: WindowTracker, sole writer of the window cache
- ``keyai-flusher``: EventFlusher, sole consumer of the capture channel

The channel is an unbounded SimpleQueue, configuration is a SharedConfig
behind a reader-writer lock, and the EventStore lock serializes all database
access. Shutdown sets one threading.Event that every loop polls.

All collaborators can be injected, which is how the tests run the agent
without a real keyboard or window system.
"""

from __future__ import annotations

import logging
import queue
import threading

from keyai.capture import CaptureBridge, KeyHook, PermissionChecker, PlatformPermissionChecker, PynputKeyHook
from keyai.config import AgentConfig, KeyAIConfig, SharedConfig, get_db_path, get_models_dir
from keyai.db import check_fts5_available
from keyai.embeddings import Embedder, EmbeddingEngine
from keyai.errors import StoreError
from keyai.flusher import EventFlusher
from keyai.masker import Masker, MaskingRule, build_masker
from keyai.metrics import AgentMetrics
from keyai.models import WindowInfo
from keyai.search import SearchEngine
from keyai.store import EventStore
from keyai.window import WindowQuery, WindowTracker, default_window_query

logger = logging.getLogger(__name__)

# WHAT: Bounded wait for each thread at shutdown.
JOIN_TIMEOUT_SECS = 5.0


def component_health(store: EventStore, search: SearchEngine) -> dict[str, str]:
    """Report database and search engine status as short strings.

    Loads no embedding model; semantic search counts as available when its
    library is installed.
    """
    status: dict[str, str] = {}

    try:
        store.get_stats()
        status["database"] = "ok"
    except StoreError as e:
        status["database"] = f"error: {e}"

    if not check_fts5_available():
        status["search_engine"] = "error: SQLite built without FTS5"
    elif search.semantic_available():
        status["search_engine"] = "ok"
    else:
        status["search_engine"] = "lexical only"

    return status


class Agent:
    """Background keyboard capture agent.

    Example:
        agent = Agent(load_config())
        agent.start()
        ...
        agent.stop()
    """

    def __init__(
        self,
        config: KeyAIConfig,
        store: EventStore | None = None,
        masker: Masker | None = None,
        embedder: Embedder | None = None,
        window_query: WindowQuery | None = None,
        key_hook: KeyHook | None = None,
        permissions: PermissionChecker | None = None,
        metrics: AgentMetrics | None = None,
    ):
        self._app_config = config
        self._shared_config = SharedConfig(config.agent)
        self._metrics = metrics or AgentMetrics()
        self._store = store or EventStore(get_db_path(config), key=config.db_key)
        self._masker = masker or build_masker(config.custom_patterns, config.disabled_rules)
        if embedder is None:
            embedder = EmbeddingEngine(
                config.embedding_model, device=config.embedding_device, cache_dir=get_models_dir(config)
            )
        self._search = SearchEngine(self._store, embedder)

        self._channel: queue.SimpleQueue = queue.SimpleQueue()
        self._stop_event = threading.Event()
        self._running = False
        self._lifecycle_lock = threading.Lock()

        self._window_tracker = WindowTracker(
            window_query or default_window_query(),
            self._metrics,
            poll_interval=config.agent.window_poll_interval,
        )
        self._capture = CaptureBridge(
            key_hook or PynputKeyHook(),
            permissions or PlatformPermissionChecker(),
            self._channel,
            self._window_tracker.try_snapshot,
            self._metrics,
        )
        self._flusher = EventFlusher(
            self._channel,
            self._store,
            self._masker,
            self._shared_config,
            self._metrics,
        )

    @property
    def store(self) -> EventStore:
        return self._store

    @property
    def search(self) -> SearchEngine:
        return self._search

    @property
    def masker(self) -> Masker:
        return self._masker

    @property
    def capture(self) -> CaptureBridge:
        return self._capture

    # --- Lifecycle ---

    def start(self) -> bool:
        """Open the database and start all three threads.

        Returns:
            True if keyboard capture is active, False if the agent runs in
            degraded mode (no permission, or the hook failed to install).

        Raises:
            StoreError: If the database cannot be opened. Nothing is started.
        """
        with self._lifecycle_lock:
            if self._running:
                return self._capture.active

            self._store.open()
            self._stop_event.clear()
            self._metrics.mark_started()
            self._window_tracker.start(self._stop_event)
            self._flusher.start(self._stop_event)
            capturing = self._capture.start()
            self._running = True

        logger.info(f"KeyAI agent started (capture {'active' if capturing else 'degraded'})")
        return capturing

    def stop(self) -> None:
        """Stop capture, flush what is buffered, and join the threads."""
        with self._lifecycle_lock:
            if not self._running:
                return

            # Capture stops first so the final flush sees every event.
            self._capture.stop()
            self._stop_event.set()
            self._window_tracker.join(JOIN_TIMEOUT_SECS)
            self._flusher.join(JOIN_TIMEOUT_SECS)
            self._metrics.mark_stopped()
            self._running = False

        logger.info("KeyAI agent stopped")

    def is_running(self) -> bool:
        return self._running

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the agent is told to stop or ``timeout`` passes."""
        return self._stop_event.wait(timeout)

    # --- Configuration and status ---

    def get_config(self) -> AgentConfig:
        return self._shared_config.get()

    def update_config(self, config: AgentConfig) -> None:
        """Apply new agent settings to the running threads.

        Raises:
            ValueError: If ``config`` is invalid; the old settings are kept.
        """
        self._shared_config.update(config)
        self._window_tracker.poll_interval = config.window_poll_interval
        self._app_config.agent = self._shared_config.get()

    def get_metrics(self) -> dict[str, int]:
        return self._metrics.snapshot()

    def get_current_window(self) -> WindowInfo | None:
        return self._window_tracker.current()

    def check_capture(self) -> bool:
        """Re-check the key hook; a dead hook puts capture in degraded mode."""
        if not self._running:
            return False
        return self._capture.check_hook()

    def health_check(self) -> dict[str, str]:
        """Report database, search and agent status as short strings."""
        status = component_health(self._store, self._search)

        if not self._running:
            status["agent"] = "stopped"
        elif self.check_capture():
            status["agent"] = "running"
        else:
            status["agent"] = f"degraded: {self._capture.degraded_reason}"

        return status

    # --- Administration ---

    def clear_all(self) -> None:
        """Delete every captured event. Buffered events are flushed later as usual."""
        self._store.clear_all()

    def vacuum(self) -> None:
        self._store.vacuum()

    def optimize(self) -> None:
        self._search.optimize()

    def list_masking_rules(self) -> list[MaskingRule]:
        return self._masker.list_rules()

    def add_masking_rule(self, name: str, pattern: str, category: str = "custom") -> MaskingRule:
        """Register a custom masking rule on the running agent.

        Raises:
            PatternError: If ``pattern`` does not compile.
        """
        return self._masker.add_custom_pattern(name, pattern, category=category)

    def remove_masking_rule(self, name: str) -> bool:
        return self._masker.remove_rule(name)
