"""KeyAI: local keyboard capture with PII masking and hybrid search.

Captures keystrokes on the local machine, removes personal data (CPF, CNPJ,
RG, email, phone, card numbers, IPs, credentialed URLs) before anything is
written, stores the redacted stream in SQLite with an FTS5 index, and serves
it back through lexical, semantic and Reciprocal Rank Fusion search.

Public API:
    - Agent: Capture agent lifecycle, config, metrics, admin operations
    - KeyAIConfig, AgentConfig, SharedConfig, load_config, save_config: Configuration
    - Masker, MaskingRule, default_rules, build_masker: PII masking
    - should_drop: Event filtering
    - EventStore: SQLite + FTS5 event storage
    - SearchEngine, SearchOptions, SearchHit, SemanticHit, FusedHit: Search
    - EmbeddingEngine, Embedder: Embedding generation
    - WindowTracker, WindowQuery, default_window_query: Active window tracking
    - CaptureBridge, PynputKeyHook, key_symbol: Keyboard capture
    - EventFlusher: Buffering and batch commit
    - AgentMetrics: Pipeline counters
    - CapturedEvent, StoredEvent, WindowInfo, Transition, DatabaseStats: Data model
    - KeyAIError and subclasses: Error taxonomy
"""

__version__ = "0.1.0"

from keyai.agent import Agent
from keyai.capture import CaptureBridge, PynputKeyHook, key_symbol
from keyai.config import AgentConfig, KeyAIConfig, SharedConfig, load_config, save_config
from keyai.embeddings import Embedder, EmbeddingEngine
from keyai.errors import (
    CaptureError,
    KeyAIError,
    PatternError,
    PermissionDeniedError,
    SearchError,
    StoreError,
)
from keyai.filters import should_drop
from keyai.flusher import EventFlusher
from keyai.masker import Masker, MaskingRule, build_masker, default_rules
from keyai.metrics import AgentMetrics
from keyai.models import CapturedEvent, DatabaseStats, StoredEvent, Transition, WindowInfo
from keyai.search import DEFAULT_RRF_K, FusedHit, SearchEngine, SearchHit, SearchOptions, SemanticHit
from keyai.store import EventStore
from keyai.window import WindowQuery, WindowTracker, default_window_query

__all__ = [
    "Agent",
    "AgentConfig",
    "AgentMetrics",
    "CaptureBridge",
    "CaptureError",
    "CapturedEvent",
    "DEFAULT_RRF_K",
    "DatabaseStats",
    "Embedder",
    "EmbeddingEngine",
    "EventFlusher",
    "EventStore",
    "FusedHit",
    "KeyAIConfig",
    "KeyAIError",
    "Masker",
    "MaskingRule",
    "PatternError",
    "PermissionDeniedError",
    "PynputKeyHook",
    "SearchEngine",
    "SearchError",
    "SearchHit",
    "SearchOptions",
    "SemanticHit",
    "SharedConfig",
    "StoreError",
    "StoredEvent",
    "Transition",
    "WindowInfo",
    "WindowQuery",
    "WindowTracker",
    "build_masker",
    "default_rules",
    "default_window_query",
    "key_symbol",
    "load_config",
    "save_config",
    "should_drop",
]
