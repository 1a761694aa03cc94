"""Local sentence embeddings for semantic search.

EmbeddingEngine implements the Embedder interface with a sentence-transformers
model. The library is an optional extra: without it, or when the model fails
to load, the engine reports itself unavailable, semantic search returns
nothing and hybrid search falls back to lexical results.

Loading a model is slow and may download weights, so it happens on the first
embed() call and never on an availability check.
"""

from __future__ import annotations

import importlib.util
import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from sentence_transformers import SentenceTransformer

logger = logging.getLogger(__name__)


@runtime_checkable
class Embedder(Protocol):
    """Anything that maps text to a fixed-dimension float vector."""

    def is_available(self) -> bool: ...

    def embed(self, text: str) -> list[float] | None: ...


def check_sentence_transformers_available() -> bool:
    """Check if sentence-transformers is installed, without importing it."""
    return importlib.util.find_spec("sentence_transformers") is not None


class EmbeddingEngine:
    """Embedder backed by a sentence-transformers model.

    Args:
        model_name: HuggingFace model id or local path.
        device: Torch device ("cpu", "cuda", "mps").
        cache_dir: Directory for downloaded weights; None uses the library
            default.
    """

    def __init__(self, model_name: str, device: str = "cpu", cache_dir: Path | None = None):
        self._model_name = model_name
        self._device = device
        self._cache_dir = cache_dir
        self._model: SentenceTransformer | None = None
        self._failed = False
        self._lock = threading.Lock()

    def is_available(self) -> bool:
        """True unless the library is missing or the model already failed to load."""
        if self._failed:
            return False
        return self._model is not None or check_sentence_transformers_available()

    def _ensure_model(self) -> SentenceTransformer | None:
        with self._lock:
            if self._model is not None or self._failed:
                return self._model
            try:
                from sentence_transformers import SentenceTransformer

                logger.info(f"Loading embedding model {self._model_name} on {self._device}")
                self._model = SentenceTransformer(
                    self._model_name,
                    device=self._device,
                    cache_folder=str(self._cache_dir) if self._cache_dir else None,
                )
            except Exception as e:
                # A failed load is final for this engine.
                self._failed = True
                logger.error(f"Embedding model {self._model_name} unavailable: {e}")
            return self._model

    def embed(self, text: str) -> list[float] | None:
        """Return the unit-length embedding of ``text``.

        Blank text and an unloadable model yield None. Errors raised by the
        model while encoding propagate to the caller.
        """
        if not text or not text.strip():
            return None
        model = self._ensure_model()
        if model is None:
            return None
        vector = model.encode(text, convert_to_numpy=True, normalize_embeddings=True)
        return vector.astype("float32").tolist()
