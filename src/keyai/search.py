"""Lexical, semantic and hybrid search over captured events.

Lexical search is FTS5 with BM25 ranking. Semantic search has no vector
index: it scans every stored event with derived text, computing and caching
missing embeddings on the way, and ranks by cosine similarity. Hybrid search
merges both ranked lists with Reciprocal Rank Fusion (RRF):

    score = sum(weight / (k + rank + 1)) for each list, rank 0-based

Rank fusion discards score magnitudes, since BM25 and cosine similarity are
not on comparable scales.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field

from keyai.db import DATABASE_ERRORS, OPERATIONAL_ERRORS
from keyai.embeddings import Embedder
from keyai.errors import KeyAIError, SearchError, StoreError
from keyai.models import StoredEvent
from keyai.store import EventStore, row_to_event
from keyai.vec import cosine_similarity

logger = logging.getLogger(__name__)

# WHAT: Default RRF k parameter.
# WHY: k=60 is the standard value from the original RRF paper.
DEFAULT_RRF_K = 60

# WHAT: Upper bound on events scanned by one semantic search.
SEMANTIC_SCAN_LIMIT = 10_000


@dataclass
class SearchOptions:
    """Per-query search settings.

    Attributes:
        limit: Maximum results to return.
        text_weight: Weight of the lexical RRF term in hybrid search.
        semantic_weight: Weight of the semantic RRF term in hybrid search.
        min_score_threshold: Minimum cosine similarity for semantic hits,
            re-applied to the fused score in hybrid search.
    """

    limit: int = 50
    text_weight: float = 0.7
    semantic_weight: float = 0.3
    min_score_threshold: float = 0.1


@dataclass
class SearchHit:
    """A lexical match.

    Attributes:
        event: The matched event.
        score: BM25 relevance score (higher = more relevant).
        snippet: Matched text with hits highlighted using **markers**.
    """

    event: StoredEvent
    score: float
    snippet: str


@dataclass
class SemanticHit:
    event: StoredEvent
    similarity: float


@dataclass
class FusedHit:
    """A hybrid result with its per-modality RRF contributions.

    A modality the event did not appear in contributes 0.0 and has rank None.
    """

    event: StoredEvent
    text_score: float
    semantic_score: float
    combined_score: float
    text_rank: int | None = None
    semantic_rank: int | None = None
    snippet: str = field(default="")

    def to_dict(self) -> dict:
        return {
            "event": self.event.to_dict(),
            "text_score": self.text_score,
            "semantic_score": self.semantic_score,
            "combined_score": self.combined_score,
            "text_rank": self.text_rank,
            "semantic_rank": self.semantic_rank,
            "snippet": self.snippet,
        }


def fts_search(conn: sqlite3.Connection, query: str, limit: int = 50) -> list[SearchHit]:
    """Search events using FTS5 full-text search with BM25 ranking.

    Args:
        conn: SQLite connection with initialized schema.
        query: Search query (supports FTS5 syntax: AND, OR, NOT, "phrase").
        limit: Maximum results to return.

    Returns:
        SearchHit objects sorted by relevance (highest first). Malformed
        FTS5 syntax yields an empty list.
    """
    if not query.strip():
        return []

    # WHAT: Escape special FTS5 characters that could break queries.
    # WHY: User input may contain quotes, parentheses, etc.
    safe_query = _escape_fts_query(query)

    sql = """
        SELECT
            e.*,
            bm25(events_fts) AS score,
            snippet(events_fts, -1, '**', '**', '...', 16) AS snippet
        FROM events_fts
        JOIN events e ON events_fts.rowid = e.id
        WHERE events_fts MATCH ?
        ORDER BY score
        LIMIT ?
    """

    try:
        rows = conn.execute(sql, (safe_query, limit)).fetchall()
    except OPERATIONAL_ERRORS as e:
        # WHAT: Handle FTS5 query syntax errors gracefully.
        # WHY: FTS5 rejects bare operators such as a lone AND.
        message = str(e).lower()
        if "fts5" in message or "syntax" in message:
            logger.debug(f"Rejected FTS query {query!r}: {e}")
            return []
        raise

    return [_row_to_search_hit(row) for row in rows]


def _escape_fts_query(query: str) -> str:
    """Escape special FTS5 characters in user query.

    FTS5 special characters: " ( ) * - : ^ . @ /
    A query containing any of them is wrapped in quotes and searched as
    a phrase.
    """
    special_chars = set('"():-^.@/*')
    if any(c in query for c in special_chars):
        escaped = query.replace('"', '""')
        return f'"{escaped}"'
    return query


def _row_to_search_hit(row) -> SearchHit:
    event = row_to_event(row)
    return SearchHit(
        event=event,
        score=abs(row["score"]),  # BM25 returns negative scores; flip for intuition
        snippet=row["snippet"] or event.derived_text or "",
    )


def _compute_rrf_score(
    text_rank: int | None,
    semantic_rank: int | None,
    k: int,
    text_weight: float,
    semantic_weight: float,
) -> tuple[float, float]:
    """Compute the weighted RRF terms of both modalities.

    Args:
        text_rank: 0-based rank in lexical results, or None.
        semantic_rank: 0-based rank in semantic results, or None.
        k: RRF k parameter.
        text_weight: Weight for the lexical contribution.
        semantic_weight: Weight for the semantic contribution.

    Returns:
        (text_score, semantic_score); an absent modality scores 0.0.
    """
    text_score = 0.0
    semantic_score = 0.0

    if text_rank is not None:
        text_score = text_weight / (k + text_rank + 1)

    if semantic_rank is not None:
        semantic_score = semantic_weight / (k + semantic_rank + 1)

    return text_score, semantic_score


def fuse_results(
    text_hits: list[SearchHit],
    semantic_hits: list[SemanticHit],
    options: SearchOptions,
    k: int = DEFAULT_RRF_K,
) -> list[FusedHit]:
    """Merge two ranked lists with weighted Reciprocal Rank Fusion.

    Results are keyed by event id, sorted by combined score (highest first),
    filtered by ``options.min_score_threshold`` and truncated to
    ``options.limit``.
    """
    text_ranks: dict[int, int] = {}
    events: dict[int, StoredEvent] = {}
    snippets: dict[int, str] = {}
    for rank, hit in enumerate(text_hits):
        text_ranks.setdefault(hit.event.id, rank)
        events.setdefault(hit.event.id, hit.event)
        snippets.setdefault(hit.event.id, hit.snippet)

    semantic_ranks: dict[int, int] = {}
    for rank, hit in enumerate(semantic_hits):
        semantic_ranks.setdefault(hit.event.id, rank)
        events.setdefault(hit.event.id, hit.event)

    fused: list[FusedHit] = []
    for event_id, event in events.items():
        text_rank = text_ranks.get(event_id)
        semantic_rank = semantic_ranks.get(event_id)
        text_score, semantic_score = _compute_rrf_score(
            text_rank=text_rank,
            semantic_rank=semantic_rank,
            k=k,
            text_weight=options.text_weight,
            semantic_weight=options.semantic_weight,
        )
        fused.append(
            FusedHit(
                event=event,
                text_score=text_score,
                semantic_score=semantic_score,
                combined_score=text_score + semantic_score,
                text_rank=text_rank,
                semantic_rank=semantic_rank,
                snippet=snippets.get(event_id) or event.derived_text or "",
            )
        )

    fused = [hit for hit in fused if hit.combined_score >= options.min_score_threshold]
    fused.sort(key=lambda h: h.combined_score, reverse=True)
    return fused[: options.limit]


class SearchEngine:
    """Search entry points over an EventStore.

    Args:
        store: The event store to search.
        embedder: Optional embedding collaborator. Without one (or when it
            reports unavailable) semantic search returns nothing and hybrid
            search is lexical only.
    """

    def __init__(self, store: EventStore, embedder: Embedder | None = None):
        self._store = store
        self._embedder = embedder

    def semantic_available(self) -> bool:
        return self._embedder is not None and self._embedder.is_available()

    def search_text(self, query: str, options: SearchOptions | None = None) -> list[SearchHit]:
        options = options or SearchOptions()
        logger.debug(f"Text search, limit={options.limit}")
        return self._store.search_text(query, options.limit)

    def _embed(self, text: str) -> list[float] | None:
        assert self._embedder is not None  # Checked by semantic_available()
        try:
            return self._embedder.embed(text)
        except Exception as e:
            raise SearchError(f"Embedding model failed: {e}") from e

    def search_semantic(self, query: str, options: SearchOptions | None = None) -> list[SemanticHit]:
        """Rank stored events by cosine similarity to the query.

        Embeddings missing from the cache are computed and stored as the
        scan reaches them. A failing cache write is logged and the computed
        vector is still used.

        Returns:
            SemanticHit objects with similarity >= min_score_threshold,
            most similar first. Empty when no embedder is available or the
            embedder fails.
        """
        options = options or SearchOptions()
        if not self.semantic_available():
            logger.debug("Semantic search skipped: no embedding model available")
            return []

        try:
            return self._rank_by_similarity(query, options)
        except SearchError as e:
            logger.warning(f"Semantic search unavailable: {e}")
            return []

    def _rank_by_similarity(self, query: str, options: SearchOptions) -> list[SemanticHit]:
        query_embedding = self._embed(query)
        if query_embedding is None:
            return []

        hits: list[SemanticHit] = []
        for event in self._store.iter_events_with_text(limit=SEMANTIC_SCAN_LIMIT):
            embedding = self._store.get_embedding(event.id)
            if embedding is None:
                embedding = self._embed(event.derived_text or "")
                if embedding is None:
                    continue
                try:
                    self._store.store_embedding(event.id, embedding)
                except StoreError as e:
                    logger.warning(f"Could not cache embedding for event {event.id}: {e}")

            similarity = cosine_similarity(query_embedding, embedding)
            if similarity >= options.min_score_threshold:
                hits.append(SemanticHit(event=event, similarity=similarity))

        hits.sort(key=lambda h: h.similarity, reverse=True)
        return hits[: options.limit]

    def search_hybrid(self, query: str, options: SearchOptions | None = None) -> list[FusedHit]:
        """Run lexical and semantic search and fuse them with RRF."""
        options = options or SearchOptions()
        text_hits = self.search_text(query, options)
        try:
            semantic_hits = self.search_semantic(query, options)
        except KeyAIError as e:
            logger.warning(f"Semantic search failed, using lexical results only: {e}")
            semantic_hits = []
        return fuse_results(text_hits, semantic_hits, options)

    def get_suggestions(self, partial: str, limit: int = 10) -> list[str]:
        """Distinct derived text of lexical matches for ``partial``.

        Errors yield an empty list.
        """
        try:
            hits = self._store.search_text(partial, limit * 4)
        except (StoreError, *DATABASE_ERRORS) as e:
            logger.warning(f"Could not build search suggestions: {e}")
            return []

        suggestions: list[str] = []
        for hit in hits:
            text = hit.event.derived_text
            if text and text.strip() and text not in suggestions:
                suggestions.append(text)
            if len(suggestions) >= limit:
                break
        return suggestions

    def optimize(self) -> None:
        """Optimize the full-text index and reclaim space."""
        logger.info("Optimizing search indexes")
        self._store.optimize()
        self._store.vacuum()
