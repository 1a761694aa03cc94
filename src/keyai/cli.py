"""CLI commands for KeyAI.

Used by __main__.py. Every command returns a process exit code: 0 on
success, 1 on error, with errors printed to stderr.
"""

import json
import logging
import signal
import sys
import threading
import time

from keyai.agent import Agent, component_health
from keyai.config import KeyAIConfig, get_db_path, get_models_dir, load_config, save_config
from keyai.db import check_fts5_available, check_sqlcipher_available
from keyai.embeddings import EmbeddingEngine, check_sentence_transformers_available
from keyai.errors import KeyAIError, PatternError
from keyai.masker import CUSTOM_RULE_PRIORITY, MaskingRule, build_masker
from keyai.search import SearchEngine, SearchOptions
from keyai.store import EventStore

SEARCH_MODES = ("text", "semantic", "hybrid")


def _format_size(size_bytes: int) -> str:
    if size_bytes < 1024:
        return f"{size_bytes} B"
    if size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    return f"{size_bytes / (1024 * 1024):.1f} MB"


def _open_store(config: KeyAIConfig) -> EventStore:
    store = EventStore(get_db_path(config), key=config.db_key)
    store.open()
    return store


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def cmd_run(config: KeyAIConfig | None = None, agent: Agent | None = None, stop_requested: threading.Event | None = None) -> int:
    """Run the capture agent in the foreground until Ctrl-C or SIGTERM.

    Returns 1 if the database cannot be opened; degraded capture still
    returns 0 on a clean stop.
    """
    config = config or load_config()
    configure_logging(config.log_level)
    stop_requested = stop_requested or threading.Event()

    try:
        agent = agent or Agent(config)
        capturing = agent.start()
    except KeyAIError as e:
        print(f"KeyAI run error: {e}", file=sys.stderr)
        return 1

    if not capturing:
        print(f"KeyAI capture disabled: {agent.capture.degraded_reason}", file=sys.stderr)

    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGTERM, lambda *_: stop_requested.set())

    print(f"KeyAI running, database {get_db_path(config)}. Press Ctrl-C to stop.")
    try:
        while not stop_requested.wait(1.0):
            if capturing and not agent.check_capture():
                capturing = False
                print(f"KeyAI capture disabled: {agent.capture.degraded_reason}", file=sys.stderr)
    except KeyboardInterrupt:
        pass
    finally:
        agent.stop()

    metrics = agent.get_metrics()
    print(f"events_captured: {metrics['events_captured']}")
    print(f"events_stored: {metrics['events_stored']}")
    print(f"events_filtered: {metrics['events_filtered']}")
    print(f"events_dropped: {metrics['events_dropped']}")
    return 0


def cmd_status(config: KeyAIConfig | None = None) -> int:
    """Print database location, counts, size and feature availability."""
    try:
        config = config or load_config()
        store = _open_store(config)
        try:
            stats = store.get_stats()
        finally:
            store.close()

        print(f"database: {get_db_path(config)}")
        print(f"encrypted: {'yes' if config.db_key else 'no'}")
        print(f"events: {stats.total_events}")
        print(f"embeddings: {stats.embedding_count}/{stats.total_events}")
        print(f"db_size: {_format_size(stats.total_size_bytes)}")
        print(f"oldest_event: {stats.oldest_event if stats.oldest_event is not None else 'none'}")
        print(f"newest_event: {stats.newest_event if stats.newest_event is not None else 'none'}")
        print(f"fts5_available: {'yes' if check_fts5_available() else 'no'}")
        print(f"sqlcipher_available: {'yes' if check_sqlcipher_available() else 'no'}")
        print(f"semantic_search: {'yes' if check_sentence_transformers_available() else 'no'}")
        print(f"custom_patterns: {len(config.custom_patterns)}")
        return 0
    except Exception as e:
        print(f"KeyAI status error: {e}", file=sys.stderr)
        return 1


def cmd_search(
    query: str,
    mode: str = "text",
    limit: int | None = None,
    threshold: float | None = None,
    as_json: bool = False,
    config: KeyAIConfig | None = None,
) -> int:
    """Search captured text and print the hits.

    Args:
        query: Search query.
        mode: One of text, semantic, hybrid.
        limit: Maximum results (config search_limit if None).
        threshold: Minimum score (config min_score_threshold if None).
        as_json: Print one JSON document instead of text lines.
    """
    if mode not in SEARCH_MODES:
        print(f"KeyAI search error: unknown mode '{mode}' (use {', '.join(SEARCH_MODES)})", file=sys.stderr)
        return 1

    try:
        config = config or load_config()
        options = SearchOptions(
            limit=limit if limit is not None else config.search_limit,
            text_weight=config.text_weight,
            semantic_weight=config.semantic_weight,
            min_score_threshold=threshold if threshold is not None else config.min_score_threshold,
        )
        store = _open_store(config)
        try:
            embedder = None
            if mode != "text":
                embedder = EmbeddingEngine(
                    config.embedding_model, device=config.embedding_device, cache_dir=get_models_dir(config)
                )
            engine = SearchEngine(store, embedder)

            started = time.perf_counter()
            if mode == "text":
                results = [
                    {"event": h.event.to_dict(), "score": h.score, "snippet": h.snippet}
                    for h in engine.search_text(query, options)
                ]
            elif mode == "semantic":
                results = [
                    {"event": h.event.to_dict(), "score": h.similarity, "snippet": h.event.derived_text or ""}
                    for h in engine.search_semantic(query, options)
                ]
            else:
                results = [
                    {**h.to_dict(), "score": h.combined_score} for h in engine.search_hybrid(query, options)
                ]
            elapsed_ms = int((time.perf_counter() - started) * 1000)
        finally:
            store.close()

        if as_json:
            print(json.dumps({"results": results, "search_time_ms": elapsed_ms}, indent=2, ensure_ascii=False))
            return 0

        for result in results:
            event = result["event"]
            context = event["application"] or "-"
            print(f"[{event['timestamp']}] {context} {result['score']:.4f} {result['snippet']}")
        print(f"{len(results)} result(s) in {elapsed_ms} ms")
        return 0
    except Exception as e:
        print(f"KeyAI search error: {e}", file=sys.stderr)
        return 1


def cmd_suggest(partial: str, limit: int = 10, config: KeyAIConfig | None = None) -> int:
    try:
        config = config or load_config()
        store = _open_store(config)
        try:
            suggestions = SearchEngine(store).get_suggestions(partial, limit)
        finally:
            store.close()
        for suggestion in suggestions:
            print(suggestion)
        return 0
    except Exception as e:
        print(f"KeyAI suggest error: {e}", file=sys.stderr)
        return 1


def cmd_clear(confirm: bool = False, config: KeyAIConfig | None = None) -> int:
    """Delete every captured event. Requires ``--yes``."""
    if not confirm:
        print("KeyAI clear: this deletes all captured data. Re-run with --yes to confirm.", file=sys.stderr)
        return 1
    try:
        config = config or load_config()
        store = _open_store(config)
        try:
            store.clear_all()
        finally:
            store.close()
        print("All captured data removed.")
        return 0
    except Exception as e:
        print(f"KeyAI clear error: {e}", file=sys.stderr)
        return 1


def cmd_vacuum(config: KeyAIConfig | None = None) -> int:
    try:
        config = config or load_config()
        store = _open_store(config)
        try:
            before = store.get_stats().total_size_bytes
            store.vacuum()
            after = store.get_stats().total_size_bytes
        finally:
            store.close()
        print(f"db_size: {_format_size(before)} -> {_format_size(after)}")
        return 0
    except Exception as e:
        print(f"KeyAI vacuum error: {e}", file=sys.stderr)
        return 1


def cmd_optimize(rebuild: bool = False, config: KeyAIConfig | None = None) -> int:
    """Optimize the search index, or rebuild it from the events table."""
    try:
        config = config or load_config()
        store = _open_store(config)
        try:
            if rebuild:
                count = store.rebuild_search_index()
                print(f"Search index rebuilt ({count} events).")
            else:
                SearchEngine(store).optimize()
                print("Search index optimized.")
        finally:
            store.close()
        return 0
    except Exception as e:
        print(f"KeyAI optimize error: {e}", file=sys.stderr)
        return 1


def cmd_export(
    path: str,
    start: int = 0,
    end: int | None = None,
    config: KeyAIConfig | None = None,
) -> int:
    """Export stored (already masked) events to a JSON file."""
    try:
        config = config or load_config()
        store = _open_store(config)
        try:
            count = store.export_events(path, start=start, end=end)
        finally:
            store.close()
        print(f"Exported {count} events to {path}.")
        return 0
    except Exception as e:
        print(f"KeyAI export error: {e}", file=sys.stderr)
        return 1


def cmd_health(config: KeyAIConfig | None = None) -> int:
    """Print database, search engine and agent status. Returns 1 if any is an error."""
    try:
        config = config or load_config()
        store = EventStore(get_db_path(config), key=config.db_key)
        embedder = EmbeddingEngine(
            config.embedding_model, device=config.embedding_device, cache_dir=get_models_dir(config)
        )
        try:
            status = component_health(store, SearchEngine(store, embedder))
        finally:
            store.close()
        # Agent state lives in the `keyai run` process.
        status["agent"] = "stopped"
    except Exception as e:
        print(f"KeyAI health error: {e}", file=sys.stderr)
        return 1

    for name, value in status.items():
        print(f"{name}: {value}")
    return 1 if any(value.startswith("error") for value in status.values()) else 0


def cmd_patterns_list(config: KeyAIConfig | None = None) -> int:
    config = config or load_config()
    masker = build_masker(config.custom_patterns, config.disabled_rules)
    for rule in masker.list_rules():
        state = "on" if rule.enabled else "off"
        print(f"{rule.name}\t{rule.category}\t{rule.priority}\t{state}\t{rule.pattern}")
    return 0


def cmd_patterns_add(name: str, pattern: str, category: str = "custom", config: KeyAIConfig | None = None) -> int:
    """Validate and persist a custom masking rule.

    The running agent picks it up on its next start.
    """
    try:
        MaskingRule(name=name, pattern=pattern, category=category)
    except PatternError as e:
        print(f"KeyAI patterns error: {e}", file=sys.stderr)
        return 1

    try:
        config = config or load_config()
        config.custom_patterns = [p for p in config.custom_patterns if p.get("name") != name]
        config.custom_patterns.append(
            {"name": name, "pattern": pattern, "category": category, "priority": CUSTOM_RULE_PRIORITY}
        )
        if name in config.disabled_rules:
            config.disabled_rules.remove(name)
        save_config(config)
        print(f"Masking rule '{name}' added.")
        return 0
    except Exception as e:
        print(f"KeyAI patterns error: {e}", file=sys.stderr)
        return 1


def cmd_patterns_remove(name: str, config: KeyAIConfig | None = None) -> int:
    """Remove a custom rule, or disable a built-in one."""
    try:
        config = config or load_config()
        remaining = [p for p in config.custom_patterns if p.get("name") != name]
        if len(remaining) != len(config.custom_patterns):
            config.custom_patterns = remaining
            save_config(config)
            print(f"Masking rule '{name}' removed.")
            return 0

        builtin = build_masker([], []).rule_names()
        if name not in builtin:
            print(f"KeyAI patterns error: no masking rule named '{name}'", file=sys.stderr)
            return 1
        if name not in config.disabled_rules:
            config.disabled_rules.append(name)
            save_config(config)
        print(f"Built-in masking rule '{name}' disabled.")
        return 0
    except Exception as e:
        print(f"KeyAI patterns error: {e}", file=sys.stderr)
        return 1


def cmd_patterns_enable(name: str, config: KeyAIConfig | None = None) -> int:
    try:
        config = config or load_config()
        if name not in config.disabled_rules:
            print(f"Masking rule '{name}' is already enabled.")
            return 0
        config.disabled_rules.remove(name)
        save_config(config)
        print(f"Masking rule '{name}' enabled.")
        return 0
    except Exception as e:
        print(f"KeyAI patterns error: {e}", file=sys.stderr)
        return 1
