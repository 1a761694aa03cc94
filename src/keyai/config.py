"""Configuration management for KeyAI.

Handles loading, saving, and resolving paths for the KeyAI data directory.
All configuration has sensible defaults, so KeyAI works out of the box
without any config file. User overrides are stored in ~/.keyai/config.json
(or $KEYAI_HOME/config.json).

Two layers live here:
- KeyAIConfig: application settings (paths, embedding model, search defaults)
  with a nested AgentConfig.
- SharedConfig: the AgentConfig as seen by the running capture threads,
  guarded by a reader-writer lock.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path

from keyai.rwlock import ReadWriteLock

logger = logging.getLogger(__name__)

DEFAULT_MODEL_NAME = "sentence-transformers/all-MiniLM-L6-v2"


def _default_keyai_home() -> Path:
    """Return the default KeyAI home directory ($KEYAI_HOME or ~/.keyai)."""
    env_home = os.environ.get("KEYAI_HOME")
    if env_home:
        return Path(env_home).expanduser()
    return Path.home() / ".keyai"


def _default_embedding_device() -> str:
    return os.environ.get("KEYAI_EMBEDDING_DEVICE") or "cpu"


def _default_ignored_applications() -> list[str]:
    return ["1password", "bitwarden", "keepass", "lastpass"]


def _default_ignored_window_patterns() -> list[str]:
    return [r"(?i)\bpassword\b", r"(?i)\bsenha\b"]


@dataclass
class AgentConfig:
    """Runtime settings read by the capture, window and flush threads.

    Attributes:
        buffer_size: Flush once this many filtered events are buffered.
        flush_interval_secs: Flush once this much time has passed since the
            previous flush, whatever the batch size.
        capture_modifiers: Keep Shift/Ctrl/Alt/Meta transitions.
        capture_function_keys: Keep F1-F24 transitions.
        ignored_applications: Case-insensitive substrings of application
            names whose events are dropped.
        ignored_window_patterns: Regexes matched against window titles.
        window_poll_interval: Seconds between active-window queries.
        receive_timeout: Bounded wait of the flusher on an empty channel;
            caps shutdown latency.
    """

    buffer_size: int = 100
    flush_interval_secs: float = 5.0
    capture_modifiers: bool = True
    capture_function_keys: bool = True
    ignored_applications: list[str] = field(default_factory=_default_ignored_applications)
    ignored_window_patterns: list[str] = field(default_factory=_default_ignored_window_patterns)
    window_poll_interval: float = 0.5
    receive_timeout: float = 0.1

    def validate(self) -> None:
        """Raise ValueError if any setting is out of range."""
        if self.buffer_size < 1:
            raise ValueError("buffer_size must be at least 1")
        if self.flush_interval_secs <= 0:
            raise ValueError("flush_interval_secs must be positive")
        if self.window_poll_interval <= 0:
            raise ValueError("window_poll_interval must be positive")
        if self.receive_timeout <= 0:
            raise ValueError("receive_timeout must be positive")

    def to_dict(self) -> dict:
        """Serialize to a JSON-compatible dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "AgentConfig":
        """Deserialize from a dictionary, with defaults for missing keys."""
        defaults = cls()
        return cls(
            buffer_size=data.get("buffer_size", defaults.buffer_size),
            flush_interval_secs=data.get("flush_interval_secs", defaults.flush_interval_secs),
            capture_modifiers=data.get("capture_modifiers", defaults.capture_modifiers),
            capture_function_keys=data.get("capture_function_keys", defaults.capture_function_keys),
            ignored_applications=list(data.get("ignored_applications", defaults.ignored_applications)),
            ignored_window_patterns=list(data.get("ignored_window_patterns", defaults.ignored_window_patterns)),
            window_poll_interval=data.get("window_poll_interval", defaults.window_poll_interval),
            receive_timeout=data.get("receive_timeout", defaults.receive_timeout),
        )


@dataclass
class KeyAIConfig:
    """Configuration for the KeyAI application."""

    # WHAT: Root directory for the database and config file.
    keyai_home: Path = field(default_factory=_default_keyai_home)
    db_filename: str = "keyai.db"

    # WHAT: SQLCipher passphrase. None keeps the database in plain SQLite.
    db_key: str | None = None

    log_level: str = "INFO"

    # Embedding model for semantic search
    embedding_model: str = DEFAULT_MODEL_NAME
    embedding_device: str = field(default_factory=_default_embedding_device)

    # Search defaults
    search_limit: int = 50
    text_weight: float = 0.7
    semantic_weight: float = 0.3
    min_score_threshold: float = 0.1

    # WHAT: Masking rules added with `keyai patterns add`, and rules switched off.
    custom_patterns: list[dict] = field(default_factory=list)
    disabled_rules: list[str] = field(default_factory=list)

    agent: AgentConfig = field(default_factory=AgentConfig)

    def to_dict(self) -> dict:
        """Serialize to a JSON-compatible dictionary."""
        data = asdict(self)
        data["keyai_home"] = str(self.keyai_home)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "KeyAIConfig":
        """Deserialize from a dictionary, with defaults for missing keys."""
        defaults = cls()
        return cls(
            keyai_home=Path(data.get("keyai_home") or defaults.keyai_home).expanduser(),
            db_filename=data.get("db_filename", defaults.db_filename),
            db_key=data.get("db_key", defaults.db_key),
            log_level=data.get("log_level", defaults.log_level),
            embedding_model=data.get("embedding_model", defaults.embedding_model),
            embedding_device=data.get("embedding_device", defaults.embedding_device),
            search_limit=data.get("search_limit", defaults.search_limit),
            text_weight=data.get("text_weight", defaults.text_weight),
            semantic_weight=data.get("semantic_weight", defaults.semantic_weight),
            min_score_threshold=data.get("min_score_threshold", defaults.min_score_threshold),
            custom_patterns=[dict(p) for p in data.get("custom_patterns", [])],
            disabled_rules=list(data.get("disabled_rules", [])),
            agent=AgentConfig.from_dict(data.get("agent") or {}),
        )


class SharedConfig:
    """AgentConfig shared between the capture threads and the admin API.

    Reads are frequent (every captured event) and writes are rare, so the
    value is guarded by a ReadWriteLock. Callers always receive a copy.
    """

    def __init__(self, config: AgentConfig | None = None):
        self._lock = ReadWriteLock()
        self._config = config or AgentConfig()
        self._config.validate()

    def get(self) -> AgentConfig:
        """Return a copy of the current configuration."""
        with self._lock.read_locked():
            return _copy_agent_config(self._config)

    def update(self, config: AgentConfig) -> None:
        """Replace the configuration after validating it.

        Raises:
            ValueError: If ``config`` is invalid; the old value is kept.
        """
        config.validate()
        with self._lock.write_locked():
            self._config = _copy_agent_config(config)
        logger.info("Agent configuration updated")


def _copy_agent_config(config: AgentConfig) -> AgentConfig:
    return replace(
        config,
        ignored_applications=list(config.ignored_applications),
        ignored_window_patterns=list(config.ignored_window_patterns),
    )


def get_keyai_home(config: KeyAIConfig | None = None) -> Path:
    """Return the KeyAI home directory, creating it if needed."""
    home = config.keyai_home if config else _default_keyai_home()
    home.mkdir(parents=True, exist_ok=True)
    return home


def get_db_path(config: KeyAIConfig | None = None) -> Path:
    """Return the path to the local event database."""
    config = config or KeyAIConfig()
    return get_keyai_home(config) / config.db_filename


def get_models_dir(config: KeyAIConfig | None = None) -> Path:
    """Return the directory where downloaded embedding models are cached."""
    return get_keyai_home(config) / "models"


def get_config_path(config: KeyAIConfig | None = None) -> Path:
    """Return the path to the config file."""
    home = config.keyai_home if config else _default_keyai_home()
    return home / "config.json"


def load_config(keyai_home: Path | None = None) -> KeyAIConfig:
    """Load configuration from <home>/config.json.

    Returns default config if the file doesn't exist or is invalid.
    KeyAI should always start, even with a broken config file.

    Args:
        keyai_home: Override the home directory. Useful for testing.
    """
    home = keyai_home if keyai_home is not None else _default_keyai_home()
    config_path = home / "config.json"

    config = KeyAIConfig()
    if config_path.exists():
        try:
            data = json.loads(config_path.read_text(encoding="utf-8"))
            config = KeyAIConfig.from_dict(data)
            config.agent.validate()
        except (json.JSONDecodeError, OSError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring unreadable config at {config_path}: {e}")
            config = KeyAIConfig()

    if keyai_home is not None:
        config.keyai_home = keyai_home
    return config


def save_config(config: KeyAIConfig) -> None:
    """Save configuration to <home>/config.json.

    Creates the directory if needed. Uses atomic write (temp file + rename).
    """
    config.keyai_home.mkdir(parents=True, exist_ok=True)
    config_path = config.keyai_home / "config.json"
    tmp_path = config_path.with_suffix(".json.tmp")

    try:
        content = json.dumps(config.to_dict(), indent=2)
        tmp_path.write_text(content, encoding="utf-8")
        tmp_path.replace(config_path)
    except OSError:
        if tmp_path.exists():
            tmp_path.unlink()
        raise
