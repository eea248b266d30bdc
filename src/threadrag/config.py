"""threadrag configuration loader.

Priority (high → low):
  1. CLI flags           (handled at call site — not in this module)
  2. Environment variables  (THREADRAG_*)
  3. Per-project threadrag.yaml  (next to .threadrag.db)
  4. Global ~/.threadrag/config.yaml  (no secrets)
  5. Hardcoded defaults

Config files must never contain API keys or the rate-limit salt; both come
from environment variables. All YAML reads use yaml.safe_load().
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".threadrag"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "threadrag.yaml"

# Fields that look like a secret are forbidden in config files.
# Matches: api_key, apikey, api-key, api_secret, _token (suffix), standalone token,
# standalone secret, _secret (suffix), password, passwd, credential(s), salt.
# Does NOT match legitimate config keys like token_budget or max_tokens.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"
    r"|_token$"
    r"|^token$"
    r"|_secret$"
    r"|^secret$"
    r"|passw(?:ord|d)"
    r"|credential"
    r"|salt",
    re.IGNORECASE,
)

_KNOWN_SECTIONS: frozenset[str] = frozenset(
    ["database", "dataset", "chunking", "embedding", "retrieval", "generation", "rate_limit"]
)

# Fields an embedding backfill run may be narrowed by.
FILTER_KEYS: frozenset[str] = frozenset(
    ["thread_key", "message_key", "chunk_index", "chunker_params"]
)

# Provider maximum rows per dataset page.
MAX_PAGE_SIZE = 100


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when configuration is invalid, forbidden or incomplete."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class DatabaseCfg:
    """Store location (threadrag.yaml: database:)."""

    path: str = ".threadrag.db"


@dataclass
class DatasetCfg:
    """Remote dataset source (threadrag.yaml: dataset:).

    Attributes:
        base_url: Rows endpoint of the dataset server.
        dataset: Dataset identifier on the server.
        config: Dataset configuration name.
        split: Dataset split.
        page_size: Rows requested per page (1–100).
        start_offset: Row offset the ingestion run starts at.
        max_rows: Stop after this many rows (0 = no cap).
        page_delay_ms: Pause between page fetches.
        store_raw: Keep each message's canonical JSON alongside the parsed fields.
    """

    base_url: str = "https://datasets-server.huggingface.co/rows"
    dataset: str = "notesbymuneeb/epstein-emails"
    config: str = "default"
    split: str = "train"
    page_size: int = 100
    start_offset: int = 0
    max_rows: int = 0
    page_delay_ms: int = 0
    store_raw: bool = False


@dataclass
class ChunkingCfg:
    """Chunker parameters (threadrag.yaml: chunking:)."""

    max_chars: int = 2000
    overlap_chars: int = 200
    batch_messages: int = 200


@dataclass
class EmbeddingCfg:
    """Embedding backfill configuration (threadrag.yaml: embedding:)."""

    model: str = "openai/text-embedding-3-small"
    batch_size: int = 64
    delay_ms: int = 250
    max_chunks: int = 0
    filter: dict[str, Any] = field(default_factory=dict)


@dataclass
class RetrievalCfg:
    """Retrieval configuration (threadrag.yaml: retrieval:)."""

    top_k: int = 8
    num_candidates: int | None = None
    token_budget: int = 6_000


@dataclass
class GenerationCfg:
    """Answer generation configuration (threadrag.yaml: generation:)."""

    model: str = "openai/gpt-4o-mini"


@dataclass
class RateLimitCfg:
    """Request rate limiting (threadrag.yaml: rate_limit:).

    The salt is read from THREADRAG_RATE_LIMIT_SALT only.
    """

    window_seconds: int = 60
    max_requests: int = 30
    retrieve_max_requests: int = 60
    salt: str = ""


@dataclass
class ThreadragConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    database: DatabaseCfg = field(default_factory=DatabaseCfg)
    dataset: DatasetCfg = field(default_factory=DatasetCfg)
    chunking: ChunkingCfg = field(default_factory=ChunkingCfg)
    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    retrieval: RetrievalCfg = field(default_factory=RetrievalCfg)
    generation: GenerationCfg = field(default_factory=GenerationCfg)
    rate_limit: RateLimitCfg = field(default_factory=RateLimitCfg)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any secret-like key names."""

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _API_KEY_RE.search(str(k)):
                    raise ConfigError(
                        f"Config '{source}' contains a forbidden key '{full}'.\n"
                        f"  Secrets must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name} and use:\n"
                        f"    export {_env_name_for(full)}=<value>"
                    )
                _scan(v, full)

    _scan(data, "")


def _env_name_for(dotted_key: str) -> str:
    if dotted_key.lower().endswith("salt"):
        return "THREADRAG_RATE_LIMIT_SALT"
    return dotted_key.rsplit(".", 1)[-1].upper().replace("-", "_")


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}' — ignored.",
                UserWarning,
                stacklevel=4,
            )


def validate_config(cfg: ThreadragConfig) -> None:
    """Reject invalid settings before any pipeline work starts.

    Raises:
        ConfigError: On invalid chunking parameters, page size, batch sizes,
            rate-limit values or embedding filter keys.
    """
    ch = cfg.chunking
    if ch.max_chars <= 0:
        raise ConfigError(f"chunking.max_chars must be > 0, got {ch.max_chars}.")
    if ch.overlap_chars < 0 or ch.overlap_chars >= ch.max_chars:
        raise ConfigError(
            f"chunking.overlap_chars must be in [0, max_chars), "
            f"got {ch.overlap_chars} with max_chars={ch.max_chars}."
        )
    if ch.batch_messages < 1:
        raise ConfigError(f"chunking.batch_messages must be >= 1, got {ch.batch_messages}.")

    ds = cfg.dataset
    if not 1 <= ds.page_size <= MAX_PAGE_SIZE:
        raise ConfigError(f"dataset.page_size must be in 1..{MAX_PAGE_SIZE}, got {ds.page_size}.")
    if ds.start_offset < 0 or ds.max_rows < 0 or ds.page_delay_ms < 0:
        raise ConfigError("dataset.start_offset, max_rows and page_delay_ms must be >= 0.")

    em = cfg.embedding
    if em.batch_size < 1:
        raise ConfigError(f"embedding.batch_size must be >= 1, got {em.batch_size}.")
    if em.delay_ms < 0 or em.max_chunks < 0:
        raise ConfigError("embedding.delay_ms and embedding.max_chunks must be >= 0.")
    unknown = set(em.filter) - FILTER_KEYS
    if unknown:
        raise ConfigError(
            f"embedding.filter has unsupported key(s): {', '.join(sorted(unknown))}.\n"
            f"  Allowed: {', '.join(sorted(FILTER_KEYS))}"
        )

    rl = cfg.rate_limit
    if rl.window_seconds < 1 or rl.max_requests < 1 or rl.retrieve_max_requests < 1:
        raise ConfigError("rate_limit.window_seconds and max_requests values must be >= 1.")


def require_salt(cfg: ThreadragConfig) -> str:
    """Return the rate-limit salt, or raise ConfigError if it is not set."""
    if not cfg.rate_limit.salt:
        raise ConfigError(
            "Rate-limit salt is not set.\n"
            "  Set:  export THREADRAG_RATE_LIMIT_SALT=<random string>"
        )
    return cfg.rate_limit.salt


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _read_yaml(path: Path) -> dict[str, Any]:
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config '{path}' must be a YAML mapping, got {type(data).__name__}.")
    return data


def _cfg_from_dict(data: dict[str, Any]) -> ThreadragConfig:
    """Build a *ThreadragConfig* from a merged raw dict."""
    cfg = ThreadragConfig()
    for section in sorted(_KNOWN_SECTIONS):
        value = data.get(section)
        if value is not None and not isinstance(value, dict):
            raise ConfigError(
                f"Config section '{section}' must be a mapping, got {type(value).__name__}."
            )

    if "database" in data:
        db = data["database"] or {}
        cfg.database = DatabaseCfg(path=str(db.get("path", cfg.database.path)))

    if "dataset" in data:
        ds = data["dataset"] or {}
        d = cfg.dataset
        cfg.dataset = DatasetCfg(
            base_url=str(ds.get("base_url", d.base_url)),
            dataset=str(ds.get("dataset", d.dataset)),
            config=str(ds.get("config", d.config)),
            split=str(ds.get("split", d.split)),
            page_size=int(ds.get("page_size", d.page_size)),
            start_offset=int(ds.get("start_offset", d.start_offset)),
            max_rows=int(ds.get("max_rows", d.max_rows)),
            page_delay_ms=int(ds.get("page_delay_ms", d.page_delay_ms)),
            store_raw=_as_bool(ds.get("store_raw", d.store_raw)),
        )

    if "chunking" in data:
        ch = data["chunking"] or {}
        c = cfg.chunking
        cfg.chunking = ChunkingCfg(
            max_chars=int(ch.get("max_chars", c.max_chars)),
            overlap_chars=int(ch.get("overlap_chars", c.overlap_chars)),
            batch_messages=int(ch.get("batch_messages", c.batch_messages)),
        )

    if "embedding" in data:
        em = data["embedding"] or {}
        e = cfg.embedding
        raw_filter = em.get("filter") or {}
        if not isinstance(raw_filter, dict):
            raise ConfigError("embedding.filter must be a mapping of field: value.")
        cfg.embedding = EmbeddingCfg(
            model=str(em.get("model", e.model)),
            batch_size=int(em.get("batch_size", e.batch_size)),
            delay_ms=int(em.get("delay_ms", e.delay_ms)),
            max_chunks=int(em.get("max_chunks", e.max_chunks)),
            filter=dict(raw_filter),
        )

    if "retrieval" in data:
        rt = data["retrieval"] or {}
        r = cfg.retrieval
        num_candidates = rt.get("num_candidates", r.num_candidates)
        cfg.retrieval = RetrievalCfg(
            top_k=int(rt.get("top_k", r.top_k)),
            num_candidates=int(num_candidates) if num_candidates is not None else None,
            token_budget=int(rt.get("token_budget", r.token_budget)),
        )

    if "generation" in data:
        gen = data["generation"] or {}
        cfg.generation = GenerationCfg(model=str(gen.get("model", cfg.generation.model)))

    if "rate_limit" in data:
        rl = data["rate_limit"] or {}
        r2 = cfg.rate_limit
        cfg.rate_limit = RateLimitCfg(
            window_seconds=int(rl.get("window_seconds", r2.window_seconds)),
            max_requests=int(rl.get("max_requests", r2.max_requests)),
            retrieve_max_requests=int(
                rl.get("retrieve_max_requests", r2.retrieve_max_requests)
            ),
        )

    return cfg


# (env var, section, attribute, converter)
_ENV_OVERRIDES: tuple[tuple[str, str, str, Any], ...] = (
    ("THREADRAG_DB_PATH", "database", "path", str),
    ("THREADRAG_DATASET", "dataset", "dataset", str),
    ("THREADRAG_DATASET_CONFIG", "dataset", "config", str),
    ("THREADRAG_DATASET_SPLIT", "dataset", "split", str),
    ("THREADRAG_MAX_ROWS", "dataset", "max_rows", int),
    ("THREADRAG_PAGE_DELAY_MS", "dataset", "page_delay_ms", int),
    ("THREADRAG_STORE_RAW_MESSAGE", "dataset", "store_raw", _as_bool),
    ("THREADRAG_CHUNK_MAX_CHARS", "chunking", "max_chars", int),
    ("THREADRAG_CHUNK_OVERLAP_CHARS", "chunking", "overlap_chars", int),
    ("THREADRAG_CHUNK_BATCH_MESSAGES", "chunking", "batch_messages", int),
    ("THREADRAG_EMBEDDING_MODEL", "embedding", "model", str),
    ("THREADRAG_EMBED_BATCH_SIZE", "embedding", "batch_size", int),
    ("THREADRAG_EMBED_DELAY_MS", "embedding", "delay_ms", int),
    ("THREADRAG_EMBED_MAX_CHUNKS", "embedding", "max_chunks", int),
    ("THREADRAG_GENERATION_MODEL", "generation", "model", str),
    ("THREADRAG_RATE_LIMIT_WINDOW_SECONDS", "rate_limit", "window_seconds", int),
    ("THREADRAG_RATE_LIMIT_MAX_REQUESTS", "rate_limit", "max_requests", int),
    (
        "THREADRAG_RATE_LIMIT_RETRIEVE_MAX_REQUESTS",
        "rate_limit",
        "retrieve_max_requests",
        int,
    ),
    ("THREADRAG_RATE_LIMIT_SALT", "rate_limit", "salt", str),
)


def _apply_env_overrides(cfg: ThreadragConfig) -> ThreadragConfig:
    """Apply THREADRAG_* environment variable overrides."""
    for env_var, section, attr, convert in _ENV_OVERRIDES:
        value = os.environ.get(env_var)
        if value is None or value == "":
            continue
        try:
            setattr(getattr(cfg, section), attr, convert(value))
        except ValueError as exc:
            raise ConfigError(f"Invalid value for {env_var}: {value!r}") from exc
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> ThreadragConfig:
    """Load and return a merged *ThreadragConfig*.

    Applies layers in order: global → per-project → env vars.
    CLI flag overrides must be applied by the caller after this function.

    Args:
        project_dir: Directory to search for *threadrag.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Returns:
        Fully merged *ThreadragConfig* with env var overrides applied.

    Raises:
        ConfigError: If a config file contains secret-like fields or an
            environment override has an invalid value.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    if global_path.exists():
        raw_global = _read_yaml(global_path)
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = _read_yaml(project_cfg_path)
        _check_no_api_keys(raw_project, project_cfg_path)
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    try:
        cfg = _cfg_from_dict(merged)
    except ConfigError:
        raise
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid config value: {exc}") from exc
    return _apply_env_overrides(cfg)


def ensure_global_config(
    global_config_path: Path | None = None,
) -> Path:
    """Create ``~/.threadrag/config.yaml`` with defaults if it does not exist.

    Creates parent directory with mode 0o700 and the config file with
    mode 0o600 (owner-readable only).

    Args:
        global_config_path: Override path (for testing).

    Returns:
        Path to the global config file.
    """
    target = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    target.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    if not target.exists():
        content = (
            "# threadrag global configuration — no secrets.\n"
            "# API keys and the rate-limit salt come from environment variables:\n"
            "#   export OPENAI_API_KEY=sk-...\n"
            "#   export THREADRAG_RATE_LIMIT_SALT=<random string>\n"
            "\n"
            "embedding:\n"
            "  model: openai/text-embedding-3-small\n"
            "\n"
            "generation:\n"
            "  model: openai/gpt-4o-mini\n"
        )
        target.write_text(content, encoding="utf-8")
        target.chmod(0o600)

    return target
