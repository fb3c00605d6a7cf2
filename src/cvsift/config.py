"""cvsift configuration loader.

Priority (high → low):
  1. CLI flags           (handled at the call site, not in this module)
  2. Environment variables  (CVSIFT_DB, CVSIFT_ANALYSIS_MODEL, CVSIFT_TIER)
  3. Per-project cvsift.yaml  (in the working directory)
  4. Global ~/.cvsift/config.yaml
  5. Hardcoded defaults

Config files must never contain API keys; pass them with --api-key or
CVSIFT_API_KEY instead.
All YAML reads use yaml.safe_load().
"""

from __future__ import annotations

import os
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".cvsift"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "cvsift.yaml"

# Credential-looking key names, rejected in every config layer.
# Compared after lower-casing and folding "-" into "_"; max_tokens and tpm pass.
_SECRET_WORDS: frozenset[str] = frozenset(
    ["token", "secret", "password", "passwd", "credential", "credentials"]
)
_SECRET_FRAGMENTS: tuple[str, ...] = ("apikey", "apisecret")

# Top-level sections; anything else produces a warning
_KNOWN_SECTIONS: frozenset[str] = frozenset(
    ["storage", "ingest", "retrieval", "analysis", "rate_limit"]
)

_VALID_TIERS: frozenset[str] = frozenset(["basic", "pro"])


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """A config layer holds a credential, a bad type, or an out-of-range value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class StorageCfg:
    """Where state lives on disk (cvsift.yaml: storage:)."""

    db_path: str = ".cvsift.db"
    rate_state_path: str = ".cvsift/rate_state.json"


@dataclass
class IngestCfg:
    """Chunking and download limits (cvsift.yaml: ingest:)."""

    chunk_size: int = 512
    overlap: int = 50
    max_download_mb: int = 20


@dataclass
class RetrievalCfg:
    top_k: int = 30


@dataclass
class AnalysisCfg:
    """Analysis defaults (cvsift.yaml: analysis:).

    Attributes:
        tier: ``basic`` or ``pro``; bounds the prompt size and completion budget.
        model: Preferred chat model; None means the provider's default.
    """

    tier: str = "basic"
    model: str | None = None


@dataclass
class QuotaCfg:
    rpm: int
    tpm: int


@dataclass
class RateLimitCfg:
    """Throttling limits (cvsift.yaml: rate_limit:)."""

    min_interval_ms: int = 250
    default_retry_seconds: int = 60
    completion: QuotaCfg = field(default_factory=lambda: QuotaCfg(rpm=5, tpm=30_000))
    embedding: QuotaCfg = field(default_factory=lambda: QuotaCfg(rpm=1_500, tpm=1_000_000))


@dataclass
class CvSiftConfig:
    """Everything cvsift reads from YAML and the environment."""

    storage: StorageCfg = field(default_factory=StorageCfg)
    ingest: IngestCfg = field(default_factory=IngestCfg)
    retrieval: RetrievalCfg = field(default_factory=RetrievalCfg)
    analysis: AnalysisCfg = field(default_factory=AnalysisCfg)
    rate_limit: RateLimitCfg = field(default_factory=RateLimitCfg)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _looks_like_secret(key: str) -> bool:
    name = key.lower().replace("-", "_")
    if any(frag in name.replace("_", "") for frag in _SECRET_FRAGMENTS):
        return True
    return not _SECRET_WORDS.isdisjoint(name.split("_"))


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if any key, at any depth, names a credential."""
    pending: list[tuple[str, Any]] = [("", data)]
    while pending:
        prefix, node = pending.pop()
        if not isinstance(node, dict):
            continue
        for key, value in node.items():
            dotted = f"{prefix}.{key}" if prefix else str(key)
            if _looks_like_secret(str(key)):
                raise ConfigError(
                    f"Config '{source}' contains a forbidden key '{dotted}'.\n"
                    f"  Credentials are never read from config files.\n"
                    f"  Delete '{dotted}' from {source.name} and pass the key with\n"
                    f"  --api-key or export CVSIFT_API_KEY=<value>"
                )
            pending.append((dotted, value))


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Warn (UserWarning) about top-level sections cvsift does not read."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}' (ignored).",
                UserWarning,
                stacklevel=5,
            )


def _validate(cfg: CvSiftConfig) -> None:
    """Raise ConfigError for values the core would reject later anyway."""
    if cfg.analysis.tier not in _VALID_TIERS:
        raise ConfigError(
            f"analysis.tier must be one of {', '.join(sorted(_VALID_TIERS))}, "
            f"got '{cfg.analysis.tier}'."
        )
    if cfg.ingest.chunk_size < 1:
        raise ConfigError("ingest.chunk_size must be >= 1.")
    if not 0 <= cfg.ingest.overlap < cfg.ingest.chunk_size:
        raise ConfigError(
            f"ingest.overlap must be in [0, chunk_size), got {cfg.ingest.overlap}."
        )
    positives = {
        "ingest.max_download_mb": cfg.ingest.max_download_mb,
        "retrieval.top_k": cfg.retrieval.top_k,
        "rate_limit.default_retry_seconds": cfg.rate_limit.default_retry_seconds,
        "rate_limit.completion.rpm": cfg.rate_limit.completion.rpm,
        "rate_limit.completion.tpm": cfg.rate_limit.completion.tpm,
        "rate_limit.embedding.rpm": cfg.rate_limit.embedding.rpm,
        "rate_limit.embedding.tpm": cfg.rate_limit.embedding.tpm,
    }
    for name, value in positives.items():
        if value < 1:
            raise ConfigError(f"{name} must be a positive integer, got {value}.")
    if cfg.rate_limit.min_interval_ms < 0:
        raise ConfigError("rate_limit.min_interval_ms must not be negative.")


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Merge *override* into a copy of *base*, recursing into nested mappings."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _parse_quota(raw: dict[str, Any], defaults: QuotaCfg) -> QuotaCfg:
    return QuotaCfg(
        rpm=int(raw.get("rpm", defaults.rpm)),
        tpm=int(raw.get("tpm", defaults.tpm)),
    )


def _cfg_from_dict(data: dict[str, Any]) -> CvSiftConfig:
    """Build a *CvSiftConfig* from a merged raw YAML dict."""
    cfg = CvSiftConfig()

    try:
        if "storage" in data:
            s = data["storage"]
            cfg.storage = StorageCfg(
                db_path=str(s.get("db_path", cfg.storage.db_path)),
                rate_state_path=str(s.get("rate_state_path", cfg.storage.rate_state_path)),
            )

        if "ingest" in data:
            i = data["ingest"]
            cfg.ingest = IngestCfg(
                chunk_size=int(i.get("chunk_size", cfg.ingest.chunk_size)),
                overlap=int(i.get("overlap", cfg.ingest.overlap)),
                max_download_mb=int(i.get("max_download_mb", cfg.ingest.max_download_mb)),
            )

        if "retrieval" in data:
            r = data["retrieval"]
            cfg.retrieval = RetrievalCfg(top_k=int(r.get("top_k", cfg.retrieval.top_k)))

        if "analysis" in data:
            a = data["analysis"]
            cfg.analysis = AnalysisCfg(
                tier=str(a.get("tier", cfg.analysis.tier)).lower(),
                model=a.get("model") or cfg.analysis.model,
            )

        if "rate_limit" in data:
            rl = data["rate_limit"]
            cfg.rate_limit = RateLimitCfg(
                min_interval_ms=int(rl.get("min_interval_ms", cfg.rate_limit.min_interval_ms)),
                default_retry_seconds=int(
                    rl.get("default_retry_seconds", cfg.rate_limit.default_retry_seconds)
                ),
                completion=_parse_quota(rl.get("completion", {}), cfg.rate_limit.completion),
                embedding=_parse_quota(rl.get("embedding", {}), cfg.rate_limit.embedding),
            )
    except (AttributeError, TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid config value: {exc}") from exc

    return cfg


def _read_layer(path: Path) -> dict[str, Any]:
    """Parse one YAML layer; a missing or empty file contributes nothing."""
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config '{path}' must be a YAML mapping.")
    _check_no_api_keys(data, path)
    _warn_unknown_keys(data, path)
    return data


def _apply_env_overrides(cfg: CvSiftConfig) -> CvSiftConfig:
    """Apply CVSIFT_* environment variable overrides (layer 2)."""
    if db := os.environ.get("CVSIFT_DB"):
        cfg.storage.db_path = db
    if model := os.environ.get("CVSIFT_ANALYSIS_MODEL"):
        cfg.analysis.model = model
    if tier := os.environ.get("CVSIFT_TIER"):
        cfg.analysis.tier = tier.strip().lower()
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> CvSiftConfig:
    """Load and return a merged *CvSiftConfig*.

    Precedence, lowest first: defaults, global file, cvsift.yaml, CVSIFT_* env.
    Command-line flags are layered on by the caller afterwards.

    Args:
        project_dir: Directory to search for *cvsift.yaml*. Defaults to CWD.
        global_config_path: Alternate location of the global file.

    Raises:
        ConfigError: If either layer contains API-key-like fields, or a value
            is invalid (unknown tier, overlap >= chunk_size, non-positive limit).
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}
    for layer in (global_path, search_dir / _PROJECT_CONFIG_NAME):
        merged = _deep_merge(merged, _read_layer(layer))

    cfg = _apply_env_overrides(_cfg_from_dict(merged))
    _validate(cfg)
    return cfg


def ensure_global_config(
    global_config_path: Path | None = None,
) -> Path:
    """Create ``~/.cvsift/config.yaml`` with defaults if it does not exist.

    The directory is created 0o700 and the file 0o600; an existing file
    is left untouched.

    Returns:
        The path that was checked or written.
    """
    target = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    target.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    if not target.exists():
        content = (
            "# cvsift global configuration.\n"
            "# API keys do not belong here: pass --api-key or set CVSIFT_API_KEY.\n"
            "\n"
            "analysis:\n"
            "  tier: basic\n"
            "\n"
            "rate_limit:\n"
            "  min_interval_ms: 250\n"
            "  completion:\n"
            "    rpm: 5\n"
            "    tpm: 30000\n"
        )
        target.write_text(content, encoding="utf-8")
        target.chmod(0o600)

    return target
