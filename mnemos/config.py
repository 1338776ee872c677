"""
Engine Configuration

Configuration dataclasses for mnemos: store, reconsolidation policy,
retrieval scoring and view paging. Includes load_config() for reading a
JSON config file with silent fallback to compiled defaults.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from mnemos.errors import ConfigError
from mnemos.types import VALID_IMPORTANCE, VALID_TRIGGERS

# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type."""
    if typ is not None and not isinstance(value, typ):
        errors.append(f"{name}: expected {typ.__name__}, got {type(value).__name__}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS


@dataclass
class StoreConfig:
    """SQLite store configuration."""
    db_path: str = ".mnemos/memory.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "store.busy_timeout_ms",
                      self.busy_timeout_ms, 0, 600000, int)
        return errors


@dataclass
class ReconsolidationConfig:
    """Lability window policy."""
    lability_window_duration_ms: int = 5 * MINUTE_MS
    min_reconsolidation_interval_ms: int = HOUR_MS
    allow_weakening: bool = True
    deletion_threshold: float = 0.1
    qualifying_triggers: List[str] = field(
        default_factory=lambda: ["explicit_recall", "search"]
    )

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "reconsolidation.lability_window_duration_ms",
                      self.lability_window_duration_ms, 1, 7 * DAY_MS, int)
        _check_range(errors, "reconsolidation.min_reconsolidation_interval_ms",
                      self.min_reconsolidation_interval_ms, 0, 365 * DAY_MS, int)
        _check_range(errors, "reconsolidation.deletion_threshold",
                      self.deletion_threshold, 0.0, 1.0, float)
        for trig in self.qualifying_triggers:
            if trig not in VALID_TRIGGERS:
                errors.append(
                    f"reconsolidation.qualifying_triggers: unknown trigger {trig!r}"
                )
        return errors


@dataclass
class RetrievalConfig:
    """Ranking weights for hybrid retrieval."""
    text_weight: float = 1.0
    recency_weight: float = 0.3
    importance_weight: float = 0.5
    frequency_weight: float = 0.1
    recency_half_life_ms: int = 7 * DAY_MS
    importance_weights: Dict[str, float] = field(
        default_factory=lambda: {
            "critical": 1.0, "high": 0.75, "normal": 0.5, "low": 0.25,
        }
    )
    default_limit: int = 20

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        for name in ("text_weight", "recency_weight",
                     "importance_weight", "frequency_weight"):
            _check_range(errors, f"retrieval.{name}",
                          getattr(self, name), 0.0, 100.0, (int, float))
        _check_range(errors, "retrieval.recency_half_life_ms",
                      self.recency_half_life_ms, 1, 3650 * DAY_MS, int)
        _check_range(errors, "retrieval.default_limit",
                      self.default_limit, 1, 10000, int)
        missing = [k for k in VALID_IMPORTANCE if k not in self.importance_weights]
        if missing:
            errors.append(
                f"retrieval.importance_weights: missing {', '.join(missing)}"
            )
        for k, v in self.importance_weights.items():
            _check_range(errors, f"retrieval.importance_weights.{k}",
                          v, 0.0, 1.0, (int, float))
        return errors


@dataclass
class ViewConfig:
    """Export view paging."""
    page_size: int = 50

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "view.page_size", self.page_size, 1, 10000, int)
        return errors


@dataclass
class EngineConfig:
    """Top-level mnemos configuration."""
    store: StoreConfig = field(default_factory=StoreConfig)
    reconsolidation: ReconsolidationConfig = field(default_factory=ReconsolidationConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    view: ViewConfig = field(default_factory=ViewConfig)
    agent_version: Optional[str] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> EngineConfig:
        """Build config from a nested dict (e.g. JSON)."""
        kwargs: Dict[str, Any] = {}
        if "store" in d:
            kwargs["store"] = StoreConfig(**d["store"])
        if "reconsolidation" in d:
            kwargs["reconsolidation"] = ReconsolidationConfig(**d["reconsolidation"])
        if "retrieval" in d:
            kwargs["retrieval"] = RetrievalConfig(**d["retrieval"])
        if "view" in d:
            kwargs["view"] = ViewConfig(**d["view"])
        if "agent_version" in d:
            kwargs["agent_version"] = d["agent_version"]
        return cls(**kwargs)

    def validate(self) -> List[str]:
        """Validate all config sections. Returns list of error messages."""
        errors: List[str] = []
        errors.extend(self.store.validate())
        errors.extend(self.reconsolidation.validate())
        errors.extend(self.retrieval.validate())
        errors.extend(self.view.validate())
        return errors


def load_config(
    path: Optional[str] = None, *, strict: bool = False,
) -> EngineConfig:
    """Load config from a JSON file. Returns defaults if file missing/invalid.

    Args:
        path: Path to config.json. If None, returns compiled defaults.
        strict: If True, raise ConfigError on invalid config values.

    Returns:
        EngineConfig with values from file or defaults.

    Raises:
        ConfigError: If strict=True and config values are out of range.
    """
    if path is None:
        cfg = EngineConfig()
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cfg = EngineConfig.from_dict(data)
        except (FileNotFoundError, json.JSONDecodeError, TypeError, KeyError):
            cfg = EngineConfig()

    if strict:
        errors = cfg.validate()
        if errors:
            raise ConfigError(
                f"Config validation failed: {'; '.join(errors)}"
            )

    return cfg
