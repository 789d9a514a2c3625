# src/scantron_grader/config_io.py
from __future__ import annotations

import json
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigError
from .layout import DEFAULT_TEMPLATE, LayoutTemplate, template_from_mapping
from .scoring_defaults import ID_DEFAULTS, IdentificationDefaults, ScoringDefaults, apply_overrides


def load_config_any(path: str | Path, allow_list: bool = False) -> Any:
    """
    Prefer YAML, but transparently accept JSON.
    - If extension is .yml/.yaml -> use YAML
    - If extension is .json -> use JSON
    - Otherwise: try YAML first, then JSON
    """
    p = Path(path)
    data = p.read_text(encoding="utf-8")
    ext = p.suffix.lower()

    if ext in {".yml", ".yaml"}:
        cfg = yaml.safe_load(data)
    elif ext == ".json":
        cfg = json.loads(data)
    else:
        try:
            cfg = yaml.safe_load(data)
        except yaml.YAMLError:
            cfg = json.loads(data)

    if cfg is None:
        cfg = {}
    if not isinstance(cfg, dict) and not (allow_list and isinstance(cfg, list)):
        raise ConfigError(f"{p}: config root must be a mapping/object.")
    return cfg


@dataclass(frozen=True)
class GraderConfig:
    layout: LayoutTemplate = DEFAULT_TEMPLATE
    scoring: ScoringDefaults = field(default_factory=ScoringDefaults)
    identification: IdentificationDefaults = ID_DEFAULTS
    workers: int = 4
    dpi: int = 150


_SECTIONS = {"layout", "scoring", "identification", "batch"}


def _section(cfg: Dict[str, Any], name: str) -> Dict[str, Any]:
    sec = cfg.get(name) or {}
    if not isinstance(sec, dict):
        raise ConfigError(f"config section '{name}' must be a mapping")
    return sec


def config_from_mapping(cfg: Dict[str, Any]) -> GraderConfig:
    unknown = sorted(set(cfg) - _SECTIONS)
    if unknown:
        raise ConfigError(f"unknown config sections: {', '.join(unknown)}")

    layout = template_from_mapping(_section(cfg, "layout"))

    scoring_sec = _section(cfg, "scoring")
    scoring_keys = {f.name for f in fields(ScoringDefaults)}
    bad = sorted(set(scoring_sec) - scoring_keys)
    if bad:
        raise ConfigError(f"unknown scoring keys: {', '.join(bad)}")
    try:
        scoring = apply_overrides(**scoring_sec)
    except (TypeError, ValueError) as e:
        raise ConfigError(str(e)) from e

    ident_sec = _section(cfg, "identification")
    ident_keys = {f.name for f in fields(IdentificationDefaults)}
    bad = sorted(set(ident_sec) - ident_keys)
    if bad:
        raise ConfigError(f"unknown identification keys: {', '.join(bad)}")
    identification = replace(ID_DEFAULTS, **ident_sec)
    if identification.timeout_s <= 0:
        raise ConfigError("identification.timeout_s must be > 0")

    batch = _section(cfg, "batch")
    bad = sorted(set(batch) - {"workers", "dpi"})
    if bad:
        raise ConfigError(f"unknown batch keys: {', '.join(bad)}")
    workers = int(batch.get("workers", 4))
    dpi = int(batch.get("dpi", 150))
    if workers < 1 or dpi < 1:
        raise ConfigError("batch.workers and batch.dpi must be >= 1")

    return GraderConfig(layout=layout, scoring=scoring, identification=identification, workers=workers, dpi=dpi)


def load_config(path: Optional[str | Path]) -> GraderConfig:
    """Typed settings from a YAML/JSON file; defaults when path is None."""
    if path is None:
        return GraderConfig()
    return config_from_mapping(load_config_any(path))
