from __future__ import annotations

from pathlib import Path
from typing import Any, cast

from pydantic import BaseModel, ConfigDict, Field

from panopticon.contracts import PanopticonOptions


class AppCfg(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    env: str


class LoggingCfg(BaseModel):
    model_config = ConfigDict(extra="forbid")

    level: str = "INFO"
    log_dir: Path


class RedisCfg(BaseModel):
    model_config = ConfigDict(extra="forbid")

    url: str
    topic: str = "panopticon.snapshots"


class PanopticonCfg(BaseModel):
    """Defaults for aggregators built from config (start time comes from the harness)."""

    model_config = ConfigDict(extra="forbid")

    name: str
    interval_ms: float = Field(default=1000.0, gt=0)
    scale_factor: float = Field(default=1.0, gt=0)
    persist: bool = False

    def options(self, start_time_ms: float) -> PanopticonOptions:
        return PanopticonOptions(
            start_time_ms=start_time_ms,
            name=self.name,
            interval_ms=self.interval_ms,
            scale_factor=self.scale_factor,
            persist=self.persist,
        )


class CollectorCfg(BaseModel):
    model_config = ConfigDict(extra="forbid")

    grace_period_ms: float = Field(default=500.0, ge=0)
    flush_interval_seconds: float = Field(default=0.1, gt=0)


class PathsCfg(BaseModel):
    model_config = ConfigDict(extra="forbid")

    journal_dir: Path


class Config(BaseModel):
    model_config = ConfigDict(extra="forbid")

    app: AppCfg
    logging: LoggingCfg
    redis: RedisCfg
    panopticon: PanopticonCfg
    collector: CollectorCfg = Field(default_factory=CollectorCfg)
    paths: PathsCfg


def _read_yaml(path: Path) -> dict[str, Any]:
    """Safe YAML read; returns {} if file missing/empty."""
    import yaml  # lazy import

    if not path.exists():
        return {}
    text = path.read_text(encoding="utf-8")
    data = yaml.safe_load(text)
    return data or {}


def load_config(base_dir: str | Path) -> Config:
    """Load config from ./config/base.yaml with an optional ./config/local.yaml overlay.

    Sections present in the overlay are merged key by key over the base file.
    """

    base_path = Path(base_dir)
    base_yaml = base_path / "config" / "base.yaml"
    data = _read_yaml(base_yaml)
    if not data:
        msg = f"Missing or empty config file: {base_yaml}"
        raise FileNotFoundError(msg)

    overlay = _read_yaml(base_path / "config" / "local.yaml")
    for section, values in overlay.items():
        if isinstance(values, dict) and isinstance(data.get(section), dict):
            data[section].update(values)
        else:
            data[section] = values

    return cast(Config, Config.model_validate(data))
