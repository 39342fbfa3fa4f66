from __future__ import annotations

import json
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Optional


ANCHOR_POLICIES = ("observer_origin", "landmark_origin")


@dataclass
class SlamConfig:
    node_name: str = "fiducial_slam"
    map_file: str = "maps/fiducials.csv"
    map_frame: str = "map"
    # Use 1/area as the variance instead of the reprojection error
    use_fiducial_area_as_weight: bool = False
    weighting_scale: float = 1e9
    # Flat-floor mode: zero roll and pitch on every observation
    fiducials_flat: bool = False
    read_only_map: bool = False
    verbose_info: bool = False
    anchor_policy: str = "observer_origin"
    multi_error_threshold: Optional[float] = None
    systematic_error: float = 0.0
    publish_6dof_pose: bool = True
    tick_rate_hz: float = 20.0
    pose_republish_interval: float = 0.5
    log_path: Optional[str] = None
    pose_csv: Optional[str] = None
    observations_csv: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    def apply_overrides(self, **kwargs: Any) -> "SlamConfig":
        for key, value in kwargs.items():
            if value is not None and hasattr(self, key):
                setattr(self, key, value)
        return self

    def validate(self) -> "SlamConfig":
        if self.weighting_scale <= 0:
            raise ValueError("weighting_scale must be positive")
        if self.tick_rate_hz <= 0:
            raise ValueError("tick_rate_hz must be positive")
        if self.anchor_policy not in ANCHOR_POLICIES:
            raise ValueError(
                f"anchor_policy must be one of {', '.join(ANCHOR_POLICIES)}"
            )
        if self.systematic_error < 0:
            raise ValueError("systematic_error must be non-negative")
        return self


def _load_yaml(path: Path) -> dict[str, Any]:
    import yaml

    with path.open("r", encoding="utf-8") as fp:
        data = yaml.safe_load(fp) or {}
    if not isinstance(data, dict):
        raise ValueError("YAML config root must be a mapping")
    return data


def _optional_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    return float(value)


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def load_config(path: str | Path) -> SlamConfig:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Config not found: {p}")

    if p.suffix.lower() in {".yaml", ".yml"}:
        raw = _load_yaml(p)
    else:
        with p.open("r", encoding="utf-8") as fp:
            raw = json.load(fp)

    if not isinstance(raw, dict):
        raise ValueError("Config root must be a JSON/YAML object")

    cfg = SlamConfig()
    cfg.node_name = str(raw.get("node_name", cfg.node_name))
    cfg.map_file = str(raw.get("map_file", cfg.map_file))
    cfg.map_frame = str(raw.get("map_frame", cfg.map_frame))
    cfg.use_fiducial_area_as_weight = bool(
        raw.get("use_fiducial_area_as_weight", cfg.use_fiducial_area_as_weight)
    )
    cfg.weighting_scale = float(raw.get("weighting_scale", cfg.weighting_scale))
    cfg.fiducials_flat = bool(raw.get("fiducials_flat", cfg.fiducials_flat))
    cfg.read_only_map = bool(raw.get("read_only_map", cfg.read_only_map))
    cfg.verbose_info = bool(raw.get("verbose_info", cfg.verbose_info))
    cfg.anchor_policy = str(raw.get("anchor_policy", cfg.anchor_policy))
    cfg.multi_error_threshold = _optional_float(
        raw.get("multi_error_threshold", cfg.multi_error_threshold)
    )
    cfg.systematic_error = float(raw.get("systematic_error", cfg.systematic_error))
    cfg.publish_6dof_pose = bool(raw.get("publish_6dof_pose", cfg.publish_6dof_pose))
    cfg.tick_rate_hz = float(raw.get("tick_rate_hz", cfg.tick_rate_hz))
    cfg.pose_republish_interval = float(
        raw.get("pose_republish_interval", cfg.pose_republish_interval)
    )
    cfg.log_path = _optional_str(raw.get("log_path", cfg.log_path))
    cfg.pose_csv = _optional_str(raw.get("pose_csv", cfg.pose_csv))
    cfg.observations_csv = _optional_str(raw.get("observations_csv", cfg.observations_csv))

    return cfg.validate()
