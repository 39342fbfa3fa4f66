import json
from pathlib import Path

import pytest

from fiducial_fusion.config import SlamConfig, load_config


def test_load_config_json(tmp_path: Path):
    cfg_path = tmp_path / "slam.json"
    cfg_path.write_text(
        json.dumps(
            {
                "node_name": "slamA",
                "map_file": "out/map.csv",
                "use_fiducial_area_as_weight": True,
                "weighting_scale": 5000,
                "fiducials_flat": True,
                "read_only_map": True,
                "multi_error_threshold": 0.5,
                "unknown_key": 1,
            }
        ),
        encoding="utf-8",
    )

    cfg = load_config(cfg_path)
    assert cfg.node_name == "slamA"
    assert cfg.map_file == "out/map.csv"
    assert cfg.use_fiducial_area_as_weight is True
    assert cfg.weighting_scale == 5000.0
    assert cfg.fiducials_flat is True
    assert cfg.read_only_map is True
    assert cfg.multi_error_threshold == 0.5
    assert cfg.tick_rate_hz == 20.0

    cfg.apply_overrides(node_name="slamB", read_only_map=None)
    assert cfg.node_name == "slamB"
    assert cfg.read_only_map is True


def test_load_config_yaml(tmp_path: Path):
    cfg_path = tmp_path / "slam.yaml"
    cfg_path.write_text(
        "map_frame: world\nanchor_policy: landmark_origin\npublish_6dof_pose: false\n",
        encoding="utf-8",
    )

    cfg = load_config(cfg_path)
    assert cfg.map_frame == "world"
    assert cfg.anchor_policy == "landmark_origin"
    assert cfg.publish_6dof_pose is False


def test_missing_config(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.json")


def test_non_mapping_root(tmp_path: Path):
    p = tmp_path / "bad.json"
    p.write_text("[1, 2]")
    with pytest.raises(ValueError):
        load_config(p)


@pytest.mark.parametrize(
    "field,value",
    [("weighting_scale", 0.0), ("tick_rate_hz", -1.0), ("anchor_policy", "random"), ("systematic_error", -0.1)],
)
def test_validate_rejects_bad_values(field, value):
    cfg = SlamConfig()
    setattr(cfg, field, value)
    with pytest.raises(ValueError):
        cfg.validate()


def test_config_defaults():
    cfg = SlamConfig()
    assert cfg.weighting_scale == 1e9
    assert cfg.read_only_map is False
    assert cfg.as_dict()["map_frame"] == "map"
