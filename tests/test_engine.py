import csv
import logging
from pathlib import Path

import numpy as np
import pytest

from fiducial_fusion.batch_source import JsonlBatchSource, ListBatchSource
from fiducial_fusion.config import SlamConfig
from fiducial_fusion.engine import FiducialSlamEngine
from fiducial_fusion.fusion_types import RawSighting
from fiducial_fusion.output import CsvPoseOutput, PoseSink
from fiducial_fusion.persistence import MapStore

from conftest import make_batch, make_sighting


class RecordingOutput(PoseSink):
    def __init__(self):
        self.poses = []
        self.republished = []
        self.observations = []
        self.opened = False
        self.closed = False

    def open(self):
        self.opened = True

    def write_pose(self, pose, republished=False):
        (self.republished if republished else self.poses).append(pose)

    def write_observations(self, observations):
        self.observations.append(list(observations))

    def close(self):
        self.closed = True


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _config(tmp_path: Path, **kwargs) -> SlamConfig:
    cfg = SlamConfig(
        node_name="test",
        map_file=str(tmp_path / "map.csv"),
        weighting_scale=1.0,
    )
    return cfg.apply_overrides(**kwargs)


def _batches():
    return [
        make_batch(1.0, make_sighting(7, [1.0, 0.0, 2.0]), make_sighting(3, [0.0, 0.0, 2.0])),
        make_batch(2.0, make_sighting(7, [1.1, 0.0, 2.0])),
        make_batch(3.0, make_sighting(3, [0.1, 0.0, 2.0]), make_sighting(11, [0.5, 0.5, 2.0])),
    ]


def test_run_builds_and_saves_map(tmp_path: Path, quiet_logger):
    out = RecordingOutput()
    engine = FiducialSlamEngine(_config(tmp_path), logger=quiet_logger, outputs=[out])

    summary = engine.run(ListBatchSource(_batches()))

    assert summary.batches_processed == 3
    assert summary.poses_resolved == 2
    assert summary.landmarks == 3
    assert summary.map_saved is True
    assert out.opened and out.closed
    assert len(out.poses) == 2
    assert out.poses[0].frame_id == "map"
    assert len(out.observations) == 3

    saved = {lm.fiducial_id: lm for lm in MapStore(tmp_path / "map.csv").load()}
    assert sorted(saved) == [3, 7, 11]
    assert saved[7].num_obs == 2
    assert saved[11].links == {3}


def test_run_loads_existing_map(tmp_path: Path, quiet_logger):
    first = FiducialSlamEngine(_config(tmp_path), logger=quiet_logger, outputs=[])
    first.run(ListBatchSource(_batches()[:1]))

    out = RecordingOutput()
    second = FiducialSlamEngine(_config(tmp_path), logger=quiet_logger, outputs=[out])
    second.load_map()
    pose = second.handle_batch(make_batch(5.0, make_sighting(3, [0.0, 0.0, 2.0])))

    assert pose is not None
    assert np.allclose(pose.pose.translation, [0.0, 0.0, 0.0], atol=1e-9)
    assert pose.num_landmarks == 1


def test_read_only_never_saves(tmp_path: Path, quiet_logger):
    path = tmp_path / "map.csv"
    seed = FiducialSlamEngine(_config(tmp_path), logger=quiet_logger, outputs=[])
    seed.run(ListBatchSource(_batches()[:1]))
    before = path.read_bytes()

    out = RecordingOutput()
    engine = FiducialSlamEngine(_config(tmp_path, read_only_map=True), logger=quiet_logger, outputs=[out])
    summary = engine.run(ListBatchSource(_batches()))

    assert summary.map_saved is False
    assert path.read_bytes() == before
    assert summary.landmarks == 2
    # Localization still works against the frozen map
    assert summary.poses_resolved == 3
    assert len(out.poses) == 3


def test_save_failure_is_reported_not_raised(tmp_path: Path, quiet_logger, monkeypatch, caplog):
    engine = FiducialSlamEngine(_config(tmp_path), logger=quiet_logger, outputs=[])

    def broken_save(_landmarks):
        raise OSError("read-only file system")

    monkeypatch.setattr(engine.map_store, "save", broken_save)
    with caplog.at_level(logging.ERROR, logger=quiet_logger.name):
        summary = engine.run(ListBatchSource(_batches()))

    assert summary.map_saved is False
    assert "failed to save map" in caplog.text
    assert len(engine.map) == 3


def test_shutdown_only_saves_once(tmp_path: Path, quiet_logger):
    engine = FiducialSlamEngine(_config(tmp_path), logger=quiet_logger, outputs=[])
    engine.handle_batch(_batches()[0])

    assert engine.shutdown() is True
    assert engine.shutdown() is False


def test_stop_finishes_current_pass_then_saves(tmp_path: Path, quiet_logger):
    class StoppingSource(ListBatchSource):
        def __init__(self, batches, engine_ref):
            super().__init__(batches)
            self.engine_ref = engine_ref

        def read(self):
            batch = super().read()
            if batch is not None and batch.stamp == 2.0:
                self.engine_ref[0].stop()
            return batch

    holder = []
    engine = FiducialSlamEngine(_config(tmp_path), logger=quiet_logger, outputs=[])
    holder.append(engine)

    summary = engine.run(StoppingSource(_batches(), holder))

    assert summary.batches_processed == 2
    assert engine.stopping
    assert summary.map_saved is True
    saved = {lm.fiducial_id: lm for lm in MapStore(tmp_path / "map.csv").load()}
    assert saved[7].num_obs == 2
    assert 11 not in saved


def test_planar_pose_output(tmp_path: Path, quiet_logger):
    engine = FiducialSlamEngine(_config(tmp_path, publish_6dof_pose=False), logger=quiet_logger, outputs=[])
    engine.handle_batch(make_batch(1.0, make_sighting(1, [0.0, 0.0, 2.0])))

    pose = engine.handle_batch(make_batch(2.0, make_sighting(1, [0.0, 0.3, 1.5], yaw=0.2)))

    assert pose.pose.translation[2] == 0.0
    assert pose.pose.rotation[0] == 0.0 and pose.pose.rotation[1] == 0.0


def test_tick_republishes_recent_pose(tmp_path: Path, quiet_logger):
    clock = FakeClock()
    out = RecordingOutput()
    engine = FiducialSlamEngine(
        _config(tmp_path, pose_republish_interval=0.5), logger=quiet_logger, outputs=[out], clock=clock
    )

    engine.tick()
    assert out.republished == []

    engine.handle_batch(make_batch(1.0, make_sighting(1, [0.0, 0.0, 2.0])))
    engine.handle_batch(make_batch(2.0, make_sighting(1, [0.0, 0.0, 2.0])))
    clock.now = 0.2
    engine.tick()
    clock.now = 0.8
    engine.tick()

    assert len(out.republished) == 1
    assert out.republished[0].stamp == 2.0
    assert engine.map.ticks == 3


def test_csv_pose_output(tmp_path: Path, quiet_logger):
    csv_path = tmp_path / "poses.csv"
    engine = FiducialSlamEngine(
        _config(tmp_path, pose_csv=str(csv_path)), logger=quiet_logger
    )
    assert isinstance(engine.outputs[0], CsvPoseOutput)

    engine.run(ListBatchSource(_batches()))

    with csv_path.open() as fh:
        rows = list(csv.reader(fh))
    assert rows[0][:2] == ["stamp", "frame_id"]
    assert len(rows) == 3
    assert rows[1][0] == "2.000000"
    assert rows[1][1] == "map"


def test_csv_observation_stream(tmp_path: Path, quiet_logger):
    obs_path = tmp_path / "obs" / "observations.csv"
    engine = FiducialSlamEngine(
        _config(tmp_path, pose_csv=str(tmp_path / "poses.csv"), observations_csv=str(obs_path)),
        logger=quiet_logger,
    )

    engine.run(ListBatchSource(_batches()))

    with obs_path.open() as fh:
        rows = list(csv.reader(fh))
    assert rows[0][:3] == ["stamp", "frame_id", "fiducial_id"]
    assert len(rows) == 6
    # ascending id order within a pass
    assert [r[2] for r in rows[1:3]] == ["3", "7"]


def test_empty_batch_is_harmless(tmp_path: Path, quiet_logger):
    engine = FiducialSlamEngine(_config(tmp_path), logger=quiet_logger, outputs=[])
    assert engine.handle_batch(make_batch(1.0)) is None
    assert len(engine.map) == 0


def test_malformed_sightings_never_reach_the_map(tmp_path: Path, quiet_logger):
    engine = FiducialSlamEngine(_config(tmp_path), logger=quiet_logger, outputs=[])
    engine.handle_batch(
        make_batch(
            1.0,
            make_sighting(1, [np.nan, 0.0, 1.0]),
            make_sighting(2, [0.0, 0.0, 1.0], error=0.0),
            make_sighting(3, [0.0, 0.0, 1.0], error=float("nan")),
        )
    )

    assert 1 not in engine.map
    assert 3 not in engine.map
    assert engine.map.get(2).is_finite()
    assert engine.map.check_consistency() == []


def test_wrong_length_sighting_is_skipped_and_map_saved(tmp_path: Path, quiet_logger):
    engine = FiducialSlamEngine(_config(tmp_path), logger=quiet_logger, outputs=[])
    batches = _batches()[:1] + [
        make_batch(2.0, RawSighting(7, tvec=[0.0, 1.0], rotation=[0.0, 0.0, 0.0, 1.0]))
    ]

    summary = engine.run(ListBatchSource(batches))

    assert summary.batches_processed == 2
    assert summary.map_saved is True
    assert sorted(lm.fiducial_id for lm in MapStore(tmp_path / "map.csv").load()) == [3, 7]


def test_map_saved_when_a_pass_raises(tmp_path: Path, quiet_logger):
    class FailingSource(ListBatchSource):
        def read(self):
            if self._idx >= 1:
                raise RuntimeError("detector went away")
            return super().read()

    engine = FiducialSlamEngine(_config(tmp_path), logger=quiet_logger, outputs=[])

    with pytest.raises(RuntimeError):
        engine.run(FailingSource(_batches()))

    saved = MapStore(tmp_path / "map.csv").load()
    assert sorted(lm.fiducial_id for lm in saved) == [3, 7]


def test_outputs_closed_when_source_fails_to_start(tmp_path: Path, quiet_logger):
    out = RecordingOutput()
    engine = FiducialSlamEngine(_config(tmp_path), logger=quiet_logger, outputs=[out])

    with pytest.raises(FileNotFoundError):
        engine.run(JsonlBatchSource(tmp_path / "missing.jsonl"))

    assert out.opened and out.closed
