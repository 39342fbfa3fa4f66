from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .batch_source import BatchSource
from .config import SlamConfig
from .estimator import AnchorPolicy, LandmarkPoseEstimator
from .fusion_types import ObserverPose, SightingBatch
from .logging_utils import add_file_handler, setup_logger
from .map_state import MapState
from .observation import ObservationBuilder, WeightingPolicy
from .output import CsvPoseOutput, PoseSink
from .persistence import MapStore
from .scheduler import MaintenanceScheduler


@dataclass
class SessionSummary:
    batches_processed: int
    poses_resolved: int
    ticks: int
    landmarks: int
    map_saved: bool
    avg_batch_rate: float


class FiducialSlamEngine:
    """Owns the fiducial map and drives fusion passes and maintenance ticks.

    Everything runs on the caller's thread. Batches and ticks are
    interleaved by :meth:`run`; :meth:`stop` may be called from a signal
    handler and only takes effect between passes, so shutdown always sees a
    fully applied map.
    """

    def __init__(
        self,
        config: SlamConfig,
        logger: Optional[logging.Logger] = None,
        outputs: Optional[list[PoseSink]] = None,
        map_store: Optional[MapStore] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config.validate()
        self.logger = logger or setup_logger(
            config.node_name, logging.DEBUG if config.verbose_info else logging.INFO
        )
        if config.log_path:
            Path(config.log_path).parent.mkdir(parents=True, exist_ok=True)
            add_file_handler(self.logger, config.node_name, config.log_path)

        if outputs is None:
            outputs = []
            if config.pose_csv:
                outputs.append(CsvPoseOutput(config.pose_csv, observations_path=config.observations_csv))
        self.outputs = outputs
        self.clock = clock

        policy = WeightingPolicy.AREA if config.use_fiducial_area_as_weight else WeightingPolicy.ERROR
        self.builder = ObservationBuilder(
            policy=policy,
            weighting_scale=config.weighting_scale,
            flatten=config.fiducials_flat,
            multi_error_threshold=config.multi_error_threshold,
            verbose=config.verbose_info,
            logger=self.logger,
        )
        estimator = LandmarkPoseEstimator(
            anchor_policy=AnchorPolicy(config.anchor_policy),
            systematic_error=config.systematic_error,
            logger=self.logger,
        )
        self.map = MapState(read_only=config.read_only_map, estimator=estimator, logger=self.logger)
        self.map_store = map_store or MapStore(config.map_file, logger=self.logger)
        self.scheduler = MaintenanceScheduler(self.tick, config.tick_rate_hz, clock=clock)

        self.last_pose: Optional[ObserverPose] = None
        self._last_pose_time: Optional[float] = None
        self._stop_event = threading.Event()
        self._shutdown_done = False
        self.map_loaded = False
        self.batches = 0
        self.poses_resolved = 0

        if config.read_only_map:
            self.logger.info("Fiducial Slam in READ ONLY MAP MODE!")
        else:
            self.logger.info("Fiducial Slam will save the generated map")

    def load_map(self) -> int:
        count = self.map_store.load_into(self.map)
        self.map_loaded = True
        return count

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def handle_batch(self, batch: SightingBatch) -> Optional[ObserverPose]:
        """One fusion pass. Returns the resolved observer pose, if any."""
        observations = self.builder.build_batch(batch)
        self.batches += 1
        if not observations:
            return None

        result = self.map.update(observations, batch.stamp)

        for out in self.outputs:
            out.write_observations(observations)

        if result.observer_pose is None:
            self.logger.debug("stamp %.3f: observer pose unresolved", batch.stamp)
            return None

        pose = result.observer_pose
        if not self.config.publish_6dof_pose:
            pose = pose.planar()
        observer = ObserverPose(batch.stamp, self.config.map_frame, pose, result.num_known)
        self.last_pose = observer
        self._last_pose_time = self.clock()
        self.poses_resolved += 1
        self._emit(observer, republished=False)
        return observer

    def tick(self) -> None:
        """Maintenance tick: map consistency pass and pose republish."""
        self.map.update()
        if self.last_pose is None or self._last_pose_time is None:
            return
        if self.clock() - self._last_pose_time < self.config.pose_republish_interval:
            self._emit(self.last_pose, republished=True)

    def _emit(self, pose: ObserverPose, republished: bool) -> None:
        for out in self.outputs:
            out.write_pose(pose, republished=republished)

    def shutdown(self) -> bool:
        """Persist the map unless read only. Returns True if it was written.

        A failed save is logged and reported, never raised; the in-memory
        map stays valid.
        """
        if self._shutdown_done:
            return False
        self._shutdown_done = True
        try:
            return self.map_store.save_map(self.map)
        except OSError as e:
            self.logger.error("failed to save map to %s: %s", self.map_store.path, e)
            return False

    def run(self, source: BatchSource) -> SessionSummary:
        """Drive batches and ticks until the source runs dry or stop() is called.

        The map is saved on the way out even when a pass raised.
        """
        if not self.map_loaded:
            self.load_map()

        self.logger.info("config: %s", self.config.as_dict())
        self.logger.info("Fiducial Slam ready")

        t0 = time.time()
        try:
            for out in self.outputs:
                out.open()
            source.start()
            self.scheduler.start()

            while not self._stop_event.is_set():
                batch = source.read()
                if batch is not None:
                    self.handle_batch(batch)
                self.scheduler.run_pending()
                if batch is None:
                    if source.exhausted:
                        break
                    self._stop_event.wait(self.scheduler.time_until_due())
        finally:
            try:
                source.stop()
            except Exception as e:
                self.logger.warning("source stop failed: %s", e)

            for out in self.outputs:
                try:
                    out.close()
                except Exception as e:
                    self.logger.warning("output close failed: %s", e)

            saved = self.shutdown()

        rate = self.batches / max(1e-6, (time.time() - t0))
        self.logger.info(
            "summary batches=%d poses=%d ticks=%d fiducials=%d",
            self.batches, self.poses_resolved, self.scheduler.ticks, len(self.map),
        )
        return SessionSummary(
            self.batches,
            self.poses_resolved,
            self.scheduler.ticks,
            len(self.map),
            saved,
            rate,
        )
