from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Sequence

from .fusion_types import ObserverPose
from .observation import Observation
from .services.csv_writer import ObservationCsvWriter, PoseCsvWriter


class PoseSink(ABC):
    """Consumer of the engine's outbound stream."""

    @abstractmethod
    def open(self) -> None: ...

    @abstractmethod
    def write_pose(self, pose: ObserverPose, republished: bool = False) -> None: ...

    def write_observations(self, observations: Sequence[Observation]) -> None:
        return None

    @abstractmethod
    def close(self) -> None: ...


class CsvPoseOutput(PoseSink):
    """Observer poses to one CSV file, optionally observations to a second."""

    def __init__(
        self,
        path: str | Path,
        include_republished: bool = False,
        observations_path: Optional[str | Path] = None,
    ):
        self.path = Path(path)
        self.include_republished = include_republished
        self.observations_path = Path(observations_path) if observations_path else None
        self._writer: Optional[PoseCsvWriter] = None
        self._obs_writer: Optional[ObservationCsvWriter] = None

    def open(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._writer = PoseCsvWriter(str(self.path))
        self._writer.open()
        if self.observations_path is not None:
            self.observations_path.parent.mkdir(parents=True, exist_ok=True)
            self._obs_writer = ObservationCsvWriter(str(self.observations_path))
            self._obs_writer.open()

    def write_pose(self, pose: ObserverPose, republished: bool = False) -> None:
        if self._writer is None:
            return
        if republished and not self.include_republished:
            return
        self._writer.append(
            pose.stamp,
            pose.frame_id,
            pose.pose.translation,
            pose.pose.rotation,
            pose.pose.variance,
            pose.num_landmarks,
        )

    def write_observations(self, observations: Sequence[Observation]) -> None:
        if self._obs_writer is None:
            return
        for obs in observations:
            self._obs_writer.append(obs)

    def close(self) -> None:
        if self._writer is not None:
            self._writer.close()
            self._writer = None
        if self._obs_writer is not None:
            self._obs_writer.close()
            self._obs_writer = None
