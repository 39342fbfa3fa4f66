from __future__ import annotations

import csv
import logging
import os
import tempfile
from pathlib import Path
from typing import Iterable, Optional

from .map_state import Landmark, MapState
from .transform_with_variance import TransformWithVariance


class MapStore:
    """CSV map file, one row per fiducial.

    Saves go to a temp file in the target directory which is then renamed
    over the map, so a failed save leaves the previous map intact.
    """

    HEADER = [
        "fiducial_id",
        "tx", "ty", "tz",
        "qx", "qy", "qz", "qw",
        "variance",
        "num_obs",
        "first_seen", "last_seen",
        "links",
    ]

    def __init__(self, path: str | Path, logger: Optional[logging.Logger] = None):
        self.path = Path(path)
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def to_row(cls, lm: Landmark) -> list:
        return [
            lm.fiducial_id,
            *[repr(float(v)) for v in lm.pose.translation],
            *[repr(float(v)) for v in lm.pose.rotation],
            repr(float(lm.pose.variance)),
            lm.num_obs,
            repr(float(lm.first_seen)),
            repr(float(lm.last_seen)),
            " ".join(str(i) for i in sorted(lm.links)),
        ]

    @classmethod
    def from_row(cls, row: dict) -> Landmark:
        translation = [float(row["tx"]), float(row["ty"]), float(row["tz"])]
        rotation = [float(row["qx"]), float(row["qy"]), float(row["qz"]), float(row["qw"])]
        pose = TransformWithVariance(translation, rotation, float(row["variance"]))
        if not pose.is_finite():
            raise ValueError(f"invalid pose for fiducial {row['fiducial_id']}")
        links_raw = (row.get("links") or "").split()
        return Landmark(
            int(row["fiducial_id"]),
            pose,
            num_obs=int(row["num_obs"]),
            first_seen=float(row["first_seen"]),
            last_seen=float(row["last_seen"]),
            links={int(i) for i in links_raw},
        )

    def load(self) -> list[Landmark]:
        if not self.path.exists():
            self.logger.info("map file %s not found, starting with an empty map", self.path)
            return []

        landmarks = []
        with self.path.open("r", newline="", encoding="utf-8") as fp:
            reader = csv.DictReader(fp)
            if reader.fieldnames is None or list(reader.fieldnames) != self.HEADER:
                raise ValueError(f"{self.path}: unexpected map header {reader.fieldnames}")
            for lineno, row in enumerate(reader, start=2):
                try:
                    landmarks.append(self.from_row(row))
                except (KeyError, TypeError, ValueError) as e:
                    self.logger.warning("%s:%d: skipping bad row: %s", self.path, lineno, e)

        self.logger.info("loaded %d fiducials from %s", len(landmarks), self.path)
        return landmarks

    def save(self, landmarks: Iterable[Landmark]) -> Path:
        """Write the map atomically. Raises OSError on failure."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
        )
        count = 0
        try:
            with os.fdopen(fd, "w", newline="", encoding="utf-8") as fh:
                w = csv.writer(fh)
                w.writerow(self.HEADER)
                for lm in sorted(landmarks, key=lambda l: l.fiducial_id):
                    w.writerow(self.to_row(lm))
                    count += 1
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

        self.logger.info("saved %d fiducials to %s", count, self.path)
        return self.path

    def save_map(self, map_state: MapState) -> bool:
        """Persist ``map_state`` unless it is read only. Returns True if written."""
        if map_state.read_only:
            self.logger.info("not saving map per read_only_map option")
            return False
        self.save(list(map_state))
        return True

    def load_into(self, map_state: MapState) -> int:
        landmarks = self.load()
        map_state.load(landmarks)
        return len(landmarks)
