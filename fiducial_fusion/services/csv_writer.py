import csv

import numpy as np


def _vec(values, size: int) -> list:
    if values is None:
        return [float("nan")] * size
    a = np.asarray(values, dtype=float).reshape(-1).tolist()
    if len(a) < size:
        a += [float("nan")] * (size - len(a))
    return a[:size]


class _RowWriter:
    HEADER: list = []

    def __init__(self, csv_path: str):
        self.csv_path = csv_path
        self._opened = False
        self._fh = None
        self._w = None

    def open(self):
        self._fh = open(self.csv_path, "w", newline="")
        self._w = csv.writer(self._fh)
        self._w.writerow(self.HEADER)
        self._opened = True

    def _write(self, row: list):
        self._w.writerow(row)
        self._fh.flush()

    def close(self):
        if self._opened and self._fh:
            self._fh.close()
            self._opened = False
            self._fh = None
            self._w = None


class PoseCsvWriter(_RowWriter):
    """Observer pose rows, one per resolved fusion pass or republish."""

    HEADER = [
        "stamp",
        "frame_id",
        "tx", "ty", "tz",
        "qx", "qy", "qz", "qw",
        "variance",
        "num_landmarks",
    ]

    @classmethod
    def format_row(cls, stamp, frame_id, translation, rotation, variance, num_landmarks) -> list:
        return [
            f"{stamp:.6f}",
            frame_id,
            *_vec(translation, 3),
            *_vec(rotation, 4),
            f"{variance:.6g}",
            num_landmarks,
        ]

    def append(self, stamp, frame_id, translation, rotation, variance, num_landmarks):
        self._write(self.format_row(stamp, frame_id, translation, rotation, variance, num_landmarks))


class ObservationCsvWriter(_RowWriter):
    """Weighted camera-frame observations, one row per fiducial per pass."""

    HEADER = [
        "stamp",
        "frame_id",
        "fiducial_id",
        "tx", "ty", "tz",
        "qx", "qy", "qz", "qw",
        "variance",
        "object_error",
        "fiducial_area",
    ]

    @classmethod
    def format_row(cls, obs) -> list:
        return [
            f"{obs.stamp:.6f}",
            obs.frame_id,
            obs.fiducial_id,
            *_vec(obs.T_camFid.translation, 3),
            *_vec(obs.T_camFid.rotation, 4),
            f"{obs.variance:.6g}",
            f"{obs.object_error:.6g}",
            f"{obs.fiducial_area:.6g}",
        ]

    def append(self, obs):
        self._write(self.format_row(obs))
