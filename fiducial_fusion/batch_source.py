"""Sources of detector sighting batches.

Provides a unified interface for feeding the engine:
- In-memory lists (tests, embedding)
- JSON-lines recordings of detector output, one batch per line
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Iterable, Optional

from .fusion_types import RawSighting, SightingBatch


logger = logging.getLogger(__name__)


class BatchSource(ABC):
    """Abstract base class for batch sources."""

    @abstractmethod
    def start(self) -> None:
        """Called once before any read()."""
        ...

    @abstractmethod
    def read(self) -> Optional[SightingBatch]:
        """Next batch, or None if none is available right now."""
        ...

    @property
    @abstractmethod
    def exhausted(self) -> bool:
        """True once the source will never produce another batch."""
        ...

    @abstractmethod
    def stop(self) -> None:
        ...


class ListBatchSource(BatchSource):
    def __init__(self, batches: Iterable[SightingBatch]):
        self._batches = list(batches)
        self._idx = 0

    def start(self) -> None:
        self._idx = 0

    def read(self) -> Optional[SightingBatch]:
        if self._idx >= len(self._batches):
            return None
        batch = self._batches[self._idx]
        self._idx += 1
        return batch

    @property
    def exhausted(self) -> bool:
        return self._idx >= len(self._batches)

    def stop(self) -> None:
        return None


def _floats(data: dict[str, Any], key: str, size: int) -> Optional[list[float]]:
    values = data.get(key)
    if values is None:
        return None
    values = [float(v) for v in values]
    if len(values) != size:
        raise ValueError(f"fiducial {data['fiducial_id']}: {key} needs {size} values, got {len(values)}")
    return values


def sighting_from_dict(data: dict[str, Any]) -> RawSighting:
    if "fiducial_id" not in data:
        raise ValueError("sighting missing fiducial_id")
    key = "translation" if "translation" in data else "tvec"
    translation = _floats(data, key, 3)
    if translation is None:
        raise ValueError(f"fiducial {data['fiducial_id']}: missing translation")
    rotation = _floats(data, "rotation", 4)
    rvec = _floats(data, "rvec", 3)
    if rotation is None and rvec is None:
        raise ValueError(f"fiducial {data['fiducial_id']}: missing rotation")
    return RawSighting(
        fiducial_id=int(data["fiducial_id"]),
        tvec=translation,
        rotation=rotation,
        rvec=rvec,
        object_error=float(data.get("object_error", 0.0)),
        fiducial_area=float(data.get("fiducial_area", 0.0)),
    )


def batch_from_dict(data: dict[str, Any]) -> SightingBatch:
    sightings = [sighting_from_dict(t) for t in data.get("transforms", [])]
    return SightingBatch(
        stamp=float(data.get("stamp", 0.0)),
        frame_id=str(data.get("frame_id", "camera")),
        sightings=sightings,
    )


class JsonlBatchSource(BatchSource):
    """Replay a recording with one JSON batch object per line.

    Malformed lines are logged and skipped.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._fh = None
        self._done = False
        self.lineno = 0
        self.skipped = 0

    def start(self) -> None:
        if not self.path.exists():
            raise FileNotFoundError(f"Input not found: {self.path}")
        self._fh = self.path.open("r", encoding="utf-8")
        self._done = False

    def read(self) -> Optional[SightingBatch]:
        if self._fh is None or self._done:
            return None
        while True:
            line = self._fh.readline()
            if not line:
                self._done = True
                return None
            self.lineno += 1
            line = line.strip()
            if not line:
                continue
            try:
                return batch_from_dict(json.loads(line))
            except (ValueError, TypeError, AttributeError) as e:
                self.skipped += 1
                logger.warning("%s:%d: skipping malformed batch: %s", self.path, self.lineno, e)

    @property
    def exhausted(self) -> bool:
        return self._done

    def stop(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None
