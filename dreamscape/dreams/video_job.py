from __future__ import annotations

from dataclasses import fields as dataclass_fields
from typing import Any, Dict, Mapping, Optional

from dreamscape.utils.logging_setup import get_logger

from .models import VIDEO_JOB_IDLE, VIDEO_JOB_PROCESSING, VIDEO_JOB_WIRE_ALIASES, VideoJob

logger = get_logger(__name__)

_JOB_FIELDS = frozenset(f.name for f in dataclass_fields(VideoJob))


class VideoJobTracker:
    """
    Holds the state of the most recent video rendering job.

    The tracker never polls. Whoever drives the rendering pipeline reports progress
    through update(). Each start() opens a new generation; an update tagged with an
    older generation comes from a superseded job and is ignored.
    """

    def __init__(self) -> None:
        self._job = VideoJob()
        self._generation = 0

    @property
    def job(self) -> VideoJob:
        return VideoJob(**self._job.to_dict())

    @property
    def generation(self) -> int:
        return self._generation

    def to_dict(self) -> Dict[str, Any]:
        return self._job.to_dict()

    def start(self, job_id: Optional[str] = None) -> int:
        self._generation += 1
        self._job = VideoJob(status=VIDEO_JOB_PROCESSING, job_id=job_id)
        logger.info("Video job started (job_id=%s, generation=%d)", job_id, self._generation)
        return self._generation

    def update(self, fields: Mapping[str, Any], generation: Optional[int] = None) -> bool:
        if generation is not None and generation != self._generation:
            logger.info(
                "Ignoring update for superseded video job (generation %d, current %d): %s",
                generation,
                self._generation,
                dict(fields),
            )
            return False

        merged = self._job.to_dict()
        for key, value in fields.items():
            name = VIDEO_JOB_WIRE_ALIASES.get(key, key)
            if name not in _JOB_FIELDS:
                logger.warning("Dropping unknown video job field %r", key)
                continue
            merged[name] = value
        self._job = VideoJob(**merged)
        return True

    def clear(self) -> None:
        # A cleared job is superseded too; its late callbacks must not revive it.
        self._generation += 1
        self._job = VideoJob(status=VIDEO_JOB_IDLE)
