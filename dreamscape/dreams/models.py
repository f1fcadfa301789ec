from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict


class DreamDraft(BaseModel):
    """A dream as the client submits it. The remote store assigns id and created_at."""

    model_config = ConfigDict(extra="forbid")

    user_title: Optional[str] = None
    ai_title: str = ""
    ai_description: str = ""
    transcript_raw: str = ""
    transcript_json: Any = None
    video_url: str = ""
    video_thumbnail: Optional[str] = None
    emojis: List[str] = []


class Dream(DreamDraft):
    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str
    created_at: datetime

    def matches(self, query: str) -> bool:
        needle = query.strip().lower()
        if not needle:
            return True
        haystack = [
            self.user_title or "",
            self.ai_title,
            self.ai_description,
            self.transcript_raw,
            " ".join(self.emojis),
        ]
        return any(needle in text.lower() for text in haystack)


IMMUTABLE_FIELDS = frozenset({"id", "created_at"})
EDITABLE_FIELDS = frozenset(DreamDraft.model_fields)


def validate_updates(fields: Mapping[str, Any]) -> Dict[str, Any]:
    if not fields:
        raise ValueError("update requires at least one field")
    immutable = sorted(IMMUTABLE_FIELDS.intersection(fields))
    if immutable:
        raise ValueError(f"fields are assigned by the record store and cannot be updated: {', '.join(immutable)}")
    unknown = sorted(set(fields) - EDITABLE_FIELDS)
    if unknown:
        raise ValueError(f"unknown dream fields: {', '.join(unknown)}")
    # Values are checked against the draft schema before anything reaches the record store.
    checked = DreamDraft.model_validate(dict(fields))
    return checked.model_dump(include=set(fields))


# --- video jobs ---

VIDEO_JOB_IDLE = "idle"
VIDEO_JOB_PROCESSING = "processing"
VIDEO_JOB_DONE = "done"
VIDEO_JOB_ERROR = "error"

# Callback payloads from the rendering pipeline use camelCase names.
VIDEO_JOB_WIRE_ALIASES = {"jobId": "job_id", "videoUrl": "video_url"}


@dataclass
class VideoJob:
    status: str = VIDEO_JOB_IDLE
    job_id: Optional[str] = None
    video_url: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass(frozen=True)
class DreamStoreSnapshot:
    dreams: Tuple[Dream, ...] = ()
    loading: bool = False
    error: Optional[str] = None
    video_job: Dict[str, Any] = field(default_factory=lambda: {"status": VIDEO_JOB_IDLE})
