"""
Client-side dream state.

- DreamStore mirrors the remote dream collection and reconciles it with each call
- VideoJobTracker follows the one video rendering job currently of interest
"""

from .backend import RemoteOperationFailed, SQLiteDreamBackend, create_backend
from .models import Dream, DreamDraft, DreamStoreSnapshot, VideoJob
from .store import DreamStore
from .video_job import VideoJobTracker

__all__ = [
    "Dream",
    "DreamDraft",
    "DreamStore",
    "DreamStoreSnapshot",
    "RemoteOperationFailed",
    "SQLiteDreamBackend",
    "VideoJob",
    "VideoJobTracker",
    "create_backend",
]
