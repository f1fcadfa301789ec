from __future__ import annotations

import asyncio
import inspect
import itertools
from typing import Any, Callable, Dict, List, Mapping, Optional, Union
from uuid import uuid4

from dreamscape.utils.logging_setup import configure_logging, get_logger, log_context

from .backend import DreamBackend, create_backend
from .models import Dream, DreamDraft, DreamStoreSnapshot, validate_updates
from .video_job import VideoJobTracker

logger = get_logger(__name__)

Listener = Callable[[DreamStoreSnapshot], None]

_COLLECTION_KEY = "collection"


def _record_key(dream_id: str) -> str:
    return f"dream:{dream_id}"


class DreamStore:
    """
    Client-side mirror of the remote dream collection plus the video job tracker.

    Remote failures never propagate out of the async operations; they land in
    `error`. Consumers read `snapshot()` (or subscribe) and re-render from it.

    Each operation takes a token when issued. A successful completion is applied
    unless a newer operation on the same key (the whole collection for fetches,
    the record for updates and deletes) has already been applied; a failure
    never cancels an older success. Deletes always apply.
    """

    def __init__(self, backend: DreamBackend, store_id: Optional[str] = None):
        self.backend = backend
        self.store_id = store_id or uuid4().hex[:8]
        self.dreams: List[Dream] = []
        self.error: Optional[str] = None
        self.video_tracker = VideoJobTracker()
        self._in_flight = 0
        self._tokens = itertools.count(1)
        # Per key: newest applied token, and number of calls still in flight.
        self._applied: Dict[str, int] = {}
        self._pending: Dict[str, int] = {}
        self._listeners: List[Listener] = []
        self._closed = False

    @classmethod
    def open(cls, config: Mapping[str, Any], store_id: Optional[str] = None) -> "DreamStore":
        configure_logging(
            log_file=config.get("log_file", "logs/dreamscape.log"),
            level=config.get("log_level", "INFO"),
            enable_console=bool(config.get("log_console", False)),
        )
        return cls(backend=create_backend(config), store_id=store_id)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._listeners.clear()
        self.backend.close()

    def __enter__(self) -> "DreamStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # --- read surface ---

    @property
    def loading(self) -> bool:
        return self._in_flight > 0

    @property
    def video_job(self) -> Dict[str, Any]:
        return self.video_tracker.to_dict()

    def snapshot(self) -> DreamStoreSnapshot:
        return DreamStoreSnapshot(
            dreams=tuple(self.dreams),
            loading=self.loading,
            error=self.error,
            video_job=self.video_job,
        )

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def get_dream(self, dream_id: str) -> Optional[Dream]:
        return next((d for d in self.dreams if d.id == dream_id), None)

    def search_dreams(self, query: str) -> List[Dream]:
        return [d for d in self.dreams if d.matches(query)]

    # --- plumbing ---

    def _notify(self) -> None:
        snap = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snap)
            except Exception:
                logger.exception("Dream store listener failed")

    def _issue(self, key: Optional[str] = None) -> int:
        token = next(self._tokens)
        if key is not None:
            self._pending[key] = self._pending.get(key, 0) + 1
        return token

    def _superseded(self, key: str, token: int) -> bool:
        return self._applied.get(key, 0) > token

    def _mark_applied(self, key: str, token: int) -> None:
        self._applied[key] = max(self._applied.get(key, 0), token)

    def _release(self, key: str) -> None:
        remaining = self._pending.get(key, 0) - 1
        if remaining > 0:
            self._pending[key] = remaining
        else:
            # Nothing older is in flight; later tokens are always larger.
            self._pending.pop(key, None)
            self._applied.pop(key, None)

    def _begin(self) -> None:
        self._in_flight += 1
        self.error = None
        self._notify()

    def _finish(self, key: Optional[str] = None) -> None:
        if key is not None:
            self._release(key)
        self._in_flight = max(0, self._in_flight - 1)
        self._notify()

    async def _call(self, method: Callable[..., Any], *args: Any) -> Any:
        if inspect.iscoroutinefunction(method):
            return await method(*args)
        return await asyncio.to_thread(method, *args)

    def _fail(self, operation: str, exc: Exception) -> None:
        message = getattr(exc, "message", None) or str(exc) or exc.__class__.__name__
        logger.warning("%s failed: %s", operation, message)
        self.error = message

    # --- dream collection ---

    async def fetch_dreams(self) -> None:
        token = self._issue(_COLLECTION_KEY)
        with log_context(store_id=self.store_id, operation="fetch_dreams"):
            self._begin()
            try:
                rows = await self._call(self.backend.fetch_all)
                dreams = [Dream.model_validate(r) for r in rows or []]
                if self._superseded(_COLLECTION_KEY, token):
                    logger.debug("Discarding fetch %d, a newer fetch already applied", token)
                else:
                    self.dreams = dreams
                    self._mark_applied(_COLLECTION_KEY, token)
                    logger.info("Fetched %d dream(s)", len(dreams))
            except Exception as e:
                if not self._superseded(_COLLECTION_KEY, token):
                    self._fail("fetch_dreams", e)
            finally:
                self._finish(_COLLECTION_KEY)

    async def add_dream(self, draft: Union[DreamDraft, Mapping[str, Any]]) -> None:
        if not isinstance(draft, DreamDraft):
            draft = DreamDraft.model_validate(dict(draft))
        self._issue()
        with log_context(store_id=self.store_id, operation="add_dream"):
            self._begin()
            try:
                rows = await self._call(self.backend.insert, [draft.model_dump()])
                created = [Dream.model_validate(r) for r in rows or []]
            except Exception as e:
                self._fail("add_dream", e)
            else:
                self.dreams = created + self.dreams
                logger.info("Added dream(s) %s", [d.id for d in created])
            finally:
                self._finish()

    async def update_dream(self, dream_id: str, fields: Mapping[str, Any]) -> None:
        updates = validate_updates(fields)
        key = _record_key(dream_id)
        token = self._issue(key)
        with log_context(store_id=self.store_id, operation="update_dream"):
            self._begin()
            try:
                rows = await self._call(self.backend.update, dream_id, updates)
                if self._superseded(key, token):
                    logger.debug("Discarding update %d for dream %s, a newer change already applied", token, dream_id)
                else:
                    echoed = next((r for r in rows or [] if str(r.get("id")) == dream_id), None)
                    self.dreams = self._merged(dream_id, echoed if echoed is not None else updates)
                    self._mark_applied(key, token)
            except Exception as e:
                if not self._superseded(key, token):
                    self._fail("update_dream", e)
            finally:
                self._finish(key)

    def _merged(self, dream_id: str, fields: Mapping[str, Any]) -> List[Dream]:
        merged: List[Dream] = []
        for dream in self.dreams:
            if dream.id == dream_id:
                values = {**dream.model_dump(), **fields}
                # id and created_at stay as first assigned.
                values["id"], values["created_at"] = dream.id, dream.created_at
                dream = Dream.model_validate(values)
            merged.append(dream)
        return merged

    async def delete_dream(self, dream_id: str) -> None:
        key = _record_key(dream_id)
        token = self._issue(key)
        with log_context(store_id=self.store_id, operation="delete_dream"):
            self._begin()
            try:
                await self._call(self.backend.delete, dream_id)
            except Exception as e:
                if not self._superseded(key, token):
                    self._fail("delete_dream", e)
            else:
                self.dreams = [d for d in self.dreams if d.id != dream_id]
                self._mark_applied(key, token)
                logger.info("Deleted dream %s", dream_id)
            finally:
                self._finish(key)

    # --- video job ---

    def start_video_job(self, job_id: Optional[str] = None) -> int:
        generation = self.video_tracker.start(job_id)
        self._notify()
        return generation

    def update_video_job(self, fields: Mapping[str, Any], generation: Optional[int] = None) -> bool:
        applied = self.video_tracker.update(fields, generation=generation)
        if applied:
            self._notify()
        return applied

    def clear_video_job(self) -> None:
        self.video_tracker.clear()
        self._notify()
