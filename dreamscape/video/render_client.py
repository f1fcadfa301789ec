import asyncio
import time
from typing import Any, Dict, Optional

import requests

from dreamscape.dreams.models import VIDEO_JOB_DONE, VIDEO_JOB_ERROR
from dreamscape.dreams.store import DreamStore
from dreamscape.utils.logging_setup import get_logger, log_context

logger = get_logger(__name__)


class RenderJobFailed(RuntimeError):
    pass


def _response_data(resp: requests.Response, action: str) -> Dict[str, Any]:
    try:
        body = resp.json()
    except ValueError as e:
        raise RenderJobFailed(f"{action} failed: invalid JSON body") from e
    data = body.get("data") if isinstance(body, dict) else None
    if not isinstance(data, dict):
        raise RenderJobFailed(f"{action} failed: unexpected response {body!r}")
    return data


class RenderClient:
    """Submits dream videos to the rendering service and polls them to completion."""

    def __init__(self, base_url: str, api_key: str = "", timeout_sec: float = 30):
        if not base_url:
            raise ValueError("base_url must be non-empty (set RENDER_API_URL)")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_sec = timeout_sec

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "RenderClient":
        return cls(
            base_url=config.get("render_api_url", ""),
            api_key=config.get("render_api_key", ""),
            timeout_sec=config.get("request_timeout_sec", 30),
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def submit(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/jobs"
        resp = requests.post(url, headers=self._headers(), json=payload, timeout=self.timeout_sec)
        if resp.status_code not in (200, 201, 202):
            raise RenderJobFailed(f"Submit failed: {resp.status_code} {resp.text}")
        data = _response_data(resp, "Submit")
        if not data.get("id"):
            raise RenderJobFailed(f"Submit failed: response has no job id: {data!r}")
        if isinstance(data.get("urls"), dict):
            data["result_url"] = data["urls"].get("get")
        return data

    def poll(
        self,
        job_id: str,
        result_url_hint: Optional[str] = None,
        timeout_sec: float = 600,
        poll_interval_sec: float = 3,
    ) -> Dict[str, Any]:
        deadline = time.time() + timeout_sec
        url = result_url_hint or f"{self.base_url}/jobs/{job_id}"
        while time.time() < deadline:
            resp = requests.get(url, headers=self._headers(), timeout=self.timeout_sec)
            if resp.status_code != 200:
                raise RenderJobFailed(f"Poll failed: {resp.status_code} {resp.text}")
            data = _response_data(resp, "Poll")
            status = data.get("status")
            if status == "completed":
                return data
            if status == "failed":
                raise RenderJobFailed(f"Render failed: {data.get('error')}")
            time.sleep(poll_interval_sec)
        raise TimeoutError(f"Timed out waiting for render job {job_id}")


def _video_url(result: Dict[str, Any]) -> Optional[str]:
    outputs = result.get("outputs") or []
    return result.get("video_url") or (outputs[0] if outputs else None)


async def render_dream_video(
    store: DreamStore,
    client: RenderClient,
    dream_id: str,
    payload: Dict[str, Any],
    timeout_sec: float = 600,
    poll_interval_sec: float = 3,
) -> Dict[str, Any]:
    """
    Render a video for a dream and report its lifecycle to the store's video job.

    On success the video url is attached to the dream. Failures end in the job's
    error state rather than being raised.
    """
    with log_context(store_id=store.store_id, operation="render_dream_video"):
        try:
            task = await asyncio.to_thread(client.submit, payload)
            if not task.get("id"):
                raise RenderJobFailed(f"Submit failed: response has no job id: {task!r}")
        except (RenderJobFailed, requests.RequestException) as e:
            generation = store.start_video_job()
            store.update_video_job({"status": VIDEO_JOB_ERROR, "error": str(e)}, generation=generation)
            logger.warning("Render submit for dream %s failed: %s", dream_id, e)
            return store.video_job

        job_id = task.get("id")
        generation = store.start_video_job(job_id)
        try:
            result = await asyncio.to_thread(
                client.poll,
                job_id,
                task.get("result_url"),
                timeout_sec,
                poll_interval_sec,
            )
        except (RenderJobFailed, TimeoutError, requests.RequestException) as e:
            store.update_video_job({"status": VIDEO_JOB_ERROR, "error": str(e)}, generation=generation)
            logger.warning("Render job %s for dream %s failed: %s", job_id, dream_id, e)
            return store.video_job

        video_url = _video_url(result)
        if not video_url:
            store.update_video_job(
                {"status": VIDEO_JOB_ERROR, "error": "Render completed without a video url"},
                generation=generation,
            )
            return store.video_job

        store.update_video_job({"status": VIDEO_JOB_DONE, "videoUrl": video_url}, generation=generation)
        # The video belongs to this dream even if a newer job now owns the tracker.
        updates = {"video_url": video_url}
        if result.get("thumbnail_url"):
            updates["video_thumbnail"] = result["thumbnail_url"]
        await store.update_dream(dream_id, updates)
        logger.info("Render job %s for dream %s finished: %s", job_id, dream_id, video_url)
        return store.video_job
