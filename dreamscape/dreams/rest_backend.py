from typing import Any, Dict, List, Mapping, Sequence

import requests

from .backend import RemoteOperationFailed


def _error_message(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        message = body.get("message") or body.get("error_description") or body.get("error")
        if message:
            return str(message)
    return f"{resp.status_code} {resp.text}".strip()


class RestDreamBackend:
    """PostgREST-style client for a hosted `dreams` table (e.g. Supabase)."""

    def __init__(self, base_url: str, api_key: str = "", table: str = "dreams", timeout_sec: float = 30):
        if not base_url:
            raise ValueError("base_url must be non-empty (set SUPABASE_URL)")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.table = table
        self.timeout_sec = timeout_sec

    @property
    def table_url(self) -> str:
        return f"{self.base_url}/rest/v1/{self.table}"

    def _headers(self, returning: bool = False) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        if returning:
            headers["Prefer"] = "return=representation"
        return headers

    def _check(self, resp: requests.Response) -> Any:
        if resp.status_code >= 400:
            raise RemoteOperationFailed(_error_message(resp))
        if resp.status_code == 204 or not resp.content:
            return []
        try:
            return resp.json()
        except ValueError as e:
            raise RemoteOperationFailed(f"Invalid JSON from record store: {e}") from e

    def fetch_all(self) -> List[Dict[str, Any]]:
        try:
            resp = requests.get(
                self.table_url,
                headers=self._headers(),
                params={"select": "*", "order": "created_at.desc"},
                timeout=self.timeout_sec,
            )
        except requests.RequestException as e:
            raise RemoteOperationFailed(str(e)) from e
        return self._check(resp) or []

    def insert(self, rows: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        try:
            resp = requests.post(
                self.table_url,
                headers=self._headers(returning=True),
                params={"select": "*"},
                json=[dict(r) for r in rows],
                timeout=self.timeout_sec,
            )
        except requests.RequestException as e:
            raise RemoteOperationFailed(str(e)) from e
        return self._check(resp) or []

    def update(self, dream_id: str, fields: Mapping[str, Any]) -> List[Dict[str, Any]]:
        try:
            resp = requests.patch(
                self.table_url,
                headers=self._headers(returning=True),
                params={"id": f"eq.{dream_id}", "select": "*"},
                json=dict(fields),
                timeout=self.timeout_sec,
            )
        except requests.RequestException as e:
            raise RemoteOperationFailed(str(e)) from e
        return self._check(resp) or []

    def delete(self, dream_id: str) -> None:
        try:
            resp = requests.delete(
                self.table_url,
                headers=self._headers(),
                params={"id": f"eq.{dream_id}"},
                timeout=self.timeout_sec,
            )
        except requests.RequestException as e:
            raise RemoteOperationFailed(str(e)) from e
        self._check(resp)

    def close(self) -> None:
        pass
