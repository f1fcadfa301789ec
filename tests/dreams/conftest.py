import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from dreamscape.dreams.backend import RemoteOperationFailed
from dreamscape.dreams.store import DreamStore

BASE_TS = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeBackend:
    """In-memory record store that assigns ids and timestamps the way a real one does."""

    def __init__(self):
        self.rows = []
        self.fail = {}
        self.calls = []
        self.echo_updates = True
        self.update_hook = None
        self.closed = False
        self._n = 0

    def _maybe_fail(self, op):
        self.calls.append(op)
        if op in self.fail:
            raise RemoteOperationFailed(self.fail[op])

    def fetch_all(self):
        self._maybe_fail("fetch_all")
        return sorted((dict(r) for r in self.rows), key=lambda r: r["created_at"], reverse=True)

    def insert(self, rows):
        self._maybe_fail("insert")
        out = []
        for row in rows:
            self._n += 1
            stored = dict(row, id=str(self._n), created_at=(BASE_TS + timedelta(minutes=self._n)).isoformat())
            self.rows.append(stored)
            out.append(dict(stored))
        return out

    def update(self, dream_id, fields):
        self._maybe_fail("update")
        out = []
        for row in self.rows:
            if row["id"] == dream_id:
                row.update(fields)
                if self.update_hook:
                    self.update_hook(row)
                out.append(dict(row))
        return out if self.echo_updates else []

    def delete(self, dream_id):
        self._maybe_fail("delete")
        self.rows = [r for r in self.rows if r["id"] != dream_id]

    def close(self):
        self.closed = True


class GatedBackend:
    """Async record store whose calls stay pending until the test resolves them."""

    def __init__(self):
        self.pending = []

    async def _wait(self, op, *args):
        fut = asyncio.get_running_loop().create_future()
        self.pending.append((op, args, fut))
        return await fut

    async def fetch_all(self):
        return await self._wait("fetch_all")

    async def insert(self, rows):
        return await self._wait("insert", rows)

    async def update(self, dream_id, fields):
        return await self._wait("update", dream_id, fields)

    async def delete(self, dream_id):
        return await self._wait("delete", dream_id)

    def close(self):
        pass


def dream_row(dream_id, minutes, **fields):
    row = {
        "id": dream_id,
        "user_title": None,
        "ai_title": f"Dream {dream_id}",
        "ai_description": "",
        "transcript_raw": "",
        "transcript_json": None,
        "video_url": "",
        "video_thumbnail": None,
        "created_at": (BASE_TS + timedelta(minutes=minutes)).isoformat(),
        "emojis": [],
    }
    row.update(fields)
    return row


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def store(backend):
    s = DreamStore(backend)
    yield s
    s.close()


@pytest.fixture
def gated():
    return GatedBackend()


@pytest.fixture
def make_row():
    return dream_row
