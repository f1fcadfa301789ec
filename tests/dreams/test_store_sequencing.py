import asyncio

from dreamscape.dreams.backend import RemoteOperationFailed
from dreamscape.dreams.models import Dream
from dreamscape.dreams.store import DreamStore


async def _until_pending(backend, n):
    while len(backend.pending) < n:
        await asyncio.sleep(0)


def _seeded(gated, make_row, *ids):
    s = DreamStore(gated)
    s.dreams = [Dream.model_validate(make_row(i, 10 - n)) for n, i in enumerate(ids)]
    return s


def test_loading_stays_true_until_every_call_completes(gated, make_row):
    store = _seeded(gated, make_row, "1")

    async def scenario():
        first = asyncio.create_task(store.fetch_dreams())
        second = asyncio.create_task(store.delete_dream("1"))
        await _until_pending(gated, 2)
        assert store.loading is True

        gated.pending[1][2].set_result(None)
        await second
        assert store.loading is True

        gated.pending[0][2].set_result([])
        await first
        assert store.loading is False

    asyncio.run(scenario())


def test_stale_update_completion_is_discarded(gated, make_row):
    store = _seeded(gated, make_row, "1")

    async def scenario():
        older = asyncio.create_task(store.update_dream("1", {"user_title": "old"}))
        newer = asyncio.create_task(store.update_dream("1", {"user_title": "new"}))
        await _until_pending(gated, 2)

        gated.pending[1][2].set_result([make_row("1", 10, user_title="new")])
        await newer
        gated.pending[0][2].set_result([make_row("1", 10, user_title="old")])
        await older

    asyncio.run(scenario())
    assert store.dreams[0].user_title == "new"


def test_updates_on_different_records_both_apply(gated, make_row):
    store = _seeded(gated, make_row, "1", "2")

    async def scenario():
        a = asyncio.create_task(store.update_dream("1", {"user_title": "a"}))
        b = asyncio.create_task(store.update_dream("2", {"user_title": "b"}))
        await _until_pending(gated, 2)
        gated.pending[1][2].set_result([])
        gated.pending[0][2].set_result([])
        await asyncio.gather(a, b)

    asyncio.run(scenario())
    assert [d.user_title for d in store.dreams] == ["a", "b"]


def test_delete_wins_over_racing_update(gated, make_row):
    store = _seeded(gated, make_row, "1", "2")

    async def scenario():
        delete = asyncio.create_task(store.delete_dream("1"))
        update = asyncio.create_task(store.update_dream("1", {"user_title": "late"}))
        await _until_pending(gated, 2)

        gated.pending[0][2].set_result(None)
        await delete
        gated.pending[1][2].set_result([])
        await update

    asyncio.run(scenario())
    assert [d.id for d in store.dreams] == ["2"]


def test_update_issued_before_delete_is_superseded(gated, make_row):
    store = _seeded(gated, make_row, "1", "2")

    async def scenario():
        update = asyncio.create_task(store.update_dream("2", {"user_title": "late"}))
        delete = asyncio.create_task(store.delete_dream("2"))
        await _until_pending(gated, 2)

        gated.pending[1][2].set_result(None)
        await delete
        gated.pending[0][2].set_result([make_row("2", 9, user_title="late")])
        await update

    asyncio.run(scenario())
    assert [d.id for d in store.dreams] == ["1"]


def test_older_fetch_cannot_overwrite_newer_fetch(gated, make_row):
    store = DreamStore(gated)

    async def scenario():
        older = asyncio.create_task(store.fetch_dreams())
        newer = asyncio.create_task(store.fetch_dreams())
        await _until_pending(gated, 2)

        gated.pending[1][2].set_result([make_row("2", 2), make_row("1", 1)])
        await newer
        gated.pending[0][2].set_result([make_row("1", 1)])
        await older

    asyncio.run(scenario())
    assert [d.id for d in store.dreams] == ["2", "1"]


def test_stale_failure_does_not_set_error(gated, make_row):
    store = _seeded(gated, make_row, "1")

    async def scenario():
        older = asyncio.create_task(store.update_dream("1", {"user_title": "old"}))
        newer = asyncio.create_task(store.update_dream("1", {"user_title": "new"}))
        await _until_pending(gated, 2)

        gated.pending[1][2].set_result([])
        await newer
        gated.pending[0][2].set_exception(RemoteOperationFailed("deadlock detected"))
        await older

    asyncio.run(scenario())
    assert store.error is None
    assert store.dreams[0].user_title == "new"


def test_concurrent_adds_prepend_in_completion_order(gated, make_row):
    store = DreamStore(gated)

    async def scenario():
        a = asyncio.create_task(store.add_dream({"ai_title": "A"}))
        b = asyncio.create_task(store.add_dream({"ai_title": "B"}))
        await _until_pending(gated, 2)

        gated.pending[1][2].set_result([make_row("b", 2, ai_title="B")])
        await b
        gated.pending[0][2].set_result([make_row("a", 1, ai_title="A")])
        await a

    asyncio.run(scenario())
    assert [d.id for d in store.dreams] == ["a", "b"]


def test_update_survives_later_failed_delete(gated, make_row):
    store = _seeded(gated, make_row, "1")

    async def scenario():
        update = asyncio.create_task(store.update_dream("1", {"user_title": "kept remotely"}))
        delete = asyncio.create_task(store.delete_dream("1"))
        await _until_pending(gated, 2)

        gated.pending[0][2].set_result([make_row("1", 10, user_title="kept remotely")])
        await update
        gated.pending[1][2].set_exception(RemoteOperationFailed("delete denied"))
        await delete

    asyncio.run(scenario())
    assert store.dreams[0].user_title == "kept remotely"
    assert store.error == "delete denied"


def test_update_survives_later_failed_update(gated, make_row):
    store = _seeded(gated, make_row, "1")

    async def scenario():
        older = asyncio.create_task(store.update_dream("1", {"user_title": "first"}))
        newer = asyncio.create_task(store.update_dream("1", {"user_title": "second"}))
        await _until_pending(gated, 2)

        gated.pending[1][2].set_exception(RemoteOperationFailed("permission denied"))
        await newer
        gated.pending[0][2].set_result([make_row("1", 10, user_title="first")])
        await older

    asyncio.run(scenario())
    assert store.dreams[0].user_title == "first"
    assert store.error == "permission denied"


def test_older_fetch_applies_when_newer_fetch_fails(gated, make_row):
    store = DreamStore(gated)

    async def scenario():
        older = asyncio.create_task(store.fetch_dreams())
        newer = asyncio.create_task(store.fetch_dreams())
        await _until_pending(gated, 2)

        gated.pending[1][2].set_exception(RemoteOperationFailed("timeout"))
        await newer
        gated.pending[0][2].set_result([make_row("1", 1)])
        await older

    asyncio.run(scenario())
    assert [d.id for d in store.dreams] == ["1"]


def test_sequencing_keys_are_released_once_idle(gated, make_row):
    store = _seeded(gated, make_row, "1", "2")

    async def scenario():
        tasks = [
            asyncio.create_task(store.update_dream("1", {"user_title": "a"})),
            asyncio.create_task(store.delete_dream("2")),
            asyncio.create_task(store.fetch_dreams()),
        ]
        await _until_pending(gated, 3)
        gated.pending[0][2].set_result([])
        gated.pending[1][2].set_exception(RemoteOperationFailed("nope"))
        gated.pending[2][2].set_result([make_row("1", 10, user_title="a")])
        await asyncio.gather(*tasks)

    asyncio.run(scenario())
    assert store._applied == {}
    assert store._pending == {}
