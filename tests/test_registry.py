import asyncio

import pytest

from hypercorn_core.crypto import KeyPair, ed25519_generate
from hypercorn_core.errors import StorageError
from hypercorn_core.feed import FeedState
from hypercorn_core.registry import FeedRegistry


@pytest.fixture
def registry(tmp_path):
    priv, pub = ed25519_generate()
    return FeedRegistry(str(tmp_path / "hypercore"), KeyPair(public_key=pub, private_key=priv))


async def ignore(entry):
    return None


@pytest.mark.asyncio
async def test_open_main_is_idempotent(registry):
    main = await registry.open_main()
    assert await registry.open_main() is main
    assert main.writable
    assert registry.pair.public_key in registry
    await registry.close_all()


@pytest.mark.asyncio
async def test_concurrent_adopt_opens_one_handle(registry):
    _, key = ed25519_generate()

    first, second = await asyncio.gather(
        registry.adopt(key, ignore),
        registry.adopt(key, ignore),
    )

    assert first is second
    assert len(registry) == 1
    assert registry.watcher(key) is not None
    await registry.close_all()


@pytest.mark.asyncio
async def test_failed_adopt_leaves_nothing(registry, monkeypatch):
    _, key = ed25519_generate()

    async def broken_watch(self, start, handler):
        raise StorageError("watch failed")

    monkeypatch.setattr("hypercorn_core.feed.Feed.watch", broken_watch)
    with pytest.raises(StorageError):
        await registry.adopt(key, ignore)

    assert key not in registry
    assert registry.watcher(key) is None


@pytest.mark.asyncio
async def test_release(registry):
    main = await registry.open_main()
    _, key = ed25519_generate()
    feed = await registry.adopt(key, ignore)

    assert await registry.release(key)
    assert key not in registry
    assert feed.state is FeedState.CLOSED

    # untracked keys and the main feed are left alone
    assert not await registry.release(key)
    assert not await registry.release(main.feed_key)
    assert main.state is FeedState.READY
    await registry.close_all()


@pytest.mark.asyncio
async def test_borrow_closes_transient_handle(registry):
    _, key = ed25519_generate()

    async with registry.borrow(key) as feed:
        assert not feed.full
        assert feed.state is FeedState.READY
        assert key not in registry

    assert feed.state is FeedState.CLOSED
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_borrow_closes_on_error(registry):
    _, key = ed25519_generate()

    with pytest.raises(RuntimeError):
        async with registry.borrow(key) as feed:
            raise RuntimeError("lookup blew up")

    assert feed.state is FeedState.CLOSED


@pytest.mark.asyncio
async def test_borrow_lends_tracked_handle(registry):
    _, key = ed25519_generate()
    adopted = await registry.adopt(key, ignore)

    async with registry.borrow(key) as feed:
        assert feed is adopted

    assert adopted.state is FeedState.READY
    await registry.close_all()


@pytest.mark.asyncio
async def test_close_all(registry):
    main = await registry.open_main()
    await registry.watch_main(ignore)
    feeds = [await registry.adopt(ed25519_generate()[1], ignore) for _ in range(3)]

    await registry.close_all()

    assert len(registry) == 0
    assert registry.main is None
    assert all(f.state is FeedState.CLOSED for f in feeds + [main])
