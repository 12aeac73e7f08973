import asyncio

import pytest

from hypercorn_core.crypto import ed25519_generate
from hypercorn_core.errors import NotFoundError, StorageError
from hypercorn_core.feed import Feed, FeedState, feed_topic, want_topic
from hypercorn_core.storage import Entry


def own_feed(tmp_path, transport=None, **kwargs):
    priv, pub = ed25519_generate()
    return Feed(str(tmp_path / pub.hex()), pub, full=True, private_key=priv, transport=transport, **kwargs)


def remote_feed(tmp_path, key=None, full=True, transport=None, **kwargs):
    key = key or ed25519_generate()[1]
    return Feed(str(tmp_path / key.hex()), key, full=full, transport=transport, **kwargs)


@pytest.mark.asyncio
async def test_append_and_read(tmp_path):
    feed = await own_feed(tmp_path).open()
    assert feed.created
    assert feed.state is FeedState.READY

    assert await feed.append("post", {"content": "a"}) == 0
    assert await feed.append("post", {"content": "b"}) == 1

    assert (await feed.get_message(1)).payload == {"content": "b"}
    assert [e.index for e in await feed.get_timeline(0, 10)] == [0, 1]

    with pytest.raises(NotFoundError):
        await feed.get_message(2)
    with pytest.raises(NotFoundError):
        await feed.get_timeline(5, 10)
    await feed.close()


@pytest.mark.asyncio
async def test_append_requires_ready_and_ownership(tmp_path):
    feed = own_feed(tmp_path)
    with pytest.raises(StorageError):
        await feed.append("post", {"content": "early"})

    other = await remote_feed(tmp_path).open()
    with pytest.raises(StorageError, match="read-only"):
        await other.append("post", {"content": "not mine"})
    await other.close()


@pytest.mark.asyncio
async def test_close_is_idempotent(tmp_path):
    feed = await own_feed(tmp_path).open()
    await feed.close()
    await feed.close()
    assert feed.state is FeedState.CLOSED
    with pytest.raises(StorageError):
        await feed.get_message(0)


@pytest.mark.asyncio
async def test_watch_delivers_in_order(tmp_path, eventually):
    feed = await own_feed(tmp_path).open()
    await feed.append("post", {"content": "before"})

    seen = []

    async def handler(entry):
        await asyncio.sleep(0)
        seen.append(entry.index)

    await feed.watch(0, handler)
    for i in range(5):
        await feed.append("post", {"content": str(i)})

    await eventually(lambda: len(seen) == 6)
    assert seen == [0, 1, 2, 3, 4, 5]
    await feed.close()


@pytest.mark.asyncio
async def test_watch_survives_failing_handler(tmp_path, eventually):
    feed = await own_feed(tmp_path).open()
    seen = []

    async def handler(entry):
        if entry.index == 0:
            raise RuntimeError("bad message")
        seen.append(entry.index)

    await feed.watch(0, handler)
    await feed.append("post", {"content": "x"})
    await feed.append("post", {"content": "y"})

    await eventually(lambda: seen == [1])
    await feed.close()


@pytest.mark.asyncio
async def test_unwatch_stops_delivery(tmp_path):
    feed = await own_feed(tmp_path).open()
    seen = []

    async def handler(entry):
        seen.append(entry.index)

    watcher = await feed.watch(0, handler)
    await feed.unwatch(watcher)
    await feed.append("post", {"content": "x"})
    await asyncio.sleep(0.05)

    assert seen == []
    assert watcher.task.done()
    await feed.close()


@pytest.mark.asyncio
async def test_ingest_orders_and_dedupes(tmp_path, eventually):
    feed = await remote_feed(tmp_path).open()
    seen = []

    async def handler(entry):
        seen.append(entry.index)

    await feed.watch(0, handler)

    entries = [Entry(index=i, type="post", payload={"content": str(i)}) for i in range(3)]
    assert await feed.ingest(entries[2]) == 0
    assert await feed.ingest(entries[0]) == 1
    assert await feed.ingest(entries[1]) == 2
    assert await feed.ingest(entries[0]) == 0

    await eventually(lambda: seen == [0, 1, 2])
    assert feed.length == 3
    await feed.close()


@pytest.mark.asyncio
async def test_add_reply(tmp_path):
    feed = await own_feed(tmp_path).open()
    await feed.append("post", {"content": "root"})
    _, replier = ed25519_generate()

    await feed.add_reply(0, replier, 7)
    replies = await feed.get_replies(0)
    assert [(r.feed_key, r.index) for r in replies] == [(replier, 7)]

    with pytest.raises(NotFoundError):
        await feed.add_reply(4, replier, 8)
    await feed.close()


@pytest.mark.asyncio
async def test_full_feeds_replicate_over_transport(tmp_path, transport, eventually):
    owner = await own_feed(tmp_path / "a", transport=transport).open()
    await owner.append("post", {"content": "old"})

    replica = await remote_feed(tmp_path / "b", key=owner.feed_key, transport=transport).open()
    await eventually(lambda: replica.length == 1)

    await owner.append("post", {"content": "new"})
    await eventually(lambda: replica.length == 2)
    assert (await replica.get_message(1)).payload == {"content": "new"}

    await replica.close()
    assert transport.subscribers(feed_topic(owner.feed_key)) == 0
    await owner.close()


@pytest.mark.asyncio
async def test_sparse_feed_reports_trust(tmp_path):
    key = ed25519_generate()[1]
    path = tmp_path / key.hex()

    # seed the local replica
    seed = await Feed(str(path), key, full=True).open()
    await seed.ingest(Entry(index=0, type="trust", payload={"feed_key": "x"}))
    await seed.ingest(Entry(index=1, type="post", payload={"content": "y"}))
    await seed.close()

    reported = []
    sparse = await Feed(str(path), key, full=False, on_trust=reported.append).open()
    await sparse.get_timeline(0, 10)
    await sparse.close()

    assert [e.index for e in reported] == [0]


@pytest.mark.asyncio
async def test_sparse_feed_fetches_on_demand(tmp_path, transport):
    owner = await own_feed(tmp_path / "a", transport=transport).open()
    for i in range(3):
        await owner.append("post", {"content": str(i)})

    sparse = await remote_feed(tmp_path / "b", key=owner.feed_key, full=False, transport=transport).open()
    assert (await sparse.get_message(2)).payload == {"content": "2"}
    assert [e.index for e in await sparse.get_timeline(0, 10)] == [0, 1, 2]

    await sparse.close()
    assert transport.subscribers(feed_topic(owner.feed_key)) == 0
    await owner.close()


@pytest.mark.asyncio
async def test_sparse_lookup_of_silent_feed_times_out(tmp_path, transport):
    key = ed25519_generate()[1]
    sparse = await remote_feed(tmp_path, key=key, full=False, transport=transport, fetch_timeout=0.05).open()

    with pytest.raises(NotFoundError):
        await sparse.get_message(0)
    await sparse.close()

    # nothing was fetched, so nothing is left on disk
    assert not (tmp_path / key.hex()).exists()


@pytest.mark.asyncio
async def test_gap_requests_missing_entries(tmp_path, transport):
    key = ed25519_generate()[1]
    wants = []
    transport.subscribe(want_topic(key), wants.append)

    replica = await remote_feed(tmp_path, key=key, transport=transport).open()
    assert [w["from"] for w in wants] == [0]

    await replica.ingest(Entry(index=2, type="post", payload={"content": "2"}))
    # the same offset was asked for a moment ago
    assert [w["from"] for w in wants] == [0]

    await replica.ingest(Entry(index=0, type="post", payload={"content": "0"}))
    assert [w["from"] for w in wants] == [0, 1]

    await replica.ingest(Entry(index=1, type="post", payload={"content": "1"}))
    assert replica.length == 3
    assert len(wants) == 2
    await replica.close()


@pytest.mark.asyncio
async def test_replica_catches_up_when_owner_returns(tmp_path, transport, eventually):
    priv, pub = ed25519_generate()
    owner_dir = str(tmp_path / "a" / pub.hex())

    # the owner writes while disconnected
    offline = await Feed(owner_dir, pub, private_key=priv).open()
    for i in range(3):
        await offline.append("post", {"content": str(i)})
    await offline.close()

    replica = await remote_feed(tmp_path / "b", key=pub, transport=transport).open()
    await asyncio.sleep(0.05)
    assert replica.length == 0

    owner = await Feed(owner_dir, pub, private_key=priv, transport=transport).open()
    await eventually(lambda: replica.length == 3)

    await owner.append("post", {"content": "3"})
    await eventually(lambda: replica.length == 4)
    await replica.close()
    await owner.close()
