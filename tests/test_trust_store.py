import threading
import time

import pytest

from hypercorn_core.chain import TrustChain
from hypercorn_core.constants import TRUST_TOPIC
from hypercorn_core.crypto import ed25519_generate
from hypercorn_core.errors import StorageError
from hypercorn_core.trust_store import TrustStore
from hypercorn_core.utils import b64e


def issue(priv, pub, subject, expires_in=3600):
    return TrustChain(root=pub).issue_link(
        {"publicKey": subject, "expiration": time.time() + expires_in}, priv
    )


@pytest.mark.asyncio
async def test_add_and_get_link(tmp_path):
    priv, pub = ed25519_generate()
    _, subject = ed25519_generate()
    store = TrustStore(str(tmp_path), pub)

    link = issue(priv, pub, subject)
    assert store.add_link(pub, link)

    rec = store.get_link(pub, subject)
    assert rec.link == link
    assert store.trusted_by(pub) == [subject]
    assert len(store.list_links()) == 1
    await store.close()


@pytest.mark.asyncio
async def test_rejects_forged_and_expired(tmp_path, caplog):
    priv, pub = ed25519_generate()
    _, other = ed25519_generate()
    _, subject = ed25519_generate()
    store = TrustStore(str(tmp_path), pub)

    assert not store.add_link(other, issue(priv, pub, subject))
    assert not store.add_link(pub, issue(priv, pub, subject, expires_in=-10))
    assert not store.add_link(pub, b"garbage")
    assert store.list_links() == []
    assert "rejecting trust link" in caplog.text
    await store.close()


@pytest.mark.asyncio
async def test_keeps_latest_expiration(tmp_path):
    priv, pub = ed25519_generate()
    _, subject = ed25519_generate()
    store = TrustStore(str(tmp_path), pub)

    long_link = issue(priv, pub, subject, expires_in=7200)
    store.add_link(pub, long_link)
    store.add_link(pub, issue(priv, pub, subject, expires_in=60))

    assert store.get_link(pub, subject).link == long_link
    await store.close()


@pytest.mark.asyncio
async def test_announces_and_learns_over_transport(tmp_path, transport):
    priv, pub = ed25519_generate()
    _, subject = ed25519_generate()
    a = TrustStore(str(tmp_path / "a"), pub, transport)
    b = TrustStore(str(tmp_path / "b"), ed25519_generate()[1], transport)

    announced = []
    transport.subscribe(TRUST_TOPIC, announced.append)

    link = issue(priv, pub, subject)
    a.add_link(pub, link)

    assert announced == [{"issuer": b64e(pub), "link": b64e(link)}]
    assert b.get_link(pub, subject).link == link

    await a.close()
    await b.close()


@pytest.mark.asyncio
async def test_closed_store_refuses_links(tmp_path):
    priv, pub = ed25519_generate()
    store = TrustStore(str(tmp_path), pub)
    await store.close()
    await store.close()

    with pytest.raises(StorageError):
        store.add_link(pub, issue(priv, pub, ed25519_generate()[1]))


@pytest.mark.asyncio
async def test_announcements_from_threads(tmp_path):
    store = TrustStore(str(tmp_path), ed25519_generate()[1])
    issuers = [ed25519_generate() for _ in range(4)]
    subjects = [ed25519_generate()[1] for _ in range(5)]

    def announce(priv, pub):
        for subject in subjects:
            store._on_announce({"issuer": b64e(pub), "link": b64e(issue(priv, pub, subject))})

    threads = [threading.Thread(target=announce, args=pair) for pair in issuers]
    for t in threads:
        t.start()
    # the loop thread writes at the same time
    own_priv, own_pub = ed25519_generate()
    for subject in subjects:
        assert store.add_link(own_pub, issue(own_priv, own_pub, subject))
    for t in threads:
        t.join()

    assert len(store.list_links()) == (len(issuers) + 1) * len(subjects)
    await store.close()


@pytest.mark.asyncio
async def test_announcement_racing_close_is_dropped(tmp_path):
    priv, pub = ed25519_generate()
    store = TrustStore(str(tmp_path), ed25519_generate()[1])
    link = b64e(issue(priv, pub, ed25519_generate()[1]))

    stop = threading.Event()
    errors = []

    def announce():
        while not stop.is_set():
            try:
                store._on_announce({"issuer": b64e(pub), "link": link})
            except Exception as e:
                errors.append(e)
                return

    worker = threading.Thread(target=announce)
    worker.start()
    await store.close()
    stop.set()
    worker.join()

    assert errors == []
    assert store._closed
    with pytest.raises(StorageError):
        store.list_links()
