"""Shared fixtures for the hypercorn_core test suite."""

from __future__ import annotations

import asyncio

import pytest

from hypercorn_core.crypto import ed25519_generate
from hypercorn_core.transport import LocalAdapter


@pytest.fixture
def transport():
    bus = LocalAdapter()
    yield bus
    bus.close()


@pytest.fixture
def new_key():
    """Factory returning a fresh (private, public) Ed25519 pair."""
    return ed25519_generate


@pytest.fixture
def eventually():
    """Poll `predicate` on the running loop until it holds or `timeout` passes."""

    async def wait(predicate, timeout: float = 3.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.01)

    return wait


@pytest.fixture
def settled(eventually):
    """Wait until a node has applied every entry of its own feed."""

    async def wait(node) -> None:
        main = node.registry.main
        watcher = node.registry.watcher(node.get_feed_key())
        await eventually(lambda: watcher.position >= main.length)

    return wait
