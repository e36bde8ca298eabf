"""Tests for browser context pooling in the Playwright renderer."""

from typing import List

import pytest

from core.async_playwright_manager import AsyncPlaywrightManager


class _FakePage:
    async def close(self) -> None:
        return None


class _FakeContext:
    def __init__(self, user_agent: str) -> None:
        self.user_agent = user_agent
        self.closed = False

    async def new_page(self) -> _FakePage:
        return _FakePage()

    async def close(self) -> None:
        self.closed = True


class _FakeBrowser:
    def __init__(self) -> None:
        self.contexts: List[_FakeContext] = []

    async def new_context(self, **options) -> _FakeContext:
        context = _FakeContext(options["user_agent"])
        self.contexts.append(context)
        return context

    async def close(self) -> None:
        return None


def _manager(max_contexts: int = 2) -> AsyncPlaywrightManager:
    manager = AsyncPlaywrightManager({"max_contexts": max_contexts})
    manager.browser = _FakeBrowser()
    return manager


@pytest.mark.asyncio
async def test_contexts_are_reused_per_user_agent() -> None:
    manager = _manager()

    for _ in range(3):
        async with manager.page_context("Bot/1"):
            pass

    assert len(manager.browser.contexts) == 1
    assert [ua for ua, _ in manager.idle_contexts] == ["Bot/1"]


@pytest.mark.asyncio
async def test_idle_pool_is_capped_and_closes_least_recently_used() -> None:
    manager = _manager(max_contexts=2)

    for agent in ("Bot/1", "Bot/2", "Bot/3", "Bot/2"):
        async with manager.page_context(agent):
            pass

    first, second, third = manager.browser.contexts
    assert first.closed is True
    assert (second.closed, third.closed) == (False, False)
    assert [ua for ua, _ in manager.idle_contexts] == ["Bot/3", "Bot/2"]

    await manager.stop()

    assert second.closed and third.closed
    assert manager.idle_contexts == []
