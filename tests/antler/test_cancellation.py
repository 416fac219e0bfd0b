import asyncio

from antler.cancellation import CancellationToken, TokenRegistry


def test_cancel_is_idempotent_and_wakes_waiters() -> None:
    async def scenario() -> bool:
        token = CancellationToken()
        waiter = asyncio.create_task(token.wait())
        await asyncio.sleep(0)
        token.cancel()
        token.cancel()
        await asyncio.wait_for(waiter, timeout=1)
        return token.cancelled

    assert asyncio.run(scenario())


def test_wait_returns_immediately_when_already_cancelled() -> None:
    token = CancellationToken()
    token.cancel()

    asyncio.run(asyncio.wait_for(token.wait(), timeout=1))


def test_sleep_reports_whether_it_was_cancelled() -> None:
    async def scenario() -> tuple[bool, bool]:
        quiet = CancellationToken()
        elapsed = await quiet.sleep(0.01)
        loud = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, loud.cancel)
        interrupted = await loud.sleep(5)
        return elapsed, interrupted

    assert asyncio.run(scenario()) == (False, True)


def test_issue_supersedes_previous_token() -> None:
    registry: TokenRegistry[str] = TokenRegistry()
    first = registry.issue("card")
    second = registry.issue("card")

    assert first.cancelled
    assert not second.cancelled
    assert registry.is_superseded("card", first)
    assert not registry.is_superseded("card", second)
    assert registry.current("card") is second
    assert len(registry) == 1


def test_cancel_drops_token_so_holder_is_not_superseded() -> None:
    registry: TokenRegistry[str] = TokenRegistry()
    token = registry.issue("card")

    assert registry.cancel("card")
    assert token.cancelled
    assert "card" not in registry
    assert not registry.is_superseded("card", token)
    assert not registry.cancel("card")


def test_release_only_drops_the_owning_token() -> None:
    registry: TokenRegistry[str] = TokenRegistry()
    stale = registry.issue("card")
    fresh = registry.issue("card")

    registry.release("card", stale)
    assert registry.current("card") is fresh

    registry.release("card", fresh)
    assert registry.current("card") is None
