"""Cooperative cancellation tokens and the per-card token registry."""

from __future__ import annotations

import asyncio
from collections.abc import Hashable
from typing import Generic, TypeVar

K = TypeVar("K", bound=Hashable)


class CancellationToken:
    """Handle that cooperating code checks at step boundaries.

    Cancelling is idempotent. ``wait()`` resolves once the token is cancelled,
    which lets a running process be killed as soon as cancellation happens.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._event: asyncio.Event | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._event is not None:
            self._event.set()

    async def wait(self) -> None:
        if self._cancelled:
            return
        if self._event is None:
            self._event = asyncio.Event()
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True when cancelled first."""
        if self._cancelled:
            return True
        try:
            await asyncio.wait_for(self.wait(), timeout=max(seconds, 0.0))
        except asyncio.TimeoutError:
            return False
        return True

    def __repr__(self) -> str:
        state = "cancelled" if self._cancelled else "active"
        return f"<CancellationToken {state} at {id(self):#x}>"


class TokenRegistry(Generic[K]):
    """Owned map from key to the single active token for that key.

    Issuing a token for a key cancels the token it replaces. Holders of an
    older token detect supersession with ``is_superseded``.
    """

    def __init__(self) -> None:
        self._tokens: dict[K, CancellationToken] = {}

    def issue(self, key: K) -> CancellationToken:
        previous = self._tokens.get(key)
        if previous is not None:
            previous.cancel()
        token = CancellationToken()
        self._tokens = {**self._tokens, key: token}
        return token

    def current(self, key: K) -> CancellationToken | None:
        return self._tokens.get(key)

    def is_superseded(self, key: K, token: CancellationToken) -> bool:
        """True when a different, newer token now owns ``key``."""
        current = self._tokens.get(key)
        return current is not None and current is not token

    def cancel(self, key: K) -> bool:
        """Cancel and drop the active token for ``key``; False when none."""
        token = self._tokens.get(key)
        if token is None:
            return False
        token.cancel()
        self._drop(key)
        return True

    def release(self, key: K, token: CancellationToken) -> None:
        """Drop ``token`` if it still owns ``key``."""
        if self._tokens.get(key) is token:
            self._drop(key)

    def _drop(self, key: K) -> None:
        self._tokens = {k: v for k, v in self._tokens.items() if k != key}

    def __contains__(self, key: object) -> bool:
        return key in self._tokens

    def __len__(self) -> int:
        return len(self._tokens)
