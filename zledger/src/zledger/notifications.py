"""
Account update delivery.

Consumers either subscribe (an asyncio queue per subscriber) or poll with a
cursor. The hub remembers, per account, the hash of every block it published
updates for. Replaying a block already published (a rescan) sends nothing;
a different block at a known height (a reorg replacement) is published.
Along one chain, updates for an account therefore arrive in non-decreasing
height order. After a reorg they resume from the fork point.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Iterable

from loguru import logger

from zledger.models import AccountUpdate


class AccountSubscription:
    """
    A registered interest in one or more accounts.

    Usable as an async iterator; iteration ends once the subscription is closed.
    """

    def __init__(self, hub: UpdateHub, account_ids: Iterable[int] | None = None):
        self._hub = hub
        self.account_ids = set(account_ids) if account_ids is not None else None
        self._queue: asyncio.Queue[AccountUpdate | None] = asyncio.Queue()
        self.closed = False

    def wants(self, account_id: int) -> bool:
        return self.account_ids is None or account_id in self.account_ids

    def _deliver(self, update: AccountUpdate) -> None:
        if not self.closed:
            self._queue.put_nowait(update)

    async def get(self) -> AccountUpdate:
        """Wait for the next update. Raises StopAsyncIteration once closed."""
        update = await self._queue.get()
        if update is None:
            self._queue.put_nowait(None)
            raise StopAsyncIteration
        return update

    def get_batch(self) -> list[AccountUpdate]:
        """Return every update already queued without waiting."""
        updates = []
        while not self._queue.empty():
            update = self._queue.get_nowait()
            if update is None:
                # Keep the close marker for iterators
                self._queue.put_nowait(None)
                break
            updates.append(update)
        return updates

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._hub.unsubscribe(self)
        self._queue.put_nowait(None)

    def __aiter__(self) -> AccountSubscription:
        return self

    async def __anext__(self) -> AccountUpdate:
        return await self.get()


# Blocks this far below an account's latest notified block are never re-sent
NOTIFIED_BLOCK_DEPTH = 1000


class UpdateHub:
    """Fans mined-block account updates out to subscribers and a polling history."""

    def __init__(self, history_size: int = 10_000, depth: int = NOTIFIED_BLOCK_DEPTH):
        self._subscriptions: list[AccountSubscription] = []
        self._history: deque[tuple[int, AccountUpdate]] = deque(maxlen=history_size)
        self._sequence = 0
        self.depth = depth
        # account_id -> height -> hash of the published block
        self._notified: dict[int, dict[int, str]] = {}

    @property
    def cursor(self) -> int:
        """Sequence number of the latest published update."""
        return self._sequence

    @property
    def watermarks(self) -> dict[int, int]:
        """Highest block height published per account."""
        return {account_id: max(blocks) for account_id, blocks in self._notified.items() if blocks}

    @property
    def notified_blocks(self) -> dict[int, dict[int, str]]:
        return {account_id: dict(blocks) for account_id, blocks in self._notified.items()}

    def restore_notified_blocks(self, notified: dict[int, dict[int, str]]) -> None:
        self._notified = {account_id: dict(blocks) for account_id, blocks in notified.items()}

    def _already_notified(self, account_id: int, height: int, block_hash: str) -> bool:
        blocks = self._notified.get(account_id)
        if not blocks:
            return False
        if height <= max(blocks) - self.depth:
            return True
        return blocks.get(height) == block_hash

    def subscribe(self, account_ids: Iterable[int] | None = None) -> AccountSubscription:
        subscription = AccountSubscription(self, account_ids)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: AccountSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish_block(self, height: int, block_hash: str, updates: list[AccountUpdate]) -> int:
        """
        Publish the updates produced by one block.

        Updates for an account are dropped if the same block was already
        published for it.

        Returns:
            Number of updates actually delivered
        """
        fresh_accounts: set[int] = set()
        for account_id in {u.account_id for u in updates}:
            if self._already_notified(account_id, height, block_hash):
                logger.debug(f"Skipping already notified block {height} for account {account_id}")
            else:
                fresh_accounts.add(account_id)

        delivered = 0
        for update in updates:
            if update.account_id not in fresh_accounts:
                continue
            self._sequence += 1
            self._history.append((self._sequence, update))
            for subscription in self._subscriptions:
                if subscription.wants(update.account_id):
                    subscription._deliver(update)
            delivered += 1

        for account_id in fresh_accounts:
            blocks = self._notified.setdefault(account_id, {})
            blocks[height] = block_hash
            cutoff = max(blocks) - self.depth
            for old in [h for h in blocks if h <= cutoff]:
                del blocks[old]
        return delivered

    def since(
        self, cursor: int, account_id: int | None = None
    ) -> tuple[list[AccountUpdate], int]:
        """
        Updates published after ``cursor``, optionally for one account.

        Returns:
            The updates and the cursor to pass on the next poll. Updates that
            fell out of the history window are not returned.
        """
        updates = [
            update
            for sequence, update in self._history
            if sequence > cursor and (account_id is None or update.account_id == account_id)
        ]
        return updates, self._sequence
