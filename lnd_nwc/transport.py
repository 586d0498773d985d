# Copyright (C) 2025 The lnd-nwc developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php
import asyncio
import logging
import os
import ssl
from typing import Optional, Dict, List, Iterable, Set, Callable, AsyncIterator

import attr
import electrum_aionostr as aionostr
from electrum_aionostr.event import Event as nEvent
from electrum_aionostr.key import PrivateKey

from .logging import Logger
from .util import ca_path, OldTaskGroup, BoundedSet, now


class TransportError(Exception):
    pass


@attr.s(frozen=True, kw_only=True)
class InboundEvent:
    subscription_id = attr.ib(type=str)
    relay = attr.ib(type=str)
    id = attr.ib(type=str)
    kind = attr.ib(type=int)
    pubkey = attr.ib(type=str)  # sender
    content = attr.ib(type=str)
    created_at = attr.ib(type=int)
    tags = attr.ib(type=tuple, converter=lambda tags: tuple(tuple(t) for t in tags), default=())
    expires_at = attr.ib(type=Optional[int], default=None)

    @classmethod
    def from_nostr_event(cls, event: nEvent, *, subscription_id: str, relay: str) -> 'InboundEvent':
        return cls(
            subscription_id=subscription_id,
            relay=relay,
            id=event.id,
            kind=event.kind,
            pubkey=event.pubkey,
            content=event.content,
            created_at=event.created_at,
            tags=event.tags or (),
            expires_at=event.expires_at(),
        )

    def is_expired(self) -> bool:
        return self.expires_at is not None and self.expires_at < now()


@attr.s(frozen=True, kw_only=True)
class PublishResult:
    event_id = attr.ib(type=Optional[str], default=None)
    accepted_by = attr.ib(type=frozenset, converter=frozenset, factory=frozenset)
    rejected_by = attr.ib(type=frozenset, converter=frozenset, factory=frozenset)


class RelayTransport(Logger):
    """Relay connections shared by the engine and the settlement watchers.

    Each relay gets its own aionostr Manager so that events can be published
    to exactly the relays of one session. Events of all subscriptions on all
    relays are multiplexed into a single stream, see notifications().
    """

    SEEN_EVENTS_CACHE_SIZE = 10_000

    def __init__(
            self,
            private_key: PrivateKey,
            *,
            manager_factory: Optional[Callable[[str], aionostr.Manager]] = None,
    ):
        Logger.__init__(self)
        self._private_key = private_key
        self.ssl_context = ssl.create_default_context(purpose=ssl.Purpose.SERVER_AUTH, cafile=ca_path)
        self._manager_factory = manager_factory or self._make_manager
        self.managers = {}  # type: Dict[str, aionostr.Manager]  # relay url -> manager
        self.taskgroup = OldTaskGroup()
        self._incoming = asyncio.Queue()  # type: asyncio.Queue[Optional[InboundEvent]]
        # one subscription usually spans several relays, which all deliver the same events
        self._seen = BoundedSet(self.SEEN_EVENTS_CACHE_SIZE)
        self._closed = False

    def _make_manager(self, url: str) -> aionostr.Manager:
        nostr_logger = self.logger.getChild('aionostr')
        nostr_logger.setLevel(logging.INFO)
        return aionostr.Manager(
            relays=[url],
            private_key=self._private_key.hex(),
            log=nostr_logger,
            ssl_context=self.ssl_context,
        )

    @property
    def connected_relays(self) -> Set[str]:
        return set(self.managers)

    async def connect(self, url: str) -> None:
        if url in self.managers:
            return
        manager = self._manager_factory(url)
        try:
            await manager.connect()
        except Exception as e:
            raise TransportError(f"cannot connect to {url}: {e!r}") from e
        if len(manager.relays) <= 0:
            await manager.close()
            raise TransportError(f"cannot connect to {url}")
        self.managers[url] = manager
        self.logger.info(f"connected to relay {url}")

    async def connect_all(self, urls: Iterable[str]) -> Set[str]:
        """Connects to all urls concurrently. Returns the ones we are connected to."""
        async def try_connect(url):
            try:
                await self.connect(url)
            except TransportError as e:
                self.logger.warning(str(e))
        async with OldTaskGroup() as group:
            for url in sorted(set(urls)):
                await group.spawn(try_connect(url))
        return self.connected_relays

    async def subscribe(self, query: dict, relays: Iterable[str]) -> str:
        """Subscribes on all given relays we are connected to. Returns the subscription id."""
        relays = sorted(url for url in set(relays) if url in self.managers)
        if not relays:
            raise TransportError("not connected to any relay of the subscription")
        subscription_id = os.urandom(8).hex()
        for url in relays:
            await self.taskgroup.spawn(self._consume(subscription_id, url, query))
        self.logger.debug(f"subscription {subscription_id} on {relays}: {query}")
        return subscription_id

    async def _consume(self, subscription_id: str, url: str, query: dict) -> None:
        manager = self.managers[url]
        try:
            async for event in manager.get_events(query, single_event=False, only_stored=False):
                if not self._seen.add((subscription_id, event.id)):
                    continue
                await self._incoming.put(
                    InboundEvent.from_nostr_event(event, subscription_id=subscription_id, relay=url))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # relay-local failure, other relays of the subscription keep working
            self.logger.warning(f"subscription {subscription_id} on {url} failed: {e!r}")
        else:
            self.logger.info(f"subscription {subscription_id} on {url} ended")

    async def notifications(self) -> AsyncIterator[InboundEvent]:
        """Single stream of the events of all subscriptions, in arrival order.
        Ends when the transport is closed."""
        while True:
            event = await self._incoming.get()
            if event is None:
                return
            yield event

    async def publish(
            self,
            kind: int,
            content: str,
            tags: List[List[str]],
            relays: Iterable[str],
    ) -> PublishResult:
        """Signs an event with our identity and sends it to the given relays."""
        relays = sorted(set(relays))
        accepted, rejected = set(), set()
        event_ids = []

        async def publish_to(url):
            manager = self.managers.get(url)
            if manager is None:
                rejected.add(url)
                return
            try:
                event_id = await aionostr._add_event(
                    manager,
                    kind=kind,
                    tags=tags,
                    content=content,
                    private_key=self._private_key.hex(),
                )
            except Exception as e:
                self.logger.info(f"publishing to {url} failed: {e!r}")
                rejected.add(url)
            else:
                accepted.add(url)
                event_ids.append(event_id)

        async with OldTaskGroup() as group:
            for url in relays:
                await group.spawn(publish_to(url))
        return PublishResult(
            event_id=event_ids[0] if event_ids else None,
            accepted_by=accepted,
            rejected_by=rejected,
        )

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.taskgroup.cancel_remaining()
        for url, manager in list(self.managers.items()):
            try:
                await manager.close()
            except Exception as e:
                self.logger.info(f"error closing relay {url}: {e!r}")
        self.managers.clear()
        await self._incoming.put(None)
