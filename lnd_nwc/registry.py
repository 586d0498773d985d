# Copyright (C) 2025 The lnd-nwc developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php
from typing import Optional, Sequence, Tuple, Set, Iterator, TYPE_CHECKING

from .logging import get_logger
from .nwc_types import REQUEST_EVENT_KIND
from .transport import TransportError

if TYPE_CHECKING:
    from .session import WalletSession
    from .transport import RelayTransport


_logger = get_logger(__name__)


def request_filter(session: 'WalletSession', since: int) -> dict:
    return {
        "#p": [session.identity_pubkey],
        "kinds": [REQUEST_EVENT_KIND],
        "limit": 0,  # only new events after creating this subscription
        "since": since,
    }


class SessionRegistry:
    """Which session owns which subscription.

    Built once, read-only afterwards, so it can be shared between tasks
    without locking.
    """

    def __init__(self, entries: Sequence[Tuple[str, 'WalletSession']] = ()):
        self._entries = tuple(entries)
        self._by_subscription = dict(self._entries)
        if len(self._by_subscription) != len(self._entries):
            raise ValueError("duplicate subscription id")

    @classmethod
    async def build(
            cls,
            transport: 'RelayTransport',
            sessions: Sequence['WalletSession'],
            *,
            since: int,
    ) -> Tuple[Set[str], 'SessionRegistry']:
        """Subscribes to the requests of every session.

        A session whose subscription fails is left out, the others are still
        served. Returns the union of the relays of all sessions.
        """
        relays = set()
        entries = []
        for session in sessions:
            relays |= session.relays
            try:
                subscription_id = await transport.subscribe(request_filter(session, since), session.relays)
            except TransportError as e:
                _logger.warning(f"cannot subscribe for session {session.diagnostic_name()}, not serving it: {e}")
                continue
            entries.append((subscription_id, session))
        _logger.info(f"serving {len(entries)} of {len(sessions)} sessions")
        return relays, cls(entries)

    def lookup(self, subscription_id: str) -> Optional['WalletSession']:
        return self._by_subscription.get(subscription_id)

    def sessions(self) -> Sequence['WalletSession']:
        return [session for _, session in self._entries]

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[Tuple[str, 'WalletSession']]:
        return iter(self._entries)
