# Copyright (C) 2025 The lnd-nwc developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php
#
# Push notifications of settled payments, see
# https://github.com/nostr-protocol/nips/blob/master/47.md#notification-events
from typing import Tuple, Set, TYPE_CHECKING

from . import codec
from .logging import Logger
from .lnd import Invoice, InvoiceState
from .nwc_types import (
    NOTIFICATION_EVENT_KIND, Direction, TransactionState, SettlementNotification,
    EncryptError, BackendError,
)
from .util import ServiceTaskGroup, now

if TYPE_CHECKING:
    from .lnd import PaymentBackend
    from .session import WalletSession
    from .transport import RelayTransport


class NotifyError(Exception):
    pass


def incoming_notification(invoice: Invoice) -> SettlementNotification:
    return SettlementNotification(
        direction=Direction.INCOMING,
        state=TransactionState.SETTLED,
        invoice=invoice.payment_request or None,
        description=invoice.memo,
        preimage=invoice.preimage or '',
        payment_hash=invoice.payment_hash,
        amount_msat=invoice.amt_paid_msat or invoice.value_msat,
        fees_msat=0,
        created_at=invoice.creation_date,
        expires_at=invoice.expires_at,
        settled_at=invoice.settle_date or now(),
    )


class Notifier(Logger):
    """Sends settlement notifications, at most once per session and payment.

    Watchers spawned by watch_settlement() live in their own task group,
    they are not tied to the request that created the invoice.
    """

    def __init__(self, transport: 'RelayTransport', backend: 'PaymentBackend'):
        Logger.__init__(self)
        self.transport = transport
        self.backend = backend
        self.taskgroup = ServiceTaskGroup()
        self._notified = set()  # type: Set[Tuple[WalletSession, Direction, str]]

    def has_notified(self, session: 'WalletSession', direction: Direction, payment_hash: str) -> bool:
        return (session, direction, payment_hash) in self._notified

    async def notify(self, session: 'WalletSession', notification: SettlementNotification) -> bool:
        """Publishes the notification to the relays of session.

        Returns False if it had already been sent. Raises NotifyError if it
        could not be sent.
        """
        key = (session, notification.direction, notification.payment_hash)
        if key in self._notified:
            self.logger.debug(f"already notified {session.diagnostic_name()} of {notification.payment_hash}")
            return False
        # claimed before the first await, so concurrent callers cannot both send
        self._notified.add(key)
        try:
            content = codec.encrypt(session, codec.encode_notification(notification))
            result = await self.transport.publish(
                NOTIFICATION_EVENT_KIND,
                content,
                [['p', session.client_pubkey]],
                session.relays,
            )
        except EncryptError as e:
            self._notified.discard(key)
            raise NotifyError(str(e)) from e
        except Exception as e:
            self._notified.discard(key)
            raise NotifyError(f"cannot publish notification: {e!r}") from e
        if not result.accepted_by:
            self._notified.discard(key)
            raise NotifyError(f"no relay accepted the notification, rejected by {sorted(result.rejected_by)}")
        self.logger.info(
            f"sent {notification.notification_type.value} for {notification.payment_hash} "
            f"to {session.diagnostic_name()}")
        return True

    async def try_notify(self, session: 'WalletSession', notification: SettlementNotification) -> None:
        try:
            await self.notify(session, notification)
        except NotifyError as e:
            self.logger.warning(f"notification to {session.diagnostic_name()} failed: {e}")

    async def spawn_watcher(self, session: 'WalletSession', payment_hash: str) -> None:
        await self.taskgroup.spawn(self.watch_settlement(session, payment_hash))

    async def watch_settlement(self, session: 'WalletSession', payment_hash: str) -> None:
        self.logger.debug(f"watching invoice {payment_hash} of {session.diagnostic_name()}")
        try:
            invoice = await self.backend.wait_for_settlement(payment_hash)
        except BackendError as e:
            self.logger.info(f"stopped watching invoice {payment_hash}: {e}")
            return
        except Exception:
            self.logger.exception(f"watcher of invoice {payment_hash} failed")
            return
        if invoice is None:
            self.logger.info(f"invoice stream of {payment_hash} ended before settlement")
            return
        if invoice.state != InvoiceState.SETTLED:
            self.logger.info(f"invoice {payment_hash} is {invoice.state.value}, not notifying")
            return
        await self.try_notify(session, incoming_notification(invoice))

    async def join_watchers(self) -> None:
        await self.taskgroup.join()

    async def cancel_watchers(self) -> None:
        await self.taskgroup.cancel_remaining()
