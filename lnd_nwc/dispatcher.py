# Copyright (C) 2025 The lnd-nwc developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php
import hashlib
import os
from typing import Optional, Dict, TYPE_CHECKING

import attr
from aiorpcx.curio import timeout_after, TaskTimeout

from .logging import Logger
from .lnd import InvoiceState, Payment, tlv_value_to_bytes
from .notifier import incoming_notification
from .nwc_types import (
    SUPPORTED_METHODS, SUPPORTED_NOTIFICATIONS, KEYSEND_PREIMAGE_TLV_TYPE,
    Method, Direction, TransactionState, NWCRequest, NWCResult, SettlementNotification,
    GetInfo, GetBalance, PayInvoice, PayKeysend, MakeInvoice, LookupInvoice,
    GetInfoResult, GetBalanceResult, PayResult, TransactionResult,
    UnknownMethod, DispatchTimeout,
)
from .util import now

if TYPE_CHECKING:
    from .lnd import PaymentBackend
    from .notifier import Notifier
    from .session import WalletSession


DEFAULT_INVOICE_EXPIRY = 86400


@attr.s(frozen=True)
class DispatchOutcome:
    result = attr.ib(type=NWCResult)
    # to be sent before the response: the payment is already settled
    notification = attr.ib(type=Optional[SettlementNotification], default=None)


_INVOICE_STATES = {
    InvoiceState.SETTLED: TransactionState.SETTLED,
    InvoiceState.CANCELED: TransactionState.FAILED,
    InvoiceState.ACCEPTED: TransactionState.PENDING,
    InvoiceState.OPEN: TransactionState.PENDING,
}


def outgoing_notification(
        payment: Payment,
        *,
        preimage: str,
        payment_hash: str,
        amount_msat: int,
        invoice: Optional[str] = None,
) -> SettlementNotification:
    settled_at = now()
    return SettlementNotification(
        direction=Direction.OUTGOING,
        state=TransactionState.SETTLED,
        invoice=invoice,
        preimage=preimage,
        payment_hash=payment_hash,
        amount_msat=amount_msat,
        fees_msat=payment.fee_msat,
        created_at=payment.creation_time or settled_at,
        settled_at=settled_at,
    )


class Dispatcher(Logger):
    """Executes one decoded request against the payment backend.

    Backend failures propagate as NWCError subclasses, the engine turns them
    into error responses. Every request is bounded by payment_timeout.
    """

    def __init__(self, backend: 'PaymentBackend', notifier: 'Notifier', *, payment_timeout: float = 60):
        Logger.__init__(self)
        self.backend = backend
        self.notifier = notifier
        self.payment_timeout = payment_timeout

    async def handle(self, command: NWCRequest, session: 'WalletSession') -> DispatchOutcome:
        try:
            async with timeout_after(self.payment_timeout):
                return await self._handle(command, session)
        except TaskTimeout:
            raise DispatchTimeout(f"{command.method.value} timed out after {self.payment_timeout}s") from None

    async def _handle(self, command: NWCRequest, session: 'WalletSession') -> DispatchOutcome:
        if isinstance(command, GetInfo):
            return self.get_info()
        elif isinstance(command, GetBalance):
            return await self.get_balance()
        elif isinstance(command, PayInvoice):
            return await self.pay_invoice(command)
        elif isinstance(command, PayKeysend):
            return await self.pay_keysend(command)
        elif isinstance(command, MakeInvoice):
            return await self.make_invoice(command, session)
        elif isinstance(command, LookupInvoice):
            return await self.lookup_invoice(command)
        else:
            raise UnknownMethod(str(getattr(command, 'method', type(command).__name__)))

    def get_info(self) -> DispatchOutcome:
        return DispatchOutcome(GetInfoResult(
            methods=SUPPORTED_METHODS,
            notifications=SUPPORTED_NOTIFICATIONS,
        ))

    async def get_balance(self) -> DispatchOutcome:
        balance = await self.backend.get_balance()
        return DispatchOutcome(GetBalanceResult(balance=balance.confirmed_msat))

    async def pay_invoice(self, command: PayInvoice) -> DispatchOutcome:
        payment = await self.backend.pay_invoice(command.invoice, command.amount)
        self.logger.info(f"paid invoice {payment.payment_hash}, fee {payment.fee_msat} msat")
        notification = outgoing_notification(
            payment,
            preimage=payment.preimage,
            payment_hash=payment.payment_hash,
            amount_msat=payment.value_msat or command.amount or 0,
            invoice=command.invoice,
        )
        result = PayResult(
            result_type=Method.PAY_INVOICE,
            preimage=payment.preimage,
            fees_paid=payment.fee_msat,
        )
        return DispatchOutcome(result, notification)

    def _custom_records(self, command: PayKeysend, preimage: str) -> Dict[int, bytes]:
        records = {KEYSEND_PREIMAGE_TLV_TYPE: bytes.fromhex(preimage)}
        for record in command.tlv_records:
            if record.type == KEYSEND_PREIMAGE_TLV_TYPE:
                self.logger.info("ignoring tlv record that would replace the keysend preimage")
                continue
            records[record.type] = tlv_value_to_bytes(record.value)
        return records

    async def pay_keysend(self, command: PayKeysend) -> DispatchOutcome:
        preimage = command.preimage or os.urandom(32).hex()
        payment_hash = hashlib.sha256(bytes.fromhex(preimage)).hexdigest()
        payment = await self.backend.pay_keysend(
            command.pubkey,
            command.amount,
            preimage,
            self._custom_records(command, preimage),
        )
        preimage = payment.preimage or preimage
        self.logger.info(f"sent keysend {payment_hash}, fee {payment.fee_msat} msat")
        notification = outgoing_notification(
            payment,
            preimage=preimage,
            payment_hash=payment_hash,
            amount_msat=payment.value_msat or command.amount,
        )
        result = PayResult(
            result_type=Method.PAY_KEYSEND,
            preimage=preimage,
            fees_paid=payment.fee_msat,
        )
        return DispatchOutcome(result, notification)

    async def make_invoice(self, command: MakeInvoice, session: 'WalletSession') -> DispatchOutcome:
        invoice = await self.backend.create_invoice(
            command.amount,
            memo=command.description,
            description_hash=command.description_hash,
            expiry=command.expiry,
        )
        await self.notifier.spawn_watcher(session, invoice.payment_hash)
        created_at = invoice.creation_date or now()
        result = TransactionResult(
            result_type=Method.MAKE_INVOICE,
            direction=Direction.INCOMING,
            state=TransactionState.PENDING,
            invoice=invoice.payment_request,
            description=command.description,
            description_hash=command.description_hash,
            payment_hash=invoice.payment_hash,
            amount=command.amount,
            created_at=created_at,
            expires_at=created_at + (command.expiry or DEFAULT_INVOICE_EXPIRY),
        )
        return DispatchOutcome(result)

    async def lookup_invoice(self, command: LookupInvoice) -> DispatchOutcome:
        payment_hash = command.payment_hash
        if payment_hash is None:
            payment_hash = await self.backend.decode_invoice(command.invoice)
        invoice = await self.backend.lookup_invoice(payment_hash)
        state = _INVOICE_STATES[invoice.state]
        settled = state == TransactionState.SETTLED
        result = TransactionResult(
            result_type=Method.LOOKUP_INVOICE,
            direction=Direction.INCOMING,
            state=state,
            invoice=invoice.payment_request or None,
            description=invoice.memo,
            description_hash=invoice.description_hash,
            preimage=invoice.preimage if settled else None,
            payment_hash=invoice.payment_hash or payment_hash,
            amount=invoice.value_msat,
            created_at=invoice.creation_date,
            expires_at=invoice.expires_at,
            settled_at=invoice.settle_date if settled else None,
        )
        notification = incoming_notification(invoice) if settled else None
        return DispatchOutcome(result, notification)
