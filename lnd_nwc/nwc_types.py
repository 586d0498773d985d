# Copyright (C) 2025 The lnd-nwc developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php
#
# Requests, results and notifications of NIP-47, as typed values.
# https://github.com/nostr-protocol/nips/blob/master/47.md
from enum import Enum
from typing import Optional, Sequence, Tuple, Union

import attr

from .util import is_hex_of_length


INFO_EVENT_KIND: int = 13194
REQUEST_EVENT_KIND: int = 23194
RESPONSE_EVENT_KIND: int = 23195
NOTIFICATION_EVENT_KIND: int = 23196

ENCRYPTION_SCHEME = 'nip04'

KEYSEND_PREIMAGE_TLV_TYPE: int = 5_482_373_484


class Method(str, Enum):
    GET_INFO = 'get_info'
    GET_BALANCE = 'get_balance'
    PAY_INVOICE = 'pay_invoice'
    PAY_KEYSEND = 'pay_keysend'
    MAKE_INVOICE = 'make_invoice'
    LOOKUP_INVOICE = 'lookup_invoice'


SUPPORTED_METHODS = [m.value for m in Method]


class NotificationType(str, Enum):
    PAYMENT_RECEIVED = 'payment_received'
    PAYMENT_SENT = 'payment_sent'


SUPPORTED_NOTIFICATIONS = [n.value for n in NotificationType]


class Direction(str, Enum):
    INCOMING = 'incoming'
    OUTGOING = 'outgoing'


class TransactionState(str, Enum):
    PENDING = 'pending'
    SETTLED = 'settled'
    FAILED = 'failed'


# --- errors

class NWCError(Exception):
    """Base class of errors answered with a NIP-47 error result."""
    code = 'OTHER'

    def __init__(self, message: str = ''):
        Exception.__init__(self, message)
        self.message = message


class DecryptError(NWCError):
    pass


class EncryptError(NWCError):
    pass


class DecodeError(NWCError):

    def __init__(self, message: str = '', *, method: Optional[str] = None):
        NWCError.__init__(self, message)
        self.method = method


class MalformedRequest(DecodeError):
    """The plaintext is not a request at all. Never answered."""


class UnknownMethod(DecodeError):
    code = 'NOT_IMPLEMENTED'

    def __init__(self, method: str):
        DecodeError.__init__(self, f"{method} not supported", method=method)


class ValidationError(NWCError):
    code = 'OTHER'


class MalformedParams(DecodeError, ValidationError):
    code = 'OTHER'


class BackendError(NWCError):
    code = 'INTERNAL'


class BackendUnavailable(BackendError):
    code = 'INTERNAL'


class PaymentFailed(BackendError):
    code = 'PAYMENT_FAILED'


class NotFound(BackendError):
    code = 'NOT_FOUND'


class DispatchTimeout(NWCError):
    code = 'INTERNAL'


# --- commands

def _hex_of_length(num_bytes: int):
    def validator(instance, attribute, value):
        if not is_hex_of_length(value, num_bytes):
            raise ValidationError(f"{attribute.name} must be {num_bytes} bytes of hex")
    return validator


def _optional_hex_of_length(num_bytes: int):
    def validator(instance, attribute, value):
        if value is not None and not is_hex_of_length(value, num_bytes):
            raise ValidationError(f"{attribute.name} must be {num_bytes} bytes of hex")
    return validator


def _positive_amount(instance, attribute, value):
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{attribute.name} must be a positive amount in msat")


def _optional_positive_amount(instance, attribute, value):
    if value is not None:
        _positive_amount(instance, attribute, value)


def _non_negative_amount(instance, attribute, value):
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{attribute.name} must be a non-negative amount in msat")


@attr.s(frozen=True)
class TlvRecord:
    type = attr.ib(type=int)
    value = attr.ib(type=str)  # hex, or an arbitrary string

    @type.validator
    def _check_type(self, attribute, value):
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValidationError("tlv record type must be a non-negative integer")

    @value.validator
    def _check_value(self, attribute, value):
        if not isinstance(value, str):
            raise ValidationError("tlv record value must be a string")


@attr.s(frozen=True)
class GetInfo:
    method = Method.GET_INFO


@attr.s(frozen=True)
class GetBalance:
    method = Method.GET_BALANCE


@attr.s(frozen=True, kw_only=True)
class PayInvoice:
    method = Method.PAY_INVOICE
    invoice = attr.ib(type=str)
    amount = attr.ib(type=Optional[int], default=None, validator=_optional_positive_amount)

    @invoice.validator
    def _check_invoice(self, attribute, value):
        if not isinstance(value, str) or not value:
            raise ValidationError("invoice must be a non-empty string")


@attr.s(frozen=True, kw_only=True)
class PayKeysend:
    method = Method.PAY_KEYSEND
    pubkey = attr.ib(type=str, validator=_hex_of_length(33))
    amount = attr.ib(type=int, validator=_positive_amount)
    preimage = attr.ib(type=Optional[str], default=None, validator=_optional_hex_of_length(32))
    tlv_records = attr.ib(type=Tuple[TlvRecord, ...], default=(), converter=tuple)


@attr.s(frozen=True, kw_only=True)
class MakeInvoice:
    method = Method.MAKE_INVOICE
    amount = attr.ib(type=int, validator=_non_negative_amount)
    description = attr.ib(type=Optional[str], default=None)
    description_hash = attr.ib(type=Optional[str], default=None, validator=_optional_hex_of_length(32))
    expiry = attr.ib(type=Optional[int], default=None)

    @expiry.validator
    def _check_expiry(self, attribute, value):
        if value is not None and (isinstance(value, bool) or not isinstance(value, int) or value <= 0):
            raise ValidationError("expiry must be a positive number of seconds")


@attr.s(frozen=True, kw_only=True)
class LookupInvoice:
    method = Method.LOOKUP_INVOICE
    payment_hash = attr.ib(type=Optional[str], default=None, validator=_optional_hex_of_length(32))
    invoice = attr.ib(type=Optional[str], default=None)

    def __attrs_post_init__(self):
        if (self.payment_hash is None) == (self.invoice is None):
            raise ValidationError("exactly one of payment_hash or invoice is required")


NWCRequest = Union[GetInfo, GetBalance, PayInvoice, PayKeysend, MakeInvoice, LookupInvoice]


# --- results

@attr.s(frozen=True, kw_only=True)
class GetInfoResult:
    result_type = Method.GET_INFO
    methods = attr.ib(type=Sequence[str], converter=tuple)
    notifications = attr.ib(type=Sequence[str], converter=tuple, default=())

    def to_json(self) -> dict:
        return {
            "methods": list(self.methods),
            "notifications": list(self.notifications),
        }


@attr.s(frozen=True, kw_only=True)
class GetBalanceResult:
    result_type = Method.GET_BALANCE
    balance = attr.ib(type=int)  # msat

    def to_json(self) -> dict:
        return {"balance": self.balance}


@attr.s(frozen=True, kw_only=True)
class PayResult:
    result_type = attr.ib(type=Method)
    preimage = attr.ib(type=str)
    fees_paid = attr.ib(type=int, default=0)  # msat

    def to_json(self) -> dict:
        return {
            "preimage": self.preimage,
            "fees_paid": self.fees_paid,
        }


@attr.s(frozen=True, kw_only=True)
class TransactionResult:
    """Shared by make_invoice and lookup_invoice."""
    result_type = attr.ib(type=Method)
    direction = attr.ib(type=Direction)
    state = attr.ib(type=TransactionState)
    invoice = attr.ib(type=Optional[str], default=None)
    description = attr.ib(type=Optional[str], default=None)
    description_hash = attr.ib(type=Optional[str], default=None)
    preimage = attr.ib(type=Optional[str], default=None)
    payment_hash = attr.ib(type=str)
    amount = attr.ib(type=int)  # msat
    fees_paid = attr.ib(type=int, default=0)
    created_at = attr.ib(type=int)
    expires_at = attr.ib(type=Optional[int], default=None)
    settled_at = attr.ib(type=Optional[int], default=None)

    def to_json(self) -> dict:
        d = {
            "type": self.direction.value,
            "state": self.state.value,
            "payment_hash": self.payment_hash,
            "amount": self.amount,
            "fees_paid": self.fees_paid,
            "created_at": self.created_at,
            "metadata": {},
        }
        for key in ('invoice', 'description', 'description_hash', 'preimage', 'expires_at', 'settled_at'):
            value = getattr(self, key)
            if value is not None:
                d[key] = value
        return d


NWCResult = Union[GetInfoResult, GetBalanceResult, PayResult, TransactionResult]


# --- notifications

@attr.s(frozen=True, kw_only=True)
class SettlementNotification:
    direction = attr.ib(type=Direction)
    state = attr.ib(type=TransactionState, default=TransactionState.SETTLED)
    invoice = attr.ib(type=Optional[str], default=None)
    description = attr.ib(type=Optional[str], default=None)
    preimage = attr.ib(type=str)
    payment_hash = attr.ib(type=str)
    amount_msat = attr.ib(type=int)
    fees_msat = attr.ib(type=int, default=0)
    created_at = attr.ib(type=int)
    expires_at = attr.ib(type=Optional[int], default=None)
    settled_at = attr.ib(type=int)

    @property
    def notification_type(self) -> NotificationType:
        if self.direction == Direction.INCOMING:
            return NotificationType.PAYMENT_RECEIVED
        return NotificationType.PAYMENT_SENT

    def to_json(self) -> dict:
        notification = {
            "type": self.direction.value,
            "state": self.state.value,
            "preimage": self.preimage,
            "payment_hash": self.payment_hash,
            "amount": self.amount_msat,
            "fees_paid": self.fees_msat,
            "created_at": self.created_at,
            "settled_at": self.settled_at,
            "metadata": {},
        }
        if self.invoice is not None:
            notification['invoice'] = self.invoice
        if self.description is not None:
            notification['description'] = self.description
        if self.expires_at is not None:
            notification['expires_at'] = self.expires_at
        return notification
