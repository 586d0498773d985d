# Copyright (C) 2025 The lnd-nwc developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php
#
# Wire format of NIP-47 envelopes. Everything in here is a pure
# transformation; failures are raised as NWCError subclasses.
import json
from typing import Optional, Callable, Dict, Any, TYPE_CHECKING

from electrum_aionostr.key import PrivateKey

from .nwc_types import (
    Method, NWCRequest, NWCResult, SettlementNotification, TlvRecord,
    GetInfo, GetBalance, PayInvoice, PayKeysend, MakeInvoice, LookupInvoice,
    DecryptError, EncryptError, MalformedRequest, UnknownMethod, MalformedParams, ValidationError,
)

if TYPE_CHECKING:
    from .session import WalletSession


def _session_key(session: 'WalletSession') -> PrivateKey:
    return PrivateKey(raw_secret=bytes.fromhex(session.secret))


def decrypt(session: 'WalletSession', ciphertext: str) -> str:
    """Decrypts a request sent by the client of session.

    The shared key is derived from the session secret and the identity the
    request was addressed to, which is what the client derived on its side.
    """
    try:
        return _session_key(session).decrypt_message(ciphertext, session.identity_pubkey)
    except Exception as e:
        raise DecryptError(f"cannot decrypt content: {e!r}") from e


def encrypt(session: 'WalletSession', plaintext: str) -> str:
    try:
        return _session_key(session).encrypt_message(plaintext, session.identity_pubkey)
    except Exception as e:
        raise EncryptError(f"cannot encrypt content: {e!r}") from e


# --- requests

_MISSING = object()


def _get_param(params: dict, key: str, type_, *, method: str, required: bool = False):
    value = params.get(key, _MISSING)
    if value is _MISSING or value is None:
        if required:
            raise MalformedParams(f"missing parameter: {key}", method=method)
        return None
    # bool is a subclass of int, but never a valid amount
    if not isinstance(value, type_) or (type_ is int and isinstance(value, bool)):
        raise MalformedParams(f"invalid parameter: {key}", method=method)
    return value


def _decode_tlv_records(params: dict, method: str):
    records = _get_param(params, 'tlv_records', list, method=method) or []
    out = []
    for record in records:
        if not isinstance(record, dict):
            raise MalformedParams("invalid tlv record", method=method)
        out.append(TlvRecord(
            type=_get_param(record, 'type', int, method=method, required=True),
            value=_get_param(record, 'value', str, method=method, required=True),
        ))
    return out


def _decode_get_info(params: dict) -> GetInfo:
    return GetInfo()


def _decode_get_balance(params: dict) -> GetBalance:
    return GetBalance()


def _decode_pay_invoice(params: dict) -> PayInvoice:
    m = Method.PAY_INVOICE.value
    return PayInvoice(
        invoice=_get_param(params, 'invoice', str, method=m, required=True),
        amount=_get_param(params, 'amount', int, method=m),
    )


def _decode_pay_keysend(params: dict) -> PayKeysend:
    m = Method.PAY_KEYSEND.value
    return PayKeysend(
        pubkey=_get_param(params, 'pubkey', str, method=m, required=True),
        amount=_get_param(params, 'amount', int, method=m, required=True),
        preimage=_get_param(params, 'preimage', str, method=m),
        tlv_records=_decode_tlv_records(params, m),
    )


def _decode_make_invoice(params: dict) -> MakeInvoice:
    m = Method.MAKE_INVOICE.value
    return MakeInvoice(
        amount=_get_param(params, 'amount', int, method=m, required=True),
        description=_get_param(params, 'description', str, method=m),
        description_hash=_get_param(params, 'description_hash', str, method=m),
        expiry=_get_param(params, 'expiry', int, method=m),
    )


def _decode_lookup_invoice(params: dict) -> LookupInvoice:
    m = Method.LOOKUP_INVOICE.value
    return LookupInvoice(
        payment_hash=_get_param(params, 'payment_hash', str, method=m),
        invoice=_get_param(params, 'invoice', str, method=m),
    )


_DECODERS = {
    Method.GET_INFO: _decode_get_info,
    Method.GET_BALANCE: _decode_get_balance,
    Method.PAY_INVOICE: _decode_pay_invoice,
    Method.PAY_KEYSEND: _decode_pay_keysend,
    Method.MAKE_INVOICE: _decode_make_invoice,
    Method.LOOKUP_INVOICE: _decode_lookup_invoice,
}  # type: Dict[Method, Callable[[dict], NWCRequest]]


def decode_request(plaintext: str) -> NWCRequest:
    try:
        content = json.loads(plaintext)
    except ValueError as e:
        raise MalformedRequest(f"content is not json: {e}") from e
    if not isinstance(content, dict):
        raise MalformedRequest("content is not a json object")
    method_name = content.get('method')
    if not isinstance(method_name, str):
        raise MalformedRequest("missing method")
    try:
        method = Method(method_name)
    except ValueError:
        raise UnknownMethod(method_name) from None
    params = content.get('params', {})
    if params is None:
        params = {}
    if not isinstance(params, dict):
        raise MalformedParams("params must be an object", method=method_name)
    try:
        return _DECODERS[method](params)
    except MalformedParams:
        raise
    except ValidationError as e:
        raise MalformedParams(e.message, method=method_name) from e


# --- responses

def encode_result(result: NWCResult) -> str:
    return json.dumps({
        "result_type": result.result_type.value,
        "result": result.to_json(),
    })


def get_error_response(code: str, message: str = "", result_type: Optional[str] = None) -> Dict[str, Any]:
    content = {
        "error": {
            "code": code,
            "message": message,
        }
    }
    if result_type:
        content['result_type'] = result_type
    return content


def encode_error(code: str, message: str = "", result_type: Optional[str] = None) -> str:
    return json.dumps(get_error_response(code, message, result_type))


def encode_notification(notification: SettlementNotification) -> str:
    return json.dumps({
        "notification_type": notification.notification_type.value,
        "notification": notification.to_json(),
    })
