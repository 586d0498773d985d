# Copyright (C) 2025 The lnd-nwc developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php
#
# The payment backend: an abstract interface, and its implementation
# against the REST gateway of an LND node.
import base64
import hashlib
import json
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional, Dict, Any, AsyncIterator, TYPE_CHECKING

import aiohttp
import attr

from .logging import Logger
from .nwc_types import BackendError, BackendUnavailable, PaymentFailed, NotFound
from .util import make_aiohttp_session, is_hex_of_length

if TYPE_CHECKING:
    from .simple_config import SimpleConfig


KEYSEND_TIMEOUT_SECONDS = 60
PAY_TIMEOUT_SECONDS = 60


class PaymentStatus(str, Enum):
    UNKNOWN = 'UNKNOWN'
    INITIATED = 'INITIATED'
    IN_FLIGHT = 'IN_FLIGHT'
    SUCCEEDED = 'SUCCEEDED'
    FAILED = 'FAILED'

    def is_terminal(self) -> bool:
        return self in (PaymentStatus.SUCCEEDED, PaymentStatus.FAILED)


class InvoiceState(str, Enum):
    OPEN = 'OPEN'
    SETTLED = 'SETTLED'
    CANCELED = 'CANCELED'
    ACCEPTED = 'ACCEPTED'


@attr.s(frozen=True, kw_only=True)
class Balance:
    confirmed_msat = attr.ib(type=int)
    unconfirmed_msat = attr.ib(type=int, default=0)


@attr.s(frozen=True, kw_only=True)
class Payment:
    payment_hash = attr.ib(type=str)
    preimage = attr.ib(type=str, default='')  # hex, empty unless SUCCEEDED
    value_msat = attr.ib(type=int, default=0)
    fee_msat = attr.ib(type=int, default=0)
    status = attr.ib(type=PaymentStatus)
    failure_reason = attr.ib(type=Optional[str], default=None)
    creation_time = attr.ib(type=int, default=0)


@attr.s(frozen=True, kw_only=True)
class Invoice:
    payment_request = attr.ib(type=str)
    payment_hash = attr.ib(type=str)
    memo = attr.ib(type=Optional[str], default=None)
    description_hash = attr.ib(type=Optional[str], default=None)
    value_msat = attr.ib(type=int, default=0)
    amt_paid_msat = attr.ib(type=int, default=0)
    state = attr.ib(type=InvoiceState, default=InvoiceState.OPEN)
    preimage = attr.ib(type=Optional[str], default=None)
    creation_date = attr.ib(type=int, default=0)
    settle_date = attr.ib(type=int, default=0)
    expiry = attr.ib(type=int, default=86400)

    @property
    def expires_at(self) -> Optional[int]:
        if not self.creation_date:
            return None
        return self.creation_date + self.expiry


@attr.s(frozen=True, kw_only=True)
class NodeInfo:
    identity_pubkey = attr.ib(type=str)
    alias = attr.ib(type=str, default='')
    block_height = attr.ib(type=int, default=0)
    synced_to_chain = attr.ib(type=bool, default=False)
    version = attr.ib(type=str, default='')


def default_fee_limit_msat(amount_msat: Optional[int]) -> Optional[int]:
    """Small payments may pay up to 100% in fees, larger ones up to 5%."""
    if amount_msat is None:
        return None
    if amount_msat <= 1_000_000:
        return amount_msat
    return amount_msat // 20


def tlv_value_to_bytes(value: str) -> bytes:
    """Custom record values are hex if they look like hex, raw text otherwise."""
    try:
        return bytes.fromhex(value)
    except ValueError:
        return value.encode('utf-8')


class PaymentBackend(ABC):
    """What the engine needs from a Lightning node.

    All operations may be called concurrently. Failures are raised as
    BackendError subclasses.
    """

    @abstractmethod
    async def get_info(self) -> NodeInfo:
        pass

    @abstractmethod
    async def get_balance(self) -> Balance:
        pass

    @abstractmethod
    async def pay_invoice(self, invoice: str, amount_msat: Optional[int] = None) -> Payment:
        """Blocks until the payment reached a terminal status.
        A FAILED payment is raised as PaymentFailed."""
        pass

    @abstractmethod
    async def pay_keysend(
            self,
            dest_pubkey: str,
            amount_msat: int,
            preimage: str,
            custom_records: Dict[int, bytes],
    ) -> Payment:
        pass

    @abstractmethod
    async def create_invoice(
            self,
            amount_msat: int,
            memo: Optional[str] = None,
            description_hash: Optional[str] = None,
            expiry: Optional[int] = None,
    ) -> Invoice:
        pass

    @abstractmethod
    async def lookup_invoice(self, payment_hash: str) -> Invoice:
        """Raises NotFound for unknown payment hashes."""
        pass

    @abstractmethod
    async def decode_invoice(self, payment_request: str) -> str:
        """Returns the payment hash of a bolt11 invoice."""
        pass

    @abstractmethod
    async def wait_for_settlement(self, payment_hash: str) -> Optional[Invoice]:
        """Blocks until the invoice is settled or canceled.
        Returns None if the backend stream ended first."""
        pass

    async def close(self) -> None:
        pass


def _b64_to_hex(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return base64.b64decode(value).hex()


def _hex_to_b64(value: str) -> str:
    return base64.b64encode(bytes.fromhex(value)).decode('ascii')


def _hex_to_b64url(value: str) -> str:
    return base64.urlsafe_b64encode(bytes.fromhex(value)).decode('ascii')


class LNDRestBackend(PaymentBackend, Logger):

    def __init__(
            self,
            rest_url: str,
            *,
            macaroon_hex: str,
            cert_file: Optional[str] = None,
    ):
        Logger.__init__(self)
        self.rest_url = rest_url.rstrip('/')
        self.cert_file = cert_file
        self._macaroon_hex = macaroon_hex
        self._session = None  # type: Optional[aiohttp.ClientSession]

    @classmethod
    def from_config(cls, config: 'SimpleConfig') -> 'LNDRestBackend':
        macaroon_file = config.LND_MACAROON_FILE
        if not macaroon_file:
            raise BackendUnavailable("no macaroon configured, see set_lnd")
        try:
            with open(macaroon_file, 'rb') as f:
                macaroon_hex = f.read().hex()
        except OSError as e:
            raise BackendUnavailable(f"cannot read macaroon: {e}") from e
        return cls(config.LND_REST_URL, macaroon_hex=macaroon_hex, cert_file=config.LND_CERT_FILE)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = make_aiohttp_session(
                headers={'Grpc-Metadata-macaroon': self._macaroon_hex},
                cafile=self.cert_file,
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    @staticmethod
    async def _raise_for_error(resp: aiohttp.ClientResponse) -> None:
        if resp.status == 200:
            return
        try:
            data = await resp.json(content_type=None)
            message = data.get('message') or data.get('error') or str(data)
        except (ValueError, aiohttp.ClientError):
            message = resp.reason or ''
        if resp.status == 404 or 'unable to locate invoice' in message or 'there are no existing invoices' in message:
            raise NotFound(message or "not found")
        raise BackendError(f"lnd returned {resp.status}: {message}")

    async def _request(self, http_method: str, path: str, *, params=None, body=None) -> Dict[str, Any]:
        url = self.rest_url + path
        self.logger.debug(f"{http_method} {path}")
        try:
            async with self._get_session().request(http_method, url, params=params, json=body) as resp:
                await self._raise_for_error(resp)
                return await resp.json(content_type=None)
        except aiohttp.ClientConnectionError as e:
            raise BackendUnavailable(f"cannot reach lnd at {self.rest_url}: {e!r}") from e
        except (aiohttp.ClientError, ValueError) as e:
            raise BackendError(f"invalid response from lnd: {e!r}") from e

    async def _stream(self, http_method: str, path: str, *, body=None) -> AsyncIterator[Dict[str, Any]]:
        """Yields the objects of a streaming endpoint, unwrapping the 'result' envelope."""
        url = self.rest_url + path
        self.logger.debug(f"{http_method} {path} (stream)")
        try:
            async with self._get_session().request(http_method, url, json=body) as resp:
                await self._raise_for_error(resp)
                async for line in resp.content:
                    line = line.strip()
                    if not line:
                        continue
                    data = json.loads(line)
                    if 'error' in data:
                        error = data['error']
                        message = error.get('message', str(error)) if isinstance(error, dict) else str(error)
                        if 'unable to locate invoice' in message:
                            raise NotFound(message)
                        raise BackendError(f"lnd stream error: {message}")
                    yield data.get('result', data)
        except aiohttp.ClientConnectionError as e:
            raise BackendUnavailable(f"cannot reach lnd at {self.rest_url}: {e!r}") from e
        except (aiohttp.ClientError, ValueError) as e:
            raise BackendError(f"invalid response from lnd: {e!r}") from e

    @staticmethod
    def _parse_payment(data: Dict[str, Any]) -> Payment:
        try:
            status = PaymentStatus(data.get('status', 'UNKNOWN'))
        except ValueError:
            status = PaymentStatus.UNKNOWN
        preimage = data.get('payment_preimage') or ''
        if set(preimage) == {'0'}:
            preimage = ''
        return Payment(
            payment_hash=data.get('payment_hash', ''),
            preimage=preimage,
            value_msat=int(data.get('value_msat', 0)),
            fee_msat=int(data.get('fee_msat', 0)),
            status=status,
            failure_reason=data.get('failure_reason'),
            creation_time=int(data.get('creation_date', 0)),
        )

    @staticmethod
    def _parse_invoice(data: Dict[str, Any]) -> Invoice:
        return Invoice(
            payment_request=data.get('payment_request', ''),
            payment_hash=_b64_to_hex(data.get('r_hash')) or '',
            memo=data.get('memo') or None,
            description_hash=_b64_to_hex(data.get('description_hash')),
            value_msat=int(data.get('value_msat', 0)),
            amt_paid_msat=int(data.get('amt_paid_msat', 0)),
            state=InvoiceState(data.get('state', 'OPEN')),
            preimage=_b64_to_hex(data.get('r_preimage')),
            creation_date=int(data.get('creation_date', 0)),
            settle_date=int(data.get('settle_date', 0)),
            expiry=int(data.get('expiry', 86400)),
        )

    async def get_info(self) -> NodeInfo:
        data = await self._request('GET', '/v1/getinfo')
        return NodeInfo(
            identity_pubkey=data.get('identity_pubkey', ''),
            alias=data.get('alias', ''),
            block_height=int(data.get('block_height', 0)),
            synced_to_chain=bool(data.get('synced_to_chain', False)),
            version=data.get('version', ''),
        )

    async def get_balance(self) -> Balance:
        data = await self._request('GET', '/v1/balance/blockchain')
        return Balance(
            confirmed_msat=int(data.get('confirmed_balance', 0)) * 1000,
            unconfirmed_msat=int(data.get('unconfirmed_balance', 0)) * 1000,
        )

    async def _send_payment(self, body: Dict[str, Any]) -> Payment:
        payment = None
        stream = self._stream('POST', '/v2/router/send', body=body)
        try:
            async for update in stream:
                payment = self._parse_payment(update)
                if payment.status.is_terminal():
                    break
        finally:
            await stream.aclose()
        if payment is None or not payment.status.is_terminal():
            raise BackendError("payment stream ended before the payment completed")
        if payment.status == PaymentStatus.FAILED:
            raise PaymentFailed(f"payment failed: {payment.failure_reason or 'unknown reason'}")
        return payment

    async def pay_invoice(self, invoice: str, amount_msat: Optional[int] = None) -> Payment:
        body = {
            'payment_request': invoice,
            'timeout_seconds': PAY_TIMEOUT_SECONDS,
            'no_inflight_updates': True,
        }
        if amount_msat is not None:
            body['amt_msat'] = str(amount_msat)
        fee_limit = default_fee_limit_msat(amount_msat)
        if fee_limit is not None:
            body['fee_limit_msat'] = str(fee_limit)
        return await self._send_payment(body)

    async def pay_keysend(
            self,
            dest_pubkey: str,
            amount_msat: int,
            preimage: str,
            custom_records: Dict[int, bytes],
    ) -> Payment:
        if not is_hex_of_length(preimage, 32):
            raise ValueError("keysend preimage must be 32 bytes of hex")
        payment_hash = hashlib.sha256(bytes.fromhex(preimage)).hexdigest()
        body = {
            'dest': _hex_to_b64(dest_pubkey),
            'amt_msat': str(amount_msat),
            'payment_hash': _hex_to_b64(payment_hash),
            'dest_custom_records': {
                str(k): base64.b64encode(v).decode('ascii') for k, v in custom_records.items()
            },
            'timeout_seconds': KEYSEND_TIMEOUT_SECONDS,
            'fee_limit_msat': str(default_fee_limit_msat(amount_msat)),
            'no_inflight_updates': True,
        }
        return await self._send_payment(body)

    async def create_invoice(
            self,
            amount_msat: int,
            memo: Optional[str] = None,
            description_hash: Optional[str] = None,
            expiry: Optional[int] = None,
    ) -> Invoice:
        body = {'value_msat': str(amount_msat)}
        if memo is not None:
            body['memo'] = memo
        if description_hash is not None:
            body['description_hash'] = _hex_to_b64(description_hash)
        if expiry is not None:
            body['expiry'] = str(expiry)
        data = await self._request('POST', '/v1/invoices', body=body)
        payment_hash = _b64_to_hex(data.get('r_hash'))
        # the add response does not carry the full invoice
        return await self.lookup_invoice(payment_hash)

    async def lookup_invoice(self, payment_hash: str) -> Invoice:
        data = await self._request(
            'GET', '/v2/invoices/lookup',
            params={'payment_hash': _hex_to_b64url(payment_hash)})
        return self._parse_invoice(data)

    async def decode_invoice(self, payment_request: str) -> str:
        data = await self._request('GET', f'/v1/payreq/{payment_request}')
        payment_hash = data.get('payment_hash')
        if not is_hex_of_length(payment_hash, 32):
            raise BackendError("decoded invoice has no payment hash")
        return payment_hash

    async def wait_for_settlement(self, payment_hash: str) -> Optional[Invoice]:
        path = f'/v2/invoices/subscribe/{_hex_to_b64url(payment_hash)}'
        stream = self._stream('GET', path)
        try:
            async for update in stream:
                invoice = self._parse_invoice(update)
                if invoice.state in (InvoiceState.SETTLED, InvoiceState.CANCELED):
                    return invoice
        finally:
            await stream.aclose()
        return None
