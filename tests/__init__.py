import asyncio
import hashlib
import json
import os
import unittest
import threading
import tempfile
import shutil
from typing import Optional, Dict, List, Iterable, Callable

import attr
from electrum_aionostr.key import PrivateKey

import lnd_nwc
import lnd_nwc.logging
from lnd_nwc import codec
from lnd_nwc.logging import Logger
from lnd_nwc.lnd import PaymentBackend, Payment, PaymentStatus, Invoice, InvoiceState, Balance, NodeInfo
from lnd_nwc.nwc_types import REQUEST_EVENT_KIND, NotFound
from lnd_nwc.session import WalletSession
from lnd_nwc.transport import InboundEvent, PublishResult, TransportError
from lnd_nwc.util import now


lnd_nwc.logging._configure_stderr_logging(verbosity="*")


class LndNwcTestCase(unittest.IsolatedAsyncioTestCase, Logger):
    """Base class for our unit tests."""

    # some unit tests are modifying globals... so we run sequentially:
    _test_lock = threading.Lock()

    def __init__(self, *args, **kwargs):
        Logger.__init__(self)
        unittest.IsolatedAsyncioTestCase.__init__(self, *args, **kwargs)

    def setUp(self):
        have_lock = self._test_lock.acquire(timeout=0.1)
        if not have_lock:
            # This can happen when trying to run the tests in parallel,
            # or if a prior test raised  during `setUp` or `asyncSetUp` and never released the lock.
            raise Exception("timed out waiting for test_lock")
        super().setUp()
        self.lnd_nwc_path = tempfile.mkdtemp(prefix="lnd-nwc-unittest-base-")

    async def asyncSetUp(self):
        await super().asyncSetUp()
        loop = asyncio.get_running_loop()
        # IsolatedAsyncioTestCase creates event loops with debug=True, which makes the tests take ~4x time
        if not (os.environ.get("PYTHONASYNCIODEBUG") or os.environ.get("PYTHONDEVMODE")):
            loop.set_debug(False)

    def tearDown(self):
        shutil.rmtree(self.lnd_nwc_path)
        super().tearDown()
        self._test_lock.release()


async def wait_until(predicate: Callable[[], bool], *, timeout: float = 2) -> None:
    """Polls predicate until it holds. Raises on timeout."""
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(poll(), timeout)


def make_session(relays: Iterable[str] = ('wss://relay.one',), *, name: Optional[str] = None,
                 identity: Optional[PrivateKey] = None) -> WalletSession:
    identity = identity or PrivateKey()
    return WalletSession(
        identity_pubkey=identity.public_key.hex(),
        secret=PrivateKey().hex(),
        relays=relays,
        name=name,
    )


_event_counter = 0


def make_request_event(
        session: WalletSession,
        subscription_id: str,
        request: dict,
        *,
        kind: int = REQUEST_EVENT_KIND,
        pubkey: Optional[str] = None,
        content: Optional[str] = None,
        expires_at: Optional[int] = None,
) -> InboundEvent:
    """A request as the client of session would send it."""
    global _event_counter
    _event_counter += 1
    if content is None:
        content = codec.encrypt(session, json.dumps(request))
    return InboundEvent(
        subscription_id=subscription_id,
        relay=sorted(session.relays)[0],
        id=hashlib.sha256(f"event-{_event_counter}".encode()).hexdigest(),
        kind=kind,
        pubkey=pubkey or session.client_pubkey,
        content=content,
        created_at=now(),
        expires_at=expires_at,
    )


@attr.s(frozen=True, kw_only=True)
class PublishedEvent:
    kind = attr.ib(type=int)
    content = attr.ib(type=str)
    tags = attr.ib(type=list)
    relays = attr.ib(type=frozenset)

    def decrypt(self, session: WalletSession) -> dict:
        return json.loads(codec.decrypt(session, self.content))


class MockRelayTransport:
    """In-memory stand-in for RelayTransport."""

    def __init__(self, *, unreachable_relays=(), rejecting_relays=()):
        self.unreachable_relays = set(unreachable_relays)
        self.rejecting_relays = set(rejecting_relays)
        self.failing_subscriptions = set()  # identity pubkeys
        self.connected = set()
        self.subscriptions = {}  # type: Dict[str, dict]
        self.published = []  # type: List[PublishedEvent]
        self._incoming = asyncio.Queue()
        self.closed = False

    async def connect_all(self, urls):
        self.connected |= set(urls) - self.unreachable_relays
        return set(self.connected)

    async def subscribe(self, query: dict, relays) -> str:
        if query['#p'][0] in self.failing_subscriptions:
            raise TransportError("subscription refused")
        subscription_id = f"sub-{len(self.subscriptions)}"
        self.subscriptions[subscription_id] = query
        return subscription_id

    async def publish(self, kind: int, content: str, tags, relays) -> PublishResult:
        relays = frozenset(relays)
        self.published.append(PublishedEvent(kind=kind, content=content, tags=tags, relays=relays))
        rejected = relays & self.rejecting_relays
        return PublishResult(
            event_id=os.urandom(32).hex(),
            accepted_by=relays - rejected,
            rejected_by=rejected,
        )

    def published_of_kind(self, kind: int) -> List[PublishedEvent]:
        return [event for event in self.published if event.kind == kind]

    def inject(self, event: InboundEvent) -> None:
        self._incoming.put_nowait(event)

    async def notifications(self):
        while True:
            event = await self._incoming.get()
            if event is None:
                return
            yield event

    async def close(self):
        self.closed = True
        self._incoming.put_nowait(None)


class MockPaymentBackend(PaymentBackend):
    """In-memory payment node. Invoices are settled with settle_invoice()."""

    def __init__(self):
        self.balance_msat = 21_000_000
        self.invoices = {}  # type: Dict[str, Invoice]
        self.calls = []  # type: List[tuple]
        self.pay_error = None  # type: Optional[Exception]
        self.pay_delay = 0
        self.returned_preimage = None  # type: Optional[str]
        self.fee_msat = 1000
        self.stream_ends = False
        self._waiters = {}  # type: Dict[str, asyncio.Future]

    async def get_info(self) -> NodeInfo:
        self.calls.append(('get_info',))
        return NodeInfo(identity_pubkey='02' + 64 * '1', alias='mock', block_height=800_000, synced_to_chain=True)

    async def get_balance(self) -> Balance:
        self.calls.append(('get_balance',))
        return Balance(confirmed_msat=self.balance_msat)

    async def _pay(self, payment_hash: str, amount_msat: int, preimage: str) -> Payment:
        if self.pay_delay:
            await asyncio.sleep(self.pay_delay)
        if self.pay_error is not None:
            raise self.pay_error
        return Payment(
            payment_hash=payment_hash,
            preimage=self.returned_preimage if self.returned_preimage is not None else preimage,
            value_msat=amount_msat,
            fee_msat=self.fee_msat,
            status=PaymentStatus.SUCCEEDED,
            creation_time=now(),
        )

    async def pay_invoice(self, invoice: str, amount_msat: Optional[int] = None) -> Payment:
        self.calls.append(('pay_invoice', invoice, amount_msat))
        preimage = hashlib.sha256(invoice.encode()).hexdigest()
        payment_hash = hashlib.sha256(bytes.fromhex(preimage)).hexdigest()
        return await self._pay(payment_hash, amount_msat or 10_000, preimage)

    async def pay_keysend(self, dest_pubkey, amount_msat, preimage, custom_records) -> Payment:
        self.calls.append(('pay_keysend', dest_pubkey, amount_msat, preimage, dict(custom_records)))
        payment_hash = hashlib.sha256(bytes.fromhex(preimage)).hexdigest()
        return await self._pay(payment_hash, amount_msat, preimage)

    async def create_invoice(self, amount_msat, memo=None, description_hash=None, expiry=None) -> Invoice:
        self.calls.append(('create_invoice', amount_msat, memo, description_hash, expiry))
        preimage = os.urandom(32)
        payment_hash = hashlib.sha256(preimage).hexdigest()
        invoice = Invoice(
            payment_request='lnbcrt' + payment_hash[:40],
            payment_hash=payment_hash,
            memo=memo,
            description_hash=description_hash,
            value_msat=amount_msat,
            state=InvoiceState.OPEN,
            preimage=preimage.hex(),
            creation_date=now(),
            expiry=expiry or 86400,
        )
        self.invoices[payment_hash] = invoice
        return invoice

    async def lookup_invoice(self, payment_hash: str) -> Invoice:
        self.calls.append(('lookup_invoice', payment_hash))
        try:
            return self.invoices[payment_hash]
        except KeyError:
            raise NotFound("unable to locate invoice") from None

    async def decode_invoice(self, payment_request: str) -> str:
        self.calls.append(('decode_invoice', payment_request))
        for invoice in self.invoices.values():
            if invoice.payment_request == payment_request:
                return invoice.payment_hash
        raise NotFound("invoice not found")

    def _waiter(self, payment_hash: str) -> asyncio.Future:
        if payment_hash not in self._waiters:
            self._waiters[payment_hash] = asyncio.get_running_loop().create_future()
        return self._waiters[payment_hash]

    async def wait_for_settlement(self, payment_hash: str) -> Optional[Invoice]:
        self.calls.append(('wait_for_settlement', payment_hash))
        if self.stream_ends:
            return None
        invoice = self.invoices.get(payment_hash)
        if invoice and invoice.state in (InvoiceState.SETTLED, InvoiceState.CANCELED):
            return invoice
        return await self._waiter(payment_hash)

    def _finish(self, payment_hash: str, **changes) -> Invoice:
        invoice = attr.evolve(self.invoices[payment_hash], **changes)
        self.invoices[payment_hash] = invoice
        waiter = self._waiter(payment_hash)
        if not waiter.done():
            waiter.set_result(invoice)
        return invoice

    def settle_invoice(self, payment_hash: str) -> Invoice:
        invoice = self.invoices[payment_hash]
        return self._finish(
            payment_hash,
            state=InvoiceState.SETTLED,
            amt_paid_msat=invoice.value_msat,
            settle_date=now(),
        )

    def cancel_invoice(self, payment_hash: str) -> Invoice:
        return self._finish(payment_hash, state=InvoiceState.CANCELED)
