import asyncio
import hashlib

from lnd_nwc import codec
from lnd_nwc.nwcserver import NWCServer, EngineState
from lnd_nwc.nwc_types import (
    INFO_EVENT_KIND, RESPONSE_EVENT_KIND, NOTIFICATION_EVENT_KIND, REQUEST_EVENT_KIND,
    SUPPORTED_METHODS, PaymentFailed,
)
from lnd_nwc.util import now

from . import (
    LndNwcTestCase, MockRelayTransport, MockPaymentBackend, make_session, make_request_event, wait_until,
)


class TestNWCServer(LndNwcTestCase):

    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.transport = MockRelayTransport()
        self.backend = MockPaymentBackend()
        self.session_a = make_session(relays=['wss://relay.one', 'wss://relay.two'], name='a')
        self.session_b = make_session(relays=['wss://relay.two'], name='b')
        self.server = NWCServer(
            self.transport, self.backend, [self.session_a, self.session_b], payment_timeout=1)
        self.server_task = None

    async def asyncTearDown(self):
        if self.server_task is not None and not self.server_task.done():
            self.server.stop()
            await asyncio.wait_for(self.server_task, 2)
        await self.server.notifier.cancel_watchers()
        await super().asyncTearDown()

    async def _start(self):
        self.server_task = asyncio.create_task(self.server.run())
        await wait_until(lambda: self.server.state == EngineState.SERVING)

    def _subscription_of(self, session):
        for subscription_id, s in self.server.registry:
            if s is session:
                return subscription_id
        raise KeyError(session)

    def _responses(self):
        return self.transport.published_of_kind(RESPONSE_EVENT_KIND)

    async def _request(self, session, request, **kwargs):
        """Injects a request and returns the decrypted response."""
        event = make_request_event(session, self._subscription_of(session), request, **kwargs)
        num_responses = len(self._responses())
        self.transport.inject(event)
        await wait_until(lambda: len(self._responses()) > num_responses)
        response = self._responses()[-1]
        self.assertEqual([['p', session.client_pubkey], ['e', event.id]], response.tags)
        self.assertEqual(session.relays, response.relays)
        return response.decrypt(session)

    async def test_startup_publishes_info_event_and_subscribes(self):
        await self._start()
        self.assertEqual({'wss://relay.one', 'wss://relay.two'}, self.transport.connected)
        [info] = self.transport.published_of_kind(INFO_EVENT_KIND)
        self.assertEqual(' '.join(SUPPORTED_METHODS), info.content)
        self.assertIn(['encryption', 'nip04'], info.tags)
        self.assertIn(['notifications', 'payment_received payment_sent'], info.tags)
        self.assertEqual(frozenset({'wss://relay.one', 'wss://relay.two'}), info.relays)
        self.assertEqual(2, len(self.transport.subscriptions))
        for query in self.transport.subscriptions.values():
            self.assertEqual([REQUEST_EVENT_KIND], query['kinds'])
            self.assertEqual(0, query['limit'])
            self.assertEqual(self.server.start_time, query['since'])

    async def test_get_balance(self):
        await self._start()
        response = await self._request(self.session_a, {"method": "get_balance", "params": {}})
        self.assertEqual({"result_type": "get_balance", "result": {"balance": 21_000_000}}, response)

    async def test_get_info(self):
        await self._start()
        response = await self._request(self.session_b, {"method": "get_info", "params": {}})
        self.assertEqual('get_info', response['result_type'])
        self.assertEqual(SUPPORTED_METHODS, response['result']['methods'])

    async def test_overlapping_sessions_are_answered_separately(self):
        await self._start()
        response_a = await self._request(self.session_a, {"method": "get_balance"})
        response_b = await self._request(self.session_b, {"method": "get_balance"})
        self.assertEqual(response_a, response_b)
        responses = self._responses()
        self.assertEqual(self.session_a.relays, responses[0].relays)
        self.assertEqual(self.session_b.relays, responses[1].relays)

    async def test_unknown_method_gets_not_implemented(self):
        await self._start()
        response = await self._request(self.session_a, {"method": "multi_pay_keysend", "params": {}})
        self.assertEqual({
            "result_type": "multi_pay_keysend",
            "error": {"code": "NOT_IMPLEMENTED", "message": "multi_pay_keysend not supported"},
        }, response)

    async def test_invalid_params_get_error(self):
        await self._start()
        response = await self._request(
            self.session_a, {"method": "pay_keysend", "params": {"pubkey": "02", "amount": 1000}})
        self.assertEqual('pay_keysend', response['result_type'])
        self.assertEqual('OTHER', response['error']['code'])
        self.assertEqual([], self.backend.calls)

    async def test_payment_failure_gets_error(self):
        await self._start()
        self.backend.pay_error = PaymentFailed("no route")
        response = await self._request(self.session_a, {"method": "pay_invoice", "params": {"invoice": "lnbc1"}})
        self.assertEqual({
            "result_type": "pay_invoice",
            "error": {"code": "PAYMENT_FAILED", "message": "no route"},
        }, response)
        self.assertEqual([], self.transport.published_of_kind(NOTIFICATION_EVENT_KIND))

    async def test_unexpected_exception_gets_internal_error(self):
        await self._start()
        self.backend.pay_error = RuntimeError("boom")
        response = await self._request(self.session_a, {"method": "pay_invoice", "params": {"invoice": "lnbc1"}})
        self.assertEqual('INTERNAL', response['error']['code'])
        self.assertEqual('Error handling request: boom', response['error']['message'])
        # the server keeps serving
        response = await self._request(self.session_a, {"method": "get_balance"})
        self.assertIn('result', response)

    async def test_pay_invoice_notifies_before_responding(self):
        await self._start()
        response = await self._request(self.session_a, {"method": "pay_invoice", "params": {"invoice": "lnbc1"}})
        self.assertEqual(hashlib.sha256(b'lnbc1').hexdigest(), response['result']['preimage'])
        kinds = [event.kind for event in self.transport.published if event.kind != INFO_EVENT_KIND]
        self.assertEqual([NOTIFICATION_EVENT_KIND, RESPONSE_EVENT_KIND], kinds)
        [notification] = self.transport.published_of_kind(NOTIFICATION_EVENT_KIND)
        self.assertEqual('payment_sent', notification.decrypt(self.session_a)['notification_type'])

    async def test_make_invoice_then_settlement(self):
        await self._start()
        response = await self._request(
            self.session_b, {"method": "make_invoice", "params": {"amount": 50_000, "description": "coffee"}})
        result = response['result']
        self.assertEqual('pending', result['state'])
        self.assertEqual('incoming', result['type'])
        payment_hash = result['payment_hash']
        await wait_until(lambda: ('wait_for_settlement', payment_hash) in self.backend.calls)
        self.assertEqual([], self.transport.published_of_kind(NOTIFICATION_EVENT_KIND))

        self.backend.settle_invoice(payment_hash)
        await wait_until(lambda: self.transport.published_of_kind(NOTIFICATION_EVENT_KIND))
        [notification] = self.transport.published_of_kind(NOTIFICATION_EVENT_KIND)
        self.assertEqual(self.session_b.relays, notification.relays)
        content = notification.decrypt(self.session_b)
        self.assertEqual('payment_received', content['notification_type'])
        self.assertEqual(payment_hash, content['notification']['payment_hash'])
        self.assertEqual(50_000, content['notification']['amount'])

        # looking it up afterwards does not notify a second time
        response = await self._request(
            self.session_b, {"method": "lookup_invoice", "params": {"payment_hash": payment_hash}})
        self.assertEqual('settled', response['result']['state'])
        self.assertEqual(1, len(self.transport.published_of_kind(NOTIFICATION_EVENT_KIND)))

    async def test_lookup_unknown_invoice(self):
        await self._start()
        response = await self._request(
            self.session_a, {"method": "lookup_invoice", "params": {"payment_hash": 64 * '0'}})
        self.assertEqual('NOT_FOUND', response['error']['code'])

    async def test_timeout_gets_internal_error(self):
        await self._start()
        self.server.dispatcher.payment_timeout = 0.05
        self.backend.pay_delay = 5
        response = await self._request(self.session_a, {"method": "pay_invoice", "params": {"invoice": "lnbc1"}})
        self.assertEqual('INTERNAL', response['error']['code'])

    async def _assert_ignored(self, event):
        """Injects event, followed by a valid request. Only the latter may be answered."""
        self.transport.inject(event)
        response = await self._request(self.session_a, {"method": "get_balance"})
        self.assertIn('result', response)
        self.assertEqual(1, len(self._responses()))

    async def test_unknown_subscription_is_ignored(self):
        await self._start()
        await self._assert_ignored(make_request_event(self.session_a, 'sub-unknown', {"method": "get_balance"}))

    async def test_wrong_kind_is_ignored(self):
        await self._start()
        await self._assert_ignored(make_request_event(
            self.session_a, self._subscription_of(self.session_a), {"method": "get_balance"}, kind=1))

    async def test_request_from_other_sender_is_ignored(self):
        await self._start()
        await self._assert_ignored(make_request_event(
            self.session_a, self._subscription_of(self.session_a), {"method": "get_balance"},
            pubkey=self.session_b.client_pubkey))

    async def test_request_on_other_session_subscription_is_ignored(self):
        await self._start()
        # sent by the client of b, but arriving on the subscription of a
        await self._assert_ignored(make_request_event(
            self.session_b, self._subscription_of(self.session_a), {"method": "get_balance"}))

    async def test_expired_request_is_ignored(self):
        await self._start()
        await self._assert_ignored(make_request_event(
            self.session_a, self._subscription_of(self.session_a), {"method": "get_balance"},
            expires_at=now() - 10))

    async def test_undecryptable_request_is_ignored(self):
        await self._start()
        await self._assert_ignored(make_request_event(
            self.session_a, self._subscription_of(self.session_a), {}, content='garbage'))

    async def test_malformed_request_is_ignored(self):
        await self._start()
        await self._assert_ignored(make_request_event(
            self.session_a, self._subscription_of(self.session_a), {},
            content=codec.encrypt(self.session_a, 'not json')))

    async def test_failed_subscription_does_not_stop_others(self):
        self.transport.failing_subscriptions.add(self.session_a.identity_pubkey)
        self.server = NWCServer(self.transport, self.backend, [self.session_a, self.session_b])
        await self._start()
        self.assertEqual([self.session_b], self.server.registry.sessions())
        response = await self._request(self.session_b, {"method": "get_balance"})
        self.assertIn('result', response)

    async def test_stop_waits_for_inflight_requests(self):
        await self._start()
        self.backend.pay_delay = 0.2
        event = make_request_event(
            self.session_a, self._subscription_of(self.session_a),
            {"method": "pay_invoice", "params": {"invoice": "lnbc1"}})
        self.transport.inject(event)
        await wait_until(lambda: ('pay_invoice', 'lnbc1', None) in self.backend.calls)
        self.server.stop()
        await asyncio.wait_for(self.server_task, 2)
        self.assertEqual(EngineState.STOPPED, self.server.state)
        [response] = self._responses()
        self.assertIn('result', response.decrypt(self.session_a))

    async def test_transport_close_ends_run(self):
        await self._start()
        await self.transport.close()
        await asyncio.wait_for(self.server_task, 2)
        self.assertEqual(EngineState.STOPPED, self.server.state)

    async def test_finished_requests_are_not_retained(self):
        await self._start()
        for _ in range(30):
            await self._request(self.session_a, {"method": "get_balance"})
        taskgroup = self.server.taskgroup
        await wait_until(lambda: not taskgroup._done and not taskgroup._pending)
        # finished settlement watchers are dropped as well
        for _ in range(10):
            response = await self._request(self.session_b, {"method": "make_invoice", "params": {"amount": 1000}})
            payment_hash = response['result']['payment_hash']
            await wait_until(lambda: ('wait_for_settlement', payment_hash) in self.backend.calls)
            self.backend.cancel_invoice(payment_hash)
        watchers = self.server.notifier.taskgroup
        await wait_until(lambda: not watchers._done and not watchers._pending)
        self.assertEqual(40, len(self._responses()))
