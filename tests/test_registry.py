from lnd_nwc.nwc_types import REQUEST_EVENT_KIND
from lnd_nwc.registry import SessionRegistry, request_filter

from . import LndNwcTestCase, MockRelayTransport, make_session


class TestSessionRegistry(LndNwcTestCase):

    def test_request_filter(self):
        session = make_session()
        self.assertEqual({
            "#p": [session.identity_pubkey],
            "kinds": [REQUEST_EVENT_KIND],
            "limit": 0,
            "since": 1700000000,
        }, request_filter(session, 1700000000))

    async def test_build(self):
        transport = MockRelayTransport()
        session_a = make_session(relays=['wss://relay.one', 'wss://relay.two'], name='a')
        session_b = make_session(relays=['wss://relay.two', 'wss://relay.three'], name='b')
        relays, registry = await SessionRegistry.build(transport, [session_a, session_b], since=1700000000)
        self.assertEqual({'wss://relay.one', 'wss://relay.two', 'wss://relay.three'}, relays)
        self.assertEqual(2, len(registry))
        self.assertEqual([session_a, session_b], registry.sessions())
        for subscription_id, session in registry:
            self.assertIs(session, registry.lookup(subscription_id))
            self.assertEqual([session.identity_pubkey], transport.subscriptions[subscription_id]['#p'])
        self.assertIsNone(registry.lookup('sub-unknown'))

    async def test_overlapping_sessions_get_distinct_subscriptions(self):
        transport = MockRelayTransport()
        # two clients of the same service identity on the same relay
        session_a = make_session(name='a')
        session_b = make_session(name='b')
        _, registry = await SessionRegistry.build(transport, [session_a, session_b], since=0)
        subscription_ids = [subscription_id for subscription_id, _ in registry]
        self.assertEqual(2, len(set(subscription_ids)))
        self.assertIs(session_a, registry.lookup(subscription_ids[0]))
        self.assertIs(session_b, registry.lookup(subscription_ids[1]))

    async def test_failed_subscription_is_skipped(self):
        transport = MockRelayTransport()
        session_a = make_session(name='a')
        session_b = make_session(relays=['wss://relay.two'], name='b')
        transport.failing_subscriptions.add(session_a.identity_pubkey)
        relays, registry = await SessionRegistry.build(transport, [session_a, session_b], since=0)
        self.assertEqual([session_b], registry.sessions())
        # the relays of the skipped session are still part of the union
        self.assertEqual({'wss://relay.one', 'wss://relay.two'}, relays)

    def test_empty(self):
        registry = SessionRegistry()
        self.assertEqual(0, len(registry))
        self.assertEqual([], registry.sessions())
        self.assertIsNone(registry.lookup('sub-0'))

    def test_duplicate_subscription_id(self):
        with self.assertRaises(ValueError):
            SessionRegistry([('sub-0', make_session(name='a')), ('sub-0', make_session(name='b'))])
