# Copyright (C) 2025 The lnd-nwc developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php
#
# Nostr Wallet Connect service, see
# https://github.com/nostr-protocol/nips/blob/master/47.md
import asyncio
from enum import Enum
from typing import Optional, Sequence, Set, TYPE_CHECKING

from . import codec
from .dispatcher import Dispatcher
from .logging import Logger
from .notifier import Notifier
from .nwc_types import (
    INFO_EVENT_KIND, REQUEST_EVENT_KIND, RESPONSE_EVENT_KIND, ENCRYPTION_SCHEME,
    SUPPORTED_METHODS, SUPPORTED_NOTIFICATIONS,
    NWCError, DecryptError, EncryptError, DecodeError, MalformedRequest,
)
from .registry import SessionRegistry
from .transport import InboundEvent
from .util import OldTaskGroup, ServiceTaskGroup, log_exceptions, now

if TYPE_CHECKING:
    from .lnd import PaymentBackend
    from .session import WalletSession
    from .transport import RelayTransport


class EngineState(Enum):
    IDLE = 'idle'
    ANNOUNCING = 'announcing'
    SUBSCRIBING = 'subscribing'
    SERVING = 'serving'
    SHUTTING_DOWN = 'shutting_down'
    STOPPED = 'stopped'


class NWCServer(Logger):
    """Serves the requests of all configured sessions.

    One loop consumes the multiplexed event stream of the transport and
    spawns one task per accepted request, in arrival order. Settlement
    watchers live in the notifier's task group and outlive stop().
    """

    def __init__(
            self,
            transport: 'RelayTransport',
            backend: 'PaymentBackend',
            sessions: Sequence['WalletSession'],
            *,
            payment_timeout: float = 60,
    ):
        Logger.__init__(self)
        self.transport = transport
        self.backend = backend
        self.sessions = list(sessions)
        self.notifier = Notifier(transport, backend)
        self.dispatcher = Dispatcher(backend, self.notifier, payment_timeout=payment_timeout)
        self.registry = SessionRegistry()
        self.relays = set()  # type: Set[str]
        self.state = EngineState.IDLE
        self.start_time = None  # type: Optional[int]
        # in-flight requests
        self.taskgroup = ServiceTaskGroup()
        self.stop_event = asyncio.Event()

    def _set_state(self, state: EngineState) -> None:
        self.logger.debug(f"{self.state.value} -> {state.value}")
        self.state = state

    @log_exceptions
    async def run(self) -> None:
        """Runs until stop() is called or the transport is closed."""
        assert self.state == EngineState.IDLE, f"cannot run in state {self.state}"
        self.start_time = now()
        try:
            self._set_state(EngineState.ANNOUNCING)
            self.relays = set().union(*(session.relays for session in self.sessions))
            connected = await self.transport.connect_all(self.relays)
            if not connected:
                self.logger.warning("could not connect to any relays!")
            await self.publish_info_event()

            self._set_state(EngineState.SUBSCRIBING)
            _, self.registry = await SessionRegistry.build(
                self.transport, self.sessions, since=self.start_time)

            self._set_state(EngineState.SERVING)
            async with OldTaskGroup(wait=any) as group:
                await group.spawn(self.stop_event.wait())
                await group.spawn(self.handle_requests())
        finally:
            self._set_state(EngineState.SHUTTING_DOWN)
            # requests already dispatched complete, and get their response
            await self.taskgroup.join()
            self._set_state(EngineState.STOPPED)

    def stop(self) -> None:
        self.stop_event.set()

    async def publish_info_event(self) -> None:
        """Announces the supported methods, signed with the service identity.
        https://github.com/nostr-protocol/nips/blob/master/47.md#example-nip-47-info-event
        """
        tags = [['encryption', ENCRYPTION_SCHEME]]
        if SUPPORTED_NOTIFICATIONS:
            tags.append(['notifications', ' '.join(SUPPORTED_NOTIFICATIONS)])
        result = await self.transport.publish(
            INFO_EVENT_KIND,
            ' '.join(SUPPORTED_METHODS),
            tags,
            self.relays,
        )
        if result.accepted_by:
            self.logger.info(f"published info event {result.event_id} to {sorted(result.accepted_by)}")
        else:
            self.logger.warning(f"info event rejected by all relays: {sorted(result.rejected_by)}")

    async def handle_requests(self) -> None:
        async for event in self.transport.notifications():
            if event.kind != REQUEST_EVENT_KIND:
                self.logger.debug(f"ignoring event of kind {event.kind}")
                continue
            session = self.registry.lookup(event.subscription_id)
            if session is None:
                self.logger.info(f"discarding event {event.id}: unknown subscription {event.subscription_id}")
                continue
            if event.pubkey != session.client_pubkey:
                self.logger.info(f"discarding event {event.id}: not sent by the client of {session.diagnostic_name()}")
                continue
            # if the request has an explicitly set expiration tag, ignore it if it is expired
            if event.is_expired():
                self.logger.debug(f"discarding expired request {event.id} of {session.diagnostic_name()}")
                continue
            await self.taskgroup.spawn(self.run_request_task(session, event))

    async def run_request_task(self, session: 'WalletSession', event: InboundEvent) -> None:
        """Handles one request. Sends exactly one response for every request that can be decrypted and parsed."""
        try:
            plaintext = codec.decrypt(session, event.content)
        except DecryptError as e:
            self.logger.debug(f"discarding request {event.id} of {session.diagnostic_name()}: {e}")
            return
        try:
            command = codec.decode_request(plaintext)
        except MalformedRequest as e:
            self.logger.debug(f"discarding request {event.id} of {session.diagnostic_name()}: {e}")
            return
        except DecodeError as e:
            self.logger.debug(f"invalid request {event.id} of {session.diagnostic_name()}: {e}")
            await self.send_error(session, event, e.code, e.message, e.method)
            return

        method = command.method.value
        self.logger.debug(f"got request from {session.diagnostic_name()}: {method=}")
        try:
            outcome = await self.dispatcher.handle(command, session)
        except NWCError as e:
            self.logger.info(f"{method} of {session.diagnostic_name()} failed: {e.code} {e.message}")
            await self.send_error(session, event, e.code, e.message, method)
            return
        except Exception as e:
            self.logger.exception("Error handling nwc request")
            await self.send_error(session, event, "INTERNAL", f"Error handling request: {str(e)[:100]}", method)
            return

        if outcome.notification is not None:
            await self.notifier.try_notify(session, outcome.notification)
        await self.send_encrypted_response(session, event, codec.encode_result(outcome.result))

    async def send_error(
            self,
            session: 'WalletSession',
            causing_event: InboundEvent,
            error_type: str,
            error_msg: str = "",
            method: Optional[str] = None,
    ) -> None:
        """Sends an error as response to causing_event"""
        content = codec.encode_error(error_type, error_msg, method)
        await self.send_encrypted_response(session, causing_event, content)

    async def send_encrypted_response(self, session: 'WalletSession', request_event: InboundEvent, content: str) -> None:
        """Encrypts content for the client of session and sends it as response to request_event"""
        try:
            encrypted_content = codec.encrypt(session, content)
        except EncryptError as e:
            self.logger.warning(f"cannot respond to {request_event.id}: {e}")
            return
        tags = [['p', request_event.pubkey], ['e', request_event.id]]
        result = await self.transport.publish(RESPONSE_EVENT_KIND, encrypted_content, tags, session.relays)
        if not result.accepted_by:
            self.logger.warning(
                f"response to {request_event.id} rejected by all relays: {sorted(result.rejected_by)}")
