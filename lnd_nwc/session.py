# Copyright (C) 2025 The lnd-nwc developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php
import urllib.parse
from typing import Optional, FrozenSet

import attr
from electrum_aionostr.key import PrivateKey

from .util import is_hex_of_length


URI_SCHEME = 'nostr+walletconnect'


class InvalidConnectionURI(ValueError):
    pass


def _is_relay_url(url: str) -> bool:
    parsed = urllib.parse.urlparse(url)
    return parsed.scheme in ('ws', 'wss') and bool(parsed.netloc)


@attr.s(frozen=True, kw_only=True)
class WalletSession:
    """One client connection, materialized from its capability URI.

    identity_pubkey is the x-only key requests are addressed to; secret is
    the 32 byte key shared with the client. Both sides derive the same
    encryption key from them.
    """
    identity_pubkey = attr.ib(type=str)
    secret = attr.ib(type=str, repr=False)
    relays = attr.ib(type=FrozenSet[str], converter=frozenset)
    name = attr.ib(type=Optional[str], default=None, eq=False)

    @identity_pubkey.validator
    def _check_identity_pubkey(self, attribute, value):
        if not is_hex_of_length(value, 32):
            raise InvalidConnectionURI(f"identity pubkey must be 32 bytes of hex, got {value!r}")

    @secret.validator
    def _check_secret(self, attribute, value):
        if not is_hex_of_length(value, 32):
            raise InvalidConnectionURI("secret must be 32 bytes of hex")

    @relays.validator
    def _check_relays(self, attribute, value):
        if not value:
            raise InvalidConnectionURI("at least one relay is required")
        for url in value:
            if not _is_relay_url(url):
                raise InvalidConnectionURI(f"invalid relay url: {url!r}")

    @property
    def client_pubkey(self) -> str:
        """The public key of the secret, i.e. the key clients sign their requests with."""
        return PrivateKey(bytes.fromhex(self.secret)).public_key.hex()

    def diagnostic_name(self) -> str:
        return self.name or self.identity_pubkey[:8]

    @classmethod
    def from_uri(cls, uri: str, *, name: Optional[str] = None) -> 'WalletSession':
        parsed = urllib.parse.urlparse(uri.strip())
        if parsed.scheme != URI_SCHEME:
            raise InvalidConnectionURI(f"unexpected scheme: {parsed.scheme!r}")
        # some clients write nostr+walletconnect:<pubkey> without the slashes
        pubkey = parsed.netloc or parsed.path.lstrip('/')
        query = urllib.parse.parse_qs(parsed.query)
        secrets = query.get('secret', [])
        if len(secrets) != 1:
            raise InvalidConnectionURI("exactly one secret is required")
        return cls(
            identity_pubkey=pubkey.lower(),
            secret=secrets[0].lower(),
            relays=query.get('relay', []),
            name=name,
        )

    def to_uri(self) -> str:
        query_params = [f"relay={urllib.parse.quote(relay, safe='')}" for relay in sorted(self.relays)]
        query_params.append(f"secret={self.secret}")
        return f"{URI_SCHEME}://{self.identity_pubkey}?{'&'.join(query_params)}"


def create_connection_uri(relay: str, *, identity_pubkey: Optional[str] = None) -> str:
    """Generates a fresh secret for a new client.

    Requests are addressed to identity_pubkey, which should be the service
    identity so that clients can recognize our responses. If it is not given,
    a random identity is used.
    """
    if not _is_relay_url(relay):
        raise InvalidConnectionURI(f"invalid relay url: {relay!r}")
    if identity_pubkey is None:
        identity_pubkey = PrivateKey().public_key.hex()
    secret = PrivateKey()
    session = WalletSession(
        identity_pubkey=identity_pubkey,
        secret=secret.hex(),
        relays=[relay],
    )
    return session.to_uri()
