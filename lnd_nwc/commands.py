# Copyright (C) 2025 The lnd-nwc developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php
import argparse
import asyncio
import json
import os
import sys
from typing import Optional, Dict, Any, TYPE_CHECKING

from . import daemon
from .logging import configure_logging
from .lnd import LNDRestBackend
from .nwc_types import BackendUnavailable
from .session import WalletSession, InvalidConnectionURI, create_connection_uri
from .simple_config import SimpleConfig
from .version import LND_NWC_VERSION

if TYPE_CHECKING:
    from .lnd import NodeInfo


class Commands:
    """Everything the command line can do, except running the daemon."""

    def __init__(self, config: 'SimpleConfig'):
        self.config = config

    def status(self) -> str:
        return daemon.status(self.config.get_pid_file()).value

    def stop(self) -> str:
        pid_file = self.config.get_pid_file()
        try:
            if daemon.stop(pid_file):
                return "Daemon stopping"
            return "Daemon was not running, removed stale pid file"
        except daemon.DaemonNotRunning:
            return "Daemon not running"

    def add_connection(self, name: str, relay: Optional[str] = None) -> str:
        """Creates a connection and returns its URI.
        The URI contains the secret of the connection, it is not shown again."""
        relay = relay or self.config.NOSTR_DEFAULT_RELAY
        identity = self.config.get_service_private_key().public_key.hex()
        uri = create_connection_uri(relay, identity_pubkey=identity)
        self.config.add_connection(name, uri)
        return uri

    def remove_connection(self, name: str) -> None:
        self.config.remove_connection(name)

    def list_connections(self) -> Dict[str, Any]:
        """Lists connections without their secrets."""
        connections = {}
        for name, uri in self.config.get_connections().items():
            try:
                session = WalletSession.from_uri(uri, name=name)
            except InvalidConnectionURI as e:
                connections[name] = {'error': str(e)}
                continue
            connections[name] = {
                'identity_pubkey': session.identity_pubkey,
                'client_pubkey': session.client_pubkey,
                'relays': sorted(session.relays),
            }
        return connections

    def set_lnd(self, url: Optional[str] = None, cert: Optional[str] = None, macaroon: Optional[str] = None) -> None:
        if url is not None:
            self.config.LND_REST_URL = url
        if cert is not None:
            self.config.LND_CERT_FILE = os.path.abspath(cert)
        if macaroon is not None:
            self.config.LND_MACAROON_FILE = os.path.abspath(macaroon)

    async def nodeinfo(self) -> Dict[str, Any]:
        backend = LNDRestBackend.from_config(self.config)
        try:
            info = await backend.get_info()  # type: NodeInfo
        finally:
            await backend.close()
        return {
            'identity_pubkey': info.identity_pubkey,
            'alias': info.alias,
            'block_height': info.block_height,
            'synced_to_chain': info.synced_to_chain,
            'version': info.version,
        }


def add_global_options(parser, suppress=False):
    group = parser.add_argument_group('global options')
    group.add_argument(
        "-v", "--verbosity", dest="verbosity", default='',
        help=argparse.SUPPRESS if suppress else "Set verbosity (log levels)")
    group.add_argument(
        "-D", "--dir", dest="lnd_nwc_path",
        help=argparse.SUPPRESS if suppress else "lnd-nwc directory")
    group.add_argument(
        "--log-to-file", action="store_true", dest=SimpleConfig.LOG_TO_FILE.key(), default=None,
        help=argparse.SUPPRESS if suppress else "Log to a file in the lnd-nwc directory")


def get_parser():
    parser = argparse.ArgumentParser(
        prog='run_lnd_nwc',
        description="Nostr Wallet Connect service for an LND node",
        epilog="Run 'run_lnd_nwc <command> -h' to see the help for a command")
    parser.add_argument("--version", dest="cmd", action='store_const', const='version', help="Return the version of lnd-nwc.")
    add_global_options(parser)
    subparsers = parser.add_subparsers(dest='cmd', metavar='<command>')

    p = subparsers.add_parser('daemon', help="Run the service in the foreground")
    add_global_options(p, suppress=True)
    p = subparsers.add_parser('stop', help="Stop the running daemon")
    add_global_options(p, suppress=True)
    p = subparsers.add_parser('status', help="Show whether the daemon is running")
    add_global_options(p, suppress=True)

    p = subparsers.add_parser('add_connection', help="Create a connection URI for a new client")
    p.add_argument('name', help="name of the connection")
    p.add_argument('--relay', dest='relay', default=None, help="relay the client should use")
    add_global_options(p, suppress=True)
    p = subparsers.add_parser('remove_connection', help="Remove a connection")
    p.add_argument('name', help="name of the connection")
    add_global_options(p, suppress=True)
    p = subparsers.add_parser('list_connections', help="List connections")
    add_global_options(p, suppress=True)

    p = subparsers.add_parser('set_lnd', help="Configure how to reach the LND node")
    p.add_argument('--url', dest='url', default=None, help="REST url of lnd, e.g. https://localhost:8080")
    p.add_argument('--cert', dest='cert', default=None, help="path of tls.cert")
    p.add_argument('--macaroon', dest='macaroon', default=None, help="path of the macaroon, e.g. admin.macaroon")
    add_global_options(p, suppress=True)
    p = subparsers.add_parser('nodeinfo', help="Show information about the LND node")
    add_global_options(p, suppress=True)
    return parser


def _print(result) -> None:
    if result is None:
        return
    if isinstance(result, str):
        print(result)
    else:
        print(json.dumps(result, indent=4, sort_keys=True))


def main(argv=None) -> int:
    parser = get_parser()
    args = parser.parse_args(argv)
    if args.cmd is None:
        parser.print_help()
        return 1
    if args.cmd == 'version':
        print(LND_NWC_VERSION)
        return 0

    # only pass explicitly given options to the config
    config_options = {
        key: value for key, value in vars(args).items()
        if value is not None and value != '' and key in ('lnd_nwc_path', 'verbosity', SimpleConfig.LOG_TO_FILE.key())
    }
    config = SimpleConfig(config_options)
    commands = Commands(config)

    if args.cmd == 'daemon':
        configure_logging(config)
        try:
            daemon.Daemon(config).run_daemon()
        except daemon.DaemonAlreadyRunning as e:
            print(str(e), file=sys.stderr)
            return 1
        except BackendUnavailable as e:
            print(f"cannot start: {e.message}", file=sys.stderr)
            return 1
        return 0

    configure_logging(config, log_to_file=False)
    try:
        if args.cmd == 'stop':
            _print(commands.stop())
        elif args.cmd == 'status':
            _print(commands.status())
        elif args.cmd == 'add_connection':
            _print(commands.add_connection(args.name, args.relay))
            if commands.status() == daemon.DaemonStatus.RUNNING.value:
                print("restart the daemon to serve the new connection", file=sys.stderr)
        elif args.cmd == 'remove_connection':
            commands.remove_connection(args.name)
        elif args.cmd == 'list_connections':
            _print(commands.list_connections())
        elif args.cmd == 'set_lnd':
            commands.set_lnd(args.url, args.cert, args.macaroon)
        elif args.cmd == 'nodeinfo':
            _print(asyncio.run(commands.nodeinfo()))
    except Exception as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    return 0
