# Copyright (C) 2025 The lnd-nwc developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php
import json
import threading
import os
import stat
from typing import Union, Optional, Dict, Any, Callable, List, TYPE_CHECKING
from copy import deepcopy

from .util import user_dir, make_dir
from .logging import get_logger, Logger

from electrum_aionostr.key import PrivateKey

if TYPE_CHECKING:
    from .session import WalletSession


_logger = get_logger(__name__)


_config_var_from_key = {}  # type: Dict[str, 'ConfigVar']


class ConfigVar(property):

    def __init__(
        self,
        key: str,
        *,
        default: Union[Any, Callable[['SimpleConfig'], Any]],  # typically a literal, but can also be a callable
        type_=None,
        convert_getter: Callable[[Any], Any] = None,
    ):
        self._key = key
        self._default = default
        self._type = type_
        self._convert_getter = convert_getter
        property.__init__(self, self._get_config_value, self._set_config_value)
        assert key not in _config_var_from_key, f"duplicate config key str: {key!r}"
        _config_var_from_key[key] = self

    def _get_config_value(self, config: 'SimpleConfig'):
        with config.lock:
            if config.is_set(self._key):
                value = config.get(self._key)
                # run converter
                if self._convert_getter is not None:
                    value = self._convert_getter(value)
                # type-check
                if self._type is not None:
                    assert value is not None, f"got None for key={self._key!r}"
                    try:
                        value = self._type(value)
                    except Exception as e:
                        raise ValueError(
                            f"ConfigVar.get type-check and auto-conversion failed. "
                            f"key={self._key!r}. type={self._type}. value={value!r}") from e
            else:
                d = self._default
                value = d(config) if callable(d) else d
            return value

    def _set_config_value(self, config: 'SimpleConfig', value, *, save=True):
        if self._type is not None and value is not None:
            if not isinstance(value, self._type):
                raise ValueError(
                    f"ConfigVar.set type-check failed. "
                    f"key={self._key!r}. type={self._type}. value={value!r}")
        config.set_key(self._key, value, save=save)

    def key(self) -> str:
        return self._key

    def __repr__(self):
        return f"<ConfigVar key={self._key!r}>"

    def __deepcopy__(self, memo):
        # We can be considered ~stateless. State is stored in the config, which is external.
        return self


class SimpleConfig(Logger):
    """
    The SimpleConfig class is responsible for handling operations involving
    configuration files.

    There are two different sources of possible configuration values:
        1. Command line options.
        2. User configuration (in the user's data directory)
    They are taken in order (1. overrides config options set in 2.)

    Secrets (the service identity key and the connection URIs) live in the
    user configuration, which is why the file is written with 0600 permissions.
    """

    def __init__(self, options=None, read_user_config_function=None,
                 read_user_dir_function=None):
        if options is None:
            options = {}
        for config_key in options:
            assert isinstance(config_key, str), f"{config_key=!r} has type={type(config_key)}, expected str"

        Logger.__init__(self)

        # This lock needs to be acquired for updating and reading the config in
        # a thread-safe way.
        self.lock = threading.RLock()

        # The following two functions are there for dependency injection when
        # testing.
        if read_user_config_function is None:
            read_user_config_function = read_user_config
        if read_user_dir_function is None:
            self.user_dir = user_dir
        else:
            self.user_dir = read_user_dir_function

        # The command line options
        self.cmdline_options = deepcopy(options)

        # Set self.path and read the user config
        self.user_config = {}  # for self.get in datadir_path()
        self.path = self.datadir_path()
        self.user_config = read_user_config_function(self.path)

        self._init_done = True

    def datadir_path(self):
        # Read the data directory from command line
        # Otherwise use the user's default data directory.
        path = self.get('lnd_nwc_path') or self.user_dir()
        make_dir(path, allow_symlink=False)
        self.logger.info(f"lnd-nwc directory {path}")
        return path

    def set_key(self, key: Union[str, ConfigVar], value, *, save=True) -> None:
        """Set the value for an arbitrary string config key.
        note: try to use explicit predefined ConfigVars instead of this method, whenever possible.
        """
        if isinstance(key, ConfigVar):
            key = key.key()
        assert isinstance(key, str), key
        if not self.is_modifiable(key):
            self.logger.warning(f"not changing config key '{key}' set on the command line")
            return
        try:
            json.dumps(key)
            json.dumps(value)
        except Exception:
            self.logger.info(f"json error: cannot save {repr(key)} ({repr(value)})")
            return
        self._set_key_in_user_config(key, value, save=save)

    def _set_key_in_user_config(self, key: str, value, *, save=True) -> None:
        assert isinstance(key, str), key
        with self.lock:
            if value is not None:
                keypath = key.split('.')
                d = self.user_config
                for x in keypath[0:-1]:
                    d2 = d.get(x)
                    if not isinstance(d2, dict):
                        d2 = d[x] = {}
                    d = d2
                d[keypath[-1]] = value
            else:
                def delete_key(d, key):
                    if '.' not in key:
                        d.pop(key, None)
                    else:
                        prefix, suffix = key.split('.', 1)
                        d2 = d.get(prefix)
                        empty = delete_key(d2, suffix)
                        if empty:
                            d.pop(prefix)
                    return len(d) == 0
                delete_key(self.user_config, key)
            if save:
                self.save_user_config()

    def get(self, key: str, default=None) -> Any:
        """Get the value for an arbitrary string config key.
        note: try to use explicit predefined ConfigVars instead of this method, whenever possible.
        """
        assert isinstance(key, str), key
        with self.lock:
            out = self.cmdline_options.get(key)
            if out is None:
                d = self.user_config
                path = key.split('.')
                for key in path[0:-1]:
                    d = d.get(key, {})
                if not isinstance(d, dict):
                    d = {}
                out = d.get(path[-1], default)
        return out

    def is_set(self, key: Union[str, ConfigVar]) -> bool:
        """Returns whether the config key has any explicit value set/defined."""
        if isinstance(key, ConfigVar):
            key = key.key()
        assert isinstance(key, str), key
        return self.get(key, default=...) is not ...

    def is_modifiable(self, key: Union[str, ConfigVar]) -> bool:
        if isinstance(key, ConfigVar):
            key = key.key()
        return key not in self.cmdline_options

    def save_user_config(self):
        if not self.path:
            return
        path = os.path.join(self.path, "config")
        s = json.dumps(self.user_config, indent=4, sort_keys=True)
        try:
            with open(path, "w", encoding='utf-8') as f:
                os.chmod(path, stat.S_IREAD | stat.S_IWRITE)  # set restrictive perms *before* we write data
                f.write(s)
        except OSError:
            # datadir probably deleted while running
            if os.path.exists(self.path):
                raise

    def get_pid_file(self) -> str:
        return self.DAEMON_PID_FILE or os.path.join(self.path, 'lnd-nwc.pid')

    def get_service_private_key(self) -> PrivateKey:
        """Returns the service identity, generating and persisting it on first use."""
        with self.lock:
            secret_hex = self.NOSTR_SECRET
            if not secret_hex:
                privkey = PrivateKey()
                self.NOSTR_SECRET = privkey.hex()
                self.logger.info(f"generated new service identity {privkey.public_key.hex()}")
                return privkey
        return PrivateKey(bytes.fromhex(secret_hex))

    def get_connections(self) -> Dict[str, str]:
        return dict(self.get('connections', {}))

    def add_connection(self, name: str, uri: str) -> None:
        if not name:
            raise ValueError(f"Invalid or missing connection name: {name!r}")
        with self.lock:
            connections = self.get_connections()
            if name in connections:
                raise ValueError(f"Connection name already exists: {name}")
            connections[name] = uri
            self.set_key('connections', connections)

    def remove_connection(self, name: str) -> None:
        with self.lock:
            connections = self.get_connections()
            if name not in connections:
                raise ValueError(f"Connection name not found: {name}")
            del connections[name]
            self.set_key('connections', connections)

    def get_sessions(self) -> List['WalletSession']:
        """Materializes every stored connection URI, skipping the ones that do not parse."""
        from .session import WalletSession, InvalidConnectionURI
        sessions = []
        for name, uri in sorted(self.get_connections().items()):
            try:
                sessions.append(WalletSession.from_uri(uri, name=name))
            except InvalidConnectionURI as e:
                self.logger.warning(f"skipping connection {name!r}: {e}")
        return sessions

    def __setattr__(self, name, value):
        """Disallows setting instance attributes outside __init__.

        The point is to make the following code raise:
        >>> config.PAYMENT_TIMOUET = 30
        (i.e. catch mistyped or non-existent ConfigVars)
        """
        # If __init__ not finished yet, or this field already exists, set it:
        if not getattr(self, "_init_done", False) or hasattr(self, name):
            return super().__setattr__(name, value)
        raise AttributeError(
            f"Tried to define new instance attribute for config: {name=!r}. "
            "Did you perhaps mistype a ConfigVar?"
        )

    # config variables ----->
    NOSTR_SECRET = ConfigVar('nostr_secret', default=None, type_=str)
    NOSTR_DEFAULT_RELAY = ConfigVar('default_relay', default='wss://relay.getalby.com/v1', type_=str)

    LND_REST_URL = ConfigVar('lnd.rest_url', default='https://localhost:8080', type_=str)
    LND_CERT_FILE = ConfigVar('lnd.cert_file', default=None, type_=str)
    LND_MACAROON_FILE = ConfigVar('lnd.macaroon_file', default=None, type_=str)

    PAYMENT_TIMEOUT = ConfigVar('payment_timeout', default=60, type_=int)  # seconds
    WATCHER_SHUTDOWN_GRACE = ConfigVar('watcher_shutdown_grace', default=5, type_=int)  # seconds

    DAEMON_PID_FILE = ConfigVar('pid_file', default=None, type_=str)
    LOG_TO_FILE = ConfigVar('log_to_file', default=False, type_=bool)


def read_user_config(path: Optional[str]) -> Dict[str, Any]:
    """Parse and store the user config settings in the datadir config file into user_config[]."""
    if not path:
        return {}
    config_path = os.path.join(path, "config")
    if not os.path.exists(config_path):
        return {}
    try:
        with open(config_path, "r", encoding='utf-8') as f:
            data = f.read()
        result = json.loads(data)
        assert isinstance(result, dict), "config file is not a dict"
    except Exception as e:
        raise ValueError(f"Invalid config file at {config_path}: {str(e)}")
    return result
