from .version import LND_NWC_VERSION
from .logging import get_logger
from .simple_config import SimpleConfig
from .session import WalletSession, InvalidConnectionURI, create_connection_uri
from .nwcserver import NWCServer
from .daemon import Daemon


__version__ = LND_NWC_VERSION
