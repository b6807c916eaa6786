"""Client runtime for talking to a keyhold agent from the command line."""

from .errors import KeyholdError, RemoteError
from .protocol import AgentClient

__all__ = ["AgentClient", "KeyholdError", "RemoteError"]

__version__ = "0.1.0"
