"""Package containing all supported protocols."""

from .protocol import BaseProtocol
from .smartprotocol import SmartProtocol

__all__ = [
    "BaseProtocol",
    "SmartProtocol",
]
