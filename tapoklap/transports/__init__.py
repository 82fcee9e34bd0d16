"""Package containing all supported transports."""

from .basetransport import BaseTransport
from .klaptransport import KlapEncryptionSession, KlapTransport

__all__ = [
    "BaseTransport",
    "KlapTransport",
    "KlapEncryptionSession",
]
