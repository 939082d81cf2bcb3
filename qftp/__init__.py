"""qftp - queued FTP client core with passive-mode transfers."""

from qftp.core import ClientCommandHandler, ClientConfig

__version__ = "0.1.0"

__all__ = ["ClientCommandHandler", "ClientConfig", "__version__"]
