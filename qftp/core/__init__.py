"""
Core FTP Client logic.
Includes connection managers, parser, command queue, reply dispatcher,
transfer queues and command handler.
"""

from .config import ClientConfig
from .connection import ControlConnectionManager
from .data_connection import DataChannelManager, DataState
from .command_queue import CommandQueue
from .dispatcher import ResponseDispatcher
from .commands import ClientCommandHandler
from .parser import Parser, MessageStructure, ReplyRecord
from .stat_record import StatRecord
from .errors import (
    FtpError,
    FtpReplyError,
    InvalidResponseError,
    TransferAbortedError,
    ConnectionClosedError,
    DataConnectionError,
    ConfigError,
)

__all__ = [
    "ClientConfig",
    "ControlConnectionManager",
    "DataChannelManager",
    "DataState",
    "CommandQueue",
    "ResponseDispatcher",
    "ClientCommandHandler",
    "Parser",
    "MessageStructure",
    "ReplyRecord",
    "StatRecord",
    "FtpError",
    "FtpReplyError",
    "InvalidResponseError",
    "TransferAbortedError",
    "ConnectionClosedError",
    "DataConnectionError",
    "ConfigError",
]
