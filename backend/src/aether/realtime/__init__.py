"""Realtime helpers for websocket fan-out."""

from .channels import Channel, ChannelKind  # noqa: F401
from .managers import (  # noqa: F401
    ChannelConnectionManager,
    ClientConnection,
    get_channel_manager,
    shutdown_realtime,
    startup_realtime,
)

__all__ = [
    "Channel",
    "ChannelKind",
    "ChannelConnectionManager",
    "ClientConnection",
    "get_channel_manager",
    "startup_realtime",
    "shutdown_realtime",
]
