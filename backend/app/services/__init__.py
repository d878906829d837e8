"""Application service singletons shared by the HTTP and websocket layers."""

from aether.calls.signaling import CallSignalRelay
from aether.realtime.managers import get_channel_manager

from app.database import SessionLocal

from .chat_store import ChatStore
from .membership import MembershipRouter
from .pipeline import MessagePipeline
from .presence import PresenceTracker

chat_store = ChatStore(SessionLocal)
"""Store bound to the configured database; tests rebind it."""

presence_tracker = PresenceTracker(chat_store, get_channel_manager())
membership_router = MembershipRouter(chat_store, get_channel_manager())
message_pipeline = MessagePipeline(chat_store, get_channel_manager())
call_relay = CallSignalRelay(get_channel_manager())

__all__ = [
    "chat_store",
    "presence_tracker",
    "membership_router",
    "message_pipeline",
    "call_relay",
]
