"""Call signaling relay."""

from .signaling import CALL_EVENTS, CallSignalRelay, build_signal_payload  # noqa: F401

__all__ = ["CALL_EVENTS", "CallSignalRelay", "build_signal_payload"]
