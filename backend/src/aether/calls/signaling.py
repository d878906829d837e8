"""Stateless relay for WebRTC call-setup messages.

Nothing is persisted and no call state is kept between events: ringing,
connected and ended all live on the clients. The relay only rewrites the
addressing fields and stamps the sender so the callee can correlate the
offer/answer/ICE exchange with one specific connection.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping

from aether.realtime.channels import Channel
from aether.realtime.managers import ChannelConnectionManager, ClientConnection

logger = logging.getLogger(__name__)

# Inbound event name -> event delivered to the target.
CALL_EVENTS: Dict[str, str] = {
    "call-user": "incoming-call",
    "call-answer": "call-answered",
    "ice-candidate": "ice-candidate",
    "call-reject": "call-rejected",
    "call-end": "call-ended",
}

DEFAULT_REJECT_REASON = "declined"

_ADDRESSING_KEYS = {"targetUserId", "targetSocketId"}


def build_signal_payload(
    event: str, payload: Mapping[str, Any], *, from_connection: str, from_user: str
) -> Dict[str, Any]:
    """Return the outbound body: inbound payload minus addressing, plus the sender."""

    body = {key: value for key, value in payload.items() if key not in _ADDRESSING_KEYS}
    if event == "call-reject" and not body.get("reason"):
        body["reason"] = DEFAULT_REJECT_REASON
    body["from"] = from_connection
    body["fromUserId"] = from_user
    return body


class CallSignalRelay:
    """Forward call signaling to every live connection of the target user."""

    def __init__(self, connections: ChannelConnectionManager) -> None:
        self._connections = connections

    async def relay(
        self,
        source: ClientConnection,
        event: str,
        payload: Mapping[str, Any],
        *,
        target_user_id: str | None = None,
        target_socket_id: str | None = None,
    ) -> int:
        outbound = CALL_EVENTS.get(event)
        if outbound is None:
            raise ValueError(f"Unsupported call event '{event}'")
        body = build_signal_payload(
            event, payload, from_connection=source.id, from_user=source.user_id
        )
        if target_user_id:
            delivered = await self._connections.broadcast(Channel.user(target_user_id), outbound, body)
        elif target_socket_id:
            delivered = int(await self._connections.emit_to_connection(target_socket_id, outbound, body))
        else:
            logger.debug("Dropping %s without a target", event)
            return 0
        logger.debug(
            "Relayed %s from %s to %s (%d local deliveries)",
            event,
            source.id,
            target_user_id or target_socket_id,
            delivered,
        )
        return delivered
