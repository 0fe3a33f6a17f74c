from __future__ import annotations

import logging

from scalesim.policy.base import RouteDecision, RoutingPolicy
from scalesim.state import Node, NodeKind, Packet

logger = logging.getLogger(__name__)


class DatabasePolicy(RoutingPolicy):
    """
    Stores writes and answers through the app server that asked.

    Replicas use the same policy; keeping writes away from them is the
    app server's job.
    """

    kind = NodeKind.DATABASE

    def decide(self, node: Node, packet: Packet) -> RouteDecision:
        if not packet.is_response and packet.is_write:
            node.writes_stored += 1
            self.state.stats.database_storage += 1
            logger.debug(
                f"{node.key} stored write {packet.packet_id} "
                f"(total {node.writes_stored}, delay now {node.effective_delay_ms:.0f}ms)"
            )
        packet.is_response = True
        if packet.acknowledged:
            return RouteDecision.absorb("write already acknowledged by queue")
        return self.to_anchor(node, packet, "db response")
