from __future__ import annotations

from scalesim.policy.base import RouteDecision, RoutingPolicy
from scalesim.state import Node, NodeKind, Packet

DEFAULT_CDN_HIT_RATE = 0.8


class CDNPolicy(RoutingPolicy):
    """Edge tier in front of the load balancer; serves reads it has cached."""

    kind = NodeKind.CDN

    def decide(self, node: Node, packet: Packet) -> RouteDecision:
        if packet.is_response:
            return self.to_origin(packet)
        if packet.is_write:
            return self._next_tier(node, "write bypass")
        hit_rate = DEFAULT_CDN_HIT_RATE if node.hit_rate is None else node.hit_rate
        if self.state.rng.random() < hit_rate:
            node.hits += 1
            packet.is_response = True
            packet.cdn_hit = True
            return self.to_origin(packet, "cdn hit")
        node.misses += 1
        return self._next_tier(node, "cdn miss")

    def _next_tier(self, node: Node, reason: str) -> RouteDecision:
        balancer = self.registry.first_active(NodeKind.LOAD_BALANCER)
        if balancer is not None:
            return RouteDecision.forward(balancer.key, reason)
        app = self.pick(self.registry.active(NodeKind.APP_SERVER))
        if app is not None:
            return RouteDecision.forward(app.key, reason)
        return RouteDecision.drop(f"{node.key}: no tier behind the edge")
