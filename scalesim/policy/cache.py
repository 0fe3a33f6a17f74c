from __future__ import annotations

from scalesim.policy.base import RouteDecision, RoutingPolicy
from scalesim.state import Node, NodeKind, Packet

DEFAULT_CACHE_HIT_RATE = 0.7


class CachePolicy(RoutingPolicy):
	kind = NodeKind.CACHE

	def decide(self, node: Node, packet: Packet) -> RouteDecision:
		# Always bounces through the app server that sent it.
		hit_rate = DEFAULT_CACHE_HIT_RATE if node.hit_rate is None else node.hit_rate
		if self.state.rng.random() < hit_rate:
			node.hits += 1
			packet.is_response = True
			packet.cache_hit = True
			return self.to_anchor(node, packet, "cache hit")
		node.misses += 1
		packet.cache_missed = True
		return self.to_anchor(node, packet, "cache miss")
