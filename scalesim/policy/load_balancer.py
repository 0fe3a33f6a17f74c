from __future__ import annotations

from typing import List, Optional

from scalesim.policy.base import RouteDecision, RoutingPolicy
from scalesim.state import Node, NodeKind, Packet


class LoadBalancerPolicy(RoutingPolicy):
	kind = NodeKind.LOAD_BALANCER

	def least_loaded(self, candidates: List[Node]) -> Optional[Node]:
		"""Lowest ``current_load / capacity``; ties keep registration order."""
		best: Optional[Node] = None
		best_ratio = float("inf")
		for node in candidates:
			ratio = node.load_ratio
			if best is None or ratio < best_ratio:
				best = node
				best_ratio = ratio
		return best

	def decide(self, node: Node, packet: Packet) -> RouteDecision:
		if packet.is_response:
			return self.to_origin(packet)
		app = self.least_loaded(self.registry.active(NodeKind.APP_SERVER))
		if app is None:
			return RouteDecision.drop(f"{node.key}: no app servers")
		return RouteDecision.forward(app.key, f"least loaded ({app.current_load}/{app.capacity})")
