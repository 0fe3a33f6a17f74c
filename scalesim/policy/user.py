from __future__ import annotations

import logging

from scalesim.policy.base import RouteDecision, RoutingPolicy
from scalesim.state import Node, NodeKind, Packet

logger = logging.getLogger(__name__)


class UserPolicy(RoutingPolicy):
	"""Origin and final destination of every request."""

	kind = NodeKind.USER

	def accept(self, node: Node, packet: Packet) -> None:
		# Users have no capacity bound; a response arriving here is terminal.
		if packet.is_response:
			self.router.deliver(packet)
		else:
			self.router.lose(packet, f"request {packet.packet_id} arrived at user {node.key}")

	def originate(self, user: Node, packet: Packet) -> bool:
		"""
		Send a freshly spawned request from ``user``.

		Returns False when the user's own concurrency cap swallowed it. Such
		packets are client-side throttling and never reach the counters.
		"""
		if user.max_concurrent is not None and user.concurrent_requests >= user.max_concurrent:
			self.state.stats.throttled += 1
			logger.debug(f"{user.key} throttled packet {packet.packet_id} ({user.concurrent_requests} in flight)")
			return False
		user.concurrent_requests += 1
		user.track_request(self.state.now_ms)
		self.router.route(user, packet)
		return True

	def decide(self, node: Node, packet: Packet) -> RouteDecision:
		cdn = self.registry.first_active(NodeKind.CDN)
		if cdn is not None:
			return RouteDecision.forward(cdn.key, "edge")
		balancer = self.registry.first_active(NodeKind.LOAD_BALANCER)
		if balancer is not None:
			return RouteDecision.forward(balancer.key, "balancer")
		app = self.pick(self.registry.active(NodeKind.APP_SERVER))
		if app is not None:
			return RouteDecision.forward(app.key, "direct")
		return RouteDecision.drop(f"{node.key}: no entry point")
