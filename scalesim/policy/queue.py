from __future__ import annotations

import logging

from scalesim.policy.base import RouteDecision, RoutingPolicy
from scalesim.state import Node, NodeKind, Packet

logger = logging.getLogger(__name__)


class QueuePolicy(RoutingPolicy):
	"""
	Asynchronous write buffer.

	A queue acknowledges each accepted write to its origin straight away and
	then feeds the buffered writes to the primary database one at a time.
	``capacity`` bounds the buffer depth and ``current_load`` mirrors it.

	Drain loop per node: Idle -> Draining -> Idle, staying in Draining while
	the buffer is non-empty.
	"""

	kind = NodeKind.QUEUE

	def accept(self, node: Node, packet: Packet) -> None:
		if len(node.buffer) >= node.capacity:
			logger.debug(f"{node.key} buffer full ({len(node.buffer)}/{node.capacity})")
			self.router.reject(packet, node)
			return
		node.buffer.append(packet)
		self._sync_load(node)
		self._acknowledge(node, packet)
		if not node.draining:
			self._drain(node)

	def _acknowledge(self, node: Node, packet: Packet) -> None:
		ack = Packet(
			packet_id=packet.packet_id,
			origin=packet.origin,
			is_write=packet.is_write,
			created_ms=packet.created_ms,
			is_response=True,
			route=list(packet.route),
		)
		packet.acknowledged = True
		self.router.send(ack, packet.origin, node.key)

	def _drain(self, node: Node) -> None:
		if self.state.stats.is_game_over or not node.buffer:
			node.draining = False
			return
		node.draining = True
		packet = node.buffer.popleft()
		self._sync_load(node)
		node.in_drain = packet
		node.drain_event = self.state.clock.schedule(
			node.effective_delay_ms,
			lambda: self._release(node, packet),
			label=f"drain {node.key}",
		)

	def _release(self, node: Node, packet: Packet) -> None:
		with self.state.lock:
			node.in_drain = None
			node.drain_event = None
			if self.state.stats.is_game_over:
				node.draining = False
				return
			if not node.active:
				self.router.lose(packet, f"{node.key} deactivated while draining")
				self.flush(node, f"{node.key} deactivated")
				return
			self.router.apply(node, packet, self.decide(node, packet))
			self._drain(node)

	def flush(self, node: Node, reason: str) -> int:
		"""
		Discard everything still buffered, including the write mid-drain.

		The pending drain step is cancelled so a later reactivation starts a
		single fresh drain loop. Returns how many packets were dropped.
		"""
		dropped = 0
		if node.drain_event is not None:
			node.drain_event.cancel()
			node.drain_event = None
		if node.in_drain is not None:
			self.router.lose(node.in_drain, reason)
			node.in_drain = None
			dropped += 1
		while node.buffer:
			self.router.lose(node.buffer.popleft(), reason)
			dropped += 1
		node.draining = False
		self._sync_load(node)
		return dropped

	def decide(self, node: Node, packet: Packet) -> RouteDecision:
		primary = self.registry.primary_database()
		if primary is None:
			return RouteDecision.drop(f"{node.key}: primary database unavailable")
		return RouteDecision.forward(primary.key, "drained write")

	@staticmethod
	def _sync_load(node: Node) -> None:
		node.current_load = len(node.buffer)
		node.note_load()
