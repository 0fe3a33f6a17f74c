from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, TYPE_CHECKING

from scalesim.state import Node, NodeKind, Packet, SimulationState

if TYPE_CHECKING:
	from scalesim.router import PacketRouter


class Disposition(Enum):
	FORWARD = "forward"
	DROP = "drop"
	ABSORB = "absorb"


@dataclass(frozen=True)
class RouteDecision:
	disposition: Disposition
	target: Optional[str] = None
	reason: str = ""

	@classmethod
	def forward(cls, target: str, reason: str = "") -> "RouteDecision":
		return cls(Disposition.FORWARD, target, reason)

	@classmethod
	def drop(cls, reason: str) -> "RouteDecision":
		return cls(Disposition.DROP, None, reason)

	@classmethod
	def absorb(cls, reason: str = "") -> "RouteDecision":
		return cls(Disposition.ABSORB, None, reason)


class RoutingPolicy(ABC):
	"""
	Next-hop logic for one node kind.

	``accept`` is called when a packet arrives at a node of this kind and by
	default applies capacity admission control. ``decide`` runs once the node
	has finished processing and may update the packet's flags (direction,
	cache markers, return anchor) before naming the next hop.
	"""

	kind: NodeKind

	def __init__(self, state: SimulationState, router: PacketRouter) -> None:
		self.state = state
		self.router = router

	@property
	def registry(self):
		return self.state.registry

	def accept(self, node: Node, packet: Packet) -> None:
		self.router.admit(node, packet)

	@abstractmethod
	def decide(self, node: Node, packet: Packet) -> RouteDecision:
		raise NotImplementedError

	def pick(self, nodes: List[Node]) -> Optional[Node]:
		"""Uniform random choice, ``None`` when there is nothing to choose from."""
		if not nodes:
			return None
		return self.state.rng.choice(nodes)

	def to_origin(self, packet: Packet, reason: str = "response") -> RouteDecision:
		return RouteDecision.forward(packet.origin, reason)

	def to_anchor(self, node: Node, packet: Packet, reason: str = "return to app") -> RouteDecision:
		anchor = self.registry.available(packet.app_node)
		if anchor is None:
			return RouteDecision.drop(f"{node.key}: return anchor {packet.app_node} unavailable")
		return RouteDecision.forward(anchor.key, reason)
