from __future__ import annotations

import logging
from typing import Callable, Dict, Optional

from scalesim.policy import build_policy_table
from scalesim.policy.base import Disposition, RouteDecision, RoutingPolicy
from scalesim.state import Node, NodeKind, Packet, SimulationState

logger = logging.getLogger(__name__)


class PacketRouter:
    """
    Moves packets between nodes on the simulation clock.

    Every hop is two steps: a transit delay (``settings.transit_ms``) and then
    the receiving node's admission decision. Admitted packets occupy one unit
    of the node's capacity until their processing delay elapses, after which
    the node's routing policy picks the next hop.
    """

    def __init__(
        self,
        state: SimulationState,
        on_terminal: Optional[Callable[[Packet], None]] = None,
    ) -> None:
        self.state = state
        self.on_terminal = on_terminal
        self.policies: Dict[NodeKind, RoutingPolicy] = build_policy_table(state, self)

    def policy_for(self, node: Node) -> RoutingPolicy:
        return self.policies[node.kind]

    # ------------------------------------------------------------ entry points

    def spawn(self, user_key: str, is_write: bool) -> Optional[Packet]:
        """Create a request at ``user_key`` and push it to the first hop."""
        state = self.state
        with state.lock:
            if state.stats.is_game_over:
                return None
            user = state.registry.available(user_key)
            if user is None or user.kind is not NodeKind.USER:
                logger.debug(f"Cannot spawn at {user_key}: not an active user")
                return None
            packet = Packet(
                packet_id=state.next_packet_id(),
                origin=user.key,
                is_write=is_write,
                created_ms=state.now_ms,
                route=[user.key],
            )
            if not self.policies[NodeKind.USER].originate(user, packet):
                return None
            return packet

    def send(self, packet: Packet, target_key: str, sender_key: Optional[str] = None) -> None:
        self.state.clock.schedule(
            self.state.settings.transit_ms,
            lambda: self._arrive(packet, target_key),
            label=f"transit {sender_key}->{target_key}",
        )

    def _arrive(self, packet: Packet, target_key: str) -> None:
        with self.state.lock:
            if self.state.stats.is_game_over:
                return
            node = self.state.registry.available(target_key)
            if node is None:
                self.lose(packet, f"destination {target_key} unavailable")
                return
            packet.route.append(node.key)
            self.submit(node, packet)

    def submit(self, node: Node, packet: Packet) -> None:
        with self.state.lock:
            if self.state.stats.is_game_over:
                return
            self.policy_for(node).accept(node, packet)

    # ------------------------------------------------------------ admission

    def admit(self, node: Node, packet: Packet) -> bool:
        """Accept ``packet`` into ``node`` if it has a free slot, otherwise reject it."""
        with self.state.lock:
            if node.current_load >= node.capacity:
                logger.debug(
                    f"{node.key} rejected packet {packet.packet_id} "
                    f"(load {node.current_load}/{node.capacity})"
                )
                self.reject(packet, node)
                return False
            node.current_load += 1
            node.note_load()
            self.state.clock.schedule(
                node.effective_delay_ms,
                lambda: self._complete(node, packet),
                label=f"process {node.key}",
            )
            return True

    def _complete(self, node: Node, packet: Packet) -> None:
        with self.state.lock:
            if self.state.stats.is_game_over:
                return
            node.current_load = max(0, node.current_load - 1)
            if not node.active:
                self.lose(packet, f"{node.key} deactivated while processing")
                return
            self.route(node, packet)

    # ------------------------------------------------------------ routing

    def route(self, node: Node, packet: Packet) -> RouteDecision:
        decision = self.policy_for(node).decide(node, packet)
        self.apply(node, packet, decision)
        return decision

    def apply(self, node: Node, packet: Packet, decision: RouteDecision) -> None:
        if decision.disposition is Disposition.FORWARD:
            logger.debug(f"{node.key} -> {decision.target}: packet {packet.packet_id} ({decision.reason})")
            self.send(packet, decision.target, node.key)
        elif decision.disposition is Disposition.DROP:
            self.lose(packet, decision.reason or f"no route from {node.key}")
        else:
            logger.debug(f"{node.key} absorbed packet {packet.packet_id} ({decision.reason})")

    # ------------------------------------------------------------ outcomes

    def deliver(self, packet: Packet) -> None:
        """A response reached its origin user."""
        state = self.state
        stats = state.stats
        with state.lock:
            stats.success += 1
            stats.total += 1
            stats.money += state.revenue_per_request
            latency = packet.latency_at(state.now_ms)
            stats.latencies_ms.append(latency)
            user = state.registry.get(packet.origin)
            if user is not None:
                user.local_success += 1
                user.concurrent_requests = max(0, user.concurrent_requests - 1)
            state.emit(
                "packet_delivered",
                packet_id=packet.packet_id,
                origin=packet.origin,
                write=packet.is_write,
                latency_ms=latency,
                cache_hit=packet.cache_hit,
                cdn_hit=packet.cdn_hit,
            )
            self._terminal(packet)

    def reject(self, packet: Packet, node: Node) -> None:
        """Capacity rejection at ``node``."""
        if packet.acknowledged:
            self._lose_acknowledged(packet, f"rejected by {node.key}")
            return
        self._fail(packet, f"rejected by {node.key}", node.key)

    def lose(self, packet: Packet, reason: str) -> None:
        """The packet has nowhere valid to go."""
        if packet.acknowledged:
            self._lose_acknowledged(packet, reason)
            return
        with self.state.lock:
            self.state.stats.lost += 1
            if self.state.settings.count_lost_packets:
                self._fail(packet, reason, None)
                return
            user = self.state.registry.get(packet.origin)
            if user is not None:
                user.concurrent_requests = max(0, user.concurrent_requests - 1)
            logger.debug(f"Packet {packet.packet_id} discarded: {reason}")
            self.state.emit("packet_lost", packet_id=packet.packet_id, origin=packet.origin, reason=reason)

    def _fail(self, packet: Packet, reason: str, node_key: Optional[str]) -> None:
        stats = self.state.stats
        with self.state.lock:
            stats.errors += 1
            stats.total += 1
            user = self.state.registry.get(packet.origin)
            if user is not None:
                user.local_errors += 1
                user.concurrent_requests = max(0, user.concurrent_requests - 1)
            logger.debug(f"Packet {packet.packet_id} dropped: {reason}")
            self.state.emit(
                "packet_dropped",
                packet_id=packet.packet_id,
                origin=packet.origin,
                node=node_key,
                reason=reason,
            )
            self._terminal(packet)

    def _lose_acknowledged(self, packet: Packet, reason: str) -> None:
        with self.state.lock:
            self.state.stats.lost_after_ack += 1
            logger.warning(f"Acknowledged write {packet.packet_id} lost: {reason}")
            self.state.emit(
                "acknowledged_write_lost",
                packet_id=packet.packet_id,
                origin=packet.origin,
                reason=reason,
            )

    def _terminal(self, packet: Packet) -> None:
        if self.on_terminal is not None:
            self.on_terminal(packet)
