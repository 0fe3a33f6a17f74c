from __future__ import annotations

from typing import Callable, List, Tuple

from scalesim.policy.base import RouteDecision, RoutingPolicy
from scalesim.state import Node, NodeKind, Packet, SimulationState

Rule = Tuple[str, Callable[[Packet], bool], Callable[[Node, Packet], RouteDecision]]


class AppServerPolicy(RoutingPolicy):
    """
    Decision table for application servers.

    Rules are evaluated top to bottom and the first match wins:

    ================  ====================================================
    response          back to the origin user
    monolithic        no active database anywhere: answer in-process
    cache_missed      clear the flag, read from a replica or a database
    write             least-occupied queue, else primary (with replicas),
                      else any database
    read_via_cache    a cache is active: go through it
    read_via_replica  a read replica is active: read from it
    read              any database
    ================  ====================================================
    """

    kind = NodeKind.APP_SERVER

    def __init__(self, state: SimulationState, router) -> None:
        super().__init__(state, router)
        self.rules: List[Rule] = [
            ("response", lambda p: p.is_response, self._respond),
            ("monolithic", lambda p: not self._has_backend(), self._handle_in_process),
            ("cache_missed", lambda p: p.cache_missed, self._escalate_miss),
            ("write", lambda p: p.is_write, self._route_write),
            ("read_via_cache", lambda p: bool(self.registry.active(NodeKind.CACHE)), self._route_to_cache),
            ("read_via_replica", lambda p: bool(self.registry.read_replicas()), self._route_to_replica),
            ("read", lambda p: True, self._route_to_database),
        ]

    def matching_rule(self, packet: Packet) -> str:
        for name, matches, _ in self.rules:
            if matches(packet):
                return name
        raise LookupError("decision table has no fallback rule")

    def decide(self, node: Node, packet: Packet) -> RouteDecision:
        for _, matches, action in self.rules:
            if matches(packet):
                return action(node, packet)
        raise LookupError("decision table has no fallback rule")

    def _has_backend(self) -> bool:
        # a queue alone is no backend: it still needs a database to drain into
        return bool(self.registry.active(NodeKind.DATABASE))

    def _respond(self, node: Node, packet: Packet) -> RouteDecision:
        return self.to_origin(packet, "response")

    def _handle_in_process(self, node: Node, packet: Packet) -> RouteDecision:
        packet.is_response = True
        return self.to_origin(packet, "monolithic")

    def _escalate_miss(self, node: Node, packet: Packet) -> RouteDecision:
        packet.cache_missed = False
        replica = self.pick(self.registry.read_replicas())
        if replica is not None:
            return self._via(node, packet, replica, "cache miss to replica")
        return self._route_to_database(node, packet)

    def _route_write(self, node: Node, packet: Packet) -> RouteDecision:
        queues = self.registry.active(NodeKind.QUEUE)
        if queues:
            # min() keeps the first of equally occupied queues
            queue = min(queues, key=lambda q: len(q.buffer))
            return RouteDecision.forward(queue.key, "write buffered")
        if self.registry.read_replicas():
            primary = self.registry.primary_database()
            if primary is None:
                return RouteDecision.drop(f"{node.key}: primary database unavailable")
            return self._via(node, packet, primary, "write to primary")
        return self._route_to_database(node, packet)

    def _route_to_cache(self, node: Node, packet: Packet) -> RouteDecision:
        cache = self.pick(self.registry.active(NodeKind.CACHE))
        return self._via(node, packet, cache, "cache lookup")

    def _route_to_replica(self, node: Node, packet: Packet) -> RouteDecision:
        replica = self.pick(self.registry.read_replicas())
        return self._via(node, packet, replica, "read from replica")

    def _route_to_database(self, node: Node, packet: Packet) -> RouteDecision:
        database = self.pick(self.registry.databases())
        if database is None:
            return RouteDecision.drop(f"{node.key}: no database available")
        return self._via(node, packet, database, "database")

    def _via(self, node: Node, packet: Packet, target: Node, reason: str) -> RouteDecision:
        packet.app_node = node.key
        return RouteDecision.forward(target.key, reason)
