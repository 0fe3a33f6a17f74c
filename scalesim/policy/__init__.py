"""Routing policies, one per node kind."""

from __future__ import annotations

from typing import Dict

from scalesim.policy.app_server import AppServerPolicy
from scalesim.policy.base import Disposition, RouteDecision, RoutingPolicy
from scalesim.policy.cache import CachePolicy
from scalesim.policy.cdn import CDNPolicy
from scalesim.policy.database import DatabasePolicy
from scalesim.policy.load_balancer import LoadBalancerPolicy
from scalesim.policy.queue import QueuePolicy
from scalesim.policy.user import UserPolicy
from scalesim.state import NodeKind

POLICY_CLASSES = (
	UserPolicy,
	AppServerPolicy,
	CachePolicy,
	CDNPolicy,
	LoadBalancerPolicy,
	DatabasePolicy,
	QueuePolicy,
)


def build_policy_table(state, router) -> Dict[NodeKind, RoutingPolicy]:
	table = {cls.kind: cls(state, router) for cls in POLICY_CLASSES}
	missing = set(NodeKind) - set(table)
	if missing:
		raise RuntimeError(f"no routing policy for: {sorted(k.value for k in missing)}")
	return table


__all__ = [
	"AppServerPolicy",
	"CachePolicy",
	"CDNPolicy",
	"DatabasePolicy",
	"Disposition",
	"LoadBalancerPolicy",
	"QueuePolicy",
	"RouteDecision",
	"RoutingPolicy",
	"UserPolicy",
	"build_policy_table",
]
