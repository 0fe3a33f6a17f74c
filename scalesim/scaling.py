"""Vertical scaling and storage degradation rules for simulated nodes."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional, Tuple, TYPE_CHECKING

if TYPE_CHECKING:
	from scalesim.state import Node

logger = logging.getLogger(__name__)


@dataclass
class UpgradeRule:
	"""
	Applies one vertical-scaling step to a node.

	Default step: capacity x2.4 (rounded down), processing delay halved but
	never below ``min_delay_ms``.
	"""

	growth: float = 2.4
	delay_factor: float = 0.5
	min_delay_ms: float = 50.0

	def __init__(
		self,
		growth: float = 2.4,
		delay_factor: float = 0.5,
		min_delay_ms: float = 50.0
	) -> None:
		"""
		Initialize upgrade rule.

		Args:
			growth: Capacity multiplier per level (default 2.4)
			delay_factor: Delay multiplier per level (default 0.5)
			min_delay_ms: Floor for the processing delay (default 50ms)
		"""
		if growth < 1.0:
			raise ValueError(f"growth must be >= 1.0, got {growth}")
		if not 0.0 < delay_factor <= 1.0:
			raise ValueError(f"delay_factor must be in (0, 1], got {delay_factor}")
		self.growth = growth
		self.delay_factor = delay_factor
		self.min_delay_ms = min_delay_ms
		logger.debug(
			f"UpgradeRule initialized: growth={growth:.2f}, "
			f"delay_factor={delay_factor:.2f}, min_delay={min_delay_ms:.0f}ms"
		)

	def preview(
		self,
		capacity: int,
		delay_ms: float,
		max_capacity: Optional[int] = None
	) -> Tuple[int, float]:
		"""
		Compute the capacity and delay one level up.

		Args:
			capacity: Current capacity
			delay_ms: Current base processing delay
			max_capacity: Optional hard ceiling on capacity

		Returns:
			(new_capacity, new_delay_ms)
		"""
		new_capacity = int(math.floor(capacity * self.growth))
		if max_capacity is not None:
			new_capacity = min(new_capacity, max_capacity)
		new_delay = max(self.min_delay_ms, delay_ms * self.delay_factor)
		return new_capacity, new_delay

	def can_upgrade(self, node: Node) -> bool:
		return node.max_capacity is None or node.capacity < node.max_capacity

	def apply(self, node: Node) -> bool:
		"""
		Upgrade ``node`` in place.

		Returns:
			False when the node already sits at its maximum capacity; the node
			is left untouched in that case.
		"""
		if not self.can_upgrade(node):
			logger.info(f"{node.key} already at max capacity ({node.capacity})")
			return False
		old_capacity, old_delay = node.capacity, node.base_delay_ms
		node.capacity, node.base_delay_ms = self.preview(
			node.capacity, node.base_delay_ms, node.max_capacity
		)
		node.level += 1
		logger.info(
			f"Upgraded {node.key} to Lv.{node.level}: capacity {old_capacity}->{node.capacity}, "
			f"delay {old_delay:.0f}ms->{node.base_delay_ms:.0f}ms"
		)
		return True


def degraded_delay_ms(base_delay_ms: float, writes_stored: int) -> float:
	"""Database delay grows by 1% of base per stored write, rounded down."""
	return float(math.floor(base_delay_ms * (1 + writes_stored / 100)))

