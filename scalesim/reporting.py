"""End-of-run reporting for simulated levels."""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import numpy as np

from scalesim.state import NodeKind

logger = logging.getLogger(__name__)

REPORT_COLUMNS = [
	'level',
	'seed',
	'won',
	'total',
	'success',
	'errors',
	'error_rate_pct',
	'lost',
	'lost_after_ack',
	'throttled',
	'latency_p50_ms',
	'latency_p95_ms',
	'latency_p99_ms',
	'money',
	'elapsed_ms',
]


@dataclass
class NodeSummary:
	"""Per-node figures at the end of a run."""
	key: str
	kind: str
	level: int
	capacity: int
	peak_load: int
	peak_utilization: float
	hits: int = 0
	misses: int = 0
	writes_stored: int = 0


@dataclass
class RunReport:
	"""
	Summary of one run.

	Latency is measured per delivered packet, from spawn at the user to the
	response arriving back at the same user (queue acknowledgements included).
	"""
	level: int
	won: Optional[bool]
	total: int
	success: int
	errors: int
	error_rate_pct: float
	lost: int
	lost_after_ack: int
	throttled: int
	money: int
	elapsed_ms: float
	latency_p50_ms: float = 0.0
	latency_p95_ms: float = 0.0
	latency_p99_ms: float = 0.0
	latency_mean_ms: float = 0.0
	seed: Optional[int] = None
	nodes: List[NodeSummary] = field(default_factory=list)

	@classmethod
	def from_driver(cls, driver) -> "RunReport":
		state = driver.state
		with state.lock:
			stats = state.stats
			latencies = np.asarray(stats.latencies_ms, dtype=float)
			if latencies.size:
				p50, p95, p99 = np.percentile(latencies, [50, 95, 99])
				mean = float(latencies.mean())
			else:
				p50 = p95 = p99 = mean = 0.0
			nodes = [
				NodeSummary(
					key=node.key,
					kind=node.kind.value,
					level=node.level,
					capacity=node.capacity,
					peak_load=node.peak_load,
					peak_utilization=(node.peak_load / node.capacity) if node.capacity else 0.0,
					hits=node.hits,
					misses=node.misses,
					writes_stored=node.writes_stored,
				)
				for node in state.registry.list_nodes()
				if node.kind is not NodeKind.USER
			]
			return cls(
				level=driver.level.number,
				won=stats.won,
				total=stats.total,
				success=stats.success,
				errors=stats.errors,
				error_rate_pct=stats.error_rate * 100.0,
				lost=stats.lost,
				lost_after_ack=stats.lost_after_ack,
				throttled=stats.throttled,
				money=stats.money,
				elapsed_ms=state.now_ms,
				latency_p50_ms=float(p50),
				latency_p95_ms=float(p95),
				latency_p99_ms=float(p99),
				latency_mean_ms=mean,
				seed=state.settings.seed,
				nodes=nodes,
			)

	def hit_ratio(self, kind: NodeKind) -> Optional[float]:
		"""Aggregate hit ratio over all nodes of ``kind``, ``None`` when nothing was looked up."""
		hits = sum(n.hits for n in self.nodes if n.kind == kind.value)
		lookups = hits + sum(n.misses for n in self.nodes if n.kind == kind.value)
		if lookups == 0:
			return None
		return hits / lookups

	def to_row(self) -> Dict[str, Any]:
		return {
			'level': self.level,
			'seed': self.seed,
			'won': self.won,
			'total': self.total,
			'success': self.success,
			'errors': self.errors,
			'error_rate_pct': f"{self.error_rate_pct:.3f}",
			'lost': self.lost,
			'lost_after_ack': self.lost_after_ack,
			'throttled': self.throttled,
			'latency_p50_ms': f"{self.latency_p50_ms:.1f}",
			'latency_p95_ms': f"{self.latency_p95_ms:.1f}",
			'latency_p99_ms': f"{self.latency_p99_ms:.1f}",
			'money': self.money,
			'elapsed_ms': f"{self.elapsed_ms:.0f}",
		}

	def to_dict(self) -> Dict[str, Any]:
		data = self.to_row()
		data.update(
			error_rate_pct=self.error_rate_pct,
			latency_p50_ms=self.latency_p50_ms,
			latency_p95_ms=self.latency_p95_ms,
			latency_p99_ms=self.latency_p99_ms,
			latency_mean_ms=self.latency_mean_ms,
			elapsed_ms=self.elapsed_ms,
			cache_hit_ratio=self.hit_ratio(NodeKind.CACHE),
			cdn_hit_ratio=self.hit_ratio(NodeKind.CDN),
			nodes=[vars(n) for n in self.nodes],
		)
		return data


def export_reports_csv(reports: List[RunReport], path: Union[str, Path]) -> Path:
	"""Append run reports to ``path``, writing the header when the file is new."""
	csv_path = Path(path)
	csv_path.parent.mkdir(parents=True, exist_ok=True)
	file_exists = csv_path.exists()

	with open(csv_path, 'a', newline='') as f:
		writer = csv.DictWriter(f, fieldnames=REPORT_COLUMNS)
		if not file_exists:
			writer.writeheader()
		for report in reports:
			writer.writerow(report.to_row())

	logger.debug(f"Exported {len(reports)} run reports to {csv_path}")
	return csv_path
