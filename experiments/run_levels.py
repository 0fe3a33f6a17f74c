"""
Headless, seeded runs of every level, written to a CSV report.

Each level is played by a passive baseline (no purchases) and by a simple
autoscaler that upgrades any node above the utilization threshold.
"""

from __future__ import annotations

import argparse
import pathlib
import sys
from typing import List

ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from scalesim.driver import CommandRejected, SimulationDriver  # noqa: E402
from scalesim.levels import LevelCatalog  # noqa: E402
from scalesim.reporting import RunReport, export_reports_csv  # noqa: E402
from scalesim.state import NodeKind, SimulationSettings  # noqa: E402


def autoscale(driver: SimulationDriver, threshold: float) -> None:
	for node in driver.registry.list_nodes():
		if node.kind is NodeKind.USER or not node.active:
			continue
		if node.load_ratio >= threshold:
			try:
				driver.upgrade_node(node.key)
			except CommandRejected:
				return


def play(
	catalog: LevelCatalog,
	level: int,
	seed: int,
	strategy: str,
	threshold: float,
	max_ms: float,
) -> RunReport:
	driver = SimulationDriver(catalog, SimulationSettings(seed=seed), level=level)
	driver.start_simulation()
	while not driver.stats.is_game_over and driver.state.now_ms < max_ms:
		driver.advance(250.0)
		if strategy == "autoscale":
			autoscale(driver, threshold)
	return RunReport.from_driver(driver)


def main() -> None:
	parser = argparse.ArgumentParser(description="Run every level headless")
	parser.add_argument("--seeds", type=int, default=3)
	parser.add_argument("--threshold", type=float, default=0.8)
	parser.add_argument("--max-ms", type=float, default=3_600_000.0)
	parser.add_argument("--out", type=pathlib.Path, default=ROOT / "reports" / "levels.csv")
	parser.add_argument("--levels", type=pathlib.Path, default=None, help="alternative levels YAML")
	args = parser.parse_args()

	catalog = LevelCatalog.from_yaml(args.levels) if args.levels else LevelCatalog.default()
	reports: List[RunReport] = []
	for number in catalog.numbers():
		for strategy in ("baseline", "autoscale"):
			for seed in range(args.seeds):
				report = play(catalog, number, seed, strategy, args.threshold, args.max_ms)
				reports.append(report)
				print(
					f"level {number} {strategy:<9} seed {seed}: "
					f"{'won ' if report.won else 'lost'} error rate {report.error_rate_pct:.2f}% "
					f"p95 {report.latency_p95_ms:.0f}ms"
				)
	path = export_reports_csv(reports, args.out)
	print(f"Wrote {len(reports)} rows to {path}")


if __name__ == "__main__":
	main()
