from __future__ import annotations

import os
import logging
from typing import Optional

from scalesim.api import create_app
from scalesim.driver import SimulationDriver
from scalesim.levels import LevelCatalog
from scalesim.pump import RealtimePump
from scalesim.state import SimulationSettings

logger = logging.getLogger(__name__)

SERVICE_TRANSIT_MS = 500.0


def _env_int(name: str) -> Optional[int]:
	value = os.getenv(name)
	if value is None or value == "":
		return None
	try:
		return int(value)
	except ValueError:
		logger.warning(f"Ignoring {name}={value!r}: not an integer")
		return None


def build_driver() -> SimulationDriver:
	"""Build a driver from environment settings."""
	levels_path = os.getenv("SCALESIM_LEVELS_PATH")
	if levels_path and os.path.exists(levels_path):
		catalog = LevelCatalog.from_yaml(levels_path)
	else:
		if levels_path:
			logger.warning(f"Levels file {levels_path} not found, using built-in levels")
		catalog = LevelCatalog.default()

	settings = SimulationSettings(transit_ms=SERVICE_TRANSIT_MS, seed=_env_int("SCALESIM_SEED"))
	level = _env_int("SCALESIM_LEVEL") or catalog.numbers()[0]
	return SimulationDriver(catalog, settings, level=level)


def build_app():
	"""Build the Flask app with a ready driver and, if requested, a realtime pump."""
	logging.basicConfig(
		level=os.getenv("SCALESIM_LOG_LEVEL", "INFO").upper(),
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
	)
	driver = build_driver()
	pump = None
	if os.getenv("SCALESIM_REALTIME", "0") == "1":
		pump = RealtimePump(driver)
	else:
		logger.info("Realtime pump disabled, advance the clock with POST /advance")
	return create_app(driver, pump=pump)


# Build app at module level (for gunicorn)
app = build_app()


if __name__ == "__main__":
	if app.config.get('pump') is not None:
		app.config['pump'].start()
	app.run(host="0.0.0.0", port=8080)
