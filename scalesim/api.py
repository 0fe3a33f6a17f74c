from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request

from scalesim.driver import CommandRejected, SimulationDriver
from scalesim.levels import ConfigurationError
from scalesim.pump import RealtimePump
from scalesim.reporting import RunReport

logger = logging.getLogger(__name__)

_TRUE_WORDS = ("true", "1", "yes", "on")
_FALSE_WORDS = ("false", "0", "no", "off", "")


def _as_flag(value: Any, field: str) -> bool:
	"""JSON booleans pass through; strings must be a recognised yes/no word."""
	if isinstance(value, bool):
		return value
	if isinstance(value, str):
		text = value.strip().lower()
		if text in _TRUE_WORDS:
			return True
		if text in _FALSE_WORDS:
			return False
	raise ValueError(f"'{field}' must be a boolean, got {value!r}")


def create_app(driver: SimulationDriver, pump: Optional[RealtimePump] = None) -> Flask:
	app = Flask(__name__)
	# Store the driver in app config so it's accessible in all endpoints
	app.config['driver'] = driver
	app.config['pump'] = pump

	@app.errorhandler(CommandRejected)
	def command_rejected(e: CommandRejected) -> Any:
		logger.warning(f"Command rejected: {e}")
		return jsonify({"error": str(e)}), 400

	@app.errorhandler(ConfigurationError)
	def bad_configuration(e: ConfigurationError) -> Any:
		return jsonify({"error": str(e)}), 400

	def _body() -> Dict[str, Any]:
		return request.get_json(force=True, silent=True) or {}

	def _status(**extra: Any) -> Any:
		snap = app.config['driver'].snapshot()
		payload = {"stats": snap["stats"], "now_ms": snap["now_ms"]}
		payload.update(extra)
		return jsonify(payload)

	@app.post("/start")
	def start() -> Any:
		return _status(changed=app.config['driver'].start_simulation())

	@app.post("/pause")
	def pause() -> Any:
		return _status(changed=app.config['driver'].pause_simulation())

	@app.post("/resume")
	def resume() -> Any:
		return _status(changed=app.config['driver'].resume_simulation())

	@app.post("/reset")
	def reset() -> Any:
		driver = app.config['driver']
		body = _body()
		level = body.get("level", driver.level.number)
		try:
			config = driver.reset_run(int(level))
		except KeyError:
			return jsonify({"error": f"unknown level: {level}"}), 404
		except (TypeError, ValueError):
			return jsonify({"error": f"invalid level: {level!r}"}), 400
		return _status(level=config.number, title=config.title)

	@app.post("/skip")
	def skip() -> Any:
		return jsonify(app.config['driver'].skip_level())

	@app.post("/advance")
	def advance() -> Any:
		body = _body()
		try:
			duration_ms = float(body.get("ms", 1000))
		except (TypeError, ValueError):
			return jsonify({"error": "'ms' must be a number"}), 400
		if duration_ms < 0:
			return jsonify({"error": "'ms' must not be negative"}), 400
		fired = app.config['driver'].advance(duration_ms)
		return _status(events_fired=fired)

	@app.post("/observe")
	def observe() -> Any:
		driver = app.config['driver']
		body = _body()
		etype = body.get("type")
		node = body.get("node")

		if not etype or not node:
			return jsonify({"error": "missing 'type' or 'node' field"}), 400

		try:
			if etype == "node_down":
				driver.deactivate_node(node)
			elif etype == "node_up":
				driver.activate_node(node)
			else:
				return jsonify({"error": f"unknown event type: {etype}"}), 400
		except KeyError:
			return jsonify({"error": f"unknown node: {node}"}), 404
		return jsonify({"status": "ok", "node": node, "event": etype})

	@app.post("/nodes")
	def add_node() -> Any:
		driver = app.config['driver']
		body = _body()
		kind = body.get("kind")
		if not kind:
			return jsonify({"error": "missing 'kind' field"}), 400
		try:
			node = driver.add_node(
				kind,
				name=body.get("name"),
				read_replica=_as_flag(body.get("read_replica", False), "read_replica"),
				capacity=body.get("capacity"),
				delay_ms=body.get("delay_ms"),
				hit_rate=body.get("hit_rate"),
			)
		except (CommandRejected, ConfigurationError):
			raise
		except (TypeError, ValueError) as e:
			return jsonify({"error": str(e)}), 400
		return jsonify({"node": node.to_dict(driver.state.now_ms), "money": driver.stats.money}), 201

	@app.post("/nodes/<key>/upgrade")
	def upgrade_node(key: str) -> Any:
		driver = app.config['driver']
		try:
			upgraded = driver.upgrade_node(key)
		except KeyError:
			return jsonify({"error": f"unknown node: {key}"}), 404
		node = driver.registry.get(key)
		return jsonify({
			"upgraded": upgraded,
			"node": node.to_dict(driver.state.now_ms),
			"money": driver.stats.money,
		})

	@app.post("/upgrade/<kind>")
	def upgrade_kind(kind: str) -> Any:
		driver = app.config['driver']
		try:
			keys = driver.upgrade_kind(kind)
		except (CommandRejected, ConfigurationError):
			raise
		except ValueError as e:
			return jsonify({"error": str(e)}), 400
		return jsonify({"upgraded": keys, "money": driver.stats.money})

	@app.get("/snapshot")
	def snapshot() -> Any:
		return jsonify(app.config['driver'].snapshot())

	@app.get("/events")
	def events() -> Any:
		driver = app.config['driver']
		try:
			limit = int(request.args.get("limit", 100))
			since = request.args.get("since")
			since_id = int(since) if since is not None else None
		except ValueError:
			return jsonify({"error": "'limit' and 'since' must be integers"}), 400
		return jsonify({"events": driver.state.events.recent(limit=limit, since_id=since_id)})

	@app.get("/levels")
	def levels() -> Any:
		catalog = app.config['driver'].catalog
		return jsonify({
			"levels": [
				{
					"number": level.number,
					"title": level.title,
					"target_total": level.target_total,
					"max_error_rate": level.max_error_rate,
				}
				for level in catalog
			],
			"economics": {
				"starting_money": catalog.economics.starting_money,
				"upgrade_costs": catalog.economics.upgrade_costs,
				"purchase_costs": catalog.economics.purchase_costs,
				"limits": catalog.economics.limits,
			},
		})

	@app.get("/report")
	def report() -> Any:
		return jsonify(RunReport.from_driver(app.config['driver']).to_dict())

	return app
