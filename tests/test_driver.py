import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest

from scalesim.driver import PLATEAU_MESSAGE, CommandRejected, SimulationDriver
from scalesim.levels import ConfigurationError, LevelCatalog
from scalesim.reporting import RunReport, export_reports_csv
from scalesim.pump import RealtimePump
from scalesim.state import NodeKind, Packet, SimulationSettings


def level_dict(**overrides):
    level = {
        "number": 1,
        "title": "Test",
        "target_total": 100000,
        "max_error_rate": 1.0,
        "initial_traffic_delay_ms": 100,
        "initial_packets_per_wave": 1,
        "difficulty_interval_ms": 10000,
        "stages": [],
        "nodes": [
            {"key": "User1", "kind": "user", "name": "User"},
            {"key": "App1", "kind": "app", "name": "App", "capacity": 100, "delay_ms": 10},
        ],
    }
    level.update(overrides)
    return level


def catalog_of(*levels):
    return LevelCatalog.from_dict({"levels": list(levels)})


@pytest.fixture
def default_catalog():
    return LevelCatalog.default()


@pytest.fixture
def driver(default_catalog):
    return SimulationDriver(default_catalog, SimulationSettings(seed=42), level=2)


# ---------------------------------------------------------------- configuration


def test_default_catalog_has_nine_levels(default_catalog):
    assert default_catalog.numbers() == list(range(1, 10))
    assert default_catalog.economics.starting_money == 1500
    assert default_catalog.economics.limit(NodeKind.DATABASE, read_replica=True) == 3


def test_level_one_users_are_throttled(default_catalog):
    driver = SimulationDriver(default_catalog, SimulationSettings(seed=1), level=1)
    users = driver.registry.active(NodeKind.USER)
    assert len(users) == 3
    assert all(user.max_concurrent == 10 for user in users)
    assert not driver.registry.active(NodeKind.DATABASE)


def test_level_without_users_is_rejected():
    with pytest.raises(ConfigurationError):
        catalog_of(level_dict(nodes=[{"kind": "app", "capacity": 5, "delay_ms": 10}]))


def test_non_positive_capacity_is_rejected():
    nodes = [{"kind": "user"}, {"kind": "app", "capacity": 0, "delay_ms": 10}]
    with pytest.raises(ConfigurationError):
        catalog_of(level_dict(nodes=nodes))


def test_unknown_kind_and_bad_hit_rate_are_rejected():
    with pytest.raises(ConfigurationError):
        catalog_of(level_dict(nodes=[{"kind": "user"}, {"kind": "mainframe", "capacity": 1, "delay_ms": 1}]))
    bad_cache = {"kind": "cache", "capacity": 1, "delay_ms": 1, "hit_rate": 1.5}
    with pytest.raises(ConfigurationError):
        catalog_of(level_dict(nodes=[{"kind": "user"}, bad_cache]))


def test_stage_requires_fields():
    with pytest.raises(ConfigurationError):
        catalog_of(level_dict(stages=[{"traffic_delay_ms": 100}]))


def test_catalog_loads_from_yaml(tmp_path):
    path = tmp_path / "levels.yaml"
    path.write_text(
        "levels:\n"
        "  - number: 3\n"
        "    target_total: 10\n"
        "    initial_traffic_delay_ms: 100\n"
        "    initial_packets_per_wave: 1\n"
        "    difficulty_interval_ms: 1000\n"
        "    nodes:\n"
        "      - {kind: user}\n"
        "      - {kind: app, capacity: 3, delay_ms: 50}\n",
        encoding="utf-8",
    )
    catalog = LevelCatalog.from_yaml(path)
    driver = SimulationDriver(catalog, SimulationSettings(seed=0))
    assert driver.level.number == 3
    assert sorted(n.key for n in driver.registry.list_nodes()) == ["App1", "User1"]


def test_reset_to_unknown_level_raises(driver):
    with pytest.raises(KeyError):
        driver.reset_run(99)


# ---------------------------------------------------------------- lifecycle


def test_start_is_idempotent(driver):
    assert driver.start_simulation()
    assert not driver.start_simulation()
    assert driver.stats.is_running


def test_pause_and_resume_freeze_time(driver):
    assert not driver.pause_simulation()
    driver.start_simulation()
    driver.advance(1000)

    assert driver.pause_simulation()
    assert not driver.pause_simulation()
    assert driver.advance(5000) == 0
    assert driver.state.now_ms == 1000

    assert driver.resume_simulation()
    assert not driver.resume_simulation()
    driver.advance(500)
    assert driver.state.now_ms == 1500


def _record_spawns(driver, monkeypatch):
    spawns = []
    monkeypatch.setattr(
        driver.router, "spawn", lambda key, is_write: spawns.append((driver.state.now_ms, key, is_write))
    )
    return spawns


def test_waves_spawn_staggered_packets(monkeypatch):
    catalog = catalog_of(level_dict(initial_packets_per_wave=3, initial_traffic_delay_ms=1000))
    driver = SimulationDriver(catalog, SimulationSettings(seed=5), level=1)
    spawns = _record_spawns(driver, monkeypatch)

    driver.start_simulation()
    driver.advance(2500)

    assert [at for at, _, _ in spawns] == [0, 80, 160, 1000, 1080, 1160, 2000, 2080, 2160]
    assert {key for _, key, _ in spawns} == {"User1"}


def test_wave_write_share_tracks_write_percentage(monkeypatch):
    catalog = catalog_of(level_dict(initial_packets_per_wave=10, initial_traffic_delay_ms=100))
    driver = SimulationDriver(catalog, SimulationSettings(seed=11), level=1)
    spawns = _record_spawns(driver, monkeypatch)

    driver.start_simulation()
    driver.advance(21000)

    assert len(spawns) >= 2000
    writes = sum(1 for _, _, is_write in spawns if is_write)
    assert 0.26 <= writes / len(spawns) <= 0.34


def test_difficulty_walks_stage_table_then_plateaus():
    stages = [
        {"traffic_delay_ms": 80, "packets_per_wave": 2, "message": "faster"},
        {"traffic_delay_ms": 60, "packets_per_wave": 3, "message": "fastest"},
    ]
    catalog = catalog_of(level_dict(difficulty_interval_ms=1000, stages=stages))
    driver = SimulationDriver(catalog, SimulationSettings(seed=1))
    driver.start_simulation()
    driver.advance(3500)

    assert driver.stats.difficulty_level == 3
    assert driver.current_traffic_delay_ms == 60
    assert driver.packets_per_wave == 3
    messages = [e["data"]["message"] for e in driver.state.events.of_type("difficulty_changed")]
    assert messages == ["faster", "fastest", PLATEAU_MESSAGE]


def test_run_ends_exactly_at_target():
    driver = SimulationDriver(catalog_of(level_dict(target_total=5)), SimulationSettings(seed=1))
    result = driver.run_until_complete(max_ms=60000)

    assert result["finished"]
    assert result["won"]
    assert driver.stats.total == 5
    assert driver.state.clock.pending() == 0
    ended = driver.state.events.of_type("level_ended")
    assert len(ended) == 1 and ended[0]["data"]["won"]


def test_run_lost_on_error_rate():
    nodes = [
        {"key": "User1", "kind": "user"},
        {"key": "App1", "kind": "app", "capacity": 1, "delay_ms": 100000},
    ]
    catalog = catalog_of(
        level_dict(target_total=3, initial_packets_per_wave=3, initial_traffic_delay_ms=1000, nodes=nodes)
    )
    driver = SimulationDriver(catalog, SimulationSettings(seed=1))
    result = driver.run_until_complete(max_ms=10000)

    assert result["finished"]
    assert result["won"] is False
    assert driver.stats.errors == 3
    assert driver.stats.success == 0
    assert driver.registry.get("App1").current_load == 1
    # nothing may fire once the run is over
    assert driver.state.clock.pending() == 0


def test_counters_stay_consistent_during_a_run(default_catalog):
    driver = SimulationDriver(default_catalog, SimulationSettings(seed=9), level=5)
    violations = []

    def check(event):
        stats = driver.stats
        if stats.success + stats.errors != stats.total:
            violations.append(("counters", event["type"]))
        for node in driver.registry.list_nodes():
            if node.kind is not NodeKind.USER and not 0 <= node.current_load <= node.capacity:
                violations.append(("load", node.key))

    driver.state.events.subscribe(check)
    driver.start_simulation()
    driver.advance(120000)

    assert driver.stats.total > 0
    assert violations == []


def test_failing_listener_does_not_break_the_run(driver):
    def boom(event):
        raise RuntimeError("listener failure")

    driver.state.events.subscribe(boom)
    driver.start_simulation()
    driver.advance(5000)
    assert driver.stats.total > 0


def test_same_seed_same_outcome(default_catalog):
    def run():
        driver = SimulationDriver(default_catalog, SimulationSettings(seed=123), level=4)
        driver.start_simulation()
        driver.advance(90000)
        return driver.stats.to_dict()

    assert run() == run()


# ---------------------------------------------------------------- economy


def test_add_node_charges_and_registers(driver):
    cache = driver.add_node("cache")
    assert cache.key == "Cache1"
    assert cache.hit_rate == 0.7
    assert driver.stats.money == 1250

    replica = driver.add_node("read_replica")
    assert replica.key == "ReadReplica1"
    assert replica.read_replica
    assert [n.key for n in driver.registry.read_replicas()] == ["ReadReplica1"]
    assert driver.stats.money == 900
    assert len(driver.state.events.of_type("node_added")) == 2


def test_add_node_enforces_limits_and_funds(driver):
    driver.add_node("loadbalancer")
    with pytest.raises(CommandRejected):
        driver.add_node("loadbalancer")

    driver.stats.money = 0
    with pytest.raises(CommandRejected):
        driver.add_node("app")
    with pytest.raises(CommandRejected):
        driver.add_node("user")


def test_upgrade_node(driver):
    assert driver.upgrade_node("App1")
    app = driver.registry.get("App1")
    assert (app.level, app.capacity, app.base_delay_ms) == (2, 24, 150)
    assert driver.stats.money == 1200

    app.max_capacity = app.capacity
    assert not driver.upgrade_node("App1")
    assert driver.stats.money == 1200

    with pytest.raises(KeyError):
        driver.upgrade_node("App9")
    with pytest.raises(CommandRejected):
        driver.upgrade_node("User1")


def test_upgrade_kind_charges_once(default_catalog):
    driver = SimulationDriver(default_catalog, SimulationSettings(seed=1), level=6)
    assert driver.upgrade_kind("app") == ["App1", "App2"]
    assert driver.stats.money == 1200
    assert all(n.capacity == 24 for n in driver.registry.active(NodeKind.APP_SERVER))


def test_skip_level_wins(driver):
    result = driver.skip_level()
    assert result["won"]
    assert driver.stats.errors == 5
    assert driver.stats.total == driver.level.target_total
    with pytest.raises(CommandRejected):
        driver.skip_level()
    with pytest.raises(CommandRejected):
        driver.add_node("cache")


def test_reset_clears_previous_run(driver):
    driver.start_simulation()
    driver.add_node("cache")
    driver.advance(20000)
    driver.reset_run(2)

    assert driver.stats.total == 0
    assert driver.stats.money == 1500
    assert not driver.stats.is_running
    assert driver.registry.get("Cache1") is None
    assert driver.state.now_ms == 0


def test_deactivating_a_queue_flushes_its_buffer(default_catalog):
    driver = SimulationDriver(default_catalog, SimulationSettings(seed=1), level=9)
    queue = driver.registry.get("Queue1")
    driver.router.submit(queue, _write_packet(1))
    driver.router.submit(queue, _write_packet(2))
    assert queue.current_load == 1

    driver.deactivate_node("Queue1")
    assert queue.current_load == 0
    assert driver.stats.lost_after_ack == 2
    assert queue.in_drain is None

    with pytest.raises(KeyError):
        driver.deactivate_node("Queue7")


def test_reactivated_queue_runs_a_single_drain_loop(default_catalog):
    driver = SimulationDriver(default_catalog, SimulationSettings(seed=1), level=9)
    queue = driver.registry.get("Queue1")
    driver.router.submit(queue, _write_packet(1))

    driver.deactivate_node("Queue1")
    driver.activate_node("Queue1")
    driver.advance(10)
    for packet_id in (2, 3, 4):
        driver.router.submit(queue, _write_packet(packet_id))

    drain_steps = [
        event for event in driver.state.clock.events
        if not event.cancelled and event.label == "drain Queue1"
    ]
    assert len(drain_steps) == 1
    assert len(queue.buffer) == 2
    assert driver.stats.lost_after_ack == 1

    driver.advance(10000)
    assert driver.registry.get("Database1").writes_stored == 3
    assert driver.stats.lost_after_ack == 1
    assert not queue.draining


def _write_packet(packet_id=1):
    return Packet(packet_id=packet_id, origin="User1", is_write=True)


# ---------------------------------------------------------------- outbound


def test_snapshot_exposes_outbound_state(driver):
    driver.start_simulation()
    driver.advance(3000)
    snap = driver.snapshot()

    assert snap["level"]["number"] == 2
    assert {"money", "success", "errors", "total", "database_storage", "difficulty_level"} <= set(snap["stats"])
    keys = {node["key"] for node in snap["nodes"]}
    assert keys == {"User1", "App1", "Database1"}
    user = next(n for n in snap["nodes"] if n["key"] == "User1")
    assert user["rpm"] >= 1


def test_report_and_csv_export(driver, tmp_path):
    driver.run_until_complete(max_ms=30000)
    report = RunReport.from_driver(driver)

    assert report.total == driver.stats.total
    assert report.latency_p50_ms <= report.latency_p95_ms <= report.latency_p99_ms
    assert {n.key for n in report.nodes} == {"App1", "Database1"}

    path = export_reports_csv([report, report], tmp_path / "out" / "runs.csv")
    lines = path.read_text().strip().splitlines()
    assert lines[0].startswith("level,seed,won")
    assert len(lines) == 3


def test_realtime_pump_advances_by_wall_time(driver):
    now = [100.0]
    pump = RealtimePump(driver, speed=2.0, clock=lambda: now[0])
    driver.start_simulation()

    assert pump.tick() == 0
    now[0] = 100.5
    pump.tick()
    assert driver.state.now_ms == 1000


def test_realtime_pump_thread_starts_and_stops(driver):
    pump = RealtimePump(driver, tick_s=0.01)
    pump.start()
    assert pump.running
    pump.stop()
    assert not pump.running
