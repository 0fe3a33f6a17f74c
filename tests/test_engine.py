import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest

from scalesim.des_simulator import DiscreteEventClock
from scalesim.policy.base import Disposition
from scalesim.router import PacketRouter
from scalesim.scaling import UpgradeRule, degraded_delay_ms
from scalesim.state import Node, NodeKind, Packet, SimulationSettings, SimulationState


def make_engine(seed=7, **settings):
    state = SimulationState(SimulationSettings(seed=seed, **settings))
    return state, PacketRouter(state)


def add(state, key, kind, capacity=100, delay=10, **kwargs):
    return state.registry.add(
        Node(key=key, name=key, kind=kind, capacity=capacity, base_delay_ms=delay, **kwargs)
    )


def add_user(state, key="User1", **kwargs):
    return add(state, key, NodeKind.USER, capacity=999, delay=0, **kwargs)


# ---------------------------------------------------------------- clock


def test_clock_fires_in_time_then_schedule_order():
    clock = DiscreteEventClock()
    fired = []
    clock.schedule(10, lambda: fired.append("b"))
    clock.schedule(5, lambda: fired.append("a"))
    clock.schedule(10, lambda: fired.append("c"))

    assert clock.run() == 3
    assert fired == ["a", "b", "c"]
    assert clock.now_ms == 10


def test_paused_clock_does_not_advance():
    clock = DiscreteEventClock()
    fired = []
    clock.schedule(50, lambda: fired.append(1))
    assert clock.pause()
    assert not clock.pause()

    assert clock.advance(100) == 0
    assert clock.now_ms == 0
    assert fired == []

    assert clock.resume()
    clock.advance(100)
    assert fired == [1]
    assert clock.now_ms == 100


def test_invalidate_discards_pending_callbacks():
    clock = DiscreteEventClock()
    fired = []
    for delay in (1, 2, 3):
        clock.schedule(delay, lambda: fired.append(delay))

    assert clock.invalidate() == 3
    assert clock.run() == 0
    assert fired == []
    assert clock.generation == 1


def test_repeating_timer_stops_when_cancelled():
    clock = DiscreteEventClock()
    ticks = []
    timer = clock.schedule_repeating(100, lambda: ticks.append(clock.now_ms))

    clock.advance(350)
    assert ticks == [100, 200, 300]

    timer.cancel()
    clock.advance(500)
    assert timer.fired == 3


def test_negative_delay_is_rejected():
    with pytest.raises(ValueError):
        DiscreteEventClock().schedule(-1, lambda: None)


# ---------------------------------------------------------------- scaling


def test_upgrade_grows_capacity_and_halves_delay():
    node = Node(key="App1", name="App1", kind=NodeKind.APP_SERVER, capacity=10, base_delay_ms=300)
    assert UpgradeRule().apply(node)
    assert (node.level, node.capacity, node.base_delay_ms) == (2, 24, 150)

    assert UpgradeRule().apply(node)
    assert (node.level, node.capacity, node.base_delay_ms) == (3, 57, 75)


def test_upgrade_respects_min_delay_and_max_capacity():
    rule = UpgradeRule(min_delay_ms=50)
    node = Node(
        key="Cache1", name="Cache1", kind=NodeKind.CACHE, capacity=10, base_delay_ms=80, max_capacity=20
    )
    assert rule.apply(node)
    assert node.capacity == 20
    assert node.base_delay_ms == 50

    assert not rule.apply(node)
    assert (node.level, node.capacity, node.base_delay_ms) == (2, 20, 50)


def test_database_delay_degrades_with_stored_writes():
    assert degraded_delay_ms(400, 50) == 600.0
    assert degraded_delay_ms(300, 3) == 309.0

    db = Node(key="Database1", name="db", kind=NodeKind.DATABASE, capacity=8, base_delay_ms=400)
    db.writes_stored = 25
    assert db.effective_delay_ms == 500.0

    # degradation applies on top of the upgraded base delay
    UpgradeRule().apply(db)
    assert db.effective_delay_ms == 250.0


# ---------------------------------------------------------------- admission


def test_scenario_monolith_rejects_over_capacity():
    state, router = make_engine()
    add_user(state)
    app = add(state, "App1", NodeKind.APP_SERVER, capacity=3, delay=300)

    for _ in range(3):
        router.spawn("User1", is_write=False)
    state.clock.run_until(0)
    assert app.current_load == 3

    router.spawn("User1", is_write=False)
    state.clock.run_until(0)
    assert app.current_load == 3
    assert state.stats.errors == 1
    assert state.stats.total == 1

    state.clock.advance(300)
    assert state.stats.success == 3
    assert state.stats.total == 4
    assert app.current_load == 0
    assert state.registry.get("User1").local_errors == 1


def test_submit_after_game_over_has_no_effect():
    state, router = make_engine()
    add_user(state)
    app = add(state, "App1", NodeKind.APP_SERVER, capacity=1)
    state.stats.is_game_over = True

    router.submit(app, Packet(packet_id=1, origin="User1", is_write=False))
    state.clock.run()
    assert app.current_load == 0
    assert state.stats.total == 0


def test_user_throttle_is_not_counted():
    state, router = make_engine()
    add_user(state, max_concurrent=2)
    add(state, "App1", NodeKind.APP_SERVER, capacity=10, delay=100)

    spawned = [router.spawn("User1", is_write=False) for _ in range(3)]
    assert spawned[2] is None
    assert state.stats.throttled == 1

    state.clock.run()
    assert state.stats.success == 2
    assert state.stats.total == 2


def test_lost_packet_counts_as_error_by_default():
    state, router = make_engine()
    add_user(state)
    add(state, "App1", NodeKind.APP_SERVER)

    router.spawn("User1", is_write=False)
    state.registry.mark_node_availability("App1", False)
    state.clock.run()

    assert state.stats.lost == 1
    assert state.stats.errors == 1
    assert state.stats.total == 1


def test_lost_packet_can_be_silently_discarded():
    state, router = make_engine(count_lost_packets=False)
    user = add_user(state)
    add(state, "App1", NodeKind.APP_SERVER)

    router.spawn("User1", is_write=False)
    state.registry.mark_node_availability("App1", False)
    state.clock.run()

    assert state.stats.lost == 1
    assert state.stats.errors == 0
    assert state.stats.total == 0
    assert user.concurrent_requests == 0


def test_node_deactivated_while_processing_releases_load():
    state, router = make_engine()
    add_user(state)
    app = add(state, "App1", NodeKind.APP_SERVER, delay=100)

    router.spawn("User1", is_write=False)
    state.clock.run_until(0)
    assert app.current_load == 1

    state.registry.mark_node_availability("App1", False)
    state.clock.run()
    assert app.current_load == 0
    assert state.stats.lost == 1
    assert state.stats.success == 0


def test_no_route_from_user_is_a_loss():
    state, router = make_engine()
    add_user(state)

    router.spawn("User1", is_write=True)
    assert state.stats.lost == 1
    assert state.stats.errors == 1


# ---------------------------------------------------------------- scenarios


def test_scenario_cache_hit_never_reaches_database():
    state, router = make_engine()
    add_user(state)
    add(state, "App1", NodeKind.APP_SERVER)
    cache = add(state, "Cache1", NodeKind.CACHE, hit_rate=1.0)
    db = add(state, "Database1", NodeKind.DATABASE)

    for _ in range(20):
        router.spawn("User1", is_write=False)
    state.clock.run()

    assert state.stats.success == 20
    assert cache.hits == 20
    assert db.writes_stored == 0
    assert db.peak_load == 0


def test_scenario_load_balancer_prefers_idle_server():
    state, router = make_engine()
    add_user(state)
    lb = add(state, "LoadBalancer1", NodeKind.LOAD_BALANCER)
    busy = add(state, "App1", NodeKind.APP_SERVER, capacity=10)
    add(state, "App2", NodeKind.APP_SERVER, capacity=10)
    busy.current_load = 9

    decision = router.policies[NodeKind.LOAD_BALANCER].decide(lb, Packet(1, "User1", False))
    assert decision.target == "App2"


def test_load_balancer_tie_keeps_registration_order():
    state, router = make_engine()
    lb = add(state, "LoadBalancer1", NodeKind.LOAD_BALANCER)
    add(state, "App1", NodeKind.APP_SERVER, capacity=10)
    add(state, "App2", NodeKind.APP_SERVER, capacity=20)

    decision = router.policies[NodeKind.LOAD_BALANCER].decide(lb, Packet(1, "User1", False))
    assert decision.target == "App1"


def test_load_balancer_without_apps_drops():
    state, router = make_engine()
    lb = add(state, "LoadBalancer1", NodeKind.LOAD_BALANCER)

    decision = router.policies[NodeKind.LOAD_BALANCER].decide(lb, Packet(1, "User1", False))
    assert decision.disposition is Disposition.DROP


def test_writes_never_reach_read_replicas(monkeypatch):
    state, router = make_engine(seed=11)
    add_user(state)
    add(state, "App1", NodeKind.APP_SERVER, capacity=1000)
    primary = add(state, "Database1", NodeKind.DATABASE, capacity=1000)
    replicas = [
        add(state, f"ReadReplica{i}", NodeKind.DATABASE, capacity=1000, read_replica=True) for i in (1, 2)
    ]

    arrivals = []
    submit = router.submit

    def spy(node, packet):
        arrivals.append((node.read_replica, packet.is_write, packet.is_response))
        submit(node, packet)

    monkeypatch.setattr(router, "submit", spy)

    writes = 0
    for _ in range(300):
        is_write = state.rng.random() < 0.5
        writes += is_write
        router.spawn("User1", is_write=is_write)
    state.clock.run()

    assert not any(replica and write and not response for replica, write, response in arrivals)
    assert primary.writes_stored == writes
    assert all(r.writes_stored == 0 for r in replicas)
    assert any(replica and not write for replica, write, _ in arrivals)
    assert state.stats.success == 300


def test_queue_acknowledges_before_database_write():
    state, router = make_engine()
    add_user(state)
    add(state, "App1", NodeKind.APP_SERVER, delay=10)
    queue = add(state, "Queue1", NodeKind.QUEUE, capacity=5, delay=200)
    db = add(state, "Database1", NodeKind.DATABASE, delay=1000)

    router.spawn("User1", is_write=True)
    state.clock.advance(10)
    assert state.stats.success == 1
    assert db.writes_stored == 0
    assert queue.draining

    state.clock.advance(1300)
    assert db.writes_stored == 1
    assert state.stats.success == 1
    assert state.stats.total == 1
    assert not queue.draining
    assert queue.current_load == 0


def test_queue_rejects_when_buffer_is_full():
    state, router = make_engine()
    add_user(state)
    queue = add(state, "Queue1", NodeKind.QUEUE, capacity=2, delay=1000)
    add(state, "Database1", NodeKind.DATABASE)

    for i in range(4):
        router.submit(queue, Packet(packet_id=i, origin="User1", is_write=True))

    # the first write went straight into the drain step
    assert queue.current_load == 2
    assert state.stats.errors == 1
    assert state.stats.total == 1

    state.clock.run()
    assert state.stats.success == 3
    assert state.stats.total == 4


def test_acknowledged_write_lost_is_not_an_error():
    state, router = make_engine()
    add_user(state)
    queue = add(state, "Queue1", NodeKind.QUEUE, capacity=5, delay=100)

    router.submit(queue, Packet(packet_id=1, origin="User1", is_write=True))
    state.clock.run()

    assert state.stats.success == 1
    assert state.stats.errors == 0
    assert state.stats.lost_after_ack == 1


def test_cache_hit_rate_converges():
    state, router = make_engine(seed=2024)
    app = add(state, "App1", NodeKind.APP_SERVER)
    cache = add(state, "Cache1", NodeKind.CACHE, hit_rate=0.7)
    policy = router.policies[NodeKind.CACHE]

    for i in range(10000):
        packet = Packet(packet_id=i, origin="User1", is_write=False, app_node=app.key)
        decision = policy.decide(cache, packet)
        assert decision.target == "App1"
        assert packet.is_response == packet.cache_hit
        assert packet.cache_missed != packet.cache_hit

    assert 6800 <= cache.hits <= 7200
    assert cache.hits + cache.misses == 10000


def test_same_seed_replays_identically():
    def run(seed):
        state, router = make_engine(seed=seed)
        for key in ("User1", "User2"):
            add_user(state, key)
        add(state, "App1", NodeKind.APP_SERVER, capacity=4, delay=150)
        add(state, "Cache1", NodeKind.CACHE, capacity=3, delay=40, hit_rate=0.6)
        add(state, "Database1", NodeKind.DATABASE, capacity=2, delay=200)
        for i in range(200):
            user = state.rng.choice(["User1", "User2"])
            write = state.rng.random() < 0.3
            state.clock.schedule(i * 25, lambda u=user, w=write: router.spawn(u, w))
        state.clock.run()
        return state.stats.to_dict()

    first = run(5)
    assert first == run(5)
    assert first["success"] + first["errors"] == first["total"] == 200
