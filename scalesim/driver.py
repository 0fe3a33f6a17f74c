from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Union

from scalesim.des_simulator import RepeatingTimer, _Event
from scalesim.levels import Economics, LevelCatalog, LevelConfig
from scalesim.router import PacketRouter
from scalesim.scaling import UpgradeRule
from scalesim.state import Node, NodeKind, Packet, SimulationSettings, SimulationState, parse_kind

logger = logging.getLogger(__name__)

PLATEAU_MESSAGE = "Maximum pressure sustained"
SKIP_ERRORS = 5


class CommandRejected(ValueError):
    """A well-formed command that the current run does not allow."""


class SimulationDriver:
    """
    Owns one run: topology, traffic generation, difficulty and the economy.

    Lifecycle: Stopped -> Running <-> Paused -> GameOver. ``reset_run`` goes
    back to Stopped with a fresh topology for the requested level. Every
    command takes ``state.lock`` so the HTTP layer and the realtime pump can
    share one driver.
    """

    def __init__(
        self,
        catalog: Optional[LevelCatalog] = None,
        settings: Optional[SimulationSettings] = None,
        *,
        level: Optional[int] = None,
    ) -> None:
        self.catalog = catalog or LevelCatalog.default()
        self.settings = settings or SimulationSettings()
        self.state = SimulationState(self.settings)
        self.router = PacketRouter(self.state, on_terminal=self._check_end)
        self.upgrade_rule = UpgradeRule(
            growth=self.settings.upgrade_growth,
            delay_factor=self.settings.upgrade_delay_factor,
            min_delay_ms=self.settings.min_delay_ms,
        )
        self.level: LevelConfig = self.catalog.get(level if level is not None else self.catalog.numbers()[0])
        self.current_traffic_delay_ms = self.level.initial_traffic_delay_ms
        self.packets_per_wave = self.level.initial_packets_per_wave
        self._wave_event: Optional[_Event] = None
        self._difficulty_timer: Optional[RepeatingTimer] = None
        self.reset_run(self.level.number)

    @property
    def economics(self) -> Economics:
        return self.catalog.economics

    @property
    def stats(self):
        return self.state.stats

    @property
    def registry(self):
        return self.state.registry

    # ------------------------------------------------------------ lifecycle

    def reset_run(self, level_number: int) -> LevelConfig:
        level = self.catalog.get(level_number)
        with self.state.lock:
            self._cancel_timers()
            self.level = level
            self.state.reset(level.number, self.economics.starting_money, level.revenue_per_request)
            for spec in level.nodes:
                key = spec.key or self.registry.next_key(spec.kind, spec.read_replica)
                self.registry.add(spec.build(key, level.user_max_concurrent))
            self.current_traffic_delay_ms = level.initial_traffic_delay_ms
            self.packets_per_wave = level.initial_packets_per_wave
            self.state.emit("level_reset", level=level.number, title=level.title, nodes=len(self.registry))
        logger.info(f"Level {level.number} ({level.title}) ready with {len(self.registry)} nodes")
        return level

    def start_simulation(self) -> bool:
        with self.state.lock:
            if self.stats.is_running or self.stats.is_game_over:
                return False
            self.stats.is_running = True
            self._wave()
            self._difficulty_timer = self.state.clock.schedule_repeating(
                self.level.difficulty_interval_ms, self._escalate, label="difficulty"
            )
            self.state.emit("simulation_started", level=self.level.number)
        logger.info(f"Level {self.level.number} started")
        return True

    def pause_simulation(self) -> bool:
        with self.state.lock:
            if not self.stats.is_running or self.stats.is_paused or self.stats.is_game_over:
                return False
            self.stats.is_paused = True
            self.state.clock.pause()
            self.state.emit("simulation_paused")
        logger.info(f"Paused at {self.state.now_ms:.0f}ms")
        return True

    def resume_simulation(self) -> bool:
        with self.state.lock:
            if not self.stats.is_paused or self.stats.is_game_over:
                return False
            self.stats.is_paused = False
            self.state.clock.resume()
            self.state.emit("simulation_resumed")
        logger.info(f"Resumed at {self.state.now_ms:.0f}ms")
        return True

    def skip_level(self) -> Dict[str, Any]:
        """End the run immediately as a win."""
        with self.state.lock:
            if self.stats.is_game_over:
                raise CommandRejected("run is already over")
            target = self.level.target_total
            self.stats.errors = min(SKIP_ERRORS, target)
            self.stats.success = target - self.stats.errors
            self.stats.total = target
            self._end_run(won=True)
            return self.result()

    # ------------------------------------------------------------ traffic

    def _wave(self) -> None:
        state = self.state
        with state.lock:
            if not self.stats.is_running or self.stats.is_game_over:
                return
            users = self.registry.active(NodeKind.USER)
            write_probability = self.settings.write_percentage / 100.0
            for i in range(self.packets_per_wave if users else 0):
                user = state.rng.choice(users)
                is_write = state.rng.random() < write_probability
                state.clock.schedule(
                    i * self.settings.spawn_stagger_ms,
                    lambda key=user.key, write=is_write: self.router.spawn(key, write),
                    label="spawn",
                )
            self._wave_event = state.clock.schedule(self.current_traffic_delay_ms, self._wave, label="wave")

    def _escalate(self) -> None:
        with self.state.lock:
            if self.stats.is_game_over:
                return
            self.stats.difficulty_level += 1
            level = self.stats.difficulty_level
            stage = self.level.stage(level)
            if stage is None:
                if level == len(self.level.stages) + 1:
                    self.state.emit(
                        "difficulty_changed",
                        difficulty_level=level,
                        traffic_delay_ms=self.current_traffic_delay_ms,
                        packets_per_wave=self.packets_per_wave,
                        message=PLATEAU_MESSAGE,
                    )
                return
            self.current_traffic_delay_ms = stage.traffic_delay_ms
            self.packets_per_wave = stage.packets_per_wave
            self.state.emit(
                "difficulty_changed",
                difficulty_level=level,
                traffic_delay_ms=stage.traffic_delay_ms,
                packets_per_wave=stage.packets_per_wave,
                message=stage.message,
            )
        logger.info(
            f"Difficulty {level}: every {stage.traffic_delay_ms:.0f}ms x{stage.packets_per_wave}"
            f" - {stage.message}"
        )

    # ------------------------------------------------------------ termination

    def _check_end(self, packet: Optional[Packet] = None) -> None:
        if self.stats.is_game_over:
            return
        if self.stats.total >= self.level.target_total:
            self._end_run()

    def _end_run(self, won: Optional[bool] = None) -> None:
        stats = self.stats
        stats.is_game_over = True
        stats.is_running = False
        stats.is_paused = False
        self._cancel_timers()
        self.state.clock.invalidate()
        rate_pct = stats.error_rate * 100
        stats.won = won if won is not None else rate_pct < self.level.max_error_rate
        self.state.emit(
            "level_ended",
            level=self.level.number,
            won=stats.won,
            error_rate_pct=rate_pct,
            errors=stats.errors,
            total=stats.total,
        )
        outcome = "won" if stats.won else "lost"
        logger.info(
            f"Level {self.level.number} {outcome}: error rate {rate_pct:.2f}% "
            f"({stats.errors}/{stats.total}), limit {self.level.max_error_rate}%"
        )

    def _cancel_timers(self) -> None:
        if self._difficulty_timer is not None:
            self._difficulty_timer.cancel()
            self._difficulty_timer = None
        if self._wave_event is not None:
            self._wave_event.cancel()
            self._wave_event = None

    # ------------------------------------------------------------ economy

    def add_node(
        self,
        kind: Union[str, NodeKind],
        *,
        name: Optional[str] = None,
        read_replica: bool = False,
        capacity: Optional[int] = None,
        delay_ms: Optional[float] = None,
        hit_rate: Optional[float] = None,
    ) -> Node:
        """
        Purchase a node of ``kind`` and add it to the live topology.

        Args:
            kind: Node kind name (``"app"``, ``"cache"``, ``"read_replica"`` ...)
            name: Display name, defaults to the generated key
            read_replica: Mark a database as a read replica
            capacity, delay_ms, hit_rate: Overrides for the default spec

        Returns:
            The registered node.

        Raises:
            CommandRejected: no funds, count limit reached, or the run is over
        """
        node_kind, replica = parse_kind(kind)
        replica = replica or bool(read_replica)
        with self.state.lock:
            if self.stats.is_game_over:
                raise CommandRejected("run is over")
            if node_kind is NodeKind.USER:
                raise CommandRejected("users cannot be purchased")
            limit = self.economics.limit(node_kind, replica)
            count = self.registry.count(node_kind, replica if node_kind is NodeKind.DATABASE else None)
            if limit is not None and count >= limit:
                logger.warning(f"Purchase of {node_kind.value} rejected: limit {limit} reached")
                raise CommandRejected(f"limit of {limit} reached for {node_kind.value}")
            cost = self.economics.purchase_cost(node_kind, replica)
            if self.stats.money < cost:
                logger.warning(f"Purchase of {node_kind.value} rejected: need ${cost}, have ${self.stats.money}")
                raise CommandRejected(f"insufficient funds: need {cost}, have {self.stats.money}")

            spec = self.economics.default_spec(node_kind, replica)
            if capacity is not None:
                spec.capacity = int(capacity)
            if delay_ms is not None:
                spec.delay_ms = float(delay_ms)
            if hit_rate is not None:
                spec.hit_rate = float(hit_rate)
            spec.validate()
            key = self.registry.next_key(node_kind, replica)
            spec.name = name or key
            node = self.registry.add(spec.build(key))
            self.stats.money -= cost
            self.state.emit("node_added", key=key, kind=node_kind.value, read_replica=replica, cost=cost)
        logger.info(f"Purchased {key} for ${cost} (capacity {node.capacity}, delay {node.base_delay_ms:.0f}ms)")
        return node

    def upgrade_node(self, key: str) -> bool:
        """
        Upgrade one node. Returns False, without charging, when it is already
        at its maximum capacity.
        """
        with self.state.lock:
            node = self.registry.get(key)
            if node is None:
                raise KeyError(key)
            if self.stats.is_game_over:
                raise CommandRejected("run is over")
            if node.kind is NodeKind.USER:
                raise CommandRejected("user nodes cannot be upgraded")
            if not self.upgrade_rule.can_upgrade(node):
                return False
            cost = self.economics.upgrade_cost(node.kind, node.read_replica)
            self._charge(cost, f"upgrade {key}")
            self.upgrade_rule.apply(node)
            self._emit_upgraded(node, cost)
            return True

    def upgrade_kind(self, kind: Union[str, NodeKind]) -> List[str]:
        """Upgrade every active node of ``kind`` for a single charge."""
        node_kind, replica = parse_kind(kind)
        with self.state.lock:
            if self.stats.is_game_over:
                raise CommandRejected("run is over")
            if node_kind is NodeKind.USER:
                raise CommandRejected("user nodes cannot be upgraded")
            nodes = [
                node
                for node in self.registry.active(node_kind)
                if self.upgrade_rule.can_upgrade(node)
                and (node_kind is not NodeKind.DATABASE or node.read_replica == replica)
            ]
            if not nodes:
                raise CommandRejected(f"no {node_kind.value} node can be upgraded")
            cost = self.economics.upgrade_cost(node_kind, replica)
            self._charge(cost, f"upgrade all {node_kind.value}")
            for node in nodes:
                self.upgrade_rule.apply(node)
                self._emit_upgraded(node, cost)
            return [node.key for node in nodes]

    def _charge(self, cost: int, what: str) -> None:
        if self.stats.money < cost:
            logger.warning(f"Cannot afford {what}: need ${cost}, have ${self.stats.money}")
            raise CommandRejected(f"insufficient funds: need {cost}, have {self.stats.money}")
        self.stats.money -= cost

    def _emit_upgraded(self, node: Node, cost: int) -> None:
        self.state.emit(
            "node_upgraded",
            key=node.key,
            level=node.level,
            capacity=node.capacity,
            delay_ms=node.base_delay_ms,
            cost=cost,
        )

    # ------------------------------------------------------------ availability

    def deactivate_node(self, key: str) -> Node:
        with self.state.lock:
            node = self.registry.mark_node_availability(key, False)
            if node.kind is NodeKind.QUEUE:
                self.router.policies[NodeKind.QUEUE].flush(node, f"{key} deactivated")
            self.state.emit("node_deactivated", key=key)
        logger.info(f"{key} deactivated")
        return node

    def activate_node(self, key: str) -> Node:
        with self.state.lock:
            node = self.registry.mark_node_availability(key, True)
            self.state.emit("node_activated", key=key)
        logger.info(f"{key} activated")
        return node

    # ------------------------------------------------------------ time

    def advance(self, duration_ms: float) -> int:
        with self.state.lock:
            return self.state.clock.advance(duration_ms)

    def run_until_complete(self, max_ms: Optional[float] = None, step_ms: float = 1000.0) -> Dict[str, Any]:
        """Start if needed and advance until the run ends, pauses or ``max_ms`` is reached."""
        self.start_simulation()
        while not self.stats.is_game_over and not self.stats.is_paused:
            if max_ms is not None and self.state.now_ms >= max_ms:
                break
            if self.state.clock.pending() == 0:
                break
            step = step_ms if max_ms is None else min(step_ms, max_ms - self.state.now_ms)
            self.advance(step)
        return self.result()

    # ------------------------------------------------------------ outbound

    def snapshot(self) -> Dict[str, Any]:
        with self.state.lock:
            now = self.state.now_ms
            return {
                "now_ms": now,
                "level": {
                    "number": self.level.number,
                    "title": self.level.title,
                    "target_total": self.level.target_total,
                    "max_error_rate": self.level.max_error_rate,
                },
                "traffic": {
                    "traffic_delay_ms": self.current_traffic_delay_ms,
                    "packets_per_wave": self.packets_per_wave,
                },
                "stats": self.stats.to_dict(),
                "nodes": [node.to_dict(now) for node in self.registry.list_nodes()],
                "pending_events": self.state.clock.pending(),
            }

    def result(self) -> Dict[str, Any]:
        stats = self.stats
        return {
            "level": self.level.number,
            "finished": stats.is_game_over,
            "won": stats.won,
            "success": stats.success,
            "errors": stats.errors,
            "total": stats.total,
            "error_rate_pct": stats.error_rate * 100,
            "money": stats.money,
            "elapsed_ms": self.state.now_ms,
        }
