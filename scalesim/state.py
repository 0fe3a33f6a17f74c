from __future__ import annotations

import logging
import random
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, Tuple

from scalesim.des_simulator import DiscreteEventClock
from scalesim.scaling import degraded_delay_ms

logger = logging.getLogger(__name__)

RPM_WINDOW_MS = 60_000.0


class NodeKind(Enum):
    USER = "user"
    APP_SERVER = "app"
    CACHE = "cache"
    CDN = "cdn"
    LOAD_BALANCER = "loadbalancer"
    DATABASE = "database"
    QUEUE = "queue"


KEY_PREFIX: Dict[NodeKind, str] = {
    NodeKind.USER: "User",
    NodeKind.APP_SERVER: "App",
    NodeKind.CACHE: "Cache",
    NodeKind.CDN: "CDN",
    NodeKind.LOAD_BALANCER: "LoadBalancer",
    NodeKind.DATABASE: "Database",
    NodeKind.QUEUE: "Queue",
}
REPLICA_PREFIX = "ReadReplica"

_KIND_ALIASES: Dict[str, Tuple[NodeKind, bool]] = {
    "user": (NodeKind.USER, False),
    "app": (NodeKind.APP_SERVER, False),
    "appserver": (NodeKind.APP_SERVER, False),
    "cache": (NodeKind.CACHE, False),
    "cdn": (NodeKind.CDN, False),
    "loadbalancer": (NodeKind.LOAD_BALANCER, False),
    "lb": (NodeKind.LOAD_BALANCER, False),
    "database": (NodeKind.DATABASE, False),
    "db": (NodeKind.DATABASE, False),
    "readreplica": (NodeKind.DATABASE, True),
    "replica": (NodeKind.DATABASE, True),
    "queue": (NodeKind.QUEUE, False),
    "pubsub": (NodeKind.QUEUE, False),
    "messagequeue": (NodeKind.QUEUE, False),
}


def parse_kind(value: Any) -> Tuple[NodeKind, bool]:
    """Resolve a kind name to ``(NodeKind, is_read_replica)``."""
    if isinstance(value, NodeKind):
        return value, False
    text = str(value or "").strip().lower()
    for ch in ("_", "-", " "):
        text = text.replace(ch, "")
    if text not in _KIND_ALIASES:
        raise ValueError(f"unknown node kind: {value!r}")
    return _KIND_ALIASES[text]


def catalog_key(kind: NodeKind, read_replica: bool = False) -> str:
    """Key used by economics tables (costs, limits, default specs)."""
    if kind is NodeKind.DATABASE and read_replica:
        return "read_replica"
    return kind.value


@dataclass
class Packet:
    packet_id: int
    origin: str  # key of the User node that created it
    is_write: bool
    created_ms: float = 0.0
    is_response: bool = False
    app_node: Optional[str] = None  # app server to return through
    cache_missed: bool = False
    cache_hit: bool = False
    cdn_hit: bool = False
    acknowledged: bool = False  # a queue already acked the origin
    route: List[str] = field(default_factory=list)

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "is_write" and "is_write" in self.__dict__:
            raise AttributeError("packet kind is fixed at creation")
        super().__setattr__(name, value)

    def latency_at(self, now_ms: float) -> float:
        return now_ms - self.created_ms


@dataclass
class Node:
    key: str
    name: str
    kind: NodeKind
    capacity: int
    base_delay_ms: float
    max_capacity: Optional[int] = None
    hit_rate: Optional[float] = None
    read_replica: bool = False
    max_concurrent: Optional[int] = None  # client-side throttle (users only)
    level: int = 1
    current_load: int = 0
    peak_load: int = 0
    active: bool = True
    writes_stored: int = 0
    hits: int = 0
    misses: int = 0
    local_success: int = 0
    local_errors: int = 0
    concurrent_requests: int = 0
    draining: bool = False
    in_drain: Optional[Packet] = None  # write popped from the buffer, not yet released
    drain_event: Optional[Any] = field(default=None, repr=False)
    buffer: Deque[Packet] = field(default_factory=deque)
    request_times_ms: Deque[float] = field(default_factory=deque)

    @property
    def effective_delay_ms(self) -> float:
        if self.kind is NodeKind.DATABASE:
            return degraded_delay_ms(self.base_delay_ms, self.writes_stored)
        return self.base_delay_ms

    @property
    def load_ratio(self) -> float:
        if self.capacity <= 0:
            return float("inf")
        return self.current_load / self.capacity

    def note_load(self) -> None:
        self.peak_load = max(self.peak_load, self.current_load)

    def track_request(self, now_ms: float) -> None:
        self.request_times_ms.append(now_ms)
        self._prune_requests(now_ms)

    def rpm(self, now_ms: float) -> int:
        self._prune_requests(now_ms)
        return len(self.request_times_ms)

    def _prune_requests(self, now_ms: float) -> None:
        cutoff = now_ms - RPM_WINDOW_MS
        while self.request_times_ms and self.request_times_ms[0] <= cutoff:
            self.request_times_ms.popleft()

    def to_dict(self, now_ms: float = 0.0) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "key": self.key,
            "name": self.name,
            "kind": self.kind.value,
            "active": self.active,
            "level": self.level,
            "capacity": self.capacity,
            "current_load": self.current_load,
            "peak_load": self.peak_load,
            "delay_ms": self.base_delay_ms,
            "effective_delay_ms": self.effective_delay_ms,
        }
        if self.kind is NodeKind.USER:
            data.update(
                local_success=self.local_success,
                local_errors=self.local_errors,
                concurrent=self.concurrent_requests,
                rpm=self.rpm(now_ms),
            )
        elif self.kind is NodeKind.DATABASE:
            data.update(read_replica=self.read_replica, writes_stored=self.writes_stored)
        elif self.kind is NodeKind.QUEUE:
            data.update(buffered=len(self.buffer), draining=self.draining)
        if self.hit_rate is not None:
            data.update(hit_rate=self.hit_rate, hits=self.hits, misses=self.misses)
        return data


@dataclass
class RunStats:
    money: int = 0
    success: int = 0
    errors: int = 0
    total: int = 0
    lost: int = 0  # destination vanished or no route
    lost_after_ack: int = 0
    throttled: int = 0  # dropped client-side, never counted
    database_storage: int = 0
    difficulty_level: int = 0
    current_level: int = 1
    is_running: bool = False
    is_paused: bool = False
    is_game_over: bool = False
    won: Optional[bool] = None
    latencies_ms: List[float] = field(default_factory=list)

    def reset(self, level: int, money: int) -> None:
        self.money = money
        self.success = 0
        self.errors = 0
        self.total = 0
        self.lost = 0
        self.lost_after_ack = 0
        self.throttled = 0
        self.database_storage = 0
        self.difficulty_level = 0
        self.current_level = level
        self.is_running = False
        self.is_paused = False
        self.is_game_over = False
        self.won = None
        self.latencies_ms = []

    @property
    def error_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return self.errors / self.total

    def to_dict(self) -> Dict[str, Any]:
        return {
            "money": self.money,
            "success": self.success,
            "errors": self.errors,
            "total": self.total,
            "lost": self.lost,
            "lost_after_ack": self.lost_after_ack,
            "throttled": self.throttled,
            "error_rate_pct": round(self.error_rate * 100, 3),
            "database_storage": self.database_storage,
            "difficulty_level": self.difficulty_level,
            "current_level": self.current_level,
            "is_running": self.is_running,
            "is_paused": self.is_paused,
            "is_game_over": self.is_game_over,
            "won": self.won,
        }


class TopologyRegistry:
    """Live nodes by key, indexed by kind as they are inserted."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._nodes: Dict[str, Node] = {}
        self._by_kind: Dict[NodeKind, List[str]] = {kind: [] for kind in NodeKind}

    def add(self, node: Node) -> Node:
        with self._lock:
            if node.key in self._nodes:
                raise ValueError(f"node key already registered: {node.key}")
            self._nodes[node.key] = node
            self._by_kind[node.kind].append(node.key)
            return node

    def clear(self) -> None:
        with self._lock:
            self._nodes.clear()
            for keys in self._by_kind.values():
                keys.clear()

    def get(self, key: Optional[str]) -> Optional[Node]:
        if key is None:
            return None
        with self._lock:
            return self._nodes.get(key)

    def available(self, key: Optional[str]) -> Optional[Node]:
        """The node under ``key`` if it exists and is active."""
        node = self.get(key)
        if node is None or not node.active:
            return None
        return node

    def active(self, kind: NodeKind) -> List[Node]:
        with self._lock:
            nodes = (self._nodes[key] for key in self._by_kind[kind])
            return [node for node in nodes if node.active]

    def first_active(self, kind: NodeKind) -> Optional[Node]:
        nodes = self.active(kind)
        return nodes[0] if nodes else None

    def databases(self) -> List[Node]:
        return [node for node in self.active(NodeKind.DATABASE) if not node.read_replica]

    def read_replicas(self) -> List[Node]:
        return [node for node in self.active(NodeKind.DATABASE) if node.read_replica]

    def primary_database(self) -> Optional[Node]:
        """First registered non-replica database, if it is active."""
        with self._lock:
            for key in self._by_kind[NodeKind.DATABASE]:
                node = self._nodes[key]
                if not node.read_replica:
                    return node if node.active else None
        return None

    def count(self, kind: NodeKind, read_replica: Optional[bool] = None) -> int:
        with self._lock:
            nodes = [self._nodes[key] for key in self._by_kind[kind]]
        if read_replica is not None:
            nodes = [node for node in nodes if node.read_replica == read_replica]
        return len(nodes)

    def next_key(self, kind: NodeKind, read_replica: bool = False) -> str:
        prefix = REPLICA_PREFIX if read_replica else KEY_PREFIX[kind]
        with self._lock:
            index = self.count(kind, read_replica if kind is NodeKind.DATABASE else None) + 1
            while f"{prefix}{index}" in self._nodes:
                index += 1
            return f"{prefix}{index}"

    def mark_node_availability(self, key: str, available: bool) -> Node:
        with self._lock:
            node = self._nodes.get(key)
            if node is None:
                raise KeyError(key)
            node.active = available
            return node

    def list_nodes(self) -> List[Node]:
        with self._lock:
            return list(self._nodes.values())

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._nodes

    def __len__(self) -> int:
        with self._lock:
            return len(self._nodes)

    def __iter__(self) -> Iterator[Node]:
        return iter(self.list_nodes())


class EventLog:
    """Bounded log of outbound events with optional live listeners."""

    def __init__(self, maxlen: int = 1000) -> None:
        self._events: Deque[Dict[str, Any]] = deque(maxlen=maxlen)
        self._seq = 0
        self._listeners: List[Callable[[Dict[str, Any]], None]] = []

    def subscribe(self, listener: Callable[[Dict[str, Any]], None]) -> None:
        self._listeners.append(listener)

    def emit(self, event_type: str, data: Dict[str, Any], *, time_ms: float = 0.0) -> Dict[str, Any]:
        self._seq += 1
        event = {"id": self._seq, "type": event_type, "time_ms": time_ms, "data": data}
        self._events.append(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Event listener failed on {event_type}: {e}")
        return event

    def recent(self, limit: int = 100, since_id: Optional[int] = None) -> List[Dict[str, Any]]:
        events = list(self._events)
        if since_id is not None:
            events = [evt for evt in events if evt["id"] > since_id]
        if limit > 0:
            events = events[-limit:]
        return events

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [evt for evt in self._events if evt["type"] == event_type]

    def clear(self) -> None:
        self._events.clear()


@dataclass
class SimulationSettings:
    transit_ms: float = 0.0
    spawn_stagger_ms: float = 80.0
    write_percentage: float = 30.0
    min_delay_ms: float = 50.0
    upgrade_growth: float = 2.4
    upgrade_delay_factor: float = 0.5
    count_lost_packets: bool = True
    seed: Optional[int] = None


class SimulationState:
    """Everything one run mutates: registry, counters, clock and randomness."""

    def __init__(
        self,
        settings: Optional[SimulationSettings] = None,
        *,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.settings = settings or SimulationSettings()
        self.rng = rng or random.Random(self.settings.seed)
        self.clock = DiscreteEventClock()
        self.registry = TopologyRegistry()
        self.stats = RunStats()
        self.events = EventLog()
        self.revenue_per_request = 0
        self.lock = threading.RLock()
        self._packet_seq = 0

    @property
    def now_ms(self) -> float:
        return self.clock.now_ms

    def next_packet_id(self) -> int:
        self._packet_seq += 1
        return self._packet_seq

    def emit(self, event_type: str, **data: Any) -> Dict[str, Any]:
        return self.events.emit(event_type, data, time_ms=self.clock.now_ms)

    def reset(self, level: int, money: int, revenue_per_request: int = 0) -> None:
        with self.lock:
            self.clock.reset()
            self.registry.clear()
            self.stats.reset(level, money)
            self.events.clear()
            self.revenue_per_request = revenue_per_request
            self._packet_seq = 0
            if self.settings.seed is not None:
                self.rng.seed(self.settings.seed)
