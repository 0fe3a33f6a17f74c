"""
Level and economy configuration.

Levels are plain data: the starting topology, the target request volume,
the allowed error rate and the difficulty curve. They are loaded from YAML
and validated before any run starts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from scalesim.state import Node, NodeKind, catalog_key, parse_kind

logger = logging.getLogger(__name__)

DEFAULT_LEVELS_PATH = Path(__file__).resolve().parent / "data" / "levels.yaml"
USER_CAPACITY = 999


class ConfigurationError(ValueError):
    """Level or economy data that cannot be used to start a run."""


@dataclass
class NodeSpec:
    kind: NodeKind
    name: str
    capacity: int = 0
    delay_ms: float = 0.0
    key: Optional[str] = None
    hit_rate: Optional[float] = None
    read_replica: bool = False
    max_capacity: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], kind: Any = None) -> "NodeSpec":
        try:
            node_kind, replica = parse_kind(kind if kind is not None else data.get("kind"))
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
        try:
            spec = cls(
                kind=node_kind,
                name=str(data.get("name") or data.get("key") or node_kind.value),
                capacity=int(data.get("capacity", USER_CAPACITY if node_kind is NodeKind.USER else 0)),
                delay_ms=float(data.get("delay_ms", 0.0)),
                key=data.get("key"),
                hit_rate=None if data.get("hit_rate") is None else float(data["hit_rate"]),
                read_replica=bool(data.get("read_replica", replica)),
                max_capacity=None if data.get("max_capacity") is None else int(data["max_capacity"]),
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"invalid node spec {data!r}: {e}") from e
        spec.validate()
        return spec

    def validate(self) -> None:
        label = self.key or self.name
        if self.kind is not NodeKind.USER:
            if self.capacity <= 0:
                raise ConfigurationError(f"{label}: capacity must be positive, got {self.capacity}")
            if self.delay_ms <= 0:
                raise ConfigurationError(f"{label}: delay_ms must be positive, got {self.delay_ms}")
        if self.hit_rate is not None and not 0.0 <= self.hit_rate <= 1.0:
            raise ConfigurationError(f"{label}: hit_rate must be within [0, 1], got {self.hit_rate}")
        if self.max_capacity is not None and self.max_capacity < self.capacity:
            raise ConfigurationError(f"{label}: max_capacity below capacity")
        if self.read_replica and self.kind is not NodeKind.DATABASE:
            raise ConfigurationError(f"{label}: only databases can be read replicas")

    def build(self, key: str, max_concurrent: Optional[int] = None) -> Node:
        return Node(
            key=key,
            name=self.name,
            kind=self.kind,
            capacity=self.capacity,
            base_delay_ms=self.delay_ms,
            max_capacity=self.max_capacity,
            hit_rate=self.hit_rate,
            read_replica=self.read_replica,
            max_concurrent=max_concurrent if self.kind is NodeKind.USER else None,
        )


@dataclass
class DifficultyStage:
    traffic_delay_ms: float
    packets_per_wave: int
    message: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DifficultyStage":
        try:
            stage = cls(
                traffic_delay_ms=float(data["traffic_delay_ms"]),
                packets_per_wave=int(data["packets_per_wave"]),
                message=str(data.get("message", "")),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"invalid difficulty stage {data!r}: {e}") from e
        if stage.traffic_delay_ms <= 0 or stage.packets_per_wave <= 0:
            raise ConfigurationError(f"difficulty stage must have positive delay and wave size: {data!r}")
        return stage


@dataclass
class Economics:
    starting_money: int = 1500
    upgrade_costs: Dict[str, int] = field(default_factory=dict)
    purchase_costs: Dict[str, int] = field(default_factory=dict)
    limits: Dict[str, int] = field(default_factory=dict)
    default_node_specs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Economics":
        data = data or {}
        return cls(
            starting_money=int(data.get("starting_money", 1500)),
            upgrade_costs={str(k): int(v) for k, v in (data.get("upgrade_costs") or {}).items()},
            purchase_costs={str(k): int(v) for k, v in (data.get("purchase_costs") or {}).items()},
            limits={str(k): int(v) for k, v in (data.get("limits") or {}).items()},
            default_node_specs=dict(data.get("default_node_specs") or {}),
        )

    def upgrade_cost(self, kind: NodeKind, read_replica: bool = False) -> int:
        key = catalog_key(kind, read_replica)
        return self.upgrade_costs.get(key, self.upgrade_costs.get(kind.value, 0))

    def purchase_cost(self, kind: NodeKind, read_replica: bool = False) -> int:
        return self.purchase_costs.get(catalog_key(kind, read_replica), 0)

    def limit(self, kind: NodeKind, read_replica: bool = False) -> Optional[int]:
        return self.limits.get(catalog_key(kind, read_replica))

    def default_spec(self, kind: NodeKind, read_replica: bool = False) -> NodeSpec:
        key = catalog_key(kind, read_replica)
        data = self.default_node_specs.get(key)
        if data is None:
            raise ConfigurationError(f"no default spec for {key}")
        data = dict(data)
        data.setdefault("read_replica", read_replica)
        return NodeSpec.from_dict(data, kind=kind)


@dataclass
class LevelConfig:
    number: int
    title: str
    target_total: int
    max_error_rate: float
    initial_traffic_delay_ms: float
    initial_packets_per_wave: int
    difficulty_interval_ms: float
    stages: List[DifficultyStage] = field(default_factory=list)
    nodes: List[NodeSpec] = field(default_factory=list)
    revenue_per_request: int = 10
    user_max_concurrent: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LevelConfig":
        try:
            level = cls(
                number=int(data["number"]),
                title=str(data.get("title", f"Level {data['number']}")),
                target_total=int(data["target_total"]),
                max_error_rate=float(data.get("max_error_rate", 1.0)),
                initial_traffic_delay_ms=float(data["initial_traffic_delay_ms"]),
                initial_packets_per_wave=int(data["initial_packets_per_wave"]),
                difficulty_interval_ms=float(data["difficulty_interval_ms"]),
                stages=[DifficultyStage.from_dict(s) for s in data.get("stages") or []],
                nodes=[NodeSpec.from_dict(n) for n in data.get("nodes") or []],
                revenue_per_request=int(data.get("revenue_per_request", 10)),
                user_max_concurrent=(
                    None if data.get("user_max_concurrent") is None else int(data["user_max_concurrent"])
                ),
            )
        except ConfigurationError:
            raise
        except KeyError as e:
            raise ConfigurationError(f"level is missing field {e}") from e
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"invalid level data: {e}") from e
        level.validate()
        return level

    def validate(self) -> None:
        if self.target_total <= 0:
            raise ConfigurationError(f"level {self.number}: target_total must be positive")
        if not any(spec.kind is NodeKind.USER for spec in self.nodes):
            raise ConfigurationError(f"level {self.number}: topology has no user nodes")
        if self.initial_traffic_delay_ms <= 0 or self.initial_packets_per_wave <= 0:
            raise ConfigurationError(f"level {self.number}: initial traffic must be positive")
        if self.difficulty_interval_ms <= 0:
            raise ConfigurationError(f"level {self.number}: difficulty_interval_ms must be positive")
        keys = [spec.key for spec in self.nodes if spec.key]
        if len(keys) != len(set(keys)):
            raise ConfigurationError(f"level {self.number}: duplicate node keys")
        for spec in self.nodes:
            spec.validate()

    def stage(self, difficulty_level: int) -> Optional[DifficultyStage]:
        """Stage for a 1-based difficulty counter, ``None`` past the table."""
        if 1 <= difficulty_level <= len(self.stages):
            return self.stages[difficulty_level - 1]
        return None


class LevelCatalog:
    def __init__(self, levels: List[LevelConfig], economics: Optional[Economics] = None) -> None:
        self.economics = economics or Economics()
        self._levels: Dict[int, LevelConfig] = {}
        for level in levels:
            if level.number in self._levels:
                raise ConfigurationError(f"duplicate level number {level.number}")
            self._levels[level.number] = level

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LevelCatalog":
        if not isinstance(data, dict):
            raise ConfigurationError("level file must contain a mapping")
        levels = [LevelConfig.from_dict(item) for item in data.get("levels") or []]
        if not levels:
            raise ConfigurationError("no levels defined")
        return cls(levels, Economics.from_dict(data.get("economics")))

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "LevelCatalog":
        path = Path(path)
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
        catalog = cls.from_dict(data)
        logger.info(f"Loaded {len(catalog.numbers())} levels from {path}")
        return catalog

    @classmethod
    def default(cls) -> "LevelCatalog":
        return cls.from_yaml(DEFAULT_LEVELS_PATH)

    def get(self, number: int) -> LevelConfig:
        try:
            return self._levels[int(number)]
        except (KeyError, ValueError):
            raise KeyError(f"unknown level {number}") from None

    def numbers(self) -> List[int]:
        return sorted(self._levels)

    def __iter__(self):
        return iter(self._levels[n] for n in self.numbers())

    def __len__(self) -> int:
        return len(self._levels)
