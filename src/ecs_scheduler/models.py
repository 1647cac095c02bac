"""
Cluster, task and scaling models shared by the scheduler components.
"""
import re
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Set


class ResourceType(str, Enum):
    """Schedulable instance resources"""
    CPU = "cpu"
    MEMORY = "memory"


class InstanceStatus(str, Enum):
    """Container instance membership in the cluster"""
    IN_SERVICE = "in_service"     # Accepts new tasks
    DRAINING = "draining"         # Selected for scale-in, no new tasks
    TERMINATING = "terminating"   # Handed back to the instance group


class TaskState(str, Enum):
    """Task lifecycle states"""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"


ACTIVE_TASK_STATES = (TaskState.PENDING, TaskState.RUNNING)


class NetworkMode(str, Enum):
    """Task networking modes"""
    BRIDGE = "bridge"


# Built-in attribute names accepted by spread strategies and memberOf expressions
_ATTRIBUTE_ALIASES = {
    "instanceid": "instance_id",
    "attribute:ecs.instance-id": "instance_id",
    "attribute:ecs.availability-zone": "availability_zone",
    "availability-zone": "availability_zone",
    "availabilityzone": "availability_zone",
    "az": "availability_zone",
    "attribute:ecs.instance-type": "instance_type",
    "instance-type": "instance_type",
    "instancetype": "instance_type",
}


@dataclass
class Instance:
    """A container instance registered with the cluster."""
    instance_id: str
    availability_zone: str
    instance_type: str
    total_cpu: int
    total_memory: int
    available_cpu: Optional[int] = None
    available_memory: Optional[int] = None
    status: InstanceStatus = InstanceStatus.IN_SERVICE
    protected_from_scale_in: bool = False
    launch_time: datetime = field(default_factory=datetime.now)
    attributes: Dict[str, str] = field(default_factory=dict)
    allocated_ports: Set[int] = field(default_factory=set)

    def __post_init__(self):
        if self.available_cpu is None:
            self.available_cpu = self.total_cpu
        if self.available_memory is None:
            self.available_memory = self.total_memory

    def available(self, resource: ResourceType) -> int:
        """Remaining amount of a resource."""
        if ResourceType(resource) == ResourceType.CPU:
            return self.available_cpu
        return self.available_memory

    def can_fit(self, cpu: int, memory: int) -> bool:
        return self.available_cpu >= cpu and self.available_memory >= memory

    def could_ever_fit(self, cpu: int, memory: int) -> bool:
        return self.total_cpu >= cpu and self.total_memory >= memory

    def attribute(self, name: str) -> Optional[str]:
        """Resolve a built-in or custom attribute by name."""
        key = _ATTRIBUTE_ALIASES.get(name.lower())
        if key:
            return getattr(self, key)
        if name in self.attributes:
            return self.attributes[name]
        if name.startswith("attribute:"):
            return self.attributes.get(name[len("attribute:"):])
        return None

    def to_dict(self):
        data = asdict(self)
        data['status'] = self.status.value
        data['launch_time'] = self.launch_time.isoformat()
        data['allocated_ports'] = sorted(self.allocated_ports)
        return data


@dataclass(frozen=True)
class TaskDefinition:
    """Resource requirements and container settings of a task family revision."""
    family: str
    revision: int
    cpu: int
    memory: int
    container_port: int = 80
    network_mode: NetworkMode = NetworkMode.BRIDGE

    def __post_init__(self):
        if self.cpu < 0:
            raise ValueError(f"cpu must not be negative, got {self.cpu}")
        if self.memory <= 0:
            raise ValueError(f"memory must be positive, got {self.memory}")

    @property
    def name(self) -> str:
        return f"{self.family}:{self.revision}"


@dataclass
class Task:
    """A single task of a service."""
    task_id: str
    service_name: str
    task_definition: TaskDefinition
    instance_id: Optional[str] = None
    host_port: Optional[int] = None
    state: TaskState = TaskState.PENDING
    created_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    stopped_reason: Optional[str] = None

    @property
    def cpu(self) -> int:
        return self.task_definition.cpu

    @property
    def memory(self) -> int:
        return self.task_definition.memory

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_TASK_STATES

    def to_dict(self):
        return {
            'task_id': self.task_id,
            'service_name': self.service_name,
            'task_definition': self.task_definition.name,
            'cpu': self.cpu,
            'memory': self.memory,
            'instance_id': self.instance_id,
            'host_port': self.host_port,
            'state': self.state.value,
            'created_at': self.created_at.isoformat(),
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'stopped_reason': self.stopped_reason,
        }


class PlacementStrategyType(str, Enum):
    SPREAD = "spread"
    BINPACK = "binpack"


@dataclass(frozen=True)
class PlacementStrategy:
    """Ordering rule applied to candidate instances."""
    type: PlacementStrategyType
    field: str

    @classmethod
    def spread(cls, field: str = "attribute:ecs.availability-zone") -> "PlacementStrategy":
        return cls(PlacementStrategyType.SPREAD, field)

    @classmethod
    def binpack(cls, resource: ResourceType = ResourceType.MEMORY) -> "PlacementStrategy":
        return cls(PlacementStrategyType.BINPACK, ResourceType(resource).value)


class PlacementConstraintType(str, Enum):
    DISTINCT_INSTANCE = "distinctInstance"
    MEMBER_OF = "memberOf"


_CLAUSE = re.compile(
    r"^\s*(?P<attr>\S+)\s+(?P<op>==|!=|not\s+in|in)\s+(?P<value>.+?)\s*$",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class PlacementConstraint:
    """Hard filter on eligible instances."""
    type: PlacementConstraintType
    expression: Optional[str] = None

    @classmethod
    def distinct_instance(cls) -> "PlacementConstraint":
        return cls(PlacementConstraintType.DISTINCT_INSTANCE)

    @classmethod
    def member_of(cls, expression: str) -> "PlacementConstraint":
        constraint = cls(PlacementConstraintType.MEMBER_OF, expression)
        constraint.clauses()  # fail early on malformed expressions
        return constraint

    def clauses(self):
        """Parse a memberOf expression into (attribute, operator, values) clauses."""
        if not self.expression:
            raise ValueError("memberOf constraint requires an expression")
        parsed = []
        for raw in re.split(r"\s+and\s+", self.expression.strip(), flags=re.IGNORECASE):
            match = _CLAUSE.match(raw)
            if not match:
                raise ValueError(f"Unsupported constraint expression: {raw!r}")
            op = " ".join(match.group("op").lower().split())
            value = match.group("value")
            if op in ("in", "not in"):
                if not (value.startswith("[") and value.endswith("]")):
                    raise ValueError(f"Expected a [list] after '{op}' in {raw!r}")
                values = [v.strip() for v in value[1:-1].split(",") if v.strip()]
            else:
                values = [value.strip()]
            parsed.append((match.group("attr"), op, values))
        return parsed

    def matches(self, instance: Instance) -> bool:
        """Evaluate a memberOf expression against an instance."""
        for attr, op, values in self.clauses():
            actual = instance.attribute(attr)
            if op == "==" and actual != values[0]:
                return False
            if op == "!=" and actual == values[0]:
                return False
            if op == "in" and actual not in values:
                return False
            if op == "not in" and actual in values:
                return False
        return True


@dataclass(frozen=True)
class DeploymentPolicy:
    """Bounds on task counts during a rolling deployment."""
    minimum_healthy_percent: int = 100
    maximum_percent: int = 200


@dataclass
class Service:
    """Long-running set of tasks of one task definition."""
    name: str
    task_definition: TaskDefinition
    desired_count: int = 1
    placement_strategies: List[PlacementStrategy] = field(default_factory=list)
    placement_constraints: List[PlacementConstraint] = field(default_factory=list)
    deployment_policy: DeploymentPolicy = field(default_factory=DeploymentPolicy)

    def to_dict(self):
        return {
            'name': self.name,
            'task_definition': self.task_definition.name,
            'desired_count': self.desired_count,
            'placement_strategies': [
                {'type': s.type.value, 'field': s.field} for s in self.placement_strategies
            ],
            'placement_constraints': [
                {'type': c.type.value, 'expression': c.expression} for c in self.placement_constraints
            ],
            'deployment_policy': asdict(self.deployment_policy),
        }


@dataclass
class CapacityProvider:
    """Binds an instance group to the cluster's managed scaling behavior."""
    name: str
    instance_group: str
    target_capacity: int = 100  # percent
    minimum_scaling_step_size: int = 1
    maximum_scaling_step_size: int = 10
    managed_termination_protection: bool = True
    instance_warmup_period: int = 300  # seconds
    instance_cpu: int = 2048
    instance_memory: int = 3928

    def __post_init__(self):
        if not 1 <= self.target_capacity <= 100:
            raise ValueError(f"target_capacity must be between 1 and 100, got {self.target_capacity}")
        if self.minimum_scaling_step_size < 1:
            raise ValueError("minimum_scaling_step_size must be >= 1")
        if self.maximum_scaling_step_size < self.minimum_scaling_step_size:
            raise ValueError("maximum_scaling_step_size must be >= minimum_scaling_step_size")


class MetricType(str, Enum):
    """Predefined service utilization metrics"""
    CPU_UTILIZATION = "ECSServiceAverageCPUUtilization"
    MEMORY_UTILIZATION = "ECSServiceAverageMemoryUtilization"


@dataclass
class ScalingPolicy:
    """Target-tracking policy for a service's desired count."""
    metric_type: MetricType
    target_value: float
    min_capacity: int = 1
    max_capacity: int = 10
    scale_out_cooldown: int = 300
    scale_in_cooldown: int = 300
    tolerance: float = 0.10
    disable_scale_in: bool = False

    def __post_init__(self):
        if self.target_value <= 0:
            raise ValueError(f"target_value must be positive, got {self.target_value}")
        if self.min_capacity < 0 or self.max_capacity < self.min_capacity:
            raise ValueError(
                f"Invalid capacity range [{self.min_capacity}, {self.max_capacity}]"
            )


class ScalingActionType(str, Enum):
    SCALE_OUT = "scale_out"
    SCALE_IN = "scale_in"
    NO_ACTION = "no_action"


@dataclass
class ScalingAction:
    """Instruction issued by the capacity scaler to the instance group."""
    action: ScalingActionType
    count: int = 0
    target_capacity: Optional[int] = None
    instance_ids: List[str] = field(default_factory=list)
    reason: str = ""

    @classmethod
    def no_action(cls, reason: str, target_capacity: Optional[int] = None) -> "ScalingAction":
        return cls(ScalingActionType.NO_ACTION, 0, target_capacity, [], reason)


@dataclass
class ScalingEvent:
    """Represents a scaling event."""
    timestamp: datetime
    action: str  # 'scale_out', 'scale_in', 'no_action', 'cooldown'
    reason: str
    scope: str  # 'cluster' or a service name
    count_before: int
    count_after: int

    def to_dict(self):
        return {
            **asdict(self),
            'timestamp': self.timestamp.isoformat()
        }
