"""
CLI commands for the ECS scheduler.

Inspects configuration and drives the scheduler against an in-memory cluster:
placement layouts, target-tracking math and an end-to-end simulation.
"""

import itertools
import logging
from collections import defaultdict

import click

from ecs_scheduler.capacity import CapacityScaler
from ecs_scheduler.config.settings import get_settings
from ecs_scheduler.deployment import DeploymentController
from ecs_scheduler.errors import DeploymentFailure
from ecs_scheduler.models import (
    CapacityProvider,
    DeploymentPolicy,
    Instance,
    MetricType,
    PlacementConstraint,
    PlacementStrategy,
    ResourceType,
    ScalingPolicy,
    Service,
    TaskDefinition,
)
from ecs_scheduler.registry import ClusterRegistry
from ecs_scheduler.scheduler import ServiceScheduler
from ecs_scheduler.service_scaler import ServiceScaler
from ecs_scheduler.simulation import (
    InMemoryInstanceGroup,
    RecordingLoadBalancer,
    StaticHealthChecker,
    StaticMetricsSource,
)

logger = logging.getLogger(__name__)


def parse_strategy(text: str) -> PlacementStrategy:
    """'spread', 'spread:<field>', 'binpack' or 'binpack:<cpu|memory>'."""
    kind, _, field = text.partition(":")
    kind = kind.strip().lower()
    try:
        if kind == "spread":
            return PlacementStrategy.spread(field) if field else PlacementStrategy.spread()
        if kind == "binpack":
            return PlacementStrategy.binpack(ResourceType(field)) if field else PlacementStrategy.binpack()
    except ValueError as e:
        raise click.BadParameter(str(e))
    raise click.BadParameter(f"Unknown placement strategy {text!r}")


def parse_constraint(text: str) -> PlacementConstraint:
    """'distinctInstance' or 'memberOf:<expression>'."""
    kind, _, expression = text.partition(":")
    try:
        if kind == "distinctInstance":
            return PlacementConstraint.distinct_instance()
        if kind == "memberOf":
            return PlacementConstraint.member_of(expression)
    except ValueError as e:
        raise click.BadParameter(str(e))
    raise click.BadParameter(f"Unknown placement constraint {text!r}")


def print_layout(registry: ClusterRegistry):
    by_instance = defaultdict(list)
    for task in registry.list_tasks():
        if task.is_active and task.instance_id:
            by_instance[task.instance_id].append(task)

    for instance in registry.list_instances():
        tasks = by_instance.get(instance.instance_id, [])
        click.echo(
            f"  {instance.instance_id} [{instance.availability_zone}] {instance.status.value}: "
            f"{len(tasks)} task(s), cpu {instance.available_cpu}/{instance.total_cpu} "
            f"memory {instance.available_memory}/{instance.total_memory} free"
        )
    pending = registry.pending_tasks()
    if pending:
        click.echo(f"  pending: {len(pending)} task(s)")


@click.group()
@click.option("--log-level", default=None, help="Logging level (defaults to LOG_LEVEL)")
def cli(log_level):
    """CLI commands for the ECS scheduler"""
    level = (log_level or get_settings().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


@cli.command("show-config")
def show_config():
    """Print the effective settings"""
    settings = get_settings()
    click.echo(f"Configuration ({settings.deployment_mode}):")
    for key, value in settings.model_dump().items():
        if "secret" in key and value:
            value = "****"
        click.echo(f"  {key}: {value}")


@cli.command()
@click.option("--instances", default=4, show_default=True, help="Instances in the fleet")
@click.option("--zones", default="us-east-1a,us-east-1b", show_default=True, help="Comma-separated zones")
@click.option("--instance-cpu", default=2048, show_default=True)
@click.option("--instance-memory", default=3928, show_default=True)
@click.option("--count", default=1, show_default=True, help="Tasks to place")
@click.option("--cpu", default=256, type=click.IntRange(min=0), show_default=True, help="CPU units per task")
@click.option("--memory", default=512, type=click.IntRange(min=1), show_default=True, help="Memory (MiB) per task")
@click.option("--strategy", "strategies", multiple=True,
              help="spread[:field] or binpack[:cpu|memory], applied in order")
@click.option("--constraint", "constraints", multiple=True,
              help="distinctInstance or memberOf:<expression>")
def place(instances, zones, instance_cpu, instance_memory, count, cpu, memory, strategies, constraints):
    """Place tasks on an in-memory fleet and print the layout"""
    zone_list = [z.strip() for z in zones.split(",") if z.strip()]
    if not zone_list:
        raise click.BadParameter("At least one zone is required", param_hint="--zones")

    registry = ClusterRegistry()
    for n in range(instances):
        registry.register_instance(Instance(
            instance_id=f"i-{n + 1:017x}",
            availability_zone=zone_list[n % len(zone_list)],
            instance_type="t3.medium",
            total_cpu=instance_cpu,
            total_memory=instance_memory,
        ))

    scheduler = ServiceScheduler(registry)
    service = scheduler.register_service(Service(
        name="cli",
        task_definition=TaskDefinition("cli", 1, cpu, memory),
        desired_count=count,
        placement_strategies=[parse_strategy(s) for s in strategies],
        placement_constraints=[parse_constraint(c) for c in constraints],
    ))
    result = scheduler.reconcile_service(service)
    stopped = [t for t in registry.list_tasks(service_name="cli") if not t.is_active]

    placed = len([t for t in scheduler.active_tasks("cli") if t.instance_id])
    click.echo(f"📦 Placed {placed}/{result['desired']} task(s)")
    print_layout(registry)
    for task in stopped:
        click.echo(f"  ❌ {task.task_id}: {task.stopped_reason}")


@cli.command()
@click.option("--metric", type=float, required=True, help="Observed utilization (percent)")
@click.option("--target", type=float, required=True, help="Target utilization (percent)")
@click.option("--current", type=int, required=True, help="Current desired count")
@click.option("--min-capacity", default=1, show_default=True)
@click.option("--max-capacity", default=10, show_default=True)
@click.option("--tolerance", type=float, default=None, help="Defaults to SCALING_TOLERANCE")
def target(metric, target, current, min_capacity, max_capacity, tolerance):
    """Compute a target-tracking desired count"""
    settings = get_settings()
    try:
        policy = ScalingPolicy(
            metric_type=MetricType.CPU_UTILIZATION,
            target_value=target,
            min_capacity=min_capacity,
            max_capacity=max_capacity,
            tolerance=settings.scaling_tolerance if tolerance is None else tolerance,
        )
    except ValueError as e:
        raise click.UsageError(str(e))
    desired = ServiceScaler(policy).reconcile(metric, target, current)
    click.echo(f"Desired count: {current} → {desired}")


@cli.command()
@click.option("--desired", default=6, show_default=True, help="Initial desired count of the service")
@click.option("--task-cpu", default=512, type=click.IntRange(min=0), show_default=True)
@click.option("--task-memory", default=1024, type=click.IntRange(min=1), show_default=True)
@click.option("--max-instances", default=10, show_default=True)
@click.option("--load", type=float, default=90.0, show_default=True,
              help="CPU utilization reported for the service (percent)")
@click.option("--cycles", default=3, show_default=True, help="Capacity reconcile cycles per phase")
def simulate(desired, task_cpu, task_memory, max_instances, load, cycles):
    """Run placement, scaling and a rolling deployment on an in-memory cluster"""
    settings = get_settings()
    registry = ClusterRegistry()
    group = InMemoryInstanceGroup(
        registry,
        instance_cpu=settings.instance_cpu,
        instance_memory=settings.instance_memory,
        max_size=max_instances,
    )
    scheduler = ServiceScheduler(registry, load_balancer=RecordingLoadBalancer())
    provider = CapacityProvider(
        name="simulated",
        instance_group="in-memory",
        target_capacity=settings.capacity_target_utilization,
        minimum_scaling_step_size=settings.minimum_scaling_step_size,
        maximum_scaling_step_size=settings.maximum_scaling_step_size,
        managed_termination_protection=settings.managed_termination_protection,
        instance_warmup_period=0,
        instance_cpu=settings.instance_cpu,
        instance_memory=settings.instance_memory,
    )
    capacity = CapacityScaler(provider, registry, group, scheduler)

    service = scheduler.register_service(Service(
        name="web",
        task_definition=TaskDefinition("web", 1, task_cpu, task_memory),
        desired_count=desired,
        placement_strategies=[PlacementStrategy.spread(), PlacementStrategy.binpack(ResourceType.MEMORY)],
        deployment_policy=DeploymentPolicy(minimum_healthy_percent=50, maximum_percent=200),
    ))

    def run_capacity(phase):
        for _ in range(cycles):
            action = capacity.run_cycle()
            click.echo(f"  [{phase}] {action.action.value}: {action.reason}")

    click.echo(f"🚀 Launching {desired} task(s) of {service.task_definition.name}")
    scheduler.reconcile_service(service)
    run_capacity("launch")
    print_layout(registry)

    metrics = StaticMetricsSource()
    metrics.set_utilization("web", MetricType.CPU_UTILIZATION, load)
    service_scaler = ServiceScaler(
        ScalingPolicy(MetricType.CPU_UTILIZATION, target_value=60.0, min_capacity=1,
                      max_capacity=max(desired * 2, 1), tolerance=settings.scaling_tolerance),
        metrics=metrics,
        scheduler=scheduler,
    )
    before = service.desired_count
    service_scaler.evaluate(service)
    click.echo(f"⚖️  Service scaler at {load:.0f}% CPU: {before} → {service.desired_count} task(s)")
    run_capacity("scale")
    print_layout(registry)

    # Simulated time: every poll advances the clock one second and runs a capacity cycle
    ticks = itertools.count()
    deployments = DeploymentController(
        scheduler, StaticHealthChecker(polls_until_healthy=1),
        health_check_timeout=30, poll_interval=1,
        clock=lambda: float(next(ticks)), sleep=lambda seconds: capacity.run_cycle(),
    )
    new_definition = TaskDefinition("web", 2, task_cpu, task_memory)
    try:
        for event in deployments.roll_out(service, new_definition):
            click.echo(f"  [deploy] {event.state.value}: {event.message}")
    except DeploymentFailure as e:
        click.echo(f"❌ {e}")
    run_capacity("deploy")
    print_layout(registry)

    click.echo(
        f"✅ Simulation complete: {len(registry.list_instances())} instance(s), "
        f"{len(scheduler.active_tasks('web'))} active task(s), "
        f"{len(registry.pending_tasks())} pending"
    )


if __name__ == "__main__":
    cli()
