"""
Service Scaler
Target tracking for a service's desired count:

    desired' = ceil(desired * observed / target), clamped to [min_capacity, max_capacity]

No action while observed/target stays inside the tolerance band, and separate
cooldowns hold back successive scale-out and scale-in actions.
"""
import logging
import math
from collections import deque
from datetime import datetime, timedelta
from typing import Deque, Dict, Optional

from ecs_scheduler.config.settings import get_settings
from ecs_scheduler.interfaces import MetricsSource
from ecs_scheduler.models import ScalingEvent, ScalingPolicy, Service

logger = logging.getLogger(__name__)

# Absorbs float noise such as 3 * 110 / 100 == 3.3000000000000003
_EPSILON = 1e-9


class ServiceScaler:
    """Target-tracking control loop for one service."""

    def __init__(self, policy: ScalingPolicy, metrics: Optional[MetricsSource] = None, scheduler=None):
        self.policy = policy
        self.metrics = metrics
        self.scheduler = scheduler
        self.last_scale_out: Optional[datetime] = None
        self.last_scale_in: Optional[datetime] = None
        self.scaling_events: Deque[ScalingEvent] = deque(maxlen=get_settings().event_history_size)

    def reconcile(self, observed_metric: float, target_value: float, current_desired_count: int,
                  now: Optional[datetime] = None, scope: str = "service") -> int:
        """Return the new desired count for an observed metric value."""
        now = now or datetime.now()
        policy = self.policy
        if target_value <= 0:
            raise ValueError(f"target_value must be positive, got {target_value}")

        ratio = observed_metric / target_value
        clamped_current = self._clamp(current_desired_count)

        if current_desired_count == 0:
            # Nothing to multiply; any load brings the service back to at least one task
            proposed = max(policy.min_capacity, 1) if observed_metric > 0 else policy.min_capacity
        elif abs(ratio - 1.0) <= policy.tolerance:
            return self._record(now, "no_action", scope, current_desired_count, clamped_current,
                                f"{observed_metric:.1f} within ±{policy.tolerance:.0%} of target {target_value:.1f}")
        else:
            proposed = math.ceil(current_desired_count * observed_metric / target_value - _EPSILON)

        desired = self._clamp(proposed)

        if desired > current_desired_count:
            if self._in_cooldown(self.last_scale_out, policy.scale_out_cooldown, now):
                return self._record(now, "cooldown", scope, current_desired_count, current_desired_count,
                                    f"Scale-out cooldown active ({policy.scale_out_cooldown}s)")
            self.last_scale_out = now
            return self._record(now, "scale_out", scope, current_desired_count, desired,
                                f"metric {observed_metric:.1f} vs target {target_value:.1f} → {proposed} task(s)")

        if desired < current_desired_count:
            if policy.disable_scale_in:
                return self._record(now, "no_action", scope, current_desired_count, current_desired_count,
                                    "Scale-in disabled by policy")
            if self._in_cooldown(self.last_scale_in, policy.scale_in_cooldown, now):
                return self._record(now, "cooldown", scope, current_desired_count, current_desired_count,
                                    f"Scale-in cooldown active ({policy.scale_in_cooldown}s)")
            self.last_scale_in = now
            return self._record(now, "scale_in", scope, current_desired_count, desired,
                                f"metric {observed_metric:.1f} vs target {target_value:.1f} → {proposed} task(s)")

        return self._record(now, "no_action", scope, current_desired_count, desired,
                            f"Desired count already {desired}")

    def evaluate(self, service: Service, now: Optional[datetime] = None) -> int:
        """Poll the metrics source and write the new desired count into the service."""
        if self.metrics is None:
            raise RuntimeError("ServiceScaler.evaluate needs a metrics source")

        observed = self.metrics.get_utilization(service.name, self.policy.metric_type)
        if observed is None:
            logger.info(f"⚖️  NO SCALING: no {self.policy.metric_type.value} datapoints for {service.name}")
        else:
            service.desired_count = self.reconcile(
                observed, self.policy.target_value, service.desired_count, now, scope=service.name)

        # Tasks lost since the last cycle are replaced even without a datapoint
        if self.scheduler is not None:
            self.scheduler.reconcile_service(service)
        return service.desired_count

    def get_scaling_status(self) -> Dict:
        return {
            "metric_type": self.policy.metric_type.value,
            "target_value": self.policy.target_value,
            "min_capacity": self.policy.min_capacity,
            "max_capacity": self.policy.max_capacity,
            "last_scale_out": self.last_scale_out.isoformat() if self.last_scale_out else None,
            "last_scale_in": self.last_scale_in.isoformat() if self.last_scale_in else None,
            "recent_events": [e.to_dict() for e in list(self.scaling_events)[-10:]],
        }

    def _clamp(self, count: int) -> int:
        return max(self.policy.min_capacity, min(self.policy.max_capacity, count))

    @staticmethod
    def _in_cooldown(last: Optional[datetime], seconds: int, now: datetime) -> bool:
        return last is not None and now - last < timedelta(seconds=seconds)

    def _record(self, now: datetime, action: str, scope: str, before: int, after: int, reason: str) -> int:
        self.scaling_events.append(ScalingEvent(
            timestamp=now,
            action=action,
            reason=reason,
            scope=scope,
            count_before=before,
            count_after=after,
        ))
        if action in ("scale_out", "scale_in"):
            emoji = "📈" if action == "scale_out" else "📉"
            logger.info(f"{emoji} {scope}: {action.upper()} {before} → {after} | {reason}")
        else:
            logger.debug(f"⚖️  {scope}: {action} at {before} | {reason}")
        return after
