"""
Workflow analytics computed from tasks, delegation records and step progress.
Following Single Responsibility Principle - read-only aggregation only.

All computations run over an AnalyticsSnapshot and never touch live state.
Ratios over empty input are 0 and lists are empty, never None.
"""

import json
import warnings
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml

from .enums import StepState, SuccessPolicy, TaskStatus
from .exceptions import DataQualityWarning, ValidationError
from .models import DelegationRecord, Task, WorkflowStepProgress


FLOW_LIMIT = 10
BOTTLENECK_LIMIT = 5
HOTSPOT_LIMIT = 10


def round1(value: float) -> float:
    """Round half up to one decimal place"""
    return float(Decimal(repr(value)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def _percentage(part: int, whole: int) -> float:
    return round1(part / whole * 100) if whole else 0.0


def _average(values: List[float]) -> float:
    return round1(sum(values) / len(values)) if values else 0.0


@dataclass
class AnalyticsSnapshot:
    """Consistent read-only view handed to WorkflowAnalytics"""
    tasks: List[Task] = field(default_factory=list)
    records: List[DelegationRecord] = field(default_factory=list)
    progress: List[WorkflowStepProgress] = field(default_factory=list)


class WorkflowAnalytics:
    """
    Computes summary, distribution, efficiency, flow and bottleneck metrics.

    Args:
        success_policy: How a record with unknown success is judged.
            LEGACY_DURATION counts it as successful when its duration is
            positive; STRICT only counts explicit successes.
        duration_unit: Unit durations are reported in (hours by default)
    """

    def __init__(self, success_policy: SuccessPolicy = SuccessPolicy.LEGACY_DURATION,
                 duration_unit: timedelta = timedelta(hours=1),
                 clock: Callable[[], datetime] = datetime.now):
        self.success_policy = success_policy
        self.duration_unit = duration_unit
        self.clock = clock

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _duration(self, record: DelegationRecord) -> float:
        """Record duration in the configured unit; 0 when open or inconsistent"""
        if record.completed_at is None:
            return 0.0
        value = record.duration_in(self.duration_unit)
        if value < 0:
            warnings.warn(
                f"Delegation {record.id} completes before it was delegated; duration ignored",
                DataQualityWarning,
                stacklevel=3,
            )
            return 0.0
        return value

    def is_successful(self, record: DelegationRecord) -> bool:
        if record.success is not None:
            return record.success
        if self.success_policy == SuccessPolicy.LEGACY_DURATION:
            return self._duration(record) > 0
        return False

    # ------------------------------------------------------------------
    # Task metrics
    # ------------------------------------------------------------------

    def summary_metrics(self, snapshot: AnalyticsSnapshot) -> Dict[str, Any]:
        tasks = snapshot.tasks
        total = len(tasks)
        counts = Counter(t.status.value for t in tasks)
        completed = counts.get(TaskStatus.COMPLETED.value, 0)

        durations = [
            t.duration / self.duration_unit for t in tasks
            if t.status == TaskStatus.COMPLETED and t.duration is not None
            and t.duration > timedelta(0)
        ]
        records = snapshot.records
        successful = sum(1 for r in records if r.success is True)

        return {
            "total_tasks": total,
            "completed_tasks": completed,
            "in_progress_tasks": counts.get(TaskStatus.IN_PROGRESS.value, 0),
            "counts_by_status": dict(counts),
            "completion_rate": completed / total if total else 0.0,
            "completion_percentage": _percentage(completed, total),
            "average_completion_time": _average(durations),
            "total_delegations": len(records),
            "successful_delegations": successful,
            "delegation_success_rate": _percentage(successful, len(records)),
        }

    def task_distribution(self, snapshot: AnalyticsSnapshot) -> Dict[str, Dict[str, int]]:
        return {
            "by_status": dict(Counter(t.status.value for t in snapshot.tasks)),
            "by_priority": dict(Counter(t.priority or "Unknown" for t in snapshot.tasks)),
            "by_owner": dict(Counter(t.owner or "Unassigned" for t in snapshot.tasks)),
        }

    def completion_trends(self, snapshot: AnalyticsSnapshot) -> List[Dict[str, Any]]:
        """
        Started and completed task counts per calendar month (YYYY-MM).

        A completed task without a completion timestamp is counted in its
        creation month, with a DataQualityWarning.
        """
        trends: Dict[str, Dict[str, int]] = defaultdict(lambda: {"started": 0, "completed": 0})
        for task in snapshot.tasks:
            trends[task.created_at.strftime("%Y-%m")]["started"] += 1
            if task.status != TaskStatus.COMPLETED:
                continue
            finished = task.completed_at
            if finished is None:
                warnings.warn(
                    f"Task {task.id} is completed but has no completion timestamp; "
                    f"using its creation month",
                    DataQualityWarning,
                    stacklevel=2,
                )
                finished = task.created_at
            trends[finished.strftime("%Y-%m")]["completed"] += 1

        return [
            {"period": period, "started": data["started"], "completed": data["completed"]}
            for period, data in sorted(trends.items())
        ]

    # ------------------------------------------------------------------
    # Delegation metrics
    # ------------------------------------------------------------------

    def role_efficiency(self, snapshot: AnalyticsSnapshot) -> Dict[str, Dict[str, Any]]:
        """Per destination role: handoffs received, finished, average duration, success rate"""
        by_role: Dict[str, List[DelegationRecord]] = defaultdict(list)
        for record in snapshot.records:
            by_role[record.to_role].append(record)

        efficiency = {}
        for role, records in sorted(by_role.items()):
            durations = [d for d in (self._duration(r) for r in records) if d > 0]
            successful = sum(1 for r in records if self.is_successful(r))
            efficiency[role] = {
                "role": role,
                "tasks_received": len(records),
                "tasks_completed": len(durations),
                "average_duration": _average(durations),
                "success_rate": _percentage(successful, len(records)),
            }
        return efficiency

    def delegation_flow(self, snapshot: AnalyticsSnapshot) -> List[Dict[str, Any]]:
        """Most frequent (from_role, to_role) pairs, at most ten, by count descending"""
        pairs: Dict[Tuple[str, str], List[DelegationRecord]] = defaultdict(list)
        for record in snapshot.records:
            pairs[(record.from_role, record.to_role)].append(record)

        ranked = sorted(pairs.items(), key=lambda item: (-len(item[1]), item[0]))
        return [
            {
                "from_role": from_role,
                "to_role": to_role,
                "count": len(records),
                "success_rate": _percentage(sum(1 for r in records if self.is_successful(r)),
                                            len(records)),
            }
            for (from_role, to_role), records in ranked[:FLOW_LIMIT]
        ]

    def bottlenecks(self, snapshot: AnalyticsSnapshot) -> List[Dict[str, Any]]:
        """Destination roles with the longest average wait, at most five"""
        waits: Dict[str, List[float]] = defaultdict(list)
        for record in snapshot.records:
            duration = self._duration(record)
            if duration > 0:
                waits[record.to_role].append(duration)

        ranked = sorted(waits.items(), key=lambda item: (-sum(item[1]) / len(item[1]), item[0]))
        return [
            {"stage": stage, "average_wait_time": _average(values), "task_count": len(values)}
            for stage, values in ranked[:BOTTLENECK_LIMIT]
        ]

    def redelegation_hotspots(self, snapshot: AnalyticsSnapshot) -> List[Dict[str, Any]]:
        """Failed handoffs grouped by transition with their distinct rejection reasons"""
        hotspots: Dict[Tuple[str, str], Dict[str, Any]] = {}
        for record in snapshot.records:
            if record.success is not False:
                continue
            entry = hotspots.setdefault((record.from_role, record.to_role),
                                        {"count": 0, "reasons": []})
            entry["count"] += 1
            if record.rejection_reason and record.rejection_reason not in entry["reasons"]:
                entry["reasons"].append(record.rejection_reason)

        ranked = sorted(hotspots.items(), key=lambda item: (-item[1]["count"], item[0]))
        return [
            {
                "transition": f"{from_role} -> {to_role}",
                "from_role": from_role,
                "to_role": to_role,
                "count": data["count"],
                "reasons": data["reasons"],
            }
            for (from_role, to_role), data in ranked[:HOTSPOT_LIMIT]
        ]

    # ------------------------------------------------------------------
    # Step metrics
    # ------------------------------------------------------------------

    def step_statistics(self, snapshot: AnalyticsSnapshot) -> Dict[str, Dict[str, Any]]:
        """Per step: number of tasks in each state and average attempts"""
        by_step: Dict[str, List[WorkflowStepProgress]] = defaultdict(list)
        for progress in snapshot.progress:
            by_step[progress.step_id].append(progress)

        stats = {}
        for step_id, rows in sorted(by_step.items()):
            states = Counter(p.state for p in rows)
            entry: Dict[str, Any] = {"role_id": rows[0].role_id, "total": len(rows)}
            for state in StepState:
                entry[state.value] = states.get(state, 0)
            entry["average_attempts"] = _average([float(p.attempts) for p in rows])
            stats[step_id] = entry
        return stats

    # ------------------------------------------------------------------
    # Report
    # ------------------------------------------------------------------

    def generate_report(self, snapshot: AnalyticsSnapshot) -> Dict[str, Any]:
        return {
            "generated_at": self.clock().isoformat(),
            "success_policy": self.success_policy.value,
            "summary": self.summary_metrics(snapshot),
            "distribution": self.task_distribution(snapshot),
            "role_efficiency": self.role_efficiency(snapshot),
            "delegation_flow": self.delegation_flow(snapshot),
            "bottlenecks": self.bottlenecks(snapshot),
            "completion_trends": self.completion_trends(snapshot),
            "redelegation_hotspots": self.redelegation_hotspots(snapshot),
            "step_statistics": self.step_statistics(snapshot),
        }

    def export_report(self, snapshot: AnalyticsSnapshot, format: str = "json",
                      report: Optional[Dict[str, Any]] = None) -> str:
        """Serialize a report as JSON or YAML"""
        report = report if report is not None else self.generate_report(snapshot)
        if format == "json":
            return json.dumps(report, indent=2, default=str)
        elif format == "yaml":
            return yaml.safe_dump(report, default_flow_style=False, allow_unicode=True, sort_keys=False)
        else:
            raise ValidationError(
                f"Unsupported export format: {format}",
                field="format",
                value=format,
                context={"supported_formats": ["json", "yaml"]}
            )
