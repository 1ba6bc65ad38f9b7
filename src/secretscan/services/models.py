"""
Job service data models.

Contains dataclasses for run results, reconcile results and in-flight runs.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from secretscan.core.models import Consumer, Finding


@dataclass
class RunResult:
    """Result of one scan run."""

    findings: list[Finding] = field(default_factory=list)
    consumers: list[Consumer] = field(default_factory=list)
    used_stores: list[str] = field(default_factory=list)
    failed_stores: list[str] = field(default_factory=list)
    failed_targets: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0


@dataclass
class ReconcileResult:
    """Outcome of a reconcile pass. ``requeue_after`` of None means no requeue."""

    requeue_after: Optional[float] = None


@dataclass
class RunHandle:
    """An in-flight run spawned by the controller."""

    task: asyncio.Task
    started_at: datetime

    def done(self) -> bool:
        return self.task.done()

