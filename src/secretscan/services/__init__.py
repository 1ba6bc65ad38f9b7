"""
Services Layer - Scan runs, job scheduling and consumer status.
"""

from secretscan.services.consumer_status import ConsumerStatusChecker, evaluate_consumer
from secretscan.services.container import ServicesContainer, create_services
from secretscan.services.job_controller import JobController, calculate_digest
from secretscan.services.job_runner import JobRunner, SecretStoreManager
from secretscan.services.models import ReconcileResult, RunHandle, RunResult

__all__ = [
    "ConsumerStatusChecker",
    "evaluate_consumer",
    "ServicesContainer",
    "create_services",
    "JobController",
    "calculate_digest",
    "JobRunner",
    "SecretStoreManager",
    "ReconcileResult",
    "RunHandle",
    "RunResult",
]
