"""Monitoring engine services."""
from .probe import ProbeExecutor, ProbeOutcome, ProbeResult, probe_executor
from .evaluator import Evaluation, evaluate, evaluate_ssl
from .recorder import HistoryRecorder, history_recorder
from .maintenance import MaintenanceGate, maintenance_gate
from .notifier import NotificationEngine, notification_engine
from .scheduler import CheckOutcome, SchedulerService, scheduler_service
from .lifecycle import ServiceLifecycle, service_lifecycle

__all__ = [
    "ProbeExecutor",
    "ProbeOutcome",
    "ProbeResult",
    "probe_executor",
    "Evaluation",
    "evaluate",
    "evaluate_ssl",
    "HistoryRecorder",
    "history_recorder",
    "MaintenanceGate",
    "maintenance_gate",
    "NotificationEngine",
    "notification_engine",
    "CheckOutcome",
    "SchedulerService",
    "scheduler_service",
    "ServiceLifecycle",
    "service_lifecycle",
]
