"""Order workflow: state graph, engine, and the admin-side services."""

from orderflow.orchestrator.assignment import AdminAssignmentService
from orderflow.orchestrator.disputes import DisputeResolutionService
from orderflow.orchestrator.engine import OrderWorkflowEngine
from orderflow.orchestrator.payments import PaymentService

__all__ = [
    "AdminAssignmentService",
    "DisputeResolutionService",
    "OrderWorkflowEngine",
    "PaymentService",
]
