from compliance_sdk.client import GatewayError, IntentGatewayClient
from compliance_sdk.models import AuditTrail, ExecutionResult, ValidationResult

__all__ = [
    "AuditTrail",
    "ExecutionResult",
    "GatewayError",
    "IntentGatewayClient",
    "ValidationResult",
]
