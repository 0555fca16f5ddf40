"""
Cross-cutting governance services honored by every phase.

- RetryService: bounded exponential backoff for transient failures
- CostBudgetService: per-task and per-phase spend ceilings
- SecretsDetectionService: redaction of agent output and payloads
- SchemaValidationService: structured-output contract checks
"""

from taskforge.governance.budget import BudgetCheck, CostBudgetService
from taskforge.governance.retry import RetryExhaustedError, RetryService, SettledResult
from taskforge.governance.schema_validation import (
    ContractValidationError,
    OUTPUT_CONTRACTS,
    SchemaValidationService,
)
from taskforge.governance.secrets import DetectionResult, SecretsDetectionService

__all__ = [
    "BudgetCheck",
    "CostBudgetService",
    "RetryExhaustedError",
    "RetryService",
    "SettledResult",
    "ContractValidationError",
    "OUTPUT_CONTRACTS",
    "SchemaValidationService",
    "DetectionResult",
    "SecretsDetectionService",
]
