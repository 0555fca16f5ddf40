"""Structured-output contracts - TypedDict-based validation for agent output.

Every agent role that returns structured JSON has a TypedDict contract.
SchemaValidationService checks parsed output against it, recursing into
nested contracts and list elements, and reports each violation with its
path (e.g. ``epics[0].stories[1].files_to_read``). A phase that cannot get
valid output after its repair attempts fails with a VALIDATION error
instead of trusting partially-parsed data.
"""
from typing import Any, NotRequired, TypedDict, get_args, get_origin, get_type_hints, is_typeddict

from taskforge.errors import ValidationBlockingError


# ============================================================================
# Requirements analysis
# ============================================================================


class RequirementsOutput(TypedDict):
    """Output contract for the requirements_analyst role."""

    summary: str
    requirements: list[str]
    acceptance_criteria: list[str]
    affected_repositories: list[str]


# ============================================================================
# Task breakdown
# ============================================================================


class StoryContract(TypedDict):
    """A story as produced by the project_manager role."""

    id: str
    title: str
    description: str
    files_to_read: list[str]
    files_to_modify: list[str]
    files_to_create: list[str]
    complexity: NotRequired[str]
    dependencies: NotRequired[list[str]]


class EpicContract(TypedDict):
    """An epic as produced by the project_manager role."""

    id: str
    title: str
    description: str
    target_repository: str
    stories: list[StoryContract]
    naming_conventions: NotRequired[dict[str, str]]
    contracts: NotRequired[list[str]]


class BreakdownOutput(TypedDict):
    """Output contract for the project_manager role."""

    epics: list[EpicContract]


# ============================================================================
# Team execution
# ============================================================================


class ArchitectureOutput(TypedDict):
    """Output contract for the architect role."""

    architecture_notes: str
    shared_contracts: NotRequired[list[str]]


class ReviewOutput(TypedDict):
    """Output contract for the reviewer role."""

    verdict: str
    comments: NotRequired[str]


# ============================================================================
# Integration test / fixer
# ============================================================================


class IntegrationFailure(TypedDict):
    """One failing integration test."""

    test: str
    message: str
    recoverable: bool


class IntegrationTestOutput(TypedDict):
    """Output contract for the qa_engineer role."""

    passed: bool
    failures: list[IntegrationFailure]


class FixerOutput(TypedDict):
    """Output contract for the fixer role."""

    fixed: bool
    summary: NotRequired[str]


# Allowed values for constrained string fields, keyed by (contract, field)
ALLOWED_VALUES: dict[tuple[type, str], set[str]] = {
    (ReviewOutput, "verdict"): {"approved", "changes_requested"},
    (StoryContract, "complexity"): {"simple", "medium", "complex", "very_complex"},
}


# ============================================================================
# Contract Validation
# ============================================================================


class ContractValidationError(ValidationBlockingError):
    """Raised when agent output doesn't match its contract."""

    def __init__(self, role: str, errors: list[str]):
        self.role = role
        msg = f"{role} output schema validation failed:"
        for err in errors:
            msg += f"\n  {err}"
        super().__init__(msg, errors=errors)


class SchemaValidationService:
    """Validates structured agent output against TypedDict contracts."""

    def __init__(self, contracts: dict[str, type] | None = None) -> None:
        self._contracts = dict(OUTPUT_CONTRACTS if contracts is None else contracts)

    def get_contract(self, role: str) -> type | None:
        return self._contracts.get(role)

    def register_contract(self, role: str, contract: type) -> None:
        self._contracts[role] = contract

    def validate(self, role: str, data: Any) -> list[str]:
        """Validate data against the role's contract.

        Args:
            role: Agent role value (e.g. "project_manager").
            data: Parsed JSON output.

        Returns:
            List of violations; empty when valid or when the role has no contract.
        """
        contract = self.get_contract(role)
        if contract is None:
            return []
        return self.check(data, contract)

    def validate_or_raise(self, role: str, data: Any) -> dict:
        """Validate and return data, raising ContractValidationError on violations."""
        errors = self.validate(role, data)
        if errors:
            raise ContractValidationError(role, errors)
        return data

    @classmethod
    def check(cls, data: Any, contract: type, path: str = "") -> list[str]:
        """Check a value against a TypedDict contract, recursively."""
        label = path or "<root>"
        if not isinstance(data, dict):
            return [f"{label}: expected object, got {type(data).__name__}"]

        errors: list[str] = []
        hints = get_type_hints(contract, include_extras=True)
        required = cls._get_required_keys(contract)

        for key in sorted(required - set(data.keys())):
            errors.append(f"{cls._join(path, key)}: missing required key")

        for key, value in data.items():
            if key not in hints:
                continue
            annotation = cls._unwrap_not_required(hints[key])
            key_path = cls._join(path, key)
            errors.extend(cls._check_value(value, annotation, key_path))

            allowed = ALLOWED_VALUES.get((contract, key))
            if allowed is not None and isinstance(value, str) and value not in allowed:
                errors.append(f"{key_path}: '{value}' not one of {sorted(allowed)}")

        return errors

    @classmethod
    def _check_value(cls, value: Any, annotation: Any, path: str) -> list[str]:
        if is_typeddict(annotation):
            return cls.check(value, annotation, path)

        origin = get_origin(annotation)
        if origin is list:
            if not isinstance(value, list):
                return [f"{path}: expected list, got {type(value).__name__}"]
            args = get_args(annotation)
            if not args or args[0] is Any:
                return []
            errors: list[str] = []
            for index, item in enumerate(value):
                errors.extend(cls._check_value(item, args[0], f"{path}[{index}]"))
            return errors

        if origin is dict:
            if not isinstance(value, dict):
                return [f"{path}: expected dict, got {type(value).__name__}"]
            return []

        if annotation is Any or origin is not None:
            return []

        if annotation is bool:
            if not isinstance(value, bool):
                return [f"{path}: expected bool, got {type(value).__name__}"]
            return []

        if annotation in (int, float):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return [f"{path}: expected {annotation.__name__}, got {type(value).__name__}"]
            return []

        if isinstance(annotation, type) and not isinstance(value, annotation):
            return [f"{path}: expected {annotation.__name__}, got {type(value).__name__}"]

        return []

    @classmethod
    def _get_required_keys(cls, contract: type) -> set[str]:
        """Get required keys from TypedDict (those without NotRequired)."""
        hints = get_type_hints(contract, include_extras=True)
        return {
            key for key, annotation in hints.items()
            if get_origin(annotation) is not NotRequired
        }

    @staticmethod
    def _unwrap_not_required(annotation: Any) -> Any:
        if get_origin(annotation) is NotRequired:
            args = get_args(annotation)
            if args:
                return args[0]
        return annotation

    @staticmethod
    def _join(path: str, key: str) -> str:
        return f"{path}.{key}" if path else key


# ============================================================================
# Contract Registry
# ============================================================================

OUTPUT_CONTRACTS: dict[str, type] = {
    "requirements_analyst": RequirementsOutput,
    "project_manager": BreakdownOutput,
    "architect": ArchitectureOutput,
    "reviewer": ReviewOutput,
    "qa_engineer": IntegrationTestOutput,
    "fixer": FixerOutput,
}
