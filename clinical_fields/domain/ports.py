"""Domain Ports - Abstract Contracts for the Field Engine.

This module defines the Port interfaces (abstract contracts) that Adapters must implement.
Following Hexagonal Architecture, the Domain Core defines what it needs, not how it's provided.

Architecture:
    - Pure abstract interfaces with zero infrastructure dependencies
    - One ValueStore per storage scope (patient, visit); the routing decision
      between them lives in a single policy function, not in the stores
    - Authorization is an opaque collaborator returning a Result
    - Storage adapters implement FieldRepository, which aggregates every read
      and write port plus transactions and audit flushing
"""

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from dataclasses import dataclass
from typing import Dict, Generic, List, Optional, Tuple, TypeVar, Union

from clinical_fields.domain.models import (
    Actor,
    EntityType,
    FieldCategory,
    FieldDefinition,
    FieldValue,
    MeasureRecord,
    Patient,
    TypedValue,
    Visit,
)

# Type variable for Result generic
T = TypeVar('T')


# ============================================================================
# Result Type for Success/Failure Communication
# ============================================================================

@dataclass(frozen=True)
class Result(Generic[T]):
    """Result type for communicating success or failure without exceptions.

    Formula evaluation uses it to report "unresolvable" outcomes, which are a
    normal result and never raised. Authorization checks use it to report
    denials that services surface verbatim.

    Attributes:
        success: True if the operation succeeded, False otherwise
        value: The successful result value (only present if success=True)
        error: Error information (only present if success=False)
        error_type: Type of error (Unresolvable, AccessDenied, StorageError, etc.)
        error_details: Additional error context

    Example:
        ```python
        result = evaluate_formula("{weight} * 2", {"weight": 70})
        if result.is_success():
            store(result.value)
        elif result.error_type == "Unresolvable":
            store(None)
        ```
    """

    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    error_details: Optional[dict] = None

    @classmethod
    def success_result(cls, value: T) -> 'Result[T]':
        """Create a successful result.

        Parameters:
            value: The successful result value

        Returns:
            Result: Success result with the value
        """
        return cls(
            success=True,
            value=value,
            error=None,
            error_type=None,
            error_details=None
        )

    @classmethod
    def failure_result(
        cls,
        error: Union[str, Exception],
        error_type: Optional[str] = None,
        error_details: Optional[dict] = None
    ) -> 'Result[T]':
        """Create a failure result.

        Parameters:
            error: Error message or exception
            error_type: Type of error (e.g., "Unresolvable", "AccessDenied")
            error_details: Additional context

        Returns:
            Result: Failure result with error information
        """
        error_message = str(error) if isinstance(error, Exception) else error
        error_type_name = error_type or (type(error).__name__ if isinstance(error, Exception) else "UnknownError")

        return cls(
            success=False,
            value=None,
            error=error_message,
            error_type=error_type_name,
            error_details=error_details or {}
        )

    def is_success(self) -> bool:
        """Check if result is successful."""
        return self.success

    def is_failure(self) -> bool:
        """Check if result is a failure."""
        return not self.success


# ============================================================================
# Custom Exception Hierarchy
# ============================================================================

class FieldEngineError(Exception):
    """Base exception for all field engine errors.

    Attributes:
        details: Additional error context
    """

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.details = details or {}


class AccessDenied(FieldEngineError):
    """Raised when the actor lacks visibility or edit rights on the target entity.

    The authorization collaborator's message is surfaced unchanged.
    """
    pass


class NotFound(FieldEngineError):
    """Raised when a definition, value row, category or entity does not exist.

    Inactive and wrong-scope definitions are reported the same way.
    """
    pass


class ValidationError(FieldEngineError):
    """Raised when a supplied raw value fails the field's constraints.

    Attributes:
        field_name: The offending field
        details: Additional error details or validation messages
    """

    def __init__(self, message: str, field_name: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, details)
        self.field_name = field_name


class InvalidState(FieldEngineError):
    """Raised on structural misuse.

    Examples are recalculating a non-calculated field or requesting visit
    history for a category that does not apply to visits.
    """
    pass


class StorageError(FieldEngineError):
    """Raised when a storage operation fails.

    Attributes:
        operation: The storage operation that failed
        details: Additional error context
    """

    def __init__(self, message: str, operation: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, details)
        self.operation = operation


# ============================================================================
# Ports
# ============================================================================

class ValueStore(ABC):
    """Abstract contract for one scope of field value storage.

    At most one row exists per (entity, definition); writes are upserts.
    """

    @property
    @abstractmethod
    def scope(self) -> EntityType:
        """Storage scope served by this store."""
        pass

    @abstractmethod
    def find_value(self, entity_id: str, definition_id: str) -> Optional[FieldValue]:
        """Return the value row for (entity, definition), or None."""
        pass

    @abstractmethod
    def get_value(self, value_id: str) -> Optional[FieldValue]:
        """Return a value row by id, or None."""
        pass

    @abstractmethod
    def list_values(self, entity_id: str) -> List[FieldValue]:
        """Return every value row of an entity."""
        pass

    @abstractmethod
    def list_values_for_definition(
        self,
        definition_id: str,
        start_after: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[FieldValue]:
        """Return value rows of a definition across entities, ordered by entity id.

        Parameters:
            definition_id: Definition whose rows are listed
            start_after: Only rows whose entity id sorts after this cursor
            limit: Maximum number of rows
        """
        pass

    @abstractmethod
    def upsert_value(
        self,
        entity_id: str,
        definition_id: str,
        value: TypedValue,
        actor_id: Optional[str]
    ) -> Tuple[FieldValue, bool]:
        """Create or replace the value row for (entity, definition).

        Returns:
            The stored row and True when it was created, False when updated
        """
        pass

    @abstractmethod
    def delete_value(self, value_id: str) -> bool:
        """Delete a value row; returns False when it did not exist."""
        pass


class DefinitionRepository(ABC):
    """Read access to administrator-owned categories and definitions."""

    @abstractmethod
    def get_definition(self, definition_id: str) -> Optional[FieldDefinition]:
        pass

    @abstractmethod
    def find_definitions(
        self,
        category_ids: Optional[List[str]] = None,
        active_only: bool = True,
        calculated_only: bool = False
    ) -> List[FieldDefinition]:
        """Return definitions matching the filter, ordered by display order."""
        pass

    @abstractmethod
    def get_category(self, category_id: str) -> Optional[FieldCategory]:
        pass

    @abstractmethod
    def list_categories(self, active_only: bool = True) -> List[FieldCategory]:
        """Return categories ordered by display order."""
        pass


class MeasureRepository(ABC):
    """Read access to external measure series."""

    @abstractmethod
    def find_latest_measure(self, patient_id: str, measure_name: str) -> Optional[MeasureRecord]:
        """Return the latest record by measured_at; ties go to the last inserted."""
        pass


class PatientDirectory(ABC):
    """Read access to patients and visits."""

    @abstractmethod
    def get_patient(self, patient_id: str) -> Optional[Patient]:
        pass

    @abstractmethod
    def get_visit(self, visit_id: str) -> Optional[Visit]:
        pass

    @abstractmethod
    def list_visits(self, patient_id: str) -> List[Visit]:
        """Return a patient's visits in chronological order."""
        pass


class TranslationPort(ABC):
    """Supplies localized overlays for categories and definitions."""

    @abstractmethod
    def get_translations(self, entity_id: str, entity_type: str, language_code: str) -> Dict[str, str]:
        """Return translated texts keyed by attribute name (may be empty)."""
        pass


class AuthorizationPort(ABC):
    """Opaque access-check collaborator."""

    @abstractmethod
    def check_patient_access(self, actor: Actor, patient_id: str) -> Result[None]:
        pass

    @abstractmethod
    def check_visit_access(self, actor: Actor, visit_id: str) -> Result[None]:
        pass


class FieldRepository(DefinitionRepository, MeasureRepository, PatientDirectory, TranslationPort):
    """Aggregate storage contract consumed by the field services.

    Example Usage:
        ```python
        store = DuckDBFieldStore(db_path=":memory:")
        store.initialize_schema()
        with store.transaction():
            store.value_store(EntityType.PATIENT).upsert_value(...)
        ```
    """

    @abstractmethod
    def value_store(self, scope: EntityType) -> ValueStore:
        """Return the value store of a scope."""
        pass

    @abstractmethod
    def transaction(self) -> AbstractContextManager:
        """Context manager committing on exit and rolling back on error."""
        pass

    @abstractmethod
    def flush_change_logs(self, change_logs: List[dict]) -> Result[int]:
        """Persist buffered audit entries.

        Returns:
            Result[int]: Number of entries written
        """
        pass
