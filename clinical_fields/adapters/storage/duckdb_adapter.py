"""DuckDB Storage Adapter.

This adapter implements the FieldRepository contract on DuckDB, an in-process
database. It stores categories, definitions, patients, visits, the two value
stores, measure series, translations and the change audit log.

Architecture:
    - Implements FieldRepository and one ValueStore per scope (Hexagonal Architecture)
    - Isolated from domain services - only depends on ports and models
    - Explicit transactions for bulk writes; single statements autocommit
    - Audit trail is append-only
"""

import json
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

import duckdb
from pydantic import ValidationError as PydanticValidationError

from clinical_fields.domain.models import (
    EntityType,
    FieldCategory,
    FieldDefinition,
    FieldValue,
    MeasureRecord,
    Patient,
    TypedValue,
    Visit,
)
from clinical_fields.domain.ports import FieldRepository, Result, StorageError, ValueStore
from clinical_fields.infrastructure.config_manager import DatabaseConfig

logger = logging.getLogger(__name__)

VALUE_TABLES = {
    EntityType.PATIENT: "patient_field_values",
    EntityType.VISIT: "visit_field_values",
}


def _dump_json(value: Any) -> Optional[str]:
    return json.dumps(value) if value is not None else None


def _load_json(text: Optional[str]) -> Any:
    if text is None:
        return None
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring malformed JSON column value: {text[:50]!r}")
        return None


class DuckDBValueStore(ValueStore):
    """Value rows of one scope, kept in their own table.

    Parameters:
        owner: Field store providing the connection
        scope: Scope served by this store
    """

    def __init__(self, owner: "DuckDBFieldStore", scope: EntityType):
        self._owner = owner
        self._scope = scope
        self._table = VALUE_TABLES[scope]

    @property
    def scope(self) -> EntityType:
        return self._scope

    def _row_to_value(self, row: Dict[str, Any]) -> FieldValue:
        return FieldValue(
            id=row["id"],
            entity_id=row["entity_id"],
            definition_id=row["definition_id"],
            scope=self._scope,
            value_text=row["value_text"],
            value_number=row["value_number"],
            value_boolean=row["value_boolean"],
            value_json=_load_json(row["value_json"]),
            updated_by=row["updated_by"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _select(self, where: str, params: List[Any], suffix: str = "") -> List[FieldValue]:
        rows = self._owner._fetch_dicts(
            f"SELECT * FROM {self._table} WHERE {where} {suffix}", params, operation="select_values"
        )
        return [self._row_to_value(row) for row in rows]

    def find_value(self, entity_id: str, definition_id: str) -> Optional[FieldValue]:
        rows = self._select("entity_id = ? AND definition_id = ?", [entity_id, definition_id])
        return rows[0] if rows else None

    def get_value(self, value_id: str) -> Optional[FieldValue]:
        rows = self._select("id = ?", [value_id])
        return rows[0] if rows else None

    def list_values(self, entity_id: str) -> List[FieldValue]:
        return self._select("entity_id = ?", [entity_id], "ORDER BY definition_id")

    def list_values_for_definition(
        self,
        definition_id: str,
        start_after: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[FieldValue]:
        where = "definition_id = ?"
        params: List[Any] = [definition_id]
        if start_after is not None:
            where += " AND entity_id > ?"
            params.append(start_after)
        suffix = "ORDER BY entity_id"
        if limit is not None:
            suffix += f" LIMIT {int(limit)}"
        return self._select(where, params, suffix)

    def upsert_value(
        self,
        entity_id: str,
        definition_id: str,
        value: TypedValue,
        actor_id: Optional[str]
    ) -> Tuple[FieldValue, bool]:
        existing = self.find_value(entity_id, definition_id)
        now = datetime.now()
        conn = self._owner._get_connection()
        try:
            if existing is not None:
                conn.execute(f"""
                    UPDATE {self._table}
                    SET value_text = ?, value_number = ?, value_boolean = ?, value_json = ?,
                        updated_by = ?, updated_at = ?
                    WHERE id = ?
                """, [
                    value.value_text, value.value_number, value.value_boolean,
                    _dump_json(value.value_json), actor_id, now, existing.id,
                ])
                value_id, created_at, created = existing.id, existing.created_at, False
            else:
                value_id = str(uuid.uuid4())
                conn.execute(f"""
                    INSERT INTO {self._table} (
                        id, entity_id, definition_id, value_text, value_number, value_boolean,
                        value_json, updated_by, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, [
                    value_id, entity_id, definition_id, value.value_text, value.value_number,
                    value.value_boolean, _dump_json(value.value_json), actor_id, now, now,
                ])
                created_at, created = now, True
        except duckdb.Error as e:
            raise StorageError(
                f"Failed to upsert field value: {str(e)}",
                operation="upsert_value",
                details={"table": self._table, "entity_id": entity_id, "definition_id": definition_id}
            )

        stored = FieldValue(
            id=value_id,
            entity_id=entity_id,
            definition_id=definition_id,
            scope=self._scope,
            value_text=value.value_text,
            value_number=value.value_number,
            value_boolean=value.value_boolean,
            value_json=value.value_json,
            updated_by=actor_id,
            created_at=created_at,
            updated_at=now,
        )
        return stored, created

    def delete_value(self, value_id: str) -> bool:
        if self.get_value(value_id) is None:
            return False
        self._owner._execute(f"DELETE FROM {self._table} WHERE id = ?", [value_id], operation="delete_value")
        return True


class DuckDBFieldStore(FieldRepository):
    """DuckDB implementation of the field repository.

    Parameters:
        db_config: DatabaseConfig from configuration manager (preferred)
        db_path: Path to DuckDB database file (or ':memory:' for in-memory)

    Example Usage:
        ```python
        store = DuckDBFieldStore(db_path=":memory:")
        result = store.initialize_schema()
        if result.is_success():
            store.save_category(category)
            store.save_definition(definition)
        ```
    """

    def __init__(
        self,
        db_config: Optional[DatabaseConfig] = None,
        db_path: Optional[str] = None
    ):
        if db_config:
            if db_config.db_type != "duckdb":
                raise StorageError(
                    f"DatabaseConfig type '{db_config.db_type}' does not match DuckDB adapter",
                    operation="__init__"
                )
            self.db_path = db_config.db_path or ":memory:"
        elif db_path:
            self.db_path = db_path
        else:
            self.db_path = ":memory:"

        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialized = False
        self._in_transaction = False
        self._stores = {scope: DuckDBValueStore(self, scope) for scope in EntityType}

        if self.db_path != ":memory:":
            db_path_obj = Path(self.db_path)
            if not db_path_obj.parent.exists():
                raise StorageError(
                    f"Database directory does not exist: {db_path_obj.parent}",
                    operation="__init__"
                )

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """Get or create the DuckDB connection (created lazily, then reused)."""
        if self._connection is None:
            try:
                self._connection = duckdb.connect(self.db_path)
                logger.info(f"Connected to DuckDB database: {self.db_path}")
            except Exception as e:
                raise StorageError(
                    f"Failed to connect to DuckDB: {str(e)}",
                    operation="connect",
                    details={"db_path": self.db_path}
                )
        return self._connection

    def _execute(self, query: str, params: Optional[List[Any]] = None, operation: str = "execute") -> None:
        try:
            self._get_connection().execute(query, params or [])
        except duckdb.Error as e:
            raise StorageError(f"Failed to {operation}: {str(e)}", operation=operation)

    def _fetch_dicts(
        self,
        query: str,
        params: Optional[List[Any]] = None,
        operation: str = "query"
    ) -> List[Dict[str, Any]]:
        try:
            cursor = self._get_connection().execute(query, params or [])
            columns = [desc[0] for desc in cursor.description]
            return [dict(zip(columns, row)) for row in cursor.fetchall()]
        except duckdb.Error as e:
            raise StorageError(f"Failed to {operation}: {str(e)}", operation=operation)

    def initialize_schema(self) -> Result[None]:
        """Initialize database schema (tables, sequences, indexes).

        Returns:
            Result[None]: Success or failure result
        """
        try:
            conn = self._get_connection()

            # Tables written with INSERT OR REPLACE carry no secondary index:
            # DuckDB cannot update indexed columns on conflict.
            conn.execute("""
                CREATE TABLE IF NOT EXISTS field_categories (
                    id VARCHAR PRIMARY KEY,
                    name VARCHAR NOT NULL,
                    description VARCHAR,
                    entity_types VARCHAR NOT NULL,
                    display_order INTEGER DEFAULT 0,
                    is_active BOOLEAN DEFAULT TRUE,
                    color VARCHAR,
                    display_layout VARCHAR,
                    visit_types VARCHAR
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS field_definitions (
                    id VARCHAR PRIMARY KEY,
                    category_id VARCHAR NOT NULL,
                    field_name VARCHAR NOT NULL,
                    field_label VARCHAR NOT NULL,
                    field_type VARCHAR NOT NULL,
                    is_active BOOLEAN DEFAULT TRUE,
                    is_required BOOLEAN DEFAULT FALSE,
                    validation_rules VARCHAR,
                    select_options VARCHAR,
                    allow_multiple BOOLEAN DEFAULT FALSE,
                    help_text VARCHAR,
                    display_order INTEGER DEFAULT 0,
                    formula VARCHAR,
                    dependencies VARCHAR,
                    decimal_places INTEGER DEFAULT 2
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS patients (
                    id VARCHAR PRIMARY KEY,
                    first_name VARCHAR,
                    last_name VARCHAR,
                    date_of_birth DATE,
                    assigned_dietitian_id VARCHAR,
                    is_active BOOLEAN DEFAULT TRUE
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS visits (
                    id VARCHAR PRIMARY KEY,
                    patient_id VARCHAR NOT NULL,
                    dietitian_id VARCHAR,
                    visit_date TIMESTAMP NOT NULL,
                    visit_type VARCHAR,
                    status VARCHAR
                )
            """)

            for table in VALUE_TABLES.values():
                conn.execute(f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        id VARCHAR PRIMARY KEY,
                        entity_id VARCHAR NOT NULL,
                        definition_id VARCHAR NOT NULL,
                        value_text VARCHAR,
                        value_number DOUBLE,
                        value_boolean BOOLEAN,
                        value_json VARCHAR,
                        updated_by VARCHAR,
                        created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
                    )
                """)
                # one row per entity and definition; upsert_value never updates these columns
                conn.execute(f"DROP INDEX IF EXISTS idx_{table}_entity")
                conn.execute(
                    f"CREATE UNIQUE INDEX IF NOT EXISTS uq_{table}_entity ON {table}(entity_id, definition_id)"
                )
                conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_definition ON {table}(definition_id)")

            conn.execute("CREATE SEQUENCE IF NOT EXISTS measure_seq START 1")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS measures (
                    id VARCHAR PRIMARY KEY,
                    patient_id VARCHAR NOT NULL,
                    measure_name VARCHAR NOT NULL,
                    measure_type VARCHAR NOT NULL,
                    numeric_value DOUBLE,
                    text_value VARCHAR,
                    boolean_value BOOLEAN,
                    measured_at TIMESTAMP NOT NULL,
                    recorded_seq BIGINT DEFAULT nextval('measure_seq')
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS field_translations (
                    entity_type VARCHAR NOT NULL,
                    entity_id VARCHAR NOT NULL,
                    language_code VARCHAR NOT NULL,
                    attribute VARCHAR NOT NULL,
                    value VARCHAR,
                    PRIMARY KEY (entity_type, entity_id, language_code, attribute)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS audit_log (
                    change_id VARCHAR PRIMARY KEY,
                    scope VARCHAR NOT NULL,
                    entity_id VARCHAR NOT NULL,
                    definition_id VARCHAR NOT NULL,
                    field_name VARCHAR,
                    old_value VARCHAR,
                    new_value VARCHAR,
                    change_type VARCHAR NOT NULL,
                    changed_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    changed_by VARCHAR
                )
            """)

            conn.execute("CREATE INDEX IF NOT EXISTS idx_measures_patient ON measures(patient_id, measure_name)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit_log(entity_id)")

            self._initialized = True
            logger.info("Database schema initialized successfully")
            return Result.success_result(None)

        except Exception as e:
            error_msg = f"Failed to initialize schema: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="initialize_schema"),
                error_type="StorageError"
            )

    @contextmanager
    def transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """Run the enclosed writes in one transaction.

        Commits on normal exit and rolls back on any exception. Nested use joins
        the outer transaction.
        """
        conn = self._get_connection()
        if self._in_transaction:
            yield conn
            return

        conn.begin()
        self._in_transaction = True
        try:
            yield conn
        except Exception:
            conn.rollback()
            logger.warning("Transaction rolled back")
            raise
        else:
            conn.commit()
        finally:
            self._in_transaction = False

    def value_store(self, scope: EntityType) -> ValueStore:
        return self._stores[EntityType(scope)]

    # ------------------------------------------------------------------
    # Categories and definitions
    # ------------------------------------------------------------------

    def _row_to_category(self, row: Dict[str, Any]) -> FieldCategory:
        return FieldCategory(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            entity_types=_load_json(row["entity_types"]) or ["patient"],
            display_order=row["display_order"] or 0,
            is_active=row["is_active"],
            color=row["color"] or "#3498db",
            display_layout=_load_json(row["display_layout"]),
            visit_types=_load_json(row["visit_types"]),
        )

    def _row_to_definition(self, row: Dict[str, Any]) -> Optional[FieldDefinition]:
        try:
            return FieldDefinition(
                id=row["id"],
                category_id=row["category_id"],
                field_name=row["field_name"],
                field_label=row["field_label"],
                field_type=row["field_type"],
                is_active=row["is_active"],
                is_required=row["is_required"],
                validation_rules=row["validation_rules"],
                select_options=_load_json(row["select_options"]),
                allow_multiple=row["allow_multiple"],
                help_text=row["help_text"],
                display_order=row["display_order"] or 0,
                formula=row["formula"],
                dependencies=_load_json(row["dependencies"]) or [],
                decimal_places=row["decimal_places"] if row["decimal_places"] is not None else 2,
            )
        except PydanticValidationError as e:
            logger.error(f"Skipping invalid field definition {row['id']}: {str(e)}")
            return None

    def save_category(self, category: FieldCategory) -> None:
        self._execute("""
            INSERT OR REPLACE INTO field_categories (
                id, name, description, entity_types, display_order, is_active,
                color, display_layout, visit_types
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, [
            category.id, category.name, category.description,
            json.dumps([t.value for t in category.entity_types]), category.display_order,
            category.is_active, category.color, _dump_json(category.display_layout),
            _dump_json(category.visit_types),
        ], operation="save_category")

    def save_definition(self, definition: FieldDefinition) -> None:
        rules = definition.validation_rules
        if rules is not None and not isinstance(rules, str):
            rules = json.dumps(rules)
        self._execute("""
            INSERT OR REPLACE INTO field_definitions (
                id, category_id, field_name, field_label, field_type, is_active, is_required,
                validation_rules, select_options, allow_multiple, help_text, display_order,
                formula, dependencies, decimal_places
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, [
            definition.id, definition.category_id, definition.field_name, definition.field_label,
            definition.field_type.value, definition.is_active, definition.is_required, rules,
            _dump_json(definition.select_options), definition.allow_multiple, definition.help_text,
            definition.display_order, definition.formula, json.dumps(definition.dependencies),
            definition.decimal_places,
        ], operation="save_definition")

    def get_definition(self, definition_id: str) -> Optional[FieldDefinition]:
        rows = self._fetch_dicts(
            "SELECT * FROM field_definitions WHERE id = ?", [definition_id], operation="get_definition"
        )
        return self._row_to_definition(rows[0]) if rows else None

    def find_definitions(
        self,
        category_ids: Optional[List[str]] = None,
        active_only: bool = True,
        calculated_only: bool = False
    ) -> List[FieldDefinition]:
        clauses: List[str] = []
        params: List[Any] = []
        if category_ids is not None:
            if not category_ids:
                return []
            clauses.append(f"category_id IN ({', '.join('?' for _ in category_ids)})")
            params.extend(category_ids)
        if active_only:
            clauses.append("is_active = TRUE")
        if calculated_only:
            clauses.append("field_type = 'calculated'")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._fetch_dicts(
            f"SELECT * FROM field_definitions {where} ORDER BY display_order, field_name",
            params,
            operation="find_definitions"
        )
        return [d for d in (self._row_to_definition(row) for row in rows) if d is not None]

    def get_category(self, category_id: str) -> Optional[FieldCategory]:
        rows = self._fetch_dicts(
            "SELECT * FROM field_categories WHERE id = ?", [category_id], operation="get_category"
        )
        return self._row_to_category(rows[0]) if rows else None

    def list_categories(self, active_only: bool = True) -> List[FieldCategory]:
        where = "WHERE is_active = TRUE" if active_only else ""
        rows = self._fetch_dicts(
            f"SELECT * FROM field_categories {where} ORDER BY display_order, name",
            operation="list_categories"
        )
        return [self._row_to_category(row) for row in rows]

    # ------------------------------------------------------------------
    # Patients, visits and measures
    # ------------------------------------------------------------------

    def save_patient(self, patient: Patient) -> None:
        self._execute("""
            INSERT OR REPLACE INTO patients (
                id, first_name, last_name, date_of_birth, assigned_dietitian_id, is_active
            ) VALUES (?, ?, ?, ?, ?, ?)
        """, [
            patient.id, patient.first_name, patient.last_name, patient.date_of_birth,
            patient.assigned_dietitian_id, patient.is_active,
        ], operation="save_patient")

    def get_patient(self, patient_id: str) -> Optional[Patient]:
        rows = self._fetch_dicts("SELECT * FROM patients WHERE id = ?", [patient_id], operation="get_patient")
        return Patient(**rows[0]) if rows else None

    def save_visit(self, visit: Visit) -> None:
        self._execute("""
            INSERT OR REPLACE INTO visits (id, patient_id, dietitian_id, visit_date, visit_type, status)
            VALUES (?, ?, ?, ?, ?, ?)
        """, [
            visit.id, visit.patient_id, visit.dietitian_id, visit.visit_date, visit.visit_type, visit.status,
        ], operation="save_visit")

    def get_visit(self, visit_id: str) -> Optional[Visit]:
        rows = self._fetch_dicts("SELECT * FROM visits WHERE id = ?", [visit_id], operation="get_visit")
        return Visit(**rows[0]) if rows else None

    def list_visits(self, patient_id: str) -> List[Visit]:
        rows = self._fetch_dicts(
            "SELECT * FROM visits WHERE patient_id = ? ORDER BY visit_date, id",
            [patient_id],
            operation="list_visits"
        )
        return [Visit(**row) for row in rows]

    def record_measure(self, record: MeasureRecord) -> None:
        self._execute("""
            INSERT INTO measures (
                id, patient_id, measure_name, measure_type, numeric_value, text_value,
                boolean_value, measured_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, [
            record.id, record.patient_id, record.measure_name, record.measure_type.value,
            record.numeric_value, record.text_value, record.boolean_value, record.measured_at,
        ], operation="record_measure")

    def find_latest_measure(self, patient_id: str, measure_name: str) -> Optional[MeasureRecord]:
        rows = self._fetch_dicts("""
            SELECT id, patient_id, measure_name, measure_type, numeric_value, text_value,
                   boolean_value, measured_at
            FROM measures
            WHERE patient_id = ? AND measure_name = ?
            ORDER BY measured_at DESC, recorded_seq DESC
            LIMIT 1
        """, [patient_id, measure_name], operation="find_latest_measure")
        return MeasureRecord(**rows[0]) if rows else None

    # ------------------------------------------------------------------
    # Translations and audit
    # ------------------------------------------------------------------

    def set_translation(
        self,
        entity_type: str,
        entity_id: str,
        language_code: str,
        attribute: str,
        value: str
    ) -> None:
        self._execute("""
            INSERT OR REPLACE INTO field_translations (entity_type, entity_id, language_code, attribute, value)
            VALUES (?, ?, ?, ?, ?)
        """, [entity_type, entity_id, language_code, attribute, value], operation="set_translation")

    def get_translations(self, entity_id: str, entity_type: str, language_code: str) -> Dict[str, str]:
        rows = self._fetch_dicts("""
            SELECT attribute, value FROM field_translations
            WHERE entity_id = ? AND entity_type = ? AND language_code = ?
        """, [entity_id, entity_type, language_code], operation="get_translations")
        return {row["attribute"]: row["value"] for row in rows if row["value"]}

    def flush_change_logs(self, change_logs: List[dict]) -> Result[int]:
        """Flush buffered change events to the audit log.

        Parameters:
            change_logs: Entries produced by ChangeAuditLogger

        Returns:
            Result[int]: Number of entries persisted or error
        """
        if not change_logs:
            return Result.success_result(0)

        try:
            conn = self._get_connection()
            conn.executemany("""
                INSERT INTO audit_log (
                    change_id, scope, entity_id, definition_id, field_name,
                    old_value, new_value, change_type, changed_at, changed_by
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, [
                [
                    entry.get('change_id', str(uuid.uuid4())),
                    entry.get('scope'),
                    entry.get('entity_id'),
                    entry.get('definition_id'),
                    entry.get('field_name'),
                    entry.get('old_value'),
                    entry.get('new_value'),
                    entry.get('change_type'),
                    entry.get('changed_at', datetime.now()),
                    entry.get('changed_by'),
                ]
                for entry in change_logs
            ])
            count = len(change_logs)
            logger.debug(f"Flushed {count} change log entries to database")
            return Result.success_result(count)

        except Exception as e:
            error_msg = f"Failed to flush change logs: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="flush_change_logs"),
                error_type="StorageError"
            )

    def get_change_logs(self, entity_id: Optional[str] = None) -> List[dict]:
        """Return audit entries, oldest first, optionally for one entity."""
        where = "WHERE entity_id = ?" if entity_id else ""
        return self._fetch_dicts(
            f"SELECT * FROM audit_log {where} ORDER BY changed_at, change_id",
            [entity_id] if entity_id else [],
            operation="get_change_logs"
        )

    def close(self) -> None:
        """Close storage connection and release resources."""
        if self._connection is not None:
            try:
                self._connection.close()
                self._connection = None
                logger.info("Closed DuckDB connection")
            except Exception as e:
                logger.warning(f"Error closing connection: {str(e)}")
