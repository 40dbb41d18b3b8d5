"""Service wiring for the clinical field engine.

Builds the storage adapter and the patient and visit field services from the
configuration. Services built together share one calculated-field cache and
one audit buffer, so a write through either keeps the other consistent.
"""

import logging
from typing import Optional, Tuple

from clinical_fields.adapters.authorization import RoleBasedAccessPolicy
from clinical_fields.adapters.storage import DuckDBFieldStore
from clinical_fields.domain.ports import AuthorizationPort, FieldRepository
from clinical_fields.domain.services import CalculatedFieldCache, PatientFieldService, VisitFieldService
from clinical_fields.infrastructure.audit import ChangeAuditLogger
from clinical_fields.infrastructure.config_manager import get_database_config
from clinical_fields.infrastructure.settings import settings

logger = logging.getLogger(__name__)


def create_storage_adapter() -> DuckDBFieldStore:
    """Create the storage adapter and initialize its schema.

    Raises:
        RuntimeError: If the schema cannot be initialized
    """
    db_config = get_database_config()
    logger.info(f"Initializing DuckDB field store with path: {db_config.get_connection_string()}")
    store = DuckDBFieldStore(db_config=db_config)

    schema_result = store.initialize_schema()
    if schema_result.is_failure():
        raise RuntimeError(f"Schema initialization failed: {schema_result.error}")
    return store


def create_field_services(
    repository: Optional[FieldRepository] = None,
    authorization: Optional[AuthorizationPort] = None
) -> Tuple[PatientFieldService, VisitFieldService]:
    """Build the patient and visit field services.

    Parameters:
        repository: Storage to use (a configured DuckDB store when None)
        authorization: Access policy (role-based over the repository when None)

    Returns:
        (PatientFieldService, VisitFieldService) sharing cache and audit buffer
    """
    repository = repository if repository is not None else create_storage_adapter()
    authorization = authorization if authorization is not None else RoleBasedAccessPolicy(repository)
    engine_config = settings.engine_config

    cache = CalculatedFieldCache()
    audit_logger = ChangeAuditLogger()
    common = dict(
        cache=cache,
        audit_logger=audit_logger,
        default_language=engine_config.default_language,
        fallback_language=engine_config.fallback_language,
        batch_size=engine_config.recalculation_batch_size,
    )
    return (
        PatientFieldService(repository, authorization, **common),
        VisitFieldService(repository, authorization, **common),
    )
