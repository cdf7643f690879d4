"""
Process-wide service instances, exposed as FastAPI dependencies.

Tests replace them through ``app.dependency_overrides``.
"""
import logging
from functools import lru_cache

from cloudaudit.core.config import get_settings
from cloudaudit.core.database import SessionLocal
from cloudaudit.services.check_catalog import CheckCatalog, load_builtin_checks
from cloudaudit.services.check_runner import CheckRunner
from cloudaudit.services.consistency_service import ConsistencyService
from cloudaudit.services.history_service import ResultRecordService
from cloudaudit.services.inspection_run import RunRegistry
from cloudaudit.services.inspection_service import InspectionService
from cloudaudit.services.progress_hub import ProgressHub
from cloudaudit.services.result_store import ResultStore, SqlResultStore
from cloudaudit.services.sts_service import StsCredentialProvider

logger = logging.getLogger(__name__)


@lru_cache
def get_progress_hub() -> ProgressHub:
    return ProgressHub()


@lru_cache
def get_run_registry() -> RunRegistry:
    return RunRegistry(max_entries=get_settings().RUN_REGISTRY_MAX_ENTRIES)


@lru_cache
def get_result_store() -> ResultStore:
    settings = get_settings()
    if settings.RESULT_STORE_BACKEND == "dynamodb":
        from cloudaudit.services.dynamo_store import DynamoResultStore

        logger.info(f"Using DynamoDB result store: table {settings.DYNAMODB_TABLE_NAME}")
        return DynamoResultStore(
            table_name=settings.DYNAMODB_TABLE_NAME,
            region_name=settings.AWS_REGION,
            endpoint_url=settings.DYNAMODB_ENDPOINT_URL,
        )
    logger.info("Using SQL result store")
    return SqlResultStore(SessionLocal)


@lru_cache
def get_record_service() -> ResultRecordService:
    return ResultRecordService(get_result_store())


@lru_cache
def get_check_catalog() -> CheckCatalog:
    return load_builtin_checks()


@lru_cache
def get_credential_provider() -> StsCredentialProvider:
    settings = get_settings()
    return StsCredentialProvider(
        region_name=settings.AWS_REGION,
        external_id=settings.AWS_EXTERNAL_ID,
        duration_seconds=settings.ASSUME_ROLE_DURATION_SECONDS,
    )


@lru_cache
def get_inspection_service() -> InspectionService:
    settings = get_settings()
    return InspectionService(
        catalog=get_check_catalog(),
        credential_provider=get_credential_provider(),
        runner=CheckRunner(
            max_retries=settings.CHECK_MAX_RETRIES,
            base_delay=settings.CHECK_RETRY_BASE_DELAY,
        ),
        record_service=get_record_service(),
        hub=get_progress_hub(),
        registry=get_run_registry(),
        max_workers=settings.MAX_CONCURRENT_RUNS,
        timeout_seconds=settings.INSPECTION_TIMEOUT_SECONDS,
        cleanup_delay_seconds=settings.BATCH_CLEANUP_DELAY_SECONDS,
    )


@lru_cache
def get_consistency_service() -> ConsistencyService:
    return ConsistencyService(
        record_service=get_record_service(),
        registry=get_run_registry(),
        tolerance_seconds=get_settings().CONSISTENCY_TOLERANCE_SECONDS,
    )
