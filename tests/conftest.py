"""
Pytest configuration and fixtures.
"""
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import delete
from sqlalchemy.orm import sessionmaker

from cloudaudit.core.database import Base, build_engine
from cloudaudit.core.dependencies import (
    get_check_catalog,
    get_consistency_service,
    get_inspection_service,
    get_progress_hub,
    get_record_service,
    get_result_store,
    get_run_registry,
)
from cloudaudit.main import app
# Import models so their tables are created
from cloudaudit.models import InspectionItemResult
from cloudaudit.services.check_catalog import CheckCatalog
from cloudaudit.services.check_runner import CheckRunner
from cloudaudit.services.consistency_service import ConsistencyService
from cloudaudit.services.history_service import ResultRecordService
from cloudaudit.services.inspection_run import RunRegistry
from cloudaudit.services.inspection_service import InspectionService
from cloudaudit.services.progress_hub import ProgressHub
from cloudaudit.services.result_store import SqlResultStore
from fakes import FakeCredentialProvider, StaticCheck, make_finding

# Use file-based SQLite for testing (more reliable than in-memory across threads)
TEST_DATABASE_URL = "sqlite:///./test_cloudaudit.db"

test_engine = build_engine(TEST_DATABASE_URL)

TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="session", autouse=True)
def setup_test_database():
    """Create all tables once per session and drop them at the end."""
    Base.metadata.create_all(bind=test_engine)
    yield
    Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function", autouse=True)
def clean_item_results():
    """Every test starts with an empty result table."""
    db = TestingSessionLocal()
    try:
        db.execute(delete(InspectionItemResult))
        db.commit()
    finally:
        db.close()
    yield


@pytest.fixture
def store():
    return SqlResultStore(TestingSessionLocal)


@pytest.fixture
def record_service(store):
    return ResultRecordService(store)


@pytest.fixture
def hub():
    return ProgressHub()


@pytest.fixture
def registry():
    return RunRegistry(max_entries=100)


@pytest.fixture
def catalog():
    catalog = CheckCatalog()
    catalog.add(StaticCheck("open-ssh", service="EC2", findings=[make_finding()], resources=3))
    catalog.add(StaticCheck("public-access", service="S3", resources=2))
    return catalog


@pytest.fixture
def credential_provider():
    return FakeCredentialProvider()


@pytest.fixture
def runner():
    return CheckRunner(max_retries=3, base_delay=0)


@pytest.fixture
def consistency_service(record_service, registry):
    return ConsistencyService(record_service, registry=registry, tolerance_seconds=60)


@pytest.fixture
def inspection_service(catalog, credential_provider, runner, record_service, hub, registry):
    service = InspectionService(
        catalog=catalog,
        credential_provider=credential_provider,
        runner=runner,
        record_service=record_service,
        hub=hub,
        registry=registry,
        max_workers=2,
        timeout_seconds=30,
        cleanup_delay_seconds=60,
    )
    yield service
    service.shutdown(wait_for_runs=True)


@pytest.fixture(scope="function")
def client(store, record_service, hub, registry, catalog, inspection_service, consistency_service):
    """
    Test client wired to the test database and in-memory fakes.

    Every process-wide service is replaced through dependency_overrides,
    so no AWS call is ever made.
    """
    app.dependency_overrides[get_result_store] = lambda: store
    app.dependency_overrides[get_record_service] = lambda: record_service
    app.dependency_overrides[get_progress_hub] = lambda: hub
    app.dependency_overrides[get_run_registry] = lambda: registry
    app.dependency_overrides[get_check_catalog] = lambda: catalog
    app.dependency_overrides[get_inspection_service] = lambda: inspection_service
    app.dependency_overrides[get_consistency_service] = lambda: consistency_service

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def aws_credentials(monkeypatch):
    """Fake credentials for moto-backed tests."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
