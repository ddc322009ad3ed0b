"""Common test fixtures for the NoteTree MCP server."""

import pytest

from notetree_mcp.config import config
from notetree_mcp.models.db_models import Base, create_db_engine
from notetree_mcp.models.schema import Project
from notetree_mcp.observability import metrics
from notetree_mcp.services.import_pipeline import BulkImportPipeline
from notetree_mcp.services.import_status import ImportStatusRegistry
from notetree_mcp.services.reorganize_service import ReorganizeService
from notetree_mcp.storage.node_repository import NodeRepository
from notetree_mcp.storage.project_repository import ProjectRepository

PROJECT_ID = "proj1"


@pytest.fixture(autouse=True)
def _reset_metrics():
    """Keep the global metrics collector isolated between tests."""
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def test_config(tmp_path, monkeypatch):
    """Point the global config at a temp database (auto-restored)."""
    monkeypatch.setattr(config, "database_path", tmp_path / "notetree.db")
    monkeypatch.setattr(config, "in_memory_db", False)
    yield config


@pytest.fixture
def engine():
    """A fresh in-memory SQLite database per test."""
    engine = create_db_engine("sqlite://", timeout=5)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def project_repository(engine):
    return ProjectRepository(engine=engine)


@pytest.fixture
def node_repository(engine):
    return NodeRepository(engine=engine)


@pytest.fixture
def project(project_repository):
    return project_repository.create(Project(id=PROJECT_ID, name="Test project"))


@pytest.fixture
def service(node_repository, project_repository, project):
    return ReorganizeService(node_repository, projects=project_repository)


@pytest.fixture
def status_registry():
    return ImportStatusRegistry(retention=300)


@pytest.fixture
def pipeline(service, status_registry):
    """Pipeline with the production limits and no retry sleeps."""
    return BulkImportPipeline(
        service,
        status=status_registry,
        batch_size=10,
        max_workers=4,
        relink_batch_size=5,
        max_attempts=3,
        retry_delay=0,
        timeout=10,
    )


def child_ids(service, parent_id=None, project_id=PROJECT_ID):
    """IDs of a sibling group in display order."""
    return [n.id for n in service.store.get_siblings(project_id, parent_id)]


def child_orders(service, parent_id=None, project_id=PROJECT_ID):
    return [n.order for n in service.store.get_siblings(project_id, parent_id)]
