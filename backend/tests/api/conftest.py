"""
Pytest fixtures for API integration tests.

Provides a FastAPI test client whose export service runs jobs against the
per-test database from the shared fixtures.
"""
import pytest
from fastapi.testclient import TestClient

from dataexport.api.exports import get_export_service
from dataexport.core.database import get_db
from dataexport.main import app
from dataexport.services.export_service import ExportService

from sample_data import DeferredRunner


@pytest.fixture
def task_runner():
    """Inline by default; tests that need a job to stay running override this."""
    return None


@pytest.fixture(scope="function")
def client(seeded, session_factory, registry, artifact_root, task_runner, export_service):
    """
    FastAPI test client with database and export service overrides.
    """
    def override_get_db():
        yield seeded

    def override_get_export_service():
        if task_runner is None:
            return export_service
        return ExportService(
            seeded,
            registry=registry,
            task_runner=task_runner,
            session_factory=session_factory,
            artifact_root=artifact_root,
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_export_service] = override_get_export_service

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def deferred_runner():
    return DeferredRunner()
