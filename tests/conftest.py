"""
Pytest configuration and shared fixtures.

Registers the integration marker/option and provides fixtures that swap the
app-owned TokenVault and DocumentPipeline for test instances.
"""

import pytest

from src.api.main import app
from src.core.config import settings
from src.services.token_vault import TokenVault

TEST_REDIRECT_URI = "http://127.0.0.1:8000/auth/exact/callback"


def pytest_addoption(parser):
    """Add custom command-line options"""
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run integration tests against a real tesseract binary and inference server"
    )


def pytest_configure(config):
    """Register custom markers"""
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test requiring tesseract and a running inference server"
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless --run-integration is specified"""
    if config.getoption("--run-integration"):
        return

    skip_integration = pytest.mark.skip(reason="need --run-integration option to run")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)


@pytest.fixture
def exact_vault():
    """Fresh, disconnected TokenVault installed on the app for one test"""
    original = app.state.token_vault
    vault = TokenVault(
        base_url=settings.exact_base_url,
        client_id="test-client",
        client_secret="test-secret",
        redirect_uri=TEST_REDIRECT_URI,
    )
    app.state.token_vault = vault
    yield vault
    app.state.token_vault = original


@pytest.fixture
def install_pipeline():
    """Install a DocumentPipeline on the app; restored after the test"""
    original = app.state.document_pipeline

    def _install(pipeline):
        app.state.document_pipeline = pipeline
        return pipeline

    yield _install
    app.state.document_pipeline = original
