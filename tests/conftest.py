"""
Pytest configuration and shared fixtures for the vehicle search tests.
"""
import os
import sys
from typing import AsyncGenerator, List, Optional
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), "src"))

# Load environment variables
from dotenv import load_dotenv
load_dotenv(os.path.join(os.path.dirname(os.path.dirname(__file__)), ".env"))


# ============================================================================
# Fixtures: Test Data Factories
# ============================================================================

def make_vehicle(vehicle_id: str = "v-001", **overrides):
    """Vehicle document with sensible defaults."""
    from search.models import Vehicle

    data = {
        "id": vehicle_id,
        "make": "Ford",
        "model": "Focus",
        "bodyType": "Hatchback",
        "price": 12000,
        "mileage": 40000,
        "engineSize": 1.5,
        "fuelType": "Petrol",
        "transmissionType": "Manual",
        "colour": "Blue",
        "numberOfDoors": 5,
        "numberOfSeats": 5,
    }
    data.update(overrides)
    return Vehicle.model_validate(data)


def make_result(
    vehicle_id: str = "v-001",
    score: float = 0.5,
    semantic: float = 0.0,
    exact: float = 0.0,
    **vehicle_fields,
):
    from search.models import ScoreBreakdown, VehicleResult

    return VehicleResult(
        vehicle=make_vehicle(vehicle_id, **vehicle_fields),
        score=score,
        score_breakdown=ScoreBreakdown(
            exact_match_score=exact,
            semantic_score=semantic,
            final_score=score,
        ),
    )


def make_entity(entity_type: str, value: str):
    from search.models import EntityType, ExtractedEntity

    return ExtractedEntity(type=EntityType(entity_type), value=value)


@pytest.fixture
def vehicle_factory():
    return make_vehicle


@pytest.fixture
def result_factory():
    return make_result


@pytest.fixture
def entity_factory():
    return make_entity


@pytest.fixture
def test_settings():
    """Settings with no credentials, no retry delay and no env file."""
    from config.settings import get_settings_for_testing
    return get_settings_for_testing()


# ============================================================================
# Fixtures: Mock Services
# ============================================================================

class FakeBackend:
    """In-memory SearchBackend with call recording."""

    def __init__(self, filter_hits=None, vector_hits=None, vehicles=None):
        self.filter_hits = list(filter_hits or [])
        self.vector_hits = list(vector_hits or [])
        self.vehicles = dict(vehicles or {})
        self.filter_calls: List[tuple] = []
        self.vector_calls: List[tuple] = []
        self.filter_error: Optional[Exception] = None
        self.vector_error: Optional[Exception] = None

    async def filter_search(self, odata_filter, top):
        self.filter_calls.append((odata_filter, top))
        if self.filter_error is not None:
            raise self.filter_error
        return self.filter_hits[:top]

    async def vector_search(self, vector, k, odata_filter=None):
        self.vector_calls.append((list(vector), k, odata_filter))
        if self.vector_error is not None:
            raise self.vector_error
        return self.vector_hits[:k]

    async def get_vehicle(self, vehicle_id):
        return self.vehicles.get(vehicle_id)


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def mock_embeddings():
    """Embedding service returning a fixed 3-d vector."""
    embeddings = AsyncMock()
    embeddings.generate_embedding.return_value = [0.1, 0.2, 0.3]
    embeddings.configured = True
    return embeddings


# ============================================================================
# Fixtures: FastAPI Test Client
# ============================================================================

@pytest.fixture
def app():
    """Get the FastAPI application."""
    from api.app import create_app
    return create_app()


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for testing FastAPI endpoints."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


# ============================================================================
# Markers auto-use
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: marks tests as unit tests")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "slow: marks tests as slow")


# ============================================================================
# Skip conditions
# ============================================================================

def pytest_collection_modifyitems(config, items):
    """Auto-skip integration tests if no search backend is configured."""
    skip_integration = pytest.mark.skip(reason="Integration tests require SEARCH_ENDPOINT")

    if os.getenv("SEARCH_ENDPOINT"):
        return
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)
