"""
Search backend: the vehicle index behind the pipeline.

SearchBackend is the contract the orchestrator depends on:
    filter_search(filter, top)          -> ranked hits matching a filter
    vector_search(vector, k, filter)    -> k-NN hits with similarity scores
    get_vehicle(vehicle_id)             -> one document or None

RestSearchBackend talks to an Azure AI Search style REST API over httpx.
"""

import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx
from pydantic import ValidationError as PydanticValidationError

from config.settings import get_settings
from core.exceptions import ExternalServiceError
from core.logging import get_logger
from core.utils import to_float_list
from search.models import Vehicle
from search.retry import RetryPolicy, call_with_retry, is_retryable_status

logger = get_logger(__name__)


VEHICLE_FIELDS = [
    "id", "make", "model", "derivative", "bodyType", "price", "mileage",
    "engineSize", "fuelType", "transmissionType", "colour", "numberOfDoors",
    "numberOfSeats", "registrationDate", "saleLocation", "channel", "features",
    "serviceHistoryPresent", "numberOfServices", "numberOfPreviousOwners",
    "motExpiryDate", "declarations", "description",
]


@dataclass(frozen=True)
class SearchHit:
    vehicle: Vehicle
    score: float


class SearchBackend(Protocol):
    async def filter_search(self, odata_filter: str, top: int) -> List[SearchHit]:
        ...

    async def vector_search(
        self,
        vector: Sequence[float],
        k: int,
        odata_filter: Optional[str] = None,
    ) -> List[SearchHit]:
        ...

    async def get_vehicle(self, vehicle_id: str) -> Optional[Vehicle]:
        ...


def hits_from_documents(documents: List[Dict[str, Any]]) -> List[SearchHit]:
    """Convert raw index documents; malformed ones are skipped with a warning."""
    hits = []
    for doc in documents:
        try:
            vehicle = Vehicle.model_validate(doc)
        except PydanticValidationError as e:
            logger.warning("Skipping malformed document", document_id=doc.get("id"), error=str(e))
            continue
        hits.append(SearchHit(vehicle=vehicle, score=float(doc.get("@search.score") or 0.0)))
    return hits


class RestSearchBackend:
    """httpx client for the vehicle index."""

    SERVICE = "search"

    def __init__(
        self,
        endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
        index_name: Optional[str] = None,
        api_version: Optional[str] = None,
        vector_field: Optional[str] = None,
        timeout: Optional[float] = None,
        retry_policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self._endpoint = (endpoint if endpoint is not None else settings.search_endpoint).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.search_api_key
        self._index = index_name or settings.search_index_name
        self._api_version = api_version or settings.search_api_version
        self._vector_field = vector_field or settings.search_vector_field
        self._timeout = timeout or settings.search_timeout_seconds
        self._retry = retry_policy or RetryPolicy.from_settings(settings)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._client_lock = threading.Lock()

    @property
    def configured(self) -> bool:
        return bool(self._endpoint and self._api_key)

    @property
    def client(self) -> httpx.AsyncClient:
        """Lazy-load the shared AsyncClient."""
        if self._client is None:
            with self._client_lock:
                if self._client is None:
                    self._client = httpx.AsyncClient(
                        base_url=f"{self._endpoint}/indexes/{self._index}",
                        headers={"api-key": self._api_key, "Content-Type": "application/json"},
                        params={"api-version": self._api_version},
                        timeout=self._timeout,
                        transport=self._transport,
                    )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def filter_search(self, odata_filter: str, top: int) -> List[SearchHit]:
        body: Dict[str, Any] = {
            "search": "*",
            "top": top,
            "select": ",".join(VEHICLE_FIELDS),
        }
        if odata_filter:
            body["filter"] = odata_filter
        documents = await self._search(body)
        return hits_from_documents(documents)

    async def vector_search(
        self,
        vector: Sequence[float],
        k: int,
        odata_filter: Optional[str] = None,
    ) -> List[SearchHit]:
        body: Dict[str, Any] = {
            "top": k,
            "select": ",".join(VEHICLE_FIELDS),
            "vectorQueries": [{
                "kind": "vector",
                "vector": to_float_list(vector),
                "k": k,
                "fields": self._vector_field,
            }],
        }
        if odata_filter:
            body["filter"] = odata_filter
        documents = await self._search(body)
        return hits_from_documents(documents)

    async def get_vehicle(self, vehicle_id: str) -> Optional[Vehicle]:
        async def _get():
            response = await self._request("GET", f"/docs/{vehicle_id}", allow_404=True)
            return None if response is None else response.json()

        doc = await call_with_retry(_get, self._retry, self.SERVICE)
        if doc is None:
            logger.warning("Vehicle not found in index", vehicle_id=vehicle_id)
            return None
        return Vehicle.model_validate(doc)

    # -------------------------------------------------------------------------
    # HTTP
    # -------------------------------------------------------------------------

    async def _search(self, body: Dict[str, Any]) -> List[Dict[str, Any]]:
        async def _post():
            response = await self._request("POST", "/docs/search", json=body)
            return response.json().get("value", [])

        return await call_with_retry(_post, self._retry, self.SERVICE)

    async def _request(self, method: str, url: str, allow_404: bool = False, **kwargs) -> Optional[httpx.Response]:
        if not self.configured:
            raise ExternalServiceError("Search backend is not configured", service=self.SERVICE)

        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise ExternalServiceError(
                f"Search backend unreachable: {e}",
                service=self.SERVICE,
                retryable=True,
            ) from e

        if allow_404 and response.status_code == 404:
            return None
        if response.is_error:
            raise ExternalServiceError(
                f"Search backend returned {response.status_code}",
                service=self.SERVICE,
                status_code=response.status_code,
                retryable=is_retryable_status(response.status_code),
            )
        return response
