"""
Telematics provider client.

Acquires a client-credentials token and retrieves the fleet roster, safety
events and daily driver-behavior rows for a date window. Roster and token
failures raise; per-vehicle failures are logged and reported as an empty
FetchResult so one vehicle never aborts a sync run. Malformed per-vehicle
records are dropped individually and counted on the result.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Type

import httpx
from pydantic import BaseModel, ValidationError

from .config import config
from .errors import CredentialError, ProviderPayloadError, RosterFetchError
from .schemas import AccessToken, ProviderDriverBehavior, ProviderSafetyEvent, ProviderVehicle

logger = logging.getLogger(__name__)

# Safety limit on cursor pagination per request
MAX_PAGES = 100


@dataclass
class FetchResult:
    """Outcome of one per-vehicle fetch."""
    records: List[Any] = field(default_factory=list)
    error: Optional[str] = None
    invalid: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


def _validate(model: Type[BaseModel], rows: List[Dict]) -> List[Any]:
    try:
        return [model.model_validate(row) for row in rows]
    except ValidationError as exc:
        raise ProviderPayloadError(f"Invalid {model.__name__} payload: {exc}") from exc


def _validate_each(model: Type[BaseModel], rows: List[Dict], vehicle_id: str) -> Tuple[List[Any], int]:
    """Validate rows one by one, dropping the ones that do not fit the model."""
    records = []
    invalid = 0
    for row in rows:
        try:
            records.append(model.model_validate(row))
        except ValidationError as exc:
            invalid += 1
            logger.warning("Skipping invalid %s record for %s: %s", model.__name__, vehicle_id, exc)
    return records, invalid


class FleetProviderClient:
    def __init__(self,
                 base_url: Optional[str] = None,
                 client_id: Optional[str] = None,
                 client_secret: Optional[str] = None,
                 fleet_id: Optional[str] = None,
                 scope: Optional[str] = None,
                 api_prefix: Optional[str] = None,
                 timeout: Optional[float] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.client_id = client_id if client_id is not None else config.client_id
        self.client_secret = client_secret if client_secret is not None else config.client_secret
        self.fleet_id = fleet_id if fleet_id is not None else config.fleet_id
        self.scope = scope if scope is not None else config.scope
        self.api_prefix = (api_prefix if api_prefix is not None else config.api_prefix).rstrip("/")
        self.http = httpx.AsyncClient(
            base_url=base_url or config.api_base_url,
            timeout=timeout or config.request_timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def aclose(self):
        await self.http.aclose()

    async def get_access_token(self) -> str:
        """Client-credentials grant; the token is used for the whole run."""
        try:
            response = await self.http.post(
                "/oauth/token",
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "scope": self.scope,
                },
            )
            response.raise_for_status()
            token = AccessToken.model_validate(response.json())
        except httpx.HTTPStatusError as exc:
            raise CredentialError(
                f"Failed to get provider token: {exc.response.status_code} {exc.response.reason_phrase}"
            ) from exc
        except httpx.HTTPError as exc:
            raise CredentialError(f"Failed to get provider token: {exc}") from exc
        except ValueError as exc:
            raise CredentialError(f"Malformed token response: {exc}") from exc

        logger.info("Acquired provider token (expires in %ss)", token.expires_in)
        return token.access_token

    async def fetch_vehicles(self, token: str) -> List[ProviderVehicle]:
        """Fetch the fleet roster. Any failure here is fatal for the run."""
        path = f"{self.api_prefix}/fleets/{self.fleet_id}/vehicles"
        try:
            rows = await self._get_all(path, token, {}, "vehicles")
            return _validate(ProviderVehicle, rows)
        except (httpx.HTTPError, ValueError, ProviderPayloadError) as exc:
            raise RosterFetchError(f"Failed to fetch vehicles: {exc}") from exc

    async def fetch_safety_events(self, token: str, vehicle_id: str,
                                  start: datetime, end: datetime) -> FetchResult:
        return await self._fetch_window(
            token, vehicle_id, "safety-events", "events", ProviderSafetyEvent, start, end
        )

    async def fetch_driver_behavior(self, token: str, vehicle_id: str,
                                    start: datetime, end: datetime) -> FetchResult:
        return await self._fetch_window(
            token, vehicle_id, "driver-behavior", "dailyBehavior", ProviderDriverBehavior, start, end
        )

    async def _fetch_window(self, token: str, vehicle_id: str, resource: str, key: str,
                            model: Type[BaseModel], start: datetime, end: datetime) -> FetchResult:
        path = f"{self.api_prefix}/vehicles/{vehicle_id}/{resource}"
        params = {"startDate": start.isoformat(), "endDate": end.isoformat()}
        try:
            rows = await self._get_all(path, token, params, key)
        except (httpx.HTTPError, ValueError, ProviderPayloadError) as exc:
            logger.warning("Failed to fetch %s for %s: %s", resource, vehicle_id, exc)
            return FetchResult(records=[], error=str(exc))
        records, invalid = _validate_each(model, rows, vehicle_id)
        return FetchResult(records=records, invalid=invalid)

    async def _get_all(self, path: str, token: str, params: Dict[str, str], key: str) -> List[Dict]:
        """GET a resource, following ``nextPageToken`` cursors."""
        headers = {"Authorization": f"Bearer {token}"}
        rows: List[Dict] = []
        page_token = None

        for _ in range(MAX_PAGES):
            query = dict(params)
            if page_token:
                query["pageToken"] = page_token
            response = await self.http.get(path, params=query, headers=headers)
            response.raise_for_status()
            data = response.json()

            if isinstance(data, list):
                rows.extend(data)
                return rows
            if not isinstance(data, dict):
                raise ProviderPayloadError(f"Unexpected response body for {path}")

            rows.extend(data.get(key) or [])
            next_token = data.get("nextPageToken")
            if not next_token or next_token == page_token:
                return rows
            page_token = next_token

        logger.warning("Stopped paginating %s after %d pages", path, MAX_PAGES)
        return rows
