"""
FHIR Publisher Client

Sends Patient resources to the clinical-record (FHIR) server.

- publish_new: POST /Patient
- publish_update: PUT /Patient/{id}
"""

import logging
from typing import Dict, Any

import httpx

from .errors import ExternalServiceError

logger = logging.getLogger(__name__)

SERVICE_NAME = "fhir-publisher"
FHIR_JSON = "application/fhir+json"


class FhirPublisherClient:
    """
    Client for the FHIR server.

    Raises ExternalServiceError on any failure.
    """

    def __init__(self, base_url: str, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/") if base_url else ""
        self.timeout = timeout

    async def publish_new(self, resource: Dict[str, Any]) -> None:
        await self._send("POST", f"{self.base_url}/Patient", resource)

    async def publish_update(self, resource: Dict[str, Any]) -> None:
        resource_id = resource.get("id")
        if not resource_id:
            raise ExternalServiceError(SERVICE_NAME, "cannot update a Patient resource without an id")
        await self._send("PUT", f"{self.base_url}/Patient/{resource_id}", resource)

    async def _send(self, method: str, url: str, resource: Dict[str, Any]) -> None:
        if not self.base_url:
            raise ExternalServiceError(SERVICE_NAME, "FHIR server URL is not configured")

        headers = {"Content-Type": FHIR_JSON, "Accept": FHIR_JSON}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(method, url, json=resource, headers=headers)
        except httpx.TimeoutException as e:
            raise ExternalServiceError(SERVICE_NAME, "request timed out") from e
        except httpx.RequestError as e:
            raise ExternalServiceError(SERVICE_NAME, f"request error: {e}") from e

        if response.status_code >= 400:
            raise ExternalServiceError(
                SERVICE_NAME,
                f"{method} returned {response.status_code}",
                status_code=response.status_code,
            )

        logger.info(f"FHIR {method} Patient/{resource.get('id', '')} -> {response.status_code}")
