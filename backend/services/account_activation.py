"""
Account Activation Client

Activates and deactivates the external account that backs a user.
The external account is addressed by the user's external-auth id.

Uses the SCIM-style contract of the activation service:
- PATCH /Users/{user_auth_id} with {"active": true|false}
"""

import logging

import httpx

from .errors import ExternalServiceError

logger = logging.getLogger(__name__)

SERVICE_NAME = "account-activation"


class AccountActivationClient:
    """
    Client for the external account-activation service.

    Raises ExternalServiceError on any failure; callers decide whether the
    failure matters.
    """

    def __init__(self, base_url: str, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/") if base_url else ""
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    async def activate(self, user_auth_id: str) -> None:
        await self._set_active(user_auth_id, True)

    async def deactivate(self, user_auth_id: str) -> None:
        await self._set_active(user_auth_id, False)

    async def _set_active(self, user_auth_id: str, active: bool) -> None:
        if not self.configured:
            logger.warning(f"Activation service not configured; skipping active={active} for {user_auth_id}")
            return

        url = f"{self.base_url}/Users/{user_auth_id}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.patch(url, json={"active": active})
        except httpx.TimeoutException as e:
            raise ExternalServiceError(SERVICE_NAME, "request timed out") from e
        except httpx.RequestError as e:
            raise ExternalServiceError(SERVICE_NAME, f"request error: {e}") from e

        if response.status_code >= 400:
            raise ExternalServiceError(
                SERVICE_NAME,
                f"returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        logger.info(f"External account {user_auth_id} set active={active}")
