from abc import ABC, abstractmethod

import httpx

from threadline.services.errors import ProviderSendError

# Status codes worth retrying from outside the ledger
RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


class MessagingProvider(ABC):
    """Abstract base class for messaging providers."""

    name: str = "unknown"

    @abstractmethod
    def send_text(self, destination: str, text: str) -> str:
        """Send a plain text message. Returns the provider message id."""
        pass


class GraphAPIProvider(MessagingProvider):
    """Shared transport for Meta Graph API senders."""

    BASE_URL = "https://graph.facebook.com/{version}"

    def __init__(self, access_token: str, api_version: str, timeout_seconds: float):
        self.access_token = access_token
        self.base_url = self.BASE_URL.format(version=api_version)
        self.timeout_seconds = timeout_seconds

    def _post(self, path: str, payload: dict) -> dict:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.post(
                    url,
                    headers={
                        "Authorization": f"Bearer {self.access_token}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.TimeoutException as e:
            raise ProviderSendError(f"{self.name} send timed out: {e}", retryable=True) from e
        except httpx.HTTPError as e:
            raise ProviderSendError(f"{self.name} transport error: {e}", retryable=True) from e

        if response.status_code >= 400:
            raise ProviderSendError(
                f"{self.name} API error: {response.status_code} - {response.text[:500]}",
                retryable=response.status_code in RETRYABLE_STATUS_CODES,
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise ProviderSendError(f"{self.name} returned invalid JSON", status_code=response.status_code) from e
