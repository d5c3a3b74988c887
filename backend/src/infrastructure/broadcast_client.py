"""HTTP client for best-effort UI broadcasts via the API gateway."""

from typing import Any, Dict, Optional

import httpx


class BroadcastError(Exception):
    """Raised when the gateway rejects or cannot receive a broadcast."""
    pass


class BroadcastClient:
    """POSTs ``{"eventType", "payload"}`` to ``{base_url}/internal/broadcast``.

    Authenticates with the shared ``X-Internal-Secret`` header.
    """

    def __init__(
        self,
        base_url: str,
        internal_secret: str,
        timeout: float = 2.0,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.internal_secret = internal_secret
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)

    def send(self, event_type: str, payload: Dict[str, Any]) -> None:
        """Send one broadcast.

        Raises:
            BroadcastError: On network failures or non-2xx responses
        """
        url = f"{self.base_url}/internal/broadcast"
        try:
            response = self._client.post(
                url,
                json={"eventType": event_type, "payload": payload},
                headers={"X-Internal-Secret": self.internal_secret},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise BroadcastError(
                f"Gateway returned {e.response.status_code} for broadcast {event_type}"
            ) from e
        except httpx.RequestError as e:
            raise BroadcastError(f"Broadcast {event_type} failed: {e}") from e

    def close(self) -> None:
        self._client.close()
