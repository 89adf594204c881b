"""GPU power draw readings from a Home Assistant sensor."""

import logging

import httpx

from backend_errors import BackendError, BackendUnreachableError, MalformedResponseError
from config import HardwareConfig

logger = logging.getLogger(__name__)

SERVICE_NAME = "power monitor"


class PowerMonitor:
    """Reads the current GPU power draw from Home Assistant's state API."""

    def __init__(self, config: HardwareConfig, http_client: httpx.AsyncClient | None = None, timeout: float = 5.0):
        self.config = config
        self.timeout = timeout
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient()

    @property
    def endpoint(self) -> str:
        return self.config.power_monitor_url.rstrip("/")

    async def read_watts(self) -> float:
        """
        Current power draw in watts.

        Raises:
            BackendUnreachableError: Home Assistant did not answer
            BackendError: Non-2xx response
            MalformedResponseError: The sensor state is not a number
        """
        url = f"{self.endpoint}/api/states/{self.config.power_entity_id}"
        headers = {}
        if self.config.power_monitor_token:
            headers["Authorization"] = f"Bearer {self.config.power_monitor_token}"

        try:
            response = await self._http.get(url, headers=headers, timeout=self.timeout)
        except httpx.TransportError as e:
            raise BackendUnreachableError(SERVICE_NAME, self.endpoint, type(e).__name__) from e

        if response.status_code >= 400:
            raise BackendError(
                f"{SERVICE_NAME} returned HTTP {response.status_code} for {self.config.power_entity_id}",
                self.endpoint,
            )

        try:
            state = response.json()["state"]
            return float(state)
        except (ValueError, KeyError, TypeError) as e:
            raise MalformedResponseError(
                f"Sensor {self.config.power_entity_id} has no numeric state",
                len(response.content),
                self.endpoint,
            ) from e

    async def is_over_limit(self) -> bool:
        """True if the draw exceeds max_watts. Monitor failures never block generation."""
        try:
            watts = await self.read_watts()
        except BackendError as e:
            logger.warning(f"Power check failed, proceeding: {e}")
            return False
        if watts > self.config.max_watts:
            logger.info(f"GPU power draw {watts:.0f}W exceeds {self.config.max_watts:.0f}W")
            return True
        return False

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()
