"""HTTP and websocket client for a ComfyUI-style image generation server."""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable

import httpx
import websockets
from websockets.exceptions import WebSocketException

from backend_errors import BackendError, BackendUnreachableError, MalformedResponseError
from config import ImageBackendConfig
from utils import short_id, truncate

logger = logging.getLogger(__name__)

SERVICE_NAME = "image backend"

ProgressCallback = Callable[[int, int], None]


@dataclass(frozen=True)
class ImageOutput:
    """Reference to one image produced by a finished prompt."""
    filename: str
    subfolder: str = ""
    type: str = "output"


def extract_images(entry: dict[str, Any]) -> list[ImageOutput]:
    """Collect image references from a history entry.

    Outputs are nested per output node ({"outputs": {node_id: {"images": [...]}}});
    images from every node are returned in node order.
    """
    images = []
    outputs = entry.get("outputs") or {}
    if not isinstance(outputs, dict):
        return images
    for node_output in outputs.values():
        if not isinstance(node_output, dict):
            continue
        for image in node_output.get("images") or []:
            if isinstance(image, dict) and image.get("filename"):
                images.append(ImageOutput(
                    filename=image["filename"],
                    subfolder=image.get("subfolder", ""),
                    type=image.get("type", "output"),
                ))
    return images


def _is_finished(entry: dict[str, Any]) -> bool:
    status = entry.get("status") or {}
    return bool(status.get("completed")) or status.get("status_str") == "error"


def _history_error(entry: dict[str, Any]) -> str:
    """Best human-readable failure reason from a history entry."""
    status = entry.get("status") or {}
    for message in status.get("messages") or []:
        if isinstance(message, list) and len(message) == 2 and message[0] == "execution_error":
            data = message[1] or {}
            node = data.get("node_type", "")
            reason = data.get("exception_message", "unknown error")
            return f"{node}: {reason}" if node else reason
    return f"status '{status.get('status_str', 'unknown')}'"


class ImageBackendClient:
    """Submits workflows, tracks their progress and fetches the resulting images."""

    def __init__(
        self,
        config: ImageBackendConfig,
        http_client: httpx.AsyncClient | None = None,
        client_id: str | None = None,
    ):
        """Initialize the client.

        Args:
            config: Image backend configuration
            http_client: Optional pre-built HTTP client (used in tests, not closed by close())
            client_id: Websocket client id (random if not given)
        """
        self.config = config
        self.client_id = client_id or str(uuid.uuid4())
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient()

    @property
    def endpoint(self) -> str:
        return self.config.endpoint.rstrip("/")

    @property
    def websocket_url(self) -> str:
        base = self.endpoint.replace("https://", "wss://").replace("http://", "ws://")
        return f"{base}/ws?clientId={self.client_id}"

    async def _request(self, method: str, path: str, timeout: float | None = None, **kwargs) -> httpx.Response:
        try:
            response = await self._http.request(
                method,
                f"{self.endpoint}{path}",
                timeout=timeout or self.config.request_timeout,
                **kwargs,
            )
        except httpx.TimeoutException as e:
            raise BackendUnreachableError(SERVICE_NAME, self.endpoint, f"{method} {path} timed out") from e
        except httpx.TransportError as e:
            raise BackendUnreachableError(SERVICE_NAME, self.endpoint, type(e).__name__) from e

        if response.status_code >= 400:
            raise BackendError(
                f"{SERVICE_NAME} at {self.endpoint} returned HTTP {response.status_code} "
                f"for {method} {path}: {truncate(response.text)}",
                self.endpoint,
            )
        return response

    def _json(self, response: httpx.Response, what: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponseError(
                f"{SERVICE_NAME} returned invalid JSON for {what}",
                len(response.content),
                self.endpoint,
            ) from e

    async def health_check(self) -> bool:
        """Return True if the server answers /system_stats."""
        try:
            await self.system_stats()
            return True
        except BackendError as e:
            logger.info(f"Image backend health check failed: {e}")
            return False

    async def system_stats(self) -> dict:
        response = await self._request("GET", "/system_stats")
        return self._json(response, "system stats")

    async def list_checkpoints(self) -> list[str]:
        """Checkpoint filenames known to the checkpoint loader node."""
        response = await self._request("GET", "/object_info/CheckpointLoaderSimple")
        data = self._json(response, "object info")
        try:
            names = data["CheckpointLoaderSimple"]["input"]["required"]["ckpt_name"][0]
        except (KeyError, IndexError, TypeError) as e:
            raise MalformedResponseError(
                "Unexpected object_info shape for CheckpointLoaderSimple",
                len(response.content),
                self.endpoint,
            ) from e
        return list(names)

    async def submit(self, workflow: dict) -> str:
        """
        Queue a workflow for execution.

        Args:
            workflow: Workflow graph keyed by node id

        Returns:
            The backend's prompt id

        Raises:
            BackendError: The workflow was rejected (node errors or HTTP error)
            MalformedResponseError: No prompt id in the response
        """
        response = await self._request("POST", "/prompt", json={
            "prompt": workflow,
            "client_id": self.client_id,
        })
        data = self._json(response, "prompt submission")
        node_errors = data.get("node_errors") if isinstance(data, dict) else None
        if node_errors:
            raise BackendError(
                f"Workflow rejected with node errors: {truncate(json.dumps(node_errors))}",
                self.endpoint,
            )
        prompt_id = data.get("prompt_id") if isinstance(data, dict) else None
        if not isinstance(prompt_id, str) or not prompt_id:
            raise MalformedResponseError(
                "Prompt submission response is missing prompt_id",
                len(response.content),
                self.endpoint,
            )
        return prompt_id

    async def get_history(self, prompt_id: str) -> dict | None:
        """History entry for a prompt, or None while it has not finished."""
        response = await self._request("GET", f"/history/{prompt_id}")
        data = self._json(response, "history")
        if not isinstance(data, dict):
            raise MalformedResponseError("History response is not an object", len(response.content), self.endpoint)
        entry = data.get(prompt_id)
        return entry if isinstance(entry, dict) else None

    async def fetch_image(self, image: ImageOutput) -> bytes:
        response = await self._request("GET", "/view", params={
            "filename": image.filename,
            "subfolder": image.subfolder,
            "type": image.type,
        })
        return response.content

    async def free_memory(self, unload_models: bool = True) -> None:
        """Ask the backend to release GPU memory."""
        body = {"unload_models": True} if unload_models else {"free_memory": True}
        await self._request("POST", "/free", json=body)

    async def interrupt(self) -> None:
        """Interrupt the prompt currently executing on the backend."""
        await self._request("POST", "/interrupt", timeout=5.0)

    async def wait_for_completion(
        self,
        prompt_id: str,
        on_progress: ProgressCallback | None = None,
    ) -> list[ImageOutput]:
        """
        Wait for a submitted prompt to finish.

        Uses the push progress websocket when enabled, falling back to polling
        the history endpoint if the websocket cannot be used.

        Args:
            prompt_id: Id returned by submit()
            on_progress: Called with (current_step, total_steps)

        Returns:
            Images produced by the prompt

        Raises:
            BackendError: Generation failed, produced nothing, or timed out
        """
        try:
            return await asyncio.wait_for(
                self._wait(prompt_id, on_progress),
                timeout=self.config.generation_timeout,
            )
        except asyncio.TimeoutError as e:
            raise BackendError(
                f"Generation {short_id(prompt_id)} did not finish within "
                f"{self.config.generation_timeout:.0f}s at {self.endpoint}",
                self.endpoint,
            ) from e

    async def _wait(self, prompt_id: str, on_progress: ProgressCallback | None) -> list[ImageOutput]:
        if self.config.use_websocket:
            try:
                images = await self._wait_websocket(prompt_id, on_progress)
                if images is not None:
                    return images
            except (OSError, WebSocketException) as e:
                logger.warning(f"Progress websocket unavailable ({e}), falling back to polling")
        return await self._poll(prompt_id)

    async def _wait_websocket(
        self,
        prompt_id: str,
        on_progress: ProgressCallback | None,
    ) -> list[ImageOutput] | None:
        """Follow push progress. Returns None if the channel went quiet."""
        async with websockets.connect(self.websocket_url, open_timeout=self.config.request_timeout) as ws:
            # The prompt may have finished before the socket opened
            entry = await self.get_history(prompt_id)
            if entry is not None and _is_finished(entry):
                return self._images_from_entry(prompt_id, entry)

            while True:
                try:
                    raw = await asyncio.wait_for(ws.recv(), timeout=self.config.websocket_idle_timeout)
                except asyncio.TimeoutError:
                    logger.info(f"No progress for {short_id(prompt_id)} in "
                                f"{self.config.websocket_idle_timeout:.0f}s, switching to polling")
                    return None

                if isinstance(raw, bytes):
                    # Binary frames are latent previews
                    continue
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    continue
                if not isinstance(message, dict):
                    continue

                kind = message.get("type")
                data = message.get("data")
                if not isinstance(data, dict):
                    data = {}
                if data.get("prompt_id") not in (None, prompt_id):
                    continue

                if kind == "progress":
                    try:
                        current, total = int(data.get("value", 0)), int(data.get("max", 1))
                    except (TypeError, ValueError) as e:
                        raise MalformedResponseError(
                            f"Malformed progress message for {short_id(prompt_id)}: {truncate(raw, 120)!r}",
                            len(raw),
                            self.endpoint,
                        ) from e
                    if on_progress is not None:
                        on_progress(current, total)
                elif kind == "executing" and data.get("node") is None and data.get("prompt_id") == prompt_id:
                    entry = await self.get_history(prompt_id)
                    if entry is None:
                        raise BackendError(
                            f"No history found for {short_id(prompt_id)} after generation",
                            self.endpoint,
                        )
                    return self._images_from_entry(prompt_id, entry)
                elif kind == "execution_error":
                    reason = data.get("exception_message", "unknown error")
                    raise BackendError(f"Image backend error: {reason}", self.endpoint)
                elif kind == "execution_interrupted":
                    raise BackendError(f"Generation {short_id(prompt_id)} was interrupted", self.endpoint)

    async def _poll(self, prompt_id: str) -> list[ImageOutput]:
        while True:
            entry = await self.get_history(prompt_id)
            if entry is not None and _is_finished(entry):
                return self._images_from_entry(prompt_id, entry)
            await asyncio.sleep(self.config.poll_interval)

    def _images_from_entry(self, prompt_id: str, entry: dict) -> list[ImageOutput]:
        status = entry.get("status") or {}
        if status.get("status_str") == "error":
            raise BackendError(f"Image backend error: {_history_error(entry)}", self.endpoint)
        images = extract_images(entry)
        if not images:
            raise BackendError(f"Generation {short_id(prompt_id)} finished without producing an image", self.endpoint)
        return images

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()
