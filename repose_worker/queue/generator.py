"""Client for the external "generate one output" capability."""

from abc import ABC, abstractmethod
from typing import Optional

import httpx

RETRYABLE_STATUS_CODES = {503, 504}
RETRYABLE_SIGNATURES = ("503", "504", "Service Unavailable", "Gateway Timeout")


class GenerationError(Exception):
    """A generation call failed.

    ``transient`` marks failures below HTTP (connection resets, timeouts)
    that are worth another attempt regardless of the message.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, transient: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.transient = transient


def is_retryable(error: Exception) -> bool:
    """True for 503/504-class failures and network-level errors.

    A known HTTP status decides on its own; message signatures only apply to
    errors that carry no status (the response body may contain any digits).
    """
    if isinstance(error, GenerationError):
        if error.transient:
            return True
        if error.status_code is not None:
            return error.status_code in RETRYABLE_STATUS_CODES
    message = str(error)
    return any(signature in message for signature in RETRYABLE_SIGNATURES)


class OutputGenerator(ABC):
    """Produces the image for one output and stores it."""

    @abstractmethod
    async def generate(
        self, output_id: str, model: str, image_size: Optional[str] = None
    ) -> Optional[str]:
        """Generate the output. Returns the stored result URL, if reported.

        Raises GenerationError on failure.
        """
        ...


class EdgeFunctionGenerator(OutputGenerator):
    """Invokes the single-output generation edge function over HTTP."""

    def __init__(
        self,
        supabase_url: str,
        service_role_key: str,
        function_name: str = "generate-repose-single",
        timeout_seconds: float = 400.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._url = f"{supabase_url.rstrip('/')}/functions/v1/{function_name}"
        self._headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {service_role_key}",
        }
        self._timeout = timeout_seconds
        self._transport = transport

    async def generate(
        self, output_id: str, model: str, image_size: Optional[str] = None
    ) -> Optional[str]:
        body = {"outputId": output_id, "model": model}
        if image_size:
            body["imageSize"] = image_size

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(self._url, json=body, headers=self._headers)
        except httpx.TransportError as exc:
            raise GenerationError(f"{type(exc).__name__}: {exc}", transient=True) from exc

        if response.status_code >= 400:
            raise GenerationError(
                f"Generation failed with HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError:
            return None
        if isinstance(payload, dict):
            return payload.get("resultUrl") or payload.get("result_url")
        return None
