"""
Transform Provider Client

Wraps the external image-generation capability. Two operations are exposed:
remove_background and add_studio_white_background. Each sends the image with
a fixed instruction, asks for image-only output, and returns the first image
payload of the response.

Failures:
- ProviderError: transport errors, non-200 responses, malformed bodies
- NoImageReturned: well-formed response without an image part
"""

import base64
import binascii
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from studiostyle.core.config import settings
from studiostyle.core.exceptions import NoImageReturned, ProviderError
from studiostyle.core.logging import get_logger
from studiostyle.core.metrics import track_operation_latency

logger = get_logger(__name__)


REMOVE_BACKGROUND = "remove_background"
ADD_STUDIO_WHITE_BACKGROUND = "add_studio_white_background"

REMOVE_BACKGROUND_PROMPT = (
    "Please remove the background from this image accurately. Detect complex edges like hair, "
    "fabric, or transparent objects. The output should be a clean PNG with a true transparent "
    "background, preserving all details, textures, colors, and sharpness of the main subject. "
    "Do not add any shadows or enhancements."
)

STUDIO_WHITE_BACKGROUND_PROMPT = (
    "Take this image of a subject and place it on a clean, solid white background (#FFFFFF). "
    "Enhance the image to studio quality by correcting the lighting, balancing contrast and "
    "brightness, and adding a natural, soft drop shadow beneath the subject to give it depth. "
    "Preserve all original details, textures, and colors of the subject."
)


class TransformProvider(ABC):
    """Interface for the image-generation capability."""

    @abstractmethod
    async def transform(
        self,
        image_bytes: bytes,
        mime_type: str,
        instruction: str,
        operation: str
    ) -> bytes:
        """
        Send an image plus an instruction and return the generated image bytes.

        Raises:
            ProviderError: transport or provider-level failure
            NoImageReturned: the response held no image data
        """
        pass

    async def remove_background(self, image_bytes: bytes, mime_type: str) -> bytes:
        return await self.transform(
            image_bytes, mime_type, REMOVE_BACKGROUND_PROMPT, REMOVE_BACKGROUND
        )

    async def add_studio_white_background(self, image_bytes: bytes, mime_type: str) -> bytes:
        return await self.transform(
            image_bytes, mime_type, STUDIO_WHITE_BACKGROUND_PROMPT, ADD_STUDIO_WHITE_BACKGROUND
        )

    async def aclose(self):
        """Release any held connections."""


def _find_inline_data(body: Dict[str, Any]) -> Optional[str]:
    for candidate in body.get("candidates") or []:
        parts = (candidate.get("content") or {}).get("parts") or []
        for part in parts:
            inline = part.get("inlineData") or part.get("inline_data")
            if inline and inline.get("data"):
                return inline["data"]
    return None


def extract_image_bytes(body: Dict[str, Any], operation: Optional[str] = None) -> bytes:
    """Return the first inline image payload of a generateContent response."""
    if not isinstance(body, dict):
        raise ProviderError("Provider returned an unexpected response body", operation=operation)

    try:
        data = _find_inline_data(body)
        block_reason = None if data else (body.get("promptFeedback") or {}).get("blockReason")
    except (AttributeError, TypeError) as e:
        raise ProviderError(
            "Provider returned an unexpected response body",
            operation=operation,
            cause=e
        )

    if data:
        try:
            return base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError, TypeError) as e:
            raise ProviderError(
                "Provider returned undecodable image data",
                operation=operation,
                cause=e
            )

    if block_reason:
        raise NoImageReturned(
            f"No image data found in provider response (blocked: {block_reason}).",
            operation=operation
        )
    raise NoImageReturned(operation=operation)


def _error_message(response: httpx.Response) -> str:
    try:
        return response.json()["error"]["message"]
    except (ValueError, KeyError, TypeError):
        return response.text[:500]


class GeminiProvider(TransformProvider):
    """
    Gemini image model over the generateContent REST endpoint.

    Pass an httpx.AsyncClient to share connections (or use the provider as an
    async context manager); otherwise a client is opened per call. A transport
    is handed to every client the provider opens itself.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.api_key = api_key if api_key is not None else settings.GEMINI_API_KEY
        self.model = model or settings.GEMINI_MODEL
        self.api_url = (api_url or settings.GEMINI_API_URL).rstrip("/")
        self.timeout = timeout or settings.PROVIDER_TIMEOUT_SECONDS
        self._client = client
        self._owns_client = False
        self._transport = transport

    @property
    def endpoint(self) -> str:
        return f"{self.api_url}/models/{self.model}:generateContent"

    async def __aenter__(self) -> "GeminiProvider":
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
            self._owns_client = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self):
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
            self._owns_client = False

    def build_payload(self, image_bytes: bytes, mime_type: str, instruction: str) -> Dict[str, Any]:
        return {
            "contents": [{
                "parts": [
                    {
                        "inline_data": {
                            "mime_type": mime_type,
                            "data": base64.b64encode(image_bytes).decode("utf-8"),
                        }
                    },
                    {"text": instruction},
                ]
            }],
            "generationConfig": {
                "responseModalities": ["IMAGE"]
            }
        }

    async def _post(self, payload: Dict[str, Any], headers: Dict[str, str]) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(self.endpoint, json=payload, headers=headers)
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            return await client.post(self.endpoint, json=payload, headers=headers)

    async def transform(
        self,
        image_bytes: bytes,
        mime_type: str,
        instruction: str,
        operation: str
    ) -> bytes:
        start_time = datetime.now(timezone.utc)
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["x-goog-api-key"] = self.api_key

        payload = self.build_payload(image_bytes, mime_type, instruction)
        logger.info("provider_call_started", operation=operation, input_size=len(image_bytes))

        try:
            with track_operation_latency(operation):
                try:
                    response = await self._post(payload, headers)
                except httpx.TimeoutException as e:
                    raise ProviderError(
                        f"Provider request timed out after {self.timeout:g}s",
                        operation=operation,
                        cause=e
                    )
                except httpx.HTTPError as e:
                    raise ProviderError(
                        f"Provider request failed: {e}",
                        operation=operation,
                        cause=e
                    )

                if response.status_code != 200:
                    raise ProviderError(
                        f"Provider error ({response.status_code}): {_error_message(response)}",
                        operation=operation,
                        http_status=response.status_code
                    )

                try:
                    body = response.json()
                except ValueError as e:
                    raise ProviderError(
                        "Provider returned malformed JSON",
                        operation=operation,
                        http_status=response.status_code,
                        cause=e
                    )

                output_bytes = extract_image_bytes(body, operation=operation)

        except (ProviderError, NoImageReturned) as e:
            logger.warning(
                "provider_call_failed",
                operation=operation,
                error=e.message,
                error_type=type(e).__name__
            )
            raise

        duration_ms = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)
        logger.info(
            "provider_call_completed",
            operation=operation,
            duration_ms=duration_ms,
            output_size=len(output_bytes)
        )
        return output_bytes
