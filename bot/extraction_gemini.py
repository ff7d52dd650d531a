from __future__ import annotations

import base64
import json
import logging
import re
from typing import Any

import httpx
from pydantic import ValidationError

import config
from eligibility_engine.exceptions import ExtractionFailureError
from eligibility_engine.models import ExtractedRecord, IdType

logger = logging.getLogger(__name__)

_PROMPT_TEMPLATE = (
    "Extract data from this {id_type}. Perform image quality checks for clarity, completeness, and readability.\n"
    "Return a JSON object with:\n"
    "- fullName (string)\n"
    "- dob (string, YYYY-MM-DD)\n"
    "- idNumber (string)\n"
    "- documentType (string, classify it)\n"
    "- confidenceScores (object with fullName, dob, idNumber as floats 0-1)\n"
    "- qualityCheck (object with isClear, isComplete, isReadable as booleans, and optional reason if false)\n"
    "IMPORTANT: If the image is blurry or unreadable, set isReadable to false and provide a reason."
)

RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "fullName": {"type": "STRING"},
        "dob": {"type": "STRING"},
        "idNumber": {"type": "STRING"},
        "documentType": {"type": "STRING"},
        "confidenceScores": {
            "type": "OBJECT",
            "properties": {
                "fullName": {"type": "NUMBER"},
                "dob": {"type": "NUMBER"},
                "idNumber": {"type": "NUMBER"},
            },
            "required": ["fullName", "dob", "idNumber"],
        },
        "qualityCheck": {
            "type": "OBJECT",
            "properties": {
                "isClear": {"type": "BOOLEAN"},
                "isComplete": {"type": "BOOLEAN"},
                "isReadable": {"type": "BOOLEAN"},
                "reason": {"type": "STRING"},
            },
            "required": ["isClear", "isComplete", "isReadable"],
        },
    },
    "required": ["fullName", "dob", "idNumber", "documentType", "confidenceScores", "qualityCheck"],
}


def encode_image(image: bytes | str) -> str:
    """Base64 payload for ``inline_data``; accepts raw bytes or a (data URL) base64 string."""
    if isinstance(image, bytes):
        return base64.b64encode(image).decode("utf-8")
    return image.split(",", 1)[1] if image.startswith("data:") else image


def _strip_markdown(content: str) -> str:
    content = content.strip()
    if "```json" in content:
        content = content.split("```json")[1].split("```")[0].strip()
    elif "```" in content:
        content = content.split("```")[1].split("```")[0].strip()
    json_match = re.search(r"\{.*\}", content, re.DOTALL)
    if json_match:
        content = json_match.group()
    return content


class GeminiExtractor:
    """Async Gemini ``generateContent`` client returning validated identity data."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key if api_key is not None else config.GEMINI_API_KEY
        self._model = model or config.GEMINI_MODEL
        self._client = httpx.AsyncClient(
            base_url=(base_url or config.GEMINI_BASE_URL).rstrip("/"),
            timeout=timeout or config.GEMINI_HTTP_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def _payload(self, image: bytes | str, id_type: IdType) -> dict[str, Any]:
        return {
            "contents": [{
                "parts": [
                    {"inline_data": {"mime_type": "image/jpeg", "data": encode_image(image)}},
                    {"text": _PROMPT_TEMPLATE.format(id_type=id_type.value)},
                ],
            }],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": RESPONSE_SCHEMA,
            },
        }

    async def extract(self, image: bytes | str, id_type: IdType) -> ExtractedRecord:
        if not self._api_key:
            raise ExtractionFailureError("GEMINI_API_KEY is not configured")

        logger.info("gemini extraction started | model=%s id_type=%s", self._model, id_type.value)
        try:
            response = await self._client.post(
                f"/models/{self._model}:generateContent",
                params={"key": self._api_key},
                json=self._payload(image, id_type),
            )
            response.raise_for_status()
            body = response.json()
            content = body["candidates"][0]["content"]["parts"][0]["text"]
        except (httpx.HTTPError, ValueError, KeyError, IndexError, TypeError) as exc:
            raise ExtractionFailureError(f"gemini request failed: {exc}") from exc

        logger.debug("gemini_raw_response | chars=%d", len(content))
        try:
            parsed = json.loads(_strip_markdown(content))
            return ExtractedRecord.model_validate(parsed)
        except (json.JSONDecodeError, ValidationError) as exc:
            raise ExtractionFailureError(f"gemini response could not be parsed: {exc}") from exc
