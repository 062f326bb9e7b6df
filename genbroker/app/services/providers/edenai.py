"""Eden AI image/video generation client."""

from __future__ import annotations

import logging
import math
import random
from typing import Any, Dict

import requests

from ...core.config import settings
from .. import catalog
from .base import GenerationProvider, GenerationResult

logger = logging.getLogger(__name__)

# HTTP statuses worth another attempt; everything else in 4xx is final.
RETRYABLE_STATUSES = {408, 409, 425, 429, 500, 502, 503, 504}


class EdenAIError(RuntimeError):
    """Raised when Eden AI responds with an error."""


class EdenAIProvider(GenerationProvider):
    """
    Generation provider backed by the Eden AI unified API.
    """

    def __init__(self, api_key: str | None = None, base_url: str | None = None, timeout: float | None = None):
        self.api_key = api_key or settings.edenai_api_key
        self.base_url = (base_url or settings.edenai_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.provider_timeout_seconds

    def generate(self, type: str, prompt: str, model: str, params: Dict[str, Any]) -> GenerationResult:
        spec = catalog.get_model(type, model)
        if spec is None:
            return GenerationResult.failure(f"Unknown {type} model: {model}", retryable=False)
        if len(prompt) > spec.max_prompt_length:
            return GenerationResult.failure(
                f"Prompt too long. Max length: {spec.max_prompt_length}", retryable=False
            )
        if not self.api_key:
            raise EdenAIError("Eden AI API key is required. Set EDEN_AI_API_KEY.")

        if spec.type == catalog.IMAGE:
            return self._generate_image(spec, prompt, params)
        return self._generate_video(spec, prompt, params)

    def _generate_image(self, spec: catalog.ModelSpec, prompt: str, params: Dict[str, Any]) -> GenerationResult:
        quantity = int(params.get("quantity") or 1)
        resolution = params.get("size") or spec.default_size or "1024x1024"
        body: Dict[str, Any] = {
            "providers": spec.provider,
            "text": prompt,
            "resolution": resolution,
            "num_images": quantity,
            "response_as_dict": True,
            "attributes_as_list": False,
            "show_original_response": False,
        }
        if spec.provider == "openai":
            body["quality"] = params.get("quality") or "standard"
            body["style"] = params.get("style") or "vivid"
        elif spec.provider == "stabilityai":
            body["cfg_scale"] = params.get("cfg_scale") or 7
            body["steps"] = params.get("steps") or 30
            body["seed"] = params.get("seed") or random.randint(0, 999_999)

        payload = self._post("/image/generation", body, spec)
        provider_result = _provider_result(payload, spec)
        items = provider_result.get("items") or []
        if not items:
            return GenerationResult.failure("No images generated")

        images = [{"url": item.get("image"), "size": resolution, "seed": item.get("image_seed")} for item in items]
        return GenerationResult(
            success=True,
            result_url=images[0]["url"],
            credits_used=math.ceil(spec.credits * quantity),
            metadata={
                "provider": spec.provider,
                "images": images,
                "request_id": payload.get("request_id"),
                "processing_time": payload.get("processing_time"),
            },
        )

    def _generate_video(self, spec: catalog.ModelSpec, prompt: str, params: Dict[str, Any]) -> GenerationResult:
        duration = min(int(params.get("duration") or catalog.DEFAULT_VIDEO_DURATION), spec.max_duration or 8)
        resolution = params.get("size") or spec.default_size
        body = {
            "providers": spec.provider,
            "text": prompt,
            "duration": duration,
            "resolution": resolution,
            "response_as_dict": True,
        }

        payload = self._post("/video/generation", body, spec)
        provider_result = _provider_result(payload, spec)
        video_url = provider_result.get("video_url")
        if not video_url:
            return GenerationResult.failure("No video returned")

        return GenerationResult(
            success=True,
            result_url=video_url,
            credits_used=math.ceil(spec.credits),
            metadata={
                "provider": spec.provider,
                "duration": duration,
                "resolution": resolution,
                "request_id": payload.get("request_id"),
                "processing_time": payload.get("processing_time"),
                "file_size": provider_result.get("file_size"),
            },
        )

    def _post(self, path: str, body: Dict[str, Any], spec: catalog.ModelSpec) -> Dict[str, Any]:
        logger.info(
            "Eden AI generation started",
            extra={"data": {"provider": spec.provider, "model": spec.key, "path": path}},
        )
        resp = requests.post(
            f"{self.base_url}{path}",
            headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
            json=body,
            timeout=self.timeout,
        )
        if resp.status_code >= 400:
            detail = resp.text[:500]
            logger.warning(
                "Eden AI API error",
                extra={"data": {"status": resp.status_code, "model": spec.key, "detail": detail}},
            )
            raise ProviderHTTPError(resp.status_code, f"Eden AI API Error: {resp.status_code} - {detail}")
        return resp.json()


class ProviderHTTPError(EdenAIError):
    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = status_code in RETRYABLE_STATUSES


def _provider_result(payload: Dict[str, Any], spec: catalog.ModelSpec) -> Dict[str, Any]:
    result = payload.get(spec.provider)
    if not isinstance(result, dict) or result.get("status") != "success":
        error = result.get("error") if isinstance(result, dict) else None
        raise EdenAIError(f"Generation failed: {error or 'Unknown error'}")
    return result
