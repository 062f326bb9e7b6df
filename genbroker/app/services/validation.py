"""Admission checks for generation requests: content rules, options and usage limits."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field, replace
from typing import Any, Optional

from ..core.config import settings
from ..core.errors import UsageLimitExceededError
from . import catalog
from .jobs import JobStore

logger = logging.getLogger(__name__)

# Anchored at a word start so "skill" is not read as "kill".
UNSAFE_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("violent content", re.compile(r"\b(?:violence|kill|death|blood|gore)", re.IGNORECASE)),
    ("sexual content", re.compile(r"\b(?:naked|nude|sexual|erotic|porn)", re.IGNORECASE)),
    ("drug-related content", re.compile(r"\b(?:drug|cocaine|heroin|marijuana)", re.IGNORECASE)),
    ("hateful content", re.compile(r"\b(?:hate|racist|nazi|terrorism)", re.IGNORECASE)),
    ("self-harm content", re.compile(r"\b(?:suicide|self.?harm|cutting)", re.IGNORECASE)),
)

OPENAI_QUALITIES = ("standard", "hd")
DALLE3_STYLES = ("vivid", "natural")
MIN_VIDEO_DURATION = 2


@dataclass
class GenerationRequest:
    user_id: str
    type: str
    model: str
    prompt: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class ValidationResult:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    cleaned: Optional[GenerationRequest] = None


class RequestValidator:
    """Content and option rules applied before any credits are reserved."""

    def __init__(
        self,
        *,
        min_prompt_length: int | None = None,
        max_prompt_length: int | None = None,
        banned_words: list[str] | None = None,
        max_image_quantity: int | None = None,
    ) -> None:
        self.min_prompt_length = min_prompt_length if min_prompt_length is not None else settings.prompt_min_length
        self.max_prompt_length = max_prompt_length if max_prompt_length is not None else settings.prompt_max_length
        self.banned_words = [w.lower() for w in (banned_words if banned_words is not None else settings.banned_words)]
        self.max_image_quantity = max_image_quantity if max_image_quantity is not None else settings.max_image_quantity

    def validate(self, request: GenerationRequest) -> ValidationResult:
        result = ValidationResult(is_valid=True)
        prompt = request.prompt.strip() if isinstance(request.prompt, str) else ""
        if not prompt:
            result.errors.append("Prompt is required")
            result.is_valid = False
            return result

        spec = catalog.get_model(request.type, request.model)
        if request.type not in catalog.job_types():
            result.errors.append(f"Unsupported generation type: {request.type}")
        elif spec is None:
            result.errors.append(f"Unsupported model for {request.type}: {request.model}")

        prompt = self._check_prompt(prompt, spec, result)

        params = dict(request.params or {})
        if spec is not None:
            if spec.type == catalog.IMAGE:
                params = self._check_image_options(params, spec, result)
            else:
                params = self._check_video_options(params, spec, result)

        result.is_valid = not result.errors
        if result.is_valid:
            result.cleaned = replace(request, prompt=prompt, params=params)
        else:
            logger.info(
                "Request rejected by validation",
                extra={"data": {"user_id": request.user_id, "model": request.model, "errors": result.errors}},
            )
        return result

    def _check_prompt(self, prompt: str, spec: Optional[catalog.ModelSpec], result: ValidationResult) -> str:
        if len(prompt) < self.min_prompt_length:
            result.errors.append(f"Prompt is too short (minimum {self.min_prompt_length} characters)")
        if len(prompt) > self.max_prompt_length:
            result.errors.append(f"Prompt is too long (maximum {self.max_prompt_length} characters)")

        reasons = [label for label, pattern in UNSAFE_PATTERNS if pattern.search(prompt)]
        if reasons:
            result.errors.append("Prompt contains unsafe content: " + ", ".join(reasons))

        lowered = prompt.lower()
        banned = [word for word in self.banned_words if word in lowered]
        if banned:
            result.errors.append("Prompt contains banned words: " + ", ".join(banned))

        if spec is not None and len(prompt) > spec.max_prompt_length:
            result.warnings.append(
                f"Prompt exceeds the {spec.max_prompt_length}-character limit of {spec.key}; it was truncated"
            )
            prompt = prompt[: spec.max_prompt_length].strip()
        return prompt

    def _check_image_options(self, params: dict[str, Any], spec: catalog.ModelSpec, result: ValidationResult) -> dict[str, Any]:
        size = params.get("size")
        if size:
            if not spec.supports_size(size):
                result.warnings.append(f"Size {size} is not supported; using {spec.default_size}")
                params["size"] = spec.default_size
        elif spec.default_size:
            params["size"] = spec.default_size

        quantity = params.get("quantity")
        if quantity is None:
            params["quantity"] = 1
        elif not isinstance(quantity, int) or isinstance(quantity, bool) or not 1 <= quantity <= self.max_image_quantity:
            result.errors.append(f"Quantity must be between 1 and {self.max_image_quantity}")

        quality = params.get("quality")
        if quality and spec.provider == "openai" and quality not in OPENAI_QUALITIES:
            result.warnings.append("Invalid quality; using standard")
            params["quality"] = "standard"

        style = params.get("style")
        if style and spec.provider_model == "dall-e-3" and style not in DALLE3_STYLES:
            result.warnings.append("Invalid style; using natural")
            params["style"] = "natural"
        return params

    def _check_video_options(self, params: dict[str, Any], spec: catalog.ModelSpec, result: ValidationResult) -> dict[str, Any]:
        max_duration = spec.max_duration or catalog.DEFAULT_VIDEO_DURATION
        duration = params.get("duration")
        if duration is None:
            params["duration"] = catalog.DEFAULT_VIDEO_DURATION
        elif not isinstance(duration, int) or isinstance(duration, bool) or not MIN_VIDEO_DURATION <= duration <= max_duration:
            result.errors.append(f"Duration must be between {MIN_VIDEO_DURATION} and {max_duration} seconds")

        size = params.get("size")
        if size:
            if not spec.supports_size(size):
                result.warnings.append(f"Resolution {size} is not supported; using {spec.default_size}")
                params["size"] = spec.default_size
        elif spec.default_size:
            params["size"] = spec.default_size
        return params


class UsageLimiter:
    """Per-user concurrency and rate limits, counted from the job table."""

    def __init__(
        self,
        jobs: JobStore,
        *,
        max_concurrent: int | None = None,
        max_per_hour: int | None = None,
        max_per_day: int | None = None,
    ) -> None:
        self.jobs = jobs
        self.max_concurrent = max_concurrent if max_concurrent is not None else settings.max_concurrent_jobs_per_user
        self.max_per_hour = max_per_hour if max_per_hour is not None else settings.max_jobs_per_hour
        self.max_per_day = max_per_day if max_per_day is not None else settings.max_jobs_per_day

    def check(self, user_id: str, now: int | None = None) -> None:
        now = now if now is not None else int(time.time())

        active = self.jobs.count_active_for_user(user_id)
        if active >= self.max_concurrent:
            raise UsageLimitExceededError("concurrent", active, self.max_concurrent)

        hourly = self.jobs.count_created_since(user_id, now - 3600)
        if hourly >= self.max_per_hour:
            raise UsageLimitExceededError("hourly", hourly, self.max_per_hour)

        daily = self.jobs.count_created_since(user_id, now - 86400)
        if daily >= self.max_per_day:
            raise UsageLimitExceededError("daily", daily, self.max_per_day)
