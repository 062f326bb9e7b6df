"""Credit cost estimation for generation requests."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any

from ..core.config import settings
from . import catalog

logger = logging.getLogger(__name__)

IMAGE_QUALITY_MULTIPLIERS = {"standard": 1.0, "hd": 1.5, "ultra": 2.0}
IMAGE_SIZE_MULTIPLIERS = {
    "256x256": 0.5,
    "512x512": 0.7,
    "768x768": 1.0,
    "1024x1024": 1.0,
    "1024x768": 1.0,
    "768x1024": 1.0,
    "1152x896": 1.2,
    "896x1152": 1.2,
    "1792x1024": 1.5,
    "1024x1792": 1.5,
}
VIVID_STYLE_MULTIPLIER = 1.2
VIDEO_DURATION_MULTIPLIERS = {2: 0.3, 3: 0.4, 4: 0.5, 5: 0.7, 6: 0.8, 7: 0.9, 8: 1.0}
VIDEO_BASE_PIXELS = 1280 * 768
VIDEO_BASE_FPS = 24

DEFAULT_IMAGE_SIZE = "1024x1024"
DEFAULT_VIDEO_RESOLUTION = "1280x768"

# Rough wall-clock expectations, in seconds, surfaced to users on submit.
_IMAGE_SECONDS = {"dall-e-3": 60, "dall-e-2": 30, "sdxl": 45, "stable-diffusion": 20, "flux": 15}
IMAGE_DEFAULT_SECONDS = 30
VIDEO_DEFAULT_SECONDS = 300
FALLBACK_SECONDS = 60


@dataclass(frozen=True)
class CostEstimate:
    type: str
    model: str
    base_cost: float
    total_cost: int
    breakdown: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AffordableQuantity:
    max_quantity: int
    cost_per_item: int
    total_cost_for_max: int
    remaining_credits: int


def base_cost(job_type: str, model: str, quantity: int = 1) -> float:
    spec = catalog.get_model(job_type, model)
    if spec is None:
        logger.warning("Unknown model; using default rate", extra={"data": {"type": job_type, "model": model}})
        return settings.default_item_cost * quantity
    return spec.credits * quantity


def resolution_multiplier(resolution: str | None) -> float:
    if not resolution or "x" not in resolution:
        return 1.0
    try:
        width, height = (int(part) for part in resolution.lower().split("x", 1))
    except ValueError:
        return 1.0
    return max(0.5, (width * height) / VIDEO_BASE_PIXELS)


def image_cost(model: str, params: dict[str, Any] | None = None) -> CostEstimate:
    params = params or {}
    quantity = int(params.get("quantity") or 1)
    size = params.get("size") or DEFAULT_IMAGE_SIZE
    quality = params.get("quality") or "standard"
    style = params.get("style")

    base = base_cost(catalog.IMAGE, model, quantity)
    size_multiplier = IMAGE_SIZE_MULTIPLIERS.get(size, 1.0)
    quality_multiplier = IMAGE_QUALITY_MULTIPLIERS.get(quality, 1.0)
    style_multiplier = VIVID_STYLE_MULTIPLIER if style == "vivid" else 1.0
    total = math.ceil(base * size_multiplier * quality_multiplier * style_multiplier)
    return CostEstimate(
        type=catalog.IMAGE,
        model=model,
        base_cost=base,
        total_cost=total,
        breakdown={
            "quantity": quantity,
            "size_multiplier": size_multiplier,
            "quality_multiplier": quality_multiplier,
            "style_multiplier": style_multiplier,
        },
    )


def video_cost(model: str, params: dict[str, Any] | None = None) -> CostEstimate:
    params = params or {}
    duration = int(params.get("duration") or catalog.DEFAULT_VIDEO_DURATION)
    resolution = params.get("size") or params.get("resolution") or DEFAULT_VIDEO_RESOLUTION
    fps = int(params.get("fps") or VIDEO_BASE_FPS)

    base = base_cost(catalog.VIDEO, model)
    duration_multiplier = VIDEO_DURATION_MULTIPLIERS.get(duration, duration / 8.0)
    res_multiplier = resolution_multiplier(resolution)
    fps_multiplier = fps / VIDEO_BASE_FPS if fps > VIDEO_BASE_FPS else 1.0
    total = math.ceil(base * duration_multiplier * res_multiplier * fps_multiplier)
    return CostEstimate(
        type=catalog.VIDEO,
        model=model,
        base_cost=base,
        total_cost=total,
        breakdown={
            "duration": duration,
            "duration_multiplier": duration_multiplier,
            "resolution_multiplier": res_multiplier,
            "fps_multiplier": fps_multiplier,
        },
    )


def estimate(job_type: str, model: str, params: dict[str, Any] | None = None) -> CostEstimate:
    if job_type == catalog.IMAGE:
        return image_cost(model, params)
    if job_type == catalog.VIDEO:
        return video_cost(model, params)
    return CostEstimate(
        type=job_type,
        model=model,
        base_cost=settings.default_item_cost,
        total_cost=settings.default_item_cost,
        breakdown={"error": f"Unsupported type: {job_type}"},
    )


def estimate_cost(job_type: str, model: str, params: dict[str, Any] | None = None) -> int:
    """Credits to reserve for a request; never below 1."""
    return max(1, estimate(job_type, model, params).total_cost)


def estimated_seconds(job_type: str, model: str) -> int:
    if job_type == catalog.VIDEO:
        return VIDEO_DEFAULT_SECONDS
    if job_type != catalog.IMAGE:
        return FALLBACK_SECONDS
    lowered = model.lower()
    for fragment, seconds in _IMAGE_SECONDS.items():
        if fragment in lowered:
            return seconds
    return IMAGE_DEFAULT_SECONDS


def pricing_table() -> dict[str, dict[str, dict[str, Any]]]:
    """Default-option cost of every catalog model, keyed by type then model."""
    table: dict[str, dict[str, dict[str, Any]]] = {}
    for job_type in catalog.job_types():
        table[job_type] = {
            key: {
                "credits": estimate(job_type, key).total_cost,
                "description": spec.description or key,
            }
            for key, spec in catalog.models_for(job_type).items()
        }
    return table


def affordable_quantity(
    job_type: str,
    model: str,
    available: int,
    params: dict[str, Any] | None = None,
) -> AffordableQuantity:
    single = estimate(job_type, model, {**(params or {}), "quantity": 1}).total_cost
    if single <= 0:
        return AffordableQuantity(max_quantity=0, cost_per_item=single, total_cost_for_max=0, remaining_credits=available)
    max_quantity = max(available, 0) // single
    return AffordableQuantity(
        max_quantity=max_quantity,
        cost_per_item=single,
        total_cost_for_max=max_quantity * single,
        remaining_credits=available - max_quantity * single,
    )
