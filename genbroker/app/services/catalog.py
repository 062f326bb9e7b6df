"""Generation model catalog shared by pricing, validation and the provider adapter."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

IMAGE = "image"
VIDEO = "video"

DEFAULT_VIDEO_DURATION = 4


@dataclass(frozen=True)
class ModelSpec:
    key: str
    type: str
    provider: str
    provider_model: str
    credits: float
    max_prompt_length: int
    # None means the provider accepts any resolution.
    supported_sizes: Optional[tuple[str, ...]]
    max_duration: Optional[int] = None
    description: str = ""

    @property
    def default_size(self) -> Optional[str]:
        return self.supported_sizes[0] if self.supported_sizes else None

    def supports_size(self, size: str) -> bool:
        return self.supported_sizes is None or size in self.supported_sizes


_SMALL = ("256x256", "512x512", "1024x1024")
_SQUARE = ("512x512", "1024x1024")
_VIDEO_WIDE = ("1280x768", "768x1280", "1024x1024")
_VIDEO_NARROW = ("1280x768", "768x1280")


def _image(key: str, model: str, credits: float, max_prompt: int, sizes: Optional[tuple[str, ...]], description: str = "") -> ModelSpec:
    return ModelSpec(
        key=key,
        type=IMAGE,
        provider=key.split("/", 1)[0],
        provider_model=model,
        credits=credits,
        max_prompt_length=max_prompt,
        supported_sizes=sizes,
        description=description,
    )


def _video(key: str, model: str, credits: float, sizes: tuple[str, ...], description: str = "") -> ModelSpec:
    return ModelSpec(
        key=key,
        type=VIDEO,
        provider=key.split("/", 1)[0],
        provider_model=model,
        credits=credits,
        max_prompt_length=500,
        supported_sizes=sizes,
        max_duration=8,
        description=description,
    )


IMAGE_MODELS: dict[str, ModelSpec] = {
    spec.key: spec
    for spec in (
        _image("replicate/anime-style", "anime-style", 0.23, 1000, _SMALL, "Anime style, lowest cost"),
        _image("replicate/vintedois-diffusion", "vintedois-diffusion", 0.23, 1000, _SMALL),
        _image("replicate/classic", "classic", 1.15, 1000, _SMALL),
        _image("minimax/image-01", "image-01", 3.5, 1500, None),
        _image("amazon/titan-image-generator-v1_standard", "titan-image-generator-v1", 8, 1000, _SQUARE),
        _image("amazon/titan-image-generator-v1_premium", "titan-image-generator-v1-premium", 10, 1000, _SQUARE),
        _image("stabilityai/stable-diffusion-v1-6", "stable-diffusion-v1-6", 10, 1000, ("512x512",)),
        _image("leonardo/lightning-xl", "lightning-xl", 11, 1200, _SQUARE),
        _image("leonardo/anime-xl", "anime-xl", 11, 1200, _SQUARE),
        _image("leonardo/phoenix", "phoenix", 14, 1200, _SQUARE),
        _image("leonardo/kino-xl", "kino-xl", 14, 1200, _SQUARE),
        _image("leonardo/vision-xl", "vision-xl", 14, 1200, _SQUARE),
        _image("leonardo/diffusion-xl", "diffusion-xl", 15, 1200, _SQUARE),
        _image("stabilityai/stable-diffusion-xl", "stable-diffusion-xl", 15, 2000, ("1024x1024",)),
        _image("leonardo/albedobase-xl", "albedobase-xl", 16, 1200, _SQUARE),
        _image("openai/dall-e-2", "dall-e-2", 16, 1000, _SMALL),
        _image("leonardo/sdxl-0.9", "sdxl-0.9", 17, 1200, _SQUARE),
        _image("bytedance/seedream-3-0-t2i", "seedream-3-0-t2i", 30, 1000, None),
        _image(
            "openai/dall-e-3",
            "dall-e-3",
            40,
            4000,
            ("512x512", "1024x1024", "1024x1792", "1792x1024"),
            "Highest quality still images",
        ),
    )
}

VIDEO_MODELS: dict[str, ModelSpec] = {
    spec.key: spec
    for spec in (
        _video("minimax/T2V/I2V-01-Director", "T2V-I2V-01-Director", 430, _VIDEO_WIDE),
        _video("amazon/amazon.nova-reel-v1:0", "nova-reel-v1", 500, _VIDEO_NARROW),
        _video("minimax/MiniMax-Hailuo-02", "hailuo-02", 560, _VIDEO_WIDE),
        _video("minimax/S2V-01", "S2V-01", 650, _VIDEO_NARROW),
        _video("bytedance/seedance-lite", "seedance-lite", 1800, _VIDEO_NARROW),
        _video("bytedance/seedance-pro", "seedance-pro", 2250, _VIDEO_WIDE),
        _video("google/veo-3.0-generate-preview", "veo-3.0-generate-preview", 6000, _VIDEO_WIDE),
    )
}

_BY_TYPE = {IMAGE: IMAGE_MODELS, VIDEO: VIDEO_MODELS}


def models_for(job_type: str) -> dict[str, ModelSpec]:
    return _BY_TYPE.get(job_type, {})


def get_model(job_type: str, key: str) -> Optional[ModelSpec]:
    return models_for(job_type).get(key)


def job_types() -> tuple[str, ...]:
    return tuple(_BY_TYPE)
