import pytest

from genbroker.app.services import catalog, pricing


def test_image_cost_defaults_to_base_rate() -> None:
    estimate = pricing.estimate("image", "openai/dall-e-3")
    assert estimate.total_cost == 40
    assert estimate.breakdown["quantity"] == 1


def test_image_cost_rounds_up_fractional_models() -> None:
    assert pricing.estimate_cost("image", "replicate/anime-style") == 1
    assert pricing.estimate_cost("image", "replicate/classic", {"quantity": 2}) == 3


def test_image_quality_and_size_multipliers() -> None:
    assert pricing.estimate_cost("image", "openai/dall-e-3", {"quality": "hd"}) == 60
    assert pricing.estimate_cost("image", "openai/dall-e-3", {"size": "1792x1024"}) == 60
    assert pricing.estimate_cost("image", "openai/dall-e-2", {"size": "256x256"}) == 8


def test_video_cost_scales_with_duration_and_fps() -> None:
    assert pricing.estimate_cost("video", "minimax/S2V-01") == 325
    assert pricing.estimate_cost("video", "minimax/S2V-01", {"duration": 8}) == 650
    assert pricing.estimate_cost("video", "minimax/S2V-01", {"duration": 8, "fps": 48}) == 1300
    assert pricing.estimate_cost("video", "minimax/S2V-01", {"duration": 8, "size": "768x1280"}) == 650


@pytest.mark.parametrize(
    "resolution, expected",
    [("1280x768", 1.0), ("640x480", 0.5), ("2560x1536", 4.0), ("bad", 1.0), ("axb", 1.0), (None, 1.0)],
)
def test_resolution_multiplier(resolution, expected) -> None:
    assert pricing.resolution_multiplier(resolution) == expected


def test_unknown_model_and_type_use_default_rate() -> None:
    assert pricing.estimate_cost("image", "someone/unknown") == 5
    unsupported = pricing.estimate("audio", "x")
    assert unsupported.total_cost == 5
    assert "Unsupported type" in unsupported.breakdown["error"]


def test_estimated_seconds() -> None:
    assert pricing.estimated_seconds("image", "openai/dall-e-3") == 60
    assert pricing.estimated_seconds("image", "leonardo/sdxl-0.9") == 45
    assert pricing.estimated_seconds("image", "leonardo/phoenix") == 30
    assert pricing.estimated_seconds("video", "minimax/S2V-01") == 300
    assert pricing.estimated_seconds("audio", "x") == 60


def test_pricing_table_covers_catalog() -> None:
    table = pricing.pricing_table()

    assert set(table) == {"image", "video"}
    assert set(table["image"]) == set(catalog.IMAGE_MODELS)
    assert table["image"]["openai/dall-e-3"] == {"credits": 40, "description": "Highest quality still images"}
    assert table["video"]["minimax/S2V-01"]["credits"] == 325


def test_affordable_quantity() -> None:
    result = pricing.affordable_quantity("image", "openai/dall-e-3", 100, {"quantity": 3})

    assert result.max_quantity == 2
    assert result.cost_per_item == 40
    assert result.total_cost_for_max == 80
    assert result.remaining_credits == 20
    assert pricing.affordable_quantity("image", "openai/dall-e-3", -5).max_quantity == 0


def test_catalog_lookup() -> None:
    spec = catalog.get_model("image", "openai/dall-e-3")
    assert spec.provider == "openai"
    assert spec.supports_size("1792x1024")
    assert not spec.supports_size("256x256")
    assert catalog.get_model("image", "minimax/image-01").supports_size("333x333")
    assert catalog.get_model("video", "openai/dall-e-3") is None
    assert catalog.models_for("audio") == {}
