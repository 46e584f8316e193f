from __future__ import annotations

import pytest

from pod_pipeline.shapes import kie_aspect_ratio, normalize_shape, openai_size


@pytest.mark.parametrize(
    ("shape", "size", "ratio"),
    [
        ("square", "1024x1024", "1:1"),
        ("portrait", "1024x1536", "3:4"),
        ("landscape", "1536x1024", "4:3"),
        ("tall_portrait", "1024x1536", "2:3"),
        ("wide_landscape", "1536x1024", "3:2"),
    ],
)
def test_shape_maps_to_exact_size_and_ratio(shape: str, size: str, ratio: str):
    assert openai_size(shape) == size
    assert kie_aspect_ratio(shape) == ratio


@pytest.mark.parametrize("shape", [None, "", "hexagon"])
def test_unknown_shape_falls_back_to_square(shape):
    assert normalize_shape(shape) == "square"
    assert openai_size(shape) == "1024x1024"
    assert kie_aspect_ratio(shape) == "1:1"


def test_shape_is_trimmed_and_lowercased():
    assert openai_size("  Landscape ") == "1536x1024"
