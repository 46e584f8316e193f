from __future__ import annotations

import pytest
from pydantic import ValidationError

from pod_pipeline.schemas import DesignPreviewRequest, FinalizeRequest, MockupRequest, ReviseDesignRequest


def test_preview_request_sanitizes_and_defaults():
    request = DesignPreviewRequest(prompt=" <script>x</script>Retro\x07 sunset ", productType="  MUG ", imageShape="Portrait")

    assert request.prompt == "xRetro sunset"
    assert request.productType == "mug"
    assert request.imageShape == "portrait"
    assert request.publishImmediately is False


def test_preview_request_caps_lengths_and_defaults_blank_product_type():
    request = DesignPreviewRequest(prompt="a" * 6000, productType="", imageShape=None)

    assert len(request.prompt) == 5000
    assert request.productType == "mug"
    assert request.imageShape == "square"


def test_revise_request_requires_amendment():
    with pytest.raises(ValidationError, match="amendment is required"):
        ReviseDesignRequest(amendment="   ")


def test_mockup_request_rejects_non_positive_catalog_id():
    with pytest.raises(ValidationError):
        MockupRequest(catalogProductId=0)
    assert MockupRequest(catalogProductId=71).catalogProductId == 71


def test_finalize_request_drops_blank_scene_prompts():
    request = FinalizeRequest(lifestylePrompts=["  ", "<i>beach</i> scene", None])

    assert request.lifestylePrompts == ["beach scene"]
    assert FinalizeRequest().lifestylePrompts is None

    with pytest.raises(ValidationError):
        FinalizeRequest(lifestylePrompts="beach")
