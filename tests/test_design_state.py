from __future__ import annotations

import pytest

from pod_pipeline.config import settings
from pod_pipeline.db.enums import DesignStatusEnum
from pod_pipeline.db.repositories import DesignsRepository, PublishedProductsRepository
from pod_pipeline.errors import DesignStateError
from pod_pipeline.services.design_state import DesignStateMachine

SHOP = "example.myshopify.com"


def _design(db_session, status: DesignStatusEnum = DesignStatusEnum.preview_ready):
    return DesignsRepository(db_session).create(SHOP, "retro sunset", status=status)


def _status(db_session, design_id: str) -> DesignStatusEnum:
    return DesignsRepository(db_session).get(SHOP, design_id).status


def test_only_one_finalize_claim_wins(db_session):
    design = _design(db_session)
    machine = DesignStateMachine(db_session)

    assert machine.claim_for_finalize(design.id)
    assert not machine.claim_for_finalize(design.id)
    assert _status(db_session, design.id) == DesignStatusEnum.finalizing


def test_stale_finalize_claim_can_be_reclaimed(db_session):
    design = _design(db_session)
    assert DesignStateMachine(db_session).claim_for_finalize(design.id)

    # A negative window treats every in-flight claim as abandoned.
    expired = DesignStateMachine(db_session, stale_after_seconds=-1)

    assert expired.claim_for_finalize(design.id)


def test_reclaimed_design_rejects_the_previous_owner(db_session):
    design = _design(db_session)
    first = DesignStateMachine(db_session).claim_for_finalize(design.id)
    expired = DesignStateMachine(db_session, stale_after_seconds=-1)
    second = expired.claim_for_finalize(design.id)

    assert first and second and first != second
    with pytest.raises(DesignStateError, match="taken over"):
        expired.keep_claim(design.id, first)
    with pytest.raises(DesignStateError, match="no longer being finalized"):
        expired.mark_published(
            design, claim_token=first, product_id="gid://shopify/Product/1", admin_url="", publish_immediately=False
        )
    assert not expired.release(design.id, DesignStatusEnum.preview_ready, claim_token=first)

    expired.keep_claim(design.id, second)
    expired.mark_finalized(design.id, claim_token=second)
    reloaded = DesignsRepository(db_session).get(SHOP, design.id)
    assert reloaded.status == DesignStatusEnum.finalized
    assert reloaded.claim_token is None


def test_finalize_claim_refused_for_terminal_designs(db_session):
    machine = DesignStateMachine(db_session)
    published = _design(db_session, DesignStatusEnum.published)

    assert not machine.claim_for_finalize(published.id)
    assert not machine.claim_for_publish_retry(published.id)


def test_mark_published_requires_product_id_and_records_publish(db_session):
    design = _design(db_session)
    machine = DesignStateMachine(db_session)
    claim = machine.claim_for_finalize(design.id)

    with pytest.raises(DesignStateError):
        machine.mark_published(design, claim_token=claim, product_id="", admin_url="", publish_immediately=False)

    machine.mark_published(
        design,
        claim_token=claim,
        product_id="gid://shopify/Product/1",
        admin_url="https://admin.shopify.com/store/example/products/1",
        publish_immediately=True,
    )

    reloaded = DesignsRepository(db_session).get(SHOP, design.id)
    assert reloaded.status == DesignStatusEnum.published
    assert reloaded.finalized_at is not None
    record = PublishedProductsRepository(db_session).get(design.id)
    assert record.shopify_product_id == "gid://shopify/Product/1"
    assert record.publish_immediately is True


def test_mark_finalized_requires_an_active_claim(db_session):
    design = _design(db_session)

    with pytest.raises(DesignStateError, match="no longer being finalized"):
        DesignStateMachine(db_session).mark_finalized(design.id, claim_token="not-a-claim")


def test_revision_increments_count_and_returns_to_preview(db_session):
    design = _design(db_session, DesignStatusEnum.mockup_ready)
    machine = DesignStateMachine(db_session)

    machine.mark_revised(design, mockup_image_url=None)
    machine.mark_revised(design)

    reloaded = DesignsRepository(db_session).get(SHOP, design.id)
    assert reloaded.revision_count == 2
    assert reloaded.status == DesignStatusEnum.preview_ready


def test_revise_allowed_after_finalize_only_when_enabled(db_session, monkeypatch):
    design = _design(db_session, DesignStatusEnum.finalized)
    machine = DesignStateMachine(db_session)

    monkeypatch.setattr(settings, "ALLOW_REVISE_AFTER_FINALIZE", False)
    with pytest.raises(DesignStateError):
        machine.ensure_revisable(design)

    monkeypatch.setattr(settings, "ALLOW_REVISE_AFTER_FINALIZE", True)
    machine.ensure_revisable(design)


def test_published_and_finalizing_designs_are_never_revisable(db_session):
    machine = DesignStateMachine(db_session)
    for status in (DesignStatusEnum.published, DesignStatusEnum.finalizing):
        with pytest.raises(DesignStateError):
            machine.ensure_revisable(_design(db_session, status))


def test_mockup_only_from_editable_statuses(db_session):
    machine = DesignStateMachine(db_session)
    design = _design(db_session, DesignStatusEnum.finalized)

    with pytest.raises(DesignStateError):
        machine.ensure_editable(design)
    with pytest.raises(DesignStateError):
        machine.mark_mockup_ready(design, mockup_image_url="https://cdn.test/m.png")
