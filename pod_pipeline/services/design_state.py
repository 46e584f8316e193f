from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.orm import Session

from pod_pipeline.config import settings
from pod_pipeline.db.enums import DesignStatusEnum
from pod_pipeline.db.models import Design, utcnow
from pod_pipeline.db.repositories import DesignsRepository, PublishedProductsRepository
from pod_pipeline.errors import DesignStateError

logger = logging.getLogger(__name__)

EDITABLE_STATUSES = (DesignStatusEnum.preview_ready, DesignStatusEnum.mockup_ready)
FINALIZE_FROM_STATUSES = EDITABLE_STATUSES
TERMINAL_STATUSES = (DesignStatusEnum.finalized, DesignStatusEnum.published)


class DesignStateMachine:
    """
    Status transitions for a design, enforced as conditional updates.

    preview_ready -> (revise)* -> mockup_ready -> finalizing -> finalized | published
    """

    def __init__(self, session: Session, *, stale_after_seconds: float | None = None) -> None:
        self.designs = DesignsRepository(session)
        self.published = PublishedProductsRepository(session)
        self.stale_after = timedelta(
            seconds=settings.FINALIZE_STALE_AFTER_SECONDS if stale_after_seconds is None else stale_after_seconds
        )

    def revision_from_statuses(self) -> tuple[DesignStatusEnum, ...]:
        if settings.ALLOW_REVISE_AFTER_FINALIZE:
            return (*EDITABLE_STATUSES, DesignStatusEnum.finalized)
        return EDITABLE_STATUSES

    def claim_for_finalize(self, design_id: str) -> Optional[str]:
        """Move the design to `finalizing`; returns the claim token, or None when another caller holds it."""
        return self._claim(design_id, FINALIZE_FROM_STATUSES)

    def claim_for_publish_retry(self, design_id: str) -> Optional[str]:
        return self._claim(design_id, (DesignStatusEnum.finalized,))

    def _claim(self, design_id: str, from_statuses: tuple[DesignStatusEnum, ...]) -> Optional[str]:
        token = str(uuid4())
        won = self.designs.transition(
            design_id,
            from_statuses,
            DesignStatusEnum.finalizing,
            stale_status=DesignStatusEnum.finalizing,
            stale_before=utcnow() - self.stale_after,
            claim_token=token,
        )
        return token if won else None

    def keep_claim(self, design_id: str, claim_token: str) -> None:
        """Heartbeat for a running finalize; raises once another caller has taken the design over."""
        if not self.designs.touch_claim(design_id, DesignStatusEnum.finalizing, claim_token):
            raise DesignStateError(message=f"Design {design_id} finalize claim was taken over")

    def release(self, design_id: str, to_status: DesignStatusEnum, *, claim_token: str, **fields: Any) -> bool:
        return self.designs.transition(
            design_id,
            (DesignStatusEnum.finalizing,),
            to_status,
            held_claim=claim_token,
            claim_token=None,
            **fields,
        )

    def mark_finalized(self, design_id: str, *, claim_token: str, **fields: Any) -> None:
        if not self.designs.transition(
            design_id,
            (DesignStatusEnum.finalizing,),
            DesignStatusEnum.finalized,
            held_claim=claim_token,
            claim_token=None,
            finalized_at=func.coalesce(Design.finalized_at, utcnow()),
            **fields,
        ):
            raise DesignStateError(message=f"Design {design_id} is no longer being finalized")

    def mark_published(
        self,
        design: Design,
        *,
        claim_token: str,
        product_id: str,
        admin_url: str,
        publish_immediately: bool,
        **fields: Any,
    ) -> None:
        if not product_id:
            raise DesignStateError(message="A published design requires a product id")
        if not self.designs.transition(
            design.id,
            (DesignStatusEnum.finalizing,),
            DesignStatusEnum.published,
            held_claim=claim_token,
            claim_token=None,
            finalized_at=func.coalesce(Design.finalized_at, utcnow()),
            shopify_product_id=product_id,
            admin_url=admin_url,
            publish_immediately=publish_immediately,
            **fields,
        ):
            raise DesignStateError(message=f"Design {design.id} is no longer being finalized")
        self.published.upsert(
            design_id=design.id,
            shop_domain=design.shop_domain,
            shopify_product_id=product_id,
            admin_url=admin_url,
            publish_immediately=publish_immediately,
        )

    def mark_revised(self, design: Design, **fields: Any) -> None:
        allowed = self.revision_from_statuses()
        if design.status == DesignStatusEnum.finalized and design.status in allowed:
            logger.warning("design_state.revise_after_finalize", extra={"design_id": design.id})
        if not self.designs.transition(
            design.id,
            allowed,
            DesignStatusEnum.preview_ready,
            revision_count=Design.revision_count + 1,
            **fields,
        ):
            raise DesignStateError(message=f"Design {design.id} cannot be revised while {design.status.value}")

    def mark_mockup_ready(self, design: Design, **fields: Any) -> None:
        if not self.designs.transition(design.id, EDITABLE_STATUSES, DesignStatusEnum.mockup_ready, **fields):
            raise DesignStateError(message=f"Design {design.id} cannot take a mockup while {design.status.value}")

    def ensure_revisable(self, design: Design) -> None:
        if design.status not in self.revision_from_statuses():
            raise DesignStateError(message=f"Design {design.id} cannot be revised while {design.status.value}")

    def ensure_editable(self, design: Design) -> None:
        if design.status not in EDITABLE_STATUSES:
            raise DesignStateError(message=f"Design {design.id} cannot take a mockup while {design.status.value}")

    def reload(self, design: Design) -> Optional[Design]:
        return self.designs.get(design.shop_domain, design.id)
