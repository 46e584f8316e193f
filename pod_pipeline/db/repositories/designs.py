from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, List, Optional

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.orm import Session

from pod_pipeline.db.enums import DesignStatusEnum
from pod_pipeline.db.models import Design, utcnow


class DesignsRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(self, shop_domain: str, prompt: str, **fields: Any) -> Design:
        design = Design(shop_domain=shop_domain, prompt=prompt, **fields)
        self.session.add(design)
        self.session.commit()
        self.session.refresh(design)
        return design

    def get(self, shop_domain: str, design_id: str) -> Optional[Design]:
        stmt = select(Design).where(Design.shop_domain == shop_domain, Design.id == design_id)
        return self.session.scalars(stmt).first()

    def list(
        self,
        shop_domain: str,
        statuses: Optional[Iterable[DesignStatusEnum]] = None,
        limit: Optional[int] = None,
    ) -> List[Design]:
        stmt = select(Design).where(Design.shop_domain == shop_domain)
        if statuses:
            stmt = stmt.where(Design.status.in_(list(statuses)))
        stmt = stmt.order_by(Design.created_at.desc())
        if limit:
            stmt = stmt.limit(limit)
        return list(self.session.scalars(stmt).all())

    def update(self, design: Design, **fields: Any) -> Design:
        for key, value in fields.items():
            setattr(design, key, value)
        self.session.add(design)
        self.session.commit()
        self.session.refresh(design)
        return design

    def transition(
        self,
        design_id: str,
        from_statuses: Iterable[DesignStatusEnum],
        to_status: DesignStatusEnum,
        *,
        stale_status: Optional[DesignStatusEnum] = None,
        stale_before: Optional[datetime] = None,
        held_claim: Optional[str] = None,
        **fields: Any,
    ) -> bool:
        """
        Compare-and-swap on the design status.

        Only one caller can move a design out of a given status; the loser gets False.
        When `stale_status` and `stale_before` are given, a design stuck in `stale_status`
        whose last update is older than `stale_before` can also be taken over.
        `held_claim` additionally requires the stored claim token to match.
        """
        condition = Design.status.in_(list(from_statuses))
        if stale_status is not None and stale_before is not None:
            condition = or_(
                condition,
                and_(Design.status == stale_status, Design.updated_at < stale_before),
            )
        if held_claim is not None:
            condition = and_(condition, Design.claim_token == held_claim)
        stmt = (
            update(Design)
            .where(Design.id == design_id, condition)
            .values(status=to_status, updated_at=utcnow(), **fields)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        self.session.commit()
        return result.rowcount == 1

    def touch_claim(self, design_id: str, status: DesignStatusEnum, held_claim: str) -> bool:
        """Refresh `updated_at` while the claim is still ours."""
        stmt = (
            update(Design)
            .where(Design.id == design_id, Design.status == status, Design.claim_token == held_claim)
            .values(updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        self.session.commit()
        return result.rowcount == 1

    def delete(self, shop_domain: str, design_id: str) -> bool:
        result = self.session.execute(
            delete(Design).where(Design.shop_domain == shop_domain, Design.id == design_id)
        )
        self.session.commit()
        return result.rowcount > 0

    def delete_for_shop(self, shop_domain: str) -> int:
        result = self.session.execute(delete(Design).where(Design.shop_domain == shop_domain))
        self.session.commit()
        return result.rowcount
