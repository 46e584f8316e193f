from __future__ import annotations

from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from pod_pipeline.db.models import PublishedProduct


class PublishedProductsRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, design_id: str) -> Optional[PublishedProduct]:
        return self.session.scalars(select(PublishedProduct).where(PublishedProduct.design_id == design_id)).first()

    def upsert(
        self,
        *,
        design_id: str,
        shop_domain: str,
        shopify_product_id: str,
        admin_url: str,
        publish_immediately: bool,
    ) -> PublishedProduct:
        record = self.get(design_id)
        if record is None:
            record = PublishedProduct(design_id=design_id, shop_domain=shop_domain)
        record.shopify_product_id = shopify_product_id
        record.admin_url = admin_url
        record.publish_immediately = publish_immediately
        self.session.add(record)
        self.session.commit()
        self.session.refresh(record)
        return record

    def delete(self, design_id: str) -> None:
        self.session.execute(delete(PublishedProduct).where(PublishedProduct.design_id == design_id))
        self.session.commit()

    def delete_for_shop(self, shop_domain: str) -> int:
        result = self.session.execute(delete(PublishedProduct).where(PublishedProduct.shop_domain == shop_domain))
        self.session.commit()
        return result.rowcount
