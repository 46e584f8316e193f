from __future__ import annotations

from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from pod_pipeline.db.models import ShopSettings

_EDITABLE_FIELDS = ("shopify_access_token", "openai_api_key", "kie_api_key", "printful_api_key")


class ShopSettingsRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, shop_domain: str) -> Optional[ShopSettings]:
        return self.session.scalars(select(ShopSettings).where(ShopSettings.shop_domain == shop_domain)).first()

    def upsert(self, shop_domain: str, **fields: Optional[str]) -> ShopSettings:
        unknown = set(fields) - set(_EDITABLE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown shop settings fields: {sorted(unknown)}")
        record = self.get(shop_domain) or ShopSettings(shop_domain=shop_domain)
        for key, value in fields.items():
            setattr(record, key, value.strip() if isinstance(value, str) and value.strip() else None)
        self.session.add(record)
        self.session.commit()
        self.session.refresh(record)
        return record

    def delete(self, shop_domain: str) -> None:
        self.session.execute(delete(ShopSettings).where(ShopSettings.shop_domain == shop_domain))
        self.session.commit()
