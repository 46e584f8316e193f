from __future__ import annotations

from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from pod_pipeline.db.enums import AssetKindEnum, AssetRoleEnum
from pod_pipeline.db.models import DesignAsset


class AssetsRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(
        self,
        *,
        design_id: str,
        shop_domain: str,
        kind: AssetKindEnum,
        role: AssetRoleEnum,
        url: str,
        prompt: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> DesignAsset:
        asset = DesignAsset(
            design_id=design_id,
            shop_domain=shop_domain,
            kind=kind,
            role=role,
            url=url,
            prompt=prompt,
            provider=provider,
        )
        self.session.add(asset)
        self.session.commit()
        self.session.refresh(asset)
        return asset

    def get(self, shop_domain: str, asset_id: str) -> Optional[DesignAsset]:
        stmt = select(DesignAsset).where(DesignAsset.shop_domain == shop_domain, DesignAsset.id == asset_id)
        return self.session.scalars(stmt).first()

    def list_for_design(
        self,
        shop_domain: str,
        design_id: str,
        kind: Optional[AssetKindEnum] = None,
    ) -> List[DesignAsset]:
        stmt = select(DesignAsset).where(
            DesignAsset.shop_domain == shop_domain,
            DesignAsset.design_id == design_id,
        )
        if kind:
            stmt = stmt.where(DesignAsset.kind == kind)
        stmt = stmt.order_by(DesignAsset.created_at.asc())
        return list(self.session.scalars(stmt).all())

    def delete_for_design(self, shop_domain: str, design_id: str) -> int:
        result = self.session.execute(
            delete(DesignAsset).where(
                DesignAsset.shop_domain == shop_domain,
                DesignAsset.design_id == design_id,
            )
        )
        self.session.commit()
        return result.rowcount

    def delete_for_shop(self, shop_domain: str) -> int:
        result = self.session.execute(delete(DesignAsset).where(DesignAsset.shop_domain == shop_domain))
        self.session.commit()
        return result.rowcount
