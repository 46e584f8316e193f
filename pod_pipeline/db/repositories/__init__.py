from pod_pipeline.db.repositories.designs import DesignsRepository
from pod_pipeline.db.repositories.assets import AssetsRepository
from pod_pipeline.db.repositories.published_products import PublishedProductsRepository
from pod_pipeline.db.repositories.shop_settings import ShopSettingsRepository

__all__ = [
    "DesignsRepository",
    "AssetsRepository",
    "PublishedProductsRepository",
    "ShopSettingsRepository",
]
