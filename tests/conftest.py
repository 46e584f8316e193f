import os
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT_DIR))

os.environ.setdefault("POD_DB_URL", "sqlite://")
os.environ.setdefault("POD_UPLOADS_URL_PREFIX", "/uploads")
os.environ.setdefault("PLACEHOLDER_IMAGE_BASE_URL", "https://placeholder.test/1024")
# Provider credentials are always blank under test so nothing reaches a live API.
for _key in ("OPENAI_API_KEY", "KIE_API_KEY", "PRINTFUL_API_KEY", "SHOPIFY_ADMIN_ACCESS_TOKEN"):
    os.environ[_key] = ""

from pod_pipeline.db import models  # noqa: E402,F401
from pod_pipeline.db.base import Base  # noqa: E402
from pod_pipeline.services.asset_storage import ImageStore  # noqa: E402


@pytest.fixture
def db_session():
    engine = create_engine(
        "sqlite://", future=True, connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def image_store(tmp_path):
    return ImageStore(root=tmp_path / "uploads", url_prefix="/uploads")
