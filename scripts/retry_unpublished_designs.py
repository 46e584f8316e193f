from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from pod_pipeline.db.base import init_db, session_scope  # noqa: E402
from pod_pipeline.db.enums import DesignStatusEnum  # noqa: E402
from pod_pipeline.db.repositories import DesignsRepository  # noqa: E402
from pod_pipeline.errors import PodPipelineError  # noqa: E402
from pod_pipeline.logging_setup import configure_logging  # noqa: E402
from pod_pipeline.services.pipeline import PipelineCoordinator  # noqa: E402


async def _retry_all(shop_domain: str, limit: int, publish_immediately: bool | None) -> None:
    with session_scope() as session:
        designs = DesignsRepository(session).list(shop_domain, statuses=[DesignStatusEnum.finalized], limit=limit)
        coordinator = PipelineCoordinator(session)
        published = 0
        for design in designs:
            try:
                result = await coordinator.retry_publish(shop_domain, design.id, publish_immediately)
            except PodPipelineError as exc:
                print(f"{design.id}: skipped ({exc.message})")
                continue
            if result.status == DesignStatusEnum.published.value:
                published += 1
                print(f"{design.id}: published {result.productId}")
            else:
                print(f"{design.id}: still finalized ({result.publishError})")
        print(f"Done. Published {published} of {len(designs)} finalized design(s).")


def main(shop_domain: str, limit: int, publish_immediately: bool | None) -> None:
    configure_logging()
    init_db()
    asyncio.run(_retry_all(shop_domain, limit, publish_immediately))


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Retry Shopify publishing for finalized but unpublished designs.")
    parser.add_argument("--shop", required=True, help="Shop domain, e.g. example.myshopify.com.")
    parser.add_argument("--limit", type=int, default=50, help="Maximum number of designs to retry.")
    parser.add_argument(
        "--publish-immediately",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Override each design's stored publish-immediately flag.",
    )
    args = parser.parse_args()
    main(shop_domain=args.shop, limit=args.limit, publish_immediately=args.publish_immediately)
