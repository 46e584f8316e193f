from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from pod_pipeline.db.base import init_db, session_scope  # noqa: E402
from pod_pipeline.logging_setup import configure_logging  # noqa: E402
from pod_pipeline.services.pipeline import PipelineCoordinator  # noqa: E402


def main(shop_domain: str) -> None:
    configure_logging()
    init_db()
    with session_scope() as session:
        counts = PipelineCoordinator(session).redact_shop(shop_domain)
    print(
        f"Redacted {shop_domain}: {counts['designs']} design(s), {counts['assets']} asset(s), "
        f"{counts['publishedProducts']} published product record(s)."
    )


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Delete every design, asset and stored credential for a shop.")
    parser.add_argument("--shop", required=True, help="Shop domain, e.g. example.myshopify.com.")
    args = parser.parse_args()
    main(shop_domain=args.shop)
