"""
CLI entry point for a single recommendation request.
"""

import asyncio
import argparse
import json
from pathlib import Path

from recommender.catalog.snapshot import CatalogSnapshotHolder
from recommender.core.pipeline import RecommendationPipeline
from recommender.shared.config import settings
from recommender.shared.exceptions import RecommenderError
from recommender.shared.logging import setup_logging


async def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Recommend the next content item for a student")
    parser.add_argument("student_id", help="Student identifier")
    parser.add_argument(
        "--catalog",
        type=Path,
        default=settings.pipeline.catalog_path,
        help="Content catalog JSON file"
    )
    parser.add_argument(
        "--deadline-ms",
        type=int,
        default=settings.pipeline.default_deadline_ms,
        help="End-to-end deadline in milliseconds"
    )
    parser.add_argument(
        "--context",
        type=json.loads,
        default={},
        help="Request context as a JSON object"
    )

    args = parser.parse_args()
    if args.catalog is None:
        parser.error("--catalog is required when pipeline.catalog_path is not configured")

    # Setup logging
    setup_logging()

    catalog = CatalogSnapshotHolder()
    catalog.load_json(args.catalog)

    pipeline = RecommendationPipeline.from_settings()
    try:
        result = await pipeline.recommend(
            args.student_id, args.context, catalog.snapshot(), args.deadline_ms
        )
    except RecommenderError as e:
        print(f"No recommendation: {type(e).__name__}: {e}")
        raise SystemExit(1)
    finally:
        await pipeline.model_client.transport.close()

    rec = result.recommendation

    # Print summary
    print("\n" + "=" * 50)
    print("Recommendation")
    print("=" * 50)
    print(f"Student: {args.student_id}")
    print(f"Content: {rec.content_id} (difficulty {rec.difficulty:.2f})")
    print(f"Tier: {rec.stage_provenance.value}")
    print(f"Predicted gain: {rec.predicted_gain:.3f}")
    if rec.explanation:
        e = rec.explanation
        print(f"Effect: {e.effect:.3f} [{e.ci_lower:.3f}, {e.ci_upper:.3f}] @ {e.confidence_level:.0%}")
    for downgrade in result.downgrades:
        print(f"Downgraded from {downgrade.tier.value}: {downgrade.reason}")
    if result.persistence_error:
        print(f"State not saved: {result.persistence_error}")
    print(f"Elapsed: {result.elapsed_ms:.1f}ms")
    print("=" * 50)


if __name__ == "__main__":
    asyncio.run(main())
