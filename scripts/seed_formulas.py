#!/usr/bin/env python3
"""
Seed an organization with the formula catalog.

Creates missing formulas, publishes a new version where the catalog body
changed, and leaves unchanged formulas alone.  Safe to re-run.

Usage:
    python scripts/seed_formulas.py --organization acme [--author seed-script]
        [--config path/to/settings.yaml] [--create-tables] [--pricing-policy]

The database URL comes from the settings file (or DATABASE_URL).
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from estimate_config import get_active_config, load_formula_seeds
from estimate_config.loader import SEEDS_DIR
from estimate_kernel.db.engine import create_tables, get_session, init_engine_from_url
from estimate_kernel.db.types import STORAGE_SCALE
from estimate_kernel.domain.aggregation import PricingPolicy, VatBase
from estimate_kernel.domain.evaluator import EVALUATION_PRECISION
from estimate_kernel.exceptions import PricingPolicyNotFoundError
from estimate_kernel.logging_config import configure_logging
from estimate_kernel.services.estimate_orchestrator import EstimateOrchestrator


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("--organization", required=True, help="Organization id")
    parser.add_argument("--author", default="seed-script", help="Recorded author")
    parser.add_argument("--config", type=Path, default=None, help="Settings YAML")
    parser.add_argument(
        "--create-tables", action="store_true", help="Create missing tables first"
    )
    parser.add_argument(
        "--pricing-policy",
        action="store_true",
        help="Record the configured default pricing policy if the organization has none",
    )
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    configure_logging()

    settings = get_active_config(args.config)
    # Stored values are only reproducible under the kernel's fixed context
    if (settings.evaluation_precision, settings.result_scale) != (
        EVALUATION_PRECISION,
        STORAGE_SCALE,
    ):
        print(
            f"error: settings ask for precision {settings.evaluation_precision} and "
            f"scale {settings.result_scale}; the kernel evaluates at "
            f"{EVALUATION_PRECISION}/{STORAGE_SCALE}",
            file=sys.stderr,
        )
        return 2

    init_engine_from_url(settings.database_url, echo=settings.echo_sql)
    if args.create_tables:
        create_tables()

    paths = [SEEDS_DIR / name for name in settings.seed_files] or None
    seeds = load_formula_seeds(paths)

    session = get_session()
    try:
        orchestrator = EstimateOrchestrator(session)
        result = orchestrator.seed_formulas(
            seeds, args.author, organization_id=args.organization
        )
        print(f"created:   {', '.join(result.created) or '-'}")
        print(f"published: {', '.join(result.published) or '-'}")
        print(f"unchanged: {', '.join(result.unchanged) or '-'}")
        if result.skipped_retired:
            print(f"retired (skipped): {', '.join(result.skipped_retired)}")

        if args.pricing_policy:
            try:
                orchestrator.pricing.get_policy(args.organization)
                session.rollback()
                print("pricing policy: already recorded")
            except PricingPolicyNotFoundError:
                session.rollback()
                defaults = settings.default_pricing_policy
                orchestrator.configure_pricing_policy(
                    args.organization,
                    PricingPolicy(
                        vat_base=VatBase(defaults.vat_base),
                        rounding_mode=defaults.rounding_mode,
                        decimal_places=defaults.decimal_places,
                    ),
                    args.author,
                )
                print("pricing policy: recorded defaults")
    finally:
        session.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
