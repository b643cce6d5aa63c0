#!/usr/bin/env python3
"""
Target Sync Script

Loads one department's targets for a month, applies edits from a JSON file
and saves the changed cells in one bulk upsert:
1. Load the target matrix for the period
2. Apply edits ([{"entityId": ..., "metricId": ..., "value": ...}])
3. Print the change set
4. Save (skipped with --dry-run)

With --overview it only reports which departments have targets set for the
period.
"""

import sys
import json
import logging
from pathlib import Path
from typing import Any, Dict, List

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from config.settings import settings, DEPARTMENTS
from src.api.auth import AuthRequired
from src.api.targets import TargetStoreAPIError
from src.processing.fiscal_calendar import InvalidPeriod, default_period_key
from src.processing.matrix import TargetMatrix
from src.processing.number_format import InvalidNumericInput, format_locale_number
from src.processing.reconciliation import TargetEditingSession


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logger = logging.getLogger(__name__)


def apply_edits(matrix: TargetMatrix, edits: List[Dict[str, Any]]) -> int:
    """
    Apply edits to a matrix.

    Text values go through the same parsing as the input cells; numbers and
    null are set directly.

    Returns:
        Number of edits rejected
    """
    rejected = 0
    for edit in edits:
        entity_id = str(edit["entityId"])
        metric_id = str(edit["metricId"])
        value = edit.get("value")
        try:
            if isinstance(value, str):
                matrix.commit(entity_id, metric_id, value)
            else:
                matrix.set_value(entity_id, metric_id, value)
        except (InvalidNumericInput, KeyError, ValueError) as e:
            logger.warning(f"Skipping edit {entity_id}/{metric_id}: {e}")
            rejected += 1
    return rejected


def main():
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Load, edit and save KPI targets")
    parser.add_argument(
        "--department",
        choices=DEPARTMENTS,
        default=settings.default_department,
        help="Department whose targets to edit"
    )
    parser.add_argument(
        "--period",
        type=str,
        default=None,
        help="Period key YYYY-MM-01 (default: previous month)"
    )
    parser.add_argument(
        "--edits",
        type=str,
        help="Path to a JSON list of edits"
    )
    parser.add_argument(
        "--overview",
        action="store_true",
        help="Show every department's target-setting status for the period and exit"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the change set without saving"
    )

    args = parser.parse_args()
    period = args.period or default_period_key()

    session = TargetEditingSession(department=args.department)

    if args.overview:
        try:
            overview = session.overview(period)
        except InvalidPeriod as e:
            logger.error(str(e))
            sys.exit(1)
        except (AuthRequired, TargetStoreAPIError) as e:
            logger.error(f"Failed to load target overview: {e}")
            sys.exit(1)

        logger.info("=" * 60)
        logger.info(f"TARGET OVERVIEW {period}")
        for _, row in overview.iterrows():
            status = f"{row['target_count']} target(s)" if row["has_targets"] else "not set"
            logger.info(f"  {row['name'] or row['department']}: {status} (last updated: {row['last_updated'] or '-'})")
        logger.info("=" * 60)
        sys.exit(0)

    try:
        matrix = session.load(period)
    except InvalidPeriod as e:
        logger.error(str(e))
        sys.exit(1)
    except (AuthRequired, TargetStoreAPIError) as e:
        logger.error(f"Failed to load targets: {e}")
        sys.exit(1)

    rejected = 0
    if args.edits:
        with open(args.edits, 'r') as f:
            edits = json.load(f)
        rejected = apply_edits(matrix, edits)

    changes = matrix.compute_change_set()
    logger.info("=" * 60)
    logger.info(f"{args.department.upper()} TARGETS {period}: {len(changes)} change(s)")
    for change in changes:
        logger.info(
            f"  {change.entity_id}/{change.metric_id}: "
            f"{format_locale_number(change.original_value) or '-'} -> {format_locale_number(change.new_value) or '(cleared)'}"
        )
    logger.info("=" * 60)

    if args.dry_run or not changes:
        sys.exit(1 if rejected else 0)

    try:
        result = session.save()
    except (AuthRequired, TargetStoreAPIError) as e:
        logger.error(f"Save failed, nothing was changed: {e}")
        sys.exit(1)

    logger.info(f"{result.created_count} created, {result.updated_count} updated")
    for error in result.errors:
        logger.error(f"  {error.entity_id}/{error.metric_id}: {error.message}")

    sys.exit(0 if result.success and not rejected else 1)


if __name__ == "__main__":
    main()
