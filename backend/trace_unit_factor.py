#!/usr/bin/env python3
"""
Diagnostic script to trace how a conversion factor between two units is resolved.
Prints the path, every hop with its factor and where it came from, and the result.

Usage: python trace_unit_factor.py FROM_UNIT_ID TO_UNIT_ID [--product-id ID ...] [--weighting hops|factor_sum]
Example: python trace_unit_factor.py 1 3 --product-id 24515
"""

import asyncio
from motor.motor_asyncio import AsyncIOMotorClient
import os
from dotenv import load_dotenv
from pathlib import Path
import argparse
from typing import List

from unit_catalog import UnitCatalog
from unit_factor_engine import FactorResolution, FactorStatus, PathWeighting
from unit_repository import MongoUnitRepository

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

def format_factor(value):
    """Format a factor without losing small magnitudes"""
    return "n/a" if value is None else f"{value:.10g}"

def format_resolution(resolution: FactorResolution) -> List[str]:
    """Render a factor resolution as report lines"""
    lines = [
        "=" * 80,
        f"TRACING FACTOR: unit {resolution.from_unit_id} -> unit {resolution.to_unit_id}",
        "=" * 80,
        f"Product ids: {resolution.product_ids or 'generic only'}",
        f"Path weighting: {resolution.path_weighting.value}",
    ]

    if resolution.status == FactorStatus.NO_PATH:
        lines.append("❌ No conversion path between these units")
        return lines

    lines.append(f"Path: {' -> '.join(str(unit_id) for unit_id in resolution.path)}")
    lines.append("-" * 80)

    for step in resolution.steps:
        marker = "⚠️ " if step.factor is None else "✓"
        lines.append(
            f"  {marker} Step {step.step_number}: {step.from_unit_id} -> {step.to_unit_id} "
            f"factor {format_factor(step.factor)} (applied {format_factor(step.factor_applied)}, "
            f"{step.factor_source.value})"
        )

    lines.append("-" * 80)
    if resolution.status == FactorStatus.PARTIAL:
        edges = ", ".join(f"{a} -> {b}" for a, b in resolution.failed_edges)
        lines.append(f"⚠️  PARTIAL: neutral factor substituted for {edges}")
    lines.append(f"Factor: {format_factor(resolution.factor)}")
    return lines

async def trace_unit_factor(catalog: UnitCatalog, from_unit_id: int, to_unit_id: int, product_ids: List[int]):
    resolution = await catalog.resolve_factor(from_unit_id, to_unit_id, product_ids)
    for line in format_resolution(resolution):
        print(line)

async def main():
    parser = argparse.ArgumentParser(description='Trace conversion factor resolution between two units')
    parser.add_argument('from_unit_id', type=int, help='Unit to convert from')
    parser.add_argument('to_unit_id', type=int, help='Unit to convert to')
    parser.add_argument('--product-id', type=int, action='append', default=[], help='Product scope (repeatable)')
    parser.add_argument('--weighting', choices=[w.value for w in PathWeighting], default=PathWeighting.HOPS.value,
                        help='Edge cost for the path search')

    args = parser.parse_args()

    client = AsyncIOMotorClient(os.environ['MONGO_URL'])
    repository = MongoUnitRepository(client[os.environ['DB_NAME']])
    catalog = UnitCatalog(
        repository.select_units,
        repository.select_direct_conversions,
        path_weighting=PathWeighting(args.weighting)
    )

    try:
        await trace_unit_factor(catalog, args.from_unit_id, args.to_unit_id, args.product_id)
    except Exception as e:
        print(f"❌ ERROR: {str(e)}")
        import traceback
        traceback.print_exc()
    finally:
        client.close()

if __name__ == "__main__":
    asyncio.run(main())
