#!/usr/bin/env python3
"""
Urban Flood Susceptibility Mapping - command line entry point

Run on real inputs:
    python main.py --inputs inputs.json --config overrides.json --output-dir outputs

Run on the synthetic study area:
    python main.py --demo --output-dir outputs/demo
"""

import argparse
import json
import sys
from pathlib import Path

from urban_flood import FloodSusceptibilityPipeline, UrbanFloodError, load_config, setup_logging
from urban_flood.config import OUTPUT_DIR, build_config, print_config
from urban_flood.synthetic import DEMO_OVERRIDES, make_study_area


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Urban flood susceptibility: HAND, cluster and random forest hotspots "
                    "plus an importance-weighted susceptibility index"
    )
    parser.add_argument("--inputs", type=str, default=None,
                        help="JSON file mapping input names to raster / vector paths")
    parser.add_argument("--config", type=str, default=None,
                        help="JSON file with configuration overrides")
    parser.add_argument("--output-dir", type=str, default=str(OUTPUT_DIR))
    parser.add_argument("--refined-table", type=str, default=None,
                        help="Externally refined training table (CSV or GeoPackage); "
                             "skips sampling and PU refinement")
    parser.add_argument("--demo", action="store_true", default=False,
                        help="Run on a synthetic study area")
    parser.add_argument("--no-figures", action="store_true", default=False)
    parser.add_argument("--log-level", type=str, default=None,
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    args = parser.parse_args(argv)

    if not args.demo and not args.inputs:
        parser.error("one of --inputs or --demo is required")
    return args


def load_inputs(path):
    path = Path(path)
    if not path.exists():
        raise UrbanFloodError(f"Inputs file not found: {path}")
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def main(argv=None):
    args = parse_args(argv)

    if args.demo:
        config = load_config(args.config, base=build_config(DEMO_OVERRIDES))
        inputs = make_study_area(seed=config["sampling"]["random_state"])
    else:
        config = load_config(args.config)
        inputs = load_inputs(args.inputs)

    logging_cfg = config["logging"]
    logger = setup_logging(logging_cfg["file"], args.log_level or logging_cfg["level"])

    print("""
╔══════════════════════════════════════════════════════════════════╗
║            URBAN FLOOD SUSCEPTIBILITY MAPPING                    ║
╚══════════════════════════════════════════════════════════════════╝
""")
    print_config(config)

    pipeline = FloodSusceptibilityPipeline(config)
    try:
        result = pipeline.run(
            inputs,
            output_dir=args.output_dir,
            refined_table=args.refined_table,
            figures=False if args.no_figures else None,
        )
    except UrbanFloodError as e:
        logger.error(f"Pipeline failed: {e.message}")
        return 1

    print("\n" + "=" * 65)
    print("PIPELINE COMPLETED")
    print("=" * 65)
    metrics = result.metrics
    print(f"  RF accuracy: {metrics['accuracy']:.3f}, kappa: {metrics['kappa']:.3f}")
    for _, row in result.coverage.iterrows():
        n = len(result.hotspots[row["method"]].hotspots)
        print(f"  {row['method']:>8}: {n:3d} hotspots, risk-zone coverage {row['coverage_pct']:5.1f}%")
    stats = result.statistics
    if stats["count"]:
        print(f"  Susceptibility: mean {stats['mean']:.3f}, p95 {stats['p95']:.3f}")
    print(f"\n  Outputs: {args.output_dir} ({len(result.outputs)} files)")
    print("=" * 65 + "\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
