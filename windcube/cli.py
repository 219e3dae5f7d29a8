"""
Command-line entry point: run one recompute for a scenario document.

    windcube --scenario scenario.yaml --output-dir exports/
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Iterable, Optional

from windcube.config import load_document
from windcube.contracts import PercentileSelection
from windcube.engine import CubeEngine
from windcube.errors import ConfigurationError

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Compute wind-project cashflows and metrics.")
    parser.add_argument("--scenario", required=True, help="Scenario YAML/JSON (project data).")
    parser.add_argument(
        "--settings",
        default=None,
        help="Settings YAML/JSON. Defaults to the scenario's 'settings' block.",
    )
    parser.add_argument("--sources", default=None, help="Source registry (default: bundled).")
    parser.add_argument("--metrics", default=None, help="Metric registry (default: bundled).")
    parser.add_argument(
        "--percentile",
        type=int,
        default=None,
        help="Percentile to report (default: primary percentile).",
    )
    parser.add_argument(
        "--output-dir",
        default=None,
        help="Write sources.csv and metrics.csv into this directory.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    return parser


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        scenario = load_document(args.scenario)
        engine = CubeEngine.from_files(
            args.settings if args.settings else scenario,
            sources=args.sources,
            metrics=args.metrics,
        )
    except (ConfigurationError, FileNotFoundError) as exc:
        logger.error("%s", exc)
        return 2

    report = engine.recompute(scenario)
    percentile = args.percentile if args.percentile is not None else engine.settings.primary_percentile

    selection = PercentileSelection.unified_at(percentile)
    logger.info("Financeability metrics at P%d:", percentile)
    for defn in engine.get_metrics_by_usage("financeability"):
        metric = engine.get_metric_result(defn.id, selection)
        result = metric.result(percentile) if metric is not None else None
        if result is None:
            continue
        shown = result.formatted if result.error is None else f"n/a ({result.error})"
        note = f"  [{result.threshold.annotation}]" if result.threshold else ""
        logger.info("  %-32s %s%s", defn.metadata.name, shown, note)
    for sid, error in report.failed_sources.items():
        logger.warning("Source %s failed: %s", sid, error)

    if args.output_dir:
        out = Path(args.output_dir)
        out.mkdir(parents=True, exist_ok=True)
        engine.store.to_frame().to_csv(out / "sources.csv", index=False)
        engine.store.metrics_frame().to_csv(out / "metrics.csv", index=False)
        logger.info("Exports written to %s", out)

    return 0 if not report.failed_sources else 1


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(main(sys.argv[1:]))
