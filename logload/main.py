from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

from .delivery import DEFAULT_TOPIC, DeliveryVerifierError, LogDeliveryVerifier
from .engine.charts import render_run_charts
from .engine.collector import COUNTER, RATE, TREND, MetricsCollector
from .engine.config import LoadOptions, PlanError, load_options
from .engine.load import LoadStatistics, StagedLoadRunner
from .engine.thresholds import (
    ThresholdResult,
    ThresholdSyntaxError,
    all_passed,
    evaluate_thresholds,
    parse_thresholds,
    validate_thresholds,
)
from .scenario import LogServiceScenario, resolve_base_url

LOGGER = logging.getLogger("logload")

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_THRESHOLDS_FAILED = 99
EXIT_INTERRUPTED = 130

TREND_COLUMNS = ("avg", "min", "med", "max", "p(90)", "p(95)")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Staged load test for the log service")
    parser.add_argument(
        "--base-url",
        default=None,
        help="Target service base URL (defaults to $BASE_URL or http://service1:8081)",
    )
    parser.add_argument(
        "--plan-path",
        default=os.environ.get("LOADTEST_PLAN_PATH"),
        help="Optional JSON file with stages and thresholds",
    )
    parser.add_argument(
        "--output-dir",
        default=os.environ.get("LOADTEST_OUTPUT_DIR", "results"),
        help="Directory to store run artefacts (samples, summary and charts)",
    )
    parser.add_argument(
        "--think-time",
        type=float,
        default=None,
        help="Seconds each VU sleeps at the end of an iteration",
    )
    parser.add_argument(
        "--kafka-broker",
        default=os.environ.get("KAFKA_BROKER", ""),
        help="Kafka bootstrap broker used to verify log delivery (empty disables)",
    )
    parser.add_argument(
        "--kafka-topic",
        default=os.environ.get("KAFKA_LOG_TOPIC", DEFAULT_TOPIC),
        help="Kafka topic the log service publishes to",
    )
    parser.add_argument(
        "--delivery-timeout",
        type=float,
        default=float(os.environ.get("DELIVERY_WAIT_TIMEOUT_SECONDS", "30")),
        help="Seconds to wait after the run for posted logs to reach Kafka",
    )
    parser.add_argument("--seed", type=int, default=None, help="Seed for payload selection")
    parser.add_argument("--no-charts", action="store_true", help="Skip chart rendering")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only print the planned stages and thresholds without executing them",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOADTEST_LOG_LEVEL", "INFO"),
        help="Logging level",
    )
    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def build_options(args: argparse.Namespace) -> LoadOptions:
    options = load_options(args.plan_path)
    if args.think_time is not None:
        if args.think_time < 0:
            raise PlanError("--think-time must be >= 0")
        options = dataclasses.replace(options, think_time_seconds=args.think_time)
    return options


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)

    try:
        options = build_options(args)
        thresholds = parse_thresholds(options.thresholds)
    except (PlanError, ThresholdSyntaxError) as exc:
        LOGGER.error("Invalid load plan: %s", exc)
        return EXIT_CONFIG_ERROR

    base_url = resolve_base_url(args.base_url)
    output_dir = Path(args.output_dir)

    collector = MetricsCollector()
    scenario = LogServiceScenario(base_url=base_url, think_time_seconds=options.think_time_seconds)
    scenario.register_metrics(collector)
    try:
        validate_thresholds(thresholds, collector.kind_of)
    except ThresholdSyntaxError as exc:
        LOGGER.error("Invalid load plan: %s", exc)
        return EXIT_CONFIG_ERROR

    LOGGER.info("Target: %s", base_url)
    LOGGER.info("Run output directory: %s", output_dir)

    if args.dry_run:
        _print_plan(options, base_url)
        return EXIT_OK

    output_dir.mkdir(parents=True, exist_ok=True)

    verifier = _start_verifier(args, output_dir)
    if verifier:
        scenario.on_log_sent = verifier.register_sent
    runner = StagedLoadRunner(options, scenario, collector, seed=args.seed)

    try:
        stats = runner.run()
    except KeyboardInterrupt:
        LOGGER.warning("Interrupted; stopping virtual users")
        runner.stop()
        if verifier:
            verifier.stop()
        return EXIT_INTERRUPTED

    delivery = None
    if verifier:
        if not verifier.wait_for_pending(args.delivery_timeout):
            LOGGER.warning(
                "%d posted log(s) not seen on Kafka within %.0f seconds",
                verifier.pending(),
                args.delivery_timeout,
            )
        verifier.stop()
        delivery = verifier.report()

    results = evaluate_thresholds(thresholds, collector)
    frame = collector.build_dataframe(filter_window=True)

    samples_path = output_dir / "samples.csv"
    frame.to_csv(samples_path, index=False)
    LOGGER.info("Saved %d samples to %s", len(frame), samples_path)

    charts = [] if args.no_charts else render_run_charts(frame, output_dir)

    summary = build_summary(
        base_url,
        options,
        stats,
        collector,
        results,
        delivery.to_dict() if delivery else None,
        [str(path) for path in charts],
    )
    summary_path = output_dir / "summary.json"
    with open(summary_path, "w", encoding="utf-8") as f:
        json.dump(summary, f, indent=2)
    LOGGER.info("Run summary written to %s", summary_path)

    print(format_summary(stats, collector, results))

    if not all_passed(results):
        return EXIT_THRESHOLDS_FAILED
    return EXIT_OK


def _start_verifier(args: argparse.Namespace, output_dir: Path) -> LogDeliveryVerifier | None:
    if not args.kafka_broker:
        return None
    verifier = LogDeliveryVerifier(
        broker=args.kafka_broker,
        topic=args.kafka_topic,
        log_path=output_dir / "delivery.log",
    )
    try:
        verifier.start()
    except DeliveryVerifierError as exc:
        LOGGER.error("Log delivery check disabled: %s", exc)
        return None
    return verifier


def build_summary(
    base_url: str,
    options: LoadOptions,
    stats: LoadStatistics,
    collector: MetricsCollector,
    results: list[ThresholdResult],
    delivery: dict[str, Any] | None,
    charts: list[str],
) -> dict[str, Any]:
    return {
        "target": base_url,
        "stages": [
            {"duration_seconds": stage.duration_seconds, "target": stage.target}
            for stage in options.stages
        ],
        "statistics": {
            "iterations": stats.iterations,
            "duration_s": stats.duration_s,
            "iterations_per_second": stats.iterations_per_second,
            "peak_vus": stats.peak_vus,
            "interrupted": stats.interrupted,
        },
        "metrics": collector.summary(),
        "checks": collector.check_summaries(),
        "thresholds": [result.to_dict() for result in results],
        "thresholds_passed": all_passed(results),
        "delivery": delivery,
        "charts": charts,
    }


def format_summary(
    stats: LoadStatistics,
    collector: MetricsCollector,
    results: list[ThresholdResult],
) -> str:
    lines = []
    for name, counts in sorted(collector.check_summaries().items()):
        total = counts["passes"] + counts["fails"]
        mark = "✓" if counts["fails"] == 0 else "✗"
        pct = counts["passes"] / total * 100 if total else 0.0
        lines.append(f"  {mark} {name} ({pct:.1f}% - {counts['passes']}/{total})")
    if lines:
        lines.append("")

    for name, stats_row in sorted(collector.summary().items()):
        kind = collector.kind_of(name)
        if kind == TREND:
            detail = " ".join(f"{col}={stats_row[col]:.2f}ms" for col in TREND_COLUMNS)
        elif kind == RATE:
            detail = (
                f"{stats_row['rate'] * 100:.2f}% "
                f"({int(stats_row['passes'])} of {int(stats_row['passes'] + stats_row['fails'])})"
            )
        elif kind == COUNTER:
            detail = f"{int(stats_row['count'])} {stats_row['rate']:.2f}/s"
        else:
            detail = f"value={stats_row['value']:.0f} min={stats_row['min']:.0f} max={stats_row['max']:.0f}"
        lines.append(f"  {name:.<24} {detail}")

    lines.append("")
    for result in results:
        mark = "✓" if result.passed else "✗"
        lines.append(
            f"  {mark} {result.threshold.key}: {result.threshold.expression} "
            f"(observed {result.observed:.4f})"
        )
    lines.append("")
    lines.append(
        f"  {stats.iterations} iterations in {stats.duration_s:.1f}s, "
        f"peak {stats.peak_vus} VUs"
    )
    return "\n".join(lines)


def _print_plan(options: LoadOptions, base_url: str) -> None:
    print(f"Target: {base_url}")
    print(
        f"Total duration: {options.total_duration_seconds:.0f}s, "
        f"peak {options.peak_target} VUs, think time {options.think_time_seconds}s"
    )
    for line in options.describe():
        print(f"  - {line}")


if __name__ == "__main__":
    sys.exit(main())
