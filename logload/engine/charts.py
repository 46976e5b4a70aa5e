from __future__ import annotations

import logging
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

LOGGER = logging.getLogger("logload.engine.charts")

sns.set_style("whitegrid")
plt.rcParams["figure.dpi"] = 100
plt.rcParams["savefig.dpi"] = 150
plt.rcParams["font.size"] = 10
plt.rcParams["axes.labelsize"] = 11
plt.rcParams["axes.titlesize"] = 13
plt.rcParams["legend.fontsize"] = 9

PRIMARY_COLOR = "#2E86AB"
SECONDARY_COLOR = "#F18F01"
ERROR_COLOR = "#C73E1D"

REQUEST_COLORS = ["#2E86AB", "#A23B72", "#F18F01", "#6A994E", "#C73E1D"]


def render_run_charts(frame: pd.DataFrame, output_dir: Path) -> list[Path]:
    """Render every chart that the sample frame has data for."""
    if frame.empty:
        LOGGER.warning("No samples recorded; skipping charts")
        return []

    output_dir.mkdir(parents=True, exist_ok=True)
    df = frame.copy()
    df["elapsed_s"] = df["timestamp"] - df["timestamp"].min()
    bucket_s = _bucket_size(df["elapsed_s"].max())
    df["bucket"] = (df["elapsed_s"] // bucket_s) * bucket_s

    rendered: list[Path] = []
    for renderer, filename in (
        (_render_vus_chart, "vus_throughput.png"),
        (_render_latency_timeline, "latency_p95.png"),
        (_render_latency_boxplot, "latency_boxplot.png"),
        (_render_error_rate, "error_rate.png"),
    ):
        path = output_dir / filename
        if renderer(df, bucket_s, path):
            LOGGER.info("Rendering chart %s", path)
            rendered.append(path)
    return rendered


def _bucket_size(span_s: float) -> float:
    # Roughly 100 points per chart, never finer than one second.
    if not np.isfinite(span_s) or span_s <= 0:
        return 1.0
    return max(1.0, float(np.ceil(span_s / 100.0)))


def _metric(df: pd.DataFrame, name: str) -> pd.DataFrame:
    return df[df["metric"] == name]


def _render_vus_chart(df: pd.DataFrame, bucket_s: float, chart_path: Path) -> bool:
    vus = _metric(df, "vus")
    reqs = _metric(df, "http_reqs")
    if vus.empty:
        return False

    fig, ax = plt.subplots(figsize=(12, 5))
    vus_series = vus.groupby("bucket")["value"].max()
    ax.plot(vus_series.index, vus_series.values, color=PRIMARY_COLOR, linewidth=2.5, label="VUs")
    ax.set_xlabel("Elapsed (seconds)", fontweight="semibold")
    ax.set_ylabel("Virtual users", fontweight="semibold", color=PRIMARY_COLOR)
    ax.set_ylim(bottom=0)

    if not reqs.empty:
        ax2 = ax.twinx()
        rps = reqs.groupby("bucket")["value"].sum() / bucket_s
        ax2.plot(
            rps.index,
            rps.values,
            color=SECONDARY_COLOR,
            linewidth=1.5,
            alpha=0.8,
            label="Requests/s",
        )
        ax2.set_ylabel("Requests per second", fontweight="semibold", color=SECONDARY_COLOR)
        ax2.set_ylim(bottom=0)
        ax2.grid(False)

    ax.set_title("Virtual Users and Throughput", fontweight="bold", pad=15)
    plt.tight_layout()
    fig.savefig(chart_path, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    return True


def _render_latency_timeline(df: pd.DataFrame, bucket_s: float, chart_path: Path) -> bool:
    durations = _metric(df, "http_req_duration")
    if durations.empty or "name" not in durations.columns:
        return False

    fig, ax = plt.subplots(figsize=(12, 5))
    for idx, (name, group) in enumerate(sorted(durations.groupby("name"), key=lambda kv: kv[0])):
        p95 = group.groupby("bucket")["value"].quantile(0.95)
        ax.plot(
            p95.index,
            p95.values,
            marker="o",
            markersize=3,
            linewidth=1.8,
            color=REQUEST_COLORS[idx % len(REQUEST_COLORS)],
            label=name,
        )

    ax.set_xlabel("Elapsed (seconds)", fontweight="semibold")
    ax.set_ylabel("p95 duration (ms)", fontweight="semibold")
    ax.set_ylim(bottom=0)
    ax.set_title("Request Duration p95 over Time", fontweight="bold", pad=15)
    ax.legend(loc="upper left", frameon=True, fancybox=True, title="Request")
    ax.grid(True, alpha=0.3, linestyle="--")

    plt.tight_layout()
    fig.savefig(chart_path, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    return True


def _render_latency_boxplot(df: pd.DataFrame, bucket_s: float, chart_path: Path) -> bool:
    durations = _metric(df, "http_req_duration")
    if durations.empty or "name" not in durations.columns:
        return False
    durations = durations[durations["value"].notna() & (durations["value"] >= 0)]
    if durations.empty:
        LOGGER.warning("No valid latency data after filtering")
        return False

    order = sorted(durations["name"].unique())
    fig, ax = plt.subplots(figsize=(10, 6))
    sns.boxplot(
        data=durations,
        x="name",
        y="value",
        order=order,
        palette=REQUEST_COLORS[: len(order)],
        hue="name",
        legend=False,
        ax=ax,
        linewidth=1.5,
        width=0.6,
    )
    ax.set_xlabel("Request", fontweight="semibold", labelpad=12)
    ax.set_ylabel("Duration (ms)", fontweight="semibold", labelpad=12)
    ax.set_ylim(bottom=0)
    ax.set_title("Request Duration Distribution", fontweight="bold", pad=15)
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)

    plt.tight_layout()
    fig.savefig(chart_path, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    return True


def _render_error_rate(df: pd.DataFrame, bucket_s: float, chart_path: Path) -> bool:
    errors = _metric(df, "errors")
    failed = _metric(df, "http_req_failed")
    if errors.empty and failed.empty:
        return False

    fig, ax = plt.subplots(figsize=(12, 4))
    if not errors.empty:
        # errors only carries failures, so scale by the requests in each bucket
        reqs = _metric(df, "http_reqs").groupby("bucket")["value"].sum()
        failures = errors.groupby("bucket")["value"].sum()
        share = failures / reqs.reindex(failures.index)
        rate = share.fillna(1.0).clip(upper=1.0) * 100
        ax.plot(rate.index, rate.values, color=ERROR_COLOR, linewidth=2, label="errors")
    if not failed.empty:
        rate = failed.groupby("bucket")["value"].mean() * 100
        ax.plot(
            rate.index,
            rate.values,
            color=PRIMARY_COLOR,
            linewidth=1.5,
            linestyle="--",
            label="http_req_failed",
        )

    ax.set_xlabel("Elapsed (seconds)", fontweight="semibold")
    ax.set_ylabel("Error rate (%)", fontweight="semibold")
    ax.set_ylim(0, 100)
    ax.set_title("Error Rate over Time", fontweight="bold", pad=15)
    ax.legend(loc="upper left", frameon=True)
    ax.grid(True, alpha=0.3, linestyle="--")

    plt.tight_layout()
    fig.savefig(chart_path, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    return True
