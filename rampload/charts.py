from __future__ import annotations

import logging
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

from .scheduler import RampSchedule

LOGGER = logging.getLogger("rampload.charts")

sns.set_style("whitegrid")
plt.rcParams["figure.dpi"] = 100
plt.rcParams["savefig.dpi"] = 150
plt.rcParams["font.size"] = 10
plt.rcParams["axes.labelsize"] = 11
plt.rcParams["axes.titlesize"] = 13
plt.rcParams["legend.fontsize"] = 9

STATUS_COLORS = {
    "2xx": "#2E86AB",
    "3xx": "#6A994E",
    "4xx": "#F18F01",
    "5xx": "#C73E1D",
    "error": "#A23B72",
}

TIMELINE_FILENAME = "vus_timeline.png"
LATENCY_FILENAME = "latency_distribution.png"


def render_run_charts(
    samples: pd.DataFrame,
    schedule: RampSchedule,
    output_dir: Path,
) -> list[Path]:
    """Render the VU timeline and latency distribution charts for a finished run."""
    output_dir.mkdir(parents=True, exist_ok=True)
    rendered = []

    timeline_path = output_dir / TIMELINE_FILENAME
    _render_vus_timeline(samples, schedule, timeline_path)
    rendered.append(timeline_path)
    LOGGER.info("Saved chart %s", timeline_path)

    latency_path = output_dir / LATENCY_FILENAME
    if _render_latency_distribution(samples, latency_path):
        rendered.append(latency_path)
        LOGGER.info("Saved chart %s", latency_path)
    return rendered


def status_class(status: str) -> str:
    if not status or not status.isdigit() or status == "0":
        return "error"
    return f"{status[0]}xx"


def _render_vus_timeline(samples: pd.DataFrame, schedule: RampSchedule, chart_path: Path) -> None:
    """Planned target concurrency against the observed ``vus`` gauge."""
    fig, ax = plt.subplots(figsize=(10, 5))

    total_s = schedule.total_duration_s
    planned_x = np.linspace(0.0, total_s, num=max(int(total_s * 4), 2))
    planned_y = [schedule.target_at(t) for t in planned_x]
    ax.plot(planned_x, planned_y, linestyle="--", linewidth=2, color="#808080", label="Target")

    vus = samples[samples["metric"] == "vus"] if not samples.empty else samples
    if not vus.empty:
        start_ts = samples["timestamp"].min()
        ax.step(
            vus["timestamp"] - start_ts,
            vus["value"],
            where="post",
            linewidth=2.5,
            color="#2E86AB",
            label="Live VUs",
        )

    ax.set_xlabel("Elapsed (seconds)", fontweight="semibold")
    ax.set_ylabel("Virtual users", fontweight="semibold")
    ax.set_title("Virtual Users over Time", fontweight="bold", pad=15)
    ax.set_ylim(bottom=0)
    ax.grid(True, alpha=0.3, linestyle="--")
    ax.legend(loc="upper right", frameon=True)

    plt.tight_layout()
    fig.savefig(chart_path, bbox_inches="tight", facecolor="white")
    plt.close(fig)


def _render_latency_distribution(samples: pd.DataFrame, chart_path: Path) -> bool:
    if samples.empty or "tag_status" not in samples.columns:
        LOGGER.warning("No request data available for latency chart")
        return False

    df = samples[samples["metric"] == "http_req_duration"].copy()
    if df.empty:
        LOGGER.warning("No request data available for latency chart")
        return False

    df["status_class"] = df["tag_status"].fillna("0").map(status_class)
    order = [name for name in STATUS_COLORS if name in set(df["status_class"])]

    fig, ax = plt.subplots(figsize=(10, 6))
    sns.boxplot(
        data=df,
        x="status_class",
        y="value",
        hue="status_class",
        order=order,
        hue_order=order,
        palette=[STATUS_COLORS[name] for name in order],
        ax=ax,
        linewidth=1.5,
        width=0.6,
        legend=False,
    )

    ax.set_xlabel("Response status", fontweight="semibold", labelpad=12)
    ax.set_ylabel("http_req_duration (ms)", fontweight="semibold", labelpad=12)
    ax.set_ylim(bottom=0)
    ax.set_title("Request Duration by Response Status", fontweight="bold", pad=15)
    ax.grid(True, alpha=0.3, linestyle="--", linewidth=0.5, axis="y")
    ax.set_axisbelow(True)
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)

    plt.tight_layout()
    fig.savefig(chart_path, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    return True


__all__ = ["render_run_charts", "status_class"]
