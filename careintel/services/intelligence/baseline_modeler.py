"""
Baseline Modeler for change detection

Calculates rolling baselines per (subject, metric) from bucket representatives.
Used for wellness monitoring and change detection (NOT medical diagnosis).

The baseline anchored at a bucket covers [bucket - window, bucket), so a new
reading is never part of its own reference. Statistics are maintained
incrementally with Welford's algorithm while the window slides forward.
"""

import logging
import math
from collections import deque
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

import numpy as np
from sqlalchemy.orm import Session

from careintel.models.baseline_models import Baseline
from careintel.models.observation_models import ObservationBucket
from careintel.services.intelligence.config_service import IntelligenceConfig
from careintel.services.intelligence.enums import BaselineStatus, TrendDirection
from careintel.services.intelligence.identifiers import (
    deterministic_id,
    fingerprint,
    floor_to_bucket,
    to_naive_utc,
    utcnow,
)

logger = logging.getLogger(__name__)


class RunningStats:
    """Welford accumulator supporting removal, for sliding windows"""

    def __init__(self):
        self.count = 0
        self.mean = 0.0
        self.m2 = 0.0

    def add(self, value: float):
        self.count += 1
        delta = value - self.mean
        self.mean += delta / self.count
        self.m2 += delta * (value - self.mean)

    def remove(self, value: float):
        if self.count <= 1:
            self.count = 0
            self.mean = 0.0
            self.m2 = 0.0
            return
        old_mean = self.mean
        self.count -= 1
        self.mean = old_mean - (value - old_mean) / self.count
        self.m2 -= (value - old_mean) * (value - self.mean)
        if self.m2 < 0:
            self.m2 = 0.0

    @property
    def variance(self) -> float:
        """Sample variance (n - 1)"""
        if self.count < 2:
            return 0.0
        return self.m2 / (self.count - 1)

    @property
    def std_dev(self) -> float:
        return math.sqrt(self.variance)


def classify_trend(
    current_mean: Optional[float],
    prior_mean: Optional[float],
    deadband: float
) -> TrendDirection:
    """Compare window mean against prior window mean with a relative deadband"""
    if current_mean is None or prior_mean is None:
        return TrendDirection.INSUFFICIENT_DATA
    if prior_mean == 0:
        if current_mean == 0:
            return TrendDirection.STABLE
        return TrendDirection.INCREASING if current_mean > 0 else TrendDirection.DECREASING
    change = (current_mean - prior_mean) / abs(prior_mean)
    if change > deadband:
        return TrendDirection.INCREASING
    elif change < -deadband:
        return TrendDirection.DECREASING
    return TrendDirection.STABLE


def assess_data_quality(
    timestamps: List[datetime],
    window_start: datetime,
    window_end: datetime,
    expected_samples: float
) -> float:
    """
    Score 0-1 from sample density and the largest gap in coverage.

    Density is capped at 1.0; the gap term penalises a window whose samples
    are bunched together even when the count looks healthy.
    """
    if not timestamps:
        return 0.0
    density = min(1.0, len(timestamps) / expected_samples)
    points = np.array([window_start] + list(timestamps) + [window_end], dtype="datetime64[s]")
    gaps = np.diff(points).astype("timedelta64[s]").astype(float)
    window_seconds = (window_end - window_start).total_seconds()
    max_gap_fraction = float(gaps.max()) / window_seconds if window_seconds > 0 else 1.0
    score = 0.6 * density + 0.4 * (1.0 - max_gap_fraction)
    return round(float(np.clip(score, 0.0, 1.0)), 4)


class BaselineModeler:
    """
    Service for calculating subject baselines from bucketed observations.
    Supports wellness monitoring and change detection.
    """

    def __init__(self, db: Session, config: IntelligenceConfig):
        self.db = db
        self.config = config

    @property
    def window(self) -> timedelta:
        return timedelta(days=self.config.baseline_window_days)

    @property
    def period(self) -> str:
        return f"rolling_{self.config.baseline_window_days}d"

    def update_subject(self, tenant_id: str, subject_id: str, horizon_end: datetime) -> int:
        """
        Ensure a baseline exists for every bucket in the evaluation horizon.

        The horizon is the scoring window ending at horizon_end (the subject's
        latest observation). Returns the number of baseline versions written.
        """
        horizon_start = floor_to_bucket(
            horizon_end - timedelta(days=self.config.scoring_window_days),
            self.config.bucket_minutes
        )
        metric_types = [
            row[0] for row in self.db.query(ObservationBucket.metric_type)
            .filter(
                ObservationBucket.tenant_id == tenant_id,
                ObservationBucket.subject_id == subject_id,
            )
            .distinct()
            .order_by(ObservationBucket.metric_type)
        ]

        written = 0
        for metric_type in metric_types:
            series = self._load_series(tenant_id, subject_id, metric_type)
            anchors = [ts for ts, _ in series if horizon_start <= ts <= horizon_end]
            count, _ = self._refresh_anchors(tenant_id, subject_id, metric_type, series, anchors)
            written += count

        if written:
            logger.info(f"Wrote {written} baseline versions for subject {subject_id}")
        return written

    def get_current_baseline(
        self,
        tenant_id: str,
        subject_id: str,
        metric_type: str,
        as_of: Optional[datetime] = None
    ) -> Optional[Baseline]:
        """
        Latest baseline (latest window end, highest version) at as_of.

        When that baseline ends more than one window before as_of, a baseline
        anchored at as_of is computed and stored as the current one. Returns
        None when the subject has no readings for the metric.
        """
        as_of = to_naive_utc(as_of) if as_of else utcnow()
        current = (
            self.db.query(Baseline)
            .filter(
                Baseline.tenant_id == tenant_id,
                Baseline.subject_id == subject_id,
                Baseline.metric_type == metric_type,
                Baseline.window_end <= as_of,
            )
            .order_by(Baseline.window_end.desc(), Baseline.version.desc())
            .first()
        )
        if current is not None and current.window_end >= as_of - self.window:
            return current

        series = self._load_series(tenant_id, subject_id, metric_type)
        if not series:
            return current
        anchor = floor_to_bucket(as_of, self.config.bucket_minutes)
        _, rows = self._refresh_anchors(tenant_id, subject_id, metric_type, series, [anchor])
        logger.info(f"Recomputed stale baseline for subject {subject_id} metric {metric_type}")
        return rows[anchor]

    def baselines_by_anchor(
        self,
        tenant_id: str,
        subject_id: str,
        since: datetime
    ) -> Dict[Tuple[str, datetime], Baseline]:
        """Latest version of every baseline anchored at or after since, keyed by (metric, window_end)"""
        rows = (
            self.db.query(Baseline)
            .filter(
                Baseline.tenant_id == tenant_id,
                Baseline.subject_id == subject_id,
                Baseline.window_end >= since,
            )
            .order_by(Baseline.metric_type, Baseline.window_end, Baseline.version)
        )
        latest = {}
        for row in rows:
            latest[(row.metric_type, row.window_end)] = row
        return latest

    def _load_series(self, tenant_id: str, subject_id: str, metric_type: str) -> List[Tuple[datetime, float]]:
        rows = (
            self.db.query(ObservationBucket.bucket_start, ObservationBucket.representative_value)
            .filter(
                ObservationBucket.tenant_id == tenant_id,
                ObservationBucket.subject_id == subject_id,
                ObservationBucket.metric_type == metric_type,
            )
            .order_by(ObservationBucket.bucket_start)
            .all()
        )
        return [(row[0], row[1]) for row in rows]

    def _refresh_anchors(
        self,
        tenant_id: str,
        subject_id: str,
        metric_type: str,
        series: List[Tuple[datetime, float]],
        anchors: List[datetime]
    ) -> Tuple[int, Dict[datetime, Baseline]]:
        """Slide the window over ascending anchors, writing a version wherever inputs changed"""
        if not anchors:
            return 0, {}
        anchors = sorted(set(anchors))
        window = self.window

        existing = {}
        for row in (
            self.db.query(Baseline)
            .filter(
                Baseline.tenant_id == tenant_id,
                Baseline.subject_id == subject_id,
                Baseline.metric_type == metric_type,
                Baseline.window_end >= anchors[0],
                Baseline.window_end <= anchors[-1],
            )
            .order_by(Baseline.window_end, Baseline.version)
        ):
            existing[row.window_end] = row

        current_stats = RunningStats()
        prior_stats = RunningStats()
        current_values: deque = deque()
        prior_values: deque = deque()
        head = 0
        written = 0
        result = {}

        for anchor in anchors:
            while head < len(series) and series[head][0] < anchor:
                current_stats.add(series[head][1])
                current_values.append(series[head])
                head += 1
            while current_values and current_values[0][0] < anchor - window:
                item = current_values.popleft()
                current_stats.remove(item[1])
                prior_stats.add(item[1])
                prior_values.append(item)
            while prior_values and prior_values[0][0] < anchor - 2 * window:
                item = prior_values.popleft()
                prior_stats.remove(item[1])

            input_fingerprint = fingerprint({
                "window": [(ts, value) for ts, value in current_values],
                "prior": [(ts, value) for ts, value in prior_values],
                "params": [
                    self.config.baseline_window_days,
                    self.config.min_baseline_samples,
                    self.config.trend_deadband,
                    self.config.get_metric(metric_type).expected_samples_per_day
                    if self.config.get_metric(metric_type) else None,
                ],
            })
            previous = existing.get(anchor)
            if previous is not None and previous.input_fingerprint == input_fingerprint:
                result[anchor] = previous
                continue

            baseline = self._build_baseline(
                tenant_id, subject_id, metric_type, anchor,
                current_stats, current_values, prior_stats,
                version=(previous.version + 1) if previous else 1,
                input_fingerprint=input_fingerprint,
            )
            self.db.add(baseline)
            result[anchor] = baseline
            written += 1

        self.db.flush()
        return written, result

    def _build_baseline(
        self,
        tenant_id: str,
        subject_id: str,
        metric_type: str,
        anchor: datetime,
        stats: RunningStats,
        values: deque,
        prior_stats: RunningStats,
        version: int,
        input_fingerprint: str
    ) -> Baseline:
        window_start = anchor - self.window
        metric = self.config.get_metric(metric_type)
        expected_per_day = metric.expected_samples_per_day if metric else 1.0
        expected_samples = self.config.baseline_window_days * expected_per_day
        min_samples = self.config.min_baseline_samples

        sample_values = [value for _, value in values]
        sufficient = stats.count >= min_samples
        current_mean = round(stats.mean, 6) if stats.count else None
        prior_mean = round(prior_stats.mean, 6) if prior_stats.count >= min_samples else None

        return Baseline(
            id=deterministic_id(tenant_id, subject_id, metric_type, self.period, anchor, version),
            tenant_id=tenant_id,
            subject_id=subject_id,
            metric_type=metric_type,
            period=self.period,
            window_start=window_start,
            window_end=anchor,
            version=version,
            mean=current_mean,
            std_dev=round(stats.std_dev, 6) if stats.count else None,
            median=float(np.median(sample_values)) if sample_values else None,
            min_value=min(sample_values) if sample_values else None,
            max_value=max(sample_values) if sample_values else None,
            sample_count=stats.count,
            status=(BaselineStatus.VALID if sufficient else BaselineStatus.INSUFFICIENT_DATA).value,
            trend_direction=classify_trend(
                current_mean if sufficient else None,
                prior_mean,
                self.config.trend_deadband
            ).value,
            prior_window_mean=prior_mean,
            baseline_confidence=round(min(1.0, stats.count / expected_samples), 4),
            data_quality_score=assess_data_quality(
                [ts for ts, _ in values], window_start, anchor, expected_samples
            ),
            input_fingerprint=input_fingerprint,
            computed_at=utcnow(),
        )
