"""
Unit tests -- anomaly detection: z-scores, buckets, detector orchestration.
"""
import math
from datetime import date, datetime, timezone

import pytest

from src.engine.anomaly_detector import (
    AnomalyDetector,
    AnomalyEvent,
    bucket_value,
    compute_anomaly,
    score_against_baseline,
    severity_breakdown,
    severity_for,
    sort_by_severity,
    weekly_buckets,
)
from src.governance.metric_catalog import read_catalog_file

TODAY = date(2024, 1, 31)
CLIENT = "11111111-1111-1111-1111-111111111111"


@pytest.fixture(scope="module")
def catalog():
    return read_catalog_file()


# ── Pure math ───────────────────────────────────────────

def test_score_against_baseline():
    score = score_against_baseline([10, 20, 30], 50)
    assert score.mean == 20
    assert math.isclose(score.std_dev, math.sqrt(200 / 3))
    assert math.isclose(score.z_score, 30 / math.sqrt(200 / 3))


def test_zero_variance_gives_zero_z():
    score = score_against_baseline([5, 5, 5], 9)
    assert score.std_dev == 0
    assert score.z_score == 0
    assert compute_anomaly("x", [5, 5, 5, 9], threshold=2.0) is None


def test_spike_detected():
    event = compute_anomaly("claims_received", [10, 20, 30, 50], threshold=2.0)
    assert event is not None
    assert event.direction == "up"
    assert event.severity == "critical"
    assert round(event.z_score, 2) == 3.67
    assert event.current_value == 50
    assert event.baseline_mean == 20


def test_drop_detected():
    event = compute_anomaly("issue_rate", [0.30, 0.31, 0.29, 0.30, 0.10], threshold=2.0)
    assert event.direction == "down"
    assert event.z_score < 0


def test_within_threshold_is_quiet():
    assert compute_anomaly("x", [10, 12, 11, 12], threshold=2.0) is None


def test_too_few_buckets():
    assert compute_anomaly("x", [1, 100], threshold=0.1) is None


@pytest.mark.parametrize("z,severity", [
    (3.01, "critical"),
    (-3.5, "critical"),
    (3.0, "warning"),
    (2.6, "warning"),
    (2.5, "info"),
    (-2.1, "info"),
])
def test_severity_bands(z, severity):
    assert severity_for(z) == severity


def test_weekly_buckets_are_disjoint_and_end_today():
    buckets = weekly_buckets(TODAY, 30)
    assert len(buckets) == 4
    assert buckets[-1] == (date(2024, 1, 25), date(2024, 1, 31))
    assert buckets[0] == (date(2024, 1, 4), date(2024, 1, 10))
    for (_, prev_end), (start, _) in zip(buckets, buckets[1:]):
        assert (start - prev_end).days == 1


def test_bucket_value_sums_counts_and_averages_rates():
    rows = [{"value": 2}, {"value": 4}]
    assert bucket_value(rows, "count") == 6
    assert bucket_value(rows, "days") == 3
    assert bucket_value([], "count") == 0
    assert bucket_value([{"value": None}], "percentage") == 0


def _event(slug, z, severity):
    return AnomalyEvent(slug, "up", z, 1.0, 0.0, 1.0, severity, datetime(2024, 1, 31, tzinfo=timezone.utc))


def test_sort_by_severity_then_magnitude():
    events = [_event("a", 2.2, "info"), _event("b", -3.4, "critical"),
              _event("c", 2.7, "warning"), _event("d", 3.9, "critical")]
    assert [e.metric_slug for e in sort_by_severity(events)] == ["d", "b", "c", "a"]
    assert severity_breakdown(events) == {"critical": 2, "warning": 1, "info": 1}


def test_event_to_dict():
    d = _event("a", 2.2, "info").to_dict()
    assert d["detected_at"] == "2024-01-31T00:00:00+00:00"
    assert d["baseline_std_dev"] == 1.0


# ── Detector ────────────────────────────────────────────

class _SeriesExecutor:
    """Returns per-bucket values keyed by the bucket start date; fails for chosen SQL."""

    def __init__(self, series, fail_when=None):
        self.series = series
        self.fail_when = fail_when
        self.calls = 0

    def __call__(self, sql, params, timeout_ms=None):
        self.calls += 1
        if self.fail_when and self.fail_when in sql:
            raise RuntimeError("canceling statement due to statement timeout")
        return [{"value": self.series[params["start_date"]]}]


class _Sink:
    def __init__(self, fail=False):
        self.fail = fail
        self.saved = []

    def save_events(self, client_id, events):
        if self.fail:
            raise ConnectionError("db down")
        self.saved.append((client_id, list(events)))
        return len(events)


_SPIKE = {
    date(2024, 1, 4): 10,
    date(2024, 1, 11): 20,
    date(2024, 1, 18): 30,
    date(2024, 1, 25): 50,
}


def _detector(catalog, executor, store=None):
    return AnomalyDetector(
        catalog_loader=lambda: catalog,
        executor=executor,
        store=store,
        today=lambda: TODAY,
        max_workers=2,
    )


def test_detector_finds_spike_and_saves(catalog):
    sink = _Sink()
    detector = _detector(catalog, _SeriesExecutor(_SPIKE), sink)
    events = detector.detect_anomalies(CLIENT, ["claims_received"], lookback_days=28, threshold=2.0)
    assert len(events) == 1
    assert events[0].metric_slug == "claims_received"
    assert events[0].severity == "critical"
    assert sink.saved == [(CLIENT, events)]


def test_one_query_per_bucket(catalog):
    run = _SeriesExecutor(_SPIKE)
    _detector(catalog, run).detect_anomalies(CLIENT, ["claims_received"], lookback_days=28, threshold=2.0)
    assert run.calls == 4


def test_failing_metric_is_isolated(catalog):
    run = _SeriesExecutor(_SPIKE, fail_when="sla_breached")
    events = _detector(catalog, run).detect_anomalies(
        CLIENT, ["sla_breach_rate", "claims_received"], lookback_days=28, threshold=2.0,
    )
    assert [e.metric_slug for e in events] == ["claims_received"]


def test_malformed_rows_are_isolated(catalog):
    spike = _SeriesExecutor(_SPIKE)

    def run(sql, params, timeout_ms=None):
        if "sla_breached" in sql:
            return [{"value": "n/a"}]
        return spike(sql, params, timeout_ms)

    events = _detector(catalog, run).detect_anomalies(
        CLIENT, ["sla_breach_rate", "claims_received"], lookback_days=28, threshold=2.0,
    )
    assert [e.metric_slug for e in events] == ["claims_received"]


def test_unknown_metric_skipped(catalog):
    events = _detector(catalog, _SeriesExecutor(_SPIKE)).detect_anomalies(
        CLIENT, ["revenue", "claims_received"], lookback_days=28, threshold=2.0,
    )
    assert [e.metric_slug for e in events] == ["claims_received"]


def test_short_lookback_yields_nothing(catalog):
    run = _SeriesExecutor(_SPIKE)
    events = _detector(catalog, run).detect_anomalies(CLIENT, ["claims_received"], lookback_days=14)
    assert events == []
    assert run.calls == 0


def test_store_failure_still_returns_events(catalog):
    events = _detector(catalog, _SeriesExecutor(_SPIKE), _Sink(fail=True)).detect_anomalies(
        CLIENT, ["claims_received"], lookback_days=28, threshold=2.0,
    )
    assert len(events) == 1


def test_nothing_saved_without_events(catalog):
    flat = {d: 10 for d in _SPIKE}
    sink = _Sink()
    events = _detector(catalog, _SeriesExecutor(flat), sink).detect_anomalies(
        CLIENT, ["claims_received"], lookback_days=28, threshold=2.0,
    )
    assert events == []
    assert sink.saved == []
