"""
Regression tests for portfolio risk analytics.

Usage:
    pytest tests/regression/test_analytics.py -v
"""

from datetime import datetime, timedelta, timezone

from backend.app.analytics import (
    average_risk_label,
    compute_portfolio_analytics,
    get_risk_level,
    risk_bucket,
)
from backend.app.models import FileMetadata, FileStatus, StoredFile

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def stored(name, risk_score, days_ago=1, status=FileStatus.ANALYZED, agent="Dana Ortiz"):
    uploaded_at = (NOW - timedelta(days=days_ago)).isoformat()
    return StoredFile(
        name=name,
        path=name,
        size=100,
        uploaded_at=uploaded_at,
        metadata=FileMetadata(
            original_filename=name,
            uploaded_at=uploaded_at,
            status=status,
            risk_score=risk_score,
            agent_name=agent,
        ),
    )


class TestRiskLevels:
    """Score thresholds."""

    def test_display_levels(self):
        assert [get_risk_level(s) for s in (9, 8, 6.5, 3, 2.9)] == ["critical", "critical", "high", "medium", "low"]
        assert get_risk_level(None) == "none"

    def test_distribution_buckets(self):
        assert [risk_bucket(s) for s in (7, 5, 3, 0)] == ["critical", "high", "medium", "low"]

    def test_average_labels(self):
        assert [average_risk_label(s) for s in (7.2, 5, 3.5, 1)] == ["warning", "needs_attention", "monitor", "good"]


class TestPortfolioAnalytics:
    """Aggregation over stored file records."""

    def test_empty_portfolio(self):
        analytics = compute_portfolio_analytics([], now=NOW)

        assert analytics.total_calls == 0
        assert analytics.average_risk == 0
        assert len(analytics.trend) == 8
        assert all(week.distribution.critical == 0 for week in analytics.trend)

    def test_only_analyzed_files_count(self):
        files = [
            stored("a.json", 8.0),
            stored("b.json", 4.0),
            stored("c.json", None),
            stored("d.json", 9.5, status=FileStatus.ERROR),
        ]

        analytics = compute_portfolio_analytics(files, now=NOW)

        assert analytics.total_calls == 2
        assert analytics.average_risk == 6.0
        assert analytics.average_risk_label == "needs_attention"
        assert analytics.high_risk_calls == 1
        assert analytics.high_risk_percentage == 50.0
        assert analytics.risk_distribution.critical == 1
        assert analytics.risk_distribution.medium == 1

    def test_trend_places_files_in_weeks(self):
        files = [stored("new.json", 7.5, days_ago=2), stored("old.json", 2.0, days_ago=20)]

        trend = compute_portfolio_analytics(files, now=NOW).trend

        assert trend[-1].distribution.critical == 1
        assert trend[-3].distribution.low == 1
        assert trend[0].week_start < trend[-1].week_start

    def test_recent_high_risk_is_newest_first_and_limited(self):
        files = [stored(f"call-{i}.json", 8.0, days_ago=i) for i in range(1, 6)]

        recent = compute_portfolio_analytics(files, now=NOW).recent_high_risk

        assert [c.name for c in recent] == ["call-1.json", "call-2.json", "call-3.json"]
        assert recent[0].to_json_dict()["riskScore"] == 8.0
