"""
Portfolio-level risk analytics over analyzed call logs.
"""
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

from pydantic import Field

from .models import CamelModel, FileMetadata, FileStatus, StoredFile

HIGH_RISK_THRESHOLD = 7
TREND_WEEKS = 8
RECENT_HIGH_RISK_LIMIT = 3


def get_risk_level(score: Optional[float]) -> str:
    """Map a 0-10 risk score to a display level."""
    if score is None:
        return "none"
    if score >= 8:
        return "critical"
    if score >= 6:
        return "high"
    if score >= 3:
        return "medium"
    return "low"


def risk_bucket(score: float) -> str:
    """Distribution bucket used by portfolio analytics (coarser than get_risk_level)."""
    if score >= 7:
        return "critical"
    if score >= 5:
        return "high"
    if score >= 3:
        return "medium"
    return "low"


def average_risk_label(average: float) -> str:
    if average >= 7:
        return "warning"
    if average >= 5:
        return "needs_attention"
    if average >= 3:
        return "monitor"
    return "good"


class RiskDistribution(CamelModel):
    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0

    def add(self, score: float) -> None:
        bucket = risk_bucket(score)
        setattr(self, bucket, getattr(self, bucket) + 1)


class WeeklyTrend(CamelModel):
    week_start: str
    week_end: str
    distribution: RiskDistribution


class HighRiskCall(CamelModel):
    name: str
    uploaded_at: str
    risk_score: float
    agent_name: Optional[str] = None
    call_id: Optional[str] = None


class PortfolioAnalytics(CamelModel):
    total_calls: int = 0
    average_risk: float = 0.0
    average_risk_label: str = "good"
    high_risk_calls: int = 0
    high_risk_percentage: float = 0.0
    risk_distribution: RiskDistribution = Field(default_factory=RiskDistribution)
    trend: List[WeeklyTrend] = Field(default_factory=list)
    recent_high_risk: List[HighRiskCall] = Field(default_factory=list)


def _parse_date(value: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def compute_portfolio_analytics(files: Iterable[StoredFile], now: Optional[datetime] = None) -> PortfolioAnalytics:
    """
    Aggregate risk metrics over analyzed files.

    Only files with status ``analyzed`` and a risk score count. The trend
    covers the last eight 7-day windows ending at ``now``, oldest first;
    weeks without data are reported as zeros.
    """
    now = now or datetime.now(timezone.utc)
    analyzed = [
        f for f in files
        if f.metadata.status == FileStatus.ANALYZED and f.metadata.risk_score is not None
    ]

    analytics = PortfolioAnalytics(total_calls=len(analyzed))
    if not analyzed:
        analytics.trend = _weekly_trend([], now)
        return analytics

    scores = [f.metadata.risk_score for f in analyzed]
    analytics.average_risk = round(sum(scores) / len(scores), 2)
    analytics.average_risk_label = average_risk_label(analytics.average_risk)
    analytics.high_risk_calls = sum(1 for s in scores if s >= HIGH_RISK_THRESHOLD)
    analytics.high_risk_percentage = round(analytics.high_risk_calls / len(scores) * 100, 1)
    for score in scores:
        analytics.risk_distribution.add(score)

    analytics.trend = _weekly_trend(analyzed, now)

    high_risk = [f for f in analyzed if f.metadata.risk_score >= HIGH_RISK_THRESHOLD]
    high_risk.sort(key=lambda f: _parse_date(_uploaded_at(f)) or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
    analytics.recent_high_risk = [
        HighRiskCall(
            name=f.name,
            uploaded_at=_uploaded_at(f),
            risk_score=f.metadata.risk_score,
            agent_name=f.metadata.agent_name,
            call_id=f.metadata.call_id,
        )
        for f in high_risk[:RECENT_HIGH_RISK_LIMIT]
    ]
    return analytics


def _uploaded_at(f: StoredFile) -> str:
    return f.metadata.uploaded_at or f.uploaded_at


def _weekly_trend(files: List[StoredFile], now: datetime) -> List[WeeklyTrend]:
    weeks = []
    for i in range(TREND_WEEKS - 1, -1, -1):
        week_start = now - timedelta(days=(i + 1) * 7)
        week_end = now - timedelta(days=i * 7)
        distribution = RiskDistribution()
        for f in files:
            uploaded = _parse_date(_uploaded_at(f))
            if uploaded and week_start <= uploaded < week_end:
                distribution.add(f.metadata.risk_score)
        weeks.append(WeeklyTrend(
            week_start=week_start.isoformat(),
            week_end=week_end.isoformat(),
            distribution=distribution,
        ))
    return weeks


def metadata_risk_level(metadata: FileMetadata) -> str:
    return get_risk_level(metadata.risk_score)
