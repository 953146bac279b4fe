"""Engagement and lead scoring.

Both scores are weighted heuristics with hand-picked weights, not calibrated
models. The weights live in the policy tables below.
"""

from dataclasses import dataclass
from typing import Iterable

from visitor_analytics.models import Session


@dataclass(frozen=True)
class EngagementPolicy:
    """Per-address dashboard score, 0-100."""

    points_per_request: float = 10
    request_cap: float = 100
    points_per_unique_page: float = 15
    points_per_session_minute: float = 20
    session_minutes_cap: float = 50
    points_per_session: float = 10
    session_cap: float = 30
    max_score: float = 100


@dataclass(frozen=True)
class LeadPolicy:
    """Per-visitor marketing scores, 0-1."""

    time_on_site_target_ms: float = 5 * 60 * 1000
    pages_target: int = 3
    time_weight: float = 0.40
    pages_weight: float = 0.30
    activity_weight: float = 0.30
    clicks_target: int = 10
    mouse_movements_target: int = 50

    lead_engagement_weight: float = 0.30
    lead_visits_weight: float = 0.20
    visits_target: int = 5
    lead_time_weight: float = 0.25
    lead_time_target_ms: float = 10 * 60 * 1000
    lead_high_value_weight: float = 0.25
    high_value_target: int = 3

    qualified_threshold: float = 0.6
    high_urgency_threshold: float = 0.8
    opportunity_threshold: float = 0.4
    high_engagement_threshold: float = 0.7


HIGH_VALUE_PAGE_PATTERNS = ("/services", "/projects", "/contact", "/about", "/pricing", "/quote")

ENGAGEMENT_PAGE_INDICATORS = ("contact", "services", "projects", "about", "pricing")

DEFAULT_ENGAGEMENT_POLICY = EngagementPolicy()
DEFAULT_LEAD_POLICY = LeadPolicy()


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(value, high))


def engagement_score(request_count: int, unique_pages: int, sessions: list[Session],
                     policy: EngagementPolicy = DEFAULT_ENGAGEMENT_POLICY) -> int:
    """Dashboard engagement score for one address, clamped to 0-100."""
    if not sessions:
        avg_session_minutes = 0.0
    else:
        avg_session_minutes = sum(s.duration_seconds for s in sessions) / len(sessions) / 60

    score = (
        min(request_count * policy.points_per_request, policy.request_cap)
        + unique_pages * policy.points_per_unique_page
        + min(avg_session_minutes * policy.points_per_session_minute, policy.session_minutes_cap)
        + min(len(sessions) * policy.points_per_session, policy.session_cap)
    )
    return round(_clamp(score, 0, policy.max_score))


def visit_engagement_score(time_on_site_ms: float, pages_visited: int,
                           scroll_depth: float = 0, clicks: int = 0, mouse_movements: int = 0,
                           policy: LeadPolicy = DEFAULT_LEAD_POLICY) -> float:
    """Engagement of one visit, 0-1: dwell time, page count and activity."""
    activity = (
        _clamp(scroll_depth, 0, 100) / 100
        + min(clicks / policy.clicks_target, 1)
        + min(mouse_movements / policy.mouse_movements_target, 1)
    ) / 3
    score = (
        policy.time_weight * min(time_on_site_ms / policy.time_on_site_target_ms, 1)
        + policy.pages_weight * min(pages_visited / policy.pages_target, 1)
        + policy.activity_weight * activity
    )
    return _clamp(score, 0.0, 1.0)


def lead_score(engagement: float, total_visits: int, time_on_site_ms: float,
               high_value_page_count: int, policy: LeadPolicy = DEFAULT_LEAD_POLICY) -> float:
    """Sales-readiness, 0-1. The visits term only counts for return visitors."""
    visits_term = 0.0
    if total_visits > 1:
        visits_term = policy.lead_visits_weight * min(total_visits / policy.visits_target, 1)
    score = (
        policy.lead_engagement_weight * engagement
        + visits_term
        + policy.lead_time_weight * min(time_on_site_ms / policy.lead_time_target_ms, 1)
        + policy.lead_high_value_weight * min(high_value_page_count / policy.high_value_target, 1)
    )
    return _clamp(score, 0.0, 1.0)


def high_value_pages(pages: Iterable[str]) -> list[str]:
    return [p for p in pages if any(pattern in p for pattern in HIGH_VALUE_PAGE_PATTERNS)]


def high_engagement_pages(pages: Iterable[str]) -> list[str]:
    return [p for p in pages if any(ind in p for ind in ENGAGEMENT_PAGE_INDICATORS)]


def urgency_for(score: float, policy: LeadPolicy = DEFAULT_LEAD_POLICY) -> str:
    if score >= policy.high_urgency_threshold:
        return "high"
    if score >= policy.qualified_threshold:
        return "medium"
    return "low"
