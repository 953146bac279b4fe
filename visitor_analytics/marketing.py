"""Marketing intelligence: cumulative visitor profiles and lead qualification.

One MarketingIntelligence instance is owned by whoever serves ingestion (the
Flask app factory, the CLI) and passed to the code that needs it. Profile
updates for one address run under that address's lock, so concurrent beacon
calls fold into the profile instead of overwriting each other.
"""

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo

from visitor_analytics.locks import KeyedLock
from visitor_analytics.models import LeadQualification, TimeBasedPatterns, TrackingEvent, VisitorProfile
from visitor_analytics.scoring import (
    DEFAULT_LEAD_POLICY,
    LeadPolicy,
    high_engagement_pages,
    high_value_pages,
    lead_score,
    urgency_for,
    visit_engagement_score,
)

logger = logging.getLogger(__name__)

# page path -> conversion event name
CONVERSION_PAGES = {
    "/contact": "contact_page_visited",
    "/services": "services_page_visited",
    "/projects": "portfolio_viewed",
}


@dataclass
class SessionActivity:
    """Everything one visit contributed, folded into a VisitorProfile."""

    address: str
    session_id: str
    pages: list[str] = field(default_factory=list)
    time_on_site_ms: float = 0.0
    scroll_depth: float = 0.0
    clicks: int = 0
    mouse_movements: int = 0
    scroll_events: int = 0
    device_signature: str = ""
    visit_time: datetime | None = None
    last_seen: datetime | None = None

    @classmethod
    def start(cls, event: TrackingEvent, session_id: str | None = None) -> "SessionActivity":
        info = event.device_info
        return cls(
            address=event.address,
            session_id=session_id or event.session_id,
            device_signature=f"{info.browser}/{info.device_type}",
            visit_time=event.timestamp,
        )

    def add_event(self, event: TrackingEvent) -> None:
        if self.address == "unknown":
            self.address = event.address
        self.pages.append(event.page_path)
        self.time_on_site_ms += event.time_on_page_ms or 0
        if event.scroll_depth_percent is not None:
            self.scroll_depth = max(self.scroll_depth, event.scroll_depth_percent)
        if event.engagement is not None:
            self.clicks += event.engagement.clicks
            self.mouse_movements += event.engagement.mouse_movements
            self.scroll_events += event.engagement.scroll_events
        self.last_seen = event.timestamp


@dataclass
class SalesIntelligence:
    high_value_visitors: list[VisitorProfile] = field(default_factory=list)
    conversion_opportunities: list[dict] = field(default_factory=list)
    market_insights: dict = field(default_factory=dict)


def _union(existing: list[str], new: list[str]) -> list[str]:
    result = list(existing)
    for item in new:
        if item not in result:
            result.append(item)
    return result


class MarketingIntelligence:
    def __init__(self, policy: LeadPolicy = DEFAULT_LEAD_POLICY,
                 tz: tzinfo = timezone.utc, locks: KeyedLock | None = None):
        self._policy = policy
        self._tz = tz
        self._locks = locks or KeyedLock()
        self._profiles: dict[str, VisitorProfile] = {}

    def update_visitor_profile(self, activity: SessionActivity) -> VisitorProfile:
        """Fold one session into the address's profile and return a snapshot."""
        visit_time = (activity.visit_time or datetime.now(self._tz)).astimezone(self._tz)
        pages = list(dict.fromkeys(activity.pages))

        engagement = visit_engagement_score(
            activity.time_on_site_ms, len(pages), activity.scroll_depth,
            activity.clicks, activity.mouse_movements, self._policy,
        )

        with self._locks.hold(activity.address):
            profile = self._profiles.get(activity.address)
            if profile is None:
                profile = VisitorProfile(
                    address=activity.address,
                    session_id=activity.session_id,
                    first_visit=visit_time,
                    last_visit=visit_time,
                    time_based_patterns=TimeBasedPatterns(
                        average_session_duration_ms=activity.time_on_site_ms,
                    ),
                )
                self._profiles[activity.address] = profile
                returning = False
            else:
                returning = True

            profile.total_visits += 1
            n = profile.total_visits
            profile.session_id = activity.session_id
            profile.first_visit = min(profile.first_visit, visit_time)
            profile.last_visit = max(profile.last_visit, visit_time)
            profile.total_time_on_site_ms += activity.time_on_site_ms
            profile.pages_visited = _union(profile.pages_visited, pages)
            profile.high_engagement_pages = _union(
                profile.high_engagement_pages, high_engagement_pages(pages)
            )
            profile.conversion_events = _union(
                profile.conversion_events,
                [event for page, event in CONVERSION_PAGES.items() if page in pages],
            )
            if activity.device_signature:
                profile.device_signatures = _union(
                    profile.device_signatures, [activity.device_signature]
                )
            profile.device_consistency = returning and len(profile.device_signatures) <= 1

            patterns = profile.time_based_patterns
            if returning:
                patterns.average_session_duration_ms = (
                    patterns.average_session_duration_ms * (n - 1) + activity.time_on_site_ms
                ) / n
            patterns.return_visitor = returning
            if visit_time.hour not in patterns.preferred_visit_hours:
                patterns.preferred_visit_hours.append(visit_time.hour)

            profile.engagement_score = engagement
            profile.lead_score = lead_score(
                engagement, n, activity.time_on_site_ms,
                len(high_value_pages(pages)), self._policy,
            )
            snapshot = copy.deepcopy(profile)

        logger.debug("Profile %s: visits=%d lead=%.2f", activity.address, n, snapshot.lead_score)
        return snapshot

    def get_visitor_profile(self, address: str) -> VisitorProfile | None:
        with self._locks.hold(address):
            profile = self._profiles.get(address)
            return copy.deepcopy(profile) if profile is not None else None

    def get_visitor_profiles(self) -> list[VisitorProfile]:
        profiles = []
        for address in list(self._profiles):
            profile = self.get_visitor_profile(address)
            if profile is not None:
                profiles.append(profile)
        return profiles

    def qualify_lead(self, address: str) -> LeadQualification:
        profile = self.get_visitor_profile(address)
        if profile is None:
            return LeadQualification(
                is_qualified=False,
                lead_score=0.0,
                qualification_reason="No visitor profile found",
                recommended_action="Continue monitoring",
                urgency="low",
                next_best_action="Wait for more engagement",
            )
        return LeadQualification(
            is_qualified=profile.lead_score >= self._policy.qualified_threshold,
            lead_score=profile.lead_score,
            qualification_reason=self._qualification_reason(profile),
            recommended_action=self._recommended_action(profile),
            urgency=urgency_for(profile.lead_score, self._policy),
            next_best_action=self._next_best_action(profile),
        )

    def _qualification_reason(self, profile: VisitorProfile) -> str:
        reasons = []
        if profile.engagement_score > self._policy.high_engagement_threshold:
            reasons.append("High engagement")
        if profile.total_visits > 2:
            reasons.append("Return visitor")
        if profile.high_engagement_pages:
            reasons.append("Viewed key pages")
        if profile.conversion_events:
            reasons.append("Conversion events triggered")
        return ", ".join(reasons) or "Limited engagement"

    @staticmethod
    def _recommended_action(profile: VisitorProfile) -> str:
        if "contact_page_visited" in profile.conversion_events:
            return "Follow up on contact form submission"
        if "/services" in profile.high_engagement_pages:
            return "Send personalized service proposal"
        if "/projects" in profile.high_engagement_pages:
            return "Share relevant case studies"
        return "Send welcome email with value proposition"

    @staticmethod
    def _next_best_action(profile: VisitorProfile) -> str:
        if "contact_page_visited" not in profile.conversion_events:
            return "Encourage contact page visit"
        if "/services" not in profile.high_engagement_pages:
            return "Direct to services page"
        if "/projects" not in profile.high_engagement_pages:
            return "Showcase portfolio"
        return "Maintain relationship with regular updates"

    @staticmethod
    def _conversion_opportunity(profile: VisitorProfile) -> str:
        if "contact_page_visited" not in profile.conversion_events:
            return "Contact page conversion"
        if "/services" not in profile.high_engagement_pages:
            return "Service interest qualification"
        if "/projects" not in profile.high_engagement_pages:
            return "Portfolio engagement"
        return "General engagement improvement"

    def generate_sales_intelligence(self) -> SalesIntelligence:
        profiles = self.get_visitor_profiles()
        qualified = self._policy.qualified_threshold
        opportunity = self._policy.opportunity_threshold

        page_visits: dict[str, int] = {}
        journeys: dict[tuple[str, ...], int] = {}
        devices: dict[str, int] = {}
        hours: dict[str, int] = {}
        for profile in profiles:
            for page in profile.pages_visited:
                page_visits[page] = page_visits.get(page, 0) + 1
            journey = tuple(profile.pages_visited)
            journeys[journey] = journeys.get(journey, 0) + 1
            for signature in profile.device_signatures:
                device = signature.rsplit("/", 1)[-1]
                devices[device] = devices.get(device, 0) + 1
            for hour in profile.time_based_patterns.preferred_visit_hours:
                key = f"{hour}:00"
                hours[key] = hours.get(key, 0) + 1

        top_pages = sorted(page_visits.items(), key=lambda kv: kv[1], reverse=True)[:5]
        top_journeys = sorted(journeys.items(), key=lambda kv: kv[1], reverse=True)[:3]

        return SalesIntelligence(
            high_value_visitors=[p for p in profiles if p.lead_score >= qualified],
            conversion_opportunities=[
                {
                    "visitor": p,
                    "opportunity": self._conversion_opportunity(p),
                    "confidence": p.lead_score,
                }
                for p in profiles
                if opportunity <= p.lead_score < qualified
            ],
            market_insights={
                "top_performing_pages": [page for page, _ in top_pages],
                "common_user_journeys": [list(j) for j, _ in top_journeys],
                "device_preferences": devices,
                "time_based_trends": hours,
            },
        )


class LiveSessionTracker:
    """Accumulates in-flight sessions from ingested events.

    A session completes on its ``session_end`` event, when its id resumes
    after more than the inactivity timeout, or when ``flush_idle(now)`` finds
    it idle. Completed activities are returned for folding into profiles.
    """

    def __init__(self, timeout_minutes: int = 30, locks: KeyedLock | None = None):
        self._timeout = timedelta(minutes=timeout_minutes)
        self._locks = locks or KeyedLock()
        self._open: dict[str, SessionActivity] = {}

    def __len__(self) -> int:
        return len(self._open)

    def observe(self, event: TrackingEvent) -> list[SessionActivity]:
        completed = []
        with self._locks.hold(event.session_id):
            activity = self._open.get(event.session_id)
            if activity is not None and event.timestamp - activity.last_seen > self._timeout:
                completed.append(self._open.pop(event.session_id))
                activity = None
            if activity is None:
                activity = SessionActivity.start(event)
                self._open[event.session_id] = activity
            activity.add_event(event)
            if event.event_type == "session_end":
                completed.append(self._open.pop(event.session_id))
        return completed

    def flush_idle(self, now: datetime | None = None) -> list[SessionActivity]:
        """Remove and return sessions idle for longer than the timeout."""
        now = now or datetime.now(timezone.utc)
        completed = []
        for session_id in list(self._open):
            with self._locks.hold(session_id):
                activity = self._open.get(session_id)
                if activity is not None and now - activity.last_seen > self._timeout:
                    completed.append(self._open.pop(session_id))
        return completed
