"""
Usage Analytics - Aggregated views over the token usage log.

The rollup functions are pure: they take already-loaded events and group
them in memory. UsageAnalyticsService loads the events for a scope and
assembles the response models.
"""

from collections import defaultdict
from collections.abc import Iterable, Sequence
from datetime import UTC, date, datetime, timedelta
from typing import Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.models import (
    Organization,
    Team,
    TokenUsageEvent,
    UserProfile,
    UserTeamMembership,
)
from app.exceptions import ScopeNotFoundError
from app.models.api import (
    DailyUsage,
    OrganizationSummary,
    OrganizationUsageBreakdown,
    OrganizationUsageResponse,
    OrgRole,
    PeriodTotals,
    TeamMemberUsageItem,
    TeamRole,
    TeamSummary,
    TeamUsageBreakdown,
    TeamUsageItem,
    TeamUsageResponse,
    TopUserItem,
    UsageEventItem,
    UsageHistoryResponse,
    UsageTrendPoint,
)
from app.observability import get_logger

logger = get_logger(__name__)


class UsageRecord(Protocol):
    """The event fields the rollups read."""

    user_id: UUID
    team_id: UUID | None
    tokens_used: int
    feature_used: str
    model_used: str | None
    created_at: datetime


def _day(event: UsageRecord) -> str:
    return event.created_at.astimezone(UTC).date().isoformat()


def total_tokens(events: Iterable[UsageRecord]) -> int:
    return sum(event.tokens_used for event in events)


def unique_users(events: Iterable[UsageRecord]) -> int:
    return len({event.user_id for event in events})


def daily_breakdown(events: Iterable[UsageRecord]) -> dict[str, DailyUsage]:
    """Tokens per UTC calendar day, each day split by feature."""
    days: dict[str, DailyUsage] = {}
    for event in events:
        day = days.setdefault(_day(event), DailyUsage())
        day.total += event.tokens_used
        day.features[event.feature_used] = (
            day.features.get(event.feature_used, 0) + event.tokens_used
        )
    return days


def daily_totals(events: Iterable[UsageRecord]) -> dict[str, int]:
    totals: dict[str, int] = defaultdict(int)
    for event in events:
        totals[_day(event)] += event.tokens_used
    return dict(totals)


def totals_by_feature(events: Iterable[UsageRecord]) -> dict[str, int]:
    totals: dict[str, int] = defaultdict(int)
    for event in events:
        totals[event.feature_used] += event.tokens_used
    return dict(totals)


def totals_by_model(events: Iterable[UsageRecord], default_model: str) -> dict[str, int]:
    """Tokens per model; events without a model count toward default_model."""
    totals: dict[str, int] = defaultdict(int)
    for event in events:
        totals[event.model_used or default_model] += event.tokens_used
    return dict(totals)


def totals_by_user(events: Iterable[UsageRecord]) -> dict[UUID, int]:
    totals: dict[UUID, int] = defaultdict(int)
    for event in events:
        totals[event.user_id] += event.tokens_used
    return dict(totals)


def top_users(events: Sequence[UsageRecord], limit: int) -> list[TopUserItem]:
    """Heaviest users by tokens, ties broken by request count."""
    tokens: dict[UUID, int] = defaultdict(int)
    requests: dict[UUID, int] = defaultdict(int)
    for event in events:
        tokens[event.user_id] += event.tokens_used
        requests[event.user_id] += 1

    ranked = sorted(tokens, key=lambda user_id: (tokens[user_id], requests[user_id]), reverse=True)
    return [
        TopUserItem(user_id=user_id, tokens_used=tokens[user_id], api_requests=requests[user_id])
        for user_id in ranked[:limit]
    ]


def usage_trend(events: Iterable[UsageRecord], days: int, today: date) -> list[UsageTrendPoint]:
    """Zero-filled daily tokens for the last `days` days ending today, oldest first."""
    per_day = daily_totals(events)
    points = []
    for offset in range(days - 1, -1, -1):
        day = (today - timedelta(days=offset)).isoformat()
        points.append(UsageTrendPoint(date=day, tokens=per_day.get(day, 0)))
    return points


def team_usage(team: Team, events: Sequence[UsageRecord]) -> TeamUsageItem:
    """One team's line in the organization report."""
    team_events = [event for event in events if event.team_id == team.id]
    used = total_tokens(team_events)
    percentage = used / team.token_limit * 100 if team.token_limit > 0 else 0.0
    return TeamUsageItem(
        team_id=team.id,
        team_name=team.name,
        team_slug=team.slug,
        token_limit=team.token_limit,
        tokens_used=used,
        usage_percentage=round(percentage, 2),
        active_users=unique_users(team_events),
        api_requests=len(team_events),
    )


def month_window(now: datetime) -> tuple[datetime, datetime]:
    """First and last instant of now's calendar month (UTC)."""
    now = now.astimezone(UTC)
    start = datetime(now.year, now.month, 1, tzinfo=UTC)
    if now.month == 12:
        next_start = datetime(now.year + 1, 1, 1, tzinfo=UTC)
    else:
        next_start = datetime(now.year, now.month + 1, 1, tzinfo=UTC)
    return start, next_start - timedelta(microseconds=1)


def _event_to_item(event: TokenUsageEvent) -> UsageEventItem:
    return UsageEventItem(
        event_id=event.id,
        endpoint=event.endpoint,
        tokens_used=event.tokens_used,
        model_used=event.model_used,
        feature_used=event.feature_used,
        request_id=event.request_id,
        team_id=event.team_id,
        organization_id=event.organization_id,
        created_at=event.created_at.isoformat(),
    )


def _period_totals(
    events: Sequence[UsageRecord], start: datetime, end: datetime, with_users: bool
) -> PeriodTotals:
    return PeriodTotals(
        total_tokens=total_tokens(events),
        total_events=len(events),
        unique_users=unique_users(events) if with_users else None,
        period_start=start.isoformat(),
        period_end=end.isoformat(),
    )


class UsageAnalyticsService:
    """Read-only usage reports for a user, an organization or a team."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_usage_history(self, user_id: UUID, days: int, limit: int) -> UsageHistoryResponse:
        """
        A user's recent events with rollups.

        Up to `limit` newest events from the last `days` days are aggregated;
        only the newest few are returned verbatim.
        """
        since = datetime.now(UTC) - timedelta(days=days)
        events = await self._find_user_events(user_id, since, limit)

        return UsageHistoryResponse(
            total_events=len(events),
            total_tokens=total_tokens(events),
            daily_usage=daily_breakdown(events),
            feature_breakdown=totals_by_feature(events),
            model_breakdown=totals_by_model(events, settings.default_model),
            raw_events=[_event_to_item(e) for e in events[: settings.history_raw_event_limit]],
        )

    async def get_organization_usage(
        self, organization_id: UUID, user_role: OrgRole, now: datetime | None = None
    ) -> OrganizationUsageResponse:
        """Current-month organization rollup. Raises ScopeNotFoundError for unknown orgs."""
        now = now or datetime.now(UTC)
        organization = await self.session.get(Organization, organization_id)
        if organization is None:
            raise ScopeNotFoundError("organization", organization_id)

        start, end = month_window(now)
        events = await self._find_scope_events(
            TokenUsageEvent.organization_id == organization_id, start, end
        )
        teams = await self._find_teams(organization_id)

        logger.info(
            "organization_usage_reported",
            organization_id=str(organization_id),
            event_count=len(events),
            team_count=len(teams),
        )
        return OrganizationUsageResponse(
            organization=OrganizationSummary(
                id=organization.id, name=organization.name, token_limit=organization.token_limit
            ),
            usage=OrganizationUsageBreakdown(
                current_month=_period_totals(events, start, end, with_users=True),
                feature_breakdown=totals_by_feature(events),
                daily_usage=daily_totals(events),
                usage_trend=usage_trend(events, settings.usage_trend_days, now.date()),
                team_breakdown=[team_usage(team, events) for team in teams],
                top_users=top_users(events, settings.top_users_limit),
            ),
            teams_count=len(teams),
            user_role=user_role,
        )

    async def get_team_usage(
        self, team_id: UUID, user_role: TeamRole, now: datetime | None = None
    ) -> TeamUsageResponse:
        """Current-month team rollup with per-member totals."""
        now = now or datetime.now(UTC)
        team = await self.session.get(Team, team_id)
        if team is None:
            raise ScopeNotFoundError("team", team_id)

        start, end = month_window(now)
        events = await self._find_scope_events(TokenUsageEvent.team_id == team_id, start, end)
        per_user = totals_by_user(events)
        members = await self._find_team_members(team_id)

        return TeamUsageResponse(
            team=TeamSummary(id=team.id, name=team.name, organization_id=team.organization_id),
            usage=TeamUsageBreakdown(
                current_month=_period_totals(events, start, end, with_users=False),
                feature_breakdown=totals_by_feature(events),
                daily_usage=daily_totals(events),
                members=[
                    TeamMemberUsageItem(
                        user_id=membership.user_id,
                        full_name=full_name,
                        team_role=TeamRole(membership.team_role),
                        tokens_used=per_user.get(membership.user_id, 0),
                    )
                    for membership, full_name in members
                ],
            ),
            user_role=user_role,
        )

    async def _find_user_events(
        self, user_id: UUID, since: datetime, limit: int
    ) -> list[TokenUsageEvent]:
        stmt = (
            select(TokenUsageEvent)
            .where(TokenUsageEvent.user_id == user_id, TokenUsageEvent.created_at >= since)
            .order_by(TokenUsageEvent.created_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def _find_scope_events(
        self, scope_filter, start: datetime, end: datetime
    ) -> list[TokenUsageEvent]:
        stmt = select(TokenUsageEvent).where(
            scope_filter,
            TokenUsageEvent.created_at >= start,
            TokenUsageEvent.created_at <= end,
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def _find_teams(self, organization_id: UUID) -> list[Team]:
        stmt = select(Team).where(Team.organization_id == organization_id).order_by(Team.name)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def _find_team_members(
        self, team_id: UUID
    ) -> list[tuple[UserTeamMembership, str | None]]:
        stmt = (
            select(UserTeamMembership, UserProfile.full_name)
            .outerjoin(UserProfile, UserProfile.id == UserTeamMembership.user_id)
            .where(UserTeamMembership.team_id == team_id)
            .order_by(UserTeamMembership.created_at)
        )
        result = await self.session.execute(stmt)
        return [(row[0], row[1]) for row in result.all()]
