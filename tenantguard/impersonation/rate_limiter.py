"""Per-super-admin impersonation rate limiting.

Three caps are evaluated against the authoritative session log on every
check: sessions started in the trailing hour, currently open sessions,
and the elapsed minutes of the longest open session. If usage cannot be
determined the check fails closed.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog

from tenantguard.auth.policy import is_super_admin
from tenantguard.exceptions import NotFoundError, RateLimitExceededError, UnauthorizedError
from tenantguard.models.domain import (
    ImpersonationSession,
    OperationValidation,
    RateLimitCheckResult,
    RateLimitConfig,
    RateLimitConfigUpdate,
    RateLimitLimits,
    RateLimitStatus,
    RateLimitUsage,
    RemainingCapacity,
    UsagePercentage,
    utc_now,
)
from tenantguard.types import LimitType

if TYPE_CHECKING:
    from tenantguard.auth.context import Principal
    from tenantguard.impersonation.stores import ConfigStore, SessionStore

logger = structlog.get_logger(__name__)

WINDOW = timedelta(hours=1)
USAGE_UNAVAILABLE = "Rate limit status unavailable; impersonation blocked"


@dataclass(slots=True)
class _Usage:
    this_hour: int
    concurrent: int
    longest_seconds: int
    window_sessions: list[ImpersonationSession]

    @property
    def longest_minutes(self) -> int:
        return self.longest_seconds // 60


class ImpersonationRateLimiter:
    """Bounds how often and how long each super-admin may impersonate."""

    def __init__(
        self,
        sessions: SessionStore,
        config_store: ConfigStore,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._sessions = sessions
        self._config_store = config_store
        self._clock = clock
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # -- configuration -----------------------------------------------------

    async def get_configuration(self) -> RateLimitConfig:
        return await self._config_store.load()

    async def update_configuration(
        self, principal: Principal | None, update: RateLimitConfigUpdate
    ) -> RateLimitConfig:
        self._require_super_admin(principal, "update_configuration")
        current = await self._config_store.load()
        changes = update.model_dump(exclude_none=True)
        merged = RateLimitConfig.model_validate(
            {**current.model_dump(), **changes, "updated_at": self._clock()}
        )
        saved = await self._config_store.save(merged)
        logger.info(
            "rate_limit_config_updated",
            updated_by=principal.id if principal else None,
            changes=changes,
        )
        return saved

    # -- checks ------------------------------------------------------------

    async def check_rate_limit(self, super_admin_id: str) -> RateLimitCheckResult:
        try:
            config = await self._config_store.load()
            usage = await self._usage(super_admin_id)
        except Exception:
            logger.exception("rate_limit_usage_unavailable", super_admin_id=super_admin_id)
            return self._fail_closed()
        return self._evaluate(config, usage)

    async def validate_operation(self, super_admin_id: str) -> OperationValidation:
        """Presentation adapter over ``check_rate_limit``; decides nothing itself."""
        check = await self.check_rate_limit(super_admin_id)
        usage, limits = check.current_usage, check.limits
        percentages = UsagePercentage(
            hourly=round(usage.impersonations_this_hour / limits.max_per_hour * 100),
            concurrent=round(usage.concurrent_sessions / limits.max_concurrent * 100),
            duration=round(usage.longest_session_minutes / limits.max_duration_minutes * 100),
        )
        return OperationValidation(
            can_proceed=check.allowed,
            message=(
                "Rate limit check passed"
                if check.allowed
                else check.reason or "Rate limit exceeded"
            ),
            limit_type=check.limit_type,
            usage_percentage=percentages,
        )

    async def is_rate_limited(self, super_admin_id: str) -> bool:
        return not (await self.check_rate_limit(super_admin_id)).allowed

    async def get_status(self, super_admin_id: str) -> RateLimitStatus:
        now = self._clock()
        try:
            config = await self._config_store.load()
            usage = await self._usage(super_admin_id)
        except Exception:
            logger.exception("rate_limit_usage_unavailable", super_admin_id=super_admin_id)
            return RateLimitStatus(
                super_admin_id=super_admin_id,
                impersonations_this_hour=0,
                concurrent_session_count=0,
                longest_session_duration_seconds=0,
                config_id="unknown",
                is_rate_limited=True,
                rate_limit_reason=USAGE_UNAVAILABLE,
                reset_at=now,
                checked_at=now,
            )
        check = self._evaluate(config, usage)
        return RateLimitStatus(
            super_admin_id=super_admin_id,
            impersonations_this_hour=usage.this_hour,
            concurrent_session_count=usage.concurrent,
            longest_session_duration_seconds=usage.longest_seconds,
            config_id=config.id,
            is_rate_limited=not check.allowed,
            rate_limit_reason=check.reason,
            reset_at=self._reset_at(usage, now),
            checked_at=now,
        )

    async def get_remaining_capacity(self, super_admin_id: str) -> dict[str, Any]:
        check = await self.check_rate_limit(super_admin_id)
        status = await self.get_status(super_admin_id)
        return {
            "remaining_impersonations": check.remaining_capacity.impersonations,
            "remaining_concurrent_slots": check.remaining_capacity.concurrent_slots,
            "reset_at": status.reset_at,
        }

    async def get_usage_stats(self, super_admin_id: str) -> dict[str, Any]:
        check = await self.check_rate_limit(super_admin_id)
        return {
            **check.current_usage.model_dump(),
            **check.limits.model_dump(),
            "is_rate_limited": not check.allowed,
        }

    # -- sessions ----------------------------------------------------------

    async def start_session(
        self,
        super_admin_id: str,
        impersonated_user_id: str,
        tenant_id: str,
        reason: str | None = None,
    ) -> ImpersonationSession:
        """Open a session; raises ``RateLimitExceededError`` when any cap is reached.

        The check and the insert run under one per-super-admin lock so two
        concurrent starts cannot both pass the check.
        """
        async with self._locks[super_admin_id]:
            check = await self.check_rate_limit(super_admin_id)
            if not check.allowed:
                logger.warning(
                    "impersonation_rate_limited",
                    super_admin_id=super_admin_id,
                    limit_type=str(check.limit_type) if check.limit_type else None,
                    reason=check.reason,
                )
                raise RateLimitExceededError(
                    check.reason or "Rate limit exceeded",
                    str(check.limit_type) if check.limit_type else None,
                )
            session = await self._sessions.add(
                super_admin_id, impersonated_user_id, tenant_id, self._clock(), reason
            )
        logger.info(
            "impersonation_session_started",
            session_id=session.id,
            super_admin_id=super_admin_id,
            impersonated_user_id=impersonated_user_id,
            tenant_id=tenant_id,
        )
        return session

    async def end_session(self, session_id: str) -> ImpersonationSession:
        session = await self._sessions.close(session_id, self._clock())
        if session is None:
            raise NotFoundError("impersonation_session", session_id)
        config = await self._config_store.load()
        ended_at = session.ended_at or self._clock()
        minutes = int((ended_at - session.started_at).total_seconds()) // 60
        if minutes > config.max_duration_minutes:
            logger.warning(
                "impersonation_session_overlong",
                session_id=session_id,
                super_admin_id=session.super_admin_id,
                duration_minutes=minutes,
                max_duration_minutes=config.max_duration_minutes,
            )
        logger.info(
            "impersonation_session_ended",
            session_id=session_id,
            super_admin_id=session.super_admin_id,
        )
        return session

    async def get_session(self, session_id: str) -> ImpersonationSession | None:
        return await self._sessions.get(session_id)

    async def get_active_sessions(self, super_admin_id: str | None = None) -> list[dict[str, Any]]:
        """Open sessions with their elapsed time, oldest first."""
        now = self._clock()
        return [
            {
                **session.model_dump(),
                "elapsed_seconds": max(0, int((now - session.started_at).total_seconds())),
            }
            for session in await self._sessions.active(super_admin_id)
        ]

    async def reset_limit_quota(
        self, principal: Principal | None, super_admin_id: str | None = None
    ) -> None:
        """Forget hourly usage for one super-admin, or for everyone.

        Open sessions stay open and keep counting against the concurrency
        and duration caps. The session log itself is not modified.
        """
        self._require_super_admin(principal, "reset_limit_quota")
        await self._sessions.mark_quota_reset(super_admin_id, self._clock(), principal.id)
        logger.info(
            "impersonation_quota_reset",
            reset_by=principal.id,
            super_admin_id=super_admin_id or "all",
        )

    # -- internals ---------------------------------------------------------

    def _require_super_admin(self, principal: Principal | None, action: str) -> None:
        if not is_super_admin(principal):
            logger.warning(
                "rate_limit_admin_denied",
                action=action,
                user_id=principal.id if principal else None,
            )
            raise UnauthorizedError("Super admin access required")

    async def _usage(self, super_admin_id: str) -> _Usage:
        now = self._clock()
        window_start = now - WINDOW
        reset_at = await self._sessions.quota_reset_at(super_admin_id)
        if reset_at is not None and reset_at > window_start:
            window_start = reset_at

        window = await self._sessions.started_since(super_admin_id, window_start)
        active = await self._sessions.active(super_admin_id)
        longest = 0
        for session in active:
            elapsed = max(0, int((now - session.started_at).total_seconds()))
            longest = max(longest, elapsed)
        return _Usage(
            this_hour=len(window),
            concurrent=len(active),
            longest_seconds=longest,
            window_sessions=window,
        )

    @staticmethod
    def _evaluate(config: RateLimitConfig, usage: _Usage) -> RateLimitCheckResult:
        limits = RateLimitLimits(
            max_per_hour=config.max_per_hour,
            max_concurrent=config.max_concurrent,
            max_duration_minutes=config.max_duration_minutes,
        )
        current = RateLimitUsage(
            impersonations_this_hour=usage.this_hour,
            concurrent_sessions=usage.concurrent,
            longest_session_minutes=usage.longest_minutes,
        )
        if config.enabled:
            remaining = RemainingCapacity(
                impersonations=max(0, config.max_per_hour - usage.this_hour),
                concurrent_slots=max(0, config.max_concurrent - usage.concurrent),
            )
        else:
            remaining = RemainingCapacity(
                impersonations=config.max_per_hour, concurrent_slots=config.max_concurrent
            )

        limit_type: LimitType | None = None
        reason: str | None = None
        if config.enabled:
            if usage.this_hour >= config.max_per_hour:
                limit_type = LimitType.HOURLY
                reason = (
                    f"Rate limit exceeded: {usage.this_hour}/{config.max_per_hour} "
                    "impersonations in last hour"
                )
            elif usage.concurrent >= config.max_concurrent:
                limit_type = LimitType.CONCURRENT
                reason = (
                    f"Concurrent session limit exceeded: {usage.concurrent}/"
                    f"{config.max_concurrent} active sessions"
                )
            elif usage.longest_minutes >= config.max_duration_minutes:
                limit_type = LimitType.DURATION
                reason = (
                    f"Session duration limit exceeded: {usage.longest_minutes}/"
                    f"{config.max_duration_minutes} minutes"
                )

        return RateLimitCheckResult(
            allowed=limit_type is None,
            reason=reason,
            limit_type=limit_type,
            current_usage=current,
            limits=limits,
            remaining_capacity=remaining,
        )

    @staticmethod
    def _fail_closed() -> RateLimitCheckResult:
        defaults = RateLimitConfig()
        return RateLimitCheckResult(
            allowed=False,
            reason=USAGE_UNAVAILABLE,
            current_usage=RateLimitUsage(),
            limits=RateLimitLimits(
                max_per_hour=defaults.max_per_hour,
                max_concurrent=defaults.max_concurrent,
                max_duration_minutes=defaults.max_duration_minutes,
            ),
            remaining_capacity=RemainingCapacity(impersonations=0, concurrent_slots=0),
        )

    @staticmethod
    def _reset_at(usage: _Usage, now: datetime) -> datetime:
        """When the oldest session in the window stops counting."""
        if not usage.window_sessions:
            return now
        return usage.window_sessions[0].started_at + WINDOW
