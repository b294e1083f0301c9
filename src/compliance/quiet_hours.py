"""Recipient-local quiet hours, weekend windows and statutory holidays.

Pure evaluation: no I/O, no clock reads. The caller passes ``now`` (UTC)
and the recipient's IANA timezone; unknown or invalid timezones fall back
to the platform default.
"""

from __future__ import annotations

import logging
from datetime import datetime
from zoneinfo import ZoneInfo

from .models import QuietHoursConfig, QuietHoursResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "America/New_York"

# (month, day). Fixed dates only; observed-date shifting is not applied.
FEDERAL_HOLIDAYS: frozenset[tuple[int, int]] = frozenset(
    {
        (1, 1),  # New Year's Day
        (7, 1),  # Canada Day
        (9, 30),  # National Day for Truth and Reconciliation
        (11, 11),  # Remembrance Day
        (12, 25),  # Christmas Day
        (12, 26),  # Boxing Day
    }
)

HOLIDAY_REASON = "Federal holiday - no messages allowed"


def platform_default_config(tenant_id: str, quiet_start: int = 21, quiet_end: int = 10) -> QuietHoursConfig:
    """Config enforced for tenants that never saved their own quiet hours."""
    return QuietHoursConfig(tenant_id=tenant_id, quiet_start_hour=quiet_start, quiet_end_hour=quiet_end)


def in_window(hour: int, start: int, end: int) -> bool:
    """Whether ``hour`` falls in the quiet window ``[start, end)``.

    A window with ``start > end`` wraps midnight. ``start == end`` is empty.
    """
    if start > end:
        return hour >= start or hour < end
    return start <= hour < end


def is_federal_holiday(local: datetime) -> bool:
    return (local.month, local.day) in FEDERAL_HOLIDAYS


class QuietHoursEvaluator:
    """Evaluates a tenant's ``QuietHoursConfig`` against a recipient-local time."""

    def __init__(self, default_timezone: str = DEFAULT_TIMEZONE) -> None:
        self._default_tz = ZoneInfo(default_timezone)

    def resolve_timezone(self, tz_name: str | None) -> ZoneInfo:
        """Recipient timezone, or the platform default when missing or invalid."""
        if not tz_name:
            return self._default_tz
        try:
            return ZoneInfo(tz_name)
        except (KeyError, ValueError):
            logger.warning("Unknown timezone '%s', defaulting to %s", tz_name, self._default_tz.key)
            return self._default_tz

    def evaluate(
        self,
        config: QuietHoursConfig,
        now: datetime,
        recipient_timezone: str | None = None,
    ) -> QuietHoursResult:
        """Decide whether sending is blocked at ``now`` for this recipient.

        Args:
            config: The tenant's quiet-hours configuration.
            now: Current instant (timezone-aware).
            recipient_timezone: IANA timezone of the recipient, if known.

        Returns:
            ``QuietHoursResult`` with ``blocked`` and a human-readable reason.
        """
        if not config.enforce_quiet_hours:
            return QuietHoursResult(blocked=False)

        local = now.astimezone(self.resolve_timezone(recipient_timezone))

        start, end = config.quiet_start_hour, config.quiet_end_hour
        is_weekend = local.weekday() >= 5
        if (
            is_weekend
            and config.weekend_quiet_start_hour is not None
            and config.weekend_quiet_end_hour is not None
        ):
            start, end = config.weekend_quiet_start_hour, config.weekend_quiet_end_hour

        if in_window(local.hour, start, end):
            return QuietHoursResult(
                blocked=True,
                reason=f"Quiet hours ({start:02d}:00 - {end:02d}:00 recipient's local time)",
            )

        if config.respect_federal_holidays and config.holiday_quiet_all_day and is_federal_holiday(local):
            return QuietHoursResult(blocked=True, reason=HOLIDAY_REASON)

        return QuietHoursResult(blocked=False)
