"""Annual donation limit and streak counting.

Both rules are pure: they take a donor's donation history and return a
verdict, so the lifecycle and booking services can apply them the same way.
"""
import calendar
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from donorstreak.models import counts_toward_limit, is_streak

ANNUAL_LIMIT = 4


@dataclass(frozen=True)
class LimitDecision:
    allowed: bool
    year: int
    counted: int
    reason: str = None
    retry_after: timedelta = None
    # "3 months, 2 days" style countdown to January 1st of the next year
    retry_message: str = None


def year_bounds(year):
    """First and last calendar day of ``year``."""
    return date(year, 1, 1), date(year, 12, 31)


def donations_in_year(donor_id, year, donations):
    start, end = year_bounds(year)
    return [d for d in donations
            if d.donor_id == donor_id and counts_toward_limit(d) and start <= d.date <= end]


def _add_months(moment, months):
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def countdown_parts(now, target):
    """Split ``target - now`` into calendar months, days, hours and minutes."""
    if target <= now:
        return 0, 0, 0, 0
    months = (target.year - now.year) * 12 + target.month - now.month
    while months > 0 and _add_months(now, months) > target:
        months -= 1
    rest = target - _add_months(now, months)
    hours, seconds = divmod(rest.seconds, 3600)
    return months, rest.days, hours, seconds // 60


def _plural(count, unit):
    return f"{count} {unit}{'' if count == 1 else 's'}"


def format_countdown(now, target):
    months, days, hours, minutes = countdown_parts(now, target)
    parts = [_plural(value, unit)
             for value, unit in ((months, 'month'), (days, 'day'), (hours, 'hour'), (minutes, 'minute'))
             if value > 0]
    return ', '.join(parts) if parts else 'less than a minute'


def retry_message(year, now):
    return format_countdown(now, datetime(year + 1, 1, 1))


def limit_message(year, now, limit=ANNUAL_LIMIT):
    return (f"You have donated {limit} times in {year}. "
            f"You can donate again in {retry_message(year, now)} on January 1st, {year + 1}.")


def can_accept_donation(donor_id, candidate_date, existing_donations, now=None, limit=ANNUAL_LIMIT):
    """Would one more counted donation dated ``candidate_date`` stay within the cap?"""
    now = now or datetime.now()
    year = candidate_date.year
    counted = len(donations_in_year(donor_id, year, existing_donations))
    if counted < limit:
        return LimitDecision(allowed=True, year=year, counted=counted)
    reopens = datetime(year + 1, 1, 1)
    return LimitDecision(
        allowed=False,
        year=year,
        counted=counted,
        reason=limit_message(year, now, limit),
        retry_after=max(reopens - now, timedelta(0)),
        retry_message=retry_message(year, now),
    )


def available_streaks(donor_id, donations):
    """Approved donations not yet spent on an appointment."""
    return sum(1 for d in donations if d.donor_id == donor_id and is_streak(d))


def streak_order(donations):
    """Oldest donation first; the id breaks ties so the pick is stable."""
    return sorted(donations, key=lambda d: (d.date, d.id))
