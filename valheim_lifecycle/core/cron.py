"""Five-field cron expressions parsed once into a next-fire-time function."""

from datetime import datetime, timedelta

from valheim_lifecycle.core.errors import ConfigError

_MACROS = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}
_MONTH_NAMES = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}
_DAY_NAMES = {"sun": 0, "mon": 1, "tue": 2, "wed": 3, "thu": 4, "fri": 5, "sat": 6}
_FIELDS = (
    ("minute", 0, 59, None),
    ("hour", 0, 23, None),
    ("day-of-month", 1, 31, None),
    ("month", 1, 12, _MONTH_NAMES),
    ("day-of-week", 0, 7, _DAY_NAMES),
)
# Bound for the next-fire search; anything sparser than this never fires.
_SEARCH_LIMIT = timedelta(days=366 * 5)


def _parse_value(token, field, names):
    """Parse one numeric or named field value."""
    lowered = token.strip().lower()
    if names and lowered in names:
        return names[lowered]
    try:
        return int(lowered)
    except ValueError:
        raise ConfigError(f"invalid {field} value {token!r}") from None


def _parse_field(text, field, low, high, names):
    """Expand one cron field into the set of values it allows."""
    values = set()
    for part in text.split(","):
        if not part:
            raise ConfigError(f"empty element in {field} field {text!r}")
        step = 1
        base = part
        if "/" in part:
            base, step_text = part.split("/", 1)
            try:
                step = int(step_text)
            except ValueError:
                raise ConfigError(f"invalid {field} step {step_text!r}") from None
            if step < 1:
                raise ConfigError(f"{field} step must be positive, got {step}")
        if base == "*":
            start, end = low, high
        elif "-" in base:
            first, last = base.split("-", 1)
            start = _parse_value(first, field, names)
            end = _parse_value(last, field, names)
        else:
            start = _parse_value(base, field, names)
            end = high if "/" in part else start
        if start < low or end > high or start > end:
            raise ConfigError(f"{field} range {part!r} outside {low}-{high}")
        values.update(range(start, end + 1, step))
    return frozenset(values)


class CronSchedule:
    """Parsed cron expression evaluated against wall-clock datetimes."""

    def __init__(self, expression, minutes, hours, days, months, weekdays, dom_wild, dow_wild):
        self.expression = expression
        self.minutes = minutes
        self.hours = hours
        self.days = days
        self.months = months
        self.weekdays = weekdays
        self.dom_wild = dom_wild
        self.dow_wild = dow_wild

    @classmethod
    def parse(cls, expression):
        """Parse ``expression`` or raise ``ConfigError``."""
        text = " ".join(str(expression or "").split())
        if not text:
            raise ConfigError("cron expression is empty")
        expanded = _MACROS.get(text.lower(), text)
        parts = expanded.split(" ")
        if len(parts) != 5:
            raise ConfigError(f"cron expression needs 5 fields, got {len(parts)}: {text!r}")
        parsed = [
            _parse_field(part, field, low, high, names)
            for part, (field, low, high, names) in zip(parts, _FIELDS)
        ]
        # Sunday may be written as 0 or 7.
        weekdays = frozenset(0 if day == 7 else day for day in parsed[4])
        schedule = cls(
            text,
            minutes=parsed[0],
            hours=parsed[1],
            days=parsed[2],
            months=parsed[3],
            weekdays=weekdays,
            dom_wild=parts[2].startswith("*"),
            dow_wild=parts[4].startswith("*"),
        )
        schedule.next_after(datetime(2000, 1, 1))
        return schedule

    def __repr__(self):
        return f"CronSchedule({self.expression!r})"

    def _day_matches(self, moment):
        """Apply the day-of-month / day-of-week rule (OR when both are restricted)."""
        dom_ok = moment.day in self.days
        dow_ok = (moment.isoweekday() % 7) in self.weekdays
        if self.dom_wild and self.dow_wild:
            return True
        if self.dom_wild:
            return dow_ok
        if self.dow_wild:
            return dom_ok
        return dom_ok or dow_ok

    def matches(self, moment):
        """Return whether ``moment`` falls on a firing minute."""
        return (
            moment.minute in self.minutes
            and moment.hour in self.hours
            and moment.month in self.months
            and self._day_matches(moment)
        )

    def next_after(self, moment):
        """Return the first firing minute strictly after ``moment``."""
        candidate = moment.replace(second=0, microsecond=0) + timedelta(minutes=1)
        limit = candidate + _SEARCH_LIMIT
        while candidate <= limit:
            if candidate.month not in self.months:
                year = candidate.year + candidate.month // 12
                month = candidate.month % 12 + 1
                candidate = candidate.replace(year=year, month=month, day=1, hour=0, minute=0)
                continue
            if not self._day_matches(candidate):
                candidate = (candidate + timedelta(days=1)).replace(hour=0, minute=0)
                continue
            if candidate.hour not in self.hours:
                candidate = (candidate + timedelta(hours=1)).replace(minute=0)
                continue
            if candidate.minute not in self.minutes:
                candidate += timedelta(minutes=1)
                continue
            return candidate
        raise ConfigError(f"cron expression never fires: {self.expression!r}")
