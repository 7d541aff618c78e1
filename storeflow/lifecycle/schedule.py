"""
Schedule Registry.

Holds the cron entries of enabled SCHEDULE workflows and reports which are
due. Cron expressions use the standard five crontab fields, parsed with
APScheduler's ``CronTrigger.from_crontab``:

    minute  hour  day-of-month  month  day-of-week
    0-59    0-23  1-31          1-12   0-7 (0 or 7 = Sunday) or sun-sat

Each field accepts ``*``, single values, lists (``1,15``), ranges
(``1-5``) and steps (``*/15``, ``0-30/10``). As in crontab, a day matches
when either day field matches if both are restricted.
"""

from typing import Dict, List, Optional
from pydantic import BaseModel
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import logging

from apscheduler.triggers.cron import CronTrigger


logger = logging.getLogger(__name__)

# Crontab weekday numbers; 7 is Sunday again
_WEEKDAY_NAMES = ["sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun"]


def _weekday_names(field: str) -> str:
    """
    Rewrite a numeric crontab weekday field with day names.

    APScheduler counts weekdays from Monday = 0, so numbers are expanded
    to names before the field is handed over.
    """
    if field == "*" or field.isalpha():
        return field
    names: List[str] = []
    for part in field.split(","):
        text, _, step_text = part.partition("/")
        if text != "*" and not text.replace("-", "").isdigit():
            # Named days and ranges are already in APScheduler's terms
            names.append(part)
            continue
        step = int(step_text) if step_text else 1
        if step < 1:
            raise ValueError(f"day of week: invalid step '{step_text}'")
        if text == "*":
            first, last = 0, 6
        else:
            first_text, dash, last_text = text.partition("-")
            first = int(first_text)
            last = int(last_text) if dash else (7 if step_text else first)
        if first > last or last > 7:
            raise ValueError(f"day of week: '{part}' out of range 0-7")
        names.extend(_WEEKDAY_NAMES[day] for day in range(first, last + 1, step))
    return ",".join(dict.fromkeys(names))


class CronExpression:
    """
    A five-field cron expression bound to a timezone.

    Raises:
        ValueError: If the expression or timezone is invalid
    """

    def __init__(self, expression: str, tz: str = "UTC"):
        fields = expression.split()
        if len(fields) != 5:
            raise ValueError(f"expected 5 fields, got {len(fields)}")
        try:
            self.tz = ZoneInfo(tz)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown timezone '{tz}'") from e

        self.expression = expression
        minute, hour, day, month, weekday = fields
        weekday = _weekday_names(weekday)
        if day != "*" and weekday != "*":
            # Crontab ORs the two day fields; a CronTrigger ANDs them
            crontabs = [f"{minute} {hour} {day} {month} *", f"{minute} {hour} * {month} {weekday}"]
        else:
            crontabs = [f"{minute} {hour} {day} {month} {weekday}"]
        self._triggers = [CronTrigger.from_crontab(c, timezone=self.tz) for c in crontabs]

    def matches(self, when: datetime) -> bool:
        """True if the cron fires in the minute containing ``when``."""
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        minute = when.astimezone(self.tz).replace(second=0, microsecond=0)
        return any(t.get_next_fire_time(None, minute) == minute for t in self._triggers)

    def __repr__(self) -> str:
        return f"CronExpression('{self.expression}', tz='{self.tz.key}')"


class ScheduleEntry(BaseModel):
    """A registered SCHEDULE trigger."""
    workflow_id: str
    cron: str
    timezone: str = "UTC"
    last_fired: Optional[str] = None


class ScheduleRegistry:
    """
    In-memory table of schedule entries.

    Mutated only through the toggle service, which serializes changes per
    workflow.
    """

    def __init__(self):
        self._entries: Dict[str, ScheduleEntry] = {}
        self._crons: Dict[str, CronExpression] = {}

    def register(self, workflow_id: str, cron: str, tz: str = "UTC") -> ScheduleEntry:
        expression = CronExpression(cron, tz)
        entry = ScheduleEntry(workflow_id=workflow_id, cron=cron, timezone=tz)
        previous = self._entries.get(workflow_id)
        if previous and previous.cron == cron and previous.timezone == tz:
            entry.last_fired = previous.last_fired
        self._entries[workflow_id] = entry
        self._crons[workflow_id] = expression
        logger.info(f"Registered schedule '{cron}' ({tz}) for workflow {workflow_id}")
        return entry

    def unregister(self, workflow_id: str) -> bool:
        self._crons.pop(workflow_id, None)
        if self._entries.pop(workflow_id, None) is None:
            return False
        logger.info(f"Unregistered schedule for workflow {workflow_id}")
        return True

    def get(self, workflow_id: str) -> Optional[ScheduleEntry]:
        return self._entries.get(workflow_id)

    def entries(self) -> List[ScheduleEntry]:
        return list(self._entries.values())

    def due(self, now: datetime) -> List[ScheduleEntry]:
        """
        Entries whose cron matches ``now``, each at most once per minute.

        Marks the returned entries as fired for that minute.
        """
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        minute_key = now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M")
        due = []
        for workflow_id, entry in self._entries.items():
            if entry.last_fired == minute_key:
                continue
            if self._crons[workflow_id].matches(now):
                entry.last_fired = minute_key
                due.append(entry)
        return due

    def clear(self) -> None:
        self._entries.clear()
        self._crons.clear()

    def __len__(self) -> int:
        return len(self._entries)
