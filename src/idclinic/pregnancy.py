"""
Pregnancy domain model and gestational-age projections.

A pregnancy is recorded as a gestational age ("weeks+days") measured on a
given date. HIV viral load is due at 32 weeks; the reminder for it stays
visible until two months after that date.
"""

import re
import typing

from dataclasses import dataclass
from datetime import date, timedelta

from .dates import add_months, parse_local_date

_GA_PATTERN = re.compile(r"^\d+\+\d+$")

# Viral-load test is due at 32 weeks of gestation
VL_TARGET_GESTATION_DAYS = 32 * 7
# Reminders stay visible this many months past the due date
VL_REMINDER_GRACE_MONTHS = 2
# Beyond this the projection is shown as overdue / delivered
MAX_PROJECTED_WEEKS = 42


@dataclass
class PregnancyRecord:
    """
    Attributes:
        id: Record identifier.
        ga: Gestational age at measurement, "weeks+days" (e.g. "12+3").
        ga_date: Date the GA was measured, "YYYY-MM-DD".
        end_date: Date the pregnancy ended; None while it is ongoing.
        end_reason: Free text (delivery, abortion, ...).
    """
    id: str
    ga: str
    ga_date: str
    end_date: str | None = None
    end_reason: str | None = None

    @property
    def is_open(self) -> bool:
        return not self.end_date


@dataclass(frozen=True)
class CurrentGa:
    ga: str
    weeks: int

    @property
    def is_overdue(self) -> bool:
        """Past 42 weeks: shown as overdue / delivered rather than a running GA."""
        return self.weeks > MAX_PROJECTED_WEEKS


@dataclass(frozen=True)
class VlTestReminder:
    patient_id: typing.Any
    patient_name: str
    hn: str
    due_date: date
    pregnancy: PregnancyRecord


def parse_ga(ga: typing.Any) -> tuple[int, int] | None:
    """Split "weeks+days" into integers; None when the format does not match."""
    if not isinstance(ga, str) or not _GA_PATTERN.match(ga):
        return None
    weeks, days = ga.split("+")
    return int(weeks), int(days)


def calculate_vl_test_date(ga: str | None, ga_date: typing.Any) -> date | None:
    """
    Date on which the pregnancy reaches 32 weeks.

    The result lies in the past when the GA was already beyond 32 weeks at
    measurement. Invalid GA format or measurement date gives None.
    """
    parsed = parse_ga(ga)
    measured = parse_local_date(ga_date)
    if parsed is None or measured is None:
        return None
    weeks, days = parsed
    days_until_target = VL_TARGET_GESTATION_DAYS - (weeks * 7 + days)
    return measured + timedelta(days=days_until_target)


def calculate_current_ga(start_ga: str | None, start_date: typing.Any, as_of: date | None = None) -> CurrentGa | None:
    """
    Advance the recorded GA by the whole days elapsed since it was measured.
    If `as_of` precedes the measurement the recorded GA is returned unchanged.
    """
    parsed = parse_ga(start_ga)
    measured = parse_local_date(start_date)
    if parsed is None or measured is None:
        return None
    weeks, days = parsed
    today = as_of or date.today()
    elapsed = (today - measured).days
    if elapsed < 0:
        return CurrentGa(ga=f"{weeks}+{days}", weeks=weeks)

    total = weeks * 7 + days + elapsed
    current_weeks, current_days = divmod(total, 7)
    return CurrentGa(ga=f"{current_weeks}+{current_days}", weeks=current_weeks)


def active_pregnancy(pregnancies: typing.Sequence[PregnancyRecord] | None) -> PregnancyRecord | None:
    """
    The single open pregnancy considered for reminders.

    Only one open record is expected per patient, but this is not enforced on
    write; if several are open the latest measurement wins.
    """
    open_records = [p for p in (pregnancies or []) if p.is_open]
    if not open_records:
        return None
    return max(open_records, key=lambda p: parse_local_date(p.ga_date) or date.min)


def vl_test_reminders(patients: typing.Iterable[typing.Any], today: date | None = None) -> list[VlTestReminder]:
    """
    Female patients whose 32-week viral-load test is due, ordered by due date.

    A patient is listed while `today <= due_date + 2 months`.
    """
    from .patient import SEX_FEMALE

    today = today or date.today()
    reminders: list[VlTestReminder] = []
    for patient in patients:
        if patient.sex != SEX_FEMALE:
            continue
        pregnancy = active_pregnancy(patient.pregnancies)
        if pregnancy is None:
            continue
        due = calculate_vl_test_date(pregnancy.ga, pregnancy.ga_date)
        if due is None:
            continue
        if today <= add_months(due, VL_REMINDER_GRACE_MONTHS):
            reminders.append(
                VlTestReminder(
                    patient_id=patient.id,
                    patient_name=patient.full_name,
                    hn=patient.hn,
                    due_date=due,
                    pregnancy=pregnancy,
                )
            )
    return sorted(reminders, key=lambda r: r.due_date)
