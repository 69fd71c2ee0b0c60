"""
Dashboard counts, report summary and monthly trend buckets.

Every figure is recomputed from the patient aggregates on each call; computed
status and HBV/HCV summaries come from `idclinic.status`.
"""

import typing

from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import date

import pandas as pd

from .dates import parse_local_date
from .hepatitis import QualitativeResult
from .medical_event import MedicalEventType, ProphylaxisEvent, tpt_events
from .patient import SEX_FEMALE, SEX_MALE, Patient, PatientStatus
from .status import HBV_POSITIVE, HCV_NEGATIVE, NO_DATA, compute_status, determine_hbv_status, determine_hcv_status

UNSPECIFIED_SCHEME = "Unspecified"

TREND_CATEGORIES = (
    "hiv_diagnosis",
    "hbv_positive",
    "tpt",
    "prep_start",
    "pep",
    "std",
)


@dataclass
class DashboardStats:
    """
    Computed-status counts. `no_data` counts patients whose status cannot be
    computed; it is not a status value.
    """
    total: int = 0
    by_status: dict[PatientStatus, int] = field(default_factory=lambda: {s: 0 for s in PatientStatus})
    no_data: int = 0
    male: int = 0
    female: int = 0
    nap: int = 0

    @property
    def in_care(self) -> int:
        return self.by_status[PatientStatus.ACTIVE] + self.by_status[PatientStatus.RESTART]


@dataclass
class ReportSummary:
    total: int = 0
    active: int = 0
    hbv: int = 0
    hcv: int = 0
    tpt: int = 0
    prep: int = 0
    pep: int = 0
    std: int = 0
    gender: dict[str, int] = field(default_factory=lambda: {"male": 0, "female": 0, "other": 0})
    scheme: dict[str, int] = field(default_factory=dict)


def dashboard_stats(patients: typing.Iterable[Patient], today: date | None = None) -> DashboardStats:
    stats = DashboardStats()
    for p in patients:
        stats.total += 1
        status = compute_status(p, today)
        if status is None:
            stats.no_data += 1
        else:
            stats.by_status[status] += 1
        if p.sex == SEX_MALE:
            stats.male += 1
        elif p.sex == SEX_FEMALE:
            stats.female += 1
        if p.nap_id:
            stats.nap += 1
    return stats


def report_summary(patients: typing.Iterable[Patient], today: date | None = None) -> ReportSummary:
    """
    Programme totals. HCV counts any summary other than "not HCV" and "no data";
    healthcare schemes are counted by their text, blank as "Unspecified".
    """
    summary = ReportSummary()
    schemes: Counter = Counter()
    for p in patients:
        summary.total += 1
        if compute_status(p, today) in (PatientStatus.ACTIVE, PatientStatus.RESTART):
            summary.active += 1

        if p.sex == SEX_MALE:
            summary.gender["male"] += 1
        elif p.sex == SEX_FEMALE:
            summary.gender["female"] += 1
        else:
            summary.gender["other"] += 1
        schemes[p.healthcare_scheme or UNSPECIFIED_SCHEME] += 1

        if determine_hbv_status(p).text == HBV_POSITIVE:
            summary.hbv += 1
        if determine_hcv_status(p).text not in (HCV_NEGATIVE, NO_DATA):
            summary.hcv += 1
        summary.tpt += bool(tpt_events(p.medical_history))
        summary.prep += bool(p.prep_info.records)
        summary.pep += bool(p.pep_info.records)
        summary.std += bool(p.std_info.records)

    # largest scheme first
    summary.scheme = dict(schemes.most_common())
    return summary


def _category_dates(patient: Patient) -> typing.Iterator[tuple[str, typing.Any]]:
    for event in patient.medical_history:
        if event.type is MedicalEventType.DIAGNOSIS:
            yield "hiv_diagnosis", event.date
        elif isinstance(event, ProphylaxisEvent) and event.tpt:
            yield "tpt", event.date
    for test in patient.hbv_info.hbsag_tests:
        if test.result is QualitativeResult.POSITIVE:
            yield "hbv_positive", test.date
    for record in patient.prep_info.records:
        yield "prep_start", record.date_start
    for record in patient.pep_info.records:
        yield "pep", record.date
    for record in patient.std_info.records:
        yield "std", record.date


def monthly_trends(
        patients: typing.Iterable[Patient],
        start: date | None = None,
        end: date | None = None,
) -> dict[str, dict[str, int]]:
    """
    Count dated records per category and calendar month ("YYYY-MM").
    Only records with `start <= date <= end` count; a missing bound is unbounded.
    """
    buckets: dict[str, dict[str, int]] = {category: defaultdict(int) for category in TREND_CATEGORIES}
    for patient in patients:
        for category, raw in _category_dates(patient):
            d = parse_local_date(raw)
            if d is None:
                continue
            if (start is not None and d < start) or (end is not None and d > end):
                continue
            buckets[category][f"{d.year:04d}-{d.month:02d}"] += 1
    return {category: dict(months) for category, months in buckets.items()}


def trend_table(
        patients: typing.Iterable[Patient],
        start: date | None = None,
        end: date | None = None,
) -> pd.DataFrame:
    """Monthly trends as a DataFrame: one row per month, one column per category."""
    trends = monthly_trends(patients, start, end)
    df = pd.DataFrame(trends, columns=list(TREND_CATEGORIES))
    df = df.fillna(0).astype(int).sort_index()
    df.index.name = "month"
    return df
