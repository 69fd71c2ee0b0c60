"""
Patient list pipeline: filter, sort, paginate.

Filtering is a conjunction of optional predicates; a predicate left unset
matches every patient. Computed values (status, HBV/HCV summaries) are
derived on the fly with the functions in `idclinic.status`.
"""

import math
import os
import typing

from dataclasses import dataclass
from datetime import date, datetime, timezone

from .dates import parse_local_date
from .medical_event import tpt_events
from .patient import Patient, PatientStatus
from .status import compute_status, determine_hbv_status, determine_hcv_status

PAGE_SIZE = int(os.getenv("IDCLINIC_PAGE_SIZE", "10"))


@dataclass
class PatientQuery:
    """
    Attributes:
        search: Case-insensitive substring over HN, national id, NAP id, name and phone.
        status: Required computed status.
        sex: Required sex string.
        appointment_from, appointment_to: Inclusive bounds on the next appointment date.
        hbv_status, hcv_status: Exact summary text.
        std_disease: Substring of any disease name in any STD episode.
        received_tpt, received_prep, received_pep: True means "ever received",
            False means "never received".
    """
    search: str = ""
    status: PatientStatus | None = None
    sex: str | None = None
    appointment_from: date | None = None
    appointment_to: date | None = None
    hbv_status: str | None = None
    hcv_status: str | None = None
    std_disease: str | None = None
    received_tpt: bool | None = None
    received_prep: bool | None = None
    received_pep: bool | None = None


@dataclass(frozen=True)
class Page:
    items: list[Patient]
    page: int
    page_count: int
    total: int
    page_size: int

    @property
    def first_index(self) -> int:
        """1-based position of the first item shown, 0 for an empty result."""
        if not self.items:
            return 0
        return (self.page - 1) * self.page_size + 1

    @property
    def last_index(self) -> int:
        if not self.items:
            return 0
        return self.first_index + len(self.items) - 1


def _matches_search(patient: Patient, term: str) -> bool:
    needle = term.strip().casefold()
    if not needle:
        return True
    haystack = (
        patient.hn,
        patient.national_id,
        patient.nap_id,
        patient.first_name,
        patient.last_name,
        f"{patient.first_name} {patient.last_name}",
        patient.phone,
    )
    return any(needle in (value or "").casefold() for value in haystack)


def _in_range(value: typing.Any, start: date | None, end: date | None) -> bool:
    """Inclusive date-only range test; a missing bound is unbounded."""
    d = parse_local_date(value)
    if d is None:
        return False
    if start is not None and d < start:
        return False
    if end is not None and d > end:
        return False
    return True


def has_std_disease(patient: Patient, name: str) -> bool:
    needle = name.strip().casefold()
    return any(
        needle in disease.casefold()
        for record in patient.std_info.records
        for disease in record.diseases
    )


def received_tpt(patient: Patient) -> bool:
    return bool(tpt_events(patient.medical_history))


def received_prep(patient: Patient) -> bool:
    return bool(patient.prep_info.records)


def received_pep(patient: Patient) -> bool:
    return bool(patient.pep_info.records)


def matches(patient: Patient, query: PatientQuery, today: date | None = None) -> bool:
    if query.search and not _matches_search(patient, query.search):
        return False
    if query.status is not None and compute_status(patient, today) is not query.status:
        return False
    if query.sex and patient.sex != query.sex:
        return False
    if query.appointment_from is not None or query.appointment_to is not None:
        if not _in_range(patient.next_appointment_date, query.appointment_from, query.appointment_to):
            return False
    if query.hbv_status and determine_hbv_status(patient).text != query.hbv_status:
        return False
    if query.hcv_status and determine_hcv_status(patient).text != query.hcv_status:
        return False
    if query.std_disease and not has_std_disease(patient, query.std_disease):
        return False
    for wanted, predicate in (
            (query.received_tpt, received_tpt),
            (query.received_prep, received_prep),
            (query.received_pep, received_pep),
    ):
        if wanted is not None and predicate(patient) != wanted:
            return False
    return True


def filter_patients(
        patients: typing.Iterable[Patient],
        query: PatientQuery,
        today: date | None = None,
) -> list[Patient]:
    return [p for p in patients if matches(p, query, today)]


def _updated_key(patient: Patient) -> tuple[bool, datetime]:
    raw = patient.updated_at
    if raw:
        try:
            stamp = datetime.fromisoformat(str(raw).strip().replace("Z", "+00:00"))
        except ValueError:
            stamp = None
        if stamp is not None:
            if stamp.tzinfo is not None:
                stamp = stamp.astimezone(timezone.utc).replace(tzinfo=None)
            return True, stamp
    return False, datetime.min


def sort_patients(patients: typing.Iterable[Patient]) -> list[Patient]:
    """Most recently modified first; ties keep input order, unknown timestamps go last."""
    return sorted(patients, key=_updated_key, reverse=True)


def paginate(items: typing.Sequence[Patient], page: int = 1, page_size: int | None = None) -> Page:
    """Slice out one page. `page` is clamped into 1..page_count."""
    size = page_size or PAGE_SIZE
    total = len(items)
    page_count = max(1, math.ceil(total / size))
    page = min(max(1, page), page_count)
    start = (page - 1) * size
    return Page(
        items=list(items[start:start + size]),
        page=page,
        page_count=page_count,
        total=total,
        page_size=size,
    )


def list_patients(
        patients: typing.Iterable[Patient],
        query: PatientQuery | None = None,
        page: int = 1,
        page_size: int | None = None,
        today: date | None = None,
) -> Page:
    """Filter, then sort by last modification, then paginate."""
    selected = filter_patients(patients, query or PatientQuery(), today)
    return paginate(sort_patients(selected), page, page_size)
