"""
Record aggregator.

Builds complete Patient aggregates from persisted rows: one `patients` row
plus the rows of each child table, all with snake_case column names. Dates
are normalised to "YYYY-MM-DD" here, and legacy medical-event detail maps are
turned into typed events here, so nothing downstream deals with either.
"""

import json
import logging
import typing

from collections import defaultdict

from .dates import to_iso_date
from .hepatitis import (
    DatedResult,
    HbsAgTest,
    HbvInfo,
    HcvInfo,
    HcvTest,
    HcvTreatment,
    summary_from_text,
)
from .medical_event import MedicalEvent, from_details
from .patient import Patient
from .pregnancy import PregnancyRecord
from .prevention import PepInfo, PepRecord, PrepInfo, PrepRecord, StdInfo, StdRecord

LOGGER = logging.getLogger(__name__)

Row = typing.Mapping[str, typing.Any]

CHILD_TABLES = (
    "medical_events",
    "pregnancy_records",
    "hbv_hbsag_tests",
    "hbv_viral_loads",
    "hbv_ultrasounds",
    "hbv_ct_scans",
    "hcv_tests",
    "hcv_pre_treatment_vls",
    "hcv_treatments",
    "hcv_post_treatment_vls",
    "std_records",
    "prep_records",
    "pep_records",
)

# patient columns copied as plain text
_TEXT_COLUMNS = (
    "nap_id",
    "national_id",
    "title",
    "first_name",
    "last_name",
    "risk_behavior",
    "occupation",
    "partner_status",
    "partner_hiv_status",
    "address",
    "subdistrict",
    "district",
    "province",
    "phone",
    "healthcare_scheme",
    "referral_type",
    "referred_from",
    "refer_out_location",
)

# patient columns holding calendar dates
_DATE_COLUMNS = (
    "dob",
    "registration_date",
    "next_appointment_date",
    "referral_date",
    "refer_out_date",
    "death_date",
)


def _text(value: typing.Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _optional_date(value: typing.Any) -> str | None:
    return to_iso_date(value) or None


def _sex(value: typing.Any) -> str | None:
    return _text(value) or None


def _details(value: typing.Any) -> dict[str, typing.Any]:
    # JSON columns arrive either decoded or as text
    if value is None or value == "":
        return {}
    if isinstance(value, str):
        try:
            decoded = json.loads(value)
        except json.JSONDecodeError:
            LOGGER.warning("Unreadable event details %.40r; treating as empty", value)
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return dict(value)


def event_from_row(row: Row) -> MedicalEvent:
    return from_details(
        row["type"],
        id=_text(row.get("id")),
        date=to_iso_date(row.get("date")),
        title=_text(row.get("title")),
        details=_details(row.get("details")),
    )


def pregnancy_from_row(row: Row) -> PregnancyRecord:
    return PregnancyRecord(
        id=_text(row.get("id")),
        ga=_text(row.get("ga")),
        ga_date=to_iso_date(row.get("ga_date")),
        end_date=_optional_date(row.get("end_date")),
        end_reason=_text(row.get("end_reason")) or None,
    )


def hbsag_from_row(row: Row) -> HbsAgTest:
    return HbsAgTest(id=_text(row.get("id")), result=row["result"], date=to_iso_date(row.get("date")))


def dated_result_from_row(row: Row) -> DatedResult:
    return DatedResult(id=_text(row.get("id")), result=_text(row.get("result")), date=to_iso_date(row.get("date")))


def hcv_test_from_row(row: Row) -> HcvTest:
    return HcvTest(
        id=_text(row.get("id")),
        type=_text(row.get("type")),
        result=row["result"],
        date=to_iso_date(row.get("date")),
    )


def hcv_treatment_from_row(row: Row) -> HcvTreatment:
    return HcvTreatment(id=_text(row.get("id")), regimen=_text(row.get("regimen")), date=to_iso_date(row.get("date")))


def std_from_row(row: Row) -> StdRecord:
    diseases = row.get("diseases") or []
    if isinstance(diseases, str):
        diseases = [d.strip() for d in diseases.split(",")]
    return StdRecord(
        id=_text(row.get("id")),
        date=to_iso_date(row.get("date")),
        diseases=[str(d).strip() for d in diseases if str(d).strip()],
    )


def prep_from_row(row: Row) -> PrepRecord:
    return PrepRecord(
        id=_text(row.get("id")),
        date_start=to_iso_date(row.get("date_start")),
        date_stop=_optional_date(row.get("date_stop")),
    )


def pep_from_row(row: Row) -> PepRecord:
    return PepRecord(id=_text(row.get("id")), date=to_iso_date(row.get("date")), type=_text(row.get("type")) or None)


def patient_from_row(row: Row) -> Patient:
    """Patient core fields only; every child collection starts empty."""
    fields: dict[str, typing.Any] = {column: _text(row.get(column)) for column in _TEXT_COLUMNS}
    fields.update({column: _optional_date(row.get(column)) for column in _DATE_COLUMNS})
    updated_at = row.get("updated_at")
    return Patient(
        id=int(row["id"]),
        hn=_text(row.get("hn")),
        status=_text(row.get("status")) or "Active",
        sex=_sex(row.get("sex")),
        updated_at=str(updated_at) if updated_at is not None else None,
        hbv_info=HbvInfo(summary=summary_from_text(row.get("hbv_manual_summary"))),
        hcv_info=HcvInfo(vl_not_tested=bool(row.get("hcv_vl_not_tested"))),
        **fields,
    )


def assemble_patient(row: Row, children: typing.Mapping[str, typing.Sequence[Row]] | None = None) -> Patient:
    """
    Build one fully populated Patient from its core row and its child rows,
    keyed by table name (see CHILD_TABLES). Missing tables mean empty collections.
    """
    children = children or {}

    def rows(table: str) -> typing.Sequence[Row]:
        return children.get(table) or ()

    patient = patient_from_row(row)
    patient.medical_history = [event_from_row(r) for r in rows("medical_events")]
    patient.pregnancies = [pregnancy_from_row(r) for r in rows("pregnancy_records")]
    patient.hbv_info = HbvInfo(
        hbsag_tests=[hbsag_from_row(r) for r in rows("hbv_hbsag_tests")],
        viral_loads=[dated_result_from_row(r) for r in rows("hbv_viral_loads")],
        ultrasounds=[dated_result_from_row(r) for r in rows("hbv_ultrasounds")],
        ct_scans=[dated_result_from_row(r) for r in rows("hbv_ct_scans")],
        summary=patient.hbv_info.summary,
    )
    patient.hcv_info = HcvInfo(
        hcv_tests=[hcv_test_from_row(r) for r in rows("hcv_tests")],
        pre_treatment_vls=[dated_result_from_row(r) for r in rows("hcv_pre_treatment_vls")],
        treatments=[hcv_treatment_from_row(r) for r in rows("hcv_treatments")],
        post_treatment_vls=[dated_result_from_row(r) for r in rows("hcv_post_treatment_vls")],
        vl_not_tested=patient.hcv_info.vl_not_tested,
    )
    patient.std_info = StdInfo([std_from_row(r) for r in rows("std_records")])
    patient.prep_info = PrepInfo([prep_from_row(r) for r in rows("prep_records")])
    patient.pep_info = PepInfo([pep_from_row(r) for r in rows("pep_records")])
    return patient


def group_rows_by_patient(
        child_tables: typing.Mapping[str, typing.Iterable[Row]],
) -> dict[typing.Any, dict[str, list[Row]]]:
    """Regroup flat child tables (rows carry `patient_id`) into per-patient bundles."""
    grouped: dict[typing.Any, dict[str, list[Row]]] = defaultdict(lambda: defaultdict(list))
    for table, table_rows in child_tables.items():
        if table not in CHILD_TABLES:
            LOGGER.warning("Ignoring unknown child table %r", table)
            continue
        for r in table_rows:
            grouped[r["patient_id"]][table].append(r)
    return grouped


def assemble_patients(
        patient_rows: typing.Iterable[Row],
        child_tables: typing.Mapping[str, typing.Iterable[Row]] | None = None,
) -> list[Patient]:
    """Assemble every patient, in the order of `patient_rows`."""
    grouped = group_rows_by_patient(child_tables or {})
    patients = [assemble_patient(row, grouped.get(row["id"], {})) for row in patient_rows]
    LOGGER.debug("Assembled %d patients", len(patients))
    return patients
