"""
Status derivation.

Pure functions that compute a patient's current clinical state from the raw
dated records on the aggregate. Nothing here mutates the patient, and nothing
is cached: every value is recomputed on read. Malformed dates and results are
treated as absent, so every function is total.
"""

import re
import typing

from dataclasses import dataclass
from datetime import date
from enum import Enum

from .dates import parse_local_date
from .hepatitis import DatedResult, ManualSummary, QualitativeResult
from .patient import Patient, PatientStatus

# Viral load (IU/mL) below which HCV is considered undetectable
HCV_VL_THRESHOLD = 15

NO_DATA = "ไม่มีข้อมูล"

HBV_NEGATIVE = "ไม่เป็น HBV"
HBV_POSITIVE = "เป็น HBV"
PENDING_RETEST = "รอตรวจเพิ่มเติม"

HCV_NEGATIVE = "ไม่เป็น HCV"
HCV_CURED = "เคยเป็น HCV รักษาหายแล้ว"
HCV_NOT_CURED = "เป็น HCV รักษาแล้วไม่หาย"
HCV_TREATING = "กำลังรักษา HCV"
HCV_CLEARED = "เคยเป็น HCV หายเอง"
HCV_POSITIVE = "เป็น HCV"
HCV_AWAITING = PENDING_RETEST

_NUMBER = re.compile(r"\d+(?:\.\d+)?")
_NOT_DETECTED = {"not detected", "undetected"}


class Severity(Enum):
    SUCCESS = "success"
    DANGER = "danger"
    WARNING = "warning"
    INFO = "info"
    NEUTRAL = "neutral"


class HcvDiagnosticStatus(Enum):
    POSITIVE = "POSITIVE"
    NEGATIVE = "NEGATIVE"
    INCONCLUSIVE = "INCONCLUSIVE"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class StatusSummary:
    text: str
    severity: Severity
    is_manual: bool = False


# severity of the canonical manual HBV override strings
_HBV_OVERRIDE_SEVERITY = {
    HBV_NEGATIVE: Severity.SUCCESS,
    HBV_POSITIVE: Severity.DANGER,
    PENDING_RETEST: Severity.WARNING,
}

_HBV_RESULT_SUMMARY = {
    QualitativeResult.NEGATIVE: StatusSummary(HBV_NEGATIVE, Severity.SUCCESS),
    QualitativeResult.POSITIVE: StatusSummary(HBV_POSITIVE, Severity.DANGER),
    QualitativeResult.INCONCLUSIVE: StatusSummary(PENDING_RETEST, Severity.WARNING),
}

_HCV_DIAGNOSTIC = {
    QualitativeResult.POSITIVE: HcvDiagnosticStatus.POSITIVE,
    QualitativeResult.NEGATIVE: HcvDiagnosticStatus.NEGATIVE,
    QualitativeResult.INCONCLUSIVE: HcvDiagnosticStatus.INCONCLUSIVE,
}


def compute_status(patient: Patient, today: date | None = None) -> PatientStatus | None:
    """
    Ordered decision list, first match wins:
      1. death date            -> EXPIRED
      2. refer-out date        -> TRANSFERRED
      3. next appointment date -> LTFU if it is before today, else RESTART when
         the stored status says so, else ACTIVE
      4. otherwise None ("no data", not a status value)
    """
    if parse_local_date(patient.death_date) is not None:
        return PatientStatus.EXPIRED
    if parse_local_date(patient.refer_out_date) is not None:
        return PatientStatus.TRANSFERRED

    appointment = parse_local_date(patient.next_appointment_date)
    if appointment is None:
        return None
    if appointment < (today or date.today()):
        return PatientStatus.LTFU
    if patient.status is PatientStatus.RESTART:
        return PatientStatus.RESTART
    return PatientStatus.ACTIVE


def latest_dated(records: typing.Iterable[typing.Any]) -> typing.Any | None:
    """
    Record with the latest `date`. Unparseable dates sort first; on equal dates
    the earliest record in input order wins.
    """
    latest = None
    latest_date = None
    for record in records:
        record_date = parse_local_date(record.date) or date.min
        if latest is None or record_date > latest_date:
            latest, latest_date = record, record_date
    return latest


def determine_hbv_status(patient: Patient) -> StatusSummary:
    hbv = patient.hbv_info
    if isinstance(hbv.summary, ManualSummary):
        text = hbv.summary.text
        return StatusSummary(text, _HBV_OVERRIDE_SEVERITY.get(text, Severity.NEUTRAL), is_manual=True)

    latest = latest_dated(hbv.hbsag_tests)
    if latest is None:
        return StatusSummary(NO_DATA, Severity.NEUTRAL)
    return _HBV_RESULT_SUMMARY[latest.result]


def determine_hcv_diagnostic_status(tests: typing.Sequence[typing.Any] | None) -> HcvDiagnosticStatus:
    latest = latest_dated(tests or [])
    if latest is None:
        return HcvDiagnosticStatus.UNKNOWN
    return _HCV_DIAGNOSTIC[latest.result]


def parse_viral_load(result: typing.Any) -> float | None:
    """
    Numeric value of a free-text viral-load result.

    >>> parse_viral_load("1,200,000 IU/mL")
    1200000.0
    >>> parse_viral_load("Not Detected")
    0.0
    >>> parse_viral_load("<15")
    14.0
    """
    if result is None:
        return None
    text = str(result).replace(",", "").strip()
    if not text:
        return None
    if text.lower() in _NOT_DETECTED:
        return 0.0
    m = _NUMBER.search(text)
    if not m:
        return None
    value = float(m.group(0))
    # "<N" is reported as just below the detection limit
    if text.startswith("<"):
        return value - 1
    return value


def _latest_vl(results: typing.Sequence[DatedResult]) -> float | None:
    latest = latest_dated(results)
    return parse_viral_load(latest.result) if latest is not None else None


def determine_hcv_status(patient: Patient) -> StatusSummary:
    """
    HCV treatment summary.

    Negative diagnosis -> not HCV. For a positive or inconclusive diagnosis the
    latest pre- and post-treatment viral loads are compared against the
    15 IU/mL threshold to tell cured / not cured / treating / cleared / has HCV /
    awaiting testing apart. No tests at all -> no data.
    """
    hcv = patient.hcv_info
    diagnostic = determine_hcv_diagnostic_status(hcv.hcv_tests)
    if diagnostic is HcvDiagnosticStatus.UNKNOWN:
        return StatusSummary(NO_DATA, Severity.NEUTRAL)
    if diagnostic is HcvDiagnosticStatus.NEGATIVE:
        return StatusSummary(HCV_NEGATIVE, Severity.SUCCESS)

    pre_vl = _latest_vl(hcv.pre_treatment_vls)
    post_vl = _latest_vl(hcv.post_treatment_vls)
    treated = bool(hcv.treatments)

    if pre_vl is not None and pre_vl > HCV_VL_THRESHOLD and treated:
        if post_vl is not None:
            if post_vl < HCV_VL_THRESHOLD:
                return StatusSummary(HCV_CURED, Severity.SUCCESS)
            return StatusSummary(HCV_NOT_CURED, Severity.DANGER)
        return StatusSummary(HCV_TREATING, Severity.INFO)

    if pre_vl is not None:
        if pre_vl < HCV_VL_THRESHOLD:
            return StatusSummary(HCV_CLEARED, Severity.SUCCESS)
        return StatusSummary(HCV_POSITIVE, Severity.DANGER)

    return StatusSummary(HCV_AWAITING, Severity.WARNING)
