import abc
import json
import logging
import typing
import uuid

import pandas as pd

from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from stairval.notepad import Notepad

from .aggregator import (
    dated_result_from_row,
    event_from_row,
    hbsag_from_row,
    hcv_test_from_row,
    hcv_treatment_from_row,
    patient_from_row,
    pep_from_row,
    pregnancy_from_row,
    prep_from_row,
    std_from_row,
)
from .dates import age_years, buddhist_date_to_iso, parse_local_date, to_iso_date
from .hepatitis import HCV_TEST_TYPES, HbvInfo, HcvInfo, ManualSummary
from .medical_event import (
    KEY_CD4,
    KEY_CD4_PERCENT,
    KEY_DETAILS,
    KEY_DETECTION_REASON,
    KEY_FROM_REGIMEN,
    KEY_INFECTIONS,
    KEY_INITIAL_CD4,
    KEY_INITIAL_CD4_PERCENT,
    KEY_OTHER,
    KEY_PJP,
    KEY_REASON,
    KEY_REGIMEN,
    KEY_TO_REGIMEN,
    KEY_TPT,
    KEY_TPT_REGIMEN,
    KEY_VIRAL_LOAD,
    MedicalEvent,
    latest_arv_regimen,
    tpt_events,
)
from .patient import Patient
from .pregnancy import active_pregnancy
from .prevention import STD_OPTIONS, PepInfo, PrepInfo, PrepRecord, StdInfo
from .status import compute_status, determine_hbv_status, determine_hcv_status

LOGGER = logging.getLogger(__name__)

SHEET_PATIENTS = "Patients_Master"
SHEET_HIV_HISTORY = "HIV_History"
SHEET_HEPATITIS = "Hepatitis_Records"
SHEET_STD = "STD_History"
SHEET_PREVENTION = "Prevention_Records"
SHEET_PREGNANCY = "Pregnancy_Records"

# Friendly aliases for each sheet kind, compared case-insensitively
KNOWN_SHEET_ALIASES: dict[str, set[str]] = {
    "patients": {"patients_master", "patients", "master", "ผู้ป่วย"},
    "hiv_history": {"hiv_history", "medical_history", "hiv"},
    "hepatitis": {"hepatitis_records", "hepatitis", "hbv_hcv"},
    "std": {"std_history", "std"},
    "prevention": {"prevention_records", "prevention", "prep_pep"},
    "pregnancy": {"pregnancy_records", "pregnancy", "anc"},
}

# Minimal required columns (after header normalisation) for each sheet kind
REQUIRED_COLUMNS: dict[str, set[str]] = {
    "patients": {"hn"},
    "hiv_history": {"hn", "date", "type"},
    "hepatitis": {"hn", "date", "disease", "test_type"},
    "std": {"hn", "date", "diseases"},
    "prevention": {"hn", "date", "type", "event"},
    "pregnancy": {"hn", "ga_date", "ga"},
}

# (disease, test type) on the hepatitis sheet -> child collection
HEPATITIS_TEST_TABLES = {
    ("HBV", "HBsAg"): "hbv_hbsag_tests",
    ("HBV", "Viral Load"): "hbv_viral_loads",
    ("HBV", "Ultrasound"): "hbv_ultrasounds",
    ("HBV", "CT Scan"): "hbv_ct_scans",
    ("HCV", "Pre-Treatment VL"): "hcv_pre_treatment_vls",
    ("HCV", "Treatment Start"): "hcv_treatments",
    ("HCV", "Post-Treatment VL"): "hcv_post_treatment_vls",
}

NEVER = "Never"
PAST_HISTORY = "Past History"

# Records keyed by HN plus the child collection they belong to
BundleEntry = tuple[str, str, typing.Any]


@dataclass
class TypedTables:
    """
    Explicit, typed access to workbook sheets.
    Any field can be `None`, meaning that the sheet was not provided.
    """
    patients: pd.DataFrame | None
    hiv_history: pd.DataFrame | None
    hepatitis: pd.DataFrame | None
    std: pd.DataFrame | None
    prevention: pd.DataFrame | None
    pregnancy: pd.DataFrame | None


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------

def arv_regimen_text(patient: Patient) -> str:
    return latest_arv_regimen(patient.medical_history) or ""


def tpt_status_text(patient: Patient) -> str:
    events = tpt_events(patient.medical_history)
    if not events:
        return NEVER
    latest = events[0]
    return f"Received: {latest.tpt_regimen or 'Unspecified'} ({latest.date})"


def std_summary_text(patient: Patient) -> str:
    """Distinct disease names across all STD episodes, in first-seen order."""
    names = dict.fromkeys(d for r in patient.std_info.records for d in r.diseases)
    return ", ".join(names)


def prep_status_text(patient: Patient) -> str:
    records = patient.prep_info.records
    if any(r.is_active for r in records):
        return "Active"
    return PAST_HISTORY if records else NEVER


def pep_status_text(patient: Patient) -> str:
    count = len(patient.pep_info.records)
    return f"Yes ({count} times)" if count else NEVER


def pregnancy_status_text(patient: Patient) -> str:
    current = active_pregnancy(patient.pregnancies)
    if current is not None:
        return f"Pregnant (GA: {current.ga})"
    return PAST_HISTORY if patient.pregnancies else "No"


def _in_export_range(value: typing.Any, start: date | None, end: date | None) -> bool:
    if start is None and end is None:
        return True
    d = parse_local_date(value)
    if d is None:
        return False
    return (start is None or d >= start) and (end is None or d <= end)


def _master_row(p: Patient, today: date | None) -> dict[str, typing.Any]:
    computed = compute_status(p, today)
    manual = p.hbv_info.summary.text if isinstance(p.hbv_info.summary, ManualSummary) else ""
    return {
        "ID": p.id,
        "HN": p.hn,
        "NAP_ID": p.nap_id,
        "National_ID": p.national_id,
        "Title": p.title,
        "FirstName": p.first_name,
        "LastName": p.last_name,
        "FullName": p.full_name,
        "DOB": p.dob or "",
        "Age": age_years(p.dob, today),
        "Sex": p.sex or "",
        "Latest_ARV_Regimen": arv_regimen_text(p),
        "HBV_Summary": determine_hbv_status(p).text,
        "HBV_Manual_Summary": manual,
        "HCV_Summary": determine_hcv_status(p).text,
        "HCV_VL_Not_Tested": "Yes" if p.hcv_info.vl_not_tested else "",
        "TPT_Status": tpt_status_text(p),
        "STD_Summary": std_summary_text(p),
        "PrEP_Status": prep_status_text(p),
        "PEP_Status": pep_status_text(p),
        "Pregnancy_Status": pregnancy_status_text(p),
        "Phone": p.phone,
        "Status": p.status.value,
        "Computed_Status": computed.value if computed is not None else "-",
        "Next_Appointment_Date": p.next_appointment_date or "",
        "Risk_Behavior": p.risk_behavior,
        "Occupation": p.occupation,
        "Address_Detail": p.address,
        "Subdistrict": p.subdistrict,
        "District": p.district,
        "Province": p.province,
        "Healthcare_Scheme": p.healthcare_scheme,
        "Partner_Status": p.partner_status,
        "Partner_HIV_Status": p.partner_hiv_status,
        "Registration_Date": p.registration_date or "",
        "Referral_Type": p.referral_type,
        "Referred_From": p.referred_from,
        "Referral_Date": p.referral_date or "",
        "Refer_Out_Location": p.refer_out_location,
        "Refer_Out_Date": p.refer_out_date or "",
        "Death_Date": p.death_date or "",
        "Updated_At": p.updated_at or "",
    }


def _history_row(p: Patient, event: MedicalEvent) -> dict[str, typing.Any]:
    d = event.to_details()
    infections = list(getattr(event, "all_infections", []))
    return {
        "Date": event.date,
        "HN": p.hn,
        "Patient_Name": f"{p.first_name} {p.last_name}".strip(),
        "Event_Type": event.type.value,
        "Event_Title": event.title,
        "CD4_Count": d.get(KEY_CD4) or d.get(KEY_INITIAL_CD4) or "",
        "CD4_Percent": d.get(KEY_CD4_PERCENT) or d.get(KEY_INITIAL_CD4_PERCENT) or "",
        "Viral_Load": d.get(KEY_VIRAL_LOAD) or "",
        "ARV_Regimen": d.get(KEY_REGIMEN) or d.get(KEY_TO_REGIMEN) or "",
        "ARV_Previous": d.get(KEY_FROM_REGIMEN) or "",
        "TPT_Received": "Yes" if d.get(KEY_TPT) else "",
        "TPT_Regimen": d.get(KEY_TPT_REGIMEN) or "",
        "PJP_Prophylaxis": "Yes" if d.get(KEY_PJP) else "",
        "OI_Infections": ", ".join(infections),
        "Reason": d.get(KEY_REASON) or d.get(KEY_DETECTION_REASON) or "",
        "Other_Details": d.get(KEY_DETAILS) or (d.get(KEY_OTHER) if isinstance(d.get(KEY_OTHER), str) else "") or "",
        "Full_JSON": json.dumps(d, ensure_ascii=False),
    }


def _hepatitis_rows(p: Patient, start: date | None, end: date | None) -> list[dict[str, typing.Any]]:
    rows: list[dict[str, typing.Any]] = []

    def add(disease: str, test_type: str, record_date: str, result: str = "", regimen: str = ""):
        if _in_export_range(record_date, start, end):
            rows.append({
                "Date": record_date,
                "HN": p.hn,
                "Disease": disease,
                "Test_Type": test_type,
                "Result": result,
                "Regimen": regimen,
            })

    hbv, hcv = p.hbv_info, p.hcv_info
    for t in hbv.hbsag_tests:
        add("HBV", "HBsAg", t.date, t.result.value)
    for t in hbv.viral_loads:
        add("HBV", "Viral Load", t.date, t.result)
    for t in hbv.ultrasounds:
        add("HBV", "Ultrasound", t.date, t.result)
    for t in hbv.ct_scans:
        add("HBV", "CT Scan", t.date, t.result)
    for t in hcv.hcv_tests:
        add("HCV", t.type, t.date, t.result.value)
    for t in hcv.pre_treatment_vls:
        add("HCV", "Pre-Treatment VL", t.date, t.result)
    for t in hcv.treatments:
        add("HCV", "Treatment Start", t.date, regimen=t.regimen)
    for t in hcv.post_treatment_vls:
        add("HCV", "Post-Treatment VL", t.date, t.result)
    return rows


def export_tables(
        patients: typing.Sequence[Patient],
        start: date | None = None,
        end: date | None = None,
        today: date | None = None,
) -> dict[str, pd.DataFrame]:
    """
    Build the export workbook as DataFrames keyed by sheet name.

    The master sheet lists every patient with clinical summaries. Detail sheets
    keep only records dated within `start..end` (inclusive, missing bound =
    unbounded) and are left out when they have no rows.
    """
    history, hepatitis, std, prevention, pregnancy = [], [], [], [], []
    for p in patients:
        for event in p.medical_history:
            if _in_export_range(event.date, start, end):
                history.append(_history_row(p, event))
        hepatitis.extend(_hepatitis_rows(p, start, end))
        for r in p.std_info.records:
            if _in_export_range(r.date, start, end):
                std.append({
                    "Date": r.date,
                    "HN": p.hn,
                    "Patient_Name": f"{p.first_name} {p.last_name}".strip(),
                    "Diseases": ", ".join(r.diseases),
                })
        for r in p.prep_info.records:
            if _in_export_range(r.date_start, start, end):
                prevention.append({"Date": r.date_start, "HN": p.hn, "Type": "PrEP", "Event": "Start", "Detail": ""})
            if r.date_stop and _in_export_range(r.date_stop, start, end):
                prevention.append({"Date": r.date_stop, "HN": p.hn, "Type": "PrEP", "Event": "Stop", "Detail": ""})
        for r in p.pep_info.records:
            if _in_export_range(r.date, start, end):
                prevention.append({"Date": r.date, "HN": p.hn, "Type": "PEP", "Event": "Received", "Detail": r.type or ""})
        for r in p.pregnancies:
            if _in_export_range(r.ga_date, start, end):
                pregnancy.append({
                    "Visit_Date": r.ga_date,
                    "HN": p.hn,
                    "GA": r.ga,
                    "End_Date": r.end_date or "",
                    "End_Reason": r.end_reason or "",
                })

    tables = {SHEET_PATIENTS: pd.DataFrame([_master_row(p, today) for p in patients])}
    for name, rows in (
            (SHEET_HIV_HISTORY, history),
            (SHEET_HEPATITIS, hepatitis),
            (SHEET_STD, std),
            (SHEET_PREVENTION, prevention),
            (SHEET_PREGNANCY, pregnancy),
    ):
        if rows:
            tables[name] = pd.DataFrame(rows)
    LOGGER.debug("Export sheets: %s", {name: len(df) for name, df in tables.items()})
    return tables


def export_file_name(start: date | None = None, end: date | None = None) -> str:
    start_label = start.isoformat() if start else "All"
    end_label = end.isoformat() if end else "All"
    return f"ID_Clinic_Export_{start_label}_to_{end_label}.xlsx"


def write_workbook(tables: typing.Mapping[str, pd.DataFrame], path) -> None:
    with pd.ExcelWriter(path, engine="openpyxl") as writer:
        for sheet_name, df in tables.items():
            df.to_excel(writer, sheet_name=sheet_name, index=False)


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------

class TableMapper(metaclass=abc.ABCMeta):
    @abc.abstractmethod
    def apply_mapping(
            self, tables: dict[str, pd.DataFrame], notepad: Notepad
    ) -> typing.Sequence[Patient]:
        # return fully-assembled Patient aggregates, not intermediate parts.
        raise NotImplementedError


class DefaultMapper(TableMapper):
    def __init__(self, today: date | None = None):
        """
        `today` is the registration date given to patients whose master row
        carries none.
        """
        self._today = today
        self.stats: dict[str, int] = defaultdict(int)

    def apply_mapping(
            self, tables: dict[str, pd.DataFrame], notepad: Notepad
    ) -> list[Patient]:
        """
        Process:
        1) choose/validate input tables
        2) map the master sheet to patients keyed by HN
        3) map detail rows to domain records
        4) group records per HN
        5) attach each bundle to its patient
        """
        self.stats.clear()
        typed_tables = self._choose_named_tables(tables, notepad)
        patients = self._map_patients_table(typed_tables.patients, notepad)

        entries: list[BundleEntry] = []
        entries.extend(self._map_hiv_history_table(typed_tables.hiv_history, notepad))
        entries.extend(self._map_hepatitis_table(typed_tables.hepatitis, notepad))
        entries.extend(self._map_std_table(typed_tables.std, notepad))
        entries.extend(self._map_prevention_table(typed_tables.prevention, notepad))
        entries.extend(self._map_pregnancy_table(typed_tables.pregnancy, notepad))

        grouped = self._group_records_by_patient(entries)
        for hn in grouped:
            if hn not in patients:
                notepad.add_warning(f"HN {hn!r} has records but no row in {SHEET_PATIENTS!r}; records skipped")

        return [
            self.construct_patient(patient, grouped.get(hn, {}), notepad)
            for hn, patient in patients.items()
        ]

    @staticmethod
    def _to_bool(value: typing.Any) -> bool:
        """
        Robust boolean parsing:
        - True for: 1, '1', 'true', 't', 'yes', 'y' (case-insensitive)
        - False for: 0, '0', 'false', 'f', 'no', 'n', '', None, NaN
        - Fallback: Python truthiness on other values (rare)
        """
        if isinstance(value, bool):
            return value
        if value is None or (not isinstance(value, str) and pd.isna(value)):
            return False
        s = str(value).strip().lower()
        if s in {"1", "true", "t", "yes", "y"}:
            return True
        if s in {"0", "false", "f", "no", "n", ""}:
            return False
        return bool(value)

    @staticmethod
    def _cell(value: typing.Any) -> str:
        """Trimmed text of a cell; None, NaN and blanks give ""."""
        if value is None:
            return ""
        if not isinstance(value, str) and pd.isna(value):
            return ""
        return str(value).strip()

    @staticmethod
    def _normalize_date_like(value: typing.Any) -> str:
        """
        Cell -> "YYYY-MM-DD":
        - ISO dates and timestamps keep their calendar day
        - "DD/MM/YYYY" is read as a Buddhist-era date
        - anything else -> ""
        """
        if value is None or (not isinstance(value, str) and pd.isna(value)):
            return ""
        iso = to_iso_date(value)
        if iso:
            return iso
        return buddhist_date_to_iso(str(value).strip())

    def _date_cell(self, row: pd.Series, column: str, where: str, notepad: Notepad) -> str:
        raw = self._cell(row.get(column))
        value = self._normalize_date_like(row.get(column))
        if raw and not value:
            notepad.add_warning(f"{where}: cannot read {column!r} value {raw!r} as a date")
        return value

    @staticmethod
    def _new_id() -> str:
        return uuid.uuid4().hex

    def _choose_named_tables(self, tables: dict[str, pd.DataFrame], notepad: Notepad) -> TypedTables:
        """
        Prefer explicit sheet names (plus common aliases).
        """

        def by_alias(kind: str) -> pd.DataFrame | None:
            aliases = KNOWN_SHEET_ALIASES[kind]
            for sheet_name, df in tables.items():
                if sheet_name.strip().casefold() in aliases:
                    return df
            return None

        selected = TypedTables(
            patients=by_alias("patients"),
            hiv_history=by_alias("hiv_history"),
            hepatitis=by_alias("hepatitis"),
            std=by_alias("std"),
            prevention=by_alias("prevention"),
            pregnancy=by_alias("pregnancy"),
        )

        # Hard-minimum: the master sheet must exist
        if selected.patients is None:
            notepad.add_error(f"Missing required sheet: {SHEET_PATIENTS!r}.")

        return selected

    @staticmethod
    def _missing_columns(kind: str, sheet_name: str, df: pd.DataFrame, notepad: Notepad) -> bool:
        missing = sorted(REQUIRED_COLUMNS[kind] - set(df.columns))
        if missing:
            notepad.add_error(f"Sheet {sheet_name!r}: missing required columns: {missing}")
            return True
        return False

    def _row_hn(self, row: pd.Series, where: str, notepad: Notepad) -> str | None:
        hn = self._cell(row.get("hn"))
        if not hn:
            notepad.add_error(f"{where}: missing HN")
            return None
        return hn

    @classmethod
    def _parse_id(cls, value: typing.Any) -> int | None:
        try:
            return int(float(cls._cell(value)))
        except (ValueError, OverflowError):
            return None

    def _patient_id(
            self,
            value: typing.Any,
            taken: set[int],
            used: set[int],
            where: str,
            notepad: Notepad,
    ) -> int:
        """
        Numeric ID from the master sheet. A blank or repeated ID gets the lowest
        number not written anywhere on the sheet and not yet handed out.
        """
        pid = self._parse_id(value)
        if pid is not None and pid in used:
            notepad.add_warning(f"{where}: duplicate ID {pid}; assigning a new one")
            pid = None
        if pid is None:
            pid = 1
            while pid in taken or pid in used:
                pid += 1
        used.add(pid)
        return pid

    # Table-level wrapper mappers
    def _map_patients_table(self, df: pd.DataFrame | None, notepad: Notepad) -> dict[str, Patient]:
        """
        Master sheet -> patients keyed by HN, in sheet order.
        A repeated HN keeps its first row.
        """
        patients: dict[str, Patient] = {}
        if df is None or self._missing_columns("patients", SHEET_PATIENTS, df, notepad):
            return patients
        taken = {pid for pid in (self._parse_id(v) for v in df.get("id", ())) if pid is not None}
        used: set[int] = set()

        for index, row in df.iterrows():
            where = f"Sheet {SHEET_PATIENTS!r}, row {index + 2}"
            hn = self._row_hn(row, where, notepad)
            if hn is None:
                continue
            if hn in patients:
                notepad.add_error(f"{where}: duplicate HN {hn!r}; keeping the first row")
                continue

            values = {column: self._cell(row.get(column)) for column in df.columns}
            for column in ("dob", "registration_date", "next_appointment_date",
                           "referral_date", "refer_out_date", "death_date"):
                values[column] = self._date_cell(row, column, where, notepad)
            if not values["registration_date"]:
                values["registration_date"] = (self._today or date.today()).isoformat()
            values["id"] = self._patient_id(values.get("id"), taken, used, where, notepad)
            values["hcv_vl_not_tested"] = self._to_bool(row.get("hcv_vl_not_tested"))
            values["updated_at"] = values.get("updated_at") or None

            try:
                patients[hn] = patient_from_row(values)
            except (ValueError, TypeError) as e:
                notepad.add_error(f"{where}: {e}")
                continue
            self.stats["patients"] += 1
        return patients

    def _map_hiv_history_table(self, df: pd.DataFrame | None, notepad: Notepad) -> list[BundleEntry]:
        """
        HIV history rows -> typed medical events.
        The legacy detail map comes from the Full_JSON column when it decodes,
        otherwise it is rebuilt from the flat columns.
        """
        entries: list[BundleEntry] = []
        if df is None or self._missing_columns("hiv_history", SHEET_HIV_HISTORY, df, notepad):
            return entries

        for index, row in df.iterrows():
            where = f"Sheet {SHEET_HIV_HISTORY!r}, row {index + 2}"
            hn = self._row_hn(row, where, notepad)
            if hn is None:
                continue
            details = self._history_details(row, where, notepad)
            try:
                event = event_from_row({
                    "id": self._new_id(),
                    "type": self._cell(row.get("type")),
                    "date": self._date_cell(row, "date", where, notepad),
                    "title": self._cell(row.get("title")),
                    "details": details,
                })
            except (ValueError, TypeError) as e:
                notepad.add_error(f"{where}: {e}")
                continue
            entries.append((hn, "medical_events", event))
            self.stats["medical_events"] += 1
        return entries

    def _history_details(self, row: pd.Series, where: str, notepad: Notepad) -> dict[str, typing.Any]:
        raw = self._cell(row.get("full_json"))
        if raw:
            try:
                decoded = json.loads(raw)
            except json.JSONDecodeError:
                notepad.add_warning(f"{where}: Full_JSON is not valid JSON; using the flat columns")
            else:
                if isinstance(decoded, dict):
                    return decoded
                notepad.add_warning(f"{where}: Full_JSON is not an object; using the flat columns")

        c = self._cell
        infections = [name.strip() for name in c(row.get("oi_infections")).split(",") if name.strip()]
        details: dict[str, typing.Any] = {
            KEY_CD4: c(row.get("cd4_count")),
            KEY_INITIAL_CD4: c(row.get("cd4_count")),
            KEY_CD4_PERCENT: c(row.get("cd4_percent")),
            KEY_INITIAL_CD4_PERCENT: c(row.get("cd4_percent")),
            KEY_VIRAL_LOAD: c(row.get("viral_load")),
            KEY_REGIMEN: c(row.get("arv_regimen")),
            KEY_FROM_REGIMEN: c(row.get("arv_previous")),
            KEY_TPT: self._to_bool(row.get("tpt_received")),
            KEY_TPT_REGIMEN: c(row.get("tpt_regimen")),
            KEY_PJP: self._to_bool(row.get("pjp_prophylaxis")),
            KEY_INFECTIONS: infections,
            KEY_REASON: c(row.get("reason")),
            KEY_DETECTION_REASON: c(row.get("reason")),
            KEY_DETAILS: c(row.get("other_details")),
        }
        return details

    def _map_hepatitis_table(self, df: pd.DataFrame | None, notepad: Notepad) -> list[BundleEntry]:
        entries: list[BundleEntry] = []
        if df is None or self._missing_columns("hepatitis", SHEET_HEPATITIS, df, notepad):
            return entries

        for index, row in df.iterrows():
            where = f"Sheet {SHEET_HEPATITIS!r}, row {index + 2}"
            hn = self._row_hn(row, where, notepad)
            if hn is None:
                continue
            disease = self._cell(row.get("disease")).upper()
            test_type = self._cell(row.get("test_type"))
            values = {
                "id": self._new_id(),
                "type": test_type,
                "result": self._cell(row.get("result")),
                "regimen": self._cell(row.get("regimen")),
                "date": self._date_cell(row, "date", where, notepad),
            }

            if disease == "HCV" and test_type in HCV_TEST_TYPES:
                table, build = "hcv_tests", hcv_test_from_row
            else:
                table = HEPATITIS_TEST_TABLES.get((disease, test_type))
                if table is None:
                    notepad.add_warning(f"{where}: unknown hepatitis record {disease!r}/{test_type!r}; skipped")
                    continue
                build = {
                    "hbv_hbsag_tests": hbsag_from_row,
                    "hcv_treatments": hcv_treatment_from_row,
                }.get(table, dated_result_from_row)

            try:
                record = build(values)
            except (ValueError, TypeError) as e:
                notepad.add_error(f"{where}: {e}")
                continue
            entries.append((hn, table, record))
            self.stats[table] += 1
        return entries

    def _map_std_table(self, df: pd.DataFrame | None, notepad: Notepad) -> list[BundleEntry]:
        entries: list[BundleEntry] = []
        if df is None or self._missing_columns("std", SHEET_STD, df, notepad):
            return entries

        for index, row in df.iterrows():
            where = f"Sheet {SHEET_STD!r}, row {index + 2}"
            hn = self._row_hn(row, where, notepad)
            if hn is None:
                continue
            record = std_from_row({
                "id": self._new_id(),
                "date": self._date_cell(row, "date", where, notepad),
                "diseases": self._cell(row.get("diseases")),
            })
            if not record.diseases:
                notepad.add_warning(f"{where}: STD episode without any disease")
            unlisted = [name for name in record.diseases if name not in STD_OPTIONS]
            if unlisted:
                notepad.add_warning(
                    f"{where}: {', '.join(unlisted)} not among the STD options; kept as other disease"
                )
            entries.append((hn, "std_records", record))
            self.stats["std_records"] += 1
        return entries

    def _map_prevention_table(self, df: pd.DataFrame | None, notepad: Notepad) -> list[BundleEntry]:
        """
        PrEP Start rows open a course, PrEP Stop rows are kept as bare dates
        and paired with a course in `construct_patient`; PEP rows are records.
        """
        entries: list[BundleEntry] = []
        if df is None or self._missing_columns("prevention", SHEET_PREVENTION, df, notepad):
            return entries

        for index, row in df.iterrows():
            where = f"Sheet {SHEET_PREVENTION!r}, row {index + 2}"
            hn = self._row_hn(row, where, notepad)
            if hn is None:
                continue
            kind = self._cell(row.get("type")).casefold()
            event = self._cell(row.get("event")).casefold()
            record_date = self._date_cell(row, "date", where, notepad)

            if kind == "prep" and event == "start":
                entries.append((hn, "prep_records", prep_from_row({"id": self._new_id(), "date_start": record_date})))
                self.stats["prep_records"] += 1
            elif kind == "prep" and event == "stop":
                entries.append((hn, "prep_stops", record_date))
            elif kind == "pep":
                try:
                    record = pep_from_row({
                        "id": self._new_id(),
                        "date": record_date,
                        "type": self._cell(row.get("detail")),
                    })
                except (ValueError, TypeError) as e:
                    notepad.add_error(f"{where}: {e}")
                    continue
                entries.append((hn, "pep_records", record))
                self.stats["pep_records"] += 1
            else:
                notepad.add_warning(f"{where}: unknown prevention record {kind!r}/{event!r}; skipped")
        return entries

    def _map_pregnancy_table(self, df: pd.DataFrame | None, notepad: Notepad) -> list[BundleEntry]:
        entries: list[BundleEntry] = []
        if df is None or self._missing_columns("pregnancy", SHEET_PREGNANCY, df, notepad):
            return entries

        for index, row in df.iterrows():
            where = f"Sheet {SHEET_PREGNANCY!r}, row {index + 2}"
            hn = self._row_hn(row, where, notepad)
            if hn is None:
                continue
            record = pregnancy_from_row({
                "id": self._new_id(),
                "ga": self._cell(row.get("ga")),
                "ga_date": self._date_cell(row, "ga_date", where, notepad),
                "end_date": self._date_cell(row, "end_date", where, notepad),
                "end_reason": self._cell(row.get("end_reason")),
            })
            entries.append((hn, "pregnancy_records", record))
            self.stats["pregnancy_records"] += 1
        return entries

    # Grouping and patient construction
    @staticmethod
    def _group_records_by_patient(entries: typing.Iterable[BundleEntry]) -> dict[str, dict[str, list]]:
        """Group all domain records by HN, producing a bundle per patient."""
        grouped: dict[str, dict[str, list]] = defaultdict(lambda: defaultdict(list))
        for hn, table, record in entries:
            grouped[hn][table].append(record)
        return grouped

    @staticmethod
    def _close_prep_courses(
            hn: str, courses: list[PrepRecord], stops: typing.Iterable[str], notepad: Notepad,
    ) -> None:
        # each stop closes the latest still-open course started on or before it
        for stop in sorted(stops):
            stop_date = parse_local_date(stop)
            candidates = [
                c for c in courses
                if c.is_active
                and stop_date is not None
                and (parse_local_date(c.date_start) or date.max) <= stop_date
            ]
            if not candidates:
                notepad.add_warning(f"HN {hn!r}: PrEP stop on {stop!r} has no open course; ignored")
                continue
            course = max(candidates, key=lambda c: parse_local_date(c.date_start))
            course.date_stop = stop

    def construct_patient(self, patient: Patient, bundle: typing.Mapping[str, list], notepad: Notepad) -> Patient:
        """Attach one HN's grouped records to its master-sheet patient."""
        patient.medical_history = list(bundle.get("medical_events", []))
        patient.pregnancies = list(bundle.get("pregnancy_records", []))
        patient.hbv_info = HbvInfo(
            hbsag_tests=bundle.get("hbv_hbsag_tests"),
            viral_loads=bundle.get("hbv_viral_loads"),
            ultrasounds=bundle.get("hbv_ultrasounds"),
            ct_scans=bundle.get("hbv_ct_scans"),
            summary=patient.hbv_info.summary,
        )
        patient.hcv_info = HcvInfo(
            hcv_tests=bundle.get("hcv_tests"),
            pre_treatment_vls=bundle.get("hcv_pre_treatment_vls"),
            treatments=bundle.get("hcv_treatments"),
            post_treatment_vls=bundle.get("hcv_post_treatment_vls"),
            vl_not_tested=patient.hcv_info.vl_not_tested,
        )
        patient.std_info = StdInfo(bundle.get("std_records"))
        courses = list(bundle.get("prep_records", []))
        self._close_prep_courses(patient.hn, courses, bundle.get("prep_stops", []), notepad)
        patient.prep_info = PrepInfo(courses)
        patient.pep_info = PepInfo(bundle.get("pep_records"))

        open_pregnancies = [r for r in patient.pregnancies if r.is_open]
        if len(open_pregnancies) > 1:
            notepad.add_warning(
                f"HN {patient.hn!r}: {len(open_pregnancies)} open pregnancies; the latest measurement is used"
            )
        return patient
