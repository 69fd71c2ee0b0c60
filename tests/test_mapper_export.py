"""
Export workbook: master sheet with clinical summaries plus date-filtered
detail sheets.
"""

import json

import pandas as pd
import pytest

from datetime import date

from idclinic.hepatitis import HbsAgTest, HbvInfo, ManualSummary
from idclinic.mapper import (
    SHEET_HEPATITIS,
    SHEET_HIV_HISTORY,
    SHEET_PATIENTS,
    SHEET_PREGNANCY,
    SHEET_PREVENTION,
    SHEET_STD,
    export_file_name,
    export_tables,
    pep_status_text,
    pregnancy_status_text,
    prep_status_text,
    tpt_status_text,
    write_workbook,
)
from idclinic.medical_event import ArtStartEvent, OpportunisticInfectionEvent, ProphylaxisEvent
from idclinic.pregnancy import PregnancyRecord
from idclinic.prevention import PepInfo, PepRecord, PrepInfo, PrepRecord, StdInfo, StdRecord


@pytest.fixture
def patient(make_patient):
    return make_patient(
        hn="0001", first_name="Somchai", last_name="Jaidee", dob="1980-05-20", sex="ชาย",
        next_appointment_date="2024-07-01",
        medical_history=[
            ArtStartEvent(id="a", date="2020-01-15", regimen="TDF + 3TC + DTG"),
            ProphylaxisEvent(id="t", date="2024-02-01", tpt=True, tpt_regimen="3HP"),
            OpportunisticInfectionEvent(id="o", date="2024-03-01", infections=["PCP"], other_infection="CMV"),
        ],
        hbv_info=HbvInfo(
            hbsag_tests=[HbsAgTest(id="h", result="Negative", date="2024-01-01")],
            summary=ManualSummary("เป็น HBV"),
        ),
        std_info=StdInfo([
            StdRecord(id="s1", date="2023-05-05", diseases=["HSV", "Gonorrhea"]),
            StdRecord(id="s2", date="2024-02-05", diseases=["Gonorrhea"]),
        ]),
        prep_info=PrepInfo([PrepRecord(id="p", date_start="2023-03-01", date_stop="2024-02-10")]),
        pep_info=PepInfo([PepRecord(id="x", date="2024-01-10", type="nPEP"), PepRecord(id="y", date="2024-04-10")]),
    )


def test_status_texts(patient, make_patient):
    assert tpt_status_text(patient) == "Received: 3HP (2024-02-01)"
    assert prep_status_text(patient) == "Past History"
    assert pep_status_text(patient) == "Yes (2 times)"
    assert pregnancy_status_text(patient) == "No"

    bare = make_patient(pregnancies=[PregnancyRecord(id="g", ga="12+0", ga_date="2024-05-01")])
    assert tpt_status_text(bare) == "Never"
    assert prep_status_text(bare) == "Never"
    assert pep_status_text(bare) == "Never"
    assert pregnancy_status_text(bare) == "Pregnant (GA: 12+0)"


def test_master_sheet_columns(patient, today):
    tables = export_tables([patient], today=today)
    row = tables[SHEET_PATIENTS].iloc[0]
    assert row["HN"] == "0001"
    assert row["Age"] == 44
    assert row["Latest_ARV_Regimen"] == "TDF + 3TC + DTG"
    assert row["HBV_Summary"] == "เป็น HBV"
    assert row["HBV_Manual_Summary"] == "เป็น HBV"
    assert row["STD_Summary"] == "HSV, Gonorrhea"
    assert row["Status"] == "Active"
    assert row["Computed_Status"] == "Active"


def test_no_range_exports_everything(patient, today):
    tables = export_tables([patient], today=today)
    assert len(tables[SHEET_HIV_HISTORY]) == 3
    assert len(tables[SHEET_STD]) == 2
    # PrEP start, PrEP stop and two PEP rows
    assert len(tables[SHEET_PREVENTION]) == 4
    assert len(tables[SHEET_HEPATITIS]) == 1
    assert SHEET_PREGNANCY not in tables


def test_range_filters_detail_rows_but_not_master(patient, make_patient, today):
    other = make_patient(hn="0002")
    tables = export_tables([patient, other], start=date(2024, 2, 1), end=date(2024, 2, 29), today=today)
    assert len(tables[SHEET_PATIENTS]) == 2
    assert list(tables[SHEET_HIV_HISTORY]["Event_Type"]) == ["PROPHYLAXIS"]
    assert list(tables[SHEET_STD]["Date"]) == ["2024-02-05"]
    assert list(tables[SHEET_PREVENTION]["Event"]) == ["Stop"]
    assert SHEET_HEPATITIS not in tables


def test_history_row_keeps_full_json(patient, today):
    history = export_tables([patient], today=today)[SHEET_HIV_HISTORY]
    oi = history[history["Event_Type"] == "OPPORTUNISTIC_INFECTION"].iloc[0]
    assert oi["OI_Infections"] == "PCP, CMV"
    assert json.loads(oi["Full_JSON"])["infections"] == ["PCP"]


def test_export_file_name():
    assert export_file_name() == "ID_Clinic_Export_All_to_All.xlsx"
    assert export_file_name(date(2024, 1, 1), None) == "ID_Clinic_Export_2024-01-01_to_All.xlsx"
    assert export_file_name(date(2024, 1, 1), date(2024, 3, 31)) == "ID_Clinic_Export_2024-01-01_to_2024-03-31.xlsx"


def test_write_workbook(tmp_path, patient, today):
    out = tmp_path / "export.xlsx"
    write_workbook(export_tables([patient], today=today), out)
    sheets = pd.ExcelFile(out, engine="openpyxl").sheet_names
    assert sheets[0] == SHEET_PATIENTS
    assert SHEET_HIV_HISTORY in sheets
