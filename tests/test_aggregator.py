"""
Assembling full patient aggregates from persisted rows.
"""

import json
import logging

import pytest

from idclinic.aggregator import assemble_patient, assemble_patients, group_rows_by_patient
from idclinic.hepatitis import AUTOMATIC, ManualSummary, QualitativeResult
from idclinic.medical_event import LabResultEvent, OpportunisticInfectionEvent
from idclinic.patient import PatientStatus


@pytest.fixture
def patient_row():
    return {
        "id": 7,
        "hn": "0007",
        "status": "Active",
        "first_name": "Somchai",
        "last_name": "Jaidee",
        "dob": "1980-05-20T00:00:00.000Z",
        "sex": "ชาย",
        "next_appointment_date": "2024-07-01",
        "hbv_manual_summary": None,
        "hcv_vl_not_tested": True,
        "updated_at": "2024-06-01T08:00:00Z",
    }


def test_core_row_only_gives_empty_collections(patient_row):
    p = assemble_patient(patient_row)
    assert p.id == 7
    assert p.status is PatientStatus.ACTIVE
    assert p.dob == "1980-05-20"
    assert p.medical_history == []
    assert p.hbv_info.summary is AUTOMATIC
    assert p.hcv_info.vl_not_tested is True
    assert p.prep_info.records == []


def test_children_are_typed(patient_row):
    p = assemble_patient(patient_row, {
        "medical_events": [
            {"id": "e1", "type": "LAB_RESULT", "date": "2024-01-01", "details": '{"CD4": "350", "Viral load": "<20"}'},
            {"id": "e2", "type": "OPPORTUNISTIC_INFECTION", "date": "2023-01-01", "details": {"โรค": "PCP"}},
        ],
        "hbv_hbsag_tests": [{"id": "h1", "result": "Negative", "date": "2023-01-01"}],
        "hcv_tests": [{"id": "c1", "type": "Anti-HCV", "result": "Negative", "date": "2023-01-01"}],
        "std_records": [{"id": "s1", "date": "2023-05-05", "diseases": ["HSV", " "]}],
        "prep_records": [{"id": "p1", "date_start": "2023-01-01", "date_stop": None}],
        "pep_records": [{"id": "x1", "date": "2023-01-01", "type": "nPEP"}],
        "pregnancy_records": [{"id": "g1", "ga": "20+0", "ga_date": "2024-05-01", "end_date": ""}],
    })
    lab, oi = p.medical_history
    assert isinstance(lab, LabResultEvent) and lab.cd4 == "350"
    assert isinstance(oi, OpportunisticInfectionEvent) and oi.infections == ["PCP"]
    assert p.hbv_info.hbsag_tests[0].result is QualitativeResult.NEGATIVE
    assert p.std_info.records[0].diseases == ["HSV"]
    assert p.prep_info.records[0].is_active
    assert p.pep_info.records[0].type == "nPEP"
    assert p.pregnancies[0].is_open


def test_manual_summary_is_kept(patient_row):
    patient_row["hbv_manual_summary"] = "เป็น HBV"
    assert assemble_patient(patient_row).hbv_info.summary == ManualSummary("เป็น HBV")


def test_unknown_event_type_raises(patient_row):
    with pytest.raises(ValueError):
        assemble_patient(patient_row, {"medical_events": [{"id": "e", "type": "VACCINE", "date": "2024-01-01"}]})


def test_group_rows_ignores_unknown_tables(caplog):
    with caplog.at_level(logging.WARNING):
        grouped = group_rows_by_patient({
            "std_records": [{"patient_id": 1, "id": "s"}, {"patient_id": 2, "id": "t"}],
            "vaccines": [{"patient_id": 1}],
        })
    assert set(grouped) == {1, 2}
    assert "vaccines" in caplog.text


def test_assemble_patients_keeps_row_order(patient_row):
    other = dict(patient_row, id=3, hn="0003")
    patients = assemble_patients(
        [patient_row, other],
        {"pep_records": [{"patient_id": 3, "id": "x", "date": "2024-01-01", "type": "oPEP"}]},
    )
    assert [p.hn for p in patients] == ["0007", "0003"]
    assert patients[0].pep_info.records == []
    assert len(patients[1].pep_info.records) == 1


def test_json_details_text(patient_row):
    details = json.dumps({"สูตรยา": "TDF + 3TC + DTG"}, ensure_ascii=False)
    p = assemble_patient(patient_row, {"medical_events": [
        {"id": "e", "type": "ART_START", "date": "2020-01-15", "details": details},
    ]})
    assert p.medical_history[0].regimen == "TDF + 3TC + DTG"


def test_unreadable_json_details_are_empty(patient_row, caplog):
    with caplog.at_level(logging.WARNING):
        p = assemble_patient(patient_row, {"medical_events": [
            {"id": "e", "type": "ART_START", "date": "2020-01-15", "details": "{not json"},
        ]})
    assert p.medical_history[0].regimen == ""
    assert "Unreadable event details" in caplog.text
