"""
DefaultMapper.apply_mapping on workbooks in the export layout.
"""

import pandas as pd

from stairval.notepad import create_notepad

from idclinic.hepatitis import QualitativeResult
from idclinic.loader import load_sheets_as_tables, normalize_headers
from idclinic.mapper import DefaultMapper, export_tables, write_workbook
from idclinic.medical_event import ArtStartEvent, DiagnosisEvent, ProphylaxisEvent
from idclinic.patient import PatientStatus


def _by_hn(patients):
    return {p.hn: p for p in patients}


def test_clinic_workbook_maps_every_sheet(clinic_workbook, today):
    notepad = create_notepad("workbook")
    mapper = DefaultMapper(today=today)
    patients = _by_hn(mapper.apply_mapping(load_sheets_as_tables(clinic_workbook), notepad))

    assert not notepad.has_errors(include_subsections=True)
    assert set(patients) == {"0001", "0002"}

    somchai = patients["0001"]
    assert somchai.id == 1
    assert somchai.first_name == "Somchai"
    assert somchai.status is PatientStatus.ACTIVE
    assert [type(e) for e in somchai.medical_history] == [DiagnosisEvent, ArtStartEvent, ProphylaxisEvent]
    assert somchai.medical_history[1].regimen == "TDF + 3TC + DTG"
    assert somchai.medical_history[2].tpt and somchai.medical_history[2].tpt_regimen == "3HP"
    assert somchai.hbv_info.hbsag_tests[0].result is QualitativeResult.POSITIVE
    assert somchai.std_info.records[0].diseases == ["Gonorrhea", "Primary Syphilis"]

    malee = patients["0002"]
    assert malee.healthcare_scheme == ""
    assert malee.hcv_info.hcv_tests[0].type == "Anti-HCV"
    (course,) = malee.prep_info.records
    assert (course.date_start, course.date_stop) == ("2023-03-01", "2023-09-01")
    assert malee.pep_info.records[0].type == "nPEP"
    assert malee.pregnancies[0].ga == "20+0"

    assert mapper.stats["patients"] == 2
    assert mapper.stats["medical_events"] == 3
    assert mapper.stats["pregnancy_records"] == 2


def test_orphan_records_are_warned(clinic_workbook, today):
    notepad = create_notepad("workbook")
    DefaultMapper(today=today).apply_mapping(load_sheets_as_tables(clinic_workbook), notepad)
    assert notepad.has_warnings(include_subsections=True)
    assert any("9999" in w.message for w in notepad.warnings())


def test_missing_master_sheet_is_an_error():
    notepad = create_notepad("workbook")
    tables = {"HIV_History": normalize_headers(pd.DataFrame({"HN": ["1"], "Date": ["2024-01-01"], "Event_Type": ["OTHER"]}))}
    patients = DefaultMapper().apply_mapping(tables, notepad)
    assert patients == []
    assert notepad.has_errors(include_subsections=True)


def test_duplicate_hn_keeps_first_row(today):
    notepad = create_notepad("workbook")
    df = normalize_headers(pd.DataFrame({"HN": ["0001", "0001"], "FirstName": ["First", "Second"]}))
    patients = DefaultMapper(today=today).apply_mapping({"Patients_Master": df}, notepad)
    assert [p.first_name for p in patients] == ["First"]
    assert any("duplicate HN" in e.message for e in notepad.errors())


def test_missing_registration_date_defaults_to_today(today):
    notepad = create_notepad("workbook")
    df = normalize_headers(pd.DataFrame({"HN": ["0001"], "DOB": ["20/05/2523"]}))
    (p,) = DefaultMapper(today=today).apply_mapping({"Patients_Master": df}, notepad)
    assert p.registration_date == today.isoformat()
    assert p.dob == "1980-05-20"


def test_unreadable_date_is_a_warning(today):
    notepad = create_notepad("workbook")
    df = normalize_headers(pd.DataFrame({"HN": ["0001"], "Next_Appointment_Date": ["soon"]}))
    (p,) = DefaultMapper(today=today).apply_mapping({"Patients_Master": df}, notepad)
    assert p.next_appointment_date is None
    assert not notepad.has_errors(include_subsections=True)
    assert notepad.has_warnings(include_subsections=True)


def test_detail_sheet_missing_columns_is_an_error(today):
    notepad = create_notepad("workbook")
    tables = {
        "Patients_Master": normalize_headers(pd.DataFrame({"HN": ["0001"]})),
        "STD_History": normalize_headers(pd.DataFrame({"HN": ["0001"], "Date": ["2024-01-01"]})),
    }
    (p,) = DefaultMapper(today=today).apply_mapping(tables, notepad)
    assert p.std_info.records == []
    assert any("diseases" in e.message for e in notepad.errors())


def test_bad_rows_are_reported_not_raised(today):
    notepad = create_notepad("workbook")
    tables = {
        "Patients_Master": normalize_headers(pd.DataFrame({"HN": ["0001", "0002"], "Status": ["Active", "Asleep"]})),
        "Hepatitis_Records": normalize_headers(pd.DataFrame({
            "HN": ["0001", "0001"],
            "Date": ["2024-01-01", "2024-01-02"],
            "Disease": ["HBV", "HDV"],
            "Test_Type": ["HBsAg", "Anti-HDV"],
            "Result": ["Maybe", "Positive"],
        })),
    }
    patients = DefaultMapper(today=today).apply_mapping(tables, notepad)
    assert [p.hn for p in patients] == ["0001"]
    assert patients[0].hbv_info.hbsag_tests == []
    assert len(list(notepad.errors())) == 2
    assert any("HDV" in w.message for w in notepad.warnings())


def test_prep_stop_without_course_is_warned(today):
    notepad = create_notepad("workbook")
    tables = {
        "Patients_Master": normalize_headers(pd.DataFrame({"HN": ["0001"]})),
        "Prevention_Records": normalize_headers(pd.DataFrame({
            "HN": ["0001", "0001"],
            "Date": ["2024-03-01", "2024-01-01"],
            "Type": ["PrEP", "PrEP"],
            "Event": ["Start", "Stop"],
        })),
    }
    (p,) = DefaultMapper(today=today).apply_mapping(tables, notepad)
    assert p.prep_info.records[0].is_active
    assert any("no open course" in w.message for w in notepad.warnings())


def test_export_then_import_keeps_the_clinical_picture(tmp_path, clinic_workbook, today):
    mapper = DefaultMapper(today=today)
    first = mapper.apply_mapping(load_sheets_as_tables(clinic_workbook), create_notepad("first"))
    out = tmp_path / "again.xlsx"
    write_workbook(export_tables(first, today=today), out)

    notepad = create_notepad("second")
    second = _by_hn(DefaultMapper(today=today).apply_mapping(load_sheets_as_tables(str(out)), notepad))
    assert not notepad.has_errors(include_subsections=True)
    for before in first:
        after = second[before.hn]
        assert after.full_name == before.full_name
        assert after.next_appointment_date == before.next_appointment_date
        assert [e.to_details() for e in after.medical_history] == [e.to_details() for e in before.medical_history]
        assert [(r.date_start, r.date_stop) for r in after.prep_info.records] == \
               [(r.date_start, r.date_stop) for r in before.prep_info.records]
        assert len(after.pregnancies) == len(before.pregnancies)


def test_blank_or_repeated_id_gets_a_free_number(today):
    notepad = create_notepad("workbook")
    df = normalize_headers(pd.DataFrame({"ID": ["", "1", "1"], "HN": ["A", "B", "C"]}))
    patients = DefaultMapper(today=today).apply_mapping({"Patients_Master": df}, notepad)
    assert [(p.hn, p.id) for p in patients] == [("A", 2), ("B", 1), ("C", 3)]
    assert any("duplicate ID 1" in w.message for w in notepad.warnings())


def test_unlisted_std_name_is_kept_with_a_warning(today):
    notepad = create_notepad("workbook")
    tables = {
        "Patients_Master": normalize_headers(pd.DataFrame({"HN": ["0001"]})),
        "STD_History": normalize_headers(pd.DataFrame({
            "HN": ["0001"], "Date": ["2024-01-01"], "Diseases": ["HSV, Scabies"],
        })),
    }
    (p,) = DefaultMapper(today=today).apply_mapping(tables, notepad)
    assert p.std_info.records[0].diseases == ["HSV", "Scabies"]
    assert not notepad.has_errors(include_subsections=True)
    assert any("Scabies" in w.message and "HSV" not in w.message for w in notepad.warnings())
