"""
Ensure the table-level wrappers enforce required columns and report errors.

Each *_table method should return nothing and emit an error if required columns are missing.
"""

import pandas as pd
from stairval.notepad import create_notepad
from idclinic.mapper import DefaultMapper


def test_map_patients_table_missing_hn_errors():
    note = create_notepad("patients")
    df = pd.DataFrame({"first_name": ["Somchai"]})
    assert DefaultMapper()._map_patients_table(df, note) == {}
    assert note.has_errors(include_subsections=True)


def test_map_hiv_history_table_missing_required_columns_errors():
    note = create_notepad("hiv_history")
    df = pd.DataFrame({"hn": ["0001"], "date": ["2024-01-01"]})
    assert DefaultMapper()._map_hiv_history_table(df, note) == []
    assert note.has_errors(include_subsections=True)


def test_map_hepatitis_table_missing_required_columns_errors():
    note = create_notepad("hepatitis")
    df = pd.DataFrame({"hn": ["0001"], "date": ["2024-01-01"], "disease": ["HBV"]})
    assert DefaultMapper()._map_hepatitis_table(df, note) == []
    assert note.has_errors(include_subsections=True)


def test_map_prevention_table_missing_required_columns_errors():
    note = create_notepad("prevention")
    df = pd.DataFrame({"hn": ["0001"], "date": ["2024-01-01"], "type": ["PrEP"]})
    assert DefaultMapper()._map_prevention_table(df, note) == []
    assert note.has_errors(include_subsections=True)


def test_map_pregnancy_table_missing_required_columns_errors():
    note = create_notepad("pregnancy")
    df = pd.DataFrame({"hn": ["0001"], "ga": ["20+0"]})
    assert DefaultMapper()._map_pregnancy_table(df, note) == []
    assert note.has_errors(include_subsections=True)


def test_absent_sheet_is_silently_empty():
    note = create_notepad("std")
    assert DefaultMapper()._map_std_table(None, note) == []
    assert not note.has_errors(include_subsections=True)


def test_row_without_hn_is_an_error():
    note = create_notepad("std")
    df = pd.DataFrame({"hn": [""], "date": ["2024-01-01"], "diseases": ["HSV"]})
    assert DefaultMapper()._map_std_table(df, note) == []
    assert note.has_errors(include_subsections=True)
