import pandas as pd
import pytest

from datetime import date

from idclinic.patient import Patient


@pytest.fixture(scope="session")
def today() -> date:
    """
    Fixed evaluation date so status and reminder tests do not drift.
    """
    return date(2024, 6, 15)


@pytest.fixture
def make_patient():
    """
    Factory for bare patients: `make_patient(hn="HN1", next_appointment_date="2024-07-01")`.
    """
    counter = iter(range(1, 10_000))

    def _make(**fields) -> Patient:
        fields.setdefault("id", next(counter))
        fields.setdefault("hn", f"HN{fields['id']:04d}")
        return Patient(**fields)

    return _make


@pytest.fixture
def clinic_workbook(tmp_path) -> str:
    """
    A small workbook in the export layout: two patients on the master sheet
    plus one row on every detail sheet, and one orphan row for an unknown HN.
    """
    patients = pd.DataFrame({
        "ID": [1, 2],
        "HN": ["0001", "0002"],
        "Title": ["นาย", "นาง"],
        "FirstName": ["Somchai", "Malee"],
        "LastName": ["Jaidee", "Suksan"],
        "DOB": ["1980-05-20", "1992-01-10"],
        "Sex": ["ชาย", "หญิง"],
        "Phone": ["0811111111", "0822222222"],
        "Status": ["Active", "Active"],
        "Next_Appointment_Date": ["2024-07-01", "2024-05-01"],
        "Healthcare_Scheme": ["UC", ""],
        "Registration_Date": ["2020-01-01", "2021-03-04"],
        "Updated_At": ["2024-06-01T08:00:00Z", "2024-06-10T08:00:00Z"],
    })
    history = pd.DataFrame({
        "Date": ["2020-01-02", "2020-01-15", "2024-02-01"],
        "HN": ["0001", "0001", "0001"],
        "Event_Type": ["DIAGNOSIS", "ART_START", "PROPHYLAXIS"],
        "Event_Title": ["HIV diagnosis", "Start ART", "TPT"],
        "ARV_Regimen": ["", "TDF + 3TC + DTG", ""],
        "TPT_Received": ["", "", "Yes"],
        "TPT_Regimen": ["", "", "3HP"],
    })
    hepatitis = pd.DataFrame({
        "Date": ["2023-01-01", "2023-02-01"],
        "HN": ["0001", "0002"],
        "Disease": ["HBV", "HCV"],
        "Test_Type": ["HBsAg", "Anti-HCV"],
        "Result": ["Positive", "Positive"],
    })
    std = pd.DataFrame({
        "Date": ["2023-05-05"],
        "HN": ["0001"],
        "Diseases": ["Gonorrhea, Primary Syphilis"],
    })
    prevention = pd.DataFrame({
        "Date": ["2023-03-01", "2023-09-01", "2024-01-10"],
        "HN": ["0002", "0002", "0002"],
        "Type": ["PrEP", "PrEP", "PEP"],
        "Event": ["Start", "Stop", "Received"],
        "Detail": ["", "", "nPEP"],
    })
    pregnancy = pd.DataFrame({
        "Visit_Date": ["2024-05-01", "2024-05-01"],
        "HN": ["0002", "9999"],
        "GA": ["20+0", "10+0"],
    })

    path = tmp_path / "clinic.xlsx"
    with pd.ExcelWriter(path, engine="openpyxl") as w:
        patients.to_excel(w, sheet_name="Patients_Master", index=False)
        history.to_excel(w, sheet_name="HIV_History", index=False)
        hepatitis.to_excel(w, sheet_name="Hepatitis_Records", index=False)
        std.to_excel(w, sheet_name="STD_History", index=False)
        prevention.to_excel(w, sheet_name="Prevention_Records", index=False)
        pregnancy.to_excel(w, sheet_name="Pregnancy_Records", index=False)
    return str(path)
