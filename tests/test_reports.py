"""
Dashboard counts, programme summary and monthly trends.
"""

from datetime import date

from idclinic.hepatitis import HbsAgTest, HbvInfo, HcvInfo, HcvTest
from idclinic.listing import received_tpt
from idclinic.medical_event import DiagnosisEvent, ProphylaxisEvent
from idclinic.patient import PatientStatus
from idclinic.prevention import PepInfo, PepRecord, PrepInfo, PrepRecord, StdInfo, StdRecord
from idclinic.reports import TREND_CATEGORIES, dashboard_stats, monthly_trends, report_summary, trend_table


def _cohort(make_patient):
    return [
        make_patient(sex="ชาย", nap_id="NAP1", next_appointment_date="2024-07-01", healthcare_scheme="UC",
                     medical_history=[DiagnosisEvent(id="d", date="2024-01-10"),
                                      ProphylaxisEvent(id="t", date="2024-02-01", tpt=True)],
                     hbv_info=HbvInfo(hbsag_tests=[HbsAgTest(id="h", result="Positive", date="2024-01-20")])),
        make_patient(sex="หญิง", next_appointment_date="2024-05-01", healthcare_scheme="UC",
                     hcv_info=HcvInfo(hcv_tests=[HcvTest(id="c", type="Anti-HCV", result="Positive", date="2024-01-01")]),
                     prep_info=PrepInfo([PrepRecord(id="p", date_start="2024-03-01")])),
        make_patient(sex="อื่นๆ", death_date="2024-04-01", healthcare_scheme="SSO",
                     pep_info=PepInfo([PepRecord(id="x", date="2024-02-15", type="oPEP")]),
                     std_info=StdInfo([StdRecord(id="s", date="2023-12-31", diseases=["HSV"])])),
        make_patient(next_appointment_date="2024-08-01", status=PatientStatus.RESTART),
        make_patient(),
    ]


def test_dashboard_stats(make_patient, today):
    stats = dashboard_stats(_cohort(make_patient), today)
    assert stats.total == 5
    assert stats.by_status[PatientStatus.ACTIVE] == 1
    assert stats.by_status[PatientStatus.LTFU] == 1
    assert stats.by_status[PatientStatus.EXPIRED] == 1
    assert stats.by_status[PatientStatus.RESTART] == 1
    assert stats.no_data == 1
    assert stats.in_care == 2
    assert (stats.male, stats.female, stats.nap) == (1, 1, 1)


def test_report_summary(make_patient, today):
    summary = report_summary(_cohort(make_patient), today)
    assert summary.total == 5
    assert summary.active == 2
    assert summary.hbv == 1
    assert summary.hcv == 1
    assert (summary.tpt, summary.prep, summary.pep, summary.std) == (1, 1, 1, 1)
    assert summary.gender == {"male": 1, "female": 1, "other": 3}
    assert list(summary.scheme) == ["UC", "Unspecified", "SSO"]
    assert summary.scheme["UC"] == 2


def test_monthly_trends_range_is_inclusive(make_patient):
    trends = monthly_trends(_cohort(make_patient), date(2024, 1, 10), date(2024, 3, 1))
    assert set(trends) == set(TREND_CATEGORIES)
    assert trends["hiv_diagnosis"] == {"2024-01": 1}
    assert trends["hbv_positive"] == {"2024-01": 1}
    assert trends["tpt"] == {"2024-02": 1}
    assert trends["prep_start"] == {"2024-03": 1}
    assert trends["pep"] == {"2024-02": 1}
    assert trends["std"] == {}


def test_monthly_trends_unbounded(make_patient):
    assert monthly_trends(_cohort(make_patient))["std"] == {"2023-12": 1}


def test_trend_table(make_patient):
    df = trend_table(_cohort(make_patient))
    assert list(df.columns) == list(TREND_CATEGORIES)
    assert df.index.name == "month"
    assert df.loc["2024-02", "pep"] == 1
    assert df.loc["2023-12", "hiv_diagnosis"] == 0


def test_tpt_total_matches_list_filter(make_patient, today):
    patients = [
        make_patient(medical_history=[ProphylaxisEvent(id="a", date="2024-01-01", pjp_prophylaxis=True)]),
        make_patient(medical_history=[ProphylaxisEvent(id="b", date="2024-01-01", tpt=True, tpt_regimen="3HP"),
                                      ProphylaxisEvent(id="c", date="2024-03-01", tpt=True, tpt_regimen="3HP")]),
    ]
    assert report_summary(patients, today).tpt == 1
    assert report_summary(patients, today).tpt == sum(received_tpt(p) for p in patients)
