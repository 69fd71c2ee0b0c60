"""
Patient domain model.

The Patient is the root aggregate: demographics, appointment/discharge dates
and every clinical child collection. Updates always replace the whole
aggregate; derived values (status, HBV/HCV summaries) are never stored here.
"""

import time
import typing

from dataclasses import dataclass, field
from datetime import date
from enum import Enum

from .hepatitis import HbvInfo, HcvInfo
from .medical_event import MedicalEvent
from .pregnancy import PregnancyRecord
from .prevention import PepInfo, PrepInfo, StdInfo

SEX_MALE = "ชาย"
SEX_FEMALE = "หญิง"


class PatientStatus(Enum):
    ACTIVE = "Active"
    LTFU = "LTFU"
    TRANSFERRED = "Transferred"
    EXPIRED = "Expired"
    RESTART = "Restart"

    @classmethod
    def from_label(cls, label: str) -> "PatientStatus":
        """Case-insensitive lookup by value ("Active") or member name ("ACTIVE")."""
        key = str(label).strip().lower()
        for member in cls:
            if key in (member.value.lower(), member.name.lower()):
                return member
        raise ValueError(f"Unknown patient status: {label!r}")


@dataclass
class Patient:
    """
    Attributes:
        id: Persistent integer id, or a transient creation-time id.
        hn: Hospital number; unique key used by spreadsheet import/export.
        status: Stored status hint. Only RESTART is consulted when computing status.
        sex: SEX_MALE or SEX_FEMALE; other values are kept and counted as "other".
        dob, registration_date, next_appointment_date, refer_out_date, death_date,
        referral_date: Calendar dates as "YYYY-MM-DD" strings.
        updated_at: Last-modified timestamp, used to order the patient list.
    """
    id: int
    hn: str
    status: PatientStatus = PatientStatus.ACTIVE
    nap_id: str = ""
    national_id: str = ""
    title: str = ""
    first_name: str = ""
    last_name: str = ""
    dob: str | None = None
    sex: str | None = None
    risk_behavior: str = ""
    registration_date: str | None = None
    next_appointment_date: str | None = None
    occupation: str = ""
    partner_status: str = ""
    partner_hiv_status: str = ""
    address: str = ""
    subdistrict: str = ""
    district: str = ""
    province: str = ""
    phone: str = ""
    healthcare_scheme: str = ""
    referral_type: str = ""
    referred_from: str = ""
    referral_date: str | None = None
    refer_out_date: str | None = None
    refer_out_location: str = ""
    death_date: str | None = None
    updated_at: str | None = None

    medical_history: list[MedicalEvent] = field(default_factory=list)
    pregnancies: list[PregnancyRecord] = field(default_factory=list)
    hbv_info: HbvInfo = field(default_factory=HbvInfo)
    hcv_info: HcvInfo = field(default_factory=HcvInfo)
    std_info: StdInfo = field(default_factory=StdInfo)
    prep_info: PrepInfo = field(default_factory=PrepInfo)
    pep_info: PepInfo = field(default_factory=PepInfo)

    def __post_init__(self):
        if not isinstance(self.status, PatientStatus):
            self.status = PatientStatus.from_label(self.status)

        # aggregates rebuilt from spreadsheets may lack whole collections
        self.medical_history = list(self.medical_history or [])
        self.pregnancies = list(self.pregnancies or [])
        if self.hbv_info is None:
            self.hbv_info = HbvInfo()
        if self.hcv_info is None:
            self.hcv_info = HcvInfo()
        if self.std_info is None:
            self.std_info = StdInfo()
        if self.prep_info is None:
            self.prep_info = PrepInfo()
        if self.pep_info is None:
            self.pep_info = PepInfo()

    @property
    def full_name(self) -> str:
        return f"{self.title}{self.first_name} {self.last_name}".strip()

    @classmethod
    def new(cls, hn: str, today: date | None = None, **fields: typing.Any) -> "Patient":
        """
        Create a patient from a registration form: transient id, status Active,
        registration date = today.
        """
        fields.pop("id", None)
        fields.pop("status", None)
        registration = (today or date.today()).isoformat()
        fields.setdefault("registration_date", registration)
        return cls(
            id=int(time.time() * 1000),
            hn=hn,
            status=PatientStatus.ACTIVE,
            **fields,
        )
