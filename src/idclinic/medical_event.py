"""
Medical event domain model.

HIV treatment history is a list of dated events. Each `MedicalEventType` has
its own dataclass with named fields, replacing the free-form detail maps the
clinic stored historically. `from_details` normalises those legacy maps (Thai
keys, renamed keys, the old single-disease `โรค` key) exactly once, when
records enter the system; `to_details` renders the legacy map back for export.
"""

import typing

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import ClassVar

from .dates import parse_local_date


class MedicalEventType(Enum):
    DIAGNOSIS = "DIAGNOSIS"
    ART_START = "ART_START"
    PROPHYLAXIS = "PROPHYLAXIS"
    MISSED_MEDS = "MISSED_MEDS"
    ART_CHANGE = "ART_CHANGE"
    OPPORTUNISTIC_INFECTION = "OPPORTUNISTIC_INFECTION"
    LAB_RESULT = "LAB_RESULT"
    OTHER = "OTHER"

    @classmethod
    def from_label(cls, label: str) -> "MedicalEventType":
        """Accept 'ART_START', 'art start', 'Art-Start' and similar spellings."""
        key = str(label).strip().upper().replace(" ", "_").replace("-", "_")
        try:
            return cls(key)
        except ValueError:
            raise ValueError(f"Unknown medical event type: {label!r}")


# Legacy detail keys, as written by the clinic's forms
KEY_INITIAL_CD4 = "Initial CD4 count"
KEY_INITIAL_CD4_PERCENT = "Initial CD4 %"
KEY_DETECTION_REASON = "สาเหตุที่ตรวจพบ"
KEY_REGIMEN = "สูตรยา"
KEY_FROM_REGIMEN = "จาก"
KEY_TO_REGIMEN = "เป็น"
KEY_REASON = "เหตุผล"
KEY_TPT = "TPT"
KEY_TPT_REGIMEN = "สูตร TPT"
KEY_PJP = "PJP Prophylaxis"
KEY_OTHER = "อื่นๆ"
KEY_INFECTIONS = "infections"
KEY_OTHER_INFECTION = "การติดเชื้ออื่นๆ"
KEY_LEGACY_DISEASE = "โรค"
KEY_CD4 = "CD4"
KEY_CD4_PERCENT = "CD4 %"
KEY_VIRAL_LOAD = "Viral load"
KEY_DETAILS = "รายละเอียด"


def _text(details: typing.Mapping[str, typing.Any], *keys: str) -> str:
    # first non-blank value among the candidate keys
    for key in keys:
        value = details.get(key)
        if value is None:
            continue
        s = str(value).strip()
        if s:
            return s
    return ""


def _flag(details: typing.Mapping[str, typing.Any], *keys: str) -> bool:
    for key in keys:
        value = details.get(key)
        if isinstance(value, bool):
            if value:
                return True
            continue
        if value is None:
            continue
        if str(value).strip().lower() in {"1", "true", "t", "yes", "y", "on"}:
            return True
    return False


@dataclass
class MedicalEvent:
    """
    Common fields of every history entry.

    Attributes:
        id: Record identifier (database UUID or generated).
        date: Calendar date of the event, "YYYY-MM-DD".
        title: Free-text heading shown on the timeline.
    """
    id: str
    date: str
    title: str = ""

    type: ClassVar[MedicalEventType]

    @property
    def event_date(self):
        return parse_local_date(self.date)

    @classmethod
    def _from_details(cls, id: str, date: str, title: str, details: typing.Mapping[str, typing.Any]):
        return cls(id=id, date=date, title=title)

    def to_details(self) -> dict[str, typing.Any]:
        return {}


@dataclass
class DiagnosisEvent(MedicalEvent):
    initial_cd4: str = ""
    initial_cd4_percent: str = ""
    detection_reason: str = ""

    type: ClassVar[MedicalEventType] = MedicalEventType.DIAGNOSIS

    @classmethod
    def _from_details(cls, id, date, title, details):
        return cls(
            id=id,
            date=date,
            title=title,
            initial_cd4=_text(details, KEY_INITIAL_CD4, "initial_cd4"),
            initial_cd4_percent=_text(details, KEY_INITIAL_CD4_PERCENT, "initial_cd4_percent"),
            detection_reason=_text(details, KEY_DETECTION_REASON, "detection_reason"),
        )

    def to_details(self):
        return {
            KEY_INITIAL_CD4: self.initial_cd4,
            KEY_INITIAL_CD4_PERCENT: self.initial_cd4_percent,
            KEY_DETECTION_REASON: self.detection_reason,
        }


@dataclass
class ArtStartEvent(MedicalEvent):
    # drugs joined with " + ", e.g. "TDF + 3TC + DTG"
    regimen: str = ""

    type: ClassVar[MedicalEventType] = MedicalEventType.ART_START

    @classmethod
    def _from_details(cls, id, date, title, details):
        return cls(id=id, date=date, title=title,
                   regimen=_text(details, KEY_REGIMEN, KEY_TO_REGIMEN, "regimen"))

    def to_details(self):
        return {KEY_REGIMEN: self.regimen}


@dataclass
class ProphylaxisEvent(MedicalEvent):
    tpt: bool = False
    tpt_regimen: str = ""
    pjp_prophylaxis: bool = False
    other: str = ""

    type: ClassVar[MedicalEventType] = MedicalEventType.PROPHYLAXIS

    @classmethod
    def _from_details(cls, id, date, title, details):
        return cls(
            id=id,
            date=date,
            title=title,
            tpt=_flag(details, KEY_TPT, "tpt"),
            tpt_regimen=_text(details, KEY_TPT_REGIMEN, "tpt_regimen"),
            pjp_prophylaxis=_flag(details, KEY_PJP, "pjp_prophylaxis"),
            other=_text(details, KEY_OTHER, "other"),
        )

    def to_details(self):
        return {
            KEY_TPT: self.tpt,
            KEY_TPT_REGIMEN: self.tpt_regimen,
            KEY_PJP: self.pjp_prophylaxis,
            KEY_OTHER: self.other,
        }


@dataclass
class MissedMedsEvent(MedicalEvent):
    reason: str = ""

    type: ClassVar[MedicalEventType] = MedicalEventType.MISSED_MEDS

    @classmethod
    def _from_details(cls, id, date, title, details):
        return cls(id=id, date=date, title=title, reason=_text(details, KEY_REASON, "reason"))

    def to_details(self):
        return {KEY_REASON: self.reason}


@dataclass
class ArtChangeEvent(MedicalEvent):
    from_regimen: str = ""
    to_regimen: str = ""
    reason: str = ""

    type: ClassVar[MedicalEventType] = MedicalEventType.ART_CHANGE

    @classmethod
    def _from_details(cls, id, date, title, details):
        return cls(
            id=id,
            date=date,
            title=title,
            from_regimen=_text(details, KEY_FROM_REGIMEN, "from_regimen"),
            to_regimen=_text(details, KEY_TO_REGIMEN, KEY_REGIMEN, "to_regimen", "regimen"),
            reason=_text(details, KEY_REASON, "reason"),
        )

    def to_details(self):
        return {
            KEY_FROM_REGIMEN: self.from_regimen,
            KEY_TO_REGIMEN: self.to_regimen,
            KEY_REASON: self.reason,
        }


@dataclass
class OpportunisticInfectionEvent(MedicalEvent):
    infections: list[str] = field(default_factory=list)
    other_infection: str = ""

    type: ClassVar[MedicalEventType] = MedicalEventType.OPPORTUNISTIC_INFECTION

    @classmethod
    def _from_details(cls, id, date, title, details):
        raw = details.get(KEY_INFECTIONS)
        if isinstance(raw, str):
            infections = [item.strip() for item in raw.split(",") if item.strip()]
        elif isinstance(raw, (list, tuple)):
            infections = [str(item).strip() for item in raw if str(item).strip()]
        else:
            infections = []
        # records written before multi-select kept a single disease under "โรค"
        legacy = _text(details, KEY_LEGACY_DISEASE)
        if legacy and not infections:
            infections = [legacy]
        return cls(
            id=id,
            date=date,
            title=title,
            infections=infections,
            other_infection=_text(details, KEY_OTHER_INFECTION, "other_infection"),
        )

    @property
    def all_infections(self) -> list[str]:
        names = list(self.infections)
        if self.other_infection:
            names.append(self.other_infection)
        return names

    def to_details(self):
        details: dict[str, typing.Any] = {KEY_INFECTIONS: list(self.infections)}
        if self.other_infection:
            details[KEY_OTHER] = True
            details[KEY_OTHER_INFECTION] = self.other_infection
        return details


@dataclass
class LabResultEvent(MedicalEvent):
    cd4: str = ""
    cd4_percent: str = ""
    viral_load: str = ""

    type: ClassVar[MedicalEventType] = MedicalEventType.LAB_RESULT

    @classmethod
    def _from_details(cls, id, date, title, details):
        return cls(
            id=id,
            date=date,
            title=title,
            cd4=_text(details, KEY_CD4, "cd4"),
            cd4_percent=_text(details, KEY_CD4_PERCENT, "cd4_percent"),
            viral_load=_text(details, KEY_VIRAL_LOAD, "viral_load"),
        )

    def to_details(self):
        return {KEY_CD4: self.cd4, KEY_CD4_PERCENT: self.cd4_percent, KEY_VIRAL_LOAD: self.viral_load}


@dataclass
class OtherEvent(MedicalEvent):
    details: str = ""

    type: ClassVar[MedicalEventType] = MedicalEventType.OTHER

    @classmethod
    def _from_details(cls, id, date, title, details):
        return cls(id=id, date=date, title=title, details=_text(details, KEY_DETAILS, "details"))

    def to_details(self):
        return {KEY_DETAILS: self.details}


EVENT_CLASSES: dict[MedicalEventType, type[MedicalEvent]] = {
    cls.type: cls
    for cls in (
        DiagnosisEvent,
        ArtStartEvent,
        ProphylaxisEvent,
        MissedMedsEvent,
        ArtChangeEvent,
        OpportunisticInfectionEvent,
        LabResultEvent,
        OtherEvent,
    )
}


def from_details(
        event_type: MedicalEventType | str,
        id: str,
        date: str,
        title: str = "",
        details: typing.Mapping[str, typing.Any] | None = None,
) -> MedicalEvent:
    """
    Build the typed event for `event_type` from a legacy key/value detail map.
    Raises ValueError for an unknown event type.
    """
    if not isinstance(event_type, MedicalEventType):
        event_type = MedicalEventType.from_label(event_type)
    cls = EVENT_CLASSES[event_type]
    return cls._from_details(id, date, title or "", details or {})


def _latest(events: typing.Iterable[MedicalEvent]) -> MedicalEvent | None:
    dated = [e for e in events if e.event_date is not None]
    if not dated:
        return None
    return max(dated, key=lambda e: e.event_date)


def latest_arv_regimen(history: typing.Sequence[MedicalEvent]) -> str | None:
    """
    Regimen of the latest ART_START / ART_CHANGE event.
    None when there is no such event, "" when the event carries no regimen.
    """
    latest = _latest(e for e in history if isinstance(e, (ArtStartEvent, ArtChangeEvent)))
    if latest is None:
        return None
    if isinstance(latest, ArtChangeEvent):
        return latest.to_regimen
    return latest.regimen


def tpt_events(history: typing.Sequence[MedicalEvent]) -> list[ProphylaxisEvent]:
    """Prophylaxis events where TPT was given, newest first."""
    events = [e for e in history if isinstance(e, ProphylaxisEvent) and e.tpt]
    return sorted(events, key=lambda e: e.event_date or date.min, reverse=True)
