"""
Hepatitis B / C domain model.

HBV: four independent dated result lists plus an optional summary override.
HCV: qualitative screening tests, pre-treatment viral loads, treatment
episodes and post-treatment viral loads.
"""

import typing

from dataclasses import dataclass, field
from enum import Enum


class QualitativeResult(Enum):
    """Qualitative result of an HBsAg / Anti-HCV / HCV-Ag test."""
    POSITIVE = "Positive"
    NEGATIVE = "Negative"
    INCONCLUSIVE = "Inconclusive"

    @classmethod
    def from_label(cls, label: str) -> "QualitativeResult":
        key = str(label).strip().lower()
        mapping = {
            "positive": cls.POSITIVE,
            "pos": cls.POSITIVE,
            "+": cls.POSITIVE,
            "negative": cls.NEGATIVE,
            "neg": cls.NEGATIVE,
            "-": cls.NEGATIVE,
            "inconclusive": cls.INCONCLUSIVE,
        }
        try:
            return mapping[key]
        except KeyError:
            raise ValueError(f"Unknown test result: {label!r}")


HCV_TEST_TYPES = {"Anti-HCV", "HCV-Ag", "HCV-Ab"}


@dataclass
class DatedResult:
    """A dated free-text result (viral load, ultrasound, CT scan)."""
    id: str
    result: str
    date: str


@dataclass
class HbsAgTest:
    id: str
    result: QualitativeResult
    date: str

    def __post_init__(self):
        if not isinstance(self.result, QualitativeResult):
            self.result = QualitativeResult.from_label(self.result)


@dataclass
class HcvTest:
    """
    Anti-HCV / HCV-Ag screening result.

    Attributes:
        type: One of HCV_TEST_TYPES.
        result: Positive, Negative or Inconclusive.
    """
    id: str
    type: str
    result: QualitativeResult
    date: str

    def __post_init__(self):
        if self.type not in HCV_TEST_TYPES:
            raise ValueError(f"Unknown HCV test type: {self.type!r}")
        if not isinstance(self.result, QualitativeResult):
            self.result = QualitativeResult.from_label(self.result)


@dataclass
class HcvTreatment:
    id: str
    regimen: str
    date: str


@dataclass(frozen=True)
class AutomaticSummary:
    """The HBV summary is derived from the latest HBsAg test."""


@dataclass(frozen=True)
class ManualSummary:
    """A clinician-entered HBV summary that replaces the derived one."""
    text: str


AUTOMATIC = AutomaticSummary()

HbvSummary = typing.Union[AutomaticSummary, ManualSummary]


def summary_from_text(text: typing.Any) -> HbvSummary:
    """Blank/missing stored text means automatic; anything else is an override."""
    if text is None:
        return AUTOMATIC
    s = str(text).strip()
    return ManualSummary(s) if s else AUTOMATIC


@dataclass
class HbvInfo:
    hbsag_tests: list[HbsAgTest] = field(default_factory=list)
    viral_loads: list[DatedResult] = field(default_factory=list)
    ultrasounds: list[DatedResult] = field(default_factory=list)
    ct_scans: list[DatedResult] = field(default_factory=list)
    summary: HbvSummary = AUTOMATIC

    def __post_init__(self):
        # partially rebuilt aggregates may pass None for a missing collection
        self.hbsag_tests = list(self.hbsag_tests or [])
        self.viral_loads = list(self.viral_loads or [])
        self.ultrasounds = list(self.ultrasounds or [])
        self.ct_scans = list(self.ct_scans or [])
        if self.summary is None:
            self.summary = AUTOMATIC


@dataclass
class HcvInfo:
    hcv_tests: list[HcvTest] = field(default_factory=list)
    pre_treatment_vls: list[DatedResult] = field(default_factory=list)
    treatments: list[HcvTreatment] = field(default_factory=list)
    post_treatment_vls: list[DatedResult] = field(default_factory=list)
    vl_not_tested: bool = False

    def __post_init__(self):
        self.hcv_tests = list(self.hcv_tests or [])
        self.pre_treatment_vls = list(self.pre_treatment_vls or [])
        self.treatments = list(self.treatments or [])
        self.post_treatment_vls = list(self.post_treatment_vls or [])
