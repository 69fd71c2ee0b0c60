"""
STD, PrEP and PEP domain model.
"""

from dataclasses import dataclass, field

STD_STANDALONE = (
    "Gonorrhea",
    "Non-Gonorrhea",
    "PID",
    "Trichomoniasis",
    "HSV",
    "Chancroid",
    "LGV",
    "Donovanosis",
    "HPV",
    "Monkey Pox",
)

SYPHILIS_OPTIONS = (
    "Primary Syphilis",
    "Secondary Syphilis",
    "Early Syphilis",
    "Late Latent Syphilis",
    "Neuro Syphilis",
    "Cardiovascular Syphilis",
    "Congenital Syphilis",
    "Syphilis (ไม่ทราบ)",
)

CONTACT_STD_OPTIONS = (
    "Contact GC",
    "Contact Non-Gonorrhea",
    "Contact Syphilis",
    "Contact PID",
    "Contact Trichomoniasis",
    "Contact Chancroid",
    "Contact LGV",
    "Contact Other",
)

# Every disease name offered on the STD form
STD_OPTIONS = frozenset(STD_STANDALONE + SYPHILIS_OPTIONS + CONTACT_STD_OPTIONS)

PEP_TYPES = {"oPEP", "nPEP"}


@dataclass
class StdRecord:
    """One STD episode; a visit may record several diseases."""
    id: str
    date: str
    diseases: list[str] = field(default_factory=list)


@dataclass
class PrepRecord:
    """A PrEP course; an open course has no stop date."""
    id: str
    date_start: str
    date_stop: str | None = None

    @property
    def is_active(self) -> bool:
        return not self.date_stop


@dataclass
class PepRecord:
    id: str
    date: str
    type: str | None = None

    def __post_init__(self):
        if self.type is not None and self.type not in PEP_TYPES:
            raise ValueError(f"Unknown PEP type: {self.type!r}")


@dataclass
class StdInfo:
    records: list[StdRecord] = field(default_factory=list)

    def __post_init__(self):
        self.records = list(self.records or [])


@dataclass
class PrepInfo:
    records: list[PrepRecord] = field(default_factory=list)

    def __post_init__(self):
        self.records = list(self.records or [])


@dataclass
class PepInfo:
    records: list[PepRecord] = field(default_factory=list)

    def __post_init__(self):
        self.records = list(self.records or [])
