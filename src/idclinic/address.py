"""
Thai address lookup.

High level
----------
Patient forms pick province -> district (amphoe) -> subdistrict (tambon)
from the public `jquery.Thailand.js` raw database, a JSON list of records:

  {"district": "<tambon>", "amphoe": "<amphoe>", "province": "<changwat>", "zipcode": 44000}

Note that the dataset's `district` key holds the *subdistrict*.

Key behaviors
-------------
- `AddressRepository` fetches the dataset at most once per instance, on first
  use (read-through cache). Callers own the instance; there is no module-level
  cache shared between callers or tests.
- Network access uses a small retry/backoff loop; when every attempt fails
  `AddressLookupError` is raised.
- `AddressRepository.from_file` serves a previously downloaded copy offline.

Environment
-----------
IDCLINIC_ADDRESS_URL : Optional dataset URL override.
"""

import json
import logging
import os
import pathlib
import time
import typing

import requests

LOGGER = logging.getLogger(__name__)


class AddressLookupError(RuntimeError):
    """Raised when the address dataset cannot be fetched or understood."""


# ------------------------------------------------------------------------------
# Module configuration
# ------------------------------------------------------------------------------

DEFAULT_ADDRESS_URL = (
    "https://raw.githubusercontent.com/earthchie/jquery.Thailand.js/master/"
    "jquery.Thailand.js/database/raw_database/raw_database.json"
)
_ADDRESS_URL = os.getenv("IDCLINIC_ADDRESS_URL", DEFAULT_ADDRESS_URL)

AddressRecord = dict[str, typing.Any]


# ------------------------------------------------------------------------------
# Small utilities
# ------------------------------------------------------------------------------


def _sleep_backoff(i: int) -> None:
    """
    Sleep using a small exponential backoff.
    Sequence ~ 0.25s, 0.5s, 1s, 2s.
    """
    time.sleep(0.25 * (2**i))


def _request_json(url: str, *, timeout: float = 30.0, attempts: int = 4) -> typing.Any:
    """
    GET JSON with simple retry/backoff.

    Retries on network/HTTP/JSON decode problems and raises
    AddressLookupError if all attempts fail.
    """
    last_exc: Exception | None = None
    for i in range(attempts):
        try:
            resp = requests.get(url, timeout=timeout)
            resp.raise_for_status()
            return resp.json()
        except (requests.RequestException, json.JSONDecodeError, ValueError) as e:
            LOGGER.debug("GET %s failed (attempt %d): %s", url, i + 1, e)
            last_exc = e
            if i + 1 < attempts:
                _sleep_backoff(i)
    assert last_exc is not None
    raise AddressLookupError(f"Failed GET {url}: {last_exc}") from last_exc


def _validate(payload: typing.Any) -> list[AddressRecord]:
    """Keep well-formed records; a payload that is not a list is an error."""
    if not isinstance(payload, list):
        raise AddressLookupError(f"Address dataset must be a JSON list, got {type(payload).__name__}")
    records = [
        r for r in payload
        if isinstance(r, dict) and r.get("province") and r.get("amphoe") and r.get("district")
    ]
    dropped = len(payload) - len(records)
    if dropped:
        LOGGER.warning("Dropped %d malformed address records", dropped)
    return records


def match_option(options: typing.Iterable[str], text: str) -> str | None:
    """Case-insensitive exact match of typed text against the choices."""
    needle = text.strip().casefold()
    for option in options:
        if option.casefold() == needle:
            return option
    return None


def search_options(options: typing.Sequence[str], text: str) -> list[str]:
    """Choices containing the typed text; blank text keeps them all."""
    needle = text.strip().casefold()
    if not needle:
        return list(options)
    return [o for o in options if needle in o.casefold()]


# ------------------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------------------


class AddressRepository:
    """
    Province / district / subdistrict choices backed by the address dataset.

    Parameters
    ----------
    url : str, optional
        Dataset URL (default: `IDCLINIC_ADDRESS_URL` or the public dataset).
    records : list, optional
        Preloaded records; when given, nothing is fetched.
    """

    def __init__(self, url: str | None = None, records: list[AddressRecord] | None = None):
        self._url = url or _ADDRESS_URL
        self._records = _validate(records) if records is not None else None

    @classmethod
    def from_file(cls, path: str | pathlib.Path) -> "AddressRepository":
        with open(path, encoding="utf-8") as f:
            return cls(records=json.load(f))

    @property
    def records(self) -> list[AddressRecord]:
        if self._records is None:
            LOGGER.info("Fetching address dataset from %s", self._url)
            self._records = _validate(_request_json(self._url))
        return self._records

    def save(self, path: str | pathlib.Path) -> None:
        # fetched before the target is truncated
        records = self.records
        with open(path, "w", encoding="utf-8") as f:
            json.dump(records, f, ensure_ascii=False)

    def provinces(self) -> list[str]:
        return sorted({r["province"] for r in self.records})

    def districts(self, province: str) -> list[str]:
        if not province:
            return []
        return sorted({r["amphoe"] for r in self.records if r["province"] == province})

    def subdistricts(self, province: str, district: str) -> list[str]:
        if not province or not district:
            return []
        return sorted({
            r["district"] for r in self.records
            if r["province"] == province and r["amphoe"] == district
        })

    def zipcode(self, province: str, district: str, subdistrict: str) -> str | None:
        for r in self.records:
            if (r["province"], r["amphoe"], r["district"]) == (province, district, subdistrict):
                return str(r.get("zipcode", "")) or None
        return None
