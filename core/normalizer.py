"""
LeadNormalizer — map a vendor field list onto the canonical ``Lead`` shape.

Vendor schema drift is confined to ``FIELD_MAP``: each canonical attribute
lists the vendor field names that may carry it, in priority order.  Any
field not claimed by the table is kept verbatim in ``raw_fields``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from utils.errors import MalformedLead
from utils.schemas import CampaignRef, Lead, RawLead

FIELD_MAP: Dict[str, Tuple[str, ...]] = {
    "name": ("full_name", "name", "full name", "fullname"),
    "email": ("email", "email_address", "work_email", "e-mail"),
    "phone": ("phone_number", "phone", "mobile_number", "mobile", "work_phone_number"),
}

# Joined into ``name`` when none of the ``FIELD_MAP["name"]`` fields is present.
NAME_PARTS: Tuple[str, ...] = ("first_name", "last_name")

_TIME_FORMATS = ("%Y-%m-%dT%H:%M:%S%z", "%Y-%m-%dT%H:%M:%S.%f%z")


def _key(name: str) -> str:
    return name.strip().lower()


def _first_value(values: Any) -> str:
    if isinstance(values, (list, tuple)):
        for v in values:
            if v is not None and str(v).strip():
                return str(v).strip()
        return ""
    if values is None:
        return ""
    return str(values).strip()


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    for fmt in _TIME_FORMATS:
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


class LeadNormalizer:
    def __init__(
        self,
        field_map: Optional[Mapping[str, Sequence[str]]] = None,
        name_parts: Sequence[str] = NAME_PARTS,
    ):
        field_map = field_map or FIELD_MAP
        self._candidates = {attr: [_key(n) for n in names] for attr, names in field_map.items()}
        self._name_parts = [_key(n) for n in name_parts]

    def normalize(self, raw: RawLead) -> Lead:
        """
        Pure and total over well-formed input.

        Raises ``MalformedLead`` only when the payload is structurally
        invalid: no external id, no field list, or an entry with no name.
        """
        fields = self._index_fields(raw)

        claimed = set()
        values: Dict[str, str] = {}
        for attr, candidates in self._candidates.items():
            values[attr] = ""
            for cand in candidates:
                if cand in fields and _first_value(fields[cand][1]):
                    values[attr] = _first_value(fields[cand][1])
                    claimed.add(cand)
                    break

        if not values.get("name") and any(p in fields for p in self._name_parts):
            parts = [_first_value(fields[p][1]) for p in self._name_parts if p in fields]
            values["name"] = " ".join(p for p in parts if p)
            claimed.update(p for p in self._name_parts if p in fields)

        raw_fields = {
            original: vals for key, (original, vals) in fields.items() if key not in claimed
        }

        return Lead(
            external_id=raw.external_id,
            name=values.get("name", ""),
            email=values.get("email", "").lower(),
            phone=values.get("phone", ""),
            source_platform=raw.platform,
            campaign_ref=CampaignRef(account_id=raw.account_ref, form_id=raw.form_ref),
            created_at=_parse_time(raw.created_time),
            raw_fields=raw_fields,
        )

    @staticmethod
    def _index_fields(raw: RawLead) -> Dict[str, Tuple[str, Any]]:
        """Return ``{normalised name: (original name, values)}``; first occurrence wins."""
        if not raw.external_id:
            raise MalformedLead("Lead has no external id")
        if not isinstance(raw.field_data, list):
            raise MalformedLead(f"Lead {raw.external_id} has no field list")

        fields: Dict[str, Tuple[str, Any]] = {}
        for entry in raw.field_data:
            if not isinstance(entry, dict) or not isinstance(entry.get("name"), str) or not entry["name"].strip():
                raise MalformedLead(f"Lead {raw.external_id} has a field without a name")
            key = _key(entry["name"])
            if key not in fields:
                fields[key] = (entry["name"], entry.get("values", []))
        return fields

