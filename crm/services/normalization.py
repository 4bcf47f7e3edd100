from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Tuple, Union

from crm.core.exceptions import ValidationError

# Ordered alias lists; the first alias present in the payload wins
EMAIL_ALIASES: Tuple[str, ...] = ("email", "work_email", "business_email", "e-mail")
PHONE_ALIASES: Tuple[str, ...] = ("phone", "phone_number", "mobile_phone", "cell_phone", "telephone")
FIRST_NAME_ALIASES: Tuple[str, ...] = ("first_name", "firstname", "fname")
LAST_NAME_ALIASES: Tuple[str, ...] = ("last_name", "lastname", "lname")
FULL_NAME_ALIASES: Tuple[str, ...] = ("full_name", "name", "fullname")
CONSENT_ALIASES: Tuple[str, ...] = ("consent_time", "consent_timestamp")

FieldPayload = Union[Mapping[str, Any], Sequence[Mapping[str, Any]]]


@dataclass(frozen=True)
class NormalizedContact:
    email: Optional[str] = None
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    full_name: Optional[str] = None
    consent_time: Optional[datetime] = None

    @property
    def has_contact_channel(self) -> bool:
        return bool(self.email or self.phone)

    def as_columns(self) -> Dict[str, Any]:
        return {
            "email": self.email,
            "phone": self.phone,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "full_name": self.full_name,
            "consent_time": self.consent_time,
        }


def _clean(value: Any) -> Optional[str]:
    """Stringify and strip; blank values count as absent."""
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
        if value is None:
            return None
    text = str(value).strip()
    return text or None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Accept ISO-8601 strings or unix epoch numbers; anything else becomes None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return _from_epoch(value)

    text = str(value).strip()
    if not text:
        return None
    if text.lstrip("-").replace(".", "", 1).isdigit():
        return _from_epoch(float(text))
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _from_epoch(value: float) -> Optional[datetime]:
    # Millisecond timestamps are common from browser forms
    if value > 1e11:
        value = value / 1000.0
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


class LeadFieldNormalizer:
    """Turns provider field payloads into a canonical contact record."""

    def __init__(
        self,
        email_aliases: Iterable[str] = EMAIL_ALIASES,
        phone_aliases: Iterable[str] = PHONE_ALIASES,
        first_name_aliases: Iterable[str] = FIRST_NAME_ALIASES,
        last_name_aliases: Iterable[str] = LAST_NAME_ALIASES,
        full_name_aliases: Iterable[str] = FULL_NAME_ALIASES,
        consent_aliases: Iterable[str] = CONSENT_ALIASES,
    ):
        self.email_aliases = tuple(email_aliases)
        self.phone_aliases = tuple(phone_aliases)
        self.first_name_aliases = tuple(first_name_aliases)
        self.last_name_aliases = tuple(last_name_aliases)
        self.full_name_aliases = tuple(full_name_aliases)
        self.consent_aliases = tuple(consent_aliases)

    def build_field_map(self, payload: Optional[FieldPayload]) -> Dict[str, Any]:
        """Case-insensitive name -> value map.

        Facebook sends ``[{"name": ..., "values": [...]}, ...]`` and we keep
        the first value; website forms send a flat answer map.
        """
        field_map: Dict[str, Any] = {}
        if not payload:
            return field_map

        if isinstance(payload, Mapping):
            for key, value in payload.items():
                if key is None:
                    continue
                field_map.setdefault(str(key).strip().lower(), value)
            return field_map

        for field in payload:
            if not isinstance(field, Mapping) or not field.get("name"):
                continue
            values = field.get("values")
            if isinstance(values, (list, tuple)):
                value = values[0] if values else None
            else:
                value = values if values is not None else field.get("value")
            field_map.setdefault(str(field["name"]).strip().lower(), value)
        return field_map

    @staticmethod
    def _resolve(field_map: Mapping[str, Any], aliases: Sequence[str]) -> Optional[str]:
        for alias in aliases:
            value = _clean(field_map.get(alias))
            if value is not None:
                return value
        return None

    def resolve_names(
        self,
        first_name: Optional[str],
        last_name: Optional[str],
        full_name: Optional[str],
    ) -> Tuple[Optional[str], Optional[str], Optional[str]]:
        if full_name and not (first_name or last_name):
            tokens = full_name.split()
            first_name = tokens[0] if tokens else None
            last_name = " ".join(tokens[1:]) or None
        elif (first_name or last_name) and not full_name:
            full_name = " ".join(p for p in (first_name, last_name) if p)
        return first_name, last_name, full_name

    def normalize(self, payload: Optional[FieldPayload]) -> NormalizedContact:
        field_map = self.build_field_map(payload)

        email = self._resolve(field_map, self.email_aliases)
        phone = self._resolve(field_map, self.phone_aliases)
        first_name, last_name, full_name = self.resolve_names(
            self._resolve(field_map, self.first_name_aliases),
            self._resolve(field_map, self.last_name_aliases),
            self._resolve(field_map, self.full_name_aliases),
        )

        consent_raw = None
        for alias in self.consent_aliases:
            if field_map.get(alias) not in (None, ""):
                consent_raw = field_map[alias]
                break

        contact = NormalizedContact(
            email=email.lower() if email else None,
            phone=phone,
            first_name=first_name,
            last_name=last_name,
            full_name=full_name,
            consent_time=parse_timestamp(_first(consent_raw)),
        )

        if not contact.has_contact_channel:
            raise ValidationError(
                "Lead has no email or phone",
                details={"fields": sorted(field_map.keys())},
            )
        return contact


def _first(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


def raw_field_snapshot(payload: Optional[FieldPayload]) -> Dict[str, Any]:
    """JSON-friendly verbatim copy of the provider payload for raw_field_data."""
    if payload is None:
        return {}
    if isinstance(payload, Mapping):
        return dict(payload)
    return {"field_data": list(payload)}


# Global instance with production defaults
normalizer = LeadFieldNormalizer()


def build_field_map(payload: Optional[FieldPayload]) -> Dict[str, Any]:
    """Production alias for field map construction."""
    return normalizer.build_field_map(payload)


def normalize_lead_fields(payload: Optional[FieldPayload]) -> NormalizedContact:
    """Production alias for full lead normalization."""
    return normalizer.normalize(payload)
