"""Record shapes used for prompt context.

Fields declared with ``sensitive()`` are only populated for adapters in the
``full`` trust tier. Basic-tier records are the same classes with those
fields left as ``None``, so a basic record is always a field subset of the
full one.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import date
from typing import Any


def sensitive(default: Any = None) -> Any:
    """Declare a dataclass field that is withheld from basic-tier adapters."""
    return field(default=default, metadata={"sensitive": True})


def sensitive_fields(cls: type) -> list[str]:
    """Names of the sensitive fields declared on a record class."""
    return [f.name for f in fields(cls) if f.metadata.get("sensitive")]


def redact(record: Any) -> Any:
    """Return a copy of *record* with every sensitive field cleared."""
    cleared = {name: None for name in sensitive_fields(type(record))}
    return replace(record, **cleared) if cleared else record


def age_from_birthdate(date_of_birth: str | None, today: date | None = None) -> int | None:
    """Whole years since *date_of_birth* (ISO date), or None if unparseable."""
    if not date_of_birth:
        return None
    try:
        born = date.fromisoformat(date_of_birth[:10])
    except ValueError:
        return None
    today = today or date.today()
    age = today.year - born.year - ((today.month, today.day) < (born.month, born.day))
    return age if age >= 0 else None


@dataclass
class Provider:
    id: str
    name: str
    specialty: str | None = None
    practice_name: str | None = None
    phone: str | None = None
    preferred: bool = False


@dataclass
class Patient:
    """A care subject."""

    id: str
    name: str
    relationship: str | None = None
    age: int | None = None
    gender: str | None = None
    phone: str | None = sensitive()
    emergency_contact_name: str | None = sensitive()
    emergency_contact_phone: str | None = sensitive()
    primary_doctor: str | None = sensitive()
    insurance_provider: str | None = sensitive()
    insurance_id: str | None = sensitive()
    notes: str | None = sensitive()

    @classmethod
    def from_row(cls, row: dict) -> Patient:
        return cls(
            id=row["id"],
            name=row["name"],
            relationship=row.get("relationship") or None,
            age=age_from_birthdate(row.get("date_of_birth")),
            gender=row.get("gender") or None,
            phone=row.get("phone") or None,
            emergency_contact_name=row.get("emergency_contact_name") or None,
            emergency_contact_phone=row.get("emergency_contact_phone") or None,
            primary_doctor=row.get("primary_doctor") or None,
            insurance_provider=row.get("insurance_provider") or None,
            insurance_id=row.get("insurance_id") or None,
            notes=row.get("notes") or None,
        )


@dataclass
class Medication:
    id: str
    patient_id: str
    name: str
    dosage: str
    frequency: str
    patient_name: str | None = None
    generic_name: str | None = None
    route: str | None = None
    prescribing_doctor: str | None = sensitive()
    pharmacy: str | None = sensitive()
    rx_number: str | None = sensitive()
    side_effects: str | None = sensitive()
    notes: str | None = sensitive()

    @classmethod
    def from_row(cls, row: dict) -> Medication:
        return cls(
            id=row["id"],
            patient_id=row["patient_id"],
            name=row["name"],
            dosage=row["dosage"],
            frequency=row["frequency"],
            patient_name=row.get("patient_name") or None,
            generic_name=row.get("generic_name") or None,
            route=row.get("route") or None,
            prescribing_doctor=row.get("prescribing_doctor") or None,
            pharmacy=row.get("pharmacy") or None,
            rx_number=row.get("rx_number") or None,
            side_effects=row.get("side_effects") or None,
            notes=row.get("notes") or None,
        )


@dataclass
class Appointment:
    id: str
    patient_id: str
    appointment_date: str
    status: str = "scheduled"
    patient_name: str | None = None
    appointment_time: str | None = None
    appointment_type: str | None = None
    provider_name: str | None = None
    provider_specialty: str | None = None
    location: str | None = sensitive()
    preparation_notes: str | None = sensitive()
    notes: str | None = sensitive()
    outcome_summary: str | None = sensitive()
    follow_up_required: bool | None = sensitive()

    @classmethod
    def from_row(cls, row: dict) -> Appointment:
        follow_up = row.get("follow_up_required")
        return cls(
            id=row["id"],
            patient_id=row["patient_id"],
            appointment_date=row["appointment_date"],
            status=row.get("status") or "scheduled",
            patient_name=row.get("patient_name") or None,
            appointment_time=row.get("appointment_time") or None,
            appointment_type=row.get("appointment_type") or None,
            provider_name=row.get("provider_name") or None,
            provider_specialty=row.get("provider_specialty") or None,
            location=row.get("location") or None,
            preparation_notes=row.get("preparation_notes") or None,
            notes=row.get("notes") or None,
            outcome_summary=row.get("outcome_summary") or None,
            follow_up_required=bool(follow_up) if follow_up is not None else None,
        )


@dataclass
class Vital:
    id: str
    patient_id: str
    recorded_date: str
    patient_name: str | None = None
    weight_lbs: float | None = sensitive()
    glucose_am: float | None = sensitive()
    glucose_pm: float | None = sensitive()
    notes: str | None = sensitive()

    @classmethod
    def from_row(cls, row: dict) -> Vital:
        return cls(
            id=row["id"],
            patient_id=row["patient_id"],
            recorded_date=row["recorded_date"],
            patient_name=row.get("patient_name") or None,
            weight_lbs=row.get("weight_lbs"),
            glucose_am=row.get("glucose_am"),
            glucose_pm=row.get("glucose_pm"),
            notes=row.get("notes") or None,
        )


@dataclass
class Caregiver:
    id: str
    name: str
    relationship: str | None = None
    notes: str | None = sensitive()

    @classmethod
    def from_row(cls, row: dict) -> Caregiver:
        return cls(
            id=row["id"],
            name=row["name"],
            relationship=row.get("relationship") or None,
            notes=row.get("notes") or None,
        )


@dataclass
class RecordSnapshot:
    """Everything rendered into one record-context section."""

    patients: list[Patient] = field(default_factory=list)
    medications: list[Medication] = field(default_factory=list)
    appointments: list[Appointment] = field(default_factory=list)
    vitals: list[Vital] = field(default_factory=list)
    caregivers: list[Caregiver] = field(default_factory=list)
    providers: list[Provider] = field(default_factory=list)

    def redacted(self) -> RecordSnapshot:
        """Copy with sensitive fields cleared on every record."""
        return RecordSnapshot(
            patients=[redact(p) for p in self.patients],
            medications=[redact(m) for m in self.medications],
            appointments=[redact(a) for a in self.appointments],
            vitals=[redact(v) for v in self.vitals],
            caregivers=[redact(c) for c in self.caregivers],
            providers=list(self.providers),
        )
