"""Trust-tiered care record context for the system prompt."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import date, timedelta
from typing import TYPE_CHECKING

from luna.records.models import RecordSnapshot
from luna.records.query import QueryType, detect_query_type, mentions_care_terms
from luna.records.resolver import SubjectMatcher
from luna.records.trust import TrustPolicy, TrustTier

if TYPE_CHECKING:
    from luna.llm.adapters.base import InferenceAdapter
    from luna.records.models import Patient
    from luna.records.store import RecordStore

logger = logging.getLogger(__name__)

MAX_APPOINTMENTS_SHOWN = 5
MAX_VITALS_SHOWN = 10
MAX_PROVIDERS_SHOWN = 10

CONTEXT_HEADING = "## Care Records Summary"
INSTRUCTIONS = (
    "## Instructions for Using Care Records\n"
    "- Treat the records above as the authoritative, current data; do not recall "
    "records from earlier messages or invent missing details\n"
    "- Refer to people naturally, by name or relationship\n"
    "- Help organize caregiving information; do not frame replies as medical advice\n"
    "- When a question needs clinical judgement, recommend consulting the "
    "patient's doctor or pharmacist"
)
BASIC_TIER_NOTE = "- Note: limited record detail is available in this conversation"


def needs_record_context(query: str, subject: Patient | None) -> bool:
    """Whether *query* calls for care records at all (e.g. not a greeting)."""
    if subject is not None:
        return True
    if detect_query_type(query) is not QueryType.GENERAL:
        return True
    return mentions_care_terms(query)


def _render_patients(snapshot: RecordSnapshot) -> list[str]:
    lines = [f"### Patients ({len(snapshot.patients)})"]
    for p in snapshot.patients:
        line = f"- **{p.name}**"
        if p.relationship:
            line += f" ({p.relationship})"
        if p.age is not None:
            line += f", age {p.age}"
        if p.gender:
            line += f", {p.gender}"
        if p.phone:
            line += f"\n  Phone: {p.phone}"
        if p.primary_doctor:
            line += f"\n  Primary Doctor: {p.primary_doctor}"
        if p.emergency_contact_name:
            line += f"\n  Emergency Contact: {p.emergency_contact_name}"
            if p.emergency_contact_phone:
                line += f" ({p.emergency_contact_phone})"
        if p.insurance_provider:
            line += f"\n  Insurance: {p.insurance_provider}"
            if p.insurance_id:
                line += f" (ID: {p.insurance_id})"
        if p.notes:
            line += f"\n  Notes: {p.notes}"
        lines.append(line)
    return lines


def _render_medications(snapshot: RecordSnapshot) -> list[str]:
    providers = {p.name.lower(): p for p in snapshot.providers}
    by_patient = defaultdict(list)
    for med in snapshot.medications:
        by_patient[med.patient_name or "Unknown Patient"].append(med)

    lines = [f"### Active Medications ({len(snapshot.medications)})"]
    for patient_name, meds in by_patient.items():
        plural = "" if len(meds) == 1 else "s"
        lines.append(f"**{patient_name} ({len(meds)} medication{plural})**")
        for med in meds:
            line = f"- {med.name}"
            if med.generic_name:
                line += f" ({med.generic_name})"
            line += f" {med.dosage} - {med.frequency}"
            if med.route:
                line += f", {med.route}"
            if med.prescribing_doctor:
                line += f"\n  Prescribed by: {med.prescribing_doctor}"
                doctor = providers.get(med.prescribing_doctor.lower())
                if doctor and doctor.phone:
                    line += f" ({doctor.phone})"
            if med.pharmacy:
                line += f"\n  Pharmacy: {med.pharmacy}"
                if med.rx_number:
                    line += f" (Rx: {med.rx_number})"
            if med.side_effects:
                line += f"\n  Side effects: {med.side_effects}"
            if med.notes:
                line += f"\n  Notes: {med.notes}"
            lines.append(line)
    return lines


def _render_appointments(snapshot: RecordSnapshot) -> list[str]:
    lines = [f"### Upcoming Appointments ({len(snapshot.appointments)})"]
    for apt in snapshot.appointments[:MAX_APPOINTMENTS_SHOWN]:
        line = f"- {apt.appointment_date}"
        if apt.appointment_time:
            line += f" at {apt.appointment_time}"
        if apt.appointment_type:
            line += f" ({apt.appointment_type})"
        if apt.patient_name:
            line += f" - {apt.patient_name}"
        if apt.provider_name:
            line += f"\n  Provider: {apt.provider_name}"
            if apt.provider_specialty:
                line += f" ({apt.provider_specialty})"
        if apt.location:
            line += f"\n  Location: {apt.location}"
        if apt.preparation_notes:
            line += f"\n  Preparation: {apt.preparation_notes}"
        if apt.follow_up_required:
            line += "\n  Follow-up required"
        lines.append(line)
    return lines


def _render_vitals(snapshot: RecordSnapshot) -> list[str]:
    lines = [f"### Recent Vital Signs ({len(snapshot.vitals)})"]
    for vital in snapshot.vitals[:MAX_VITALS_SHOWN]:
        line = f"- {vital.recorded_date}"
        if vital.patient_name:
            line += f" - {vital.patient_name}"
        measurements = []
        if vital.weight_lbs is not None:
            measurements.append(f"Weight: {vital.weight_lbs:g} lbs")
        if vital.glucose_am is not None:
            measurements.append(f"Glucose AM: {vital.glucose_am:g} mg/dL")
        if vital.glucose_pm is not None:
            measurements.append(f"Glucose PM: {vital.glucose_pm:g} mg/dL")
        if measurements:
            line += f"\n  {', '.join(measurements)}"
        if vital.notes:
            line += f"\n  Notes: {vital.notes}"
        lines.append(line)
    return lines


def _render_providers(snapshot: RecordSnapshot) -> list[str]:
    lines = [f"### Healthcare Providers ({len(snapshot.providers)})"]
    for provider in snapshot.providers[:MAX_PROVIDERS_SHOWN]:
        line = f"- **{provider.name}**"
        if provider.specialty:
            line += f" ({provider.specialty})"
        if provider.practice_name:
            line += f"\n  Practice: {provider.practice_name}"
        lines.append(line)
    return lines


def _render_caregivers(snapshot: RecordSnapshot) -> list[str]:
    lines = [f"### Caregivers ({len(snapshot.caregivers)})"]
    for caregiver in snapshot.caregivers:
        line = f"- **{caregiver.name}**"
        if caregiver.relationship:
            line += f" ({caregiver.relationship})"
        if caregiver.notes:
            line += f"\n  Notes: {caregiver.notes}"
        lines.append(line)
    return lines


def render_snapshot(snapshot: RecordSnapshot, tier: TrustTier) -> str:
    """Render the fixed-heading summary plus the usage instructions."""
    sections = [CONTEXT_HEADING]
    if snapshot.patients:
        sections.append("\n".join(_render_patients(snapshot)))
    if snapshot.medications:
        sections.append("\n".join(_render_medications(snapshot)))
    if snapshot.appointments:
        sections.append("\n".join(_render_appointments(snapshot)))
    if snapshot.vitals:
        sections.append("\n".join(_render_vitals(snapshot)))
    if snapshot.providers:
        sections.append("\n".join(_render_providers(snapshot)))
    if snapshot.caregivers:
        sections.append("\n".join(_render_caregivers(snapshot)))

    instructions = INSTRUCTIONS
    if tier is TrustTier.BASIC:
        instructions += f"\n{BASIC_TIER_NOTE}"
    sections.append(instructions)
    return "\n\n".join(sections)


class RecordContextProvider:
    """Renders care records for an adapter, honouring its trust tier."""

    def __init__(
        self,
        store: RecordStore,
        policy: TrustPolicy | None = None,
        recent_days: int = 30,
    ) -> None:
        self._store = store
        self._policy = policy or TrustPolicy()
        self._matcher = SubjectMatcher(store)
        self._recent_days = recent_days
        # session id -> id of the patient that session last resolved to
        self._session_subjects: dict[str, str] = {}

    @property
    def policy(self) -> TrustPolicy:
        return self._policy

    async def snapshot(
        self, tier: TrustTier, subject: Patient | None = None, today: date | None = None
    ) -> RecordSnapshot:
        """Fetch the bounded record sets, scoped to *subject* when given."""
        today = today or date.today()
        subject_id = subject.id if subject else None
        vitals_since = (today - timedelta(days=self._recent_days)).isoformat()

        patients, medications, appointments, vitals, caregivers, providers = (
            await asyncio.gather(
                self._store.list_patients(),
                self._store.active_medications(subject_id),
                self._store.upcoming_appointments(today.isoformat(), subject_id),
                self._store.recent_vitals(vitals_since, subject_id),
                self._store.active_caregivers(),
                self._store.list_providers(),
            )
        )
        if subject is not None:
            patients = [subject]

        snapshot = RecordSnapshot(
            patients=patients,
            medications=medications,
            appointments=appointments,
            vitals=vitals,
            caregivers=caregivers,
            providers=providers,
        )
        return snapshot if tier is TrustTier.FULL else snapshot.redacted()

    async def session_subject(self, session_id: str | None) -> Patient | None:
        """The patient *session_id* was last focused on, if still active."""
        patient_id = self._session_subjects.get(session_id) if session_id else None
        if patient_id is None:
            return None
        return await self._store.get_patient(patient_id)

    async def _resolve_subject(self, user_query: str, session_id: str | None) -> Patient | None:
        subject = await self._matcher.resolve(user_query)
        if subject is not None:
            if session_id:
                self._session_subjects[session_id] = subject.id
            return subject
        # Small talk never pulls the remembered patient back in
        if not needs_record_context(user_query, None):
            return None
        return await self.session_subject(session_id)

    async def generate_contextual_prompt(
        self, adapter: InferenceAdapter, user_query: str, session_id: str | None = None
    ) -> str:
        """Record context for *user_query*, or ``""`` when none applies.

        A query that names nobody stays on the patient *session_id* last
        resolved to. The trust tier depends on the adapter alone.

        Never raises; a datastore failure omits the section.
        """
        tier = self._policy.tier_for(adapter)
        try:
            subject = await self._resolve_subject(user_query, session_id)
            if not needs_record_context(user_query, subject):
                return ""

            snapshot = await self.snapshot(tier, subject)
            if not snapshot.patients:
                return ""
        except Exception:
            logger.exception("Record context unavailable; omitting section")
            return ""

        logger.info(
            "Record context for %s: tier=%s subject=%s (%d meds, %d appts, %d vitals)",
            adapter.id,
            tier,
            subject.name if subject else "all",
            len(snapshot.medications),
            len(snapshot.appointments),
            len(snapshot.vitals),
        )
        return render_snapshot(snapshot, tier)
