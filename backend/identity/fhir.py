"""
FHIR mapping.

Converts a persisted patient into the FHIR R4 Patient resource sent to the
clinical-record server. The MRN becomes the resource id so that repeated
publishes of the same patient update one resource.
"""

from typing import Dict, Any, List

from .models import PatientDB, IdentifierDB

# FHIR administrative-gender codes keyed by the short codes stored locally
GENDER_CODES = {
    "M": "male",
    "F": "female",
    "O": "other",
    "U": "unknown",
    "MALE": "male",
    "FEMALE": "female",
    "OTHER": "other",
    "UNKNOWN": "unknown",
}


def _identifier(identifier: IdentifierDB, mrn_system_code: str) -> Dict[str, Any]:
    system = identifier.identifier_system
    entry = {
        "system": system.uri or system.code,
        "value": identifier.value,
    }
    if system.code == mrn_system_code:
        entry["use"] = "official"
    return entry


def _gender(gender_code) -> str:
    if not gender_code:
        return "unknown"
    return GENDER_CODES.get(gender_code.upper(), "unknown")


def to_fhir_patient(patient: PatientDB, mrn_system_code: str, active: bool = True) -> Dict[str, Any]:
    """Build the FHIR Patient resource for a persisted patient."""
    demographics = patient.demographics

    telecom: List[Dict[str, Any]] = [
        {"system": t.system.lower(), "use": t.use.lower(), "value": t.value}
        for t in demographics.telecoms
    ]
    if patient.registration_purpose_email and not demographics.emails:
        telecom.append({"system": "email", "use": "home", "value": patient.registration_purpose_email})

    given = [n for n in (demographics.first_name, demographics.middle_name) if n]

    resource = {
        "resourceType": "Patient",
        "active": active,
        "identifier": [_identifier(i, mrn_system_code) for i in demographics.identifiers],
        "name": [{"family": demographics.last_name, "given": given}],
        "telecom": telecom,
        "gender": _gender(demographics.gender_code),
        "address": [
            {
                "use": a.use.lower(),
                "line": [line for line in (a.line1, a.line2) if line],
                "city": a.city,
                "state": a.state_code,
                "postalCode": a.postal_code,
                "country": a.country_code,
            }
            for a in demographics.addresses
        ],
    }

    mrn = patient.mrn(mrn_system_code)
    if mrn:
        resource["id"] = mrn
    if demographics.birth_day:
        resource["birthDate"] = demographics.birth_day.isoformat()

    return resource
