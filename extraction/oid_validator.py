"""
Value set OID validation.

Catches common extraction errors before they reach generated code:
malformed identifiers (letter O for zero, stray spaces), unknown roots,
and names that do not match the catalog entry for a known OID.

Usage:
    from extraction.oid_validator import validate_oid

    result = validate_oid("2.16.840.1.113883.3.464.1003.108.12.1020", "Colonoscopy")
    if not result.valid:
        print(result.errors[0].message)
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

import requests

logger = logging.getLogger(__name__)

# Non-negative integer arcs separated by dots, first arc 0/1/2
OID_PATTERN = re.compile(r"^[0-2](\.(0|[1-9]\d*))+$")

KNOWN_OID_ROOTS = {
    "2.16.840.1.113883.3.464": "NCQA (HEDIS/eCQM)",
    "2.16.840.1.113883.3.526": "AMA-PCPI",
    "2.16.840.1.113883.3.117": "The Joint Commission",
    "2.16.840.1.113883.3.600": "CMS",
    "2.16.840.1.113883.6.96": "SNOMED CT",
    "2.16.840.1.113883.6.90": "ICD-10-CM",
    "2.16.840.1.113883.6.88": "RxNorm",
    "2.16.840.1.113883.6.1": "LOINC",
    "2.16.840.1.113883.6.12": "CPT",
    "2.16.840.1.113883.6.285": "HCPCS",
    "2.16.840.1.113883.12": "HL7 Code Systems",
}

VSAC_BASE_URL = "https://vsac.nlm.nih.gov/vsac/svs"


@dataclass(frozen=True)
class CatalogEntry:
    oid: str
    name: str
    alternate_names: Tuple[str, ...] = ()
    steward: str = "NCQA"
    purpose: str = ""

    def to_dict(self) -> Dict[str, Any]:
        result = {"oid": self.oid, "name": self.name, "steward": self.steward}
        if self.alternate_names:
            result["alternateNames"] = list(self.alternate_names)
        if self.purpose:
            result["purpose"] = self.purpose
        return result


def _entries(*rows) -> Dict[str, CatalogEntry]:
    return {row[0]: CatalogEntry(*row) for row in rows}


# Frequently used eCQM value sets, for offline checks
OID_CATALOG: Dict[str, CatalogEntry] = _entries(
    # Encounters
    ("2.16.840.1.113883.3.464.1003.101.12.1001", "Office Visit", ("Office Visits", "Outpatient Visit"), "NCQA",
     "Qualifying encounters for measure inclusion"),
    ("2.16.840.1.113883.3.464.1003.101.12.1016", "Home Healthcare Services"),
    ("2.16.840.1.113883.3.464.1003.101.12.1023", "Preventive Care Services - Established Office Visit, 18 and Up",
     ("Preventive Care Established",)),
    ("2.16.840.1.113883.3.464.1003.101.12.1024", "Preventive Care Services - Initial Office Visit, 18 and Up",
     ("Preventive Care Initial",)),
    ("2.16.840.1.113883.3.464.1003.101.12.1025", "Annual Wellness Visit"),
    ("2.16.840.1.113883.3.464.1003.101.12.1030", "Online Assessments", ("Telehealth", "Virtual Visit")),
    ("2.16.840.1.113883.3.464.1003.101.12.1080", "Telephone Visits"),
    # Hospice and palliative care
    ("2.16.840.1.113883.3.464.1003.1003", "Hospice Care Ambulatory", ("Hospice Services", "Hospice Encounter"), "NCQA",
     "Common exclusion criterion"),
    ("2.16.840.1.113883.3.464.1003.1167", "Palliative Care", ("Comfort Care",), "NCQA",
     "Common exclusion - often confused with Hospice"),
    # Colorectal cancer screening
    ("2.16.840.1.113883.3.464.1003.108.12.1020", "Colonoscopy", (), "NCQA", "CRC screening procedure"),
    ("2.16.840.1.113883.3.464.1003.108.12.1038", "Fecal Occult Blood Test (FOBT)", ("FOBT", "Stool Blood Test")),
    ("2.16.840.1.113883.3.464.1003.108.12.1039", "Flexible Sigmoidoscopy"),
    ("2.16.840.1.113883.3.464.1003.108.12.1001", "Malignant Neoplasm of Colon", ("Colorectal Cancer", "Colon Cancer"),
     "NCQA", "CRC screening exclusion"),
    ("2.16.840.1.113883.3.464.1003.198.12.1019", "Total Colectomy", (), "NCQA", "CRC screening exclusion"),
    ("2.16.840.1.113883.3.464.1003.108.12.1007", "FIT DNA", ("Cologuard", "Stool DNA")),
    ("2.16.840.1.113883.3.464.1003.108.12.1011", "CT Colonography", ("Virtual Colonoscopy",)),
    # Cervical cancer screening
    ("2.16.840.1.113883.3.464.1003.108.12.1017", "Pap Test", ("Cervical Cytology", "Pap Smear")),
    ("2.16.840.1.113883.3.464.1003.110.12.1059", "HPV Test", ("High Risk HPV Test", "hrHPV")),
    ("2.16.840.1.113883.3.464.1003.198.12.1014", "Hysterectomy with No Residual Cervix", ("Total Hysterectomy",),
     "NCQA", "Cervical screening exclusion"),
    # Breast cancer screening
    ("2.16.840.1.113883.3.464.1003.198.12.1005", "Mammography", ("Mammogram", "Breast Cancer Screening")),
    ("2.16.840.1.113883.3.464.1003.198.12.1068", "Bilateral Mastectomy", (), "NCQA", "Breast screening exclusion"),
    ("2.16.840.1.113883.3.464.1003.198.12.1133", "Unilateral Mastectomy Left"),
    ("2.16.840.1.113883.3.464.1003.198.12.1134", "Unilateral Mastectomy Right"),
    # Chronic conditions
    ("2.16.840.1.113883.3.464.1003.103.12.1001", "Diabetes", ("Diabetes Mellitus",)),
    ("2.16.840.1.113883.3.464.1003.198.12.1013", "HbA1c Laboratory Test", ("Hemoglobin A1c", "A1C")),
    ("2.16.840.1.113883.3.464.1003.104.12.1011", "Essential Hypertension", ("Hypertension", "High Blood Pressure")),
    ("2.16.840.1.113883.3.464.1003.105.12.1007", "Major Depression", ("Major Depressive Disorder", "MDD")),
    ("2.16.840.1.113883.3.464.1003.109.12.1028", "End Stage Renal Disease", ("ESRD", "Kidney Failure")),
    ("2.16.840.1.113883.3.464.1003.113.12.1074", "Frailty Diagnosis", ("Frailty",), "NCQA", "Advanced illness exclusion"),
    ("2.16.840.1.113883.3.464.1003.111.12.1011", "Pregnancy", ("Pregnant",)),
    # Medications and immunizations
    ("2.16.840.1.113883.3.464.1003.196.12.1001", "Antidepressant Medication", ("Antidepressants",)),
    ("2.16.840.1.113883.3.464.1003.196.12.1205", "ACE Inhibitor or ARB", ("ACEI/ARB", "ACE Inhibitors")),
    ("2.16.840.1.113883.3.464.1003.196.12.1214", "Influenza Vaccine", ("Flu Shot", "Flu Vaccine")),
    ("2.16.840.1.113883.3.464.1003.110.12.1027", "Pneumococcal Vaccine", ("Pneumonia Vaccine",)),
)


# ── Results ──────────────────────────────────────────────────────────

@dataclass
class OIDIssue:
    code: str  # MALFORMED_FORMAT / INVALID_ROOT / NAME_MISMATCH / NOT_IN_CATALOG / ...
    message: str
    suggestion: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {"code": self.code, "message": self.message}
        if self.suggestion:
            result["suggestion"] = self.suggestion
        return result


@dataclass
class OIDValidationResult:
    valid: bool
    oid: str
    errors: List[OIDIssue] = field(default_factory=list)
    warnings: List[OIDIssue] = field(default_factory=list)
    catalog_match: Optional[CatalogEntry] = None

    @property
    def error_messages(self) -> List[str]:
        return [e.message for e in self.errors]

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "valid": self.valid,
            "oid": self.oid,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
        }
        if self.catalog_match:
            result["catalogMatch"] = self.catalog_match.to_dict()
        return result


@dataclass
class OIDBatchValidationResult:
    total: int
    valid: int
    invalid: int
    warnings: int
    results: List[OIDValidationResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "valid": self.valid,
            "invalid": self.invalid,
            "warnings": self.warnings,
            "results": [r.to_dict() for r in self.results],
        }


# ── Format ───────────────────────────────────────────────────────────

def validate_oid_format(oid: Any) -> Tuple[bool, Optional[str]]:
    """Returns (valid, error message)."""
    if not oid or not isinstance(oid, str):
        return False, "OID is empty or not a string"

    trimmed = oid.strip()
    if OID_PATTERN.match(trimmed):
        return True, None

    if " " in trimmed:
        return False, "OID contains spaces"
    if "O" in trimmed or "o" in trimmed:
        return False, "OID contains letter O instead of zero"
    if trimmed.startswith(".") or trimmed.endswith("."):
        return False, "OID cannot start or end with a dot"
    if ".." in trimmed:
        return False, "OID contains consecutive dots"
    if not trimmed[0].isdigit():
        return False, "OID must start with a digit (0, 1, or 2)"
    if trimmed.split(".")[0].isdigit() and int(trimmed.split(".")[0]) > 2:
        return False, "OID first arc must be 0, 1, or 2"
    return False, "Invalid OID format"


def get_oid_root(oid: str) -> Optional[str]:
    """Organization owning the longest known root prefix of ``oid``."""
    for root in sorted(KNOWN_OID_ROOTS, key=len, reverse=True):
        if oid == root or oid.startswith(root + "."):
            return KNOWN_OID_ROOTS[root]
    return None


# ── Name matching ────────────────────────────────────────────────────

def levenshtein_distance(a: str, b: str) -> int:
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def string_similarity(a: str, b: str) -> float:
    """1 - normalized edit distance, case-insensitive."""
    longer, shorter = (a, b) if len(a) > len(b) else (b, a)
    if not longer:
        return 1.0
    distance = levenshtein_distance(longer.lower(), shorter.lower())
    return (len(longer) - distance) / len(longer)


def _normalize_name(name: str) -> str:
    return " ".join(re.sub(r"[^a-z0-9]", " ", name.lower()).split())


def fuzzy_match_names(name1: str, name2: str) -> Tuple[bool, float]:
    """Returns (match, similarity) for two value set names."""
    n1, n2 = _normalize_name(name1), _normalize_name(name2)
    if n1 == n2:
        return True, 1.0
    if n1 and n2 and (n1 in n2 or n2 in n1):
        similarity = min(len(n1), len(n2)) / max(len(n1), len(n2))
        return similarity > 0.7, similarity
    similarity = string_similarity(n1, n2)
    return similarity > 0.8, similarity


def find_similar_oids(oid: str, max_distance: int = 2) -> List[CatalogEntry]:
    """Catalog OIDs of the same arc count differing in at most ``max_distance`` arcs."""
    arcs = oid.split(".")
    similar = []
    for catalog_oid, entry in OID_CATALOG.items():
        if abs(len(catalog_oid) - len(oid)) > max_distance:
            continue
        catalog_arcs = catalog_oid.split(".")
        if len(catalog_arcs) != len(arcs):
            continue
        differences = sum(1 for a, b in zip(arcs, catalog_arcs) if a != b)
        if differences <= max_distance:
            similar.append(entry)
    return similar


def suggest_value_sets(name_query: str, limit: int = 5) -> List[CatalogEntry]:
    """Catalog entries whose name (or an alternate) resembles ``name_query``."""
    scored = []
    for entry in OID_CATALOG.values():
        best = max(string_similarity(name_query, n) for n in (entry.name,) + entry.alternate_names)
        if best > 0.3:
            scored.append((best, entry))
    scored.sort(key=lambda pair: pair[0], reverse=True)
    return [entry for _, entry in scored[:limit]]


# ── Validation ───────────────────────────────────────────────────────

def validate_oid(oid: str, name: Optional[str] = None) -> OIDValidationResult:
    """
    Validate an OID, optionally checking the extracted value set name.

    Format problems and name mismatches are errors; an unknown root or an
    OID missing from the catalog is only a warning.
    """
    errors: List[OIDIssue] = []
    warnings: List[OIDIssue] = []

    valid_format, message = validate_oid_format(oid)
    if not valid_format:
        errors.append(OIDIssue(
            "MALFORMED_FORMAT",
            message or "Invalid OID format",
            "OID should be a sequence of numbers separated by dots "
            "(e.g., 2.16.840.1.113883.3.464.1003.101.12.1001)",
        ))
        return OIDValidationResult(valid=False, oid=str(oid or ""), errors=errors)

    oid = oid.strip()
    if get_oid_root(oid) is None:
        warnings.append(OIDIssue(
            "NOT_IN_CATALOG", "OID root not recognized. May be valid but not in common eCQM catalog.",
        ))

    entry = OID_CATALOG.get(oid)
    if entry is not None:
        if name:
            candidates = (entry.name,) + entry.alternate_names
            if not any(fuzzy_match_names(name, candidate)[0] for candidate in candidates):
                alternates = f" (or: {', '.join(entry.alternate_names)})" if entry.alternate_names else ""
                errors.append(OIDIssue(
                    "NAME_MISMATCH",
                    f'Extracted name "{name}" does not match catalog name "{entry.name}"',
                    f"Expected name similar to: {entry.name}{alternates}",
                ))
    else:
        warnings.append(OIDIssue(
            "NOT_IN_CATALOG", "OID not found in common eCQM value set catalog. Verify it is correct.",
        ))
        similar = find_similar_oids(oid)
        if similar:
            listed = ", ".join(f"{s.oid} ({s.name})" for s in similar)
            warnings.append(OIDIssue("SIMILAR_OID_EXISTS", f"Similar OIDs in catalog: {listed}"))

    return OIDValidationResult(valid=not errors, oid=oid, errors=errors, warnings=warnings, catalog_match=entry)


def validate_oid_batch(pairs: Iterable[Tuple[str, Optional[str]]]) -> OIDBatchValidationResult:
    results = [validate_oid(oid, name) for oid, name in pairs]
    return OIDBatchValidationResult(
        total=len(results),
        valid=sum(1 for r in results if r.valid),
        invalid=sum(1 for r in results if not r.valid),
        warnings=sum(1 for r in results if r.warnings),
        results=results,
    )


def validate_oid_via_vsac(
    oid: str,
    api_key: str,
    base_url: str = VSAC_BASE_URL,
    timeout: int = 10,
) -> OIDValidationResult:
    """
    Local validation followed by a VSAC lookup.

    A 404 makes the result invalid (VSAC_NOT_FOUND); any other failure only
    adds a VSAC_UNAVAILABLE warning.
    """
    result = validate_oid(oid)
    if not result.valid:
        return result

    try:
        response = requests.get(
            f"{base_url}/RetrieveValueSet",
            params={"id": result.oid},
            auth=("apikey", api_key),
            headers={"Accept": "application/json"},
            timeout=timeout,
        )
    except requests.RequestException as e:
        logger.warning(f"VSAC lookup failed for {oid}: {e}")
        result.warnings.append(OIDIssue("VSAC_UNAVAILABLE", str(e) or "VSAC request failed"))
        return result

    if response.status_code == 404:
        result.valid = False
        result.errors.append(OIDIssue(
            "VSAC_NOT_FOUND",
            "OID not found in VSAC",
            "Verify the OID is correct or check if the value set has been retired",
        ))
    elif not response.ok:
        result.warnings.append(OIDIssue("VSAC_UNAVAILABLE", f"VSAC returned status {response.status_code}"))
    else:
        try:
            data = response.json()
        except ValueError:
            data = {}
        result.catalog_match = CatalogEntry(
            oid=result.oid,
            name=data.get("displayName") or data.get("name") or "",
            steward=data.get("source") or "",
        )
    return result
