"""
LLM prompts for multi-pass measure extraction.

Pass 1 (skeleton) identifies measure metadata and the populations present.
Pass 2 (population detail) extracts one population's criteria tree.
Pass 3 (validation) cross-references the extraction against the source.
"""

import json
from typing import Any, Dict, List

from .schema import MeasureSkeleton, PopulationSkeleton

SKELETON_MAX_CHARS = 50000
DETAIL_MAX_CHARS = 40000
VALIDATION_MAX_CHARS = 30000

SKELETON_SYSTEM_PROMPT = """You are a clinical quality measure expert. Extract ONLY the structural overview of this measure specification.

DO NOT extract detailed criteria yet - just identify the structure.

Return a JSON object with this exact structure:
{
  "measureId": "CMS123v10",
  "title": "Measure Title",
  "version": "10.0.0",
  "programType": "eCQM",
  "measureType": "process",
  "scoring": "proportion",
  "steward": "Organization Name",
  "description": "Brief description",
  "measurementPeriod": {
    "start": "2025-01-01",
    "end": "2025-12-31",
    "type": "calendar_year"
  },
  "globalConstraints": {
    "ageRange": {"min": 18, "max": 75},
    "gender": "all"
  },
  "populations": [
    {
      "type": "initial-population",
      "name": "Initial Population",
      "briefDescription": "Patients aged 18-75 with diabetes",
      "specSection": "Page 5, Section 2.1",
      "estimatedCriteriaCount": 3
    }
  ],
  "confidence": "high"
}

Population types must be one of:
- initial-population
- denominator
- denominator-exclusion
- denominator-exception
- numerator
- numerator-exclusion

Only include populations that are explicitly defined in the spec.
Omit globalConstraints when the measure states no age range or gender restriction."""


POPULATION_DETAIL_PROMPT = """You are extracting DETAILED criteria for the {population_type} population of measure {measure_id}.

Context:
- Measure: {title}
- Population: {name}
- Brief description: {brief_description}
{spec_location}
Extract ALL criteria for this specific population. For each criterion:
1. Identify the clinical data type (diagnosis, procedure, medication, observation, encounter, demographic, immunization, assessment)
2. Extract the EXACT value set OID if present (format: 2.16.840.1.113883.x.x.x)
3. Extract timing requirements precisely, including numeric windows
4. Note any negation (absence of condition, no procedure, etc.)
5. Capture age limits and result thresholds in "thresholds"

Return JSON:
{{
  "populationType": "{population_type}",
  "criteria": {{
    "operator": "AND",
    "children": [
      {{
        "id": "crit_1",
        "type": "diagnosis",
        "description": "Diabetes diagnosis",
        "valueSet": {{
          "name": "Diabetes",
          "oid": "2.16.840.1.113883.3.464.1003.103.12.1001"
        }},
        "timingRequirements": [{{
          "description": "Active during measurement period",
          "relativeTo": "Measurement Period",
          "window": {{"value": 1, "unit": "years", "direction": "before"}},
          "confidence": "high"
        }}],
        "thresholds": {{"ageMin": 18, "ageMax": 75}},
        "negation": false,
        "confidence": "high"
      }}
    ],
    "confidence": "high"
  }},
  "valueSets": [
    {{
      "id": "vs_1",
      "name": "Diabetes",
      "oid": "2.16.840.1.113883.3.464.1003.103.12.1001",
      "codes": []
    }}
  ],
  "narrative": "Natural language description of this population",
  "warnings": []
}}

IMPORTANT:
- Extract OIDs EXACTLY as written in the spec - do not guess or invent OIDs
- If an OID is not clearly stated, set oid to null and add a warning
- Use proper nesting for complex logic (A AND (B OR C))
- Omit "window" and "thresholds" when the spec gives no numbers"""


VALIDATION_SYSTEM_PROMPT = """You are validating a measure specification extraction. Compare the original spec with what was extracted.

Identify:
1. Populations mentioned in the spec but MISSING from extraction
2. Criteria within populations that were NOT captured
3. Extracted criteria that DON'T appear in the original spec (hallucinations)
4. Any stratification requirements that were missed
5. Any supplemental data elements that were missed

Return JSON:
{
  "valid": true,
  "missingPopulations": ["list of population names that should exist but don't"],
  "missingCriteria": [
    {
      "specText": "Exact text from spec describing the criterion",
      "populationType": "which population it belongs to",
      "confidence": "high/medium/low"
    }
  ],
  "possibleHallucinations": [
    {
      "criterionDescription": "Description of extracted criterion",
      "populationType": "which population",
      "reason": "Why this might be hallucinated"
    }
  ],
  "suggestions": ["Actionable suggestions for fixing issues"]
}

Be thorough but conservative - only flag clear misses or hallucinations."""


def build_skeleton_prompt(document_text: str) -> str:
    return (
        "Extract the structural overview from this measure specification:\n\n"
        f"{document_text[:SKELETON_MAX_CHARS]}"
    )


def build_population_detail_prompt(skeleton: MeasureSkeleton, population: PopulationSkeleton) -> str:
    """System prompt for one population, primed with the skeleton context."""
    section = population.spec_section
    return POPULATION_DETAIL_PROMPT.format(
        population_type=population.type_name,
        measure_id=skeleton.measure_id,
        title=skeleton.title,
        name=population.name,
        brief_description=population.brief_description,
        spec_location=f"- Spec location: {section}\n" if section else "",
    )


def build_population_user_prompt(document_text: str, population_type: str) -> str:
    return (
        f"Extract detailed criteria for the {population_type} population from this spec:\n\n"
        f"{document_text[:DETAIL_MAX_CHARS]}"
    )


def build_validation_prompt(document_text: str, extracted_summary: Dict[str, Any]) -> str:
    return (
        f"Original Specification:\n{document_text[:VALIDATION_MAX_CHARS]}\n\n---\n\n"
        f"Extracted Data:\n{json.dumps(extracted_summary, indent=2)}\n\n"
        "Validate the extraction and identify any gaps or errors."
    )


def extraction_summary(measure_id: str, populations: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Serializable summary of extracted populations for the validation pass."""
    return {"measureId": measure_id, "populations": populations}
