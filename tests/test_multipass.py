"""
Tests for extraction.multipass — skeleton, detail and validation passes.

The oracle is a scripted fake keyed on the system prompt, so no provider
is ever contacted. Responses may be dicts (sent as JSON), raw strings,
callables of the user prompt, or exceptions to raise.
"""

import json
import threading
import time

import logging

from core.errors import LLMRateLimitError, LLMResponseError
from core.llm_client import Oracle
from extraction.chunker import ChunkingOptions
from extraction.multipass import (
    IdFactory,
    MultiPassOptions,
    build_data_element,
    build_logical_clause,
    extract_with_multipass,
    normalize_value_set,
)
from extraction.oid_validator import OIDIssue, OIDValidationResult
from extraction.prompts import SKELETON_SYSTEM_PROMPT, VALIDATION_SYSTEM_PROMPT
from ums.schema import ClinicalType, Confidence, LogicalOperator, PopulationType

OFFICE_VISIT = {"name": "Office Visit", "oid": "2.16.840.1.113883.3.464.1003.101.12.1001"}
COLONOSCOPY = {"name": "Colonoscopy", "oid": "2.16.840.1.113883.3.464.1003.108.12.1020"}

SKELETON = {
    "measureId": "CMS130v12",
    "title": "Colorectal Cancer Screening",
    "version": "12.0.000",
    "steward": "NCQA",
    "programType": "eCQM",
    "measurementPeriod": {"start": "2024-01-01", "end": "2024-12-31"},
    "globalConstraints": {"ageRange": {"min": 45, "max": 75}},
    "populations": [
        {"type": "initial-population", "name": "Initial Population", "briefDescription": "Patients 45-75 with a visit"},
        {"type": "denominator", "name": "Denominator", "briefDescription": "Equals Initial Population"},
        {"type": "numerator", "name": "Numerator", "briefDescription": "Appropriate screening"},
    ],
    "confidence": "high",
}

INITIAL_DETAIL = {
    "narrative": "Patients 45-75 years of age with a visit during the measurement period",
    "criteria": {
        "operator": "AND",
        "children": [
            {"type": "demographic", "description": "Age 45-75", "thresholds": {"ageMin": 45, "ageMax": 75}},
            {"type": "encounter", "description": "Office visit", "valueSet": OFFICE_VISIT},
        ],
    },
    "valueSets": [OFFICE_VISIT],
}

DENOMINATOR_DETAIL = {"criteria": {"operator": "AND", "children": []}}

NUMERATOR_DETAIL = {
    "criteria": {
        "operator": "or",
        "children": [{"type": "procedure", "description": "Colonoscopy", "valueSet": COLONOSCOPY}],
    },
    "valueSets": [COLONOSCOPY],
    "warnings": ["Lookback period inferred from narrative"],
}

VALID_REVIEW = {"valid": True, "missingPopulations": [], "missingCriteria": [], "suggestions": []}


class ScriptedOracle(Oracle):
    """Answers by pass; detail replies are keyed by kebab-case population type."""

    def __init__(self, skeleton=None, details=None, validation=None, model="claude-sonnet-4"):
        self.model = model
        self.skeleton = SKELETON if skeleton is None else skeleton
        self.details = {
            "initial-population": INITIAL_DETAIL,
            "denominator": DENOMINATOR_DETAIL,
            "numerator": NUMERATOR_DETAIL,
        }
        self.details.update(details or {})
        self.validation = VALID_REVIEW if validation is None else validation
        self.calls = []
        self._lock = threading.Lock()

    def _reply(self, reply, user_prompt):
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            reply = reply(user_prompt)
        return reply if isinstance(reply, str) else json.dumps(reply)

    def complete(self, system_prompt, messages, max_tokens):
        user_prompt = messages[-1]["content"]
        if system_prompt == SKELETON_SYSTEM_PROMPT:
            kind = "skeleton"
        elif system_prompt == VALIDATION_SYSTEM_PROMPT:
            kind = "validation"
        else:
            kind = next(t for t in self.details if f"criteria for the {t} population" in system_prompt)
        with self._lock:
            self.calls.append((kind, max_tokens))

        if kind == "skeleton":
            return self._reply(self.skeleton, user_prompt)
        if kind == "validation":
            return self._reply(self.validation, user_prompt)
        return self._reply(self.details[kind], user_prompt)

    def kinds(self):
        return [kind for kind, _ in self.calls]


DOCUMENT = (
    "Colorectal Cancer Screening\n"
    "Initial Population: Patients 45-75 years of age with a visit during the measurement period\n"
    "Denominator: Equals Initial Population\n"
    "Numerator: Patients with one or more screenings for colorectal cancer\n"
)


def run(oracle, **options):
    options.setdefault("skip_validation_pass", True)
    return extract_with_multipass(DOCUMENT, oracle, MultiPassOptions(**options))


# ── Skeleton pass ────────────────────────────────────────────────────

class TestSkeletonPass:

    def test_non_json_skeleton_ends_run(self):
        oracle = ScriptedOracle(skeleton="I could not find a measure in this document.")
        result = run(oracle)
        assert not result.success
        assert len(result.errors) == 1
        assert result.errors[0].startswith("Failed to extract measure skeleton")
        assert result.population_results == []
        assert result.ums is None
        assert oracle.kinds() == ["skeleton"]

    def test_oracle_error_on_skeleton(self):
        result = run(ScriptedOracle(skeleton=LLMResponseError("Empty response")))
        assert result.errors == ["Failed to extract measure skeleton: Empty response"]
        assert result.ums is None

    def test_foreign_exception_on_skeleton(self):
        result = run(ScriptedOracle(skeleton=ConnectionError("refused")))
        assert result.errors == ["Failed to extract measure skeleton: ConnectionError: refused"]
        assert result.ums is None

    def test_unknown_population_types_dropped(self):
        skeleton = dict(SKELETON, populations=SKELETON["populations"] + [{"type": "stratifier", "name": "Age band"}])
        result = run(ScriptedOracle(skeleton=skeleton))
        assert result.success
        assert len(result.skeleton.populations) == 3


# ── Full extraction ──────────────────────────────────────────────────

class TestExtraction:

    def test_assembled_measure(self):
        result = run(ScriptedOracle())
        assert result.success
        assert result.errors == []
        ums = result.ums
        assert ums.id == "ums_CMS130v12"
        assert ums.metadata.measure_id == "CMS130v12"
        assert ums.metadata.steward == "NCQA"
        assert ums.metadata.version == "12.0.000"
        assert ums.metadata.measurement_period.start == "2024-01-01"
        assert ums.global_constraints.age_min == 45
        assert ums.status == "in_progress"
        assert ums.overall_confidence is Confidence.HIGH
        assert ums.review_progress.total == 3
        assert ums.review_progress.pending == 3
        assert [p.id for p in ums.populations] == ["pop_initial_population", "pop_denominator", "pop_numerator"]

    def test_criteria_built_with_generated_ids(self):
        initial = run(ScriptedOracle()).ums.populations[0]
        assert initial.criteria.id == "clause_1"
        assert [c.id for c in initial.criteria.children] == ["elem_1", "elem_2"]
        assert initial.criteria.children[0].clinical_type is ClinicalType.DEMOGRAPHIC
        assert initial.criteria.children[1].value_set.url.endswith("2.16.840.1.113883.3.464.1003.101.12.1001")
        assert initial.narrative.startswith("Patients 45-75")

    def test_lowercase_operator_normalized(self):
        numerator = run(ScriptedOracle()).ums.populations[2]
        assert numerator.criteria.operator is LogicalOperator.OR

    def test_value_sets_deduplicated_across_populations(self):
        details = {"denominator": dict(DENOMINATOR_DETAIL, valueSets=[OFFICE_VISIT])}
        ums = run(ScriptedOracle(details=details)).ums
        assert sorted(vs.name for vs in ums.value_sets) == ["Colonoscopy", "Office Visit"]

    def test_oracle_warnings_carried(self):
        result = run(ScriptedOracle())
        assert "Lookback period inferred from narrative" in result.warnings

    def test_task_config_token_budgets(self):
        oracle = ScriptedOracle()
        run(oracle, skip_validation_pass=False)
        budgets = dict(oracle.calls)
        assert budgets["skeleton"] == 4000
        assert budgets["numerator"] == 12000
        assert budgets["validation"] == 4000

    def test_timings_and_dict(self):
        data = run(ScriptedOracle()).to_dict()
        assert data["success"] is True
        assert data["timings"]["totalMs"] >= data["timings"]["skeletonMs"]
        assert data["ums"]["id"] == "ums_CMS130v12"
        assert data["validationResult"] is None


# ── Population failures ──────────────────────────────────────────────

class TestPopulationFailures:

    def test_non_json_detail_fails_one_population(self):
        result = run(ScriptedOracle(details={"numerator": "Sorry, no criteria here."}))
        assert not result.success
        assert result.errors == ["Failed to extract numerator: No JSON found in response"]
        assert [p.population_type for p in result.ums.populations] == [
            PopulationType.INITIAL_POPULATION, PopulationType.DENOMINATOR,
        ]
        assert result.ums.review_progress.total == 2

    def test_oracle_error_in_detail_pass(self):
        result = run(ScriptedOracle(details={"numerator": LLMRateLimitError()}))
        assert result.errors == ["Failed to extract numerator: Rate limit exceeded"]
        assert len(result.population_results) == 3
        assert not result.population_results[2].success

    def test_malformed_criteria(self):
        bad = {"criteria": {"operator": "AND", "children": [], "siblingConnections": [{"fromIndex": "first"}]}}
        result = run(ScriptedOracle(details={"denominator": bad}))
        assert len(result.errors) == 1
        assert result.errors[0].startswith("Failed to extract denominator: Malformed criteria in response:")

    def test_foreign_oracle_exception_fails_one_population(self):
        result = run(ScriptedOracle(details={"numerator": ConnectionError("socket reset")}))
        assert not result.success
        assert result.errors == ["Failed to extract numerator: ConnectionError: socket reset"]
        assert [p.population_type for p in result.ums.populations] == [
            PopulationType.INITIAL_POPULATION, PopulationType.DENOMINATOR,
        ]

    def test_non_adjacent_sibling_connection_warned(self):
        criteria = {
            "operator": "AND",
            "children": [
                {"type": "procedure", "description": "Colonoscopy"},
                {"type": "procedure", "description": "FOBT"},
                {"type": "procedure", "description": "CT colonography"},
            ],
            "siblingConnections": [{"fromIndex": 0, "toIndex": 2, "operator": "OR"}],
        }
        result = run(ScriptedOracle(details={"numerator": dict(NUMERATOR_DETAIL, criteria=criteria)}))
        assert result.success
        assert any("Sibling connection 0->2 does not join adjacent children" in w for w in result.warnings)

    def test_foreign_exception_on_pool(self):
        result = run(ScriptedOracle(details={"denominator": RuntimeError("sdk crashed")}), max_workers=3)
        assert result.errors == ["Failed to extract denominator: RuntimeError: sdk crashed"]
        assert [r.success for r in result.population_results] == [True, False, True]


# ── OID checks ───────────────────────────────────────────────────────

class TestOIDValidation:

    def test_injected_validator_failures_become_warnings(self):
        def reject(oid, name):
            return OIDValidationResult(valid=False, oid=oid, errors=[OIDIssue("NAME_MISMATCH", "name differs")])

        result = run(ScriptedOracle(), oid_validator=reject)
        assert result.success
        assert 'OID validation failed for "Office Visit": name differs' in result.warnings
        assert 'OID validation failed for "Colonoscopy": name differs' in result.warnings
        assert len(result.population_results[0].oid_validations) == 1

    def test_catalog_name_mismatch(self):
        mislabeled = {"name": "Hospice", "oid": COLONOSCOPY["oid"]}
        details = {"numerator": dict(NUMERATOR_DETAIL, valueSets=[mislabeled])}
        result = run(ScriptedOracle(details=details))
        assert result.success
        assert any(
            'Extracted name "Hospice" does not match catalog name "Colonoscopy"' in w for w in result.warnings
        )

    def test_value_sets_without_oid_not_validated(self):
        calls = []

        def record(oid, name):
            calls.append(oid)
            return OIDValidationResult(valid=True, oid=oid)

        details = {"numerator": dict(NUMERATOR_DETAIL, valueSets=[{"name": "FIT DNA"}])}
        run(ScriptedOracle(details=details), oid_validator=record)
        assert calls == [OFFICE_VISIT["oid"]]


# ── Validation pass ──────────────────────────────────────────────────

class TestValidationPass:

    def test_skipped(self):
        oracle = ScriptedOracle()
        result = run(oracle, skip_validation_pass=True)
        assert "validation" not in oracle.kinds()
        assert result.validation_result is None

    def test_clean_review(self):
        oracle = ScriptedOracle()
        result = run(oracle, skip_validation_pass=False)
        assert oracle.kinds()[-1] == "validation"
        assert result.validation_result.valid
        assert result.success

    def test_issues_become_warnings_only(self):
        review = {
            "valid": False,
            "missingPopulations": ["denominator-exclusion"],
            "missingCriteria": [{"specText": "Hospice services", "populationType": "denominator-exclusion"}],
            "suggestions": ["Add hospice exclusion"],
        }
        result = run(ScriptedOracle(validation=review), skip_validation_pass=False)
        assert result.success
        assert "Validation found potential issues: Add hospice exclusion" in result.warnings
        assert "Validation pass reports missing population: denominator-exclusion" in result.warnings
        assert result.validation_result.missing_criteria[0].spec_text == "Hospice services"

    def test_unparseable_review(self):
        result = run(ScriptedOracle(validation="Looks fine to me."), skip_validation_pass=False)
        assert result.success
        assert result.validation_result.valid
        assert result.validation_result.suggestions == ["Could not parse validation response"]

    def test_review_oracle_error(self):
        result = run(ScriptedOracle(validation=LLMResponseError("Empty")), skip_validation_pass=False)
        assert result.success
        assert result.validation_result.suggestions == ["Validation error: Empty"]

    def test_review_foreign_exception(self):
        result = run(ScriptedOracle(validation=TimeoutError("read timed out")), skip_validation_pass=False)
        assert result.success
        assert result.validation_result.suggestions == ["Validation error: TimeoutError: read timed out"]


# ── Progress and concurrency ─────────────────────────────────────────

class TestProgressAndConcurrency:

    def test_progress_phases(self):
        events = []
        run(ScriptedOracle(), skip_validation_pass=False, on_progress=events.append)
        phases = [e.phase for e in events]
        assert phases[0] == "skeleton"
        assert phases.count("populations") == 3
        assert phases[-2:] == ["validation", "complete"]
        assert events[1].message == "Extracting Initial Population..."

    def test_failing_callback_does_not_stop_run(self, caplog):
        def explode(progress):
            raise RuntimeError("listener gone")

        with caplog.at_level(logging.WARNING):
            result = run(ScriptedOracle(), on_progress=explode)
        assert result.success
        assert "Progress callback failed: listener gone" in caplog.text

    def test_parallel_results_keep_skeleton_order(self):
        def slow(reply, delay):
            def respond(user_prompt):
                time.sleep(delay)
                return reply
            return respond

        oracle = ScriptedOracle(details={
            "initial-population": slow(INITIAL_DETAIL, 0.05),
            "denominator": slow(DENOMINATOR_DETAIL, 0.02),
        })
        result = run(oracle, max_workers=3)
        assert result.success
        assert [r.population_type for r in result.population_results] == [
            PopulationType.INITIAL_POPULATION, PopulationType.DENOMINATOR, PopulationType.NUMERATOR,
        ]
        assert oracle.kinds().count("numerator") == 1


# ── Chunked documents ────────────────────────────────────────────────

FILLER = "screening measure text "
INITIAL_HEAD = "Initial Population\nPatients 45-75 years of age with an office visit\n"
NUMERATOR_SECTION = "\nNumerator\nColonoscopy in the past 10 years or FIT-DNA in the past 3 years\n"
CHUNKING = ChunkingOptions(max_chunk_size=15000, overlap_size=2000, min_chunk_size=5000)


def large_document():
    """25,000 chars; the numerator section sits in the overlap of the two chunks."""
    body = FILLER * 2000
    first = INITIAL_HEAD + body[:14000 - len(INITIAL_HEAD)]
    rest = NUMERATOR_SECTION + body[:25000 - 14000 - len(NUMERATOR_SECTION)]
    return first + rest


def chunk_numerator(user_prompt):
    """Different but overlapping criteria per chunk, with colliding ids."""
    if "Initial Population" in user_prompt:
        children = [
            {"id": "n1", "type": "procedure", "description": "Colonoscopy", "valueSet": COLONOSCOPY},
            {"id": "n2", "type": "procedure", "description": "Flexible sigmoidoscopy"},
        ]
        narrative = "Screening"
    else:
        children = [
            {"id": "n1", "type": "procedure", "description": "Colonoscopy", "valueSet": COLONOSCOPY},
            {"id": "n2", "type": "laboratory", "description": "FIT-DNA test"},
        ]
        narrative = "Screening by colonoscopy, sigmoidoscopy or stool DNA"
    return {
        "narrative": narrative,
        "criteria": {"id": "num_root", "operator": "OR", "children": children},
        "valueSets": [COLONOSCOPY],
    }


CHUNK_SKELETON = dict(SKELETON, populations=[
    {"type": "initial-population", "name": "Initial Population"},
    {"type": "numerator", "name": "Numerator"},
])


def run_chunked(oracle, **options):
    options.setdefault("skip_validation_pass", True)
    return extract_with_multipass(large_document(), oracle, MultiPassOptions(chunking=CHUNKING, **options))


class TestChunkedExtraction:

    def test_document_shape(self):
        text = large_document()
        assert len(text) == 25000
        assert text.index("Numerator") > 13000

    def test_numerator_merged_across_chunks(self):
        oracle = ScriptedOracle(skeleton=CHUNK_SKELETON, details={"numerator": chunk_numerator})
        result = run_chunked(oracle)
        assert result.success
        assert "Document chunked into 2 parts for processing" in result.warnings
        assert oracle.kinds().count("numerator") == 2
        assert oracle.kinds().count("initial-population") == 1

        numerator = result.ums.find_population(PopulationType.NUMERATOR)
        children = numerator.criteria.children
        assert [c.description for c in children] == ["Colonoscopy", "Flexible sigmoidoscopy", "FIT-DNA test"]
        ids = [c.id for c in children]
        assert len(ids) == len(set(ids))
        assert ids == ["n1", "n2", "n2_2"]
        assert numerator.narrative == "Screening by colonoscopy, sigmoidoscopy or stool DNA"

    def test_merged_value_sets_unique(self):
        oracle = ScriptedOracle(skeleton=CHUNK_SKELETON, details={"numerator": chunk_numerator})
        ums = run_chunked(oracle).ums
        assert sorted(vs.name for vs in ums.value_sets) == ["Colonoscopy", "Office Visit"]

    def test_population_without_markers_uses_first_chunk(self):
        skeleton = dict(SKELETON, populations=CHUNK_SKELETON["populations"] + [
            {"type": "denominator-exclusion", "name": "Denominator Exclusion"},
        ])
        oracle = ScriptedOracle(
            skeleton=skeleton,
            details={"numerator": chunk_numerator, "denominator-exclusion": DENOMINATOR_DETAIL},
        )
        result = run_chunked(oracle)
        assert (
            "No section markers found for Denominator Exclusion; extracting from the first chunk"
            in result.warnings
        )
        assert oracle.kinds().count("denominator-exclusion") == 1

    def test_skeleton_failure(self):
        result = run_chunked(ScriptedOracle(skeleton="nothing"))
        assert not result.success
        assert result.errors[0].startswith("Failed to extract measure skeleton from any chunk")

    def test_threshold_option(self):
        oracle = ScriptedOracle(skeleton=CHUNK_SKELETON, details={"numerator": chunk_numerator})
        result = run_chunked(oracle, large_document_threshold=30000)
        assert "Document chunked into 2 parts for processing" not in result.warnings
        assert oracle.kinds().count("numerator") == 1


# ── Builders ─────────────────────────────────────────────────────────

class TestBuilders:

    def test_id_factory(self):
        ids = IdFactory("c1")
        assert [ids("elem"), ids("elem"), ids("vs")] == ["elem_c1_1", "elem_c1_2", "vs_c1_1"]
        assert IdFactory()("clause") == "clause_1"

    def test_missing_criteria_become_empty_group(self):
        root = build_logical_clause(None)
        assert root.operator is LogicalOperator.AND
        assert root.children == ()
        assert root.description == "Empty criteria"
        assert root.confidence is Confidence.LOW

    def test_nested_clause(self):
        root = build_logical_clause({
            "operator": "AND",
            "children": [
                {"type": "diagnosis", "description": "Diabetes"},
                {"operator": "OR", "children": [{"type": "medication", "description": "Insulin"}]},
                "not a node",
            ],
        })
        assert len(root.children) == 2
        assert root.children[1].operator is LogicalOperator.OR
        assert root.children[1].children[0].clinical_type is ClinicalType.MEDICATION

    def test_unknown_clinical_type_defaults_to_observation(self):
        assert build_data_element({"type": "vital-sign"}).clinical_type is ClinicalType.OBSERVATION

    def test_value_set_url_from_oid(self):
        vs = normalize_value_set({"name": " Colonoscopy ", "oid": " 1.2.3 ", "codes": [{"code": "45378", "system": "CPT"}]})
        assert vs.oid == "1.2.3"
        assert vs.url == "http://cts.nlm.nih.gov/fhir/ValueSet/1.2.3"
        assert vs.codes[0].code == "45378"
        assert normalize_value_set({"name": "X"}).url is None
