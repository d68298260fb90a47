"""
Specialized CQL for well-known screening measures.

A family is detected from the measure title or CMS identifier. When it
matches, its helper definitions are emitted, its exclusion items join the
Denominator Exclusion, and its numerator replaces the generic numerator
lowering. ``MEASURE_FAMILIES`` is ordered; the first match supplies the
numerator.
"""

from dataclasses import dataclass
from typing import List, Tuple

from ums.schema import MeasureMetadata


@dataclass(frozen=True)
class MeasureFamily:
    name: str
    title_keywords: Tuple[str, ...]  # all must appear in the title
    measure_ids: Tuple[str, ...]  # any may appear in the measure id
    helpers: str
    exclusions: Tuple[str, ...]
    numerator: str
    value_sets: Tuple[str, ...]

    def matches(self, metadata: MeasureMetadata) -> bool:
        title = (metadata.title or "").lower()
        measure_id = (metadata.measure_id or "").upper()
        if self.title_keywords and all(k in title for k in self.title_keywords):
            return True
        return any(mid in measure_id for mid in self.measure_ids)


COLORECTAL = MeasureFamily(
    name="colorectal",
    title_keywords=("colorectal",),
    measure_ids=("CMS130",),
    helpers='''
// Colorectal Cancer Screening Helpers
define "Colonoscopy Performed":
  [Procedure: "Colonoscopy"] Colonoscopy
    where Colonoscopy.status = 'completed'
      and Colonoscopy.performed ends 10 years or less before end of "Measurement Period"

define "Fecal Occult Blood Test Performed":
  [Observation: "Fecal Occult Blood Test (FOBT)"] FOBT
    where FOBT.status in { 'final', 'amended', 'corrected' }
      and FOBT.effective ends 1 year or less before end of "Measurement Period"
      and FOBT.value is not null

define "Flexible Sigmoidoscopy Performed":
  [Procedure: "Flexible Sigmoidoscopy"] Sigmoidoscopy
    where Sigmoidoscopy.status = 'completed'
      and Sigmoidoscopy.performed ends 5 years or less before end of "Measurement Period"

define "FIT DNA Test Performed":
  [Observation: "FIT DNA"] FITTest
    where FITTest.status in { 'final', 'amended', 'corrected' }
      and FITTest.effective ends 3 years or less before end of "Measurement Period"
      and FITTest.value is not null

define "CT Colonography Performed":
  [Procedure: "CT Colonography"] CTCol
    where CTCol.status = 'completed'
      and CTCol.performed ends 5 years or less before end of "Measurement Period"

define "Has Colorectal Cancer":
  exists ([Condition: "Malignant Neoplasm of Colon"] Cancer
    where Cancer.clinicalStatus ~ QICoreCommon."active")

define "Has Total Colectomy":
  exists ([Procedure: "Total Colectomy"] Colectomy
    where Colectomy.status = 'completed'
      and Colectomy.performed starts before end of "Measurement Period")''',
    exclusions=('"Has Colorectal Cancer"', '"Has Total Colectomy"'),
    numerator='''  exists "Colonoscopy Performed"
    or exists "Fecal Occult Blood Test Performed"
    or exists "Flexible Sigmoidoscopy Performed"
    or exists "FIT DNA Test Performed"
    or exists "CT Colonography Performed"''',
    value_sets=(
        "Colonoscopy", "Fecal Occult Blood Test (FOBT)", "Flexible Sigmoidoscopy", "FIT DNA",
        "CT Colonography", "Malignant Neoplasm of Colon", "Total Colectomy",
    ),
)

CERVICAL = MeasureFamily(
    name="cervical",
    title_keywords=("cervical",),
    measure_ids=("CMS124",),
    helpers='''
// Cervical Cancer Screening Helpers
define "Cervical Cytology Within 3 Years":
  [Observation: "Pap Test"] Pap
    where Pap.status in { 'final', 'amended', 'corrected' }
      and Pap.effective ends 3 years or less before end of "Measurement Period"
      and Pap.value is not null

define "HPV Test Within 5 Years":
  [Observation: "HPV Test"] HPV
    where HPV.status in { 'final', 'amended', 'corrected' }
      and HPV.effective ends 5 years or less before end of "Measurement Period"
      and HPV.value is not null

define "Has Hysterectomy":
  exists ([Procedure: "Hysterectomy with No Residual Cervix"] Hyst
    where Hyst.status = 'completed'
      and Hyst.performed starts before end of "Measurement Period")

define "Absence of Cervix Diagnosis":
  exists ([Condition: "Congenital or Acquired Absence of Cervix"] Absence
    where Absence.clinicalStatus ~ QICoreCommon."active")''',
    exclusions=('"Has Hysterectomy"', '"Absence of Cervix Diagnosis"'),
    numerator='''  exists "Cervical Cytology Within 3 Years"
    or (AgeInYearsAt(date from end of "Measurement Period") >= 30
        and exists "HPV Test Within 5 Years")''',
    value_sets=(
        "Pap Test", "HPV Test", "Hysterectomy with No Residual Cervix",
        "Congenital or Acquired Absence of Cervix",
    ),
)

BREAST = MeasureFamily(
    name="breast",
    title_keywords=("breast", "screen"),
    measure_ids=("CMS125",),
    helpers='''
// Breast Cancer Screening Helpers
define "Mammography Within 27 Months":
  [DiagnosticReport: "Mammography"] Mammogram
    where Mammogram.status in { 'final', 'amended', 'corrected' }
      and Mammogram.effective ends 27 months or less before end of "Measurement Period"

define "Has Bilateral Mastectomy":
  exists ([Procedure: "Bilateral Mastectomy"] Mastectomy
    where Mastectomy.status = 'completed'
      and Mastectomy.performed starts before end of "Measurement Period")

define "Has Unilateral Mastectomy Left":
  exists ([Procedure: "Unilateral Mastectomy Left"] LeftMastectomy
    where LeftMastectomy.status = 'completed')

define "Has Unilateral Mastectomy Right":
  exists ([Procedure: "Unilateral Mastectomy Right"] RightMastectomy
    where RightMastectomy.status = 'completed')''',
    exclusions=(
        '"Has Bilateral Mastectomy"',
        '("Has Unilateral Mastectomy Left" and "Has Unilateral Mastectomy Right")',
    ),
    numerator='  exists "Mammography Within 27 Months"',
    value_sets=(
        "Mammography", "Bilateral Mastectomy", "Unilateral Mastectomy Left", "Unilateral Mastectomy Right",
    ),
)

MEASURE_FAMILIES: Tuple[MeasureFamily, ...] = (COLORECTAL, CERVICAL, BREAST)


def detect_families(metadata: MeasureMetadata, families: Tuple[MeasureFamily, ...] = MEASURE_FAMILIES) -> List[MeasureFamily]:
    return [family for family in families if family.matches(metadata)]
