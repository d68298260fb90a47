"""
Manual code overrides for individual criteria.

A reviewer can replace the generated CQL or SQL of one data element with
hand-written code. Every override carries at least one edit note; notes
are emitted as comments in front of the override so the generated
artifact records who changed what and why. A locked override always wins
verbatim over generated code.
"""

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from ums.schema import ClinicalType, DataElement, UniversalMeasureSpec
from ums.tree import collect_elements

logger = logging.getLogger(__name__)


class CodeTarget(Enum):
    CQL = "cql"
    SQL = "sql"

    @property
    def comment_prefix(self) -> str:
        return "//" if self is CodeTarget.CQL else "--"


CHANGE_TYPES = ("logic", "timing", "codes", "syntax", "other")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class CodeEditNote:
    content: str
    author: str = "System"
    timestamp: str = field(default_factory=_now_iso)
    change_type: Optional[str] = None
    previous_code: Optional[str] = None
    id: str = field(default_factory=lambda: f"note-{uuid.uuid4().hex[:12]}")

    def to_dict(self) -> Dict[str, Any]:
        result = {"id": self.id, "timestamp": self.timestamp, "author": self.author, "content": self.content}
        if self.change_type:
            result["changeType"] = self.change_type
        if self.previous_code is not None:
            result["previousCode"] = self.previous_code
        return result


@dataclass(frozen=True)
class CodeOverride:
    target: CodeTarget
    code: str
    notes: Tuple[CodeEditNote, ...] = ()
    is_locked: bool = True
    original_generated_code: str = ""
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def __post_init__(self):
        object.__setattr__(self, "notes", tuple(self.notes))
        if not isinstance(self.target, CodeTarget):
            object.__setattr__(self, "target", CodeTarget(str(self.target).lower()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "format": self.target.value,
            "code": self.code,
            "isLocked": self.is_locked,
            "notes": [n.to_dict() for n in self.notes],
            "originalGeneratedCode": self.original_generated_code,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


def _require_note(content: str) -> str:
    content = (content or "").strip()
    if not content:
        raise ValueError("An edit note is required when overriding generated code")
    return content


def _check_change_type(change_type: Optional[str]) -> Optional[str]:
    if change_type is not None and change_type not in CHANGE_TYPES:
        raise ValueError(f"Unknown change type '{change_type}'. Expected one of {CHANGE_TYPES}")
    return change_type


def create_override(
    target: CodeTarget,
    code: str,
    note: str,
    author: str = "System",
    change_type: Optional[str] = None,
    original_generated_code: str = "",
) -> CodeOverride:
    """Create a locked override; the edit note is mandatory."""
    edit_note = CodeEditNote(
        content=_require_note(note),
        author=author,
        change_type=_check_change_type(change_type),
        previous_code=original_generated_code or None,
    )
    return CodeOverride(
        target=target,
        code=code,
        notes=(edit_note,),
        original_generated_code=original_generated_code,
    )


def revise_override(
    override: CodeOverride,
    code: str,
    note: str,
    author: str = "System",
    change_type: Optional[str] = None,
) -> CodeOverride:
    """New override with replacement code and one more note appended."""
    edit_note = CodeEditNote(
        content=_require_note(note),
        author=author,
        change_type=_check_change_type(change_type),
        previous_code=override.code,
    )
    return replace(override, code=code, notes=override.notes + (edit_note,), updated_at=_now_iso())


def format_note_timestamp(timestamp: str) -> str:
    """ISO timestamp as e.g. ``Jan 5, 2025, 10:30 AM``; unparseable input is returned as-is."""
    try:
        moment = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return str(timestamp)
    return f"{moment:%b} {moment.day}, {moment.year}, {moment:%I:%M %p}"


def format_note_comment(note: CodeEditNote, target: CodeTarget) -> str:
    change = f" [{note.change_type}]" if note.change_type else ""
    return f"{target.comment_prefix} EDIT NOTE{change} ({format_note_timestamp(note.timestamp)}): {note.content}"


def format_notes(override: CodeOverride) -> str:
    return "\n".join(format_note_comment(note, override.target) for note in override.notes)


def apply_override(override: CodeOverride) -> str:
    """Override code preceded by its edit-note comments."""
    notes = format_notes(override)
    return f"{notes}\n{override.code}" if notes else override.code


class OverrideRegistry:
    """Overrides keyed by (component id, target)."""

    def __init__(self):
        self._overrides: Dict[Tuple[str, CodeTarget], CodeOverride] = {}

    def set(self, component_id: str, override: CodeOverride) -> None:
        self._overrides[(component_id, override.target)] = override
        logger.debug(f"Stored {override.target.value} override for {component_id}")

    def remove(self, component_id: str, target: CodeTarget) -> Optional[CodeOverride]:
        return self._overrides.pop((component_id, target), None)

    def get(self, component_id: str, target: CodeTarget) -> Optional[CodeOverride]:
        """Locked override for a component, or None."""
        override = self._overrides.get((component_id, target))
        if override is not None and override.is_locked:
            return override
        return None

    def items(self, target: CodeTarget) -> Iterator[Tuple[str, CodeOverride]]:
        for (component_id, override_target), override in self._overrides.items():
            if override_target is target and override.is_locked:
                yield component_id, override

    def __len__(self) -> int:
        return len(self._overrides)

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        result: Dict[str, Dict[str, Any]] = {}
        for (component_id, target), override in self._overrides.items():
            result.setdefault(component_id, {})[target.value] = override.to_dict()
        return result


def measure_overrides(
    measure: UniversalMeasureSpec,
    registry: Optional[OverrideRegistry],
    target: CodeTarget,
) -> List[Tuple[DataElement, CodeOverride]]:
    """Locked overrides that apply to elements of this measure, in tree order."""
    if registry is None:
        return []
    found = []
    seen = set()
    for population in measure.populations:
        if population.criteria is None:
            continue
        for element in collect_elements(population.criteria):
            override = registry.get(element.id, target)
            if override is not None and element.id not in seen:
                seen.add(element.id)
                found.append((element, override))
    return found


def override_header(measure: UniversalMeasureSpec, registry: Optional[OverrideRegistry], target: CodeTarget) -> str:
    """Comment banner listing the overridden components; empty when there are none."""
    applied = measure_overrides(measure, registry, target)
    if not applied:
        return ""

    prefix = target.comment_prefix
    rule = f"{prefix} ========================================"
    lines = [rule, f"{prefix} MANUAL OVERRIDES APPLIED: {len(applied)} component(s)", rule, prefix]
    for element, override in applied:
        lines.append(f"{prefix} [OVERRIDE] {element.description or element.id}")
        notes = format_notes(override)
        if notes:
            lines.append(notes)
    lines.append(rule)
    return "\n".join(lines) + "\n"


# ── Single-component code ────────────────────────────────────────────

@dataclass
class ComponentCodeResult:
    component_id: str
    target: CodeTarget
    code: str
    is_overridden: bool = False
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "componentId": self.component_id,
            "format": self.target.value,
            "code": self.code,
            "isOverridden": self.is_overridden,
            "warnings": list(self.warnings),
        }


def generate_component_code(
    element: DataElement,
    target: CodeTarget,
    override: Optional[CodeOverride] = None,
    measure: Optional[UniversalMeasureSpec] = None,
) -> ComponentCodeResult:
    """
    Code for one data element in isolation.

    A locked override for the same target is returned verbatim after its
    notes; otherwise the element is lowered with the same rules the full
    generators use.
    """
    warnings: List[str] = []
    value_set = element.value_set
    if element.clinical_type != ClinicalType.DEMOGRAPHIC and (value_set is None or not value_set.codes):
        warnings.append("Component has no codes defined")

    if override is not None and override.is_locked and override.target is target:
        return ComponentCodeResult(
            component_id=element.id,
            target=target,
            code=apply_override(override),
            is_overridden=True,
            warnings=warnings,
        )

    if target is CodeTarget.CQL:
        from codegen.cql_generator import element_to_cql
        code = element_to_cql(element, measure, warnings)
    else:
        from codegen.sql_generator import element_to_sql
        code = element_to_sql(element, measure, warnings)

    return ComponentCodeResult(component_id=element.id, target=target, code=code, warnings=warnings)
