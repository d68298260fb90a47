"""
Table/column binding for the SQL generator.

The generator never names a physical table or column directly: it asks
the binding for the table of a family ("condition", "result", ...) and
for the column playing a role ("code", "date", ...). The default binding
targets the HealtheIntent (HDI) warehouse; other warehouses can be
described in a YAML or JSON file with the same shape as ``to_dict()``.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from core.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Column roles understood by the generator
ROLES = (
    "id",
    "code",
    "date",
    "end_date",
    "status",
    "days_supply",
    "numeric_value",
    "unit",
    "codified_value",
    "facility_type",
)


@dataclass(frozen=True)
class TableBinding:
    family: str
    table: str
    alias: str
    columns: Dict[str, str] = field(default_factory=dict, hash=False)

    def column(self, role: str) -> Optional[str]:
        return self.columns.get(role)

    def ref(self, role: str) -> Optional[str]:
        """Qualified ``alias.column`` for a role, or None when unbound."""
        column = self.columns.get(role)
        return f"{self.alias}.{column}" if column else None

    def to_dict(self) -> Dict[str, Any]:
        return {"table": self.table, "alias": self.alias, "columns": dict(self.columns)}


@dataclass(frozen=True)
class ValueSetTableBinding:
    table: str = "valueset_codes"
    oid_column: str = "valueset_oid"
    code_column: str = "code"
    system_column: str = "code_system"
    display_column: str = "display"

    def to_dict(self) -> Dict[str, str]:
        return {
            "table": self.table,
            "oidColumn": self.oid_column,
            "codeColumn": self.code_column,
            "systemColumn": self.system_column,
            "displayColumn": self.display_column,
        }


@dataclass
class SchemaBinding:
    name: str
    tables: Dict[str, TableBinding]
    value_sets: ValueSetTableBinding = field(default_factory=ValueSetTableBinding)
    ontology_table: str = "ph_d_ontology"
    person_table: str = "ph_d_person"
    person_demographics_table: str = "ph_d_person_demographics"
    person_race_table: str = "ph_d_person_race"

    def for_family(self, family: str) -> TableBinding:
        try:
            return self.tables[family]
        except KeyError:
            raise ConfigurationError(f"Schema binding '{self.name}' has no table for family '{family}'")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "tables": {family: t.to_dict() for family, t in self.tables.items()},
            "valueSets": self.value_sets.to_dict(),
            "ontologyTable": self.ontology_table,
            "personTable": self.person_table,
            "personDemographicsTable": self.person_demographics_table,
            "personRaceTable": self.person_race_table,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SchemaBinding":
        if not isinstance(data, dict):
            raise ConfigurationError("Schema binding must be a mapping")

        tables = {}
        for family, table_data in (data.get("tables") or {}).items():
            if not isinstance(table_data, dict) or not table_data.get("table"):
                raise ConfigurationError(f"Schema binding table for '{family}' needs a 'table' name")
            columns = {str(k): str(v) for k, v in (table_data.get("columns") or {}).items()}
            unknown = [role for role in columns if role not in ROLES]
            if unknown:
                logger.warning(f"Ignoring unknown column roles for '{family}': {unknown}")
                columns = {k: v for k, v in columns.items() if k in ROLES}
            tables[family] = TableBinding(
                family=family,
                table=table_data["table"],
                alias=table_data.get("alias") or family[:1].upper(),
                columns=columns,
            )

        vs = data.get("valueSets") or {}
        defaults = ValueSetTableBinding()
        return cls(
            name=data.get("name", "custom"),
            tables=tables,
            value_sets=ValueSetTableBinding(
                table=vs.get("table", defaults.table),
                oid_column=vs.get("oidColumn", defaults.oid_column),
                code_column=vs.get("codeColumn", defaults.code_column),
                system_column=vs.get("systemColumn", defaults.system_column),
                display_column=vs.get("displayColumn", defaults.display_column),
            ),
            ontology_table=data.get("ontologyTable", "ph_d_ontology"),
            person_table=data.get("personTable", "ph_d_person"),
            person_demographics_table=data.get("personDemographicsTable", "ph_d_person_demographics"),
            person_race_table=data.get("personRaceTable", "ph_d_person_race"),
        )

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "SchemaBinding":
        """Load a binding from a ``.yaml``/``.yml`` or ``.json`` file."""
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Schema binding file not found: {path}")

        with open(path, 'r', encoding='utf-8') as f:
            content = f.read()

        if path.suffix in ('.yaml', '.yml'):
            data = yaml.safe_load(content)
        else:
            data = json.loads(content)

        binding = cls.from_dict(data)
        logger.info(f"Loaded schema binding '{binding.name}' from {path}")
        return binding


DEFAULT_HDI_BINDING = SchemaBinding(
    name="hdi",
    tables={
        "condition": TableBinding("condition", "ph_f_condition", "C", {
            "id": "condition_id",
            "code": "condition_code",
            "date": "effective_date",
            "status": "status_code",
        }),
        "procedure": TableBinding("procedure", "ph_f_procedure", "PR", {
            "id": "procedure_id",
            "code": "procedure_code",
            "date": "performed_date",
        }),
        "medication": TableBinding("medication", "ph_f_medication", "M", {
            "id": "medication_id",
            "code": "medication_code",
            "date": "effective_date",
            "end_date": "end_date",
            "days_supply": "days_supply",
            "status": "status",
        }),
        "result": TableBinding("result", "ph_f_result", "R", {
            "id": "result_id",
            "code": "result_code",
            "date": "service_date",
            "numeric_value": "numeric_value",
            "unit": "unit_of_measure_code",
            "codified_value": "norm_codified_value_code",
            "status": "status",
        }),
        "immunization": TableBinding("immunization", "ph_f_immunization", "IM", {
            "id": "immunization_id",
            "code": "immunization_code",
            "date": "administration_date",
        }),
        "encounter": TableBinding("encounter", "ph_f_encounter", "E", {
            "id": "encounter_id",
            "code": "encounter_type_code",
            "date": "service_date",
            "end_date": "discharge_date",
            "facility_type": "facility_type_code",
        }),
    },
)
