"""
Criteria tree engine.

Validation, traversal, flat-list projection, rendering and copy-on-write
edits over ``LogicalClause`` trees. Every edit returns a new clause and
reuses untouched subtrees, so snapshots taken before an edit stay valid.
"""

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from .schema import (
    DataElement,
    LogicalClause,
    LogicalOperator,
    Node,
    PopulationDefinition,
    SiblingConnection,
    is_clause,
)

logger = logging.getLogger(__name__)

MAX_RECOMMENDED_DEPTH = 4


# ── Result types ─────────────────────────────────────────────────────

@dataclass
class TreeIssue:
    code: str
    message: str
    node_id: Optional[str] = None
    path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {"code": self.code, "message": self.message}
        if self.node_id:
            result["nodeId"] = self.node_id
        if self.path:
            result["path"] = self.path
        return result


@dataclass
class TreeStats:
    total_nodes: int = 0
    max_depth: int = 0
    criteria_count: int = 0
    group_count: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "totalNodes": self.total_nodes,
            "maxDepth": self.max_depth,
            "criteriaCount": self.criteria_count,
            "groupCount": self.group_count,
        }


@dataclass
class TreeValidationResult:
    valid: bool
    errors: List[TreeIssue] = field(default_factory=list)
    warnings: List[TreeIssue] = field(default_factory=list)
    stats: TreeStats = field(default_factory=TreeStats)

    def error_codes(self) -> List[str]:
        return [e.code for e in self.errors]

    def warning_codes(self) -> List[str]:
        return [w.code for w in self.warnings]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "stats": self.stats.to_dict(),
        }


@dataclass(frozen=True)
class TreeNode:
    node: Node
    depth: int
    path: str
    is_clause: bool


@dataclass(frozen=True)
class FlatItem:
    """One row of the linear-editor projection. Criteria carry only their id."""
    id: str
    kind: str  # 'group' or 'criterion'
    depth: int
    parent_id: Optional[str]
    label: str
    operator: Optional[LogicalOperator] = None
    description: str = ""
    sibling_connections: Tuple[SiblingConnection, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "id": self.id,
            "kind": self.kind,
            "depth": self.depth,
            "parentId": self.parent_id,
            "label": self.label,
        }
        if self.operator is not None:
            result["operator"] = self.operator.value if isinstance(self.operator, LogicalOperator) else self.operator
        return result


@dataclass
class OperatorChange:
    node_id: str
    from_operator: Any
    to_operator: Any


@dataclass
class TreeDiff:
    added_criterion_ids: List[str] = field(default_factory=list)
    removed_criterion_ids: List[str] = field(default_factory=list)
    operator_changes: List[OperatorChange] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.added_criterion_ids or self.removed_criterion_ids or self.operator_changes)


# ── Traversal ────────────────────────────────────────────────────────

def walk_tree(clause: LogicalClause, depth: int = 0, path: str = "root") -> Iterator[TreeNode]:
    """Pre-order, depth-first walk. Each call returns a fresh generator."""
    yield TreeNode(node=clause, depth=depth, path=path, is_clause=True)
    for i, child in enumerate(clause.children):
        child_path = f"{path}.children[{i}]"
        if is_clause(child):
            yield from walk_tree(child, depth + 1, child_path)
        else:
            yield TreeNode(node=child, depth=depth + 1, path=child_path, is_clause=False)


_PATH_STEP = re.compile(r"\.children\[(\d+)\]")


def node_at_path(clause: LogicalClause, path: str) -> Optional[Node]:
    """Resolve a ``walk_tree`` path (``root.children[0]...``) against a tree."""
    if not path.startswith("root"):
        return None
    rest = path[len("root"):]
    steps = _PATH_STEP.findall(rest)
    if "".join(f".children[{s}]" for s in steps) != rest:
        return None

    node: Node = clause
    for step in steps:
        index = int(step)
        if not is_clause(node) or index >= len(node.children):
            return None
        node = node.children[index]
    return node


def collect_elements(clause: LogicalClause) -> List[DataElement]:
    return [t.node for t in walk_tree(clause) if not t.is_clause]


def collect_clauses(clause: LogicalClause) -> List[LogicalClause]:
    return [t.node for t in walk_tree(clause) if t.is_clause]


def tree_depth(clause: LogicalClause) -> int:
    return max(t.depth for t in walk_tree(clause))


def find_node(clause: LogicalClause, node_id: str) -> Optional[Node]:
    for entry in walk_tree(clause):
        if entry.node.id == node_id:
            return entry.node
    return None


# ── Validation ───────────────────────────────────────────────────────

def validate_tree(clause: Optional[LogicalClause]) -> TreeValidationResult:
    """
    Structural check of a criteria tree.

    Never raises. Duplicate ids are reported as CIRCULAR_REFERENCE: the
    structure is a tree by construction, so a reused id is the only way a
    node can appear twice.
    """
    if clause is None:
        return TreeValidationResult(
            valid=False,
            errors=[TreeIssue("EMPTY_TREE", "Logic tree is empty or undefined")],
        )

    errors: List[TreeIssue] = []
    warnings: List[TreeIssue] = []
    stats = TreeStats()
    seen_ids = set()

    for entry in walk_tree(clause):
        node = entry.node
        stats.max_depth = max(stats.max_depth, entry.depth)

        if node.id:
            if node.id in seen_ids:
                errors.append(TreeIssue(
                    "CIRCULAR_REFERENCE", f"Duplicate node ID detected: {node.id}",
                    node_id=node.id, path=entry.path,
                ))
            seen_ids.add(node.id)

        if not entry.is_clause:
            stats.criteria_count += 1
            continue

        stats.group_count += 1
        child_count = len(node.children)

        if child_count == 0:
            errors.append(TreeIssue("EMPTY_GROUP", "Group has no children", node_id=node.id, path=entry.path))
        if node.operator == LogicalOperator.NOT and child_count > 1:
            errors.append(TreeIssue(
                "NOT_WITH_MULTIPLE_CHILDREN", "NOT operator should have exactly one child",
                node_id=node.id, path=entry.path,
            ))
        if child_count == 1 and node.operator != LogicalOperator.NOT:
            warnings.append(TreeIssue(
                "SINGLE_CHILD_GROUP", "Group has only one child - consider flattening", node_id=node.id,
            ))
        if not isinstance(node.operator, LogicalOperator):
            errors.append(TreeIssue(
                "INVALID_OPERATOR", f"Invalid operator: {node.operator}", node_id=node.id, path=entry.path,
            ))
        if node.sibling_connections:
            warnings.append(TreeIssue(
                "MIXED_OPERATORS",
                f'Group "{node.description or node.id}" has mixed operators between siblings',
                node_id=node.id,
            ))
        for conn in node.sibling_connections:
            in_range = 0 <= conn.from_index < child_count and 0 <= conn.to_index < child_count
            if not in_range or abs(conn.from_index - conn.to_index) != 1:
                warnings.append(TreeIssue(
                    "INVALID_SIBLING_CONNECTION",
                    f"Sibling connection {conn.from_index}->{conn.to_index} does not join adjacent children "
                    f"(group has {child_count}); it is ignored",
                    node_id=node.id, path=entry.path,
                ))

    if stats.max_depth > MAX_RECOMMENDED_DEPTH:
        warnings.append(TreeIssue(
            "DEEPLY_NESTED", f"Tree is deeply nested (depth: {stats.max_depth}). Consider simplifying.",
        ))

    stats.total_nodes = stats.criteria_count + stats.group_count
    return TreeValidationResult(valid=not errors, errors=errors, warnings=warnings, stats=stats)


# ── Flat projection ──────────────────────────────────────────────────

def _operator_name(operator: Any) -> str:
    return operator.value if isinstance(operator, LogicalOperator) else str(operator)


def tree_to_flat(clause: LogicalClause) -> List[FlatItem]:
    items: List[FlatItem] = []

    def visit(node: Node, depth: int, parent_id: Optional[str]) -> None:
        if is_clause(node):
            items.append(FlatItem(
                id=node.id,
                kind="group",
                depth=depth,
                parent_id=parent_id,
                label=node.description or f"{_operator_name(node.operator)} group",
                operator=node.operator,
                description=node.description,
                sibling_connections=node.sibling_connections,
            ))
            for child in node.children:
                visit(child, depth + 1, node.id)
        else:
            items.append(FlatItem(
                id=node.id,
                kind="criterion",
                depth=depth,
                parent_id=parent_id,
                label=node.description or f"{node.clinical_type.value} criterion",
                description=node.description,
            ))

    visit(clause, 0, None)
    return items


CriterionLookup = Union[Mapping[str, DataElement], Callable[[str], Optional[DataElement]]]


def flat_to_tree(items: List[FlatItem], criterion_lookup: CriterionLookup) -> Optional[LogicalClause]:
    """
    Rebuild a tree from ``tree_to_flat`` output.

    Criterion bodies come from ``criterion_lookup``; ids it cannot resolve
    are dropped.
    """
    if not items:
        return None
    resolve = criterion_lookup.get if isinstance(criterion_lookup, Mapping) else criterion_lookup

    groups = {item.id: item for item in items if item.kind == "group"}
    children_of: Dict[str, List[FlatItem]] = {}
    root_item = None
    for item in items:
        if item.parent_id is None:
            if item.kind == "group" and root_item is None:
                root_item = item
            continue
        if item.parent_id in groups:
            children_of.setdefault(item.parent_id, []).append(item)

    if root_item is None:
        return None

    def build(group: FlatItem) -> LogicalClause:
        children: List[Node] = []
        for child in children_of.get(group.id, []):
            if child.kind == "group":
                children.append(build(child))
            else:
                criterion = resolve(child.id)
                if criterion is None:
                    logger.debug(f"Flat item {child.id} has no criterion body; dropped")
                    continue
                children.append(criterion)
        return LogicalClause(
            id=group.id,
            operator=group.operator or LogicalOperator.AND,
            children=tuple(children),
            description=group.description,
            sibling_connections=group.sibling_connections,
        )

    return build(root_item)


# ── Rendering ────────────────────────────────────────────────────────

def _default_negate(text: str) -> str:
    return f"NOT ({text})"


def _default_group(text: str) -> str:
    return f"({text})"


@dataclass(frozen=True)
class Connectives:
    """Target syntax for ``tree_to_expression``."""
    and_op: str = " AND "
    or_op: str = " OR "
    negate: Callable[[str], str] = _default_negate
    group: Callable[[str], str] = _default_group
    group_root: bool = False
    empty: str = ""

    def joiner(self, operator: Any) -> str:
        return self.or_op if operator == LogicalOperator.OR else self.and_op


NATURAL_LANGUAGE = Connectives()


def operator_between(clause: LogicalClause, left: int, right: int):
    conn = clause.connection_between(left, right)
    return conn.operator if conn else clause.operator


def tree_to_expression(
    clause: LogicalClause,
    render_element: Callable[[DataElement], str],
    connectives: Connectives = NATURAL_LANGUAGE,
) -> str:
    """
    Render a tree with caller-supplied leaf rendering.

    NOT wraps its single child with ``connectives.negate``; a one-child
    group renders as its child; nested groups are wrapped with
    ``connectives.group`` (the root only when ``group_root``). Sibling
    overrides are applied left to right: when the connective changes, the
    expression built so far is grouped before the next operand joins it.
    """

    def render(node: Node, depth: int, wrap: bool) -> str:
        if not is_clause(node):
            return render_element(node)
        if not node.children:
            return connectives.empty

        if node.operator == LogicalOperator.NOT:
            operand = render(node.children[0], depth + 1, False)
            # negate() supplies the parentheses around its operand
            return connectives.negate(operand) if operand else operand

        # operands that render empty drop out of the join
        parts = []
        for i, child in enumerate(node.children):
            operand = render(child, depth + 1, True)
            if operand:
                parts.append((i, operand))
        if not parts:
            return connectives.empty
        if len(parts) == 1:
            return parts[0][1]

        text = parts[0][1]
        previous = None
        for (left, _), (right, operand) in zip(parts, parts[1:]):
            operator = operator_between(node, left, right)
            if previous is not None and operator != previous:
                text = connectives.group(text)
            text = f"{text}{connectives.joiner(operator)}{operand}"
            previous = operator

        if wrap and (depth > 0 or connectives.group_root):
            return connectives.group(text)
        return text

    return render(clause, 0, True)


def tree_to_natural_language(clause: LogicalClause) -> str:
    return tree_to_expression(clause, lambda e: e.description or f"[{e.clinical_type.value}]", NATURAL_LANGUAGE)


# ── Copy-on-write edits ──────────────────────────────────────────────

def add_child(clause: LogicalClause, child: Node) -> LogicalClause:
    return replace(clause, children=clause.children + (child,))


def remove_child(clause: LogicalClause, child_id: str) -> LogicalClause:
    """Remove a child and any sibling override touching it; later indices shift down."""
    index = next((i for i, c in enumerate(clause.children) if c.id == child_id), None)
    if index is None:
        return clause

    connections = []
    for conn in clause.sibling_connections:
        if index in (conn.from_index, conn.to_index):
            continue
        shift_from = conn.from_index - 1 if conn.from_index > index else conn.from_index
        shift_to = conn.to_index - 1 if conn.to_index > index else conn.to_index
        connections.append(replace(conn, from_index=shift_from, to_index=shift_to))

    children = clause.children[:index] + clause.children[index + 1:]
    return replace(clause, children=children, sibling_connections=tuple(connections))


def replace_child(clause: LogicalClause, old_child_id: str, new_child: Node) -> LogicalClause:
    return replace(clause, children=tuple(new_child if c.id == old_child_id else c for c in clause.children))


def change_operator(clause: LogicalClause, operator: LogicalOperator) -> LogicalClause:
    """Changing the default operator invalidates every pairwise override."""
    return replace(clause, operator=operator, sibling_connections=())


def set_operator_between_siblings(
    clause: LogicalClause, index1: int, index2: int, operator: LogicalOperator
) -> LogicalClause:
    """
    Override the connective between two adjacent children.

    Setting the clause's default operator removes the override.

    Raises:
        ValueError: If the indices are not adjacent children of ``clause``
    """
    low, high = min(index1, index2), max(index1, index2)
    if high - low != 1 or low < 0 or high >= len(clause.children):
        raise ValueError(
            f"Sibling connection must join adjacent children; got {index1}, {index2} "
            f"for a clause with {len(clause.children)} children"
        )

    connections = [c for c in clause.sibling_connections if {c.from_index, c.to_index} != {low, high}]
    if operator != clause.operator:
        connections.append(SiblingConnection(from_index=low, to_index=high, operator=operator))
        connections.sort(key=lambda c: c.from_index)
    return replace(clause, sibling_connections=tuple(connections))


def flatten_tree(clause: LogicalClause) -> LogicalClause:
    """Recursively unwrap single-child groups other than NOT."""
    children = []
    for child in clause.children:
        if is_clause(child):
            flattened = flatten_tree(child)
            if len(flattened.children) == 1 and flattened.operator != LogicalOperator.NOT:
                children.append(flattened.children[0])
            else:
                children.append(flattened)
        else:
            children.append(child)
    return replace(clause, children=tuple(children))


def update_node(clause: LogicalClause, node_id: str, fn: Callable[[Node], Node]) -> LogicalClause:
    """
    Replace the node with ``node_id`` by ``fn(node)`` anywhere in the tree.

    Only the clauses on the path to the node are copied; a tree without
    the id is returned unchanged (same object).
    """
    if clause.id == node_id:
        return fn(clause)

    changed = False
    children = []
    for child in clause.children:
        if child.id == node_id:
            new_child = fn(child)
        elif is_clause(child):
            new_child = update_node(child, node_id, fn)
        else:
            new_child = child
        changed = changed or new_child is not child
        children.append(new_child)

    if not changed:
        return clause
    return replace(clause, children=tuple(children))


# ── Comparison ───────────────────────────────────────────────────────

def trees_equal(a: Optional[LogicalClause], b: Optional[LogicalClause]) -> bool:
    """Structural equality: operators, child counts, then kind and id pairwise."""
    if a is None and b is None:
        return True
    if a is None or b is None:
        return False
    if a.operator != b.operator or len(a.children) != len(b.children):
        return False

    for left, right in zip(a.children, b.children):
        if is_clause(left) != is_clause(right):
            return False
        if left.id != right.id:
            return False
        if is_clause(left) and not trees_equal(left, right):
            return False
    return True


def diff_trees(a: Optional[LogicalClause], b: Optional[LogicalClause]) -> TreeDiff:
    before = [e.id for e in collect_elements(a)] if a else []
    after = [e.id for e in collect_elements(b)] if b else []
    before_set, after_set = set(before), set(after)

    diff = TreeDiff(
        added_criterion_ids=[i for i in after if i not in before_set],
        removed_criterion_ids=[i for i in before if i not in after_set],
    )

    if a and b:
        groups_before = {g.id: g for g in collect_clauses(a)}
        for group in collect_clauses(b):
            old = groups_before.get(group.id)
            if old is not None and old.operator != group.operator:
                diff.operator_changes.append(OperatorChange(group.id, old.operator, group.operator))
    return diff


# ── Population helpers ───────────────────────────────────────────────

def has_valid_criteria(population: PopulationDefinition) -> bool:
    result = validate_tree(population.criteria)
    return result.valid and result.stats.criteria_count > 0


def population_logic_summary(population: PopulationDefinition) -> Dict[str, Any]:
    if population.criteria is None:
        return {
            "criteriaCount": 0,
            "hasNesting": False,
            "operators": [],
            "naturalLanguage": "No criteria defined",
        }

    result = validate_tree(population.criteria)
    operators: List[str] = []
    for group in collect_clauses(population.criteria):
        name = _operator_name(group.operator)
        if name not in operators:
            operators.append(name)

    return {
        "criteriaCount": result.stats.criteria_count,
        "hasNesting": result.stats.max_depth > 1,
        "operators": operators,
        "naturalLanguage": tree_to_natural_language(population.criteria),
    }
