"""
Recursive traversal of a target's department graph.

Group membership is a graph: a group can belong to several parents and
memberships can form cycles. The walker visits each department once, keyed by
department id, and records the edges it refused to follow.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

from org_federation.target import UnionDepartment

logger = logging.getLogger(__name__)


@dataclass
class DepartmentVisit:
    department: UnionDepartment
    depth: int
    path: Tuple[str, ...]


@dataclass
class WalkResult:
    visits: List[DepartmentVisit] = field(default_factory=list)
    # (parent id, child id) edges skipped because the child was already seen
    revisits: List[Tuple[str, str]] = field(default_factory=list)


def walk(root: UnionDepartment, max_depth: Optional[int] = None,
         result: Optional[WalkResult] = None) -> Iterator[DepartmentVisit]:
    """
    Depth-first walk from root, yielding each department once.

    Args:
        root: Department to start from
        max_depth: Do not descend below this depth (root is depth 0)
        result: Optional collector for visits and skipped edges
    """
    visited: Set[str] = {root.department_id()}
    stack = [DepartmentVisit(root, 0, (root.department_id(),))]

    while stack:
        visit = stack.pop()
        if result is not None:
            result.visits.append(visit)
        yield visit

        if max_depth is not None and visit.depth >= max_depth:
            continue

        children = []
        for child in visit.department.sub_departments():
            child_id = child.department_id()
            if child_id in visited:
                logger.debug(f"Skipping {child_id} under {visit.department.department_id()}: already visited")
                if result is not None:
                    result.revisits.append((visit.department.department_id(), child_id))
                continue
            visited.add(child_id)
            children.append(DepartmentVisit(child, visit.depth + 1, visit.path + (child_id,)))

        # reversed so children come off the stack in provider order
        stack.extend(reversed(children))


def build_tree(root: UnionDepartment, include_users: bool = False, include_identities: bool = False,
               max_depth: Optional[int] = None) -> Dict[str, Any]:
    """Render the department graph below root as nested dictionaries."""
    nodes: Dict[str, Dict[str, Any]] = {}
    tree = None

    for visit in walk(root, max_depth=max_depth):
        department = visit.department
        node = {'id': department.department_id(), 'name': department.name(), 'departments': []}
        if include_identities:
            node['external_identities'] = [str(i) for i in department.get_external_identities()]
        if include_users:
            node['users'] = [_user_node(user, include_identities) for user in department.users()]

        nodes[department.department_id()] = node
        if len(visit.path) == 1:
            tree = node
        else:
            nodes[visit.path[-2]]['departments'].append(node)

    logger.info(f"Walked {len(nodes)} departments from {root.department_id()}")
    return tree


def _user_node(user, include_identities: bool) -> Dict[str, Any]:
    node = {'id': user.user_id(), 'name': user.user_name(), 'email': user.user_email()}
    if include_identities:
        node['external_identities'] = [str(i) for i in user.get_external_identities()]
    return node
