"""
Hierarchy - 父子层级

todo 之间的父子关系只存在于子 todo 的 parent_id 字段（反向引用），
这里把全部活跃 todo 扫描到内存中重建森林：
- roots: parent_id 为空的 todo
- orphans: parent_id 指向集合外 id 的 todo（以及环中的成员）

兄弟节点按 started 升序、id 次之排序，保证遍历稳定。
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from todo_server.models.todo import TYPES_REQUIRING_PARENT, Todo


@dataclass
class TodoNode:
    """层级树节点"""

    todo: Todo
    children: list["TodoNode"] = field(default_factory=list)


@dataclass
class HierarchyStats:
    """层级统计"""

    total_roots: int = 0
    total_with_parent: int = 0
    total_orphans: int = 0
    max_depth: int = 0


def _sort_key(todo: Todo) -> tuple[datetime, str]:
    return (todo.started, todo.id)


def _in_cycle(todo_id: str, by_id: dict[str, Todo]) -> bool:
    """沿 parent_id 上溯，遇到重复节点即成环（祖先链上的环也算）"""
    seen = {todo_id}
    current = by_id.get(todo_id)
    while current is not None and current.parent_id:
        if current.parent_id in seen:
            return True
        seen.add(current.parent_id)
        current = by_id.get(current.parent_id)
    return False


def build_hierarchy(todos: Iterable[Todo]) -> tuple[list[TodoNode], list[Todo]]:
    """
    构建层级森林。

    Returns:
        (roots, orphans)
    """
    todo_list = list(todos)
    by_id = {todo.id: todo for todo in todo_list}
    nodes = {todo.id: TodoNode(todo=todo) for todo in todo_list}

    roots: list[TodoNode] = []
    orphans: list[Todo] = []

    for todo in todo_list:
        if not todo.parent_id:
            roots.append(nodes[todo.id])
        elif todo.parent_id not in by_id or todo.parent_id == todo.id or _in_cycle(todo.id, by_id):
            orphans.append(todo)
        else:
            nodes[todo.parent_id].children.append(nodes[todo.id])

    def sort_children(node: TodoNode) -> None:
        node.children.sort(key=lambda child: _sort_key(child.todo))
        for child in node.children:
            sort_children(child)

    roots.sort(key=lambda node: _sort_key(node.todo))
    for root in roots:
        sort_children(root)
    orphans.sort(key=_sort_key)
    return roots, orphans


def hierarchy_depth(roots: list[TodoNode]) -> int:
    """森林最大深度（只有根为 1）"""

    def depth(node: TodoNode) -> int:
        return 1 + max((depth(child) for child in node.children), default=0)

    return max((depth(root) for root in roots), default=0)


def count_nodes(roots: list[TodoNode]) -> int:
    return sum(1 + count_nodes(root.children) for root in roots)


def find_node(roots: list[TodoNode], todo_id: str) -> Optional[TodoNode]:
    for root in roots:
        if root.todo.id == todo_id:
            return root
        found = find_node(root.children, todo_id)
        if found is not None:
            return found
    return None


def node_path(roots: list[TodoNode], todo_id: str) -> list[TodoNode]:
    """从根到目标节点的路径；找不到返回空列表"""
    for root in roots:
        if root.todo.id == todo_id:
            return [root]
        sub_path = node_path(root.children, todo_id)
        if sub_path:
            return [root] + sub_path
    return []


def flatten(roots: list[TodoNode]) -> list[Todo]:
    """深度优先展开"""
    result: list[Todo] = []
    for root in roots:
        result.append(root.todo)
        result.extend(flatten(root.children))
    return result


def orphaned_phases(todos: Iterable[Todo]) -> list[Todo]:
    """找不到父任务的 phase / subtask"""
    todo_list = list(todos)
    ids = {todo.id for todo in todo_list}
    return [
        todo
        for todo in todo_list
        if todo.type in TYPES_REQUIRING_PARENT and (not todo.parent_id or todo.parent_id not in ids)
    ]


def hierarchy_stats(todos: Iterable[Todo]) -> HierarchyStats:
    todo_list = list(todos)
    roots, orphans = build_hierarchy(todo_list)
    return HierarchyStats(
        total_roots=len(roots),
        total_with_parent=sum(1 for todo in todo_list if todo.parent_id),
        total_orphans=len(orphans),
        max_depth=hierarchy_depth(roots),
    )


def validate_hierarchy(todos: Iterable[Todo]) -> list[str]:
    """检查层级问题：缺失父任务、自引用、环、phase 无父任务"""
    todo_list = list(todos)
    by_id = {todo.id: todo for todo in todo_list}
    issues = []
    for todo in todo_list:
        if todo.parent_id == todo.id:
            issues.append(f"todo '{todo.id}' references itself as parent")
        elif todo.parent_id and todo.parent_id not in by_id:
            issues.append(f"todo '{todo.id}' has missing parent '{todo.parent_id}'")
        elif todo.parent_id and _in_cycle(todo.id, by_id):
            issues.append(f"todo '{todo.id}' is part of a circular parent reference")
        elif not todo.parent_id and todo.type in TYPES_REQUIRING_PARENT:
            issues.append(f"{todo.type} '{todo.id}' has no parent")
    return issues


__all__ = [
    "HierarchyStats",
    "TodoNode",
    "build_hierarchy",
    "count_nodes",
    "find_node",
    "flatten",
    "hierarchy_depth",
    "hierarchy_stats",
    "node_path",
    "orphaned_phases",
    "validate_hierarchy",
]
