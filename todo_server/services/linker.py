"""
Todo Linker - 建立 / 解除父子关系

关系只保存在子 todo 的 parent_id 中，链接时要求父子两端都存在。
"""

import logging

from todo_server.core.errors import ValidationError
from todo_server.models.todo import Todo
from todo_server.services.todo_store import TodoStore

logger = logging.getLogger(__name__)

LINK_PARENT_CHILD = "parent-child"
SUPPORTED_LINK_TYPES = (LINK_PARENT_CHILD,)


class TodoLinker:
    """父子链接"""

    def __init__(self, store: TodoStore):
        self.store = store

    def _ancestors(self, todo: Todo) -> list[str]:
        """沿 parent_id 上溯的祖先 id（遇到缺失或环即停止）"""
        chain: list[str] = []
        current = todo
        while current.parent_id and current.parent_id not in chain:
            chain.append(current.parent_id)
            if not self.store.exists(current.parent_id):
                break
            current = self.store.read(current.parent_id)
        return chain

    def check_link(
        self,
        parent_id: str,
        child_id: str,
        link_type: str = LINK_PARENT_CHILD,
        field_name: str = "child_id",
    ) -> None:
        """
        校验链接是否合法（不写文件）

        todo_update 直接设置 metadata.parent_id 时也走这里。

        Raises:
            ValidationError: 自链接、不支持的链接类型、会形成环
            NotFoundError: 父或子 todo 不存在
        """
        if link_type not in SUPPORTED_LINK_TYPES:
            raise ValidationError("link_type", f"unsupported link type: {link_type}")
        if parent_id == child_id:
            raise ValidationError(field_name, "cannot link a todo to itself")

        parent = self.store.read(parent_id)
        self.store.read(child_id)

        if child_id in self._ancestors(parent):
            raise ValidationError("parent_id", f"linking '{child_id}' under '{parent_id}' would create a cycle")

    def link_todos(self, parent_id: str, child_id: str, link_type: str = LINK_PARENT_CHILD) -> Todo:
        """
        把 child 挂到 parent 下

        Returns:
            更新后的子 todo

        Raises:
            ValidationError: 自链接、不支持的链接类型、会形成环
            NotFoundError: 父或子 todo 不存在
            OperationError: 写文件失败
        """
        self.check_link(parent_id, child_id, link_type)
        child = self.store.update(child_id, metadata={"parent_id": parent_id})
        logger.debug(f"Linked {child_id} -> parent {parent_id}")
        return child

    def unlink(self, child_id: str) -> Todo:
        """清除子 todo 的 parent_id"""
        return self.store.update(child_id, metadata={"parent_id": ""})


__all__ = ["LINK_PARENT_CHILD", "SUPPORTED_LINK_TYPES", "TodoLinker"]
