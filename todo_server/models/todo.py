"""
Todo data models - Todo 数据模型

一个 Todo = YAML front-matter（元数据 + section 定义）+ markdown 正文。
正文中每个 section 以 "## <title>" 开头；section 的 key 与 schema 记录在 front-matter。
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class TodoStatus(str, Enum):
    """Todo 状态"""
    IN_PROGRESS = "in_progress"   # 初始状态
    BLOCKED = "blocked"
    COMPLETED = "completed"       # 终态（可能触发归档）


class TodoPriority(str, Enum):
    """Todo 优先级"""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class TodoType(str, Enum):
    """Todo 类型"""
    FEATURE = "feature"
    BUG = "bug"
    REFACTOR = "refactor"
    RESEARCH = "research"
    MULTI_PHASE = "multi-phase"
    PHASE = "phase"
    SUBTASK = "subtask"
    PRD = "prd"


# phase / subtask 创建时必须带 parent_id
TYPES_REQUIRING_PARENT = frozenset({TodoType.PHASE.value, TodoType.SUBTASK.value})


class SectionSchema(str, Enum):
    """Section 内容校验方言"""
    FREEFORM = "freeform"
    CHECKLIST = "checklist"
    TEST_CASES = "test_cases"
    RESEARCH = "research"
    STRATEGY = "strategy"
    RESULTS = "results"


class ChecklistStatus(str, Enum):
    """清单项状态（三态）"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class SectionDefinition(BaseModel):
    """Section 定义（存于 front-matter 的 sections 映射）"""

    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(..., description="标题（不含 '## ' 前缀）")
    order: int = Field(default=100, description="展示顺序，相同时按 key 排序")
    schema_: SectionSchema = Field(default=SectionSchema.FREEFORM, alias="schema")
    required: bool = False
    custom: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_frontmatter(self) -> dict[str, Any]:
        """序列化为 front-matter 字典（省略空字段）"""
        data: dict[str, Any] = {
            "title": self.title,
            "order": self.order,
            "schema": self.schema_.value,
            "required": self.required,
        }
        if self.custom:
            data["custom"] = True
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        return data


class Todo(BaseModel):
    """
    Todo 元数据

    status / priority / type 以字符串保存：磁盘上的旧文件可能带有枚举外的值，
    读取时不拒绝，取值约束在参数提取层完成。
    """

    id: str
    task: str
    started: datetime
    completed: Optional[datetime] = None
    status: str = TodoStatus.IN_PROGRESS.value
    priority: str = TodoPriority.HIGH.value
    type: str = TodoType.FEATURE.value
    parent_id: str = ""
    current_test: str = ""
    tags: list[str] = Field(default_factory=list)
    sections: dict[str, SectionDefinition] = Field(default_factory=dict)

    @property
    def is_completed(self) -> bool:
        return self.status == TodoStatus.COMPLETED.value


class ChecklistItem(BaseModel):
    """清单项"""
    text: str
    status: ChecklistStatus


class TodoStats(BaseModel):
    """Todo 统计"""

    period: str = "all"
    total_todos: int = 0
    completed_todos: int = 0
    in_progress_todos: int = 0
    blocked_todos: int = 0
    todos_by_type: dict[str, int] = Field(default_factory=dict)
    todos_by_priority: dict[str, int] = Field(default_factory=dict)
    completion_rates_by_type: dict[str, float] = Field(default_factory=dict)
    completion_rates_by_priority: dict[str, float] = Field(default_factory=dict)
    average_completion_seconds: float = 0.0
    average_completion_time: str = "0s"
    test_coverage: dict[str, float] = Field(default_factory=dict)


class Template(BaseModel):
    """Todo 模板"""
    name: str
    description: str = ""
    variables: dict[str, Any] = Field(default_factory=dict, description="声明的变量及默认值")
    content: str = ""


class SearchResult(BaseModel):
    """搜索结果"""
    id: str
    task: str = ""
    score: float = 0.0
    snippet: str = ""
