"""
Template Manager - todo 模板

模板文件：<W>/.claude/templates/<name>.md
    ---
    template_name: bug
    description: Bug fix workflow
    variables:
      severity: medium
    ---
    # Task: {{ task }}
    ...

正文用 Jinja2 渲染（StrictUndefined）：只有声明的变量和 task / priority / type / date
可用，引用未声明的变量会失败。
"""

import logging
from pathlib import Path
from typing import Any, Mapping, Optional

from jinja2 import Environment, StrictUndefined, TemplateError

from todo_server.core.errors import NotFoundError, OperationError, ValidationError
from todo_server.core.timeutil import now
from todo_server.models.todo import Template, Todo
from todo_server.services.todo_file import TodoFormatError, split_document
from todo_server.services.todo_store import TodoStore

logger = logging.getLogger(__name__)

TEMPLATE_SUFFIX = ".md"

# 渲染时总是可用的变量
BUILTIN_VARIABLES = ("task", "priority", "type", "date")


BUG_TEMPLATE = """---
template_name: bug
description: Bug fix with reproduction steps and regression tests
variables:
  severity: medium
---
# Task: {{ task }}

## Findings & Research

Severity: {{ severity }}

## Steps to Reproduce

## Test Strategy

Reproduce the bug with a failing test before changing any code.

## Test List

- [ ] Failing test reproduces the bug
- [ ] Regression test passes after the fix

## Test Cases

## Test Results Log

## Checklist

- [ ] Root cause identified
- [ ] Fix implemented
- [ ] Regression test added

## Working Scratchpad
"""

FEATURE_TEMPLATE = """---
template_name: feature
description: Feature development with test-driven workflow
variables: {}
---
# Task: {{ task }}

## Findings & Research

## Web Searches

## Test Strategy

## Test List

- [ ] Happy path
- [ ] Edge cases

## Test Cases

## Test Results Log

## Checklist

- [ ] Design reviewed
- [ ] Implementation complete
- [ ] Documentation updated

## Working Scratchpad
"""

RESEARCH_TEMPLATE = """---
template_name: research
description: Research task with sources and conclusions
variables:
  topic: ""
---
# Task: {{ task }}

## Findings & Research

{% if topic %}Topic: {{ topic }}{% endif %}

## Web Searches

## Conclusions

## Checklist

- [ ] Sources collected
- [ ] Findings summarized

## Working Scratchpad
"""

PRD_TEMPLATE = """---
template_name: prd
description: Product requirements document
variables:
  owner: ""
---
# Task: {{ task }}

## Problem Statement

## Goals

## Non-Goals

## User Stories

## Requirements

## Success Metrics

## Findings & Research

## Checklist

- [ ] Requirements reviewed
- [ ] Stakeholders signed off

## Working Scratchpad

Created {{ date }}{% if owner %} by {{ owner }}{% endif %} ({{ priority }} priority).
"""

BUILTIN_TEMPLATES = {
    "bug": BUG_TEMPLATE,
    "feature": FEATURE_TEMPLATE,
    "research": RESEARCH_TEMPLATE,
    "prd": PRD_TEMPLATE,
}


def _check_name(name: str) -> str:
    name = (name or "").strip()
    if name.endswith(TEMPLATE_SUFFIX):
        name = name[: -len(TEMPLATE_SUFFIX)]
    if not name or "/" in name or "\\" in name or name.startswith("."):
        raise ValidationError("template", f"invalid template name: {name}")
    return name


class TemplateManager:
    """模板管理：加载、列出、渲染、从模板创建 todo"""

    def __init__(self, templates_dir: Path, store: Optional[TodoStore] = None):
        """
        初始化模板管理器

        Args:
            templates_dir: 模板目录
            store: 用于 create_from_template 的 todo 存储
        """
        self.templates_dir = Path(templates_dir)
        self.store = store
        self._env = Environment(
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )

    def list_templates(self) -> list[str]:
        """模板名列表；目录不存在时返回空列表"""
        if not self.templates_dir.is_dir():
            return []
        return sorted(path.stem for path in self.templates_dir.glob(f"*{TEMPLATE_SUFFIX}") if path.is_file())

    def load(self, name: str) -> Template:
        """
        加载模板

        Raises:
            NotFoundError: 模板不存在
            OperationError: 模板文件无法读取或 front-matter 不合法
        """
        name = _check_name(name)
        path = self.templates_dir / f"{name}{TEMPLATE_SUFFIX}"
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise NotFoundError("template", name) from None
        except OSError as e:
            raise OperationError("template load", str(e), resource="template") from e

        if not text.lstrip().startswith("---"):
            return Template(name=name, content=text)

        try:
            data, body = split_document(text.lstrip())
        except TodoFormatError as e:
            raise OperationError("template load", f"invalid template '{name}': {e}", resource="template") from e

        variables = data.get("variables") or {}
        if isinstance(variables, list):
            # 列表形式：必须由调用方提供
            variables = {str(var): None for var in variables}
        elif not isinstance(variables, dict):
            raise OperationError("template load", f"invalid variables in template '{name}'", resource="template")

        return Template(
            name=str(data.get("template_name") or name),
            description=str(data.get("description") or ""),
            variables=variables,
            content=body.lstrip("\n"),
        )

    def execute(self, template: Template, variables: Optional[Mapping[str, Any]] = None) -> str:
        """
        渲染模板

        只传入声明过的变量（有默认值或调用方提供）以及内置变量。

        Raises:
            OperationError: 渲染失败（包括引用未声明的变量）
        """
        supplied = dict(variables or {})
        context: dict[str, Any] = {}
        for name, default in template.variables.items():
            if name in supplied:
                context[name] = supplied[name]
            elif default is not None:
                context[name] = default
        for name in BUILTIN_VARIABLES:
            if name in supplied:
                context[name] = supplied[name]

        try:
            return self._env.from_string(template.content).render(**context)
        except TemplateError as e:
            raise OperationError("template render", str(e), resource="template") from e

    def create_from_template(
        self,
        name: str,
        task: str,
        priority: str = "high",
        todo_type: str = "feature",
        variables: Optional[Mapping[str, Any]] = None,
        parent_id: str = "",
    ) -> Todo:
        """加载并渲染模板，用渲染结果创建 todo"""
        if self.store is None:
            raise OperationError("template", "no todo store configured")
        template = self.load(name)
        context = {
            **dict(variables or {}),
            "task": task,
            "priority": priority,
            "type": todo_type,
            "date": now().strftime("%Y-%m-%d"),
        }
        rendered = self.execute(template, context)
        return self.store.create(task, priority, todo_type, parent_id=parent_id, template_body=rendered)

    def install_builtin_templates(self, force: bool = False) -> list[str]:
        """写入内置模板，返回实际写入的模板名"""
        self.templates_dir.mkdir(parents=True, exist_ok=True)
        written = []
        for name, content in BUILTIN_TEMPLATES.items():
            path = self.templates_dir / f"{name}{TEMPLATE_SUFFIX}"
            if path.exists() and not force:
                continue
            path.write_text(content, encoding="utf-8")
            written.append(name)
        logger.info(f"Installed templates {written} into {self.templates_dir}")
        return written


__all__ = ["BUILTIN_TEMPLATES", "TemplateManager"]
