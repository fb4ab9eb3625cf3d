"""利润分析技能的公共抽象：名称、说明、调用入口与参数描述。"""

from __future__ import annotations

import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List


@dataclass
class Skill(ABC):
    """Agent 与 MCP 共用的技能接口。

    ``name`` 注册后不可更改；``invoke`` 只接受关键字参数。
    """

    name: str
    description: str

    @abstractmethod
    def invoke(self, **kwargs: Any) -> Any:  # pragma: no cover - 接口定义
        """执行技能，返回 JSON 可序列化结构。"""

    def parameter_names(self) -> List[str]:
        """列出 ``invoke`` 声明的关键字参数（忽略 ``**kwargs`` 兜底）。"""
        signature = inspect.signature(self.invoke)
        return [
            param.name
            for param in signature.parameters.values()
            if param.kind is inspect.Parameter.KEYWORD_ONLY
        ]

    def to_descriptor(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameter_names(),
        }
