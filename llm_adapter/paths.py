"""
JSON 路径访问模块

路径语法：点分隔的段，每段可带一个方括号下标，例如 ``choices[0].delta.content``。
路径字符串只在配置边界出现，内部解析一次为 PathStep 序列并缓存。

缺失与 null 是两种不同的结果：路径不存在返回 MISSING，值为 null 返回 None。
"""

import re
from functools import lru_cache
from typing import Any, NamedTuple, Optional

_SEGMENT_RE = re.compile(r"^(?P<key>[^\[\]]*)(?:\[(?P<index>-?\d+)\])?$")


class _Missing:
    """路径不存在的哨兵值"""

    _instance: Optional["_Missing"] = None

    def __new__(cls) -> "_Missing":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


class PathStep(NamedTuple):
    """路径中的一步：先按 key 取值（key 为空则跳过），再按 index 取下标"""
    key: str
    index: Optional[int] = None


@lru_cache(maxsize=512)
def parse_path(path: str) -> tuple[PathStep, ...]:
    """
    解析路径字符串

    Raises:
        ValueError: 段格式非法（如 ``a[x]``、``a[0][1]``）
    """
    if not path:
        return ()

    steps: list[PathStep] = []
    for segment in path.split("."):
        match = _SEGMENT_RE.match(segment)
        if not match:
            raise ValueError(f"非法路径段 '{segment}'（路径: {path}）")
        index = match.group("index")
        steps.append(PathStep(match.group("key"), int(index) if index is not None else None))
    return tuple(steps)


def get_path(root: Any, path: str) -> Any:
    """
    按路径取值

    Returns:
        取到的值；任一中间值为 None / 缺失，或下标容器不是列表时返回 MISSING
    """
    try:
        steps = parse_path(path)
    except ValueError:
        return MISSING
    return get_steps(root, steps)


def get_steps(root: Any, steps: tuple[PathStep, ...]) -> Any:
    """按已解析的步骤取值"""
    current = root
    for step in steps:
        if step.key:
            if not isinstance(current, dict) or step.key not in current:
                return MISSING
            current = current[step.key]
        if step.index is not None:
            if not isinstance(current, (list, tuple)):
                return MISSING
            try:
                current = current[step.index]
            except IndexError:
                return MISSING
    return current


def set_path(target: dict, path: str, value: Any) -> None:
    """
    按点分隔路径设置值，自动创建中间对象

    中间值存在但不是对象时会被覆盖为新对象。
    """
    keys = path.split(".")
    current = target
    for key in keys[:-1]:
        child = current.get(key)
        if not isinstance(child, dict):
            child = {}
            current[key] = child
        current = child
    current[keys[-1]] = value
