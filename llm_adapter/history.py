"""
历史消息规范化模块

按模型的结构约束整理历史消息，策略以名称注册，模型通过
AIModel.historyPolicy 或内置的模型 ID 映射选择策略。
没有约束的模型原样返回历史。

规范化是纯函数，不修改输入。
"""

from typing import Callable, Optional, Sequence

from .constants import (
    HISTORY_MERGE_SEPARATOR,
    HISTORY_POLICY_STRICT_ALTERNATION,
    STRICT_ALTERNATION_MODELS,
)
from .errors import ConfigIncompleteError
from .models import AIModel, ChatTurn

HistoryPolicy = Callable[[Sequence[ChatTurn]], list[ChatTurn]]

_policies: dict[str, HistoryPolicy] = {}
_model_policies: dict[str, str] = {}


def register_policy(name: str) -> Callable[[HistoryPolicy], HistoryPolicy]:
    """注册规范化策略（装饰器）"""
    def decorator(func: HistoryPolicy) -> HistoryPolicy:
        _policies[name] = func
        return func
    return decorator


def register_model_policy(model_id: str, policy_name: str) -> None:
    """为模型 ID 指定策略"""
    if policy_name not in _policies:
        raise ValueError(f"未知的历史策略: {policy_name}")
    _model_policies[model_id] = policy_name


def get_policy_name(model_id: Optional[str], model: Optional[AIModel] = None) -> Optional[str]:
    """模型配置的 historyPolicy 优先，其次是内置映射"""
    if model is not None and model.history_policy:
        return model.history_policy
    if model_id:
        return _model_policies.get(model_id)
    return None


@register_policy(HISTORY_POLICY_STRICT_ALTERNATION)
def strict_alternation(history: Sequence[ChatTurn]) -> list[ChatTurn]:
    """
    严格的 user / assistant 交替

    1. 丢弃空内容
    2. 丢弃开头的非 user 消息
    3. 合并连续同角色消息（空行分隔）
    4. 丢弃结尾的非 user 消息

    >>> strict_alternation([ChatTurn("assistant", "x"), ChatTurn("user", "a"), ChatTurn("user", "b")])
    [ChatTurn(role='user', content='a\\n\\nb')]
    """
    turns = [t for t in history if t.content and t.content.strip()]

    start = 0
    while start < len(turns) and turns[start].role != "user":
        start += 1

    merged: list[ChatTurn] = []
    for turn in turns[start:]:
        if merged and merged[-1].role == turn.role:
            last = merged.pop()
            merged.append(ChatTurn(role=last.role, content=last.content + HISTORY_MERGE_SEPARATOR + turn.content))
        else:
            merged.append(turn)

    while merged and merged[-1].role != "user":
        merged.pop()

    return merged


def normalize_history(
    history: Sequence[ChatTurn],
    model_id: Optional[str],
    model: Optional[AIModel] = None,
) -> list[ChatTurn]:
    """按模型约束规范化历史消息"""
    name = get_policy_name(model_id, model)
    if name is None:
        return list(history)
    policy = _policies.get(name)
    if policy is None:
        raise ConfigIncompleteError(f"未知的历史策略: {name}", missing_field="historyPolicy", model=model_id)
    return policy(history)


for _model_id in STRICT_ALTERNATION_MODELS:
    register_model_policy(_model_id, HISTORY_POLICY_STRICT_ALTERNATION)
