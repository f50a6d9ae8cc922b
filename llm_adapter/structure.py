"""
可视化结构编译模块

把用户编辑的 JsonNode 树编译为具体的 JSON 值。
顶层数组节点代表完整的对话历史：对每条消息绑定 role / content 后
用 arrayItemTemplate 生成一项，按时间顺序输出。
同一棵树可以生成 OpenAI 的 [{role, content}] 和 Gemini 的 [{role, parts: [{text}]}]。
"""

from dataclasses import dataclass
from typing import Any, Optional

from .constants import DEFAULT_TEMPERATURE
from .models import (
    ArrayNode,
    ChatTurn,
    MessageStructureConfig,
    ObjectNode,
    RoleMapping,
    ScalarNode,
    TemplateNode,
)


@dataclass(frozen=True)
class CompileContext:
    """单次请求的编译上下文"""
    message: str
    history: tuple[ChatTurn, ...] = ()
    model: str = ""
    stream: bool = False
    temperature: float = DEFAULT_TEMPERATURE
    api_key: str = ""
    system_prompt: Optional[str] = None

    def variables(self) -> dict[str, Any]:
        """请求级模板变量（不含 role / content）"""
        return {
            "message": self.message,
            "model": self.model,
            "stream": self.stream,
            "temperature": self.temperature,
            "apiKey": self.api_key,
            "systemPrompt": self.system_prompt,
        }

    def conversation(self, include_system: bool = True) -> list[ChatTurn]:
        """
        需要发送的消息序列

        有历史时直接使用历史（调用方已把当前消息放入历史），
        否则只包含当前消息；系统提示词作为第一条。
        """
        turns: list[ChatTurn] = []
        if include_system and self.system_prompt:
            turns.append(ChatTurn(role="system", content=self.system_prompt))
        if self.history:
            turns.extend(self.history)
        elif self.message and self.message.strip():
            turns.append(ChatTurn(role="user", content=self.message))
        return turns


def _bind(ctx: CompileContext, role_mapping: RoleMapping, turn: ChatTurn) -> dict[str, Any]:
    variables = ctx.variables()
    variables["role"] = role_mapping.map(turn.role)
    variables["content"] = turn.content
    return variables


def _compile(node: Any, variables: dict[str, Any]) -> Any:
    if isinstance(node, ScalarNode):
        return node.value

    if isinstance(node, TemplateNode):
        return variables.get(node.template_variable)

    if isinstance(node, ObjectNode):
        return {
            child.key: _compile(child, variables)
            for child in node.children
            if child.key
        }

    if isinstance(node, ArrayNode):
        # 消息项内部的数组（如 Gemini 的 parts）只生成一项
        if node.array_item_template is None:
            return []
        return [_compile(node.array_item_template, variables)]

    raise TypeError(f"未知的节点类型: {type(node).__name__}")


def compile_node(
    node: Any,
    ctx: CompileContext,
    role_mapping: Optional[RoleMapping] = None,
    include_system: bool = True,
) -> Any:
    """
    编译单个节点

    顶层数组节点遍历整个对话；其余节点使用当前消息（role 为 user）绑定
    role / content。
    """
    mapping = role_mapping or RoleMapping()

    if isinstance(node, ArrayNode):
        if node.array_item_template is None:
            return []
        return [
            _compile(node.array_item_template, _bind(ctx, mapping, turn))
            for turn in ctx.conversation(include_system)
        ]

    current = ChatTurn(role="user", content=ctx.message)
    return _compile(node, _bind(ctx, mapping, current))


def compile_structure(
    structure: MessageStructureConfig,
    ctx: CompileContext,
    include_system: bool = True,
) -> list:
    """
    按消息结构配置生成消息数组

    根节点不是数组时，把根节点本身作为单条消息模板。
    """
    if not structure.enabled:
        return []

    root = structure.root_node
    if isinstance(root, ArrayNode):
        return compile_node(root, ctx, structure.role_mapping, include_system)

    return [
        _compile(root, _bind(ctx, structure.role_mapping, turn))
        for turn in ctx.conversation(include_system)
    ]
