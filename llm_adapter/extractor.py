"""
响应提取模块

非流式调用：把完整响应体解析为 JSON，再按 contentPath / reasoningPath 取值。
contentPath 不存在是硬错误，空的成功回复和配置错误无法区分。
"""

import json
from dataclasses import dataclass
from typing import Any, Optional

from .errors import ContentExtractionError, one_line
from .models import APIResponseConfig
from .paths import MISSING, get_path


@dataclass
class ExtractedResponse:
    content: str
    reasoning_content: Optional[str] = None


def _top_level_keys(data: Any) -> list[str]:
    if isinstance(data, dict):
        return list(data.keys())
    return []


def parse_body(body_text: str, provider_name: Optional[str] = None, model: Optional[str] = None) -> Any:
    """解析响应体 JSON"""
    try:
        return json.loads(body_text)
    except ValueError:
        raise ContentExtractionError(
            f"响应不是有效的 JSON: {one_line(body_text) or '空响应'}",
            path="",
            provider_name=provider_name,
            model=model,
        )


def extract_response(
    data: Any,
    config: APIResponseConfig,
    provider_name: Optional[str] = None,
    model: Optional[str] = None,
) -> ExtractedResponse:
    """
    按配置路径提取内容和推理内容

    Raises:
        ContentExtractionError: contentPath 在响应中不存在
    """
    content = get_path(data, config.content_path)
    if content is MISSING:
        keys = _top_level_keys(data)
        raise ContentExtractionError(
            f"无法从响应中提取内容，路径: {config.content_path}，"
            f"响应顶层字段: {', '.join(keys) if keys else '无'}",
            path=config.content_path,
            available_keys=keys,
            provider_name=provider_name,
            model=model,
        )

    reasoning: Optional[str] = None
    if config.reasoning_path:
        value = get_path(data, config.reasoning_path)
        if value:
            reasoning = value if isinstance(value, str) else str(value)

    if content is None:
        text = ""
    elif isinstance(content, str):
        text = content
    else:
        text = json.dumps(content, ensure_ascii=False)
    return ExtractedResponse(content=text, reasoning_content=reasoning)
