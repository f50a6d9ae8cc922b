"""
模板解析模块

将 ``{name}`` 替换为变量值。只识别 TEMPLATE_VARIABLES 中的变量名，
未识别或未提供的变量原样保留，便于排查配置错误。
替换只进行一次，替换结果不会再次扫描。
"""

import re
from typing import Any, Mapping

from .constants import TEMPLATE_NUMBER_ID_THRESHOLD, TEMPLATE_VARIABLES

_TOKEN_RE = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")


def render_value(value: Any) -> str:
    """变量值的字符串形式"""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _is_known(name: str, variables: Mapping[str, Any]) -> bool:
    return name in TEMPLATE_VARIABLES and name in variables


def resolve_template(template: str, variables: Mapping[str, Any]) -> str:
    """
    替换模板中的变量

    >>> resolve_template("Bearer {apiKey}", {"apiKey": "sk-1"})
    'Bearer sk-1'
    >>> resolve_template("{unknown}", {})
    '{unknown}'
    """
    if not template:
        return template or ""

    def _replace(match: "re.Match[str]") -> str:
        name = match.group(1)
        if _is_known(name, variables):
            return render_value(variables[name])
        return match.group(0)

    return _TOKEN_RE.sub(_replace, template)


def resolve_value(template: str, variables: Mapping[str, Any]) -> Any:
    """
    解析模板并在整个模板恰好是单个变量时保留类型

    - model 总是字符串
    - stream 转为布尔值
    - 布尔值保持布尔
    - 数字保持数字（超过阈值的视为 ID 转为字符串）
    - 字符串形式的 true / false / 小数字转为对应类型
    """
    match = _TOKEN_RE.fullmatch(template or "")
    if not match or not _is_known(match.group(1), variables):
        return resolve_template(template, variables)

    name = match.group(1)
    value = variables[name]

    if name == "model":
        return render_value(value)

    if name == "stream":
        if isinstance(value, bool):
            return value
        if value == "true":
            return True
        if value == "false":
            return False
        return bool(value)

    if isinstance(value, bool):
        return value

    if isinstance(value, (int, float)):
        if value > TEMPLATE_NUMBER_ID_THRESHOLD:
            return render_value(value)
        return value

    if value == "true":
        return True
    if value == "false":
        return False

    if isinstance(value, str) and value.strip():
        try:
            number = float(value)
        except ValueError:
            return value
        if number < TEMPLATE_NUMBER_ID_THRESHOLD:
            return int(number) if number.is_integer() and "." not in value else number
        return value

    return render_value(value)
