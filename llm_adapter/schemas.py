"""
API 数据模型定义
"""

from typing import Any, List, Optional
from pydantic import BaseModel, Field

from .constants import DEFAULT_SESSION_ID
from .models import ChatTurn


# ==================== 错误模型 ====================

class ErrorDetail(BaseModel):
    """错误详情"""
    message: str = Field(..., description="错误消息")
    type: str = Field(default="adapter_error", description="错误类型")
    param: Optional[str] = Field(default=None, description="相关参数")
    code: Optional[str] = Field(default=None, description="错误代码")


class ErrorResponse(BaseModel):
    """错误响应"""
    error: ErrorDetail = Field(..., description="错误详情")


# ==================== 请求模型 ====================

class HistoryMessage(BaseModel):
    role: str = Field(..., pattern="^(user|assistant|system)$")
    content: str = ""

    def to_turn(self) -> ChatTurn:
        return ChatTurn(role=self.role, content=self.content)


class ChatRequest(BaseModel):
    """聊天请求；history 为完整对话（包含当前消息），为空时只发送当前消息"""
    message: str
    history: List[HistoryMessage] = []
    provider_id: Optional[str] = None
    model_id: Optional[str] = None
    agent_id: Optional[str] = None
    system_prompt: Optional[str] = None
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    session_id: str = Field(default=DEFAULT_SESSION_ID, description="会话 ID，每个会话独立的进行中流")

    def turns(self) -> list[ChatTurn]:
        return [m.to_turn() for m in self.history]


class CancelRequest(BaseModel):
    session_id: str = DEFAULT_SESSION_ID


class SelectProviderRequest(BaseModel):
    provider_id: Optional[str] = None


class SaveProvidersRequest(BaseModel):
    providers: List[dict[str, Any]] = Field(..., description="Provider 配置（camelCase 存储格式）")


class SaveAgentsRequest(BaseModel):
    agents: List[dict[str, Any]] = Field(..., description="Agent 配置（camelCase 存储格式）")
