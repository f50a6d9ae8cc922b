"""
LLM-Adapter-Lite: 声明式通用 LLM API 适配器

主应用入口
"""

import sys
import asyncio
import json
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import httpx
import uvicorn
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from llm_adapter.adapter import AIAdapter, StreamHandle
from llm_adapter.autofetch import AutoFetchService, apply_models, mark_updated, should_auto_update
from llm_adapter.config import config_manager, get_config
from llm_adapter.constants import (
    APP_NAME,
    APP_VERSION,
    APP_DESCRIPTION,
    AUTO_FETCH_CHECK_INTERVAL_SECONDS,
    DEFAULT_FINISH_CONDITION,
    DEFAULT_SERVER_HOST,
    DEFAULT_SERVER_PORT,
)
from llm_adapter.errors import (
    AdapterError,
    ConfigIncompleteError,
    ContentExtractionError,
    TransportError,
    UpstreamHTTPError,
)
from llm_adapter.logger import LogLevel, log_manager
from llm_adapter.models import Agent, Provider, ProviderKind, ProxySettings
from llm_adapter.presets import AUTO_FETCH_PRESETS, get_preset_config
from llm_adapter.schemas import (
    CancelRequest,
    ChatRequest,
    ErrorDetail,
    ErrorResponse,
    SaveAgentsRequest,
    SaveProvidersRequest,
    SelectProviderRequest,
)
from llm_adapter.storage import ProviderStore
from llm_adapter.streaming import StreamEvent
from llm_adapter.transport import HttpTransport


store: ProviderStore = None  # type: ignore
transport: HttpTransport = None  # type: ignore
autofetch_service: AutoFetchService = None  # type: ignore
_adapters: Dict[str, AIAdapter] = {}
_auto_fetch_task: Optional[asyncio.Task] = None

# 上游传输替换点（测试时注入 httpx.MockTransport）
_upstream_transport: Optional[httpx.AsyncBaseTransport] = None


def print_banner():
    banner = f"""
╔══════════════════════════════════════════════════════════╗
║                                                          ║
║    {APP_NAME} v{APP_VERSION}                               ║
║   {APP_DESCRIPTION}                                  ║
║                                                          ║
╚══════════════════════════════════════════════════════════╝
"""
    print(banner)


def print_config_summary():
    config = get_config()
    providers = store.get_providers()
    proxy_settings = store.get_proxy_settings()

    print(f"[CONFIG] 服务地址: http://{config.server_host}:{config.server_port}")
    print(f"[CONFIG] 存储文件: {config.data_path}")
    print(f"[CONFIG] 请求超时: {config.request_timeout or '不限'}")
    print(f"[CONFIG] 代理: {'已启用 ' + proxy_settings.host if proxy_settings.enabled else '未启用'}")
    print(f"[CONFIG] Provider 数量: {len(providers)} 个")

    selected_id = store.get_selected_provider_id()
    for p in providers:
        mark = " *" if p.id == selected_id else ""
        print(f"  ├─ {p.name} (ID: {p.id[:8]}..., 方言: {p.kind.value}, 模型: {len(p.models)} 个){mark}")


def get_session_adapter(session_id: str) -> AIAdapter:
    """每个会话一个适配器实例（各自只有一个进行中的流），共享传输层"""
    adapter = _adapters.get(session_id)
    if adapter is None:
        adapter = AIAdapter(store, transport, default_temperature=get_config().default_temperature)
        _adapters[session_id] = adapter
    return adapter


def release_session_adapter(session_id: str, adapter: AIAdapter) -> None:
    """会话的流结束后移除适配器；同一会话已开始新的流时保留"""
    handle = adapter.current_handle
    if handle is not None and not handle.done:
        return
    if _adapters.get(session_id) is adapter:
        del _adapters[session_id]


def get_provider_or_404(provider_id: str) -> Provider:
    provider = store.get_provider(provider_id)
    if provider is None:
        raise HTTPException(status_code=404, detail=f"Provider '{provider_id}' 不存在")
    return provider


async def update_provider_models(provider: Provider) -> Provider:
    """拉取模型列表并写回存储"""
    models = await autofetch_service.fetch_models(provider)
    updated = mark_updated(apply_models(provider, models))
    store.update_provider(updated)
    return updated


async def auto_update_all_provider_models() -> int:
    """更新所有到期的 Provider，返回成功数量"""
    updated_count = 0
    for provider in store.get_providers():
        if not should_auto_update(provider):
            continue
        try:
            await update_provider_models(provider)
            updated_count += 1
        except AdapterError as e:
            log_manager.log_event(
                LogLevel.WARNING, "sync", "自动更新模型列表失败", provider=provider.name, error=e.message
            )
    return updated_count


async def auto_fetch_models_task():
    """
    轮询检查机制：定期检查各 Provider 是否需要自动更新模型列表
    基于 autoUpdate 的上次更新时间 + 间隔判断
    """
    while True:
        try:
            await asyncio.sleep(AUTO_FETCH_CHECK_INTERVAL_SECONDS)
            count = await auto_update_all_provider_models()
            if count:
                print(f"[AUTO-FETCH] 完成: 更新了 {count} 个 Provider 的模型列表")
        except asyncio.CancelledError:
            print(f"[AUTO-FETCH] 任务已取消")
            break
        except Exception as e:
            print(f"[AUTO-FETCH] 出错: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    global store, transport, autofetch_service, _auto_fetch_task

    print_banner()

    try:
        config = config_manager.load()
        print(f"[STARTUP] 配置加载成功")
    except Exception as e:
        print(f"[ERROR] 配置加载失败: {e}")
        sys.exit(1)

    log_manager.set_max_entries(config.log_max_memory_entries)

    store = ProviderStore(config.data_path)
    store.load()

    transport = HttpTransport(
        timeout=config.request_timeout,
        proxy=store.get_proxy_settings(),
        transport=_upstream_transport,
    )
    autofetch_service = AutoFetchService(transport)
    _adapters.clear()

    _auto_fetch_task = asyncio.create_task(auto_fetch_models_task())

    print_config_summary()
    print(f"[STARTUP] 服务启动完成，等待请求...")
    print("-" * 60)

    log_manager.log_event(
        LogLevel.INFO, "system", f"服务启动完成 - {len(store.get_providers())} 个 Provider"
    )

    yield

    if _auto_fetch_task:
        _auto_fetch_task.cancel()
        try:
            await _auto_fetch_task
        except asyncio.CancelledError:
            pass

    for adapter in _adapters.values():
        adapter.cancel_stream()
    _adapters.clear()

    await transport.close()
    print(f"[SHUTDOWN] 服务已关闭")


app = FastAPI(
    title=APP_NAME,
    description=APP_DESCRIPTION,
    version=APP_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error_status(e: AdapterError) -> int:
    if isinstance(e, ConfigIncompleteError):
        return 400
    if isinstance(e, (TransportError, UpstreamHTTPError, ContentExtractionError)):
        return 502
    return 500


@app.exception_handler(AdapterError)
async def adapter_error_handler(request: Request, exc: AdapterError):
    code = str(exc.status_code) if isinstance(exc, UpstreamHTTPError) else None
    param = exc.missing_field if isinstance(exc, ConfigIncompleteError) else None
    error = ErrorResponse(
        error=ErrorDetail(message=exc.message, type=type(exc).__name__, param=param, code=code)
    )
    return JSONResponse(status_code=_error_status(exc), content=error.model_dump())


@app.get("/")
async def root():
    return {
        "service": APP_NAME,
        "version": APP_VERSION,
        "status": "running",
    }


@app.get("/health")
async def health_check():
    active = sum(1 for a in _adapters.values() if a.current_handle is not None)
    return {
        "status": "healthy",
        "total_providers": len(store.get_providers()),
        "selected_provider_id": store.get_selected_provider_id(),
        "active_streams": active,
    }


# ==================== 配置 ====================

@app.get("/api/providers")
async def list_providers():
    return {
        "providers": [p.to_dict() for p in store.get_providers()],
        "selectedProviderId": store.get_selected_provider_id(),
    }


@app.put("/api/providers")
async def save_providers(request: SaveProvidersRequest):
    try:
        providers = [Provider.model_validate(p) for p in request.providers]
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Provider 配置无效: {e}")

    ids = [p.id for p in providers]
    if len(ids) != len(set(ids)):
        raise HTTPException(status_code=400, detail="Provider ID 重复")

    store.save_providers(providers)
    log_manager.log_event(LogLevel.INFO, "config", f"已保存 {len(providers)} 个 Provider")
    return {"status": "success", "message": "保存成功", "count": len(providers)}


@app.post("/api/providers/select")
async def select_provider(request: SelectProviderRequest):
    if request.provider_id is not None:
        get_provider_or_404(request.provider_id)
    store.save_selected_provider_id(request.provider_id)
    return {"status": "success", "selectedProviderId": request.provider_id}


@app.post("/api/providers/{provider_id}/test")
async def test_provider_connection(provider_id: str):
    get_provider_or_404(provider_id)
    adapter = AIAdapter(store, transport, default_temperature=get_config().default_temperature)
    success, message = await adapter.test_connection(provider_id)
    return {"success": success, "message": message}


@app.post("/api/providers/{provider_id}/models/fetch")
async def fetch_provider_models(provider_id: str):
    provider = get_provider_or_404(provider_id)
    updated = await update_provider_models(provider)
    return {
        "status": "success",
        "models": [m.to_dict() for m in updated.models],
        "defaultModelId": updated.default_model_id,
    }


@app.get("/api/providers/{provider_id}/balance")
async def get_provider_balance(provider_id: str):
    provider = get_provider_or_404(provider_id)
    return await autofetch_service.fetch_balance(provider)


@app.get("/api/providers/{provider_id}/pricing")
async def get_provider_pricing(provider_id: str):
    provider = get_provider_or_404(provider_id)
    return {"pricing": await autofetch_service.fetch_pricing(provider)}


@app.get("/api/presets")
async def get_presets():
    return {
        "configs": {kind.value: get_preset_config(kind).to_dict() for kind in ProviderKind},
        "autoFetch": {name: config.to_dict() for name, config in AUTO_FETCH_PRESETS.items()},
    }


@app.get("/api/proxy")
async def get_proxy_settings():
    return store.get_proxy_settings().to_dict()


@app.put("/api/proxy")
async def save_proxy_settings(settings: ProxySettings):
    store.save_proxy_settings(settings)
    await transport.set_proxy(settings)
    return {"status": "success", "message": "代理设置已保存"}


@app.get("/api/agents")
async def list_agents():
    return {"agents": [a.to_dict() for a in store.get_agents()]}


@app.put("/api/agents")
async def save_agents(request: SaveAgentsRequest):
    try:
        agents = [Agent.model_validate(a) for a in request.agents]
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Agent 配置无效: {e}")

    store.save_agents(agents)
    return {"status": "success", "message": "保存成功", "count": len(agents)}


# ==================== 聊天 ====================

@app.post("/api/chat")
async def chat(request: ChatRequest):
    adapter = get_session_adapter(request.session_id)
    if request.agent_id:
        result = await adapter.send_agent_message(request.message, request.agent_id, request.turns())
    else:
        result = await adapter.send_message(
            request.message,
            history=request.turns(),
            provider_id=request.provider_id,
            model_id=request.model_id,
            system_prompt=request.system_prompt,
            temperature=request.temperature,
        )
    release_session_adapter(request.session_id, adapter)
    return result.to_dict()


def _sse_frame(event: StreamEvent) -> str:
    return f"data: {json.dumps(event.to_dict(), ensure_ascii=False)}\n\n"


async def _handle_events(session_id: str, adapter: AIAdapter, handle: StreamHandle) -> AsyncIterator[str]:
    try:
        async for event in handle:
            yield _sse_frame(event)
        yield f"data: {DEFAULT_FINISH_CONDITION}\n\n"
    finally:
        # 客户端断开时中断上游
        if handle.cancel():
            await handle.wait()
        release_session_adapter(session_id, adapter)


async def _agent_events(adapter: AIAdapter, request: ChatRequest) -> AsyncIterator[str]:
    queue: asyncio.Queue = asyncio.Queue()
    task = asyncio.create_task(
        adapter.send_agent_message(request.message, request.agent_id, request.turns(), on_update=queue.put_nowait)
    )
    finished = False
    try:
        while True:
            event = await queue.get()
            yield _sse_frame(event)
            if event.done:
                finished = True
                break
        yield f"data: {DEFAULT_FINISH_CONDITION}\n\n"
    finally:
        # 未收到终止事件就断开时中断 Agent 调用（含非流式调用）
        if not finished:
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        release_session_adapter(request.session_id, adapter)


@app.post("/api/chat/stream")
async def chat_stream(request: ChatRequest):
    adapter = get_session_adapter(request.session_id)

    if request.agent_id:
        events = _agent_events(adapter, request)
    else:
        handle = adapter.start_stream(
            request.message,
            history=request.turns(),
            provider_id=request.provider_id,
            model_id=request.model_id,
            system_prompt=request.system_prompt,
            temperature=request.temperature,
        )
        events = _handle_events(request.session_id, adapter, handle)

    return StreamingResponse(
        events,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@app.post("/api/chat/cancel")
async def cancel_chat(request: CancelRequest):
    adapter = _adapters.get(request.session_id)
    canceled = adapter.cancel_stream() if adapter is not None else False
    return {"status": "success", "canceled": canceled}


# ==================== 日志 ====================

@app.get("/api/logs")
async def get_logs(
    limit: int = Query(100, ge=1, le=1000),
    level: Optional[str] = None,
    log_type: Optional[str] = None,
    keyword: Optional[str] = None,
    provider: Optional[str] = None,
):
    return {
        "logs": log_manager.get_recent_logs(
            limit=limit, level=level, log_type=log_type, keyword=keyword, provider=provider
        )
    }


@app.get("/api/logs/stream")
async def stream_logs():
    async def generate():
        async for log_entry in log_manager.subscribe():
            yield f"data: {json.dumps(log_entry.to_dict(), ensure_ascii=False)}\n\n"

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@app.delete("/api/logs")
async def clear_logs():
    log_manager.clear()
    return {"status": "success", "message": "日志已清空"}


if __name__ == "__main__":
    try:
        config = config_manager.load()
        host = config.server_host
        port = config.server_port
    except Exception:
        host = DEFAULT_SERVER_HOST
        port = DEFAULT_SERVER_PORT

    uvicorn.run("main:app", host=host, port=port, reload=False, log_level="info")
