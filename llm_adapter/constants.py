"""
统一常量管理模块

所有可配置的常量都应在此文件中定义，便于集中管理和维护

注意：以下配置通过 config.json 获取（见 get_config()）：
- server_port, server_host (服务器配置)
- data_path (存储文件路径)
- request_timeout (传输层超时，默认不限)
"""

# ==================== 应用信息 ====================

# 应用名称
APP_NAME: str = "LLM-Adapter-Lite"

# 应用版本
APP_VERSION: str = "0.3.0"

# 应用描述
APP_DESCRIPTION: str = "声明式通用 LLM API 适配器"

# 默认服务地址（配置加载失败时使用）
DEFAULT_SERVER_HOST: str = "127.0.0.1"
DEFAULT_SERVER_PORT: int = 8100


# ==================== 模板变量 ====================

# 可识别的模板变量（封闭集合），其余 {name} 原样保留
TEMPLATE_VARIABLES: frozenset[str] = frozenset({
    "apiKey",
    "model",
    "endpoint",
    "role",
    "content",
    "message",
    "stream",
    "temperature",
    "systemPrompt",
})

# 整数值超过此阈值时视为 ID（转为字符串）
TEMPLATE_NUMBER_ID_THRESHOLD: int = 1_000_000_000

# 默认温度
DEFAULT_TEMPERATURE: float = 0.7


# ==================== 流式响应 ====================

# SSE 数据前缀
DEFAULT_DATA_PREFIX: str = "data: "

# 常见结束标记
DEFAULT_FINISH_CONDITION: str = "[DONE]"

# 查询参数方式开启流式时的默认值
DEFAULT_STREAM_QUERY_VALUE: str = "true"

# 终止事件原因
STREAM_REASON_COMPLETED: str = "completed"
STREAM_REASON_CANCELED: str = "canceled"
STREAM_REASON_FAILED: str = "failed"

# 用户中断时展示的文本（无部分内容时）
STREAM_CANCELED_MESSAGE: str = "生成已被用户中断"

# 失败时展示的文本前缀
STREAM_FAILED_MESSAGE_PREFIX: str = "发生错误，请检查网络连接或API设置。"


# ==================== 历史规范化 ====================

# 合并连续同角色消息时使用的分隔符
HISTORY_MERGE_SEPARATOR: str = "\n\n"

# 严格交替策略名称
HISTORY_POLICY_STRICT_ALTERNATION: str = "strict_alternation"

# 已知需要严格交替的模型 ID
STRICT_ALTERNATION_MODELS: tuple[str, ...] = ("deepseek-reasoner",)


# ==================== 错误处理 ====================

# 错误消息最大长度（字符），超过将被截断
ERROR_MESSAGE_MAX_LENGTH: int = 300

# 错误响应原文保留长度
ERROR_RAW_BODY_MAX_LENGTH: int = 500


# ==================== 日志系统配置 ====================

# 内存中保留的最大日志条数
LOG_MAX_MEMORY_ENTRIES: int = 1000

# SSE 订阅队列大小
LOG_SUBSCRIBE_QUEUE_SIZE: int = 100

# 最近日志查询默认限制
LOG_RECENT_LIMIT_DEFAULT: int = 100


# ==================== HTTP 请求配置 ====================

# 默认 User-Agent
DEFAULT_USER_AGENT: str = "llm-adapter-lite/" + APP_VERSION

# 默认 Content-Type
DEFAULT_CONTENT_TYPE: str = "application/json"

# 会携带请求体的方法
BODY_METHODS: tuple[str, ...] = ("POST", "PUT")

# Anthropic API 版本
ANTHROPIC_API_VERSION: str = "2023-06-01"

# Anthropic 必填的 max_tokens
ANTHROPIC_DEFAULT_MAX_TOKENS: int = 4096


# ==================== 连接测试 ====================

# 连接测试使用的消息
CONNECTION_TEST_MESSAGE: str = "这是一条测试消息，请简短回复以验证连接正常。"

# 测试回复预览长度
CONNECTION_TEST_PREVIEW_LENGTH: int = 50

# 推理内容预览长度
CONNECTION_TEST_REASONING_PREVIEW_LENGTH: int = 30


# ==================== 自动获取 ====================

# 默认自动更新间隔（小时）
AUTO_FETCH_DEFAULT_INTERVAL_HOURS: int = 24

# Gemini 模型 ID 前缀
GEMINI_MODEL_ID_PREFIX: str = "models/"


# ==================== 存储 ====================

# 默认数据文件
DEFAULT_DATA_PATH: str = "data/store.json"

# 文件锁超时（秒）
STORAGE_LOCK_TIMEOUT_SECONDS: float = 10.0


# ==================== 服务 ====================

# 自动更新模型列表的轮询间隔（秒）
AUTO_FETCH_CHECK_INTERVAL_SECONDS: int = 600

# 未指定会话时使用的会话 ID
DEFAULT_SESSION_ID: str = "default"
