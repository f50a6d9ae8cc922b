import argparse
import sys
from pathlib import Path

# 添加项目根目录到 Python 路径
sys.path.insert(0, str(Path(__file__).parent.parent))

from llm_adapter.config import ConfigManager
from llm_adapter.models import Provider
from llm_adapter.presets import AUTO_FETCH_PRESETS
from llm_adapter.storage import ProviderStore


# 预设 Provider：不带 customConfig，按方言使用内置配置
PRESET_PROVIDERS: list[dict] = [
    {
        "id": "openai",
        "name": "OpenAI",
        "apiEndpoint": "https://api.openai.com/v1/chat/completions",
        "presetType": "openai",
        "models": [{"id": "gpt-4o-mini"}, {"id": "gpt-4o"}],
        "defaultModelId": "gpt-4o-mini",
    },
    {
        "id": "deepseek",
        "name": "DeepSeek",
        "apiEndpoint": "https://api.deepseek.com/chat/completions",
        "presetType": "deepseek",
        "models": [{"id": "deepseek-chat"}, {"id": "deepseek-reasoner", "features": {"reasoning": True}}],
        "defaultModelId": "deepseek-chat",
    },
    {
        "id": "gemini",
        "name": "Google Gemini",
        "apiEndpoint": "https://generativelanguage.googleapis.com/v1beta",
        "presetType": "gemini",
        "models": [{"id": "gemini-2.0-flash"}],
        "defaultModelId": "gemini-2.0-flash",
    },
    {
        "id": "claude",
        "name": "Anthropic Claude",
        "apiEndpoint": "https://api.anthropic.com/v1/messages",
        "presetType": "claude",
        "models": [{"id": "claude-3-5-haiku-latest"}],
        "defaultModelId": "claude-3-5-haiku-latest",
    },
]


def build_presets() -> list[Provider]:
    providers = []
    for data in PRESET_PROVIDERS:
        auto_fetch = AUTO_FETCH_PRESETS.get(data["presetType"])
        if auto_fetch is not None:
            data = {**data, "autoFetchConfig": auto_fetch.to_dict()}
        providers.append(Provider.model_validate(data))
    return providers


def main() -> None:
    parser = argparse.ArgumentParser(description="写入预设 Provider 到存储文件")
    parser.add_argument("--data-path", help="存储文件路径（默认读取 config.json 的 data_path）")
    parser.add_argument("--force", action="store_true", help="覆盖已有的 Provider")
    args = parser.parse_args()

    data_path = args.data_path or ConfigManager().load().data_path
    store = ProviderStore(data_path)

    existing = store.get_providers()
    if existing and not args.force:
        raise SystemExit(f"存储中已有 {len(existing)} 个 Provider，使用 --force 覆盖。")

    providers = build_presets()
    store.save_providers(providers)
    store.save_selected_provider_id(providers[0].id)
    print(f"Initialized {len(providers)} providers: {data_path}")


if __name__ == "__main__":
    main()
