import json

from core.paths import CONFIG_DIR

SYSTEM_PROMPT = """
You are Jelli, the assistant inside a project and task management app.

RULES:
- Help the user plan, prioritize and describe their projects and tasks.
- Only state facts that appear in the conversation.
- If information is missing, say so instead of guessing.
- Keep answers short and practical.
""".strip()

GREETING = "Hi! I'm Jelli. How can I help you?"
RESET_GREETING = "Okay, let's start over. How can I help you?"
FAILURE_TEXT = "Sorry, I ran into a problem processing your request."

DEFAULT_CONFIG = {
    "gguf_path": None,
    "ctx_limit": 4096,
    "n_gpu_layers": -1,
    "temp": 0.7,
    "top_p": 0.9,
    "max_tokens": 1024,
    "load_timeout_ms": 0,
    "greeting": GREETING,
    "reset_greeting": RESET_GREETING,
    "failure_text": FAILURE_TEXT,
    "system_prompt": SYSTEM_PROMPT,
}

_NUMERIC_KEYS = {
    "ctx_limit": int,
    "n_gpu_layers": int,
    "temp": float,
    "top_p": float,
    "max_tokens": int,
    "load_timeout_ms": int,
}

_TEXT_KEYS = ("greeting", "reset_greeting", "failure_text")

CONFIG_PATH = CONFIG_DIR / "llm_config.json"


def _coerce(config):
    for key, cast in _NUMERIC_KEYS.items():
        try:
            config[key] = cast(config.get(key))
        except (TypeError, ValueError):
            config[key] = DEFAULT_CONFIG[key]
    for key in _TEXT_KEYS:
        value = config.get(key)
        if not isinstance(value, str) or not value.strip():
            config[key] = DEFAULT_CONFIG[key]
    path = config.get("gguf_path")
    if path is not None and not isinstance(path, str):
        config["gguf_path"] = None
    return config


def load_config(path=None):
    config_path = path or CONFIG_PATH
    config = DEFAULT_CONFIG.copy()
    if config_path.exists():
        try:
            with config_path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
                if isinstance(data, dict):
                    data.pop("system_prompt", None)
                    config.update(data)
        except Exception:
            pass
    config["system_prompt"] = SYSTEM_PROMPT
    return _coerce(config)


def save_config(config, path=None):
    config_path = path or CONFIG_PATH
    persisted = dict(config)
    persisted.pop("system_prompt", None)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        json.dump(persisted, handle, indent=2)
