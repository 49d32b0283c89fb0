from pydantic import BaseModel
import os

class Settings(BaseModel):
    port: int = int(os.getenv("PORT", 8080))
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    chat_completions_url: str = os.getenv(
        "CHAT_COMPLETIONS_URL", "https://yunwu.zeabur.app/v1/chat/completions"
    )
    gemini_generate_url: str = os.getenv(
        "GEMINI_GENERATE_URL",
        "https://yunwu.zeabur.app/v1beta/models/gemini-2.5-flash-image-preview:generateContent",
    )
    sora_model_name: str = os.getenv("SORA_MODEL_NAME", "sora_image")
    max_attempts: int = int(os.getenv("MAX_ATTEMPTS", 3))
    attempt_timeout_seconds: float = float(os.getenv("ATTEMPT_TIMEOUT_SECONDS", 240))
    backoff_base_ms: int = int(os.getenv("BACKOFF_BASE_MS", 1000))
    backoff_cap_ms: int = int(os.getenv("BACKOFF_CAP_MS", 10000))
    task_ttl_seconds: float = float(os.getenv("TASK_TTL_SECONDS", 30 * 60))
    sweep_interval_seconds: float = float(os.getenv("SWEEP_INTERVAL_SECONDS", 5 * 60))
    max_stored_tasks: int = int(os.getenv("MAX_STORED_TASKS", 10000))
    callback_timeout_seconds: float = float(os.getenv("CALLBACK_TIMEOUT_SECONDS", 10))
    image_fetch_timeout_seconds: float = float(os.getenv("IMAGE_FETCH_TIMEOUT_SECONDS", 30))
    memory_limit_mb: int = int(os.getenv("MEMORY_LIMIT_MB", 512))
    http_max_connections: int = int(os.getenv("HTTP_MAX_CONNECTIONS", 200))
    http_max_keepalive: int = int(os.getenv("HTTP_MAX_KEEPALIVE", 100))

settings = Settings()
