"""Runtime settings."""

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="TURNRELAY_", env_file=".env", extra="ignore")

    app_name: str = "turnrelay"
    env: str = "dev"
    log_level: str = "info"
    # DEBUG 下是否打印完整请求正文；False 时只打 method/path/headers + body_size
    log_full_request_body: bool = False
    # 轮转日志文件；置空则只输出到 stderr
    log_file: str = "logs/turnrelay.log"
    log_file_max_bytes: int = 10 * 1024 * 1024
    log_file_backup_count: int = 10
    host: str = "127.0.0.1"
    port: int = 8787

    relay_route_path: str = "/api/turn_response"
    model: str = "gpt-4.1-nano-2025-04-14"
    openai_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("TURNRELAY_OPENAI_API_KEY", "OPENAI_API_KEY"),
    )

    upstream_base_url: str = "https://api.openai.com/v1"
    upstream_timeout_seconds: float = 60.0
    upstream_max_connections: int = 100
    upstream_max_keepalive_connections: int = 20


settings = Settings()
