from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TASKCLIENT_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    app_name: str = "taskclient"
    app_version: str = "dev"
    api_base_url: str = "https://a.wunderlist.com/api/v1/"
    access_token: str = ""
    client_id: str = ""
    request_timeout_seconds: float = 30.0
    connect_timeout_seconds: float = 10.0
    part_upload_timeout_seconds: float = 300.0
    storage_root: str = "."
    tracing_enabled: bool = False
    tracing_service_name: str = "taskclient"
    otlp_endpoint: str = "localhost:4317"
    otlp_insecure: bool = True


settings = Settings()
