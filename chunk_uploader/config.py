from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "chunk-uploader"
    app_version: str = "dev"
    host: str = "0.0.0.0"
    port: int = 8000
    upload_protocol: str = "flow-js"
    storage_backend: str = "local"
    storage_root: str = "./data"
    disk_name: str = "local"
    s3_bucket: str = ""
    aws_region: str = "us-east-1"
    r2_bucket: str = ""
    r2_account_id: str = ""
    r2_access_key_id: str = ""
    r2_secret_access_key: str = ""
    r2_endpoint_url: str = ""
    chunks_directory: str = "chunks"
    merged_directory: str = "merged"
    claims_directory: str = "claims"
    merge_lock_backend: str = "store"
    merge_claim_ttl_seconds: int = 3600
    redis_url: str = "redis://localhost:6379/0"
    redis_lock_prefix: str = "chunk-uploader:merge"
    sweep_enabled: bool = False
    sweep_interval_seconds: int = 900
    stale_chunk_ttl_seconds: int = 86400
    tracing_enabled: bool = False
    tracing_service_name: str = "chunk-uploader"
    otlp_endpoint: str = "localhost:4317"
    otlp_insecure: bool = True


settings = Settings()
