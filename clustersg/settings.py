from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    aws_region: str = "us-east-1"
    aws_role_arn: str = ""
    aws_external_id: str = ""
    aws_role_session_name: str = "clustersg"

    # botocore client behaviour; retries are left to the caller
    aws_connect_timeout: int = 10
    aws_read_timeout: int = 30
    aws_max_attempts: int = 1


@lru_cache
def get_settings() -> Settings:
    return Settings()
