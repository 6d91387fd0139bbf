"""애플리케이션 설정"""
from typing import Literal
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
import os


class Settings(BaseSettings):
    """애플리케이션 설정"""

    # 로깅
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    # 마켓 API 환경
    environment: Literal["production", "sandbox"] = Field(default="production")
    user_agent: str = Field(default="marketsync/1.0")

    # 요청/재시도 설정
    request_timeout: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=3, ge=1)
    retry_initial_delay: float = Field(default=1.0, ge=0)

    # 토큰 설정 (만료 직전 토큰은 만료로 간주)
    token_expiry_skew_seconds: int = Field(default=60, ge=0)

    # 동기화 기본값
    default_sync_interval: int = Field(default=60, gt=0)  # 분
    default_currency: str = Field(default="USD", min_length=3, max_length=3)

    model_config = SettingsConfigDict(
        env_prefix="MARKETSYNC_",
        # .env 파일이 있는 경우에만 읽기
        env_file=".env" if os.path.exists(".env") else None,
        case_sensitive=False,
        extra="ignore"
    )


# 전역 설정 인스턴스
settings = Settings()


def get_settings() -> Settings:
    """설정 인스턴스 반환"""
    return settings
