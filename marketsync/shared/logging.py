"""구조화된 로깅 유틸리티"""
import logging
import logging.config
from typing import Optional
import sys

from marketsync.shared.config import get_settings

_configured = False


def _configure(level: str) -> None:
    """패키지 로거 설정 (프로세스당 1회)"""
    global _configured

    log_config = {
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {
            'simple': {
                'format': get_settings().log_format
            }
        },
        'handlers': {
            'console': {
                'class': 'logging.StreamHandler',
                'formatter': 'simple',
                'stream': sys.stdout
            }
        },
        'loggers': {
            'marketsync': {
                'handlers': ['console'],
                'level': level,
                'propagate': False
            }
        }
    }

    logging.config.dictConfig(log_config)
    _configured = True


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """로거 인스턴스 반환"""
    if not _configured:
        _configure((level or get_settings().log_level).upper())

    logger = logging.getLogger(name)
    if level:
        logger.setLevel(level.upper())
    return logger


def log_marketplace_operation(
    logger: logging.Logger,
    marketplace: str,
    operation: str,
    **details
) -> None:
    """마켓 작업 로그"""
    log_data = {
        'marketplace': marketplace,
        'operation': operation,
    }
    if details:
        log_data['details'] = details

    logger.info(f"Marketplace operation: {marketplace}.{operation}", extra=log_data)


def log_api_request(logger: logging.Logger, method: str, endpoint: str, status_code: int, duration: float):
    """API 요청 로그"""
    log_data = {
        'http_method': method,
        'endpoint': endpoint,
        'status_code': status_code,
        'duration_ms': duration * 1000
    }

    logger.debug(f"API Request: {method} {endpoint} - {status_code}", extra=log_data)
