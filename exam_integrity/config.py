"""
Engine configuration.

Values come from the environment (or a local .env file). The severity policy
table can be swapped per deployment through SEVERITY_POLICY_FILE without a
code change.
"""
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Configuration for the exam integrity service."""

    APP_NAME: str = "Exam Session & Integrity Engine"

    # Storage
    DATABASE_URL: str = "sqlite:///./exam_integrity.db"
    DATABASE_ECHO: bool = False

    # Signed cookie sessions
    SESSION_SECRET: str = "CHANGE_ME_TO_A_RANDOM_SECRET"

    # Integrity policy
    SEVERITY_POLICY_FILE: Optional[str] = None
    INVALIDATION_MIN_SEVERITY: str = "critical"

    # Attempt lifecycle
    SUBMISSION_GRACE_MINUTES: int = 2  # network latency allowance on submit
    # Score objective questions as soon as an attempt is submitted
    AUTO_GRADE_ON_SUBMIT: bool = False

    # Enrollment roster compare-and-swap attempts before giving up
    ENROLLMENT_CAS_RETRIES: int = 5

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
