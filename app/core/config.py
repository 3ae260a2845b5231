import warnings
from typing import Annotated, Any, Literal

from pydantic import (
    AnyUrl,
    BeforeValidator,
    PostgresDsn,
    computed_field,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing_extensions import Self


def parse_cors(v: Any) -> list[str] | str:
    if isinstance(v, str) and not v.startswith("["):
        return [i.strip() for i in v.split(",") if i.strip()]
    elif isinstance(v, list | str):
        return v
    raise ValueError(v)


def parse_list(v: Any) -> list[str]:
    if isinstance(v, str):
        return [i.strip() for i in v.split(",") if i.strip()]
    return v


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )

    # Application
    PROJECT_NAME: str = "Exam Forge"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: Literal["local", "staging", "production"] = "local"
    LOG_LEVEL: str = "INFO"

    # CORS
    BACKEND_CORS_ORIGINS: Annotated[
        list[AnyUrl] | str, BeforeValidator(parse_cors)
    ] = []

    @computed_field
    @property
    def all_cors_origins(self) -> list[str]:
        return [str(origin).rstrip("/") for origin in self.BACKEND_CORS_ORIGINS]

    # Database
    DATABASE_URL: str | None = None  # Override entire connection string (supports SQLite)
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = "exam_forge"
    USE_SQLITE: bool = False

    @computed_field
    @property
    def SQLALCHEMY_DATABASE_URI(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        if self.USE_SQLITE or (self.ENVIRONMENT == "local" and not self.POSTGRES_PASSWORD):
            return "sqlite:///./exam_forge.db"
        return str(PostgresDsn.build(
            scheme="postgresql+psycopg",
            username=self.POSTGRES_USER,
            password=self.POSTGRES_PASSWORD,
            host=self.POSTGRES_SERVER,
            port=self.POSTGRES_PORT,
            path=self.POSTGRES_DB,
        ))

    # AI Providers (all OpenAI-compatible chat endpoints)
    OPENROUTER_API_KEY: str = ""
    OPENROUTER_BASE_URL: str = "https://openrouter.ai/api/v1"
    OPENROUTER_MODELS: Annotated[list[str] | str, BeforeValidator(parse_list)] = [
        "openai/gpt-4.1-mini",
        "google/gemini-2.5-pro",
    ]
    DMXAPI_API_KEY: str = ""
    DMXAPI_BASE_URL: str = "https://www.dmxapi.cn/v1"
    DMXAPI_MODELS: Annotated[list[str] | str, BeforeValidator(parse_list)] = [
        "gpt-4.1-mini",
        "gpt-5-mini",
        "gemini-2.5-pro",
    ]
    GOOGLE_API_KEY: str = ""
    GEMINI_BASE_URL: str = "https://generativelanguage.googleapis.com/v1beta/openai/"
    GEMINI_MODELS: Annotated[list[str] | str, BeforeValidator(parse_list)] = [
        "gemini-2.5-flash",
        "gemini-2.5-pro",
    ]

    # Model Configuration
    DEFAULT_PROVIDER: str = "openrouter"
    DEFAULT_MODEL: str = "openai/gpt-4.1-mini"
    DEFAULT_TEMPERATURE: float = 0.7
    DEFAULT_MAX_TOKENS: int = 2000
    LLM_TIMEOUT_SECONDS: int = 120  # Per provider call, independent of the task budget

    # Generation
    GENERATION_SLOT_MAX_ATTEMPTS: int = 3
    GENERATION_ATTEMPT_BUDGET_FACTOR: int = 2  # Global budget = requested * factor
    GENERATION_MAX_PARALLEL: int = 3
    GENERATION_MIN_QUALITY_SCORE: float = 60.0
    GENERATION_TASK_TIMEOUT_SECONDS: int = 900
    GENERATION_MAX_QUESTIONS: int = 50
    MATERIAL_EXCERPT_LENGTH: int = 2500
    MATERIAL_MIN_LENGTH: int = 100

    # Review
    REVIEW_PASS_SCORE: float = 70.0
    REVIEW_AUTO_SCREEN: bool = True  # Screen a task's questions when it finishes

    # Rate Limiting
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_STORAGE_URI: str = "memory://"  # Use Redis URI in production
    RATE_LIMIT_DEFAULT: str = "100/minute"
    RATE_LIMIT_GENERATION: str = "20/minute"  # Task creation fans out to many LLM calls
    RATE_LIMIT_REVIEW: str = "60/minute"

    # Security
    ALLOWED_HOSTS: list[str] = ["*"]  # Restrict in production

    def _check_default_secret(self, var_name: str, value: str | None) -> None:
        if value == "changethis":
            message = (
                f'The value of {var_name} is "changethis", '
                "for security, please change it, at least for deployments."
            )
            if self.ENVIRONMENT == "local":
                warnings.warn(message, stacklevel=1)
            else:
                raise ValueError(message)

    @model_validator(mode="after")
    def _enforce_non_default_secrets(self) -> Self:
        self._check_default_secret("POSTGRES_PASSWORD", self.POSTGRES_PASSWORD)
        return self

    @model_validator(mode="after")
    def _check_generation_limits(self) -> Self:
        if self.GENERATION_SLOT_MAX_ATTEMPTS < 1:
            raise ValueError("GENERATION_SLOT_MAX_ATTEMPTS must be at least 1")
        if self.GENERATION_MAX_PARALLEL < 1:
            raise ValueError("GENERATION_MAX_PARALLEL must be at least 1")
        return self


settings = Settings()  # type: ignore
