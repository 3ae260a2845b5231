"""
Provider Routes.

Inspect configured AI providers and switch the default used by new tasks.
"""
from fastapi import APIRouter
from pydantic import BaseModel, Field

from app.api.deps import ProviderManagerDep

router = APIRouter()


class ProviderInfo(BaseModel):
    key: str
    display_name: str
    models: list[str]
    configured: bool
    implementation: str


class ProviderStatus(BaseModel):
    available: bool
    provider: str
    model: str
    has_api_key: bool
    message: str


class ProviderSelectRequest(BaseModel):
    provider_key: str = Field(description="Provider key, e.g. 'openrouter'")
    model_key: str | None = Field(default=None, description="Model id; defaults to the provider's first model")

    model_config = {
        "json_schema_extra": {
            "examples": [{"provider_key": "dmxapi", "model_key": "gpt-4.1-mini"}]
        }
    }


@router.get("/", response_model=list[ProviderInfo])
async def list_providers(manager: ProviderManagerDep) -> list[ProviderInfo]:
    """Configured providers, their models and whether credentials are set."""
    return [ProviderInfo(**p) for p in manager.list_providers()]


@router.get("/status", response_model=ProviderStatus)
async def get_provider_status(manager: ProviderManagerDep) -> ProviderStatus:
    """The provider and model new tasks will use."""
    return ProviderStatus(**manager.status())


@router.post("/select", response_model=ProviderStatus)
async def select_provider(body: ProviderSelectRequest, manager: ProviderManagerDep) -> ProviderStatus:
    """
    Switch the default provider/model.

    Only tasks created after this call are affected; running tasks keep the
    configuration they started with.
    """
    manager.select_model(body.provider_key, body.model_key)
    return ProviderStatus(**manager.status())
