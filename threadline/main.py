import os

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from threadline.config import get_settings
from threadline.dependencies import close_components, create_components
from threadline.logging_config import get_logger, setup_logging
from threadline.routers import onboarding, webhook

_settings = get_settings()
setup_logging(_settings.log_level, json_output=not _settings.debug)

logger = get_logger("main")

app = FastAPI(
    title="Threadline",
    description="Conversational gateway between a messaging provider and an LLM agent",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(onboarding.router)


@app.on_event("startup")
async def start_components() -> None:
    # Tests install their own components before the client starts.
    if getattr(app.state, "components", None) is not None:
        return
    app.state.components = await create_components(get_settings())
    logger.info(
        "Threadline started",
        extra={"context": {"repository": app.state.components.repository.backend}},
    )


@app.on_event("shutdown")
async def stop_components() -> None:
    components = getattr(app.state, "components", None)
    if components is None:
        return
    await close_components(components)
    app.state.components = None


@app.get("/health")
async def health(request: Request):
    components = request.app.state.components
    return {"status": "ok", "repository": components.repository.backend}
