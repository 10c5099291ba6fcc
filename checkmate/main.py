import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI
from google import genai
from pydantic_settings import BaseSettings, SettingsConfigDict

from checkmate.facades.replicate import make_replicate_facade
from checkmate.middlewares.logging import JsonLoggingMiddleware
from checkmate.routers.analysis import make_analysis_router
from checkmate.routers.images import make_images_router
from checkmate.routers.usage import make_usage_router
from checkmate.services.analysis import AnalysisService, make_analysis_service
from checkmate.services.poller import make_prediction_poller
from checkmate.services.retry import RetryPolicy
from checkmate.services.usage import make_usage_limiter
from checkmate.stores.kv import KVStore, RedisKVStore, make_kv_store


# ------------------ Settings ------------------
class Settings(BaseSettings):
    # ================= App =================
    APP_TITLE: str = "Content Checkmate"
    APP_HOST: str = "0.0.0.0"
    APP_PORT: int = 8000
    APP_RELOAD: bool = False
    LOG_LEVEL: str = "INFO"

    # ================= Gemini =================
    GEMINI_API_KEY: str = ""
    ANALYSIS_MODEL: str = "gemini-2.5-flash"
    AI_DETECTION_MODEL: str = "gemini-2.5-flash"
    FIX_PROMPT_MODEL: str = "gemini-2.0-flash"
    IMAGE_GEN_MODEL: str = "gemini-2.5-flash-image"

    # ================= Replicate =================
    REPLICATE_API_TOKEN: str = ""
    REPLICATE_BASE_URL: str = "https://api.replicate.com"
    FLUX_MODEL: str = "flux-kontext-pro"
    HTTP_TIMEOUT_SECONDS: float = 30.0
    POLL_MAX_ATTEMPTS: int = 60
    POLL_INTERVAL_SECONDS: float = 3.0

    # ================= Retry =================
    RETRY_MAX_RETRIES: int = 3
    RETRY_BASE_DELAY_SECONDS: float = 1.0
    RETRY_MULTIPLIER: float = 2.0

    # ================= Usage limits =================
    STORE_BACKEND: str = "memory"
    REDIS_URL: str = "redis://localhost:6379/0"
    USAGE_KEY_TTL_SECONDS: int = 2 * 24 * 60 * 60
    PER_CALLER_DAILY_LIMIT: int = 5
    GLOBAL_DAILY_LIMIT: int = 100

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )


# ------------------ Helper ------------------
def get_settings(env_file: str = ".env") -> Settings:
    env_path = Path(env_file)
    if env_path.exists():
        logging.getLogger(__name__).info(f"Loading configuration from {env_path}")
        return Settings(_env_file=env_path)
    return Settings()


def make_genai_client(settings: Settings) -> Optional[genai.Client]:
    if not settings.GEMINI_API_KEY:
        return None
    return genai.Client(api_key=settings.GEMINI_API_KEY)


# ------------------ App Factory ------------------
def create_app(
    settings: Settings,
    store: Optional[KVStore] = None,
    genai_client: Optional[genai.Client] = None,
    http_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    log = logging.getLogger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # ---------- STARTUP ----------
        usage_store = store or make_kv_store(
            settings.STORE_BACKEND,
            redis_url=settings.REDIS_URL,
            ttl_seconds=settings.USAGE_KEY_TTL_SECONDS,
        )
        usage_limiter = make_usage_limiter(
            usage_store,
            per_caller_limit=settings.PER_CALLER_DAILY_LIMIT,
            global_limit=settings.GLOBAL_DAILY_LIMIT,
        )
        retry_policy = RetryPolicy(
            max_retries=settings.RETRY_MAX_RETRIES,
            base_delay=settings.RETRY_BASE_DELAY_SECONDS,
            multiplier=settings.RETRY_MULTIPLIER,
        )

        client = genai_client or make_genai_client(settings)
        analysis_service: Optional[AnalysisService] = None
        if client is None:
            log.warning("GEMINI_API_KEY is not set, analysis endpoints are disabled")
        else:
            analysis_service = make_analysis_service(
                client,
                analysis_model=settings.ANALYSIS_MODEL,
                detection_model=settings.AI_DETECTION_MODEL,
                fix_prompt_model=settings.FIX_PROMPT_MODEL,
                image_model=settings.IMAGE_GEN_MODEL,
                retry_policy=retry_policy,
            )

        async with httpx.AsyncClient(
            timeout=settings.HTTP_TIMEOUT_SECONDS, transport=http_transport
        ) as http_client:
            facade = make_replicate_facade(
                http_client,
                api_token=settings.REPLICATE_API_TOKEN,
                base_url=settings.REPLICATE_BASE_URL,
            )
            poller = make_prediction_poller(
                facade,
                max_attempts=settings.POLL_MAX_ATTEMPTS,
                poll_interval=settings.POLL_INTERVAL_SECONDS,
                retry_policy=retry_policy,
            )

            app.state.usage_limiter = usage_limiter
            app.include_router(make_usage_router(usage_limiter))
            app.include_router(make_analysis_router(analysis_service, usage_limiter))
            app.include_router(
                make_images_router(poller, usage_limiter, default_model=settings.FLUX_MODEL)
            )
            log.info(f"[*] {settings.APP_TITLE} started (store={settings.STORE_BACKEND})")

            try:
                yield
            finally:
                # ---------- SHUTDOWN ----------
                if isinstance(usage_store, RedisKVStore) and store is None:
                    await usage_store.close()
                log.info(f"[*] {settings.APP_TITLE} stopped")

    app = FastAPI(title=settings.APP_TITLE, lifespan=lifespan)
    app.add_middleware(JsonLoggingMiddleware)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


# ------------------ Uvicorn Runner ------------------
def run_uvicorn(app: FastAPI, settings: Settings):
    uvicorn.run(
        app,
        host=settings.APP_HOST,
        port=settings.APP_PORT,
        log_level=settings.LOG_LEVEL.lower(),
        reload=settings.APP_RELOAD,
    )


# ------------------ Main ------------------
def main():
    settings = get_settings()
    app = create_app(settings)
    run_uvicorn(app, settings)


if __name__ == "__main__":
    main()
