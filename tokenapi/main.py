import logging

from dotenv import load_dotenv
from fastapi import FastAPI
from mangum import Mangum
from starlette.middleware.cors import CORSMiddleware

from tokenapi import containers
from tokenapi.config import settings
from tokenapi.core.exception_handlers import register_exception_handlers
from tokenapi.core.logging_middleware import LoggingMiddleware
from tokenapi.logging_config import setup_logging
from tokenapi.routers import (
    admin_router,
    cron_router,
    health_router,
    payment_router,
    referral_router,
    subscription_router,
    token_router,
)

load_dotenv("tokenapi/.env")
setup_logging(settings.LOG_LEVEL, json_logs=settings.ENVIRONMENT != "development")
logger = logging.getLogger("tokenapi")


def create_app() -> FastAPI:
    app = FastAPI(title=settings.APP_NAME, debug=settings.DEBUG)
    app.container = containers.Container()  # type: ignore

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(LoggingMiddleware)

    register_exception_handlers(app)

    app.include_router(health_router.router)
    for module in (
        payment_router,
        token_router,
        subscription_router,
        referral_router,
        cron_router,
        admin_router,
    ):
        app.include_router(module.router, prefix=settings.API_V1_STR)

    missing = {
        name.value: gateway.missing_configuration()
        for name, gateway in app.container.gateways.all().items()  # type: ignore
    }
    for name, keys in missing.items():
        if keys:
            logger.warning(f"Payment gateway {name} is missing configuration: {', '.join(keys)}")

    return app


app = create_app()

handler = Mangum(app)
