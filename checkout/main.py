from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import settings
from .db import init_db
from .errors import CheckoutError
from .logging_config import setup_logging
from .routers import orders, payments

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info("checkout_service_starting", env=settings.env)
    # init db tables if not using migrations
    await init_db()
    yield
    logger.info("checkout_service_stopped")


app = FastAPI(title="Storefront Checkout Service", lifespan=lifespan)

# CORS - allow your app domain(s)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # change to your frontend domains in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CheckoutError)
async def checkout_error_handler(request: Request, exc: CheckoutError):
    logger.info(
        "request_failed",
        path=request.url.path,
        code=exc.code,
        kind=exc.kind.value,
        status_code=exc.http_status,
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


app.include_router(orders.router)
app.include_router(payments.router)


@app.get("/health")
async def health():
    return {"status": "healthy", "service": settings.app_name}


if __name__ == "__main__":
    uvicorn.run(
        "checkout.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=not settings.is_production,
    )
