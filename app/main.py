from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from app.core.config import settings
from app.core.exceptions import ConsultationError
from app.core.locks import session_locks
from app.core.logger import logger
from app.middleware.log_middleware import LogMiddleware
from app.realtime.broker import shutdown_broker

@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await shutdown_broker()
    await session_locks.close()

app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    lifespan=lifespan
)

from fastapi.middleware.cors import CORSMiddleware

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(LogMiddleware)

@app.exception_handler(ConsultationError)
async def consultation_error_handler(request: Request, exc: ConsultationError):
    logger.warning(
        f"{exc.__class__.__name__} on {request.method} {request.url.path}: {exc.message}"
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "message": exc.message,
                "code": exc.error_code,
                "details": exc.details,
                "type": exc.__class__.__name__,
            }
        },
    )

@app.get("/")
async def root():
    return {"message": f"Welcome to {settings.PROJECT_NAME} API"}

from app.api.api import api_router
app.include_router(api_router, prefix=settings.API_V1_STR)
