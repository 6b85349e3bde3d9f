from fastapi import FastAPI
from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from escrow.api.routes import router
from escrow.api.callback_routes import router as callback_router
from escrow.api.cron_routes import router as cron_router
from escrow.api.admin_routes import router as admin_router
from escrow.core.errors import EscrowError
from escrow.observability.logging import log
from escrow.settings import settings

app = FastAPI(title="Escrow Payments API")

# Browser clients call initialize/verify directly; restricted per environment.
origins = [x.strip() for x in settings.CORS_ORIGINS.split(",") if x.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)
app.include_router(callback_router)
app.include_router(cron_router)
app.include_router(admin_router)


@app.get("/")
def root():
    return {
        "status": "ok",
        "message": "Escrow API is running. Use /health, POST /api/escrow/initialize and the provider callbacks.",
    }


@app.get("/health")
def health():
    return {
        "status": "ok",
        "storeBackend": settings.STORE_BACKEND,
        "defaultProvider": settings.DEFAULT_PROVIDER,
        "autoReleaseGraceDays": settings.AUTO_RELEASE_GRACE_DAYS,
        "autoReleaseCadenceHours": settings.AUTO_RELEASE_CADENCE_HOURS,
    }


@app.exception_handler(EscrowError)
async def escrow_error_handler(request: Request, exc: EscrowError):
    log(event="request_failed", path=request.url.path, status=exc.status_code, error=exc.code,
        message=exc.message, **{k: v for k, v in exc.context.items() if k in ("reference", "engagementId")})
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"error": "validation_error", "message": "Malformed request body"})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    # Never leak internals to callers; the log line carries the detail.
    log(event="request_crashed", path=request.url.path, errorType=type(exc).__name__, error=str(exc)[:500])
    return JSONResponse(
        status_code=500,
        content={"error": "internal_error", "message": "Something went wrong. Please try again."},
    )
