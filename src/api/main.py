from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from ..core.logging import setup_logging
from ..core.config import settings
from ..core.exceptions import InvoiceScannerError
from ..services.pipeline import DocumentPipeline
from ..services.token_vault import TokenVault
from .routers import accounting, health, invoice

logger = setup_logging()
app = FastAPI(title="Invoice Scanner API")

# Process-lifetime state, owned by the app and handed to routes via deps
app.state.token_vault = TokenVault.from_settings(settings)
app.state.document_pipeline = DocumentPipeline.from_settings(settings)


@app.exception_handler(InvoiceScannerError)
async def pipeline_exception_handler(request: Request, exc: InvoiceScannerError):
    logger.error(
        f"{request.method} {request.url.path} failed: {exc}",
        kind=exc.kind.value,
        http_status=exc.http_status,
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.error(f"Validation error: {exc.errors()}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"ok": False, "error": "Invalid request", "kind": "validation_error", "detail": jsonable_encoder(exc.errors())},
    )


# CORS_ORIGINS can be set in .env as comma-separated list
# Example: CORS_ORIGINS=http://localhost:5173,https://your-frontend.com
allowed_origins = [origin.strip() for origin in settings.cors_origins.split(",")]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(invoice.router)
app.include_router(accounting.router)
