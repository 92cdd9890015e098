#=================================================================
# catalog_sync/main_app.py
# FastAPI application entry-point.
#=================================================================

import logging, os

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from catalog_sync.logging_filters import install_on_handlers

# Public webhook (HMAC-signed, no basic auth)
from catalog_sync.webhooks.erp_webhook import router as erp_webhooks_router

# Operator API under /api/* (HTTP Basic)
from catalog_sync.routes import router as api_router

from catalog_sync.db import init_db
from catalog_sync.config import settings

# --- FastAPI instance ---
app = FastAPI(
    title="Catalog Sync",
    description="Keeps the storefront catalog reconciled with the ERP product listing.",
)

# --- Logging setup (console, INFO level) ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s | %(message)s"
)
logger = logging.getLogger("uvicorn.error")
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
install_on_handlers()

# --- CORS ---
origins = settings.CORS_ORIGINS
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------- Include routers ----------------
app.include_router(erp_webhooks_router)  # /webhooks/erp
app.include_router(api_router)           # /api/*

# Re-hosted media when the local blob backend is in use
if settings.BLOB_BACKEND == "local":
    os.makedirs(settings.BLOB_LOCAL_DIR, exist_ok=True)
    app.mount("/media", StaticFiles(directory=settings.BLOB_LOCAL_DIR), name="media")

# --- Root endpoint ---
@app.get("/")
async def home():
    return {"status": "running", "service": "Catalog Sync"}

# --- Global error handler (keeps full stack trace in logs) ---
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled error", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"detail": f"Sync failed: {str(exc)}"},
    )

@app.on_event("startup")
async def _startup():
    await init_db()
    for route in app.routes:
        methods = ",".join(sorted(getattr(route, "methods", None) or []))
        logger.info("route %s [%s]", route.path, methods)

#if __name__ == "__main__":
#    import uvicorn
#
#    uvicorn.run(app, host="0.0.0.0", port=8000)
