import logging
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from config import settings
from database import SessionLocal, init_db
from errors import PipelineError
from orchestrator import cleanup_expired_imports
from routers import auth, imports

# ─── Logging ──────────────────────────────────────────────────────────────────

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("StatementImporter")

# ─── App ──────────────────────────────────────────────────────────────────────

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="Bank statement import pipeline: extract, reconcile, categorize and commit transactions",
)

# ─── CORS ─────────────────────────────────────────────────────────────────────

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ─── Error rendering ──────────────────────────────────────────────────────────

@app.exception_handler(PipelineError)
def pipeline_error_handler(request: Request, exc: PipelineError):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message})


@app.exception_handler(RequestValidationError)
def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    detail = errors[0].get("msg", "invalid input") if errors else "invalid input"
    return JSONResponse(status_code=400, content={"success": False, "error": f"Invalid request: {detail}"})


@app.exception_handler(StarletteHTTPException)
def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": str(exc.detail)})


# ─── Routers ──────────────────────────────────────────────────────────────────

app.include_router(auth.router, prefix=f"{settings.API_PREFIX}/auth", tags=["Authentication"])
app.include_router(imports.router, prefix=settings.API_PREFIX, tags=["Imports"])

# ─── Events ───────────────────────────────────────────────────────────────────

@app.on_event("startup")
def startup():
    logger.info("🔮 Statement Importer starting up...")
    init_db()
    logger.info("✅ Database initialized")
    logger.info(f"📂 Upload directory: {settings.UPLOAD_DIR}")
    db = SessionLocal()
    try:
        cleanup_expired_imports(db)
    finally:
        db.close()


@app.get("/health")
def health_check():
    return {"status": "healthy", "service": settings.PROJECT_NAME, "version": settings.VERSION}
