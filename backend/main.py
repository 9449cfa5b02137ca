"""FastAPI application"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.api import router
from db.database import init_db
from config import settings

# Настройка логирования
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle events"""
    logger.info("Starting PM2.5 Monitor Backend")
    await init_db()
    yield
    logger.info("Shutting down PM2.5 Monitor Backend")


app = FastAPI(
    title="PM2.5 Monitor API",
    description="Измерения, пространственная оценка и прогноз PM2.5",
    version="2.0.0",
    lifespan=lifespan
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies get the same tagged shape as domain failures"""
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"Invalid value for {field}: {first.get('msg', 'invalid input')}" if field else "Invalid request body"
    logger.warning(f"{request.url.path}: {message}")
    return JSONResponse(status_code=422, content={"success": False, "error": message})


# Routes
app.include_router(router, prefix="/api")


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "service": "pm25-monitor"}


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "service": "PM2.5 Monitor API",
        "version": "2.0.0",
        "docs": "/docs"
    }
