import os
import re
import hmac
import json
import time
import uuid
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import HTTPException as FastAPIHTTPException
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from fund_parser import ExtractionError, extract_funds
from fund_store import FundStore, StorageError


# -----------------------------------------------------------------------------
# Logging (JSON lines)
# -----------------------------------------------------------------------------

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=LOG_LEVEL, format="%(message)s")
logger = logging.getLogger("fund-perf-ingest")


def _log(event: str, level: int = logging.INFO, **fields: Any) -> None:
    payload = {"ts": datetime.now(timezone.utc).isoformat(), "event": event, **fields}
    try:
        logger.log(level, json.dumps(payload, default=str))
    except Exception:
        logger.log(level, f"{event} | {fields}")


# -----------------------------------------------------------------------------
# Config
# -----------------------------------------------------------------------------

DEFAULT_API_KEY = "your-secret-api-key"
MAX_FILE_SIZE = 512 * 1024


class ConfigError(Exception):
    """Raised for invalid environment configuration."""


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"Invalid {name} value: expected integer, got '{raw}'") from e


@dataclass(frozen=True)
class Settings:
    api_key: str = DEFAULT_API_KEY
    port: int = 8089
    database: str = "./funds.db"
    max_file_size: int = MAX_FILE_SIZE

    @classmethod
    def from_env(cls) -> "Settings":
        api_key = os.getenv("API_KEY", DEFAULT_API_KEY).strip()
        if not api_key:
            raise ConfigError("API_KEY is set but empty")
        return cls(
            api_key=api_key,
            port=_env_int("PORT", 8089),
            # DATABASE_URL (postgresql://...) wins over the SQLite file path
            database=os.getenv("DATABASE_URL") or os.getenv("DB_PATH", "./funds.db"),
            max_file_size=_env_int("MAX_FILE_SIZE", MAX_FILE_SIZE),
        )


@dataclass(frozen=True)
class IngestContext:
    """Built once at startup, shared by every request."""

    settings: Settings
    store: FundStore


def get_context(request: Request) -> IngestContext:
    return request.app.state.ctx


def _request_context(request: Request) -> Dict[str, Any]:
    return {
        "request_id": getattr(request.state, "request_id", None),
        "remote_addr": request.client.host if request.client else None,
        "method": request.method,
        "path": str(request.url.path),
    }


# -----------------------------------------------------------------------------
# Upload helpers
# -----------------------------------------------------------------------------

_UPLOAD_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def parse_upload_date(value: Optional[str]) -> datetime:
    """
    Snapshot date for the upload. Missing/blank means "now" (UTC).

    Raises:
        ValueError: value is not a YYYY-MM-DD calendar date.
    """
    if value is None or value == "":
        return datetime.now(timezone.utc).replace(microsecond=0)
    if not _UPLOAD_DATE_RE.match(value):
        raise ValueError(f"invalid date: {value!r}")
    return datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=timezone.utc)


def _require_api_key(ctx: IngestContext, x_api_key: Optional[str], log_ctx: Dict[str, Any]) -> None:
    if not x_api_key or not hmac.compare_digest(x_api_key.encode(), ctx.settings.api_key.encode()):
        _log("upload.unauthorized", level=logging.WARNING, **log_ctx)
        raise FastAPIHTTPException(status_code=401, detail="Unauthorized")


# -----------------------------------------------------------------------------
# App
# -----------------------------------------------------------------------------

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    ctx = IngestContext(settings=settings, store=FundStore(settings.database))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.api_key == DEFAULT_API_KEY:
            _log(
                "config.default_api_key",
                level=logging.WARNING,
                message="using default API key, consider setting API_KEY environment variable",
            )
        ctx.store.init_schema()
        _log("server.starting", port=settings.port, database=settings.database)
        yield

    app = FastAPI(title="fund-perf-ingest", lifespan=lifespan)
    app.state.ctx = ctx

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex
        request.state.request_id = request_id
        start = time.time()
        try:
            response = await call_next(request)
        except Exception as e:
            _log("request.unhandled_exception", level=logging.ERROR, error=str(e), **_request_context(request))
            response = PlainTextResponse("Internal Server Error", status_code=500)

        response.headers["X-Request-Id"] = request_id
        response.headers["X-Elapsed-Ms"] = str(int((time.time() - start) * 1000))
        return response

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        status = int(exc.status_code)
        message = str(exc.detail) if exc.detail else "error"
        _log(
            "request.http_exception",
            level=logging.ERROR if status >= 500 else logging.WARNING,
            status=status,
            message=message,
            **_request_context(request),
        )
        return PlainTextResponse(message, status_code=status, headers=getattr(exc, "headers", None))

    @app.get("/health")
    def health(ctx: IngestContext = Depends(get_context)):
        try:
            ctx.store.ping()
        except StorageError as e:
            _log("health.failed", level=logging.ERROR, error=str(e))
            raise FastAPIHTTPException(status_code=503, detail="Database connection failed")
        return PlainTextResponse("OK")

    @app.post("/upload")
    async def upload(
        request: Request,
        ctx: IngestContext = Depends(get_context),
        x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    ):
        log_ctx = _request_context(request)

        _require_api_key(ctx, x_api_key, log_ctx)
        _log("upload.started", **log_ctx)

        content_type = request.headers.get("content-type", "")
        if not content_type.startswith("multipart/form-data"):
            raise FastAPIHTTPException(status_code=400, detail="Invalid request format")
        try:
            form = await request.form()
        except StarletteHTTPException as e:
            _log("upload.bad_form", level=logging.WARNING, error=str(e.detail), **log_ctx)
            raise FastAPIHTTPException(status_code=400, detail="Invalid request format")

        upload_file = form.get("file")
        if not isinstance(upload_file, UploadFile):
            _log("upload.missing_file", level=logging.WARNING, **log_ctx)
            raise FastAPIHTTPException(status_code=400, detail="Invalid file upload")

        date_value = form.get("date")
        try:
            if date_value is not None and not isinstance(date_value, str):
                raise ValueError("date must be a plain form field")
            upload_date = parse_upload_date(date_value)
        except ValueError as e:
            _log("upload.bad_date", level=logging.WARNING, date=date_value, error=str(e), **log_ctx)
            raise FastAPIHTTPException(status_code=400, detail="Invalid date format. Please use YYYY-MM-DD")

        max_size = ctx.settings.max_file_size
        data = await upload_file.read(max_size + 1)
        log_ctx.update(
            filename=upload_file.filename,
            filesize=upload_file.size if upload_file.size is not None else len(data),
            upload_date=upload_date.date().isoformat(),
        )
        _log("upload.received", **log_ctx)

        if len(data) > max_size:
            _log("upload.too_large", level=logging.WARNING, max_size=max_size, **log_ctx)
            raise FastAPIHTTPException(status_code=413, detail="File too large")

        _log("upload.parse_started", **log_ctx)
        try:
            funds = await run_in_threadpool(extract_funds, data, upload_date)
        except ExtractionError as e:
            _log("upload.parse_failed", level=logging.ERROR, error=str(e), **log_ctx)
            raise FastAPIHTTPException(status_code=500, detail=f"Failed to parse HTML: {e}")
        _log("upload.parse_completed", fund_count=len(funds), **log_ctx)

        if not funds:
            _log("upload.no_funds", level=logging.WARNING, **log_ctx)
            raise FastAPIHTTPException(status_code=400, detail="No funds found in the provided HTML")

        try:
            await run_in_threadpool(ctx.store.store_funds, funds)
        except StorageError as e:
            _log("upload.store_failed", level=logging.ERROR, error=str(e), **log_ctx)
            raise FastAPIHTTPException(status_code=500, detail=f"Failed to store funds in database: {e}")

        _log("upload.completed", fund_count=len(funds), stored_in_db=True, **log_ctx)
        return JSONResponse([f.to_json() for f in funds])

    return app
