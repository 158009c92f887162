import os, shlex, subprocess, secrets, asyncio
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

import logging
import sys

import structlog
import uvicorn
from structlog.contextvars import bind_contextvars, clear_contextvars
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import FileResponse, HTMLResponse, PlainTextResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from jinja2 import TemplateError
from starlette.datastructures import Headers, UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.types import ASGIApp, Message, Receive, Scope, Send


# names understood by both logging and uvicorn
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")
LOG_LEVEL_ALIASES = {"WARN": "WARNING", "FATAL": "CRITICAL"}


@dataclass
class Settings:
    HOST: str
    PORT: int
    UPLOAD_DIR: Path
    STATIC_ROOT: Path
    MAX_UPLOAD_MB: int
    FORM_OVERHEAD_MB: int
    FFMPEG_BIN: str
    SITE_NAME: str
    LOG_LEVEL: str
    LOG_FILE: Optional[Path]

    @classmethod
    def load(cls) -> "Settings":
        def env_path(name: str, default: str) -> Path:
            return Path(os.getenv(name, default))

        def env_int(name: str, default: int) -> int:
            return int(os.getenv(name, str(default)))

        port = env_int("PORT", 8080)
        if not (1 <= port <= 65535):
            raise ValueError("PORT must be 1-65535")

        max_upload_mb = env_int("MAX_UPLOAD_MB", 200)
        if max_upload_mb < 1:
            raise ValueError("MAX_UPLOAD_MB must be >= 1")

        overhead_mb = env_int("FORM_OVERHEAD_MB", 10)
        if overhead_mb < 0:
            raise ValueError("FORM_OVERHEAD_MB must be >= 0")

        log_level = os.getenv("LOG_LEVEL", "INFO").upper()
        log_level = LOG_LEVEL_ALIASES.get(log_level, log_level)
        if log_level not in LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}")

        log_file = os.getenv("LOG_FILE")

        return cls(
            HOST=os.getenv("HOST", "0.0.0.0"),
            PORT=port,
            UPLOAD_DIR=env_path("UPLOAD_DIR", "uploads"),
            STATIC_ROOT=env_path("STATIC_ROOT", "."),
            MAX_UPLOAD_MB=max_upload_mb,
            FORM_OVERHEAD_MB=overhead_mb,
            FFMPEG_BIN=os.getenv("FFMPEG_BIN", "ffmpeg"),
            SITE_NAME=os.getenv("SITE_NAME", "Stacking.app"),
            LOG_LEVEL=log_level,
            LOG_FILE=Path(log_file) if log_file else None,
        )


settings = Settings.load()

# --------- config ---------
UPLOAD_DIR = settings.UPLOAD_DIR.resolve()
UPLOAD_DIR.mkdir(parents=True, exist_ok=True)

STATIC_ROOT = settings.STATIC_ROOT.resolve()

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"
templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

MAX_UPLOAD_BYTES = settings.MAX_UPLOAD_MB * 1024 * 1024
# multipart framing and the other form fields ride on top of the file itself
MAX_REQUEST_BYTES = MAX_UPLOAD_BYTES + settings.FORM_OVERHEAD_MB * 1024 * 1024
TOO_LARGE_MESSAGE = f"file too large (limit ~{settings.MAX_UPLOAD_MB}MB)"
UPLOAD_CHUNK_SIZE = 1024 * 1024

FFMPEG_BIN = settings.FFMPEG_BIN
SOURCE_EXTENSION = ".mov"
UPLOAD_FIELD = "video"
FALLBACK_BASE_NAME = "video"
SUFFIX_BYTES = 3  # six hex characters

_FFMPEG_VERSION_CACHE: Optional[Dict[str, Optional[str]]] = None

REQUEST_ID_CTX: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


class UploadTooLarge(Exception):
    """Raised while receiving a request body that crossed the upload ceiling."""

    def __init__(self, received: int, limit: int) -> None:
        super().__init__(f"request body exceeded {limit} bytes ({received} received)")
        self.received = received
        self.limit = limit


class ConversionError(Exception):
    """The converter could not be started or did not finish cleanly."""


class UnsupportedFormatError(ConversionError):
    pass


@dataclass(frozen=True)
class Tool:
    slug: str
    target: str
    template: str
    title: str
    description: str

    @property
    def path(self) -> str:
        return f"/tools/{self.slug}"


TOOLS: Dict[str, Tool] = {
    "mov-to-mp4": Tool(
        slug="mov-to-mp4",
        target="mp4",
        template="mov_to_mp4.html",
        title=f"Convert MOV to MP4 | {settings.SITE_NAME}",
        description="Free online MOV to MP4 converter.",
    ),
    "mov-to-gif": Tool(
        slug="mov-to-gif",
        target="gif",
        template="mov_to_gif.html",
        title=f"Convert MOV to GIF | {settings.SITE_NAME}",
        description="Free online MOV to GIF converter.",
    ),
}
DEFAULT_TOOL = "mov-to-mp4"


# Setup logging
class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = REQUEST_ID_CTX.get(None) or "-"
        return True


log_formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s")
log_handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
if settings.LOG_FILE is not None:
    settings.LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
    log_handlers.append(logging.FileHandler(settings.LOG_FILE, encoding="utf-8"))
for handler in log_handlers:
    handler.addFilter(RequestIdFilter())
    handler.setFormatter(log_formatter)

log_level = getattr(logging, settings.LOG_LEVEL)
logging.basicConfig(level=log_level, handlers=log_handlers)

logger = logging.getLogger("movtools")

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(log_level),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=False,
)
struct_logger = structlog.get_logger("movtools")

# Log startup
logger.info("=" * 60)
logger.info("movtools starting...")
logger.info(f"UPLOAD_DIR: {UPLOAD_DIR}")
logger.info(f"STATIC_ROOT: {STATIC_ROOT}")
logger.info(f"MAX_UPLOAD_MB: {settings.MAX_UPLOAD_MB}")
logger.info(f"FFMPEG_BIN: {FFMPEG_BIN}")
logger.info("=" * 60)


# ---------- naming ----------
def sanitize(name: str) -> str:
    """Lower-case ``name``, turn spaces into dashes and keep only ``[a-z0-9_-]``."""
    name = name.lower().replace(" ", "-")
    return "".join(ch for ch in name if ("a" <= ch <= "z") or ("0" <= ch <= "9") or ch in "-_")


def unique_name(base: str) -> str:
    return f"{base}-{secrets.token_hex(SUFFIX_BYTES)}"


# ---------- upload ----------
def ensure_source_extension(filename: str) -> str:
    """Return ``filename`` without its ``.mov`` extension, rejecting anything else."""
    if not filename.lower().endswith(SOURCE_EXTENSION):
        logger.warning("Upload rejected due to extension: %s", filename)
        raise HTTPException(status_code=400, detail="only .mov files are allowed")
    return filename[: -len(SOURCE_EXTENSION)]


async def save_upload(upload: UploadFile) -> Tuple[Path, str]:
    """Persist ``upload`` under UPLOAD_DIR as ``<base>.mov``.

    Returns the written path and the generated base name. Nothing is removed
    if the copy fails part way through.
    """
    filename = upload.filename or ""
    stem = ensure_source_extension(filename)

    base = unique_name(sanitize(stem) or FALLBACK_BASE_NAME)
    full = UPLOAD_DIR / f"{base}{SOURCE_EXTENSION}"

    try:
        buffer = full.open("wb")
    except OSError as exc:
        logger.error("Failed to create upload %s: %s", full, exc)
        raise HTTPException(status_code=400, detail="could not create file on server") from exc

    total = 0
    with buffer:
        try:
            await upload.seek(0)
            while True:
                chunk = await upload.read(UPLOAD_CHUNK_SIZE)
                if not chunk:
                    break
                buffer.write(chunk)
                total += len(chunk)
        except OSError as exc:
            logger.error("Failed to persist upload %s: %s", filename, exc)
            raise HTTPException(status_code=400, detail="failed saving uploaded file") from exc

    logger.info("Saved upload %s as %s (%d bytes)", filename, full.name, total)
    struct_logger.info("upload_saved", filename=filename, stored_as=full.name, size_bytes=total)
    return full, base


# ---------- conversion ----------
def build_ffmpeg_command(input_path: Path, output_path: Path, target: str) -> List[str]:
    # -y: overwrite outputs without prompting
    cmd = [FFMPEG_BIN, "-y", "-i", str(input_path)]
    if target == "mp4":
        cmd += [
            "-vcodec", "libx264",
            "-preset", "veryfast",
            "-crf", "23",
            "-acodec", "aac",
            "-b:a", "128k",
            "-movflags", "+faststart",
        ]
    elif target == "gif":
        cmd += ["-vf", "fps=10,scale=480:-1:flags=lanczos"]
    else:
        raise UnsupportedFormatError("unsupported target format")
    cmd.append(str(output_path))
    return cmd


def run_ffmpeg(input_path: Path, output_path: Path, target: str) -> None:
    """Convert ``input_path`` into ``output_path`` and block until the converter exits."""
    cmd = build_ffmpeg_command(input_path, output_path, target)
    logger.info("Running converter: %s", shlex.join(cmd))
    try:
        result = subprocess.run(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=False,
        )
    except OSError as exc:
        logger.error("Failed to launch converter command %s: %s", cmd, exc)
        raise ConversionError(f"could not start {FFMPEG_BIN}: {exc}") from exc
    if result.returncode != 0:
        logger.error("Converter exited with status %s: %s", result.returncode, cmd)
        raise ConversionError(f"exit status {result.returncode}")


async def handle_upload_and_convert(request: Request, target: str) -> str:
    """Run the upload pipeline for one POST and return the output file name."""
    try:
        form = await request.form()
    except UploadTooLarge as exc:
        logger.warning("Upload exceeded max size: %s", exc)
        raise HTTPException(status_code=400, detail=TOO_LARGE_MESSAGE) from exc

    try:
        upload = form.get(UPLOAD_FIELD)
        # an empty file input still arrives as a part, just without a filename
        if not isinstance(upload, UploadFile) or not upload.filename:
            raise HTTPException(status_code=400, detail=f"missing file field '{UPLOAD_FIELD}'")
        input_path, base_name = await save_upload(upload)
    finally:
        await form.close()

    out_name = f"{base_name}.{target}"
    out_path = UPLOAD_DIR / out_name

    try:
        await asyncio.to_thread(run_ffmpeg, input_path, out_path, target)
    except ConversionError as exc:
        struct_logger.error("conversion_failed", source=input_path.name, target=target, reason=str(exc))
        raise HTTPException(status_code=400, detail=f"conversion failed: {exc}") from exc

    struct_logger.info("conversion_finished", source=input_path.name, output=out_name, target=target)
    return out_name


# ---------- rendering ----------
def render_tool(request: Request, tool: Tool, output_file: Optional[str] = None):
    context: Dict[str, Any] = {
        "title": tool.title,
        "description": tool.description,
        "year": datetime.now().year,
        "site_name": settings.SITE_NAME,
        "tool": tool,
        "tools": list(TOOLS.values()),
    }
    if output_file is not None:
        context["output_file"] = output_file
    try:
        return templates.TemplateResponse(request, tool.template, context)
    except TemplateError as exc:
        logger.error("Failed to render %s: %s", tool.template, exc)
        return PlainTextResponse(str(exc), status_code=500)


async def tool_page(request: Request, tool: Tool):
    if request.method == "GET":
        return render_tool(request, tool)
    output_file = await handle_upload_and_convert(request, tool.target)
    return render_tool(request, tool, output_file=output_file)


def ffmpeg_snapshot() -> Dict[str, Optional[str]]:
    global _FFMPEG_VERSION_CACHE
    if _FFMPEG_VERSION_CACHE is not None:
        return dict(_FFMPEG_VERSION_CACHE)
    try:
        result = subprocess.run(
            [FFMPEG_BIN, "-version"], capture_output=True, text=True, timeout=5
        )
        available = result.returncode == 0
        version_line = (result.stdout or "").splitlines()[0] if available and result.stdout else ""
        error = None if available else (result.stderr or "Unknown failure")
    except (OSError, subprocess.TimeoutExpired) as exc:
        available = False
        version_line = ""
        error = str(exc)
    snapshot = {"available": available, "version": version_line, "error": error}
    _FFMPEG_VERSION_CACHE = dict(snapshot)
    return snapshot


# ---------- app ----------
@asynccontextmanager
async def lifespan(app):
    UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
    # parse every page template once before serving
    for tool in TOOLS.values():
        templates.get_template(tool.template)
    logger.info("Loaded %d tool templates from %s", len(TOOLS), TEMPLATES_DIR)
    logger.info("FastAPI server is ready to accept requests")

    yield

    logger.info("FastAPI server is shutting down")


app = FastAPI(lifespan=lifespan)


class UploadLimitMiddleware:
    """Reject request bodies above ``max_body_bytes`` before they get parsed."""

    def __init__(self, app: ASGIApp, max_body_bytes: int) -> None:
        self.app = app
        self.max_body_bytes = max_body_bytes

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        header_value = Headers(scope=scope).get("content-length")
        if header_value:
            try:
                declared_length = int(header_value)
            except ValueError:
                logger.warning("Invalid content-length header: %s", header_value)
            else:
                if declared_length > self.max_body_bytes:
                    logger.warning(
                        "Request declared size %s exceeds max bytes %s",
                        declared_length,
                        self.max_body_bytes,
                    )
                    response = PlainTextResponse(TOO_LARGE_MESSAGE, status_code=400)
                    await response(scope, receive, send)
                    return

        received = 0

        async def limited_receive() -> Message:
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > self.max_body_bytes:
                    raise UploadTooLarge(received, self.max_body_bytes)
            return message

        await self.app(scope, limited_receive, send)


# innermost, so the responses it produces still pass the header middlewares below
app.add_middleware(UploadLimitMiddleware, max_body_bytes=MAX_REQUEST_BYTES)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid4().hex
    token = REQUEST_ID_CTX.set(request_id)
    bind_contextvars(request_id=request_id)
    try:
        response = await call_next(request)
        response.headers.setdefault("X-Request-ID", request_id)
        return response
    finally:
        clear_contextvars()
        REQUEST_ID_CTX.reset(token)


@app.middleware("http")
async def security_headers_middleware(request, call_next):
    response = await call_next(request)
    response.headers.setdefault(
        "Content-Security-Policy",
        "default-src 'self'; style-src 'self' 'unsafe-inline'; img-src 'self' data:; media-src 'self'",
    )
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    return response


@app.exception_handler(StarletteHTTPException)
async def plain_text_http_exception_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return PlainTextResponse(str(exc.detail), status_code=exc.status_code, headers=exc.headers)


# Serve converted files
app.mount("/uploads", StaticFiles(directory=str(UPLOAD_DIR)), name="uploads")


# ---------- pages ----------

@app.api_route("/tools/mov-to-mp4", methods=["GET", "POST"], response_class=HTMLResponse)
async def mov_to_mp4(request: Request):
    return await tool_page(request, TOOLS["mov-to-mp4"])


@app.api_route("/tools/mov-to-gif", methods=["GET", "POST"], response_class=HTMLResponse)
async def mov_to_gif(request: Request):
    return await tool_page(request, TOOLS["mov-to-gif"])


def _static_root_file(name: str, media_type: str) -> FileResponse:
    path = STATIC_ROOT / name
    if not path.is_file():
        raise HTTPException(status_code=404, detail="Not Found")
    return FileResponse(path, media_type=media_type)


@app.get("/robots.txt", include_in_schema=False)
def robots_txt():
    return _static_root_file("robots.txt", "text/plain")


@app.get("/sitemap.xml", include_in_schema=False)
def sitemap_xml():
    return _static_root_file("sitemap.xml", "application/xml")


@app.get("/health")
def health():
    logger.info("Health check requested")
    ffmpeg_info = ffmpeg_snapshot()
    writable = UPLOAD_DIR.is_dir() and os.access(UPLOAD_DIR, os.W_OK)
    return {
        "ok": bool(ffmpeg_info.get("available")) and writable,
        "ffmpeg": ffmpeg_info,
        "upload_dir": {"path": str(UPLOAD_DIR), "writable": writable},
    }


# registered last: "/" and every path not routed above land on the default tool
@app.get("/{path:path}", include_in_schema=False)
def root(path: str = ""):
    return RedirectResponse(url=TOOLS[DEFAULT_TOOL].path, status_code=302)


def run() -> None:
    logger.info("Listening on :%s", settings.PORT)
    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_level=settings.LOG_LEVEL.lower())


if __name__ == "__main__":
    run()
