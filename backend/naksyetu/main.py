"""
FastAPI application for the NaksYetu backend.
"""
import os
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables from local .env before other imports that read os.getenv
_ENV_PATH = Path(__file__).resolve().parent / '.env'
if _ENV_PATH.exists():
    load_dotenv(dotenv_path=_ENV_PATH, override=False)

import contextvars  # noqa: E402
import json  # noqa: E402
import logging  # noqa: E402
import time  # noqa: E402
import uuid  # noqa: E402
from contextlib import asynccontextmanager  # noqa: E402
from typing import Optional  # noqa: E402

from fastapi import FastAPI, Request  # noqa: E402
from fastapi.exceptions import RequestValidationError  # noqa: E402
from fastapi.middleware.cors import CORSMiddleware  # noqa: E402
from fastapi.openapi.docs import get_swagger_ui_html  # noqa: E402
from fastapi.responses import HTMLResponse, JSONResponse  # noqa: E402
from pymongo.errors import PyMongoError  # noqa: E402
from starlette.middleware.base import BaseHTTPMiddleware  # noqa: E402
from starlette.middleware.httpsredirect import HTTPSRedirectMiddleware  # noqa: E402
from starlette.middleware.trustedhost import TrustedHostMiddleware  # noqa: E402

from . import email_templates  # noqa: E402
from .db import close as close_mongo  # noqa: E402
from .db import connect as connect_to_mongo  # noqa: E402
from .logging_config import configure_logging  # noqa: E402
from .middleware.rate_limit import RedisRateLimit  # noqa: E402
from .middleware.security import CSRFMiddleware, SecurityHeadersMiddleware  # noqa: E402
from .routers import (admin, checkout, influencer, invitations, listings, notifications, organizer,  # noqa: E402
                      partners, promocodes, shop, shortlinks, site, users, verify)
from .settings import get_settings  # noqa: E402

# Context variables for request-scoped logging
_ctx_request_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("request_id", default=None)
_ctx_client_ip: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("client_ip", default=None)

# Install a LogRecord factory to automatically attach request context to LogRecords.
_original_factory = logging.getLogRecordFactory()


def _record_factory(*args, **kwargs):
    record = _original_factory(*args, **kwargs)
    rid = _ctx_request_id.get()
    cip = _ctx_client_ip.get()
    if rid is not None:
        record.request_id = rid
    if cip is not None:
        record.client_ip = cip
    return record


logging.setLogRecordFactory(_record_factory)

configure_logging()
settings = get_settings()


@asynccontextmanager
async def _lifespan(app: FastAPI):
    await connect_to_mongo()
    try:
        await email_templates.ensure_default_templates()
    except PyMongoError as exc:
        # templates fall back to plaintext bodies when missing
        logging.getLogger('email').warning('email.templates.seed_failed error=%s', exc)
    try:
        yield
    finally:
        await close_mongo()


_docs_disabled = os.getenv('DISABLE_DOCS', '0') == '1'
app = FastAPI(title=settings.app_name,
              debug=settings.debug,
              version="1.0.0",
              root_path=os.getenv('BACKEND_ROOT_PATH', ''),
              docs_url=None,
              redoc_url=None if _docs_disabled else '/redoc',
              openapi_url=None if _docs_disabled else '/openapi.json',
              lifespan=_lifespan,
              redirect_slashes=False)


######## Structured Logging & Request ID Middleware ########
class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get('X-Request-ID', str(uuid.uuid4()))
        xff = request.headers.get('X-Forwarded-For')
        if xff:
            client_ip = xff.split(',')[0].strip()
        else:
            # request.client may be None in some test contexts
            client = getattr(request, 'client', None)
            client_ip = client.host if client else None
        request.state.request_id = request_id
        request.state.client_ip = client_ip
        _ctx_request_id.set(request_id)
        _ctx_client_ip.set(client_ip)
        start = time.time()
        logger = logging.getLogger('request')
        logger.info('request.start method=%s path=%s', request.method, request.url.path)
        try:
            response = await call_next(request)
        except Exception:
            logger.exception('request.error')
            raise
        duration_ms = int((time.time() - start) * 1000)
        response.headers['X-Request-ID'] = request_id
        logger.info('request.end status=%s dur_ms=%s', response.status_code, duration_ms)
        return response


######## Global Exception Handlers ########

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=422, content={
        'error': 'validation_error',
        'detail': json.loads(json.dumps(exc.errors(), default=str)),
        'request_id': getattr(request.state, 'request_id', None),
    })


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logging.getLogger('request').exception('unhandled exception rid=%s', getattr(request.state, 'request_id', None))
    return JSONResponse(status_code=500, content={
        'error': 'internal_server_error',
        'detail': 'An unexpected error occurred',
        'request_id': getattr(request.state, 'request_id', None),
    })


######## Docs ########
# Swagger UI sends cookies and copies the CSRF cookie into X-CSRF-Token so
# cookie-authenticated calls can be tried from /docs.
_SWAGGER_CSRF_JS = """
window.onload = function() {
    window.ui = SwaggerUIBundle({
        url: %s,
        dom_id: '#swagger-ui',
        presets: [SwaggerUIBundle.presets.apis, SwaggerUIStandalonePreset],
        layout: 'StandaloneLayout',
        requestInterceptor: (req) => {
            req.credentials = 'include';
            const getCookie = (name) => document.cookie.split('; ').reduce((r, v) => {
                const parts = v.split('='); return parts[0] === name ? decodeURIComponent(parts[1]) : r
            }, '');
            const csrf = getCookie('__Host-csrf_token') || getCookie('csrf_token');
            if (csrf && ['POST','PUT','PATCH','DELETE'].includes(req.method)) {
                req.headers['X-CSRF-Token'] = csrf;
            }
            return req;
        }
    })
}
"""


if not _docs_disabled:
    @app.get('/docs', include_in_schema=False)
    async def swagger_ui(request: Request):
        root_path = (request.scope.get('root_path') or '').rstrip('/')
        openapi_url = f"{root_path}{app.openapi_url}"
        resp = get_swagger_ui_html(openapi_url=openapi_url, title=app.title + ' - Swagger UI')
        content = resp.body.decode(errors="ignore").replace(
            "</body>", f"<script>{_SWAGGER_CSRF_JS % json.dumps(openapi_url)}</script></body>",
        )
        return HTMLResponse(content=content, status_code=resp.status_code)


######## Middleware ########
# Starlette runs the last added middleware first.

if settings.allowed_origins.strip() == '*':
    origins = ["*"]
else:
    origins = [o.strip() for o in settings.allowed_origins.split(',') if o.strip()]

# Browsers reject wildcard origins with credentials
allow_credentials = settings.cors_allow_credentials and origins != ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)
if settings.enforce_https:
    # behind a proxy, ensure X-Forwarded-Proto is set
    app.add_middleware(HTTPSRedirectMiddleware)
app.add_middleware(TrustedHostMiddleware,
                   allowed_hosts=[h.strip() for h in os.getenv('ALLOWED_HOSTS', '*').split(',') if h.strip()])
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(CSRFMiddleware)
app.add_middleware(RedisRateLimit, max_requests=300, window_sec=60)
app.add_middleware(RequestIDMiddleware)


######## Routers ########

# users router at the root so /register, /login, /profile exist
app.include_router(users.router, prefix="", tags=["users"])
app.include_router(site.router, prefix="", tags=["site"])
app.include_router(listings.router, prefix="/listings", tags=["listings"])
app.include_router(organizer.router, prefix="/organizer", tags=["organizer"])
app.include_router(influencer.router, prefix="/influencer", tags=["influencer"])
app.include_router(promocodes.router, prefix="/promocodes", tags=["promocodes"])
app.include_router(checkout.router, prefix="", tags=["checkout"])
app.include_router(invitations.router, prefix="/invitations", tags=["invitations"])
app.include_router(shortlinks.router, prefix="", tags=["shortlinks"])
app.include_router(verify.router, prefix="/verify", tags=["verify"])
app.include_router(notifications.router, prefix="/notifications", tags=["notifications"])
app.include_router(partners.router, prefix="", tags=["partners"])
app.include_router(shop.router, prefix="/shop", tags=["shop"])
app.include_router(admin.router, prefix="/admin", tags=["admin"])


# Fast healthcheck (no DB access)
@app.get('/health', tags=["health"], include_in_schema=False)
async def health():
    return {"status": "ok"}
