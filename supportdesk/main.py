"""FastAPI application wiring for the support desk assistant.

- Loads ``.env`` before any module reads its settings.
- Configures logging, optional CORS for the admin UI, Prometheus metrics and
  per-client rate limiting.
- Mounts the chat, feedback, webhook and admin routers and exposes
  health/version probes.
"""

from dotenv import load_dotenv

load_dotenv()

import logging  # noqa: E402
import os  # noqa: E402

from fastapi import FastAPI  # noqa: E402
from fastapi.middleware.cors import CORSMiddleware  # noqa: E402
from prometheus_fastapi_instrumentator import Instrumentator  # noqa: E402
from slowapi import _rate_limit_exceeded_handler  # noqa: E402
from slowapi.errors import RateLimitExceeded  # noqa: E402
from slowapi.middleware import SlowAPIMiddleware  # noqa: E402

from .__version__ import __build_date__, __commit_sha__, __version__  # noqa: E402
from .app_logging import init_logging  # noqa: E402
from .ratelimit import limiter  # noqa: E402
from .routers import admin, chat, feedback_api, webhooks  # noqa: E402

logger = logging.getLogger(__name__)

app = FastAPI(title="Support Desk Assistant", version=__version__)
init_logging(app)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)
# Optional CORS for admin UI
admin_ui_origins = os.getenv("ADMIN_UI_ORIGINS")
if admin_ui_origins:
    origins = [o.strip() for o in admin_ui_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
app.include_router(chat.router)
app.include_router(feedback_api.router)
app.include_router(webhooks.router)
app.include_router(admin.router)

Instrumentator().instrument(app).expose(
    app, include_in_schema=False, endpoint="/api/metrics"
)


@app.get("/api/health")
async def health():
    """Liveness/readiness probe with a minimal JSON body."""
    return {"status": "ok"}


@app.get("/api/version")
async def version():
    return {
        "version": __version__,
        "build_date": __build_date__,
        "commit_sha": __commit_sha__,
    }
