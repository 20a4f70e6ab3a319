import logging
import secrets
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import HTMLResponse, JSONResponse, Response
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from fastapi.templating import Jinja2Templates
from jinja2 import TemplateError
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest

from memprobe.agent import Agent
from memprobe.config import Config
from memprobe.metrics import alloc_gauge, build_registry
from memprobe.scheduler import METRICS_PERIOD
from memprobe.stats import capture

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "dashboard"
REALM = "restricted"

security = HTTPBasic(realm=REALM, auto_error=False)


def _matches(given: str, expected: str) -> bool:
    return secrets.compare_digest(given.encode("utf-8"), expected.encode("utf-8"))


def create_app(
    config: Config,
    registry: Optional[CollectorRegistry] = None,
    template_dir: Optional[Path] = None,
    config_path: Optional[str] = None,
    start_agent: bool = True,
    metrics_period: float = METRICS_PERIOD,
) -> FastAPI:
    registry = registry if registry is not None else build_registry()
    gauge = alloc_gauge(registry)
    templates = Jinja2Templates(directory=str(template_dir or TEMPLATE_DIR))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        agent = None
        if start_agent:
            agent = Agent(config, gauge, config_path, metrics_period)
            agent.start()
        app.state.agent = agent

        yield

        if agent is not None:
            await agent.shutdown()
        logger.info("HTTP server shutting down")

    app = FastAPI(
        title="memprobe",
        description="In-process memory statistics, profiles and metrics",
        lifespan=lifespan,
    )
    app.state.registry = registry
    app.state.gauge = gauge

    def require_credentials(
        credentials: Optional[HTTPBasicCredentials] = Depends(security),
    ) -> str:
        if (
            credentials is None
            or not _matches(credentials.username, config.username)
            or not _matches(credentials.password, config.password)
        ):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Unauthorized",
                headers={"WWW-Authenticate": f'Basic realm="{REALM}"'},
            )
        return credentials.username

    @app.get("/stats", dependencies=[Depends(require_credentials)])
    async def stats():
        return JSONResponse(capture().to_dict())

    @app.get(
        "/dashboard",
        response_class=HTMLResponse,
        dependencies=[Depends(require_credentials)],
    )
    async def dashboard(request: Request):
        try:
            return templates.TemplateResponse(request, "dashboard.html", {})
        except TemplateError as e:
            logger.error("Dashboard render failed: %s", e)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e)
            ) from e

    @app.get("/metrics")
    async def metrics():
        return Response(generate_latest(registry), media_type=CONTENT_TYPE_LATEST)

    return app
