"""
Token Broker HTTP surface.
POST /oauth/callback exchanges an authorization code; POST /oauth/start begins a flow;
POST /oauth/refresh runs the refresh_token grant; POST /oauth/disconnect forgets a
realm's server-held tokens. OPTIONS on each answers CORS preflight for the single
allowed origin only.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from starlette.concurrency import run_in_threadpool

from token_broker.audit import get_client_ip
from token_broker.broker import Broker
from token_broker.config import BrokerConfig, load_config
from token_broker.errors import BrokerError
from token_broker.origin import OriginDecision
from token_broker.response import assemble_error

logger = logging.getLogger(__name__)

_FORM_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


async def read_fields(request: Request) -> dict | None:
    """JSON object or form body as a dict; None when the body is neither."""
    content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
    try:
        if content_type == "application/json":
            data = await request.json()
            return data if isinstance(data, dict) else None
        if content_type in _FORM_TYPES:
            form = await request.form()
            return {k: v for k, v in form.items() if isinstance(v, str)}
    except ValueError:
        return None
    return None


def get_broker(request: Request) -> Broker:
    """Dependency: the broker wired at startup."""
    return request.app.state.broker


def create_app(config: BrokerConfig | None = None, broker: Broker | None = None) -> FastAPI:
    """
    Build the app. With neither argument the config is resolved from the environment
    at startup (lifespan).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "broker", None) is None:
            app.state.broker = Broker.from_config(load_config())
            logger.info("token broker ready for origin %s", app.state.broker.config.allowed_origin)
        removed = await run_in_threadpool(app.state.broker.replay_guard.purge_expired)
        if removed:
            logger.info("dropped %d expired replay records at startup", removed)
        yield

    app = FastAPI(title="Token Broker", version="0.1.0", lifespan=lifespan)
    if broker is None and config is not None:
        broker = Broker.from_config(config)
    app.state.broker = broker

    @app.exception_handler(Exception)
    async def unhandled(request: Request, exc: Exception):
        logger.exception("unhandled error on %s", request.url.path)
        guard = getattr(getattr(request.app.state, "broker", None), "origin_guard", None)
        cors_headers = None
        if guard is not None and guard.authorize(request.headers.get("origin")) is OriginDecision.ALLOWED:
            cors_headers = guard.cors_headers()
        return assemble_error(BrokerError("unhandled"), cors_headers=cors_headers)

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {"status": "ok", "service": "token_broker"}

    @app.options("/oauth/callback")
    @app.options("/oauth/disconnect")
    @app.options("/oauth/refresh")
    @app.options("/oauth/start")
    def preflight(request: Request, broker: Broker = Depends(get_broker)):
        """CORS preflight: only the configured origin, only POST."""
        method = request.headers.get("access-control-request-method")
        if broker.origin_guard.authorize(request.headers.get("origin")) is not OriginDecision.ALLOWED or (
            method is not None and method.upper() != "POST"
        ):
            return Response(status_code=403)
        return Response(status_code=204, headers=broker.origin_guard.preflight_headers())

    @app.post("/oauth/callback")
    async def callback(
        request: Request,
        background_tasks: BackgroundTasks,
        broker: Broker = Depends(get_broker),
    ):
        """
        Validate origin and state, reserve the code, exchange it upstream, respond.
        Runs in a worker thread so a client disconnect cannot cancel the exchange
        after the code is reserved.
        """
        fields = await read_fields(request)
        outcome = await run_in_threadpool(
            broker.handle_callback,
            request.headers.get("origin"),
            fields,
            client_ip=get_client_ip(request),
        )
        response = broker.respond(outcome)
        if outcome.ok and broker.persists_tokens:
            background_tasks.add_task(broker.persist, outcome)
        return response

    @app.post("/oauth/refresh")
    async def refresh(
        request: Request,
        background_tasks: BackgroundTasks,
        broker: Broker = Depends(get_broker),
    ):
        fields = await read_fields(request)
        outcome = await run_in_threadpool(
            broker.handle_refresh,
            request.headers.get("origin"),
            fields,
            client_ip=get_client_ip(request),
        )
        response = broker.respond(outcome)
        if outcome.ok and broker.persists_tokens:
            background_tasks.add_task(broker.persist, outcome)
        return response

    @app.post("/oauth/disconnect")
    async def disconnect(request: Request, broker: Broker = Depends(get_broker)):
        fields = await read_fields(request)
        outcome = await run_in_threadpool(
            broker.handle_disconnect,
            request.headers.get("origin"),
            fields,
            client_ip=get_client_ip(request),
        )
        return broker.respond(outcome)

    @app.post("/oauth/start")
    async def start(request: Request, broker: Broker = Depends(get_broker)):
        """Issue a signed state (with PKCE binding) and return the provider authorize URL."""
        if not broker.config.authorize_endpoint:
            raise HTTPException(status_code=404, detail="Not Found")
        metadata = {}
        if int(request.headers.get("content-length") or 0) > 0:
            metadata = await read_fields(request)
        origin = request.headers.get("origin")
        try:
            result = broker.start(origin, metadata, client_ip=get_client_ip(request))
        except BrokerError as e:
            allowed = broker.origin_guard.authorize(origin) is OriginDecision.ALLOWED
            return assemble_error(e, cors_headers=broker.origin_guard.cors_headers() if allowed else None)
        return JSONResponse(
            result,
            headers={**broker.origin_guard.cors_headers(), "Cache-Control": "no-store"},
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "token_broker.main:app",
        host="127.0.0.1",
        port=8080,
        reload=True,
    )
