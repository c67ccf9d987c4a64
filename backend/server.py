#!/usr/bin/env python3
"""
Call-center supervision API

JSON endpoints over the operator state resolver and the AMI directory:
live per-operator call state, endpoint/queue listings for the admin
bindings screen, and connectivity status for both Asterisk interfaces.
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware

from ami import AMIClient
from app_config import AppConfig, load_config
from ari import AriClient
from directory import list_endpoints, list_queues
from operator_state import OperatorStateResolver
from telephony_errors import (
    AsteriskError, AuthError, BulkTimeoutError, ProtocolError, UnreachableError,
)

# Load environment variables
load_dotenv()


def setup_logging():
    """Root logging: console always, plus DEBUG_LOG_FILE when set."""
    level = getattr(logging, os.getenv('LOG_LEVEL', 'INFO').upper(), logging.INFO)
    fmt = '%(asctime)s - %(levelname)s - %(message)s'
    logging.basicConfig(level=level, format=fmt)
    log_file = os.getenv('DEBUG_LOG_FILE', '').strip()
    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        handler = logging.FileHandler(log_file, encoding='utf-8')
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
        logging.getLogger().addHandler(handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


log = logging.getLogger(__name__)


def build_clients(app: FastAPI, config: AppConfig):
    """Create the Asterisk clients and the resolver, and attach them to the app."""
    app.state.config = config
    app.state.ami = AMIClient(config.ami, bulk_timeout=config.bulk_timeout)
    app.state.ari = AriClient(config.ari, timeout=config.ari_timeout,
                              session_policy=config.ari_session_policy)
    app.state.resolver = OperatorStateResolver(
        app.state.ari,
        technology=config.endpoint_technology,
        queue_mappings=config.queue_mappings,
    )


def _http_error(e: AsteriskError) -> HTTPException:
    """Map a transport failure to an HTTP status."""
    if isinstance(e, BulkTimeoutError):
        return HTTPException(status_code=504, detail=str(e))
    if isinstance(e, UnreachableError):
        return HTTPException(status_code=503, detail=str(e))
    if isinstance(e, (AuthError, ProtocolError)):
        return HTTPException(status_code=502, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


# ---------------------------------------------------------------------------
# FastAPI App
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - setup and teardown."""
    log.info("Starting call-center supervision API...")
    if getattr(app.state, 'resolver', None) is None:
        build_clients(app, load_config())
        log.info("AMI at %s:%s, ARI at %s (%s sessions)",
                 app.state.ami.host, app.state.ami.port,
                 app.state.ari.base_url, app.state.ari.session_policy)

    yield

    log.info("Shutting down...")
    ari = getattr(app.state, 'ari', None)
    if ari is not None and hasattr(ari, 'aclose'):
        await ari.aclose()


app = FastAPI(
    title="Call-center supervision API",
    description="Live operator call state and Asterisk directory",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/api/operators/state")
async def get_operators_state(request: Request, extensions: str = Query(..., description="Comma-separated extensions")):
    """Current call state of several operators, resolved concurrently."""
    wanted = [e.strip() for e in extensions.split(',') if e.strip()]
    if not wanted:
        raise HTTPException(status_code=400, detail="At least one extension is required")

    results = await request.app.state.resolver.resolve_many(wanted)
    operators = {}
    for ext, result in results.items():
        if isinstance(result, AsteriskError):
            operators[ext] = {"error": str(result)}
        else:
            operators[ext] = result.to_dict()
    return {"operators": operators}


@app.get("/api/operators/{extension}/state")
async def get_operator_state(extension: str, request: Request):
    """Current call state of one operator."""
    try:
        state = await request.app.state.resolver.resolve(extension)
    except AsteriskError as e:
        log.error(f"getOperatorState failed for extension {extension}: {e}")
        raise _http_error(e)
    return state.to_dict()


@app.get("/api/endpoints")
async def get_endpoints(request: Request):
    """All PJSIP endpoints (for binding operators to extensions)."""
    try:
        endpoints = await list_endpoints(request.app.state.ami)
    except AsteriskError as e:
        log.error(f"Endpoint listing failed: {e}")
        raise _http_error(e)
    return {"endpoints": [e.model_dump() for e in endpoints]}


@app.get("/api/queues")
async def get_queues(request: Request):
    """All queues known to Asterisk."""
    try:
        queues = await list_queues(request.app.state.ami)
    except AsteriskError as e:
        log.error(f"Queue listing failed: {e}")
        raise _http_error(e)
    mappings = request.app.state.config.queue_mappings
    return {
        "queues": [
            {"name": q.name, "display_name": mappings.get(q.name, q.name)} for q in queues
        ]
    }


@app.get("/api/status")
async def get_status(request: Request):
    """Connectivity of both Asterisk interfaces."""
    ami_status = await request.app.state.ami.test_connection()
    ari_status = await request.app.state.ari.test_connection()
    return {
        "connected": bool(ami_status.get("success") and ari_status.get("success")),
        "ami": ami_status,
        "ari": ari_status,
    }


def main(port: Optional[int] = None):
    setup_logging()
    port = port or int(os.getenv("PORT", "8765"))
    log.info("Starting API over HTTP on port %s", port)
    uvicorn.run(
        "server:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
