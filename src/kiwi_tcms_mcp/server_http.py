"""HTTP entrypoint for the Kiwi TCMS MCP bridge.

Exposes the stdio MCP worker over HTTP: each POST /mcp body is forwarded
to the worker and answered with the correlated response.
"""

import argparse
import asyncio
import logging
import os
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from kiwi_tcms_mcp.bridge import WorkerBridge, create_bridge
from kiwi_tcms_mcp.config import Settings, get_settings, resolve_log_level
from kiwi_tcms_mcp.errors import BridgeError
from kiwi_tcms_mcp.models import ErrorResponse, HealthResponse, service_info

# Configure logging
logging.basicConfig(
    level=resolve_log_level(os.getenv("LOG_LEVEL", "INFO")),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

DEFAULT_PORT = 8184

# How often a pending /mcp call checks whether its HTTP client went away
DISCONNECT_POLL_SECONDS = 0.5

# Status logged for calls abandoned by their client (nginx convention)
CLIENT_CLOSED_REQUEST = 499


def error_response(status_code: int, error: str, message: str, request_id=None) -> JSONResponse:
    """Build a JSON error response.

    Args:
        status_code: HTTP status code.
        error: Short error title.
        message: Error details.
        request_id: Id of the failed request, if known.

    Returns:
        JSON response with an ErrorResponse body.
    """
    body = ErrorResponse(error=error, message=message, request_id=request_id)
    return JSONResponse(body.model_dump(), status_code=status_code)


async def call_while_connected(
    request: Request, bridge: WorkerBridge, body: dict[str, Any]
) -> dict[str, Any] | None:
    """Run a bridge call, abandoning it if the HTTP client disconnects.

    Starlette does not cancel a route handler when its client goes away, so
    the call is polled against the connection state.

    Returns:
        The worker response, or None if the client disconnected first.
    """
    task = asyncio.ensure_future(bridge.call(body))
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_SECONDS)
            if done:
                return task.result()
            if await request.is_disconnected():
                return None
    finally:
        if not task.done():
            # Cancelling the call removes it from the in-flight set
            task.cancel()


def create_app(settings: Settings | None = None, bridge: WorkerBridge | None = None) -> Starlette:
    """Create the Starlette ASGI application.

    Args:
        settings: Application settings; read from the environment if omitted.
        bridge: Bridge to serve; created from settings if omitted.

    Returns:
        Configured Starlette application.
    """
    settings = settings or get_settings()
    bridge = bridge or create_bridge(settings)

    async def health_check(_request: Request) -> JSONResponse:
        """Health check endpoint with worker status."""
        worker = bridge.status()
        health = HealthResponse(mcp_ready=worker.ready, worker=worker)
        return JSONResponse(health.model_dump(by_alias=True))

    async def info(_request: Request) -> JSONResponse:
        """Service information endpoint."""
        return JSONResponse(service_info())

    async def handle_mcp(request: Request) -> Response:
        """Forward a JSON-RPC message to the worker."""
        try:
            body = await request.json()
        except ValueError:
            return error_response(400, "Invalid request", "Request body must be valid JSON")
        if not isinstance(body, dict):
            return error_response(400, "Invalid request", "Request body must be a JSON object")

        try:
            if body.get("id") is None and "method" in body:
                await bridge.notify(body)
                return Response(status_code=202)
            result = await call_while_connected(request, bridge, body)
            if result is None:
                logger.info(
                    "Client disconnected, abandoned request", extra={"request_id": body.get("id")}
                )
                return Response(status_code=CLIENT_CLOSED_REQUEST)
        except BridgeError as e:
            logger.error(
                "Kiwi TCMS MCP request failed: %s", e, extra={"request_id": e.request_id}
            )
            return error_response(e.status_code, e.error, str(e), e.request_id)
        except ValueError as e:
            return error_response(400, "Invalid request", str(e), body.get("id"))
        except Exception as e:
            logger.exception("Unexpected error forwarding request")
            return error_response(500, "Kiwi TCMS MCP request failed", f"Internal error: {e}")
        return JSONResponse(result)

    @asynccontextmanager
    async def lifespan(_app: Starlette) -> AsyncIterator[None]:
        logger.info("Kiwi TCMS MCP bridge starting")
        logger.info("Connecting to Kiwi TCMS: %s", settings.kiwi_base_url)
        await bridge.start()
        try:
            yield
        finally:
            await bridge.stop()
            logger.info("Server shutdown complete")

    return Starlette(
        debug=False,
        routes=[
            Route("/health", health_check, methods=["GET"]),
            Route("/info", info, methods=["GET"]),
            Route("/mcp", handle_mcp, methods=["POST"]),
        ],
        lifespan=lifespan,
    )


def check_configuration(settings: Settings) -> bool:
    """Log configuration help if required worker settings are missing.

    Returns:
        True if the worker can be started.
    """
    missing = settings.missing_worker_env()
    if not missing:
        logger.info("Using API token (length: %d)", len(settings.kiwi_token or ""))
        return True

    logger.error("Missing required Kiwi TCMS configuration: %s", ", ".join(missing))
    logger.error(
        "Set KIWI_BASE_URL to your Kiwi TCMS instance URL (e.g., http://localhost:8080)"
    )
    logger.error("Set KIWI_TOKEN to your API token from Kiwi TCMS user profile")
    return False


def parse_args() -> argparse.Namespace:
    """Parse command line arguments.

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(description="Kiwi TCMS MCP HTTP bridge")
    parser.add_argument(
        "--host",
        type=str,
        default=os.getenv("HOST", "0.0.0.0"),
        help="Host to bind to (default: 0.0.0.0)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.getenv("PORT") or DEFAULT_PORT),
        help=f"Port to bind to (default: {DEFAULT_PORT})",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development",
    )
    return parser.parse_args()


def main() -> None:
    """Main entrypoint for the HTTP bridge."""
    args = parse_args()

    if not check_configuration(get_settings()):
        sys.exit(1)

    logger.info("Kiwi TCMS MCP bridge listening on %s:%d", args.host, args.port)

    try:
        uvicorn.run(
            "kiwi_tcms_mcp.server_http:create_app",
            host=args.host,
            port=args.port,
            reload=args.reload,
            factory=True,
            log_level="info",
        )
    except KeyboardInterrupt:
        logger.info("Server interrupted by user")
    except Exception as e:
        logger.exception("Server failed: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
