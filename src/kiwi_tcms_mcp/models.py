"""Pydantic models for the bridge's HTTP responses.

Worker messages themselves are passed through untouched; only the
bridge's own health, info and error bodies are modelled here.
"""

from typing import Any

from pydantic import BaseModel, Field

SERVICE_NAME = "Kiwi TCMS MCP Server"
SERVICE_VERSION = "1.0.0"

CAPABILITIES = [
    "Test Discovery",
    "Test Planning",
    "Test Execution",
    "Test Reporting",
    "Test Authoring",
    "Jira Integration",
    "Artifact Management",
]

TOOL_CATEGORIES = {
    "Discovery": ["list_products", "list_plans", "list_cases", "get_case"],
    "Execution": ["create_run", "add_cases_to_run", "get_run", "execute_case"],
    "Reporting": ["run_report", "attach_artifact", "link_jira"],
    "Authoring": ["create_case", "update_case"],
}

FEATURES = {
    "Test Discovery": "Browse products, plans, and test cases with filtering and pagination",
    "Test Planning": "Create and manage test runs with build and environment tracking",
    "Test Execution": "Execute test cases, record results, and track evidence",
    "Test Reporting": "Generate reports in JSON, JUnit, and HTML formats",
    "Test Authoring": "Create and update test cases with structured steps",
    "Jira Integration": "Link test results to Jira issues for traceability",
    "Artifact Management": "Attach screenshots, logs, and other evidence to test results",
}


class WorkerStatus(BaseModel):
    """State of the supervised worker and its in-flight calls."""

    ready: bool = Field(
        default=False,
        description="Whether a worker is ready to accept requests",
    )
    state: str = Field(
        default="dead",
        description="Worker lifecycle state: 'starting', 'ready' or 'dead'",
    )
    pid: int | None = Field(
        default=None,
        description="Process id of the live worker",
    )
    restarts: int = Field(
        default=0,
        description="Number of times the worker has been respawned",
    )
    uptime_seconds: float | None = Field(
        default=None,
        description="Seconds since the live worker was spawned",
    )
    in_flight: int = Field(
        default=0,
        description="Calls currently awaiting a response",
    )


class HealthResponse(BaseModel):
    """Body of GET /health."""

    status: str = "healthy"
    mcp_ready: bool = Field(
        default=False,
        serialization_alias="mcpReady",
        description="Whether the worker is ready to accept requests",
    )
    service: str = SERVICE_NAME
    worker: WorkerStatus = Field(default_factory=WorkerStatus)
    capabilities: list[str] = Field(default_factory=lambda: list(CAPABILITIES))
    tool_categories: dict[str, list[str]] = Field(
        default_factory=lambda: dict(TOOL_CATEGORIES),
        serialization_alias="toolCategories",
    )


class ErrorResponse(BaseModel):
    """JSON error body returned by the HTTP surface."""

    error: str = Field(
        ...,
        description="Short error title",
    )
    message: str = Field(
        ...,
        description="Human readable details",
    )
    request_id: Any = Field(
        default=None,
        description="Id of the request the error belongs to, if known",
    )


def service_info() -> dict[str, Any]:
    """Static description served by GET /info."""
    return {
        "name": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "description": (
            "Model Context Protocol server for Kiwi TCMS - "
            "Open-source test management integration"
        ),
        "github": "https://github.com/kiwitcms/Kiwi",
        "features": dict(FEATURES),
        "endpoints": {
            "/health": "Health check and capability overview",
            "/mcp": "MCP JSON-RPC endpoint",
            "/info": "Service information and features",
        },
        "configuration": {
            "KIWI_BASE_URL": "Base URL for Kiwi TCMS instance (required)",
            "KIWI_TOKEN": "API token for Kiwi TCMS authentication (required)",
            "LOG_LEVEL": "Logging level (DEBUG, INFO, WARN, ERROR)",
            "KIWI_MCP_WORKER_COMMAND": "Command that starts the stdio MCP worker",
            "KIWI_MCP_REQUEST_TIMEOUT_S": "Per-request timeout in seconds (default 120)",
            "KIWI_MCP_READY_MODE": "'probe' (ping handshake) or 'delay' (fixed warm-up)",
            "KIWI_MCP_RESTART_DELAY_S": "Delay before restarting a dead worker (default 5)",
            "KIWI_MCP_RESTART_BACKOFF": "'fixed' or 'exponential' restart delays",
        },
    }
