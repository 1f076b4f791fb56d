"""Request/response interface over the stdio Kiwi TCMS MCP worker.

WorkerBridge is what the HTTP layer calls. It registers each request with
the correlator, writes it to the worker and waits for the response that
carries the same id. Many calls may be in flight at once; the worker
multiplexes them by id and may answer in any order.
"""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from mcp.types import JSONRPCRequest

from kiwi_tcms_mcp.config import Settings
from kiwi_tcms_mcp.correlator import CallCorrelator, RequestId
from kiwi_tcms_mcp.errors import BridgeError, WorkerCrashed, WorkerUnavailable
from kiwi_tcms_mcp.models import WorkerStatus
from kiwi_tcms_mcp.supervisor import WorkerSupervisor, encode_message

logger = logging.getLogger(__name__)


def _is_request_id(value: Any) -> bool:
    return isinstance(value, (str, int)) and not isinstance(value, bool)


class WorkerBridge:
    """Correlating call interface in front of a supervised worker.

    Implements the supervisor's WorkerListener protocol.
    """

    def __init__(self, supervisor: WorkerSupervisor, correlator: CallCorrelator) -> None:
        """Initialize the bridge.

        Args:
            supervisor: Owner of the worker process. The bridge registers
                itself as its listener.
            correlator: Registry of in-flight calls.
        """
        self._supervisor = supervisor
        self._correlator = correlator
        self._supervisor.listener = self

    @property
    def is_ready(self) -> bool:
        return self._supervisor.is_ready

    @property
    def in_flight(self) -> int:
        return len(self._correlator)

    def status(self) -> WorkerStatus:
        """Current worker and call state for the health endpoint."""
        return WorkerStatus(
            ready=self.is_ready,
            in_flight=self.in_flight,
            **self._supervisor.status(),
        )

    async def start(self) -> None:
        """Start the worker.

        Raises:
            ConfigurationMissing: If required worker configuration is absent.
        """
        await self._supervisor.start()

    async def stop(self) -> None:
        """Fail outstanding calls and stop the worker."""
        failed = self._correlator.fail_all(
            lambda request_id: WorkerUnavailable("Bridge is shutting down", request_id=request_id)
        )
        if failed:
            logger.info("Failed %d in-flight calls on shutdown", failed)
        await self._supervisor.stop()

    async def call(self, request: dict[str, Any], timeout: float | None = None) -> dict[str, Any]:
        """Send a request to the worker and wait for its response.

        Args:
            request: JSON-RPC request object. If it has no id, one is
                assigned and added to the message sent to the worker.
            timeout: Override of the configured deadline, in seconds.

        Returns:
            The complete response message from the worker.

        Raises:
            ValueError: If the request is not an object or its id is not a
                string or integer.
            TypeError: If the request cannot be serialized as JSON.
            WorkerUnavailable: If no ready worker exists.
            DuplicateId: If a call with the same id is already in flight.
            CallTimeout: If no response arrives before the deadline.
            WorkerCrashed: If the worker exits before responding.
        """
        if not isinstance(request, dict):
            raise ValueError("Request must be a JSON object")
        if not self.is_ready:
            raise WorkerUnavailable("MCP server is initializing")

        message = dict(request)
        request_id = message.get("id")
        if request_id is None:
            request_id = uuid.uuid4().hex
            message["id"] = request_id
        elif not _is_request_id(request_id):
            raise ValueError("Request id must be a string or an integer")

        return await self._exchange(message, request_id, timeout)

    async def notify(self, message: dict[str, Any]) -> None:
        """Send a message that expects no response (JSON-RPC notification).

        Raises:
            WorkerUnavailable: If no ready worker exists.
        """
        await self._supervisor.send(message)

    async def _exchange(
        self,
        message: dict[str, Any],
        request_id: RequestId,
        timeout: float | None,
        allow_starting: bool = False,
    ) -> dict[str, Any]:
        # Serialize first so an unencodable request is never registered
        data = encode_message(message)
        call = self._correlator.register(request_id, timeout)
        try:
            await self._supervisor.send(data, allow_starting=allow_starting)
        except BaseException as e:
            # The request never reached the worker
            self._correlator.discard(request_id)
            if isinstance(e, BridgeError) and e.request_id is None:
                e.request_id = request_id
            raise

        try:
            return await call.wait()
        except asyncio.CancelledError:
            # Caller went away; a late response will be dropped as unmatched
            self._correlator.discard(request_id)
            raise

    # ==================== WorkerListener ====================

    def on_worker_message(self, message: dict[str, Any]) -> None:
        """Route a decoded worker message to the call waiting for it."""
        request_id = message.get("id")
        if request_id is None or "method" in message:
            # Worker-initiated notification or request, nobody is waiting on it
            logger.debug("Ignoring worker-initiated message: %s", message.get("method"))
            return
        if not _is_request_id(request_id):
            logger.debug("Ignoring response with invalid id: %r", request_id)
            return
        self._correlator.resolve(request_id, message)

    def on_worker_exit(self, returncode: int | None) -> None:
        """Fail every in-flight call after the worker died."""
        failed = self._correlator.fail_all(
            lambda request_id: WorkerCrashed(
                f"Kiwi TCMS MCP worker exited with code {returncode}",
                request_id=request_id,
                returncode=returncode,
            )
        )
        if failed:
            logger.warning("Failed %d in-flight calls after worker exit", failed)

    async def check_worker_ready(self) -> None:
        """Readiness handshake: one ping round-trip with the new worker.

        Any response with the probe id counts, including a JSON-RPC error.
        """
        settings = self._supervisor.settings
        probe_id = f"ready-{uuid.uuid4().hex}"
        probe = JSONRPCRequest(
            jsonrpc="2.0", id=probe_id, method=settings.ready_probe_method
        ).model_dump(by_alias=True, mode="json", exclude_none=True)

        response = await self._exchange(
            probe, probe_id, settings.ready_timeout_seconds, allow_starting=True
        )
        if "error" in response:
            logger.info("Readiness probe answered with error: %s", response["error"])


def create_bridge(settings: Settings) -> WorkerBridge:
    """Wire a bridge with its own supervisor and correlator.

    Args:
        settings: Application settings.

    Returns:
        A bridge that is not started yet.
    """
    correlator = CallCorrelator(settings.request_timeout_seconds)
    supervisor = WorkerSupervisor(settings)
    return WorkerBridge(supervisor, correlator)


@asynccontextmanager
async def running_bridge(settings: Settings) -> AsyncIterator[WorkerBridge]:
    """Create, start and finally stop a bridge.

    Args:
        settings: Application settings.

    Yields:
        Started bridge.
    """
    bridge = create_bridge(settings)
    await bridge.start()
    try:
        yield bridge
    finally:
        await bridge.stop()
