"""Tests for the call correlator."""

import asyncio

import pytest

from kiwi_tcms_mcp.correlator import CallCorrelator
from kiwi_tcms_mcp.errors import CallTimeout, DuplicateId, WorkerCrashed


@pytest.fixture
def correlator() -> CallCorrelator:
    """Create a correlator with a generous default deadline."""
    return CallCorrelator(timeout_seconds=5.0)


def _crashed(request_id):
    return WorkerCrashed("worker exited", request_id=request_id, returncode=1)


class TestRegistration:
    """Tests for registering calls."""

    async def test_register_tracks_call(self, correlator: CallCorrelator) -> None:
        """Test a registered call is in flight until resolved."""
        call = correlator.register("A")

        assert "A" in correlator
        assert len(correlator) == 1
        assert not call.done
        assert call.deadline == pytest.approx(call.submitted_at + 5.0)

        correlator.resolve("A", {"id": "A", "result": "ok"})

    async def test_duplicate_id_rejected(self, correlator: CallCorrelator) -> None:
        """Test registering an id already in flight fails synchronously."""
        correlator.register(7)

        with pytest.raises(DuplicateId) as exc_info:
            correlator.register(7)

        assert exc_info.value.request_id == 7
        assert len(correlator) == 1
        correlator.resolve(7, {"id": 7})

    async def test_string_and_integer_ids_are_distinct(self, correlator: CallCorrelator) -> None:
        """Test "1" and 1 are different correlation ids."""
        text_call = correlator.register("1")
        int_call = correlator.register(1)

        correlator.resolve(1, {"id": 1, "result": "int"})
        correlator.resolve("1", {"id": "1", "result": "text"})

        assert (await int_call.wait())["result"] == "int"
        assert (await text_call.wait())["result"] == "text"

    async def test_id_reusable_after_resolution(self, correlator: CallCorrelator) -> None:
        """Test an id can be registered again once its call settled."""
        correlator.register("A")
        correlator.resolve("A", {"id": "A"})

        call = correlator.register("A")
        assert not call.done
        correlator.resolve("A", {"id": "A"})


class TestResolution:
    """Tests for matching responses to calls."""

    async def test_responses_matched_regardless_of_order(
        self, correlator: CallCorrelator
    ) -> None:
        """Test each call receives the response carrying its own id."""
        ids = ["a", "b", "c", 4, 5]
        calls = {request_id: correlator.register(request_id) for request_id in ids}

        for request_id in reversed(ids):
            assert correlator.resolve(request_id, {"id": request_id, "result": f"r-{request_id}"})

        for request_id, call in calls.items():
            assert (await call.wait())["result"] == f"r-{request_id}"
        assert len(correlator) == 0

    async def test_unknown_id_has_no_effect(self, correlator: CallCorrelator) -> None:
        """Test a response for an id never registered is dropped."""
        call = correlator.register("A")

        assert correlator.resolve("B", {"id": "B", "result": "x"}) is False

        assert not call.done
        assert "A" in correlator
        correlator.resolve("A", {"id": "A"})

    async def test_second_resolution_is_noop(self, correlator: CallCorrelator) -> None:
        """Test a duplicate response after resolution is dropped."""
        call = correlator.register("A")

        assert correlator.resolve("A", {"id": "A", "result": 1}) is True
        assert correlator.resolve("A", {"id": "A", "result": 2}) is False
        assert call.settle({"id": "A", "result": 3}) is False
        assert call.fail(CallTimeout("late")) is False

        assert (await call.wait())["result"] == 1


class TestTimeouts:
    """Tests for per-call deadlines."""

    async def test_call_times_out(self, correlator: CallCorrelator) -> None:
        """Test a call without response fails with CallTimeout and is removed."""
        call = correlator.register("slow", timeout=0.05)

        with pytest.raises(CallTimeout) as exc_info:
            await call.wait()

        assert exc_info.value.request_id == "slow"
        assert exc_info.value.timeout_seconds == 0.05
        assert "slow" not in correlator

    async def test_late_response_dropped(self, correlator: CallCorrelator) -> None:
        """Test a response arriving after the timeout is unmatched."""
        call = correlator.register("slow", timeout=0.05)
        with pytest.raises(CallTimeout):
            await call.wait()

        assert correlator.resolve("slow", {"id": "slow", "result": "late"}) is False

    async def test_timeout_isolated_from_other_calls(self, correlator: CallCorrelator) -> None:
        """Test one call timing out leaves other calls pending and resolvable."""
        fast_expiry = correlator.register("expires", timeout=0.05)
        survivor = correlator.register("survives")

        with pytest.raises(CallTimeout):
            await fast_expiry.wait()

        assert "survives" in correlator
        correlator.resolve("survives", {"id": "survives", "result": "ok"})
        assert (await survivor.wait())["result"] == "ok"

    async def test_expire_manually(self, correlator: CallCorrelator) -> None:
        """Test expire fails a pending call and ignores unknown ids."""
        call = correlator.register("A")

        assert correlator.expire("A") is True
        assert correlator.expire("A") is False
        assert correlator.expire("never") is False
        with pytest.raises(CallTimeout):
            await call.wait()

    async def test_resolution_disarms_timer(self, correlator: CallCorrelator) -> None:
        """Test an old timer never expires a newer call reusing the id."""
        correlator.register("A", timeout=0.05)
        correlator.resolve("A", {"id": "A"})
        reused = correlator.register("A", timeout=5.0)

        await asyncio.sleep(0.1)

        assert not reused.done
        assert "A" in correlator
        correlator.resolve("A", {"id": "A"})


class TestFailAll:
    """Tests for failing every in-flight call."""

    async def test_all_calls_fail(self, correlator: CallCorrelator) -> None:
        """Test every outstanding call fails with the given error."""
        calls = [correlator.register(i) for i in range(5)]

        assert correlator.fail_all(_crashed) == 5
        assert len(correlator) == 0

        for index, call in enumerate(calls):
            with pytest.raises(WorkerCrashed) as exc_info:
                await call.wait()
            assert exc_info.value.request_id == index

    async def test_later_registrations_unaffected(self, correlator: CallCorrelator) -> None:
        """Test calls registered after fail_all stay pending."""
        old = correlator.register("old")
        correlator.fail_all(_crashed)
        new = correlator.register("new")

        assert not new.done
        correlator.resolve("new", {"id": "new", "result": "ok"})
        assert (await new.wait())["result"] == "ok"
        with pytest.raises(WorkerCrashed):
            await old.wait()

    async def test_empty(self, correlator: CallCorrelator) -> None:
        """Test fail_all with nothing in flight."""
        assert correlator.fail_all(_crashed) == 0


class TestDiscard:
    """Tests for forgetting abandoned calls."""

    async def test_discard_cancels_call(self, correlator: CallCorrelator) -> None:
        """Test a discarded call is cancelled and its response dropped."""
        call = correlator.register("gone")

        assert correlator.discard("gone") is True
        assert call.future.cancelled()
        assert correlator.resolve("gone", {"id": "gone"}) is False
        assert correlator.discard("gone") is False
