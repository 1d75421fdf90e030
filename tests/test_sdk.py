"""
Unit tests for SDK layer.

Tests the tracked-call context manager and decorator: timing, status
derivation and that wrapped results and exceptions pass through unchanged.
"""

from unittest.mock import Mock

import httpx
import pytest

from api_cost_tracker.core.tracker import CostTracker
from api_cost_tracker.sdk import TrackedCall, track_call


class TestTrackedCall:
    """Test the TrackedCall context manager."""

    @pytest.fixture(autouse=True)
    def _tracker(self, acme_registry, clock):
        self.tracker = CostTracker(registry=acme_registry, clock=clock)
        yield
        self.tracker.shutdown()

    def test_init_requires_provider(self):
        with pytest.raises(ValueError, match="provider is required"):
            TrackedCall(self.tracker, "", "search")

    def test_init_requires_endpoint(self):
        with pytest.raises(ValueError, match="endpoint is required"):
            TrackedCall(self.tracker, "acme", "   ")

    def test_records_successful_call(self):
        with TrackedCall(self.tracker, "acme", "search", quantity=2, method="GET", user_id="u-1") as call:
            call.status_code = 200
            call.response_size = 512

        event = call.event
        assert event is not None
        assert event.cost == 2.4
        assert event.success is True
        assert event.status_code == 200
        assert event.method == "GET"
        assert event.user_id == "u-1"
        assert event.response_size == 512
        assert event.response_time >= 0
        assert len(self.tracker.store) == 1

    def test_error_status_marks_failure(self):
        with TrackedCall(self.tracker, "acme", "search") as call:
            call.status_code = 503

        assert call.event.success is False
        assert call.event.status_code == 503

    def test_quantity_can_be_set_inside_block(self):
        with TrackedCall(self.tracker, "acme", "search") as call:
            call.quantity = 5

        assert call.event.quantity == 5
        assert call.event.cost == 6.0

    def test_exception_is_reraised_and_recorded(self):
        call = TrackedCall(self.tracker, "acme", "search")
        with pytest.raises(RuntimeError, match="boom"):
            with call:
                raise RuntimeError("boom")

        assert call.event.success is False
        assert call.event.status_code is None
        assert call.event.error == "RuntimeError: boom"

    def test_status_read_from_http_error(self):
        request = httpx.Request("GET", "https://api.acme.test/v1/search")
        response = httpx.Response(429, request=request)
        call = TrackedCall(self.tracker, "acme", "search")

        with pytest.raises(httpx.HTTPStatusError):
            with call:
                response.raise_for_status()

        assert call.event.status_code == 429
        assert call.event.success is False

    def test_tracker_failure_does_not_break_caller(self):
        self.tracker._append = Mock(side_effect=RuntimeError("disk full"))

        with TrackedCall(self.tracker, "acme", "search") as call:
            call.status_code = 200

        assert call.event.cost == 1.2


class TestTrackCallDecorator:
    """Test the track_call decorator."""

    @pytest.fixture(autouse=True)
    def _tracker(self, acme_registry, clock):
        self.tracker = CostTracker(registry=acme_registry, clock=clock)
        yield
        self.tracker.shutdown()

    def _events(self):
        return list(self.tracker.store.iter_events())

    def test_result_returned_and_recorded(self):
        @track_call(self.tracker, "acme", "search", method="POST")
        def search(term):
            return {"term": term}

        assert search("widgets") == {"term": "widgets"}
        [event] = self._events()
        assert event.endpoint == "search"
        assert event.method == "POST"
        assert event.success is True

    def test_wraps_preserves_metadata(self):
        @track_call(self.tracker, "acme", "search")
        def search():
            """Search acme."""

        assert search.__name__ == "search"
        assert search.__doc__ == "Search acme."

    def test_callable_quantity(self):
        @track_call(self.tracker, "acme", "search", quantity=len)
        def search():
            return ["a", "b", "c"]

        search()
        [event] = self._events()
        assert event.quantity == 3
        assert event.cost == pytest.approx(3.6)

    def test_status_read_from_result(self):
        @track_call(self.tracker, "acme", "search")
        def search():
            return Mock(status_code=404)

        search()
        [event] = self._events()
        assert event.status_code == 404
        assert event.success is False

    def test_exception_propagates(self):
        @track_call(self.tracker, "acme", "enrich")
        def enrich():
            raise ConnectionError("unreachable")

        with pytest.raises(ConnectionError):
            enrich()

        [event] = self._events()
        assert event.success is False
        assert event.error == "ConnectionError: unreachable"
