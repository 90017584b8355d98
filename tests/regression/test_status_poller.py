"""
Regression tests for the client-side status poller.

Usage:
    pytest tests/regression/test_status_poller.py -v
"""

import threading

import requests

from backend.app.status_poller import StatusPoller


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")

    def json(self):
        return self.payload


class FakeSession:
    """Answers each POST with the next queued response."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.posts = []
        self.posted = threading.Event()

    def post(self, url, json=None, timeout=None):
        self.posts.append((url, json))
        self.posted.set()
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item


class TestPollOnce:
    """One polling round."""

    def test_posts_in_flight_files_and_applies_updates(self):
        session = FakeSession(FakeResponse({"updates": [{"name": "a.json", "status": "analyzed", "riskScore": 7.5}]}))
        seen = []
        poller = StatusPoller("http://localhost:8001/", session=session, on_update=seen.append)
        poller.track("a.json", uploaded_at="2024-03-14T15:30:00Z")
        poller.track("done.json", status="analyzed")

        poller.poll_once()

        url, payload = session.posts[0]
        assert url == "http://localhost:8001/api/files/status"
        assert payload == {"files": [{"name": "a.json", "uploadedAt": "2024-03-14T15:30:00Z"}]}
        assert poller.status_of("a.json") == "analyzed"
        assert poller.files["a.json"]["riskScore"] == 7.5
        assert seen == [{"name": "a.json", "status": "analyzed", "riskScore": 7.5}]
        assert poller.in_flight() == []

    def test_nothing_in_flight_means_no_request(self):
        session = FakeSession(FakeResponse({"updates": []}))
        poller = StatusPoller("http://localhost:8001", session=session)
        poller.track("done.json", status="error")

        assert poller.poll_once() == []
        assert session.posts == []

    def test_errors_keep_tracking(self):
        session = FakeSession(requests.ConnectionError("refused"), FakeResponse({}, status_code=500))
        poller = StatusPoller("http://localhost:8001", session=session)
        poller.track("a.json")

        assert poller.poll_once() == []
        assert poller.poll_once() == []
        assert poller.status_of("a.json") == "uploaded"

    def test_unknown_names_in_updates_are_ignored(self):
        session = FakeSession(FakeResponse({"updates": [{"name": "other.json", "status": "analyzed"}]}))
        poller = StatusPoller("http://localhost:8001", session=session)
        poller.track("a.json", status="processing")

        poller.poll_once()

        assert poller.status_of("a.json") == "processing"
        assert "other.json" not in poller.files


class TestBackgroundPolling:
    """Thread lifecycle."""

    def test_polls_until_nothing_is_in_flight(self):
        session = FakeSession(FakeResponse({"updates": [{"name": "a.json", "status": "analyzed"}]}))
        poller = StatusPoller("http://localhost:8001", interval=0.01, session=session)
        poller.track("a.json")

        poller.start()
        try:
            assert session.posted.wait(2)
        finally:
            poller.stop(timeout=2)

        assert poller.status_of("a.json") == "analyzed"
        assert not poller.is_polling

    def test_idle_poller_makes_no_requests(self):
        session = FakeSession(FakeResponse({"updates": []}))
        poller = StatusPoller("http://localhost:8001", interval=0.01, session=session)

        poller.start()
        poller.stop(timeout=2)

        assert session.posts == []
