import pathlib
import sys

import pytest
import requests

sys.path.insert(0, str(pathlib.Path(__file__).resolve().parents[1]))

import app


def build_config(**overrides):
    values = {"api_key": "key-123"}
    values.update(overrides)
    return app.build_smalk_config(values)


def build_context(path="/pricing", method="GET"):
    return app.RequestContext(
        path=path,
        method=method,
        url=f"https://site.example{path}",
        user_agent="ClaudeBot/1.0",
        referer="https://chat.example/",
        peer_ip="10.1.1.1",
        headers={"X-Forwarded-For": "", "X-Real-IP": "8.8.4.4"},
    )


class RecordingSession:
    def __init__(self, error=None, status_code=202):
        self.error = error
        self.status_code = status_code
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return type("Resp", (), {"status_code": self.status_code})()


def test_tracking_payload_carries_only_the_needed_headers():
    payload = app.build_tracking_payload(build_context(method="POST"))
    assert payload == {
        "request_path": "/pricing",
        "request_method": "POST",
        "request_headers": {
            "User-Agent": "ClaudeBot/1.0",
            "X-Real-IP": "8.8.4.4",
            "Referer": "https://chat.example/",
        },
    }


def test_report_visit_posts_to_tracking_endpoint(monkeypatch):
    session = RecordingSession()
    monkeypatch.setattr(app, "HTTP_SESSION", session)

    app.report_visit(build_context(), build_config())

    assert len(session.calls) == 1
    url, kwargs = session.calls[0]
    assert url == "https://api.smalk.ai/api/v1/tracking/visit"
    assert kwargs["timeout"] == app.TRACKING_TIMEOUT
    assert kwargs["headers"] == {"Authorization": "Api-Key key-123", "Content-Type": "application/json"}
    assert kwargs["json"]["request_path"] == "/pricing"


def test_tracking_does_not_need_ads_credentials(monkeypatch):
    session = RecordingSession()
    monkeypatch.setattr(app, "HTTP_SESSION", session)
    config = build_config(workspace_key="", publisher_activated="false", ads_enabled="false")

    app.report_visit(build_context(), config)

    assert len(session.calls) == 1


@pytest.mark.parametrize(
    "path, overrides",
    [
        ("/pricing", {"enabled": "false"}),
        ("/pricing", {"tracking_enabled": "false"}),
        ("/pricing", {"api_key": ""}),
        ("/admin/config", {}),
        ("/private/report", {"excluded_paths": "/private/*"}),
        ("/assets/app.JS", {}),
        ("/favicon.ico", {}),
    ],
)
def test_ineligible_requests_are_not_tracked(monkeypatch, path, overrides):
    session = RecordingSession()
    monkeypatch.setattr(app, "HTTP_SESSION", session)

    assert not app.should_track(build_context(path), build_config(**overrides))
    app.report_visit(build_context(path), build_config(**overrides))

    assert session.calls == []


@pytest.mark.parametrize(
    "error",
    [
        requests.Timeout("timed out"),
        requests.ConnectionError("name resolution failed"),
    ],
)
def test_tracking_failures_are_swallowed(monkeypatch, error):
    session = RecordingSession(error=error)
    monkeypatch.setattr(app, "HTTP_SESSION", session)

    app.report_visit(build_context(), build_config(debug_mode="true"))

    assert len(session.calls) == 1


def test_error_status_is_ignored(monkeypatch):
    session = RecordingSession(status_code=500)
    monkeypatch.setattr(app, "HTTP_SESSION", session)
    app.report_visit(build_context(), build_config())
    assert len(session.calls) == 1
