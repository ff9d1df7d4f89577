from fastapi.testclient import TestClient
from structlog.contextvars import clear_contextvars, get_contextvars, merge_contextvars
from structlog.testing import capture_logs

from taskvault import app as app_module
from taskvault.logging import (
    REDACTED,
    bind_request_context,
    get_request_id,
    mask_email,
    redact_credentials,
)


def _redact(**fields):
    return redact_credentials(None, "info", {"event": "refresh_token_rotated", **fields})


class TestRedaction:
    def test_credentials_and_digests_are_dropped(self):
        event = _redact(
            password="secret123",
            refresh_token="ab" * 32,
            token_hash="cd" * 32,
            expected_hash="ef" * 32,
            jwt_secret="s" * 40,
            authorization="Bearer abc.def.ghi",
            cookie="token=abc; refreshToken=def",
        )

        for key in (
            "password",
            "refresh_token",
            "token_hash",
            "expected_hash",
            "jwt_secret",
            "authorization",
            "cookie",
        ):
            assert event[key] == REDACTED

    def test_event_name_and_ids_are_kept(self):
        event = _redact(user_id="u-1", task_id="t-1", refresh_token=None)

        assert event["event"] == "refresh_token_rotated"
        assert event["user_id"] == "u-1"
        assert event["task_id"] == "t-1"
        assert event["refresh_token"] is None

    def test_emails_are_shortened(self):
        assert _redact(email="ann@example.com")["email"] == "a***@example.com"
        assert mask_email("no-at-sign") == REDACTED

    def test_bearer_values_inside_messages_are_scrubbed(self):
        event = _redact(error="rejected header Bearer abc.def.ghi from client")

        assert "abc.def.ghi" not in event["error"]
        assert event["error"] == f"rejected header Bearer {REDACTED} from client"


class TestRequestContext:
    def test_bind_replaces_previous_request(self):
        bind_request_context("req-1", "GET", "/api/tasks")
        request_id = bind_request_context(None, "POST", "/api/auth/login")

        context = get_contextvars()
        assert context["request_id"] == request_id != "req-1"
        assert context["method"] == "POST"
        assert context["path"] == "/api/auth/login"
        assert get_request_id() == request_id
        clear_contextvars()

    def test_bound_fields_merge_into_events(self):
        bind_request_context("req-7", "DELETE", "/api/tasks/abc")

        event = merge_contextvars(None, "warning", {"event": "task_access_denied"})

        assert event["request_id"] == "req-7"
        assert event["method"] == "DELETE"
        assert event["path"] == "/api/tasks/abc"
        clear_contextvars()

    def test_auth_events_are_logged_for_rejected_tokens(self):
        client = TestClient(app_module.app)

        with capture_logs() as logs:
            response = client.get(
                "/api/auth/me", headers={"Authorization": "Bearer not.a.token"}
            )

        assert response.status_code == 401
        events = [entry["event"] for entry in logs]
        assert "access_token_invalid" in events
        assert "service_error" in events
