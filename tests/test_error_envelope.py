"""Tests for the error envelope format and error handling.

Error responses share one shape:
{
    "success": false,
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "statusCode": <int>,
        "details": <object, omitted when empty>
    },
    "requestId": "<uuid>"
}
"""

import json

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from issuetrack import app as app_module
from issuetrack.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from issuetrack.api.schemas import Envelope, ErrorBody
from issuetrack.service.errors import ERROR_CODES


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_required_fields(self):
        error = ErrorBody(code="NOT_FOUND", message="Issue not found", status_code=404)
        assert error.details is None

    def test_unknown_code_is_rejected(self):
        with pytest.raises(ValidationError, match="Invalid error code"):
            ErrorBody(code="teapot", message="nope", status_code=418)

    def test_every_status_mapping_uses_a_known_code(self):
        assert set(_STATUS_TO_CODE.values()) <= ERROR_CODES


class TestEnvelope:
    def test_success_keeps_null_data(self):
        payload = Envelope(success=True, data=None, message="Logged out successfully").model_dump(
            by_alias=True
        )
        assert payload["data"] is None
        assert "error" not in payload
        assert "meta" not in payload
        assert payload["requestId"]

    def test_error_omits_data(self):
        payload = Envelope(
            success=False,
            error=ErrorBody(code="CONFLICT", message="dup", status_code=409),
        ).model_dump(by_alias=True)
        assert "data" not in payload
        assert payload["error"]["statusCode"] == 409


class TestStatusCodes:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "VALIDATION_ERROR"),
            (401, "AUTHENTICATION_ERROR"),
            (403, "AUTHORIZATION_ERROR"),
            (404, "NOT_FOUND"),
            (409, "CONFLICT"),
            (423, "ACCOUNT_LOCKED"),
            (429, "RATE_LIMIT_EXCEEDED"),
            (418, "VALIDATION_ERROR"),
            (503, "INTERNAL_ERROR"),
        ],
    )
    def test_code_for_status(self, status, code):
        assert _error_code_for_status(status) == code


class TestErrorResponse:
    def test_shape(self):
        response = _error_response(404, "Issue not found")
        body = json.loads(response.body)

        assert response.status_code == 404
        assert body["success"] is False
        assert body["error"] == {
            "code": "NOT_FOUND",
            "message": "Issue not found",
            "statusCode": 404,
        }
        assert "requestId" in body

    def test_details_and_headers(self):
        response = _error_response(
            429,
            "Too many requests",
            {"retryAfter": 30},
            headers={"Retry-After": "30"},
        )
        body = json.loads(response.body)
        assert body["error"]["details"] == {"retryAfter": 30}
        assert response.headers["Retry-After"] == "30"

    def test_empty_details_are_dropped(self):
        body = json.loads(_error_response(400, "bad", {}).body)
        assert "details" not in body["error"]


@pytest.fixture
def client():
    return TestClient(app_module.app)


class TestHttpErrors:
    def test_unknown_route(self, client):
        response = client.get("/api/nope")
        body = response.json()

        assert response.status_code == 404
        assert body["error"]["code"] == "NOT_FOUND"
        assert body["error"]["message"] == "Route /api/nope not found"

    def test_request_validation_lists_fields(self, client):
        response = client.post(
            "/api/auth/register",
            json={"email": "not-an-email", "password": "Abcdef1!", "firstName": "", "lastName": "X"},
        )
        body = response.json()

        assert response.status_code == 400
        assert body["error"]["code"] == "VALIDATION_ERROR"
        assert body["error"]["message"] == "Validation failed"
        fields = {e["field"]: e["message"] for e in body["error"]["details"]["errors"]}
        assert fields["email"] == "Please provide a valid email address"
        assert "firstName" in fields

    def test_missing_bearer_token(self, client):
        response = client.get("/api/issues")

        assert response.status_code == 401
        assert response.json()["error"] == {
            "code": "AUTHENTICATION_ERROR",
            "message": "Invalid or expired token",
            "statusCode": 401,
        }

    def test_request_id_is_echoed(self, client):
        response = client.get("/api/issues", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["requestId"] == "req-123"

    def test_unhandled_error_is_500_envelope(self, monkeypatch):
        from issuetrack.service.runtime import get_runtime

        def _boom(_user_id):
            raise RuntimeError("stats exploded")

        runtime = get_runtime()
        monkeypatch.setattr(runtime.stats, "dashboard", _boom)
        client = TestClient(app_module.app, raise_server_exceptions=False)
        registered = client.post(
            "/api/auth/register",
            json={
                "email": "boom@example.com",
                "password": "Abcdef1!",
                "firstName": "Boom",
                "lastName": "Case",
            },
        )
        token = registered.json()["data"]["accessToken"]

        response = client.get("/api/stats", headers={"Authorization": f"Bearer {token}"})
        body = response.json()

        assert response.status_code == 500
        assert body["error"]["code"] == "INTERNAL_ERROR"
        assert body["error"]["message"] == "Internal server error"
        # non-production responses carry the exception type for debugging
        assert body["error"]["details"]["type"] == "RuntimeError"
