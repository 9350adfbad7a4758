"""Error responses share one envelope: {success:false, message, code, ...}."""

import json

from asphaltworks.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    error_response,
)
from asphaltworks.api.schemas import Envelope, ErrorEnvelope, FieldError


class TestEnvelopeModels:
    def test_success_envelope_drops_empty_keys(self):
        dumped = Envelope(data={"user": None}).model_dump(by_alias=True)
        assert dumped == {"success": True, "data": {"user": None}}

    def test_request_id_is_camel_cased(self):
        dumped = Envelope(message="ok", request_id="abc").model_dump(by_alias=True)
        assert dumped == {"success": True, "message": "ok", "requestId": "abc"}

    def test_error_envelope(self):
        envelope = ErrorEnvelope(
            message="validation failed",
            code="validation_error",
            errors=[FieldError(field="email", message="invalid email address")],
        )
        assert envelope.model_dump(by_alias=True) == {
            "success": False,
            "message": "validation failed",
            "code": "validation_error",
            "errors": [{"field": "email", "message": "invalid email address"}],
        }


class TestErrorCodes:
    def test_known_statuses(self):
        assert _STATUS_TO_CODE[401] == "unauthorized"
        assert _error_code_for_status(429) == "rate_limited"

    def test_unknown_statuses_fall_back(self):
        assert _error_code_for_status(418) == "validation_error"
        assert _error_code_for_status(503) == "server_error"

    def test_error_response_body_and_headers(self):
        response = error_response(
            429, "slow down", retry_after=30, headers={"Retry-After": "30"}
        )
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "30"
        assert json.loads(response.body) == {
            "success": False,
            "message": "slow down",
            "code": "rate_limited",
            "retryAfter": 30,
        }


class TestHttpErrors:
    def test_unknown_route(self, client):
        response = client.get("/api/does-not-exist")
        assert response.status_code == 404
        assert response.json() == {
            "success": False,
            "message": "route not found",
            "code": "not_found",
            "details": {"path": "/api/does-not-exist"},
        }

    def test_method_not_allowed(self, client):
        response = client.delete("/api/auth/status")
        assert response.status_code == 405
        assert response.json()["code"] == "method_not_allowed"

    def test_validation_lists_fields(self, client):
        response = client.post("/api/auth/login", json={"email": "not-an-email"})
        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "validation_error"
        fields = {e["field"] for e in body["errors"]}
        assert fields == {"email", "password"}

    def test_malformed_json(self, client):
        response = client.post(
            "/api/auth/login",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_domain_errors_carry_details(self, client):
        response = client.get("/api/auth/profile", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401
        assert response.json()["details"]["reason"] == "token_invalid"

    def test_request_id_round_trip(self, client):
        response = client.get("/api/does-not-exist", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
