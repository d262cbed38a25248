"""Error responses share one envelope:

{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "...", "details": <object|array|null>},
    "request_id": "<id>"
}
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel, ValidationError

from gymauth.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    rate_limited_response,
    register_exception_handlers,
)
from gymauth.api.schemas import Envelope, ErrorBody
from gymauth.app import app
from gymauth.service.errors import ConflictError
from gymauth.storage.errors import ConstraintViolation


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.details is None

    def test_details_accept_dict_or_list(self):
        assert ErrorBody(code="validation_error", message="bad", details={"field": "email"}).details
        assert len(ErrorBody(code="validation_error", message="bad", details=[{}, {}]).details) == 2

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError) as excinfo:
            ErrorBody(code="teapot", message="short and stout")
        assert "Invalid error code" in str(excinfo.value)

    @pytest.mark.parametrize(
        "code",
        ["unauthorized", "forbidden", "not_found", "rate_limited", "validation_error", "conflict", "server_error"],
    )
    def test_stable_codes_accepted(self, code):
        assert ErrorBody(code=code, message="x").code == code


class TestEnvelope:
    def test_request_id_generated(self):
        first = Envelope(status="ok")
        second = Envelope(status="ok")
        assert first.request_id and first.request_id != second.request_id

    def test_status_must_be_ok_or_error(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")


class TestStatusMapping:
    def test_known_statuses(self):
        assert _STATUS_TO_CODE[401] == "unauthorized"
        assert _STATUS_TO_CODE[429] == "rate_limited"
        assert _error_code_for_status(404) == "not_found"

    def test_unknown_status_falls_back_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_error_response_shape(self):
        resp = _error_response(409, "duplicate", {"field": "email"})
        assert resp.status_code == 409
        assert b'"code":"conflict"' in resp.body
        assert b'"status":"error"' in resp.body


class Payload(BaseModel):
    count: int


@pytest.fixture
def error_client():
    mini = FastAPI()
    register_exception_handlers(mini)

    @mini.get("/api/constraint")
    async def constraint():
        raise ConstraintViolation("users_email_key", {"constraint": "users_email_key"})

    @mini.get("/api/conflict")
    async def conflict():
        raise ConflictError("Username or email already exists")

    @mini.get("/api/boom")
    async def boom():
        raise RuntimeError("database password is hunter2")

    @mini.post("/api/payload")
    async def payload(body: Payload):
        return {"count": body.count}

    return TestClient(mini, raise_server_exceptions=False)


class TestHandlers:
    def test_unknown_route_uses_envelope(self):
        resp = TestClient(app).get("/api/does-not-exist")
        assert resp.status_code == 404
        body = resp.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "not_found"
        assert body["request_id"]

    def test_constraint_violation_is_conflict(self, error_client):
        resp = error_client.get("/api/constraint")
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_service_error_keeps_status_and_message(self, error_client):
        resp = error_client.get("/api/conflict")
        assert resp.status_code == 409
        assert resp.json()["error"]["message"] == "Username or email already exists"

    def test_rate_limited_sets_retry_after(self):
        resp = rate_limited_response(30)
        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "30"
        assert b'"details":{"retry_after":30}' in resp.body

    def test_request_validation_is_400(self, error_client):
        resp = error_client.post("/api/payload", json={"count": "many"})
        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"][0]["loc"] == ["body", "count"]

    def test_unhandled_errors_do_not_leak(self, error_client):
        resp = error_client.get("/api/boom")
        assert resp.status_code == 500
        error = resp.json()["error"]
        assert error["message"] == "internal server error"
        assert "hunter2" not in resp.text
