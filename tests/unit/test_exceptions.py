from fastapi import FastAPI
from fastapi.testclient import TestClient

from school_tenancy.exceptions import (
    ProvisioningError,
    SequenceError,
    TenantConnectionError,
    UnknownEntityError,
    register_exception_handlers,
)


def _app():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/down")
    async def down():
        raise TenantConnectionError("NPS", "school_nps", ConnectionRefusedError("refused"))

    @app.get("/sequence")
    async def sequence():
        raise SequenceError("NPS", "student", "counter still invalid after reset: None")

    return app


def test_connection_error_is_503_with_context():
    client = TestClient(_app())
    r = client.get("/down", headers={"X-Request-ID": "req-1"})
    assert r.status_code == 503
    body = r.json()
    assert body["code"] == "tenant_unavailable"
    assert body["details"] == {"tenant_code": "NPS", "database": "school_nps", "cause": "refused"}
    assert body["correlation_id"] == "req-1"


def test_sequence_error_is_500():
    client = TestClient(_app())
    r = client.get("/sequence")
    assert r.status_code == 500
    body = r.json()
    assert body["code"] == "sequence_error"
    assert body["details"]["entity_type"] == "student"
    assert "correlation_id" not in body


def test_error_messages_carry_context():
    err = ProvisioningError("NPS", "disk full", collection="students")
    assert "students" in str(err)
    assert err.collection == "students"
    assert err.code == "provisioning_error"

    err = TenantConnectionError("NPS", "school_nps", TimeoutError())
    assert "TimeoutError" in err.message

    assert UnknownEntityError("widgets").details == {"entity": "widgets"}
