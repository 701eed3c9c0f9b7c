from __future__ import annotations

from acpdesk.errors import (
    AuthRequiredError,
    ConnectionCancelled,
    DisconnectedError,
    InternalRpcError,
    MethodNotFoundError,
    RequestTimeoutError,
    RpcError,
    TransportError,
    is_auth_required,
)


def test_from_wire_maps_known_codes() -> None:
    assert isinstance(RpcError.from_wire({"code": -32601, "message": "x"}), MethodNotFoundError)
    assert isinstance(RpcError.from_wire({"code": -32000, "message": "x"}), AuthRequiredError)
    assert isinstance(RpcError.from_wire({"code": -32603, "message": "x"}), InternalRpcError)


def test_from_wire_keeps_unknown_code_and_data() -> None:
    error = RpcError.from_wire({"code": 42, "message": "odd", "data": {"k": 1}})

    assert type(error) is RpcError
    assert error.code == 42
    assert error.message == "odd"
    assert error.data == {"k": 1}


def test_from_wire_without_code_is_internal() -> None:
    error = RpcError.from_wire({"message": "missing code"})

    assert error.code == -32603


def test_method_not_found_message_names_method() -> None:
    error = MethodNotFoundError.for_method("terminal/create")

    assert error.to_error_obj() == {
        "code": -32601,
        "message": "Method not found: terminal/create",
        "data": {"method": "terminal/create"},
    }


def test_is_auth_required_by_code_or_message() -> None:
    assert is_auth_required(RpcError("nope", code=-32000))
    assert is_auth_required(RpcError("Authentication Required: please log in", code=-32603))
    assert not is_auth_required(RpcError("Internal error"))


def test_is_auth_required_ignores_local_failures() -> None:
    assert not is_auth_required(RequestTimeoutError("session/new", 1))
    assert not is_auth_required(DisconnectedError("authentication required"))
    assert not is_auth_required(TransportError("authentication required"))
    assert not is_auth_required(ConnectionCancelled())


def test_timeout_message_names_method() -> None:
    error = RequestTimeoutError("initialize", 60)

    assert "initialize" in error.message
    assert "60s" in error.message
