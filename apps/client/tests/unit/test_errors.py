"""Unit tests for the gpulse error system."""

from __future__ import annotations

import pytest


@pytest.mark.unit
def test_error_definition_defaults():
    from gpulse_client.errors import ErrorDefinition

    ed = ErrorDefinition(code="TEST-001", message="Test error")
    assert ed.code == "TEST-001"
    assert ed.message == "Test error"
    assert ed.retryable is False
    assert ed.fatal is False


@pytest.mark.unit
def test_server_not_found_is_fatal():
    from gpulse_client.errors import ServerNotFound

    err = ServerNotFound(details={"executable": "/missing"})
    assert err.code == "GP-LAUNCH-001"
    assert str(err) == "Language server executable not found"
    assert err.fatal is True
    assert err.retryable is False
    assert err.details == {"executable": "/missing"}


@pytest.mark.unit
def test_transport_start_failure_is_retryable():
    from gpulse_client.errors import ActivationCancelled, TransportStartFailure

    err = TransportStartFailure("handshake failed")
    assert str(err) == "handshake failed"
    assert err.retryable is True
    assert err.fatal is False
    assert issubclass(ActivationCancelled, TransportStartFailure)
    assert ActivationCancelled().code == "GP-TRANSPORT-002"


@pytest.mark.unit
def test_unexpected_server_exit_carries_returncode():
    from gpulse_client.errors import UnexpectedServerExit

    err = UnexpectedServerExit(3)
    assert err.returncode == 3
    assert err.details == {"returncode": 3}
    assert "returncode=3" in str(err)


@pytest.mark.unit
def test_gpulse_error_to_dict():
    from gpulse_client.errors import ClientNotRunning

    d = ClientNotRunning().to_dict()
    assert d["error"]["code"] == "GP-CLIENT-001"
    assert d["error"]["message"] == "Language client is not running"
    assert d["error"]["retryable"] is True
    assert d["error"]["fatal"] is False
    assert d["error"]["details"] == {}


@pytest.mark.unit
def test_gpulse_error_is_exception():
    from gpulse_client.errors import GpulseError

    with pytest.raises(GpulseError, match="boom"):
        raise GpulseError("boom", code="X")

