"""
Tests for the Sentry event sanitizer
"""

from rebound_relay.common.sentry import sanitize_event, SENSITIVE_DATA_PLACEHOLDER


def test_sanitize_event_without_exception():
    """Test that events without exceptions are returned unchanged"""
    mock_event = {"message": "Test event without exception"}
    result = sanitize_event(mock_event, {})

    assert result is mock_event


def test_sanitize_event_empty_vars():
    mock_event = {"exception": {"values": [{"stacktrace": {"frames": [{"vars": {}}]}}]}}

    result = sanitize_event(mock_event, {})
    assert result["exception"]["values"][0]["stacktrace"]["frames"][0]["vars"] == {}


def test_webhook_secrets_are_redacted():
    """Secrets a webhook handler holds in locals never reach Sentry"""
    mock_event = {
        "exception": {
            "values": [
                {
                    "stacktrace": {
                        "frames": [
                            {
                                "vars": {
                                    "stripe_signature": "t=1700000000,v1=abc",
                                    "payload": b"{}",
                                    "headers": {
                                        "webhook-id": "msg_1",
                                        "webhook-signature": "v1,abc",
                                        "Authorization": "Bearer A21AA",
                                    },
                                    "config": {"api_key": "sk_live_123", "settings": {"client_secret": "pp"}},
                                    "tokens": [{"access_token": "A21AA", "expires_in": 3600}],
                                    "amounts": [1, 2, None],
                                }
                            }
                        ]
                    }
                }
            ]
        }
    }

    result = sanitize_event(mock_event, {})
    frame_vars = result["exception"]["values"][0]["stacktrace"]["frames"][0]["vars"]

    assert frame_vars["stripe_signature"] == SENSITIVE_DATA_PLACEHOLDER
    assert frame_vars["payload"] == b"{}"

    assert frame_vars["headers"]["webhook-id"] == "msg_1"
    assert frame_vars["headers"]["webhook-signature"] == SENSITIVE_DATA_PLACEHOLDER
    assert frame_vars["headers"]["Authorization"] == SENSITIVE_DATA_PLACEHOLDER

    assert frame_vars["config"]["api_key"] == SENSITIVE_DATA_PLACEHOLDER
    assert frame_vars["config"]["settings"]["client_secret"] == SENSITIVE_DATA_PLACEHOLDER

    assert frame_vars["tokens"][0]["access_token"] == SENSITIVE_DATA_PLACEHOLDER
    assert frame_vars["tokens"][0]["expires_in"] == 3600
    assert frame_vars["amounts"] == [1, 2, None]
