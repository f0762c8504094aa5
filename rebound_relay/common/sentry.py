"""
Callback handler for sanitizing Sentry events.

Webhook handlers hold signing secrets, raw signature headers and provider API keys
in local variables, all of which end up in frame variable extraction when an
exception is reported. Everything matching `REMOVE_VARS` is replaced before the
event leaves the process.
"""

from typing import Optional, Any


SENSITIVE_DATA_PLACEHOLDER = "[REDACTED]"

# non-exhaustive list of vars to remove from Sentry events
REMOVE_VARS = {
    "password",
    "secret",
    "token",
    "api_key",
    "webhook_secret",
    "client_secret",
    "signature",
    "stripe_signature",
    "webhook-signature",
    "authorization",
    "access_token",
}


def _sanitize_dictionaries(vars: dict) -> dict:
    """
    Recursively remove sensitive content from the given dictionary of variables.
    """
    for key in list(vars):
        if key.lower() in REMOVE_VARS:
            vars[key] = SENSITIVE_DATA_PLACEHOLDER
        elif isinstance(vars[key], dict):
            vars[key] = _sanitize_dictionaries(vars[key])
        elif isinstance(vars[key], list):
            vars[key] = [_sanitize_dictionaries(item) if isinstance(item, dict) else item for item in vars[key]]
    return vars


def sanitize_event(event: dict[str, Any], hint: dict[str, Any]) -> Optional[dict[str, Any]]:
    if 'exception' not in event:
        return event

    for value in event["exception"].get("values", []):
        frames = value.get("stacktrace", {}).get("frames", [])
        for frame in frames:
            if frame_vars := frame.get("vars"):
                frame['vars'] = _sanitize_dictionaries(frame_vars)
    return event
