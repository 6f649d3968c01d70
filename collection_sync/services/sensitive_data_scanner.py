"""Detect and blank plain-text secrets in request and collection data.

Values that are variable references (``{{name}}``) are never reported or
blanked: the secret lives in an environment, not in the collection.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass
from typing import Any

SENSITIVE_HEADER_KEYS: frozenset[str] = frozenset(
    {
        "authorization",
        "proxy-authorization",
        "x-api-key",
        "x-auth-token",
        "x-access-token",
        "x-secret-key",
        "x-csrf-token",
        "x-xsrf-token",
        "x-token",
        "cookie",
        "set-cookie",
    }
)

SENSITIVE_PARAM_KEYS: frozenset[str] = frozenset(
    {
        # Auth tokens
        "token", "access_token", "accesstoken", "auth_token", "authtoken",
        "refresh_token", "refreshtoken", "bearer_token", "id_token",
        "session_token", "sessiontoken", "jwt", "jwt_token", "oauth_token",
        "csrf_token", "xsrf_token",
        # API keys
        "api_key", "apikey", "api-key", "api_secret", "apisecret",
        "app_key", "appkey", "app_secret", "appsecret",
        "consumer_key", "consumer_secret", "master_key", "masterkey",
        # Passwords and secrets
        "password", "passwd", "pass", "secret", "secret_key", "secretkey",
        "private_key", "privatekey", "signing_key", "encryption_key",
        "hmac_key", "hmac_secret", "webhook_secret", "client_secret", "client_id",
        # Generic
        "key", "credentials", "credential",
        # Session / identity
        "session_id", "sessionid", "sid", "pin", "otp", "totp", "totp_secret",
        "recovery_code",
        # Database
        "db_password", "database_password", "connection_string",
        # Cloud / service-specific
        "aws_secret_access_key", "aws_access_key_id", "stripe_key", "stripe_secret",
        "twilio_auth_token", "sendgrid_api_key", "slack_token", "github_token",
        "gitlab_token", "heroku_api_key", "firebase_api_key",
        # Financial / PII
        "ssn", "credit_card", "card_number", "cvv", "cvc", "account_number",
        "routing_number",
    }
)

ALL_SENSITIVE_KEYS: frozenset[str] = SENSITIVE_HEADER_KEYS | SENSITIVE_PARAM_KEYS

# auth type -> (field holding the secret, label used in findings)
AUTH_SECRET_FIELDS: dict[str, tuple[str, str]] = {
    "bearer": ("bearer_token", "bearer token"),
    "basic": ("basic_password", "basic password"),
    "api-key": ("api_key_value", "api-key value"),
}

KEY_VALUE_BODY_TYPES = frozenset({"form-data", "urlencoded"})

_VARIABLE_REF_RE = re.compile(r"\{\{(.+?)\}\}")
_MASK_VISIBLE = 4
_MASK_MAX_STARS = 8


@dataclass
class SensitiveFinding:
    """A plain-text secret found in a collection."""

    source: str
    request_name: str | None
    request_id: str | None
    field: str
    key: str
    masked_value: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def is_variable_reference(value: str) -> bool:
    """Return True if the value contains a ``{{name}}`` reference."""
    return _VARIABLE_REF_RE.search(value) is not None


def mask_value(value: str) -> str:
    """Keep the first four characters and replace the rest with at most eight ``*``."""
    if len(value) <= _MASK_VISIBLE:
        return value
    return value[:_MASK_VISIBLE] + "*" * min(len(value) - _MASK_VISIBLE, _MASK_MAX_STARS)


def _is_secret(key: str, value: Any, sensitive_keys: frozenset[str]) -> bool:
    return (
        isinstance(value, str)
        and value != ""
        and not is_variable_reference(value)
        and key.lower() in sensitive_keys
    )


def _load_json(text: str) -> Any:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None


# ── Scanning ──


def _scan_pairs(
    pairs: Iterable[Any],
    sensitive_keys: frozenset[str],
    source: str,
    field: str,
    request: Mapping[str, Any],
) -> list[SensitiveFinding]:
    findings: list[SensitiveFinding] = []
    for pair in pairs:
        if not isinstance(pair, Mapping):
            continue
        key = pair.get("key") or ""
        value = pair.get("value") or ""
        if key and _is_secret(key, value, sensitive_keys):
            findings.append(
                SensitiveFinding(
                    source=source,
                    request_name=request.get("name"),
                    request_id=request.get("id"),
                    field=field,
                    key=key,
                    masked_value=mask_value(value),
                )
            )
    return findings


def _scan_json(data: Any, request: Mapping[str, Any]) -> list[SensitiveFinding]:
    findings: list[SensitiveFinding] = []
    stack: list[Any] = [data]
    while stack:
        node = stack.pop()
        if isinstance(node, list):
            stack.extend(reversed([item for item in node if isinstance(item, dict | list)]))
            continue
        if not isinstance(node, dict):
            continue
        nested: list[Any] = []
        for key, value in node.items():
            if isinstance(value, dict | list):
                nested.append(value)
            elif _is_secret(str(key), value, SENSITIVE_PARAM_KEYS):
                findings.append(
                    SensitiveFinding(
                        source="body",
                        request_name=request.get("name"),
                        request_id=request.get("id"),
                        field="body",
                        key=str(key),
                        masked_value=mask_value(value),
                    )
                )
        stack.extend(reversed(nested))
    return findings


def _scan_auth(request: Mapping[str, Any]) -> list[SensitiveFinding]:
    auth = request.get("auth")
    if not isinstance(auth, Mapping):
        return []
    secret_field = AUTH_SECRET_FIELDS.get(auth.get("type") or "none")
    if secret_field is None:
        return []
    field_name, label = secret_field
    value = auth.get(field_name)
    if not isinstance(value, str) or not value or is_variable_reference(value):
        return []
    return [
        SensitiveFinding(
            source="auth",
            request_name=request.get("name"),
            request_id=request.get("id"),
            field="auth",
            key=label,
            masked_value=mask_value(value),
        )
    ]


def _scan_body(request: Mapping[str, Any]) -> list[SensitiveFinding]:
    body = request.get("body")
    if not body or not isinstance(body, str):
        return []
    decoded = _load_json(body)
    if request.get("body_type") in KEY_VALUE_BODY_TYPES:
        if isinstance(decoded, list):
            return _scan_pairs(decoded, SENSITIVE_PARAM_KEYS, "body", "body", request)
        return []
    if isinstance(decoded, dict | list):
        return _scan_json(decoded, request)
    return []


def scan_request(request: Mapping[str, Any]) -> list[SensitiveFinding]:
    """Scan auth, headers, query parameters and body of one decoded request."""
    return [
        *_scan_auth(request),
        *_scan_pairs(
            request.get("headers") or [], SENSITIVE_HEADER_KEYS, "header", "headers", request
        ),
        *_scan_pairs(
            request.get("query_params") or [],
            SENSITIVE_PARAM_KEYS,
            "param",
            "query_params",
            request,
        ),
        *_scan_body(request),
    ]


def collect_referenced_variables(requests: Iterable[Mapping[str, Any]]) -> set[str]:
    """Return names used as ``{{name}}`` anywhere in the given requests."""
    names: set[str] = set()
    for request in requests:
        haystack = json.dumps(
            [
                request.get("url"),
                request.get("headers"),
                request.get("query_params"),
                request.get("body"),
                request.get("auth"),
            ]
        )
        names.update(_VARIABLE_REF_RE.findall(haystack))
    return names


def scan_collection(
    requests: Iterable[Mapping[str, Any]],
    variables: Iterable[Any],
) -> list[SensitiveFinding]:
    """Scan every request plus the collection variables.

    Variables referenced by a request are skipped: they are expected to hold
    values the collection needs to run.
    """
    request_list = list(requests)
    findings: list[SensitiveFinding] = []
    for request in request_list:
        findings.extend(scan_request(request))

    referenced = collect_referenced_variables(request_list)
    for variable in variables:
        if not isinstance(variable, Mapping):
            continue
        key = variable.get("key") or ""
        value = variable.get("value") or ""
        if not key or key in referenced:
            continue
        if _is_secret(key, value, ALL_SENSITIVE_KEYS):
            findings.append(
                SensitiveFinding(
                    source="variable",
                    request_name=None,
                    request_id=None,
                    field="variables",
                    key=key,
                    masked_value=mask_value(value),
                )
            )
    return findings


# ── Sanitization ──


def _sanitize_pairs(pairs: list[Any], sensitive_keys: frozenset[str]) -> list[Any]:
    sanitized: list[Any] = []
    for pair in pairs:
        if isinstance(pair, Mapping) and _is_secret(
            pair.get("key") or "", pair.get("value") or "", sensitive_keys
        ):
            sanitized.append({**pair, "value": ""})
        else:
            sanitized.append(pair)
    return sanitized


def _sanitize_json(data: Any) -> Any:
    if isinstance(data, list):
        return [_sanitize_json(item) for item in data]
    if not isinstance(data, dict):
        return data
    result: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, dict | list):
            result[key] = _sanitize_json(value)
        elif _is_secret(str(key), value, SENSITIVE_PARAM_KEYS):
            result[key] = ""
        else:
            result[key] = value
    return result


def _sanitize_body(body: str, body_type: str) -> str:
    decoded = _load_json(body)
    if body_type in KEY_VALUE_BODY_TYPES:
        if isinstance(decoded, list):
            return json.dumps(_sanitize_pairs(decoded, SENSITIVE_PARAM_KEYS))
        return body
    if isinstance(decoded, dict | list):
        return json.dumps(_sanitize_json(decoded))
    return body


def sanitize_request_data(data: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of a request document with secret values blanked."""
    result = dict(data)
    auth = result.get("auth")
    if isinstance(auth, Mapping):
        auth = dict(auth)
        secret_field = AUTH_SECRET_FIELDS.get(auth.get("type") or "none")
        if secret_field is not None:
            value = auth.get(secret_field[0])
            if isinstance(value, str) and value and not is_variable_reference(value):
                auth[secret_field[0]] = ""
        result["auth"] = auth
    if isinstance(result.get("headers"), list):
        result["headers"] = _sanitize_pairs(result["headers"], SENSITIVE_HEADER_KEYS)
    if isinstance(result.get("query_params"), list):
        result["query_params"] = _sanitize_pairs(result["query_params"], SENSITIVE_PARAM_KEYS)
    if result.get("body") and isinstance(result["body"], str):
        result["body"] = _sanitize_body(result["body"], result.get("body_type") or "none")
    return result


def sanitize_collection_data(data: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of a collection document with secret variable values blanked."""
    variables = data.get("variables")
    if not isinstance(variables, list):
        return data
    return {**data, "variables": _sanitize_pairs(variables, ALL_SENSITIVE_KEYS)}
