"""Field normalizer mapping vendor WAF export records to the canonical event shape.

Export formats disagree on key spelling (``RayID`` vs ``rayId`` vs ``ray_id``)
and even a single record can mix spellings, so every canonical field is
resolved on its own from an ordered list of aliases. Only the correlation id
and the timestamp are mandatory; every other field degrades to ``None``.

Records with several firewall matches (``FirewallMatchesRuleIDs`` and
friends) are collapsed to their primary match: only the first element of the
first present list is kept.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Literal, Optional

RuleType = Literal["managed", "custom", "unknown"]
Action = Literal["block", "challenge", "log", "skip", "allow", "unknown"]

# Epoch values below this are seconds (10 digits), at or above are milliseconds
SECONDS_THRESHOLD = 10_000_000_000

# Signed ranges of the Integer and BigInteger columns numeric fields land in
INT32_RANGE = (-(2**31), 2**31 - 1)
INT64_RANGE = (-(2**63), 2**63 - 1)

# Longest value kept for indexed text fields (btree entries are size-limited)
MAX_KEY_LENGTH = 512

CORRELATION_ID_KEYS = ("RayID", "rayId", "ray_id", "rayName", "ray_name")
TIMESTAMP_KEYS = ("EdgeStartTimestamp", "edgeStartTimestamp", "timestamp", "event_timestamp", "datetime")
SRC_IP_KEYS = ("ClientIP", "clientIP", "client_ip", "source_ip")
SRC_COUNTRY_KEYS = (
    "ClientCountry",
    "clientCountry",
    "client_country",
    "clientCountryName",
    "client_country_name",
)
SRC_ASN_KEYS = ("ClientASN", "clientASN", "client_asn", "clientAsn")
COLO_KEYS = ("EdgeColoCode", "edgeColoCode", "colo", "datacenter", "edgeColo", "edge_colo")
HOST_KEYS = (
    "ClientRequestHost",
    "clientRequestHost",
    "host",
    "hostname",
    "clientRequestHTTPHost",
    "client_request_http_host",
)
PATH_KEYS = ("ClientRequestPath", "clientRequestPath", "path", "uri", "client_request_path")
METHOD_KEYS = (
    "ClientRequestMethod",
    "clientRequestMethod",
    "method",
    "clientRequestHTTPMethodName",
    "client_request_http_method_name",
)
STATUS_KEYS = ("EdgeResponseStatus", "edgeResponseStatus", "status", "edge_response_status")
RULE_ID_KEYS = ("FirewallMatchesRuleIDs", "firewallMatchesRuleIDs", "rule_id", "ruleId", "WAFRuleID", "wafRuleID")
ACTION_KEYS = ("FirewallMatchesActions", "firewallMatchesActions", "action", "WAFAction", "wafAction")
SERVICE_KEYS = ("FirewallMatchesSources", "firewallMatchesSources", "service", "source")
RULE_NAME_KEYS = ("WAFRuleMessage", "wafRuleMessage", "rule_name", "description")
MITIGATION_REASON_KEYS = ("MitigationReason", "mitigationReason", "mitigation_reason")
USER_AGENT_KEYS = ("ClientRequestUserAgent", "clientRequestUserAgent", "user_agent", "ua", "userAgent")
TLS_FINGERPRINT_KEYS = ("JA3Hash", "ja3Hash", "ja3", "tls_fingerprint")
BYTES_KEYS = ("ClientRequestBytes", "clientRequestBytes", "bytes", "client_request_bytes")
THREAT_SCORE_KEYS = ("SecurityLevel", "securityLevel", "threat_score", "threatScore")

ACTION_SYNONYMS: dict[str, Action] = {
    "block": "block",
    "blocked": "block",
    "drop": "block",
    "deny": "block",
    "challenge": "challenge",
    "challenged": "challenge",
    "jschallenge": "challenge",
    "managedchallenge": "challenge",
    "interactivechallenge": "challenge",
    "log": "log",
    "logged": "log",
    "skip": "skip",
    "skipped": "skip",
    "bypass": "skip",
    "allow": "allow",
    "allowed": "allow",
    "pass": "allow",
}

MANAGED_SERVICE_LABELS = frozenset({"managed", "firewallmanaged", "waf"})
CUSTOM_SERVICE_LABELS = frozenset({"custom", "firewallcustom", "firewallrules"})


@dataclass(frozen=True)
class NormalizedEvent:
    """A vendor-agnostic security event ready to be stored."""

    correlation_id: str
    event_ts: int
    src_ip: Optional[str] = None
    src_country: Optional[str] = None
    src_asn: Optional[int] = None
    colo: Optional[str] = None
    host: Optional[str] = None
    path: Optional[str] = None
    method: Optional[str] = None
    status: Optional[int] = None
    rule_id: Optional[str] = None
    rule_name: Optional[str] = None
    rule_type: RuleType = "unknown"
    action: Action = "unknown"
    service: Optional[str] = None
    mitigation_reason: Optional[str] = None
    ua: Optional[str] = None
    tls_fingerprint: Optional[str] = None
    bytes: Optional[int] = None
    threat_score: Optional[int] = None

    def to_row(self) -> dict[str, Any]:
        """Column mapping for the waf_events table."""
        return asdict(self)


def normalize_record(raw: Any) -> Optional[NormalizedEvent]:
    """Normalize one raw vendor record.

    Args:
        raw: Decoded JSON value for a single record.

    Returns:
        The canonical event, or None when the record has no usable
        correlation id or timestamp (or is not an object at all).
    """
    if not isinstance(raw, Mapping):
        return None

    correlation_id = _first_string(raw, CORRELATION_ID_KEYS, max_length=MAX_KEY_LENGTH)
    if correlation_id is None:
        return None

    event_ts = normalize_timestamp(_first_present(raw, TIMESTAMP_KEYS))
    if event_ts is None:
        return None

    rule_id = _first_string(raw, RULE_ID_KEYS, allow_int=True, max_length=MAX_KEY_LENGTH)
    service = _first_string(raw, SERVICE_KEYS)

    return NormalizedEvent(
        correlation_id=correlation_id,
        event_ts=event_ts,
        src_ip=_first_string(raw, SRC_IP_KEYS, max_length=MAX_KEY_LENGTH),
        src_country=_first_string(raw, SRC_COUNTRY_KEYS),
        src_asn=_first_number(raw, SRC_ASN_KEYS, INT64_RANGE),
        colo=_first_string(raw, COLO_KEYS),
        host=_first_string(raw, HOST_KEYS, max_length=MAX_KEY_LENGTH),
        path=_first_string(raw, PATH_KEYS),
        method=_first_string(raw, METHOD_KEYS),
        status=_first_number(raw, STATUS_KEYS, INT32_RANGE),
        rule_id=rule_id,
        rule_name=_first_string(raw, RULE_NAME_KEYS),
        rule_type=determine_rule_type(rule_id, service),
        action=normalize_action(_first_string(raw, ACTION_KEYS)),
        service=service,
        mitigation_reason=_first_string(raw, MITIGATION_REASON_KEYS),
        ua=_first_string(raw, USER_AGENT_KEYS),
        tls_fingerprint=_first_string(raw, TLS_FINGERPRINT_KEYS),
        bytes=_first_number(raw, BYTES_KEYS, INT64_RANGE),
        threat_score=_first_number(raw, THREAT_SCORE_KEYS, INT32_RANGE),
    )


def normalize_timestamp(value: Any) -> Optional[int]:
    """Convert an epoch number, numeric string or ISO-8601 string to epoch ms."""
    if isinstance(value, bool) or value is None:
        return None

    if isinstance(value, (int, float)):
        return _epoch_to_ms(value)

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        number = _parse_number(text)
        if number is not None:
            return _epoch_to_ms(number)
        return _parse_iso8601(text)

    return None


def normalize_action(value: Optional[str]) -> Action:
    """Map a vendor action spelling to the closed action set."""
    if not value:
        return "unknown"
    key = value.lower().replace("_", "").replace("-", "")
    return ACTION_SYNONYMS.get(key, "unknown")


def determine_rule_type(rule_id: Optional[str], service: Optional[str]) -> RuleType:
    """Best-effort managed/custom classification from rule id and source label."""
    if not rule_id:
        return "unknown"

    label = (service or "").lower()
    if (
        rule_id.startswith("managed_")
        or "OWASP" in rule_id
        or "cloudflare" in rule_id.lower()
        or label in MANAGED_SERVICE_LABELS
    ):
        return "managed"

    if rule_id.startswith("custom_") or label in CUSTOM_SERVICE_LABELS:
        return "custom"

    return "unknown"


def coerce_int(value: Any) -> Optional[int]:
    """Coerce a number or numeric string to int, None if not numeric."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        number = _parse_number(value.strip())
        return int(number) if number is not None else None
    return None


def bounded_int(value: Any, bounds: tuple[int, int]) -> Optional[int]:
    """Like coerce_int, but values outside ``bounds`` (inclusive) are absent."""
    number = coerce_int(value)
    if number is None:
        return None
    low, high = bounds
    return number if low <= number <= high else None


# =============================================================================
# Helpers
# =============================================================================


def _is_empty(value: Any) -> bool:
    if isinstance(value, str):
        return not value.strip()
    return value is None or value == []


def _as_string(value: Any, allow_int: bool) -> Optional[str]:
    if isinstance(value, str):
        return value if value.strip() else None
    if allow_int and isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return None


def _first_present(raw: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = raw.get(key)
        if isinstance(value, list):
            if value:
                return value[0]
            continue
        if not _is_empty(value):
            return value
    return None


def _first_string(
    raw: Mapping[str, Any],
    keys: tuple[str, ...],
    allow_int: bool = False,
    max_length: Optional[int] = None,
) -> Optional[str]:
    text = _lookup_string(raw, keys, allow_int)
    if text is not None and max_length is not None:
        return text[:max_length]
    return text


def _lookup_string(raw: Mapping[str, Any], keys: tuple[str, ...], allow_int: bool) -> Optional[str]:
    # A non-empty list alias settles the field even if its first element is unusable
    for key in keys:
        value = raw.get(key)
        if isinstance(value, list):
            if value:
                return _as_string(value[0], allow_int)
            continue
        text = _as_string(value, allow_int)
        if text is not None:
            return text
    return None


def _first_number(
    raw: Mapping[str, Any], keys: tuple[str, ...], bounds: tuple[int, int]
) -> Optional[int]:
    for key in keys:
        value = raw.get(key)
        if isinstance(value, list):
            if value:
                return bounded_int(value[0], bounds)
            continue
        number = bounded_int(value, bounds)
        if number is not None:
            return number
    return None


def _parse_number(text: str) -> Optional[float]:
    try:
        number = float(text)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def _epoch_to_ms(value: float) -> Optional[int]:
    if not math.isfinite(value) or value <= 0:
        return None
    if value < SECONDS_THRESHOLD:
        return int(round(value * 1000))
    ms = int(value)
    return ms if ms <= INT64_RANGE[1] else None


def _parse_iso8601(text: str) -> Optional[int]:
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)
