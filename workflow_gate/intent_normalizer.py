"""
Intent normalization.

Two layers:

1. ``parse_intent_text`` / ``parse_run_mode_hint``: pure, deterministic,
   best-effort extraction of CANDIDATE fields from free text. These
   functions never authorize anything and never raise.
2. ``normalize_intent``: the strict typed path. Structured fields win over
   text-derived candidates; every value is format-checked against the
   network's ledger; anything missing or ambiguous raises InputError.
"""

import math
import re
from typing import Any, Dict, List, Optional

from .errors import InputError
from .models import DETERMINISTIC_TRIGGER, EXTERNAL_TRIGGER, Intent, WorkflowPhase
from .networks import NetworkProfile, get_network, known_networks

# address fields are listed in assignment order
INTENT_SCHEMAS: Dict[str, Dict[str, tuple]] = {
    "transfer.native": {"addresses": ("to",), "amounts": ("amountNative",), "strings": ()},
    "transfer.token": {"addresses": ("to", "tokenAddress"), "amounts": ("amount",), "strings": ()},
    "lending.supply": {"addresses": ("market",), "amounts": ("amount",), "strings": ("asset",)},
    "lending.withdraw": {"addresses": ("market",), "amounts": ("amount",), "strings": ("asset",)},
    "lending.borrow": {"addresses": ("market",), "amounts": ("amount",), "strings": ("asset",)},
    "lending.repay": {"addresses": ("market",), "amounts": ("amount",), "strings": ("asset",)},
    "liquidity.add": {"addresses": ("pool",), "amounts": ("amountA", "amountB"), "strings": ()},
    "liquidity.remove": {"addresses": ("pool",), "amounts": ("liquidity",), "strings": ()},
    "bridge.transfer": {
        "addresses": ("to",),
        "amounts": ("amount",),
        "strings": ("asset", "destinationNetwork"),
    },
}

OPTIONAL_STRINGS = ("protocol", "template")
TRIGGER_KINDS = (DETERMINISTIC_TRIGGER, EXTERNAL_TRIGGER)

_NUM = r"(\d+(?:\.\d+)?)"
_NATIVE_UNITS = r"(?:eth|bnb|matic|pol|sol|near|sui|kas|mon|strk|native)"
_GENERIC_ADDRESS = (
    r"0x[a-fA-F0-9]{40,64}"
    r"|kaspa(?:test)?:[a-z0-9]{61,63}"
    r"|(?:[a-z\d]+[-_])*[a-z\d]+(?:\.(?:[a-z\d]+[-_])*[a-z\d]+)*\.(?:near|testnet)"
    r"|[1-9A-HJ-NP-Za-km-z]{32,44}"
)

_TYPE_HINTS = (
    ("liquidity.remove", r"\bremove\s+liquidity\b|\bwithdraw\s+liquidity\b"),
    ("liquidity.add", r"\b(?:add|provide)\s+liquidity\b"),
    ("bridge.transfer", r"\bbridge\b"),
    ("lending.borrow", r"\bborrow\b"),
    ("lending.repay", r"\brepay\b"),
    ("lending.withdraw", r"\b(?:withdraw|redeem)\b"),
    ("lending.supply", r"\b(?:supply|deposit|lend)\b"),
    ("transfer", r"\b(?:send|transfer|pay)\b"),
)

_LABELLED_ADDRESS = {
    "to": r"\b(?:to|recipient)\s*[:=]?\s*",
    "tokenAddress": r"\btoken(?:address)?\s*[:=]?\s*",
    "contract": r"\bcontract\s*[:=]?\s*",
    "market": r"\bmarket\s*[:=]?\s*",
    "pool": r"\bpool\s*[:=]?\s*",
}

_EXECUTE_HINT = re.compile(
    r"(execute|submit|broadcast|send\s+it|live\s+order|real\s+order|\bnow\b.*\bexecute\b)",
    re.IGNORECASE,
)
_SIMULATE_HINT = re.compile(r"(simulate|dry\s*-?\s*run|preview)", re.IGNORECASE)
_ANALYSIS_HINT = re.compile(r"(analysis|analy[sz]e|inspect|check\s+first)", re.IGNORECASE)
_SIMULATE_FIRST = re.compile(r"(first\s+(?:simulate|dry\s*-?\s*run)|(?:simulate|dry\s*-?\s*run)\s+first)", re.IGNORECASE)
_ANALYSIS_FIRST = re.compile(r"(first\s+analy[sz]e|analy[sz]e\s+first|check\s+first)", re.IGNORECASE)

_CONFIRM_TOKEN = re.compile(r"\bconfirmToken\s*[:= ]\s*(WGT1\.[A-Za-z0-9_-]+)", re.IGNORECASE)
_BARE_CONFIRM_TOKEN = re.compile(r"\b(WGT1\.[A-Za-z0-9_-]{16,})")
_CONFIRM_PRODUCTION = re.compile(
    r"(confirm\s+(?:mainnet|production)|confirm(?:mainnet|production)\s*[=:]?\s*true)",
    re.IGNORECASE,
)


# ============================================================================
# FREE-TEXT HINTS (pure, best-effort)
# ============================================================================

def parse_run_mode_hint(text: Optional[str]) -> Optional[str]:
    """Map free text to a phase name, or None when the text says nothing."""
    if not text or not text.strip():
        return None
    has_execute = bool(_EXECUTE_HINT.search(text))
    has_simulate = bool(_SIMULATE_HINT.search(text))
    has_analysis = bool(_ANALYSIS_HINT.search(text))

    if has_simulate and not has_execute:
        return "simulate"
    if has_analysis and not has_execute and not has_simulate:
        return "analysis"
    if has_execute and not has_simulate and not has_analysis:
        return "execute"
    if has_simulate and has_execute:
        return "simulate" if _SIMULATE_FIRST.search(text) else "execute"
    if has_analysis and has_execute:
        return "analysis" if _ANALYSIS_FIRST.search(text) else "execute"
    return None


def resolve_run_mode(explicit: Optional[str], text: Optional[str] = None) -> WorkflowPhase:
    """An explicit phase always wins over a text hint; unknown values mean analysis."""
    if explicit is not None:
        return WorkflowPhase.parse(explicit)
    hint = parse_run_mode_hint(text)
    return WorkflowPhase.parse(hint) if hint else WorkflowPhase.ANALYSIS


def _parse_type_hint(text: str) -> Optional[str]:
    lowered = text.lower()
    for intent_type, pattern in _TYPE_HINTS:
        if re.search(pattern, lowered):
            if intent_type == "transfer":
                return "transfer.token" if re.search(r"\btoken", lowered) else "transfer.native"
            return intent_type
    return None


def _parse_amounts(text: str) -> Dict[str, float]:
    out: Dict[str, float] = {}
    usd = re.search(r"\$\s*" + _NUM, text) or re.search(_NUM + r"\s*(?:usd[ct]?)\b", text, re.IGNORECASE)
    if usd:
        out["amountUsd"] = float(usd.group(1))
    native = re.search(_NUM + r"\s*" + _NATIVE_UNITS + r"\b", text, re.IGNORECASE)
    if native:
        out["amountNative"] = float(native.group(1))
    labelled = re.search(r"\bamount\s*[:=]\s*" + _NUM, text, re.IGNORECASE)
    verb = re.search(
        r"\b(?:send|transfer|pay|supply|deposit|lend|borrow|repay|withdraw|bridge)\s+" + _NUM + r"(?![\d.])(?!\s*(?:usd|\$))",
        text,
        re.IGNORECASE,
    )
    if labelled:
        out["amount"] = float(labelled.group(1))
    elif verb:
        out["amount"] = float(verb.group(1))
    return out


def parse_intent_text(text: Optional[str], network: Optional[str] = None) -> Dict[str, Any]:
    """
    Extract candidate intent fields from free text.

    Returns a partial dict; keys are only present when something was found.
    Unlabelled addresses are returned under ``_addresses`` for the typed
    path to assign by exclusion. Never raises.
    """
    if not text or not text.strip():
        return {}

    candidates: Dict[str, Any] = {}
    intent_type = _parse_type_hint(text)
    if intent_type:
        candidates["type"] = intent_type

    fmt = None
    if network:
        try:
            fmt = get_network(network).format
        except InputError:
            fmt = None
    address_re = fmt.address_body if fmt else _GENERIC_ADDRESS

    labelled_values: List[str] = []
    for field_name, prefix in _LABELLED_ADDRESS.items():
        match = re.search(prefix + r"(" + address_re + r")\b", text, re.IGNORECASE)
        if match:
            value = fmt.normalize_address(match.group(1)) if fmt else match.group(1)
            candidates[field_name] = value
            labelled_values.append(value)

    if fmt:
        found = fmt.find_addresses(text)
    else:
        found = []
        for match in re.finditer(r"\b(?:" + _GENERIC_ADDRESS + r")\b", text):
            if match.group(0) not in found:
                found.append(match.group(0))
    unlabelled = [a for a in found if a not in labelled_values]
    if unlabelled:
        candidates["_addresses"] = unlabelled

    candidates.update(_parse_amounts(text))

    for name in sorted(known_networks(), key=len, reverse=True):
        if re.search(r"(?:\bto|->|destination\s*[:=]?)\s*" + re.escape(name) + r"\b", text, re.IGNORECASE):
            candidates["destinationNetwork"] = name
            break

    asset = re.search(r"\basset\s*[:=]\s*([A-Za-z0-9.]{1,16})\b", text, re.IGNORECASE)
    if asset:
        candidates["asset"] = asset.group(1)

    token = _CONFIRM_TOKEN.search(text) or _BARE_CONFIRM_TOKEN.search(text)
    if token:
        candidates["confirmToken"] = token.group(1)
    if _CONFIRM_PRODUCTION.search(text):
        candidates["confirmProduction"] = True
    mode = parse_run_mode_hint(text)
    if mode:
        candidates["runMode"] = mode
    return candidates


# ============================================================================
# TYPED PATH (strict)
# ============================================================================

def _missing(field_name: str, intent_type: str) -> InputError:
    return InputError(
        "missing-field",
        f"{field_name} is required for {intent_type}",
        remediation=f"Provide {field_name} explicitly in the intent fields.",
    )


def parse_positive_number(value: Any, field_name: str) -> Any:
    if isinstance(value, bool):
        raise InputError("invalid-amount", f"{field_name} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InputError("invalid-amount", f"{field_name} must be a number, got {value!r}")
    if not math.isfinite(number) or number <= 0:
        raise InputError(
            "invalid-amount",
            f"{field_name} must be a positive finite number, got {value!r}",
            remediation=f"Set {field_name} to a value greater than zero.",
        )
    return int(number) if number.is_integer() else number


def _validate_address(value: Any, field_name: str, profile: NetworkProfile) -> str:
    fmt = profile.format
    text = str(value or "").strip()
    if not fmt.is_address(text):
        raise InputError(
            "invalid-address",
            f"{field_name} must be a valid {fmt.ledger} address, got {value!r}",
            remediation=f"Provide a {fmt.ledger} address for {field_name}.",
        )
    return fmt.normalize_address(text)


def _validate_asset(value: Any, profile: NetworkProfile) -> str:
    text = str(value or "").strip()
    if profile.format.is_address(text):
        return profile.format.normalize_address(text)
    if re.fullmatch(r"[A-Za-z0-9.]{1,16}", text):
        return text.upper()
    raise InputError("invalid-asset", f"asset must be a symbol or {profile.ledger} address, got {value!r}")


def _assign_addresses(
    fields: Dict[str, Any],
    address_fields: tuple,
    candidates: Dict[str, Any],
) -> None:
    """Fill unassigned address fields from labelled, then unlabelled candidates."""
    for name in address_fields:
        if fields.get(name) in (None, "") and candidates.get(name):
            fields[name] = candidates[name]

    assigned = {str(fields[n]).lower() for n in address_fields if fields.get(n)}
    unassigned = [n for n in address_fields if fields.get(n) in (None, "")]
    remaining = [a for a in candidates.get("_addresses", []) if str(a).lower() not in assigned]
    # exactly one open slot and exactly one unclaimed address; anything else stays unassigned
    if len(unassigned) == 1 and len(remaining) == 1:
        fields[unassigned[0]] = remaining[0]


def normalize_intent(
    network: str,
    fields: Optional[Dict[str, Any]] = None,
    intent_text: Optional[str] = None,
) -> Intent:
    """
    Build a canonical Intent from structured fields and/or free text.

    Raises:
        InputError: on any missing, ambiguous or malformed field
    """
    profile = get_network(network)
    structured = {k: v for k, v in dict(fields or {}).items() if v is not None}
    candidates = parse_intent_text(intent_text, profile.name)

    intent_type = str(structured.get("type") or candidates.get("type") or "").strip()
    if not intent_type:
        raise InputError(
            "missing-field",
            "intent type is required",
            remediation="Set fields.type to one of: " + ", ".join(sorted(INTENT_SCHEMAS)),
        )
    schema = INTENT_SCHEMAS.get(intent_type)
    if schema is None:
        raise InputError(
            "unsupported-intent",
            f"unsupported intent type '{intent_type}'",
            remediation="Use one of: " + ", ".join(sorted(INTENT_SCHEMAS)),
        )

    merged: Dict[str, Any] = dict(structured)
    merged["type"] = intent_type

    # text-derived generic "amount" maps onto the schema's single amount field
    for name in schema["amounts"]:
        if merged.get(name) is None:
            if candidates.get(name) is not None:
                merged[name] = candidates[name]
            elif len(schema["amounts"]) == 1 and candidates.get("amount") is not None:
                merged[name] = candidates["amount"]
    for name in schema["strings"] + ("amountUsd",):
        if merged.get(name) is None and candidates.get(name) is not None:
            merged[name] = candidates[name]

    _assign_addresses(merged, schema["addresses"], candidates)

    address_profile = profile
    out: Dict[str, Any] = {"type": intent_type}

    if intent_type == "bridge.transfer":
        destination = merged.get("destinationNetwork")
        if not destination:
            raise _missing("destinationNetwork", intent_type)
        address_profile = get_network(destination)
        if address_profile.name == profile.name:
            raise InputError(
                "invalid-bridge",
                "destinationNetwork must differ from the source network",
            )
        out["destinationNetwork"] = address_profile.name

    for name in schema["addresses"]:
        if merged.get(name) in (None, ""):
            raise _missing(name, intent_type)
        # bridge recipients live on the destination ledger, everything else on the source
        target = address_profile if name == "to" else profile
        out[name] = _validate_address(merged[name], name, target)

    for name in schema["amounts"]:
        if merged.get(name) is None:
            raise _missing(name, intent_type)
        out[name] = parse_positive_number(merged[name], name)

    for name in schema["strings"]:
        if name == "destinationNetwork":
            continue
        if merged.get(name) in (None, ""):
            raise _missing(name, intent_type)
        out[name] = _validate_asset(merged[name], profile)

    if merged.get("amountUsd") is not None:
        out["amountUsd"] = parse_positive_number(merged["amountUsd"], "amountUsd")
    for name in OPTIONAL_STRINGS:
        if merged.get(name):
            out[name] = str(merged[name]).strip().lower()
    if merged.get("trigger") is not None:
        trigger = str(merged["trigger"]).strip().lower()
        if trigger not in TRIGGER_KINDS:
            raise InputError(
                "invalid-trigger",
                f"trigger must be one of {', '.join(TRIGGER_KINDS)}, got {merged['trigger']!r}",
            )
        out["trigger"] = trigger

    return Intent(family=intent_type.split(".", 1)[0], network=profile.name, fields=out)


__all__ = [
    "INTENT_SCHEMAS",
    "normalize_intent",
    "parse_intent_text",
    "parse_positive_number",
    "parse_run_mode_hint",
    "resolve_run_mode",
]
