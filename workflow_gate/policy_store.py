"""
Policy configuration and the versioned policy store.

PolicyConfig is the static, versioned configuration surface read by the
guards in ``policy.py``. It can be loaded from a YAML file (``POLICY_FILE``)
or from environment variables.

PolicyStore keeps the live config, bumps ``version`` on every change and
appends a before/after audit record. Allow-lists only: there is no
block-list anywhere in this surface.
"""

import logging
import os
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from .errors import InputError
from .models import utcnow

logger = logging.getLogger(__name__)

POLICY_SCHEMA = "workflow-policy/v1"
POLICY_AUDIT_SCHEMA = "workflow-policy-audit/v1"
MAX_AUDIT_RECORDS = 200

RECIPIENT_MODES = ("open", "allowlist")
RECIPIENT_ENFORCE_ON = ("mainnet_like", "all")
EXECUTE_BINDING_STATES = ("none", "prepared", "active")
POLICY_TEMPLATES = ("production_safe", "open_dev")


def _split_csv(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = list(value)
    return [str(item).strip() for item in items if str(item).strip()]


def _dedupe(items: List[str]) -> List[str]:
    seen: List[str] = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen


class PolicyConfig(BaseModel):
    """Static guard configuration. Immutable; changes go through PolicyStore."""

    model_config = {"frozen": True}

    version: int = Field(default=1, ge=1)
    guarded_networks: List[str] = Field(default_factory=list)
    allowed_templates: List[str] = Field(default_factory=list)
    allowed_networks: List[str] = Field(default_factory=list)
    allowed_protocols: List[str] = Field(default_factory=list)
    max_per_run_usd: Optional[float] = Field(default=None, gt=0)
    daily_limit_usd: Optional[float] = Field(default=None, gt=0)
    # autonomous (unattended) mode
    autonomous_cycle_required: bool = False
    execute_binding_required: bool = False
    cycle_id: str = ""
    cycle_interval_seconds: int = 0
    execute_binding: str = "none"
    # recipient allow-list
    recipient_mode: str = "open"
    recipient_enforce_on: str = "mainnet_like"
    allowed_recipients: List[str] = Field(default_factory=list)
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None
    note: Optional[str] = None

    @field_validator("guarded_networks", "allowed_networks", mode="before")
    @classmethod
    def normalize_networks(cls, v):
        return _dedupe([item.lower() for item in _split_csv(v)])

    @field_validator("allowed_templates", "allowed_protocols", mode="before")
    @classmethod
    def normalize_names(cls, v):
        return _dedupe([item.lower() for item in _split_csv(v)])

    @field_validator("allowed_recipients", mode="before")
    @classmethod
    def normalize_recipients(cls, v):
        items = []
        for item in _split_csv(v):
            # hex addresses compare case-insensitively
            items.append(item.lower() if item.lower().startswith("0x") else item)
        return _dedupe(items)

    @field_validator("recipient_mode", mode="before")
    @classmethod
    def validate_recipient_mode(cls, v):
        v = str(v or "open").strip().lower()
        if v not in RECIPIENT_MODES:
            raise ValueError(f"recipient_mode must be one of {RECIPIENT_MODES}, got '{v}'")
        return v

    @field_validator("recipient_enforce_on", mode="before")
    @classmethod
    def validate_enforce_on(cls, v):
        v = str(v or "mainnet_like").strip().lower()
        if v not in RECIPIENT_ENFORCE_ON:
            raise ValueError(f"recipient_enforce_on must be one of {RECIPIENT_ENFORCE_ON}, got '{v}'")
        return v

    @field_validator("execute_binding", mode="before")
    @classmethod
    def validate_binding(cls, v):
        v = str(v or "none").strip().lower()
        if v not in EXECUTE_BINDING_STATES:
            raise ValueError(f"execute_binding must be one of {EXECUTE_BINDING_STATES}, got '{v}'")
        return v

    @field_validator("cycle_id", mode="before")
    @classmethod
    def strip_cycle_id(cls, v):
        return str(v or "").strip()

    @field_validator("cycle_interval_seconds", mode="before")
    @classmethod
    def coerce_interval(cls, v):
        if v is None or (isinstance(v, str) and not v.strip()):
            return 0
        try:
            return int(v)
        except (TypeError, ValueError):
            raise ValueError(f"cycle_interval_seconds must be an integer, got '{v}'")

    @property
    def autonomous_mode(self) -> bool:
        return self.autonomous_cycle_required

    @property
    def cycle_config_present(self) -> bool:
        return bool(self.cycle_id) and self.cycle_interval_seconds > 0

    @property
    def execute_binding_ready(self) -> bool:
        return self.execute_binding in ("prepared", "active")

    def to_dict(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        data["schema"] = POLICY_SCHEMA
        return data


_ENV_FIELDS = {
    "guarded_networks": "POLICY_GUARDED_NETWORKS",
    "allowed_templates": "POLICY_ALLOWED_TEMPLATES",
    "allowed_networks": "POLICY_ALLOWED_NETWORKS",
    "allowed_protocols": "POLICY_ALLOWED_PROTOCOLS",
    "max_per_run_usd": "POLICY_MAX_PER_RUN_USD",
    "daily_limit_usd": "POLICY_DAILY_LIMIT_USD",
    "autonomous_cycle_required": "AUTONOMOUS_MODE",
    "execute_binding_required": "AUTONOMOUS_EXECUTE_BINDING_REQUIRED",
    "cycle_id": "AUTONOMOUS_CYCLE_ID",
    "cycle_interval_seconds": "AUTONOMOUS_CYCLE_INTERVAL_SECONDS",
    "execute_binding": "AUTONOMOUS_EXECUTE_BINDING",
    "recipient_mode": "POLICY_RECIPIENT_MODE",
    "recipient_enforce_on": "POLICY_RECIPIENT_ENFORCE_ON",
    "allowed_recipients": "POLICY_ALLOWED_RECIPIENTS",
}

_BOOL_FIELDS = ("autonomous_cycle_required", "execute_binding_required")


def policy_config_from_env(env: Optional[Mapping[str, str]] = None) -> PolicyConfig:
    env = os.environ if env is None else env
    data: Dict[str, Any] = {}
    for name, key in _ENV_FIELDS.items():
        raw = env.get(key)
        if raw is None or not str(raw).strip():
            continue
        if name in _BOOL_FIELDS:
            data[name] = str(raw).strip().lower() in ("1", "true", "yes", "on")
        else:
            data[name] = raw
    return PolicyConfig.model_validate(data)


def load_policy_config(
    path: Optional[str] = None, env: Optional[Mapping[str, str]] = None
) -> PolicyConfig:
    """Load from ``path`` (or ``POLICY_FILE``) when given, else from env vars."""
    env = os.environ if env is None else env
    path = path or env.get("POLICY_FILE") or ""
    if not path:
        return policy_config_from_env(env)
    with open(path, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, dict):
        raise ValueError(f"policy file {path} must contain a mapping")
    data.pop("schema", None)
    config = PolicyConfig.model_validate(data)
    logger.info("loaded policy config version=%s from %s", config.version, path)
    return config


@dataclass(frozen=True)
class PolicyAuditRecord:
    id: str
    at: datetime
    action: str
    template: Optional[str]
    actor: Optional[str]
    note: Optional[str]
    before: Dict[str, Any] = field(default_factory=dict)
    after: Dict[str, Any] = field(default_factory=dict)
    schema: str = POLICY_AUDIT_SCHEMA

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema": self.schema,
            "id": self.id,
            "at": self.at.isoformat(),
            "action": self.action,
            "template": self.template,
            "actor": self.actor,
            "note": self.note,
            "before": dict(self.before),
            "after": dict(self.after),
        }


class PolicyStore:
    """
    Holds the live PolicyConfig.

    Every change produces a new config with ``version + 1`` and appends an
    audit record carrying both the before and after snapshots. The audit log
    keeps the most recent MAX_AUDIT_RECORDS entries.
    """

    def __init__(self, config: Optional[PolicyConfig] = None):
        self._config = config or PolicyConfig()
        self._audit: List[PolicyAuditRecord] = []

    @property
    def config(self) -> PolicyConfig:
        return self._config

    def get(self) -> PolicyConfig:
        return self._config

    def update(
        self,
        changes: Dict[str, Any],
        actor: Optional[str] = None,
        note: Optional[str] = None,
        clear_recipients: bool = False,
    ) -> PolicyConfig:
        return self._apply(dict(changes), actor, note, "set_policy", None, clear_recipients)

    def apply_template(
        self, template: str, actor: Optional[str] = None, note: Optional[str] = None
    ) -> PolicyConfig:
        if template == "production_safe":
            changes = {"recipient_mode": "allowlist", "recipient_enforce_on": "mainnet_like"}
        elif template == "open_dev":
            changes = {"recipient_mode": "open", "recipient_enforce_on": "mainnet_like"}
        else:
            raise InputError(
                "unknown-policy-template",
                f"unknown policy template '{template}'",
                remediation="Use one of: " + ", ".join(POLICY_TEMPLATES),
            )
        return self._apply(changes, actor, note, "apply_template", template, False)

    def audit_log(self, limit: int = 20) -> List[PolicyAuditRecord]:
        """Most recent audit records, newest first."""
        if not isinstance(limit, int) or limit <= 0 or limit > 500:
            raise InputError(
                "invalid-limit",
                "limit must be an integer between 1 and 500",
            )
        return list(reversed(self._audit[-limit:]))

    def _apply(
        self,
        changes: Dict[str, Any],
        actor: Optional[str],
        note: Optional[str],
        action: str,
        template: Optional[str],
        clear_recipients: bool,
    ) -> PolicyConfig:
        current = self._config
        for key in ("version", "updated_at", "updated_by", "note"):
            changes.pop(key, None)
        if clear_recipients:
            changes["allowed_recipients"] = []
        data = current.model_dump()
        data.update(changes)
        data["version"] = current.version + 1
        data["updated_at"] = utcnow()
        data["updated_by"] = (actor or "").strip() or None
        data["note"] = (note or "").strip() or None
        try:
            updated = PolicyConfig.model_validate(data)
        except ValueError as exc:
            raise InputError("invalid-policy", str(exc)) from exc

        self._config = updated
        self._audit.append(
            PolicyAuditRecord(
                id=f"pol-{format(int(utcnow().timestamp() * 1000), 'x')}-{secrets.token_hex(4).upper()}",
                at=utcnow(),
                action=action,
                template=template,
                actor=updated.updated_by,
                note=updated.note,
                before=current.to_dict(),
                after=updated.to_dict(),
            )
        )
        if len(self._audit) > MAX_AUDIT_RECORDS:
            del self._audit[: len(self._audit) - MAX_AUDIT_RECORDS]
        logger.info(
            "policy updated action=%s version=%d->%d actor=%s",
            action, current.version, updated.version, updated.updated_by,
        )
        return updated
