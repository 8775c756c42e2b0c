"""
Configuration loader (``payment_config.loader``).

Responsibility
--------------
Reads a YAML configuration file and parses it into the frozen dataclasses of
``payment_config.schema``.  Runtime callers go through
``payment_config.get_active_config()``; tests call the parse functions
directly to build variants.

Failure modes
-------------
* Missing file -> ``FileNotFoundError`` propagates.
* Malformed YAML -> ``yaml.YAMLError`` propagates.
* Missing required key -> ``KeyError``; invalid value -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml

from payment_config.schema import (
    AccountDef,
    CreditNoteSettings,
    NumberingConfig,
    PaymentConfig,
    PostingRule,
    Tolerances,
    WebhookSettings,
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file; an empty file yields an empty dict."""
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_decimal(value: Any, name: str) -> Decimal:
    if isinstance(value, float):
        # YAML floats are accepted only through their string form
        value = repr(value)
    try:
        return Decimal(str(value))
    except ArithmeticError as exc:
        raise ValueError(f"{name}: {value!r} is not a decimal") from exc


def parse_account(data: dict[str, Any]) -> AccountDef:
    return AccountDef(
        code=str(data["code"]),
        name=data["name"],
        account_type=data["type"],
        parent_code=str(data["parent"]) if data.get("parent") is not None else None,
        description=data.get("description"),
    )


def parse_posting_rule(name: str, data: dict[str, Any]) -> PostingRule:
    return PostingRule(
        name=name,
        debit=str(data["debit"]),
        credit=str(data["credit"]),
        transaction_type=data["transaction_type"],
    )


def parse_config(data: dict[str, Any]) -> PaymentConfig:
    """Build a validated ``PaymentConfig`` from a parsed YAML mapping."""
    tol = data.get("tolerances", {})
    numbering = data.get("numbering", {})
    notes = data.get("credit_notes", {})
    hooks = data.get("webhooks", {})

    return PaymentConfig(
        config_id=data["config_id"],
        version=int(data["version"]),
        tolerances=Tolerances(
            payment=parse_decimal(tol.get("payment", "0.01"), "tolerances.payment"),
            reconciliation=parse_decimal(
                tol.get("reconciliation", "0.01"), "tolerances.reconciliation",
            ),
        ),
        accounts=tuple(parse_account(a) for a in data["chart_of_accounts"]),
        gateway_accounts={
            str(k).lower(): str(v) for k, v in (data.get("gateway_accounts") or {}).items()
        },
        default_gateway_account=str(data["default_gateway_account"]),
        posting_rules={
            name: parse_posting_rule(name, rule)
            for name, rule in data["posting_rules"].items()
        },
        numbering=NumberingConfig(**numbering),
        credit_notes=CreditNoteSettings(**notes),
        webhooks=WebhookSettings(
            guest_session_ttl_hours=int(hooks.get("guest_session_ttl_hours", 24)),
            success_statuses=tuple(s.lower() for s in hooks.get("success_statuses", ["success"])),
            failure_statuses=tuple(s.lower() for s in hooks.get("failure_statuses", ["failed"])),
        ),
        checksum=compute_checksum(data),
    )


def load_config_file(path: Path) -> PaymentConfig:
    return parse_config(load_yaml_file(path))


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON form; identical input, identical checksum."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
