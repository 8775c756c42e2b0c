"""
Configuration schema (``payment_config.schema``).

Responsibility
--------------
Frozen dataclasses describing the payment engine's configuration: tolerances,
chart of accounts, gateway cash accounts, posting rules, numbering and module
settings.  ``__post_init__`` validates cross-references so a bad file fails at
load time rather than at posting time.

Failure modes
-------------
* ``ValueError`` for negative tolerances, unknown account codes in posting
  rules or gateway mappings, and duplicate account codes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

GATEWAY_PLACEHOLDER = "@gateway"

_ACCOUNT_TYPES = frozenset({"asset", "liability", "equity", "revenue", "expense"})


@dataclass(frozen=True)
class AccountDef:
    code: str
    name: str
    account_type: str
    parent_code: str | None = None
    description: str | None = None

    def __post_init__(self):
        if self.account_type not in _ACCOUNT_TYPES:
            raise ValueError(f"Account {self.code}: unknown type {self.account_type!r}")


@dataclass(frozen=True)
class PostingRule:
    """Debit/credit pair for one kind of posting.  Either side may be ``@gateway``."""
    name: str
    debit: str
    credit: str
    transaction_type: str


@dataclass(frozen=True)
class Tolerances:
    payment: Decimal = Decimal("0.01")
    reconciliation: Decimal = Decimal("0.01")

    def __post_init__(self):
        if self.payment < 0 or self.reconciliation < 0:
            raise ValueError("tolerances cannot be negative")


@dataclass(frozen=True)
class NumberingConfig:
    credit_note_prefix: str = "CN"
    refund_request_prefix: str = "RF"
    placed_order_prefix: str = "ORD"
    width: int = 6

    def __post_init__(self):
        if self.width < 1:
            raise ValueError("numbering width must be positive")


@dataclass(frozen=True)
class CreditNoteSettings:
    default_valid_days: int = 365

    def __post_init__(self):
        if self.default_valid_days < 1:
            raise ValueError("default_valid_days must be positive")


@dataclass(frozen=True)
class WebhookSettings:
    guest_session_ttl_hours: int = 24
    success_statuses: tuple[str, ...] = ("success",)
    failure_statuses: tuple[str, ...] = ("failed",)


@dataclass(frozen=True)
class PaymentConfig:
    """
    The complete, validated configuration.

    Contract:
        Obtained through ``payment_config.get_active_config()``.  Services
        read it; nothing mutates it.
    """
    config_id: str
    version: int
    tolerances: Tolerances
    accounts: tuple[AccountDef, ...]
    gateway_accounts: dict[str, str]
    default_gateway_account: str
    posting_rules: dict[str, PostingRule]
    numbering: NumberingConfig = field(default_factory=NumberingConfig)
    credit_notes: CreditNoteSettings = field(default_factory=CreditNoteSettings)
    webhooks: WebhookSettings = field(default_factory=WebhookSettings)
    checksum: str = ""

    def __post_init__(self):
        codes = [a.code for a in self.accounts]
        if len(codes) != len(set(codes)):
            raise ValueError("chart_of_accounts contains duplicate codes")
        known = set(codes)
        for account in self.accounts:
            if account.parent_code is not None and account.parent_code not in known:
                raise ValueError(f"Account {account.code}: unknown parent {account.parent_code}")
        for gateway, code in self.gateway_accounts.items():
            if code not in known:
                raise ValueError(f"gateway {gateway} maps to unknown account {code}")
        if self.default_gateway_account not in known:
            raise ValueError(f"unknown default gateway account {self.default_gateway_account}")
        for rule in self.posting_rules.values():
            for side in (rule.debit, rule.credit):
                if side != GATEWAY_PLACEHOLDER and side not in known:
                    raise ValueError(f"posting rule {rule.name} uses unknown account {side}")
            if rule.debit == rule.credit:
                raise ValueError(f"posting rule {rule.name} debits and credits the same account")

    def gateway_account(self, gateway: str | None) -> str:
        """Cash/clearing account for ``gateway``; unknown gateways use the bank transfer account."""
        if gateway is None:
            return self.default_gateway_account
        return self.gateway_accounts.get(gateway.strip().lower(), self.default_gateway_account)

    def posting_rule(self, name: str) -> PostingRule:
        key = str(getattr(name, "value", name))
        try:
            return self.posting_rules[key]
        except KeyError:
            raise ValueError(f"No posting rule configured for {key!r}") from None

    def resolve_accounts(self, rule_name: str, gateway: str | None) -> tuple[str, str]:
        """(debit, credit) account codes for ``rule_name`` with ``@gateway`` resolved."""
        rule = self.posting_rule(rule_name)
        cash = self.gateway_account(gateway)
        debit = cash if rule.debit == GATEWAY_PLACEHOLDER else rule.debit
        credit = cash if rule.credit == GATEWAY_PLACEHOLDER else rule.credit
        return debit, credit
