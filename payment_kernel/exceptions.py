"""
Typed exception hierarchy for the payment kernel and its modules.

Every error is a class (catch by type, never by message), carries a
machine-readable ``code`` class attribute, and stores its structured data
as attributes so logs and API layers can render it without parsing text.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    PaymentKernelError (base)
    |
    +-- ValidationError                 rejected synchronously, no state change
    |   +-- NotFoundError
    |   |   +-- OrderNotFoundError
    |   |   +-- LedgerEntryNotFoundError
    |   |   +-- FinancialTransactionNotFoundError
    |   |   +-- RefundRequestNotFoundError / RefundItemNotFoundError
    |   |   +-- CreditNoteNotFoundError / CreditNoteApplicationNotFoundError
    |   |   +-- ReconciliationSessionNotFoundError / ReconciliationItemNotFoundError
    |   +-- InvalidAmountError
    |   +-- ExchangeRateRequiredError
    |   +-- RefundExceedsPaidError
    |   +-- RefundExceedsRefundableError
    |   +-- PaymentEntryNotRefundableError
    |   +-- ApprovedAmountExceedsAllocationError
    |   +-- CreditNoteExpiredError
    |   +-- CreditNoteNotUsableError
    |   +-- CreditNoteInUseError
    |   +-- MinimumOrderValueError
    |   +-- NothingToApplyError
    |   +-- MissingWebhookFieldError
    |   +-- StatementParseError
    |
    +-- CurrencyError
    |   +-- InvalidCurrencyError
    |   +-- CurrencyMismatchError
    |
    +-- AccountError
    |   +-- AccountNotFoundError
    |   +-- AccountInactiveError
    |
    +-- JournalError
    |   +-- SameAccountPostingError
    |   +-- TransactionNotPendingError
    |
    +-- ReversalError
    |   +-- EntryNotPostedError
    |   +-- EntryAlreadyReversedError
    |
    +-- WorkflowError
    |   +-- InvalidTransitionError
    |   +-- RefundItemConflictError
    |   +-- PaymentStateConflictError
    |   +-- ReconciliationNotInProgressError
    |   +-- ItemAlreadyMatchedError
    |   +-- ItemSideMismatchError
    |
    +-- AuthorizationError
    |   +-- AccessDeniedError
    |
    +-- ConcurrencyError
    |   +-- ConcurrentModificationError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

===============================================================================
HANDLING GUIDANCE
===============================================================================

    - ValidationError / CurrencyError / AccountError -> reject, report code
    - WorkflowError    -> caller asked for an illegal state change
    - AuthorizationError -> principal may not touch the resource
    - ConcurrencyError -> retry the whole unit of work
    - ImmutabilityError -> programming error, never retry

Duplicate webhook deliveries are NOT errors: they are reported as a
successful no-op outcome.  Failed gateway refunds are NOT errors either:
they are recorded as a ``failed`` refund item.
"""

from datetime import date
from decimal import Decimal


class PaymentKernelError(Exception):
    """
    Base exception for all payment kernel errors.

    All subclasses must set a ``code`` class attribute.
    """

    code: str = "PAYMENT_KERNEL_ERROR"


# Validation errors


class ValidationError(PaymentKernelError):
    """Base for synchronous input rejections."""

    code: str = "VALIDATION_ERROR"


class NotFoundError(ValidationError):
    """A referenced entity does not exist."""

    code: str = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        super().__init__(f"{entity_type} not found: {entity_id}")


class OrderNotFoundError(NotFoundError):
    code: str = "ORDER_NOT_FOUND"

    def __init__(self, order_id):
        super().__init__("Order", order_id)


class LedgerEntryNotFoundError(NotFoundError):
    code: str = "LEDGER_ENTRY_NOT_FOUND"

    def __init__(self, entry_id):
        super().__init__("LedgerEntry", entry_id)


class FinancialTransactionNotFoundError(NotFoundError):
    code: str = "FINANCIAL_TRANSACTION_NOT_FOUND"

    def __init__(self, transaction_id):
        super().__init__("FinancialTransaction", transaction_id)


class RefundRequestNotFoundError(NotFoundError):
    code: str = "REFUND_REQUEST_NOT_FOUND"

    def __init__(self, request_id):
        super().__init__("RefundRequest", request_id)


class RefundItemNotFoundError(NotFoundError):
    code: str = "REFUND_ITEM_NOT_FOUND"

    def __init__(self, item_id):
        super().__init__("RefundItem", item_id)


class CreditNoteNotFoundError(NotFoundError):
    code: str = "CREDIT_NOTE_NOT_FOUND"

    def __init__(self, note_id):
        super().__init__("CreditNote", note_id)


class CreditNoteApplicationNotFoundError(NotFoundError):
    code: str = "CREDIT_NOTE_APPLICATION_NOT_FOUND"

    def __init__(self, application_id):
        super().__init__("CreditNoteApplication", application_id)


class ReconciliationSessionNotFoundError(NotFoundError):
    code: str = "RECONCILIATION_SESSION_NOT_FOUND"

    def __init__(self, session_id):
        super().__init__("ReconciliationSession", session_id)


class ReconciliationItemNotFoundError(NotFoundError):
    code: str = "RECONCILIATION_ITEM_NOT_FOUND"

    def __init__(self, item_id):
        super().__init__("ReconciliationItem", item_id)


class InvalidAmountError(ValidationError):
    """Amount is zero, has the wrong sign for its type, or is malformed."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, amount, reason: str):
        self.amount = amount
        self.reason = reason
        super().__init__(f"Invalid amount {amount}: {reason}")


class ExchangeRateRequiredError(ValidationError):
    """Entry currency differs from the settlement currency and no rate was given."""

    code: str = "EXCHANGE_RATE_REQUIRED"

    def __init__(self, entry_currency: str, settlement_currency: str):
        self.entry_currency = entry_currency
        self.settlement_currency = settlement_currency
        super().__init__(
            f"Exchange rate required to record {entry_currency} "
            f"against an order settled in {settlement_currency}"
        )


class RefundExceedsPaidError(ValidationError):
    """Requested refund is larger than the net amount paid on the order."""

    code: str = "REFUND_EXCEEDS_PAID"

    def __init__(self, order_id, requested: Decimal, paid: Decimal):
        self.order_id = str(order_id)
        self.requested = requested
        self.paid = paid
        super().__init__(
            f"Refund of {requested} exceeds total paid {paid} on order {order_id}"
        )


class RefundExceedsRefundableError(ValidationError):
    """Payment entries ran out before the refund amount was allocated."""

    code: str = "REFUND_EXCEEDS_REFUNDABLE"

    def __init__(self, order_id, requested: Decimal, refundable: Decimal):
        self.order_id = str(order_id)
        self.requested = requested
        self.refundable = refundable
        super().__init__(
            f"Refund of {requested} exceeds refundable balance {refundable} "
            f"on order {order_id}"
        )


class PaymentEntryNotRefundableError(ValidationError):
    code: str = "PAYMENT_ENTRY_NOT_REFUNDABLE"

    def __init__(self, entry_id, reason: str):
        self.entry_id = str(entry_id)
        self.reason = reason
        super().__init__(f"Ledger entry {entry_id} cannot be refunded: {reason}")


class ApprovedAmountExceedsAllocationError(ValidationError):
    code: str = "APPROVED_AMOUNT_EXCEEDS_ALLOCATION"

    def __init__(self, request_id, approved: Decimal, allocated: Decimal):
        self.request_id = str(request_id)
        self.approved = approved
        self.allocated = allocated
        super().__init__(
            f"Approved amount {approved} exceeds allocated total {allocated} "
            f"for refund request {request_id}"
        )


class CreditNoteExpiredError(ValidationError):
    code: str = "CREDIT_NOTE_EXPIRED"

    def __init__(self, note_number: str, valid_until: date):
        self.note_number = note_number
        self.valid_until = valid_until
        super().__init__(f"Credit note {note_number} expired on {valid_until}")


class CreditNoteNotUsableError(ValidationError):
    code: str = "CREDIT_NOTE_NOT_USABLE"

    def __init__(self, note_number: str, status: str):
        self.note_number = note_number
        self.status = status
        super().__init__(f"Credit note {note_number} is {status} and cannot be applied")


class CreditNoteInUseError(ValidationError):
    code: str = "CREDIT_NOTE_IN_USE"

    def __init__(self, note_number: str, amount_used: Decimal):
        self.note_number = note_number
        self.amount_used = amount_used
        super().__init__(
            f"Credit note {note_number} has {amount_used} applied and cannot be cancelled"
        )


class MinimumOrderValueError(ValidationError):
    code: str = "MINIMUM_ORDER_VALUE_NOT_MET"

    def __init__(self, note_number: str, order_total: Decimal, minimum: Decimal):
        self.note_number = note_number
        self.order_total = order_total
        self.minimum = minimum
        super().__init__(
            f"Order total {order_total} is below the minimum {minimum} "
            f"required by credit note {note_number}"
        )


class NothingToApplyError(ValidationError):
    code: str = "NOTHING_TO_APPLY"

    def __init__(self, note_number: str, reason: str):
        self.note_number = note_number
        self.reason = reason
        super().__init__(f"Nothing to apply from credit note {note_number}: {reason}")


class MissingWebhookFieldError(ValidationError):
    code: str = "MISSING_WEBHOOK_FIELD"

    def __init__(self, field_name: str):
        self.field_name = field_name
        super().__init__(f"Webhook event is missing required field: {field_name}")


class StatementParseError(ValidationError):
    code: str = "STATEMENT_PARSE_ERROR"

    def __init__(self, line_number: int, reason: str):
        self.line_number = line_number
        self.reason = reason
        super().__init__(f"Statement line {line_number}: {reason}")


# Currency errors


class CurrencyError(PaymentKernelError):
    code: str = "CURRENCY_ERROR"


class InvalidCurrencyError(CurrencyError):
    """Invalid ISO 4217 currency code provided."""

    code: str = "INVALID_CURRENCY"

    def __init__(self, currency: str):
        self.currency = currency
        super().__init__(f"Invalid ISO 4217 currency code: '{currency}'")


class CurrencyMismatchError(CurrencyError):
    """Attempted operation on mismatched currencies."""

    code: str = "CURRENCY_MISMATCH"

    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Currency mismatch: expected {expected}, got {actual}")


# Chart of accounts errors


class AccountError(PaymentKernelError):
    code: str = "ACCOUNT_ERROR"


class AccountNotFoundError(AccountError):
    code: str = "ACCOUNT_NOT_FOUND"

    def __init__(self, account_code: str):
        self.account_code = account_code
        super().__init__(f"Account not found: {account_code}")


class AccountInactiveError(AccountError):
    code: str = "ACCOUNT_INACTIVE"

    def __init__(self, account_code: str):
        self.account_code = account_code
        super().__init__(f"Account is inactive: {account_code}")


# Journal errors


class JournalError(PaymentKernelError):
    code: str = "JOURNAL_ERROR"


class SameAccountPostingError(JournalError):
    """Debit and credit account must differ."""

    code: str = "SAME_ACCOUNT_POSTING"

    def __init__(self, account_code: str):
        self.account_code = account_code
        super().__init__(f"Debit and credit account are both {account_code}")


class TransactionNotPendingError(JournalError):
    code: str = "TRANSACTION_NOT_PENDING"

    def __init__(self, transaction_id, status: str):
        self.transaction_id = str(transaction_id)
        self.status = status
        super().__init__(f"Transaction {transaction_id} is {status}, not pending")


class ReversalError(PaymentKernelError):
    code: str = "REVERSAL_ERROR"


class EntryNotPostedError(ReversalError):
    """Cannot reverse a transaction that is not posted."""

    code: str = "ENTRY_NOT_POSTED"

    def __init__(self, transaction_id, status: str):
        self.transaction_id = str(transaction_id)
        self.status = status
        super().__init__(
            f"Cannot reverse transaction {transaction_id}: status is {status}, not posted"
        )


class EntryAlreadyReversedError(ReversalError):
    code: str = "ENTRY_ALREADY_REVERSED"

    def __init__(self, transaction_id):
        self.transaction_id = str(transaction_id)
        super().__init__(f"Transaction {transaction_id} has already been reversed")


# Workflow errors


class WorkflowError(PaymentKernelError):
    code: str = "WORKFLOW_ERROR"


class InvalidTransitionError(WorkflowError):
    """The requested action is not defined from the current state."""

    code: str = "INVALID_TRANSITION"

    def __init__(self, workflow: str, from_state: str, action: str):
        self.workflow = workflow
        self.from_state = str(from_state)
        self.action = action
        super().__init__(
            f"{workflow}: action '{action}' is not allowed from state '{from_state}'"
        )


class RefundItemConflictError(WorkflowError):
    """A completed refund item received a different gateway refund id."""

    code: str = "REFUND_ITEM_CONFLICT"

    def __init__(self, item_id, existing_refund_id: str | None, incoming_refund_id: str | None):
        self.item_id = str(item_id)
        self.existing_refund_id = existing_refund_id
        self.incoming_refund_id = incoming_refund_id
        super().__init__(
            f"Refund item {item_id} already completed with gateway refund "
            f"{existing_refund_id}; got {incoming_refund_id}"
        )


class PaymentStateConflictError(WorkflowError):
    """A gateway event contradicts a payment that is already final."""

    code: str = "PAYMENT_STATE_CONFLICT"

    def __init__(self, idempotency_key: str, current_status: str, incoming_status: str):
        self.idempotency_key = idempotency_key
        self.current_status = current_status
        self.incoming_status = incoming_status
        super().__init__(
            f"Payment {idempotency_key} is already {current_status}; "
            f"refusing transition to {incoming_status}"
        )


class PaymentDetailsMismatchError(PaymentStateConflictError):
    """A redelivered event names a different order, amount or currency."""

    code: str = "PAYMENT_DETAILS_MISMATCH"

    def __init__(self, idempotency_key: str, field: str, recorded, incoming):
        self.idempotency_key = idempotency_key
        self.field = field
        self.recorded = recorded
        self.incoming = incoming
        WorkflowError.__init__(
            self,
            f"Payment {idempotency_key} was recorded with {field}={recorded}; "
            f"event carries {incoming}",
        )


class ReconciliationNotInProgressError(WorkflowError):
    code: str = "RECONCILIATION_NOT_IN_PROGRESS"

    def __init__(self, session_id, status: str):
        self.session_id = str(session_id)
        self.status = status
        super().__init__(f"Reconciliation session {session_id} is {status}, not in_progress")


class ItemAlreadyMatchedError(WorkflowError):
    code: str = "ITEM_ALREADY_MATCHED"

    def __init__(self, item_id):
        self.item_id = str(item_id)
        super().__init__(f"Reconciliation item {item_id} is already matched")


class ItemSideMismatchError(WorkflowError):
    code: str = "ITEM_SIDE_MISMATCH"

    def __init__(self, item_id, expected_side: str):
        self.item_id = str(item_id)
        self.expected_side = expected_side
        super().__init__(f"Reconciliation item {item_id} is not a {expected_side} item")


# Authorization errors


class AuthorizationError(PaymentKernelError):
    code: str = "AUTHORIZATION_ERROR"


class AccessDeniedError(AuthorizationError):
    code: str = "ACCESS_DENIED"

    def __init__(self, actor_id, resource: str, reason: str):
        self.actor_id = str(actor_id)
        self.resource = resource
        self.reason = reason
        super().__init__(f"Access denied to {resource} for {actor_id}: {reason}")


# Concurrency errors


class ConcurrencyError(PaymentKernelError):
    code: str = "CONCURRENCY_ERROR"


class ConcurrentModificationError(ConcurrencyError):
    code: str = "CONCURRENT_MODIFICATION"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        super().__init__(
            f"{entity_type} {entity_id} was modified by a concurrent transaction"
        )


# Immutability errors


class ImmutabilityError(PaymentKernelError):
    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to modify or delete an immutable record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        self.reason = reason
        super().__init__(f"Immutability violation on {entity_type} {entity_id}: {reason}")
