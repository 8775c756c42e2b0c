"""
payment_modules.reconciliation.service
======================================

Responsibility:
    Session-based reconciliation of Ledger Store entries against imported
    bank/gateway statement lines: start a session (system totals and
    system-side items), import statement lines, run exact and fuzzy
    matching, match and unmatch by hand, flag discrepancies and complete.

Architecture:
    Module layer.  Reads the Ledger Store through ``LedgerSelector`` and
    never writes it; writes only reconciliation tables.  Flushes; the
    caller commits.

Invariants enforced:
    - matched_count + unmatched counts == total_items after every
      mutation (counts are recomputed from the items, never incremented).
    - A session reaches ``completed`` only with zero unmatched items and
      |closing difference| below the reconciliation tolerance; anything
      else completes as ``discrepancy_found``.
    - Only ``in_progress`` sessions accept imports, matches and flags.

Failure modes:
    - ReconciliationNotInProgressError, ItemAlreadyMatchedError,
      ItemSideMismatchError for invalid operations.
    - AccessDeniedError for non-administrators.

Audit relevance:
    ``reconciliation_*`` log events; ambiguous exact matches are logged at
    warning level so they can be reviewed.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from payment_config import PaymentConfig
from payment_kernel.db.types import ZERO, to_money, within_tolerance
from payment_kernel.domain.access import AccessPolicy, OwnershipAccessPolicy, Principal
from payment_kernel.domain.clock import Clock
from payment_kernel.exceptions import (
    ItemAlreadyMatchedError,
    ItemSideMismatchError,
    ReconciliationItemNotFoundError,
    ReconciliationNotInProgressError,
    ReconciliationSessionNotFoundError,
    ValidationError,
)
from payment_kernel.logging_config import LogContext, get_logger
from payment_kernel.models.ledger import LedgerEntryType
from payment_kernel.selectors.ledger_selector import LedgerSelector
from payment_kernel.services.base import BaseService
from payment_modules.reconciliation.helpers import parse_statement
from payment_modules.reconciliation.matching import (
    MatchCandidate,
    MatchTolerance,
    ProposedMatch,
    exact_matches,
    fuzzy_matches,
)
from payment_modules.reconciliation.models import (
    ItemSide,
    ItemStatus,
    MatchPairInfo,
    MatchRunResult,
    MatchType,
    ReconciliationItemInfo,
    ReconciliationSessionInfo,
    ReconciliationStatus,
    ResolutionAction,
    StatementLine,
)
from payment_modules.reconciliation.orm import ReconciliationItemModel, ReconciliationSessionModel
from payment_modules.reconciliation.workflows import BALANCED, RECONCILIATION_WORKFLOW

logger = get_logger("modules.reconciliation.service")

_CREDIT_TYPES = frozenset({LedgerEntryType.CUSTOMER_PAYMENT.value})
_DEBIT_TYPES = frozenset({LedgerEntryType.REFUND.value, LedgerEntryType.PARTIAL_REFUND.value})


class ReconciliationService(BaseService):
    """
    Reconciliation engine.

    Contract:
        Every operation requires an administrator principal.  Mutators
        flush and return fresh DTOs.

    Non-goals:
        - Does NOT post adjustments for discrepancies; it records the
          chosen resolution action for follow-up.
        - Does NOT commit.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        config: PaymentConfig | None = None,
        access_policy: AccessPolicy | None = None,
    ):
        super().__init__(session, clock, config)
        self._ledger = LedgerSelector(session)
        self._access = access_policy or OwnershipAccessPolicy()

    # =========================================================================
    # Session lifecycle
    # =========================================================================

    def start_session(
        self,
        *,
        payment_method: str,
        start_date: date,
        end_date: date,
        principal: Principal,
        gateway_code: str | None = None,
        statement_date: date | None = None,
        opening_balance: Decimal = ZERO,
    ) -> ReconciliationSessionInfo:
        """
        Compute system totals for the scope and seed one unmatched
        system-side item per completed ledger entry in the date range.
        """
        self._access.ensure_admin(principal, "reconciliation:start")
        if end_date < start_date:
            raise ValidationError(f"statement range ends ({end_date}) before it starts ({start_date})")

        entries = self._ledger.entries_in_range(
            start=start_date,
            end=end_date,
            payment_method=payment_method,
            gateway_code=gateway_code,
        )
        credits = sum((abs(e.base_amount) for e in entries if e.entry_type in _CREDIT_TYPES), ZERO)
        debits = sum((abs(e.base_amount) for e in entries if e.entry_type in _DEBIT_TYPES), ZERO)

        recon = ReconciliationSessionModel(
            payment_method=payment_method,
            gateway_code=gateway_code,
            statement_date=statement_date or end_date,
            statement_start_date=start_date,
            statement_end_date=end_date,
            status=RECONCILIATION_WORKFLOW.initial_state,
            opening_balance=to_money(opening_balance),
            system_total_credits=credits,
            system_total_debits=debits,
            system_closing_balance=credits - debits,
            reconciled_by_id=principal.actor_id,
            started_at=self.clock.now(),
            created_by_id=principal.actor_id,
        )
        self.session.add(recon)
        self.session.flush()

        for position, entry in enumerate(entries, start=1):
            self.session.add(
                ReconciliationItemModel(
                    session_id=recon.id,
                    side=ItemSide.SYSTEM.value,
                    position=position,
                    ledger_entry_id=entry.id,
                    item_date=entry.recorded_at.date(),
                    amount=entry.base_amount,
                    reference=entry.reference_number or entry.gateway_transaction_id or str(entry.id),
                    description=entry.entry_type,
                    transaction_type=entry.entry_type,
                    created_by_id=principal.actor_id,
                )
            )
        self.session.flush()
        self._refresh_summary(recon)

        logger.info(
            "reconciliation_session_started",
            extra={
                "session_id": str(recon.id),
                "payment_method": payment_method,
                "gateway_code": gateway_code,
                "system_items": len(entries),
                "system_total_credits": str(credits),
                "system_total_debits": str(debits),
            },
        )
        return recon.to_dto()

    def import_statement(
        self,
        session_id: UUID,
        lines: Sequence[StatementLine],
        principal: Principal,
        *,
        closing_balance: Decimal | None = None,
    ) -> ReconciliationSessionInfo:
        """
        Append one statement-side item per line and refresh the statement
        totals and closing difference.

        ``closing_balance`` is the statement's own closing figure; without
        it the closing balance is opening balance plus the net of all
        imported lines.
        """
        self._access.ensure_admin(principal, f"reconciliation:{session_id}")
        recon = self._load_in_progress(session_id)
        next_position = len(recon.items) + 1
        for offset, line in enumerate(lines):
            self.session.add(
                ReconciliationItemModel(
                    session_id=recon.id,
                    side=ItemSide.STATEMENT.value,
                    position=next_position + offset,
                    item_date=line.date,
                    amount=to_money(line.amount),
                    reference=line.reference,
                    description=line.description,
                    transaction_type=line.transaction_type,
                    created_by_id=principal.actor_id,
                )
            )
        self.session.flush()
        self.session.refresh(recon, ["items"])

        statement_items = [i for i in recon.items if i.side == ItemSide.STATEMENT.value]
        recon.statement_total_credits = sum(
            (Decimal(i.amount) for i in statement_items if Decimal(i.amount) > ZERO), ZERO,
        )
        recon.statement_total_debits = sum(
            (-Decimal(i.amount) for i in statement_items if Decimal(i.amount) < ZERO), ZERO,
        )
        if closing_balance is not None:
            recon.statement_closing_balance = to_money(closing_balance)
        else:
            recon.statement_closing_balance = (
                Decimal(recon.opening_balance)
                + recon.statement_total_credits
                - recon.statement_total_debits
            )
        recon.closing_difference = recon.statement_closing_balance - (
            Decimal(recon.opening_balance) + Decimal(recon.system_closing_balance)
        )
        recon.updated_by_id = principal.actor_id
        self._refresh_summary(recon)

        logger.info(
            "reconciliation_statement_imported",
            extra={
                "session_id": str(recon.id),
                "line_count": len(lines),
                "statement_closing_balance": str(recon.statement_closing_balance),
                "closing_difference": str(recon.closing_difference),
            },
        )
        return recon.to_dto()

    def import_statement_text(
        self,
        session_id: UUID,
        raw_data: str,
        format: str,
        principal: Principal,
        *,
        closing_balance: Decimal | None = None,
    ) -> ReconciliationSessionInfo:
        """Parse an MT940 or CSV export and import its lines."""
        lines = parse_statement(raw_data, format)
        return self.import_statement(session_id, lines, principal, closing_balance=closing_balance)

    def complete(
        self,
        session_id: UUID,
        principal: Principal,
        notes: str | None = None,
    ) -> ReconciliationSessionInfo:
        """in_progress -> completed when balanced, else discrepancy_found."""
        self._access.ensure_admin(principal, f"reconciliation:{session_id}")
        recon = self._load_in_progress(session_id)
        self._refresh_summary(recon)

        unmatched = recon.unmatched_system_count + recon.unmatched_statement_count
        difference = Decimal(recon.closing_difference or ZERO)
        balanced = unmatched == 0 and within_tolerance(
            difference, ZERO, self.config.tolerances.reconciliation,
        )
        satisfied = frozenset({BALANCED.name}) if balanced else frozenset()
        recon.status = RECONCILIATION_WORKFLOW.next_state(recon.status, "complete", satisfied)
        recon.completed_at = self.clock.now()
        if notes:
            recon.notes = f"{recon.notes}\n{notes}" if recon.notes else notes
        recon.updated_by_id = principal.actor_id
        self.session.flush()

        log = logger.info if balanced else logger.warning
        log(
            "reconciliation_session_completed",
            extra={
                "session_id": str(recon.id),
                "status": recon.status,
                "unmatched_count": unmatched,
                "closing_difference": str(difference),
            },
        )
        return recon.to_dto()

    def reopen(self, session_id: UUID, principal: Principal, reason: str) -> ReconciliationSessionInfo:
        """discrepancy_found -> in_progress so the remaining items can be worked."""
        self._access.ensure_admin(principal, f"reconciliation:{session_id}")
        recon = self._load_session(session_id)
        recon.status = RECONCILIATION_WORKFLOW.next_state(recon.status, "reopen")
        recon.completed_at = None
        recon.notes = f"{recon.notes}\nReopened: {reason}" if recon.notes else f"Reopened: {reason}"
        recon.updated_by_id = principal.actor_id
        self.session.flush()
        logger.info("reconciliation_session_reopened", extra={"session_id": str(recon.id), "reason": reason})
        return recon.to_dto()

    # =========================================================================
    # Matching
    # =========================================================================

    def auto_match(self, session_id: UUID, principal: Principal) -> MatchRunResult:
        """
        Exact pass: equal amount and (equal reference or equal date).
        Ties resolve to the first system item in position order; the pair
        is flagged ambiguous and logged.
        """
        self._access.ensure_admin(principal, f"reconciliation:{session_id}")
        recon = self._load_in_progress(session_id)
        statement, system = self._unmatched_candidates(recon)
        proposals = exact_matches(statement, system)
        return self._apply_matches(recon, proposals, MatchType.EXACT, principal)

    def fuzzy_match(
        self,
        session_id: UUID,
        principal: Principal,
        *,
        amount_tolerance: Decimal | None = None,
        date_tolerance_days: int = 3,
    ) -> MatchRunResult:
        """Pair remaining items within amount and date tolerances."""
        self._access.ensure_admin(principal, f"reconciliation:{session_id}")
        tolerance = MatchTolerance(
            amount=self.config.tolerances.reconciliation if amount_tolerance is None else to_money(amount_tolerance),
            days=date_tolerance_days,
        )
        recon = self._load_in_progress(session_id)
        statement, system = self._unmatched_candidates(recon)
        proposals = fuzzy_matches(statement, system, tolerance)
        return self._apply_matches(recon, proposals, MatchType.FUZZY, principal)

    def manual_match(
        self,
        session_id: UUID,
        statement_item_id: UUID,
        system_item_id: UUID,
        principal: Principal,
    ) -> MatchPairInfo:
        self._access.ensure_admin(principal, f"reconciliation:{session_id}")
        recon = self._load_in_progress(session_id)
        statement_item = self._load_item(statement_item_id, recon.id)
        system_item = self._load_item(system_item_id, recon.id)
        if statement_item.side != ItemSide.STATEMENT.value:
            raise ItemSideMismatchError(statement_item.id, ItemSide.STATEMENT.value)
        if system_item.side != ItemSide.SYSTEM.value:
            raise ItemSideMismatchError(system_item.id, ItemSide.SYSTEM.value)
        for item in (statement_item, system_item):
            if item.matched:
                raise ItemAlreadyMatchedError(item.id)

        confidence = Decimal("1.00")
        self._pair(statement_item, system_item, MatchType.MANUAL, confidence, principal)
        self._refresh_summary(recon)
        logger.info(
            "reconciliation_manual_match",
            extra={
                "session_id": str(recon.id),
                "statement_item_id": str(statement_item.id),
                "system_item_id": str(system_item.id),
                "amount_difference": str(Decimal(statement_item.amount) - Decimal(system_item.amount)),
            },
        )
        return MatchPairInfo(
            statement_item_id=statement_item.id,
            system_item_id=system_item.id,
            match_type=MatchType.MANUAL,
            confidence=confidence,
        )

    def unmatch(self, item_id: UUID, principal: Principal) -> ReconciliationItemInfo:
        """Break a pair; both sides return to unmatched."""
        self._access.ensure_admin(principal, f"reconciliation_item:{item_id}")
        item = self._load_item(item_id)
        recon = self._load_in_progress(item.session_id)
        if not item.matched:
            raise ValidationError(f"Reconciliation item {item_id} is not matched")
        partner = self._load_item(item.matched_with_id, recon.id) if item.matched_with_id else None
        for side in (item, partner):
            if side is None:
                continue
            side.matched = False
            side.match_type = MatchType.UNMATCHED.value
            side.match_confidence = None
            side.matched_with_id = None
            side.matched_at = None
            side.matched_by_id = None
            side.status = ItemStatus.PENDING.value
            side.updated_by_id = principal.actor_id
        self.session.flush()
        self._refresh_summary(recon)
        logger.info(
            "reconciliation_unmatched",
            extra={"session_id": str(recon.id), "item_id": str(item.id)},
        )
        return item.to_dto()

    def flag_discrepancy(
        self,
        item_id: UUID,
        principal: Principal,
        reason: str,
        resolution_action: ResolutionAction | str,
    ) -> ReconciliationItemInfo:
        """
        Record why an unmatched item cannot be paired and what should be
        done about it.  The item stays unmatched.
        """
        self._access.ensure_admin(principal, f"reconciliation_item:{item_id}")
        action = ResolutionAction(resolution_action)
        item = self._load_item(item_id)
        recon = self._load_in_progress(item.session_id)
        if item.matched:
            raise ItemAlreadyMatchedError(item.id)
        item.status = ItemStatus.DISCREPANCY.value
        item.discrepancy_reason = reason
        item.resolution_action = action.value
        item.updated_by_id = principal.actor_id
        self.session.flush()
        logger.warning(
            "reconciliation_discrepancy_flagged",
            extra={
                "session_id": str(recon.id),
                "item_id": str(item.id),
                "amount": str(item.amount),
                "resolution_action": action.value,
                "reason": reason,
            },
        )
        return item.to_dto()

    # =========================================================================
    # Queries
    # =========================================================================

    def get_session(self, session_id: UUID, principal: Principal) -> ReconciliationSessionInfo:
        self._access.ensure_admin(principal, f"reconciliation:{session_id}")
        return self._load_session(session_id, lock=False).to_dto()

    def items(
        self,
        session_id: UUID,
        principal: Principal,
        *,
        side: ItemSide | str | None = None,
        unmatched_only: bool = False,
    ) -> list[ReconciliationItemInfo]:
        self._access.ensure_admin(principal, f"reconciliation:{session_id}")
        query = select(ReconciliationItemModel).where(ReconciliationItemModel.session_id == session_id)
        if side is not None:
            query = query.where(ReconciliationItemModel.side == ItemSide(side).value)
        if unmatched_only:
            query = query.where(ReconciliationItemModel.matched.is_(False))
        query = query.order_by(ReconciliationItemModel.position)
        return [i.to_dto() for i in self.session.execute(query).scalars()]

    # =========================================================================
    # Internals
    # =========================================================================

    def _unmatched_candidates(
        self,
        recon: ReconciliationSessionModel,
    ) -> tuple[list[MatchCandidate], list[MatchCandidate]]:
        self.session.refresh(recon, ["items"])
        statement: list[MatchCandidate] = []
        system: list[MatchCandidate] = []
        for item in recon.items:
            if item.matched:
                continue
            candidate = MatchCandidate(
                item_id=item.id,
                amount=Decimal(item.amount),
                reference=item.reference,
                on_date=item.item_date,
            )
            if item.side == ItemSide.STATEMENT.value:
                statement.append(candidate)
            else:
                system.append(candidate)
        return statement, system

    def _apply_matches(
        self,
        recon: ReconciliationSessionModel,
        proposals: Sequence[ProposedMatch],
        match_type: MatchType,
        principal: Principal,
    ) -> MatchRunResult:
        by_id = {item.id: item for item in recon.items}
        pairs = []
        with LogContext.bind(session_id=str(recon.id)):
            for proposal in proposals:
                self._pair(
                    by_id[proposal.statement_item_id],
                    by_id[proposal.system_item_id],
                    match_type,
                    proposal.confidence,
                    principal,
                )
                if proposal.ambiguous:
                    logger.warning(
                        "reconciliation_ambiguous_match",
                        extra={
                            "statement_item_id": str(proposal.statement_item_id),
                            "system_item_id": str(proposal.system_item_id),
                        },
                    )
                pairs.append(
                    MatchPairInfo(
                        statement_item_id=proposal.statement_item_id,
                        system_item_id=proposal.system_item_id,
                        match_type=match_type,
                        confidence=proposal.confidence,
                        ambiguous=proposal.ambiguous,
                    )
                )
            self.session.flush()
            self._refresh_summary(recon)
            result = MatchRunResult(
                session_id=recon.id,
                pairs=tuple(pairs),
                remaining_unmatched=recon.unmatched_system_count + recon.unmatched_statement_count,
            )
            logger.info(
                "reconciliation_match_run",
                extra={
                    "match_type": match_type.value,
                    "matched_count": result.matched_count,
                    "ambiguous_count": result.ambiguous_count,
                    "remaining_unmatched": result.remaining_unmatched,
                },
            )
        return result

    def _pair(
        self,
        statement_item: ReconciliationItemModel,
        system_item: ReconciliationItemModel,
        match_type: MatchType,
        confidence: Decimal,
        principal: Principal,
    ) -> None:
        now = self.clock.now()
        for item, partner in ((statement_item, system_item), (system_item, statement_item)):
            item.matched = True
            item.match_type = match_type.value
            item.match_confidence = confidence
            item.matched_with_id = partner.id
            item.matched_at = now
            item.matched_by_id = principal.actor_id
            item.status = ItemStatus.MATCHED.value
            item.discrepancy_reason = None
            item.resolution_action = None
            item.updated_by_id = principal.actor_id
        self.session.flush()

    def _refresh_summary(self, recon: ReconciliationSessionModel) -> None:
        self.session.refresh(recon, ["items"])
        items = recon.items
        recon.total_items = len(items)
        recon.matched_count = sum(1 for i in items if i.matched)
        recon.unmatched_system_count = sum(
            1 for i in items if not i.matched and i.side == ItemSide.SYSTEM.value
        )
        recon.unmatched_statement_count = sum(
            1 for i in items if not i.matched and i.side == ItemSide.STATEMENT.value
        )
        recon.total_matched_amount = sum(
            (Decimal(i.amount) for i in items if i.matched and i.side == ItemSide.SYSTEM.value),
            ZERO,
        )
        self.session.flush()

    def _load_session(self, session_id: UUID, lock: bool = True) -> ReconciliationSessionModel:
        query = select(ReconciliationSessionModel).where(ReconciliationSessionModel.id == session_id)
        if lock:
            query = query.with_for_update()
        recon = self.session.execute(query).scalar_one_or_none()
        if recon is None:
            raise ReconciliationSessionNotFoundError(session_id)
        return recon

    def _load_in_progress(self, session_id: UUID) -> ReconciliationSessionModel:
        recon = self._load_session(session_id)
        if recon.status != ReconciliationStatus.IN_PROGRESS.value:
            raise ReconciliationNotInProgressError(recon.id, recon.status)
        return recon

    def _load_item(self, item_id: UUID, session_id: UUID | None = None) -> ReconciliationItemModel:
        item = self.session.get(ReconciliationItemModel, item_id)
        if item is None or (session_id is not None and item.session_id != session_id):
            raise ReconciliationItemNotFoundError(item_id)
        return item
