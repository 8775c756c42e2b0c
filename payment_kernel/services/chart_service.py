"""
ChartOfAccountsService -- seed and resolve ledger accounts.

Responsibility:
    Idempotently seeds the chart of accounts from configuration and answers
    "which account does this posting hit" for the journal.

Architecture position:
    Kernel > Services.  Called by JournalService before every posting and by
    bootstrap tooling.

Failure modes:
    - AccountNotFoundError when a code is not in the chart.
    - AccountInactiveError when a code exists but is deactivated.
"""

from uuid import UUID

from sqlalchemy import select

from payment_kernel.exceptions import AccountInactiveError, AccountNotFoundError
from payment_kernel.logging_config import get_logger
from payment_kernel.models.account import AccountType, ChartAccount
from payment_kernel.services.base import BaseService

logger = get_logger("services.chart")


class ChartOfAccountsService(BaseService):
    """
    Contract:
        ``seed`` inserts configured accounts that are missing and leaves
        existing rows untouched.  Lookups never create rows.
    """

    def seed(self, actor_id: UUID) -> int:
        """Insert missing configured accounts.  Returns the number created."""
        existing = set(self.session.execute(select(ChartAccount.code)).scalars())
        created = 0
        for definition in self.config.accounts:
            if definition.code in existing:
                continue
            self.session.add(
                ChartAccount(
                    code=definition.code,
                    name=definition.name,
                    account_type=AccountType(definition.account_type),
                    parent_code=definition.parent_code,
                    description=definition.description,
                    is_active=True,
                    created_by_id=actor_id,
                )
            )
            created += 1
        self.session.flush()
        logger.info(
            "chart_of_accounts_seeded",
            extra={"accounts_created": created, "already_present": len(existing)},
        )
        return created

    def get_account(self, code: str) -> ChartAccount:
        account = self.session.execute(
            select(ChartAccount).where(ChartAccount.code == code)
        ).scalar_one_or_none()
        if account is None:
            raise AccountNotFoundError(code)
        return account

    def require_postable(self, code: str) -> ChartAccount:
        account = self.get_account(code)
        if not account.is_active:
            raise AccountInactiveError(code)
        return account

    def deactivate(self, code: str, actor_id: UUID) -> ChartAccount:
        account = self.get_account(code)
        account.is_active = False
        account.updated_by_id = actor_id
        self.session.flush()
        logger.info("account_deactivated", extra={"account_code": code})
        return account

    def gateway_cash_account(self, gateway: str | None) -> str:
        """Cash/clearing account for a gateway (unknown gateways: bank transfer)."""
        return self.config.gateway_account(gateway)
