"""
Token ledger
============

Append-only log of credits and debits per driver plus a running wallet
balance that is moved in the same transaction as each entry, so the wallet
always equals the sum of the driver's entries.

Idempotency
-----------
When a ``reference`` is supplied it is looked up before anything is written;
a repeat returns the original entry untouched.  The unique index on
``token_transactions.reference`` is the store-level backstop.

The ledger only flushes; the caller owns the transaction.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from freightbook.domain.enums import LedgerDirection, UserRole
from freightbook.domain.errors import (
    Conflict,
    LedgerFailure,
    NotFound,
    ValidationFailed,
)
from freightbook.infrastructure.models import TokenTransactionModel
from freightbook.infrastructure.repositories import TokenRepository, UserRepository

logger = logging.getLogger(__name__)


class TokenLedger:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.repo = TokenRepository(session)
        self.users = UserRepository(session)

    async def credit(
        self,
        driver_id: int,
        amount: int,
        reason: str,
        actor_id: Optional[int],
        reference: Optional[str] = None,
    ) -> Optional[TokenTransactionModel]:
        """Credit *amount* tokens; a non-positive amount is a no-op."""
        if amount <= 0:
            return None
        if reference:
            existing = await self.repo.get_by_reference(reference)
            if existing is not None:
                logger.info("Ledger credit %s already applied; skipping", reference)
                return existing

        await self.repo.get_or_create_wallet(driver_id)
        await self.repo.add_to_balance(driver_id, amount)
        txn = await self.repo.add_transaction(
            TokenTransactionModel(
                driver_id=driver_id,
                direction=LedgerDirection.CREDIT,
                amount=amount,
                reason=reason,
                reference=reference,
                actor_id=actor_id,
            )
        )
        logger.info(
            "Ledger credit driver=%s amount=%d ref=%s", driver_id, amount, reference
        )
        return txn

    async def debit(
        self,
        driver_id: int,
        amount: int,
        reason: str,
        actor_id: Optional[int],
        reference: Optional[str] = None,
    ) -> TokenTransactionModel:
        """Debit *amount* tokens; refuses to overdraw the wallet."""
        if amount <= 0:
            raise ValidationFailed("Debit amount must be positive")
        if reference:
            existing = await self.repo.get_by_reference(reference)
            if existing is not None:
                logger.info("Ledger debit %s already applied; skipping", reference)
                return existing

        await self.repo.get_or_create_wallet(driver_id)
        if not await self.repo.withdraw(driver_id, amount):
            raise LedgerFailure(
                f"Insufficient tokens to debit {amount} from driver {driver_id}"
            )
        txn = await self.repo.add_transaction(
            TokenTransactionModel(
                driver_id=driver_id,
                direction=LedgerDirection.DEBIT,
                amount=amount,
                reason=reason,
                reference=reference,
                actor_id=actor_id,
            )
        )
        logger.info(
            "Ledger debit driver=%s amount=%d ref=%s", driver_id, amount, reference
        )
        return txn

    async def adjust(
        self,
        direction: LedgerDirection,
        driver_id: int,
        amount: int,
        reason: str,
        actor_id: int,
        reference: Optional[str] = None,
    ) -> TokenTransactionModel:
        """Manual wallet credit / debit on behalf of an admin.

        A repeated ``reference`` returns the entry it first produced; reusing
        it for a different driver, direction or amount is a ``Conflict``.
        """
        user = await self.users.get_by_id(driver_id)
        if user is None or not user.is_active or UserRole(user.role) != UserRole.DRIVER:
            raise NotFound("Driver not found or inactive")
        if amount <= 0:
            raise ValidationFailed("Amount must be positive")

        if reference:
            existing = await self.repo.get_by_reference(reference)
            if existing is not None and (
                existing.driver_id != driver_id
                or LedgerDirection(existing.direction) != direction
                or existing.amount != amount
            ):
                raise Conflict(f"Reference {reference} already used for another entry")

        apply = self.credit if direction == LedgerDirection.CREDIT else self.debit
        try:
            txn = await apply(driver_id, amount, reason, actor_id, reference=reference)
        except IntegrityError:
            await self.session.rollback()
            raise Conflict(f"Reference {reference} was applied concurrently")
        logger.info(
            "Admin %s %s driver=%s amount=%d", actor_id, direction.value, driver_id, amount
        )
        return txn

    async def balance(self, driver_id: int) -> int:
        wallet = await self.repo.get_wallet(driver_id)
        return wallet.balance if wallet else 0

    async def transactions(
        self, driver_id: int, *, offset: int = 0, limit: int = 10
    ) -> tuple[list[TokenTransactionModel], int]:
        return await self.repo.list_transactions(
            driver_id, offset=offset, limit=limit
        )
