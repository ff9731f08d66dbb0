from collections.abc import Callable
from dataclasses import dataclass

import structlog

from transaction_engine.application.unit_of_work import AbstractUnitOfWork
from transaction_engine.domain.exceptions import OptimisticLockError
from transaction_engine.domain.models import Transaction


logger = structlog.get_logger()


MAX_RESERVE_ATTEMPTS = 3


@dataclass
class Reservation:
    transaction: Transaction
    created: bool


class IdempotencyGuard:
    """Maps a (partner_id, idempotency_key) pair to exactly one transaction.

    The store's unique index on live rows does the arbitration: the insert is
    attempted with ``ON CONFLICT DO NOTHING`` and a caller that loses the race
    re-reads the winner's row. Keys never expire; they live as long as the row.
    """

    def __init__(self, uow: AbstractUnitOfWork) -> None:
        self.uow = uow

    async def reserve(
        self,
        partner_id: str,
        idempotency_key: str,
        build: Callable[[], Transaction],
    ) -> Reservation:
        """Return the existing transaction for the key, or insert the one ``build`` produces.

        ``build`` only runs when no live transaction owns the key, so a replay is
        answered before the new request body is validated.
        """
        log = logger.bind(partner_id=partner_id, idempotency_key=idempotency_key)

        for attempt in range(1, MAX_RESERVE_ATTEMPTS + 1):
            existing = await self.uow.transactions.get_by_idempotency_key(partner_id, idempotency_key)
            if existing:
                await self.uow.rollback()
                log.info("idempotent_replay", transaction_id=existing.id)
                return Reservation(transaction=existing, created=False)

            candidate = build()
            if await self.uow.transactions.add_if_absent(candidate):
                await self.uow.commit()
                log.info("transaction_reserved", transaction_id=candidate.id)
                return Reservation(transaction=candidate, created=True)

            # Lost the race: another caller committed the key first.
            await self.uow.rollback()
            log.info("idempotency_conflict", attempt=attempt)

        raise OptimisticLockError("Transaction", f"{partner_id}/{idempotency_key}")
