"""Repository pattern implementations for data access.

This module provides data access abstractions for accounts and the
P2P transactions synced from them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update

from bybit_p2p_sync.storage.models import AccountModel, TransactionModel

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# Active accounts whose API key and secret are both non-empty.
_SYNCABLE_ACCOUNT = (
    AccountModel.is_active.is_(True),
    AccountModel.api_key.is_not(None),
    AccountModel.api_key != "",
    AccountModel.api_secret.is_not(None),
    AccountModel.api_secret != "",
)


class AccountKind(str, Enum):
    """Who owns the credentials. Both kinds sync the same way."""

    USER = "user"
    CABINET = "cabinet"


@dataclass
class AccountDTO:
    """Data transfer object for accounts."""

    id: int
    kind: AccountKind
    api_key: str | None
    api_secret: str | None
    name: str | None = None
    is_active: bool = True
    last_sync_at: datetime | None = None
    last_sync_status: str | None = None

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_key.strip() and self.api_secret and self.api_secret.strip())

    @property
    def can_be_synced(self) -> bool:
        return self.is_active and self.has_credentials

    @classmethod
    def from_model(cls, model: AccountModel) -> AccountDTO:
        return cls(
            id=model.id,
            kind=AccountKind(model.kind),
            api_key=model.api_key,
            api_secret=model.api_secret,
            name=model.name,
            is_active=model.is_active,
            last_sync_at=model.last_sync_at,
            last_sync_status=model.last_sync_status,
        )


@dataclass
class TransactionDTO:
    """Data transfer object for synced P2P transactions."""

    order_no: str
    account_id: int
    counterparty: str
    status: str
    type: str
    asset: str
    amount: Decimal
    unit_price: Decimal
    total_price: Decimal
    date_time: datetime
    raw_payload: dict[str, Any] = field(default_factory=dict)
    enriched: bool = False
    extracted_phones: list[str] = field(default_factory=list)
    last_enrichment_error: str | None = None
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: TransactionModel) -> TransactionDTO:
        return cls(
            id=model.id,
            order_no=model.order_no,
            account_id=model.account_id,
            counterparty=model.counterparty,
            status=model.status,
            type=model.type,
            asset=model.asset,
            amount=model.amount,
            unit_price=model.unit_price,
            total_price=model.total_price,
            date_time=model.date_time,
            raw_payload=dict(model.raw_payload or {}),
            enriched=model.enriched,
            extracted_phones=list(model.extracted_phones or []),
            last_enrichment_error=model.last_enrichment_error,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )


class AccountRepository:
    """Repository for credential-holding accounts."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, account_id: int) -> AccountDTO | None:
        result = await self.session.execute(select(AccountModel).where(AccountModel.id == account_id))
        model = result.scalar_one_or_none()
        return AccountDTO.from_model(model) if model else None

    async def list_with_credentials(self) -> list[AccountDTO]:
        """Active accounts whose API key and secret are both non-empty."""
        stmt = (
            select(AccountModel)
            .where(*_SYNCABLE_ACCOUNT)
            .order_by(AccountModel.id)
        )
        result = await self.session.execute(stmt)
        return [AccountDTO.from_model(m) for m in result.scalars().all()]

    async def insert(
        self,
        *,
        kind: AccountKind,
        api_key: str | None,
        api_secret: str | None,
        name: str | None = None,
        is_active: bool = True,
    ) -> AccountDTO:
        model = AccountModel(
            kind=kind.value,
            name=name,
            api_key=api_key,
            api_secret=api_secret,
            is_active=is_active,
        )
        self.session.add(model)
        await self.session.flush()
        return AccountDTO.from_model(model)

    async def update_sync_status(self, account_id: int, *, status: str, synced_at: datetime) -> None:
        await self.session.execute(
            update(AccountModel)
            .where(AccountModel.id == account_id)
            .values(last_sync_at=synced_at, last_sync_status=status, updated_at=datetime.now(UTC))
        )


class TransactionRepository:
    """Repository for synced P2P transactions.

    Rows are keyed by (order_no, account_id); inserts assume the caller has
    already checked for absence and let the unique constraint reject races.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, transaction_id: int) -> TransactionDTO | None:
        result = await self.session.execute(
            select(TransactionModel).where(TransactionModel.id == transaction_id)
        )
        model = result.scalar_one_or_none()
        return TransactionDTO.from_model(model) if model else None

    async def get_by_order(self, order_no: str, account_id: int) -> TransactionDTO | None:
        result = await self.session.execute(
            select(TransactionModel).where(
                TransactionModel.order_no == order_no,
                TransactionModel.account_id == account_id,
            )
        )
        model = result.scalar_one_or_none()
        return TransactionDTO.from_model(model) if model else None

    async def insert(self, dto: TransactionDTO) -> TransactionDTO:
        now = datetime.now(UTC)
        model = TransactionModel(
            order_no=dto.order_no,
            account_id=dto.account_id,
            counterparty=dto.counterparty,
            status=dto.status,
            type=dto.type,
            asset=dto.asset,
            amount=dto.amount,
            unit_price=dto.unit_price,
            total_price=dto.total_price,
            date_time=dto.date_time,
            raw_payload=dto.raw_payload,
            enriched=dto.enriched,
            extracted_phones=list(dto.extracted_phones),
            last_enrichment_error=dto.last_enrichment_error,
            created_at=now,
            updated_at=now,
        )
        self.session.add(model)
        await self.session.flush()
        return TransactionDTO.from_model(model)

    async def update_status(self, transaction_id: int, status: str) -> None:
        await self.session.execute(
            update(TransactionModel)
            .where(TransactionModel.id == transaction_id)
            .values(status=status, updated_at=datetime.now(UTC))
        )

    async def list_unenriched(self, *, limit: int | None = None) -> list[TransactionDTO]:
        """Unenriched transactions of accounts that can still be enriched.

        Only active accounts with both credentials are considered. Rows that
        have never failed come before rows carrying an enrichment error, then
        grouped by account, oldest first within each.
        """
        stmt = (
            select(TransactionModel)
            .join(AccountModel, AccountModel.id == TransactionModel.account_id)
            .where(TransactionModel.enriched.is_(False))
            .where(*_SYNCABLE_ACCOUNT)
            .order_by(
                TransactionModel.last_enrichment_error.is_not(None),
                TransactionModel.account_id,
                TransactionModel.date_time,
                TransactionModel.id,
            )
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return [TransactionDTO.from_model(m) for m in result.scalars().all()]

    async def update_enrichment(
        self,
        transaction_id: int,
        *,
        phones: list[str],
        enriched: bool,
        error: str | None,
    ) -> None:
        await self.session.execute(
            update(TransactionModel)
            .where(TransactionModel.id == transaction_id)
            .values(
                extracted_phones=list(phones),
                enriched=enriched,
                last_enrichment_error=error,
                updated_at=datetime.now(UTC),
            )
        )
