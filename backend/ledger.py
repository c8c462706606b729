"""
Token ledger: game records, the transaction log and player stats.

A balance is the sum of a player's transactions. The engine only relies on the
``LedgerGateway`` contract; ``SqlLedger`` is the SQLAlchemy implementation.
"""
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, Numeric, String, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from errors import InsufficientFundsError
from models import TransactionType

logger = logging.getLogger(__name__)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False)
    wins: Mapped[int] = mapped_column(Integer, default=0)
    losses: Mapped[int] = mapped_column(Integer, default=0)
    washes: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class GameRecord(Base):
    __tablename__ = "game_history"

    game_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    table_id: Mapped[str] = mapped_column(String(255), nullable=False)
    theme: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    player_count: Mapped[int] = mapped_column(Integer, nullable=False)
    outcome: Mapped[str] = mapped_column(String(255), default="In Progress")
    game_started_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    game_ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class Transaction(Base):
    __tablename__ = "transactions"

    transaction_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    game_id: Mapped[Optional[int]] = mapped_column(ForeignKey("game_history.game_id"), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    transaction_date: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


@dataclass(frozen=True)
class Posting:
    user_id: int
    type: TransactionType
    amount: Decimal
    description: str


@dataclass(frozen=True)
class StatChange:
    user_id: int
    wins: int = 0
    losses: int = 0
    washes: int = 0


class LedgerGateway(Protocol):
    async def create_game_record(self, table_id: str, theme: str, player_count: int) -> int: ...

    async def post_transaction(
        self,
        *,
        user_id: int,
        game_id: Optional[int],
        type: TransactionType,
        amount: Decimal,
        description: str,
    ) -> Transaction: ...

    async def update_game_record_outcome(self, game_id: int, outcome: str) -> None: ...

    async def handle_game_start_transaction(
        self, player_ids: Sequence[int], game_id: int, buy_in: Decimal
    ) -> None: ...

    async def get_balance(self, user_id: int) -> Decimal: ...

    async def get_balances(self, user_ids: Sequence[int]) -> Dict[int, Decimal]: ...

    async def update_player_stats(self, user_id: int, *, wins: int = 0, losses: int = 0, washes: int = 0) -> None: ...

    async def settle_game(
        self,
        game_id: int,
        *,
        postings: Sequence[Posting],
        stats: Sequence[StatChange],
        outcome: str,
    ) -> None: ...


def _as_decimal(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(Decimal("0.01"))


class SqlLedger:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def create_game_record(self, table_id: str, theme: str, player_count: int) -> int:
        async with self._session_maker() as session:
            record = GameRecord(table_id=table_id, theme=theme, player_count=player_count, outcome="In Progress")
            session.add(record)
            await session.commit()
            await session.refresh(record)
        logger.info("[Ledger] Created game_id %s for table %s", record.game_id, table_id)
        return record.game_id

    async def post_transaction(
        self,
        *,
        user_id: int,
        game_id: Optional[int],
        type: TransactionType,
        amount: Decimal,
        description: str,
    ) -> Transaction:
        async with self._session_maker() as session:
            row = Transaction(
                user_id=user_id,
                game_id=game_id,
                transaction_type=TransactionType(type).value,
                amount=_as_decimal(amount),
                description=description,
            )
            session.add(row)
            await session.commit()
            await session.refresh(row)
        logger.info(
            "[Ledger] Posted transaction %s for user %s, type=%s, amount=%s",
            row.transaction_id,
            user_id,
            row.transaction_type,
            row.amount,
        )
        return row

    async def update_game_record_outcome(self, game_id: int, outcome: str) -> None:
        async with self._session_maker() as session:
            await session.execute(
                update(GameRecord)
                .where(GameRecord.game_id == game_id)
                .values(outcome=outcome[:255], game_ended_at=datetime.utcnow())
            )
            await session.commit()
        logger.info("[Ledger] Finalized game_id %s with outcome %r", game_id, outcome)

    async def handle_game_start_transaction(
        self, player_ids: Sequence[int], game_id: int, buy_in: Decimal
    ) -> None:
        """Debit the buy-in from every player, or from nobody.

        User rows are locked in id order so two tables starting at once cannot
        both pass the balance check for the same player.
        """
        cost = _as_decimal(buy_in)
        async with self._session_maker() as session:
            async with session.begin():
                locked = await session.execute(
                    select(User).where(User.id.in_(list(player_ids))).order_by(User.id).with_for_update()
                )
                users = {user.id: user for user in locked.scalars()}
                balances = await self._balances(session, player_ids)
                for pid in player_ids:
                    user = users.get(pid)
                    balance = balances.get(pid, Decimal("0.00"))
                    if user is None or balance < 0 or balance < cost:
                        logger.warning("[Ledger] Buy-in rejected for user %s (balance %s)", pid, balance)
                        raise InsufficientFundsError(pid, user.username if user else None)
                for pid in player_ids:
                    session.add(
                        Transaction(
                            user_id=pid,
                            game_id=game_id,
                            transaction_type=TransactionType.BUY_IN.value,
                            amount=-cost,
                            description="Buy-in for a new game.",
                        )
                    )
        logger.info("[Ledger] Buy-in debited for players %s (game %s)", list(player_ids), game_id)

    async def _balances(self, session: AsyncSession, user_ids: Sequence[int]) -> Dict[int, Decimal]:
        result = await session.execute(
            select(Transaction.user_id, func.coalesce(func.sum(Transaction.amount), 0))
            .where(Transaction.user_id.in_(list(user_ids)))
            .group_by(Transaction.user_id)
        )
        return {user_id: _as_decimal(total) for user_id, total in result.all()}

    async def get_balance(self, user_id: int) -> Decimal:
        balances = await self.get_balances([user_id])
        return balances.get(user_id, Decimal("0.00"))

    async def get_balances(self, user_ids: Sequence[int]) -> Dict[int, Decimal]:
        if not user_ids:
            return {}
        async with self._session_maker() as session:
            return await self._balances(session, user_ids)

    async def update_player_stats(self, user_id: int, *, wins: int = 0, losses: int = 0, washes: int = 0) -> None:
        async with self._session_maker() as session:
            await session.execute(
                update(User)
                .where(User.id == user_id)
                .values(wins=User.wins + wins, losses=User.losses + losses, washes=User.washes + washes)
            )
            await session.commit()

    async def settle_game(
        self,
        game_id: int,
        *,
        postings: Sequence[Posting],
        stats: Sequence[StatChange],
        outcome: str,
    ) -> None:
        """Write every payout, stat change and the outcome in one transaction.

        Either the whole settlement lands or none of it does, so a failed
        resolution can be retried without paying anyone twice.
        """
        async with self._session_maker() as session:
            async with session.begin():
                for posting in postings:
                    session.add(
                        Transaction(
                            user_id=posting.user_id,
                            game_id=game_id,
                            transaction_type=TransactionType(posting.type).value,
                            amount=_as_decimal(posting.amount),
                            description=posting.description,
                        )
                    )
                for change in stats:
                    await session.execute(
                        update(User)
                        .where(User.id == change.user_id)
                        .values(
                            wins=User.wins + change.wins,
                            losses=User.losses + change.losses,
                            washes=User.washes + change.washes,
                        )
                    )
                await session.execute(
                    update(GameRecord)
                    .where(GameRecord.game_id == game_id)
                    .values(outcome=outcome[:255], game_ended_at=datetime.utcnow())
                )
        logger.info(
            "[Ledger] Settled game_id %s: %s postings, %s stat changes", game_id, len(postings), len(stats)
        )


async def create_user(session_maker: async_sessionmaker[AsyncSession], username: str, tokens: Decimal = Decimal("0")) -> User:
    """Create a user with an opening ``admin_adjustment`` grant."""
    async with session_maker() as session:
        user = User(username=username)
        session.add(user)
        await session.flush()
        if tokens:
            session.add(
                Transaction(
                    user_id=user.id,
                    transaction_type=TransactionType.ADMIN_ADJUSTMENT.value,
                    amount=_as_decimal(tokens),
                    description="Opening balance",
                )
            )
        await session.commit()
        await session.refresh(user)
        return user


async def list_transactions(session_maker: async_sessionmaker[AsyncSession], user_id: int) -> List[Transaction]:
    async with session_maker() as session:
        result = await session.execute(
            select(Transaction).where(Transaction.user_id == user_id).order_by(Transaction.transaction_id)
        )
        return list(result.scalars())
