"""
degentalk.services.wallet_service — DGT Wallet & Ledger
=========================================================

Every balance change goes through :func:`credit` or :func:`debit`, which
lock the wallet row, adjust the balance and append a ``transactions``
row inside the caller's session.  Multi-leg movements (transfers, tips,
rain) call both inside one session so they commit atomically.

Amounts inside this module are integer micro-DGT.  Public entry points
that take user input accept :class:`~decimal.Decimal` and convert.
"""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from degentalk.database.engine import get_session
from degentalk.database.models import (
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
    Wallet,
    utcnow,
)
from degentalk.engine.economy import EconomyConfig, format_dgt, from_micro, to_micro
from degentalk.errors import (
    BadRequestError,
    BusinessRuleViolationError,
    FeatureDisabledError,
    InsufficientFundsError,
    NotFoundError,
    ValidationError,
)
from degentalk.services.notification_service import NotificationType, notify

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from degentalk.engine.cache import ConfigCache

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Source → ledger type / description
# ---------------------------------------------------------------------------
SOURCE_TYPES: dict[str, TransactionType] = {
    "crypto_deposit": TransactionType.DEPOSIT_CREDIT,
    "tip_send": TransactionType.TIP_SEND,
    "tip_receive": TransactionType.TIP_RECEIVE,
    "rain_send": TransactionType.RAIN_SEND,
    "rain_receive": TransactionType.RAIN_RECEIVE,
    "admin_credit": TransactionType.ADMIN_CREDIT,
    "admin_debit": TransactionType.ADMIN_DEBIT,
    "internal_transfer_send": TransactionType.INTERNAL_TRANSFER_SEND,
    "internal_transfer_receive": TransactionType.INTERNAL_TRANSFER_RECEIVE,
    "withdrawal": TransactionType.WITHDRAWAL,
    "withdrawal_refund": TransactionType.WITHDRAWAL_REFUND,
    "level_reward": TransactionType.LEVEL_REWARD,
    "achievement_reward": TransactionType.ACHIEVEMENT_REWARD,
}

SOURCE_DESCRIPTIONS: dict[str, str] = {
    "crypto_deposit": "Crypto deposit converted to DGT",
    "tip_send": "Tip sent",
    "tip_receive": "Tip received",
    "rain_send": "Rain sent",
    "rain_receive": "Rain received",
    "admin_credit": "Admin credit",
    "admin_debit": "Admin debit",
    "internal_transfer_send": "Transfer sent",
    "internal_transfer_receive": "Transfer received",
    "withdrawal": "Crypto withdrawal",
    "withdrawal_refund": "Withdrawal refund",
    "level_reward": "Level-up reward",
    "achievement_reward": "Achievement reward",
}


def ensure_economy_open(economy: EconomyConfig) -> None:
    """Raise :class:`FeatureDisabledError` while the kill switch or maintenance is on."""
    if economy.emergency.kill_switch or economy.emergency.maintenance_mode:
        raise FeatureDisabledError(
            economy.emergency.message or "The DGT economy is temporarily unavailable",
        )


# ---------------------------------------------------------------------------
# Wallet rows
# ---------------------------------------------------------------------------
def get_or_create_wallet(session: Session, user_id: int, *, lock: bool = False) -> Wallet:
    """Fetch the user's wallet, creating an empty one on first use."""
    query = select(Wallet).where(Wallet.user_id == user_id)
    if lock:
        query = query.with_for_update()
    wallet = session.scalar(query)
    if wallet is None:
        if session.get(User, user_id) is None:
            raise NotFoundError("User")
        wallet = Wallet(user_id=user_id, balance=0)
        session.add(wallet)
        session.flush()
    return wallet


def get_balance(engine: Engine, user_id: int) -> int:
    """Current balance in micro-DGT (creates the wallet if missing)."""
    with get_session(engine) as session:
        return get_or_create_wallet(session, user_id).balance


# ---------------------------------------------------------------------------
# Ledger primitives (caller owns the transaction)
# ---------------------------------------------------------------------------
def _resolve_type(source: str) -> TransactionType:
    ttype = SOURCE_TYPES.get(source)
    if ttype is None:
        raise ValidationError(f"Unknown transaction source: {source}")
    return ttype


def credit(
    session: Session,
    user_id: int,
    amount: int,
    source: str,
    *,
    economy: EconomyConfig | None = None,
    from_user_id: int | None = None,
    reference: str | None = None,
    description: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> Transaction:
    """Add *amount* micro-DGT to the user's wallet and record it."""
    if amount <= 0:
        raise ValidationError("Amount must be positive")
    ttype = _resolve_type(source)
    economy = economy or EconomyConfig()

    wallet = get_or_create_wallet(session, user_id, lock=True)
    max_balance = to_micro(economy.wallet.max_balance)
    if wallet.balance + amount > max_balance:
        raise BusinessRuleViolationError(
            f"Credit would exceed the maximum wallet balance of {format_dgt(max_balance)}",
        )

    wallet.balance += amount
    wallet.last_transaction_at = utcnow()
    tx = Transaction(
        wallet_id=wallet.id,
        user_id=user_id,
        from_user_id=from_user_id,
        to_user_id=user_id,
        amount=amount,
        type=ttype.value,
        status=TransactionStatus.CONFIRMED.value,
        description=description or SOURCE_DESCRIPTIONS[source],
        reference=reference,
        metadata_=metadata,
    )
    session.add(tx)
    session.flush()
    logger.info("Credited %s to user %d (%s)", format_dgt(amount), user_id, ttype)
    return tx


def debit(
    session: Session,
    user_id: int,
    amount: int,
    source: str,
    *,
    to_user_id: int | None = None,
    reference: str | None = None,
    description: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> Transaction:
    """Remove *amount* micro-DGT from the user's wallet and record it."""
    if amount <= 0:
        raise ValidationError("Amount must be positive")
    ttype = _resolve_type(source)

    wallet = get_or_create_wallet(session, user_id, lock=True)
    if wallet.balance < amount:
        raise InsufficientFundsError(
            "Insufficient DGT balance",
            details={
                "balance": str(from_micro(wallet.balance)),
                "required": str(from_micro(amount)),
            },
        )

    wallet.balance -= amount
    wallet.last_transaction_at = utcnow()
    tx = Transaction(
        wallet_id=wallet.id,
        user_id=user_id,
        from_user_id=user_id,
        to_user_id=to_user_id,
        amount=-amount,
        type=ttype.value,
        status=TransactionStatus.CONFIRMED.value,
        description=description or SOURCE_DESCRIPTIONS[source],
        reference=reference,
        metadata_=metadata,
    )
    session.add(tx)
    session.flush()
    logger.info("Debited %s from user %d (%s)", format_dgt(amount), user_id, ttype)
    return tx


def move(
    session: Session,
    *,
    from_user_id: int,
    to_user_id: int,
    amount: int,
    send_source: str,
    receive_source: str,
    economy: EconomyConfig,
    reference: str,
    metadata: dict[str, Any] | None = None,
) -> tuple[Transaction, Transaction]:
    """Debit one user and credit another under a shared *reference*."""
    sent = debit(
        session, from_user_id, amount, send_source,
        to_user_id=to_user_id, reference=reference, metadata=metadata,
    )
    received = credit(
        session, to_user_id, amount, receive_source,
        economy=economy, from_user_id=from_user_id, reference=reference, metadata=metadata,
    )
    return sent, received


# ---------------------------------------------------------------------------
# Transfers
# ---------------------------------------------------------------------------
def transfer(
    engine: Engine,
    cache: ConfigCache,
    from_user_id: int,
    to_user_id: int,
    amount: Decimal,
    note: str | None = None,
) -> dict[str, Any]:
    """Send DGT directly to another user in a single transaction."""
    economy = cache.economy()
    ensure_economy_open(economy)
    if not economy.wallet.allow_internal_transfers or not cache.is_feature_enabled("transfers"):
        raise FeatureDisabledError("Internal transfers are disabled")

    micro = to_micro(amount)
    if micro <= 0:
        raise ValidationError("Amount must be positive")
    if from_user_id == to_user_id:
        raise BadRequestError("Cannot transfer to yourself")
    if micro > to_micro(economy.wallet.max_transfer):
        raise BusinessRuleViolationError(
            f"Transfers are limited to {economy.wallet.max_transfer} DGT",
        )

    transfer_id = f"transfer_{uuid.uuid4().hex}"
    with get_session(engine) as session:
        sender = session.get(User, from_user_id)
        if sender is None:
            raise NotFoundError("Sender")
        recipient = session.get(User, to_user_id)
        if recipient is None:
            raise NotFoundError("Recipient")

        metadata = {"note": note} if note else None
        sent, _ = move(
            session,
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            amount=micro,
            send_source="internal_transfer_send",
            receive_source="internal_transfer_receive",
            economy=economy,
            reference=transfer_id,
            metadata=metadata,
        )
        notify(
            session, to_user_id, NotificationType.TRANSFER_RECEIVED,
            f"{sender.username} sent you {format_dgt(micro)}",
            body=note,
            data={"transfer_id": transfer_id, "from_user_id": from_user_id},
        )
        balance = get_or_create_wallet(session, from_user_id).balance

    logger.info(
        "Transfer %s: %d → %d %s", transfer_id, from_user_id, to_user_id, format_dgt(micro),
    )
    return {
        "transfer_id": transfer_id,
        "transaction_id": sent.id,
        "amount": str(from_micro(micro)),
        "balance": str(from_micro(balance)),
    }


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def transaction_to_dict(tx: Transaction) -> dict[str, Any]:
    return {
        "id": tx.id,
        "type": tx.type,
        "status": tx.status,
        "amount": str(from_micro(tx.amount)),
        "from_user_id": tx.from_user_id,
        "to_user_id": tx.to_user_id,
        "description": tx.description,
        "reference": tx.reference,
        "metadata": tx.metadata_,
        "created_at": tx.created_at.isoformat() if tx.created_at else None,
    }


def get_history(
    engine: Engine,
    user_id: int,
    *,
    limit: int = 50,
    offset: int = 0,
    type: str | None = None,
) -> list[dict[str, Any]]:
    """Newest-first ledger entries for *user_id*, optionally filtered by type."""
    with get_session(engine) as session:
        query = (
            select(Transaction)
            .where(Transaction.user_id == user_id)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        if type:
            query = query.where(Transaction.type == type.upper())
        return [transaction_to_dict(tx) for tx in session.scalars(query).all()]


def get_analytics(engine: Engine) -> dict[str, Any]:
    """Supply and activity figures for the admin wallet dashboard."""
    since = utcnow() - timedelta(hours=24)
    with get_session(engine) as session:
        total_supply = session.scalar(select(func.coalesce(func.sum(Wallet.balance), 0))) or 0
        holders = session.scalar(
            select(func.count()).select_from(Wallet).where(Wallet.balance > 0)
        ) or 0
        total_transactions = session.scalar(
            select(func.count()).select_from(Transaction)
        ) or 0
        daily_volume = session.scalar(
            select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                Transaction.amount > 0,
                Transaction.created_at >= since,
            )
        ) or 0

    average = total_supply // holders if holders else 0
    return {
        "total_supply": str(from_micro(total_supply)),
        "holders": holders,
        "total_transactions": total_transactions,
        "daily_volume": str(from_micro(daily_volume)),
        "average_balance": str(from_micro(average)),
    }
