"""
Escrow ledger.

Customer funds sit in the platform wallet from payment until the booking
completes, then split into provider payout and platform commission. Every money
movement is guarded by a conditional update on ``payments.escrow_status`` /
``payments.status`` so a replayed call (webhook redelivery, client retry) finds
nothing to do and leaves balances untouched.

The SLA penalty reduces the payout but is not booked as commission; it stays in
the wallet as retained funds.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.db_models import (
    Booking, Payment, EscrowWallet, WalletTransaction, User, Service,
    PaymentStatus, EscrowStatus, BookingPaymentStatus, TransactionType,
    PLATFORM_WALLET_ID,
)
from app.services import pricing

logger = logging.getLogger(__name__)


@dataclass
class WalletSummary:
    total_held: float
    total_released: float
    total_commission: float


class EscrowLedger:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_wallet(self) -> EscrowWallet:
        wallet = await self.db.get(EscrowWallet, PLATFORM_WALLET_ID)
        if wallet is None:
            wallet = EscrowWallet(
                id=PLATFORM_WALLET_ID, total_held=0.0, total_released=0.0, total_commission=0.0
            )
            self.db.add(wallet)
            await self.db.flush()
        return wallet

    async def summary(self) -> WalletSummary:
        wallet = await self.get_wallet()
        await self.db.refresh(wallet)
        return WalletSummary(
            total_held=pricing.money(wallet.total_held),
            total_released=pricing.money(wallet.total_released),
            total_commission=pricing.money(wallet.total_commission),
        )

    async def transactions(self, booking_id: Optional[str] = None) -> List[WalletTransaction]:
        query = select(WalletTransaction).order_by(WalletTransaction.created_at)
        if booking_id:
            query = query.where(WalletTransaction.booking_id == booking_id)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def _adjust_wallet(self, held: float = 0.0, released: float = 0.0, commission: float = 0.0) -> None:
        await self.get_wallet()
        await self.db.execute(
            update(EscrowWallet)
            .where(EscrowWallet.id == PLATFORM_WALLET_ID)
            .values(
                total_held=EscrowWallet.total_held + held,
                total_released=EscrowWallet.total_released + released,
                total_commission=EscrowWallet.total_commission + commission,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

    def _record(
        self,
        tx_type: TransactionType,
        amount: float,
        payment: Payment,
        user_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> None:
        self.db.add(WalletTransaction(
            wallet_id=PLATFORM_WALLET_ID,
            type=tx_type.value,
            amount=pricing.money(amount),
            booking_id=payment.booking_id,
            payment_id=payment.id,
            user_id=user_id,
            description=description,
        ))

    async def deposit(self, payment_id: str, external_transaction_id: Optional[str] = None) -> bool:
        """Move a pending payment into escrow. Returns False when it was already processed."""
        values = {
            "status": PaymentStatus.PAID.value,
            "escrow_status": EscrowStatus.HELD.value,
            "updated_at": datetime.utcnow(),
        }
        if external_transaction_id:
            values["external_transaction_id"] = external_transaction_id
        result = await self.db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info(f"Payment {payment_id} already deposited or not pending; skipping")
            return False

        payment = await self.db.get(Payment, payment_id)
        await self.db.refresh(payment)
        await self._adjust_wallet(held=payment.amount)
        self._record(
            TransactionType.DEPOSIT, payment.amount, payment,
            user_id=payment.customer_id, description="Customer payment held in escrow",
        )
        await self.db.flush()
        logger.info(f"Escrow deposit {payment.amount:.2f} for booking {payment.booking_id} (payment {payment_id})")
        return True

    async def release(self, payment_id: str, booking_id: str) -> bool:
        """Pay the provider out of escrow. No-op unless the payment is currently held."""
        result = await self.db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.escrow_status == EscrowStatus.HELD.value)
            .values(
                escrow_status=EscrowStatus.RELEASED.value,
                status=PaymentStatus.COMPLETED.value,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info(f"Payment {payment_id} not held in escrow; release skipped")
            return False

        payment = await self.db.get(Payment, payment_id)
        await self.db.refresh(payment)
        booking = await self.db.get(Booking, booking_id)
        service = await self.db.get(Service, booking.service_id)
        provider_id = service.provider_id if service else None

        settlement = pricing.calculate_settlement(
            amount=payment.amount,
            tip_amount=payment.tip_amount or 0.0,
            sla_penalty_amount=booking.sla_penalty_amount or 0.0,
            commission_rate=payment.commission_rate,
        )

        payment.commission_amount = settlement.commission_amount
        payment.provider_payout = settlement.provider_payout

        booking.payment_status = BookingPaymentStatus.RELEASED_TO_PROVIDER.value
        booking.commission_amount = settlement.commission_amount
        booking.provider_payout_amount = settlement.provider_payout

        if provider_id:
            await self.db.execute(
                update(User)
                .where(User.id == provider_id)
                .values(wallet_balance=User.wallet_balance + settlement.provider_payout)
                .execution_options(synchronize_session=False)
            )

        await self._adjust_wallet(
            held=-payment.amount,
            released=settlement.provider_payout,
            commission=settlement.commission_amount,
        )
        self._record(
            TransactionType.RELEASE, settlement.provider_payout, payment,
            user_id=provider_id, description="Escrow released to provider",
        )
        self._record(
            TransactionType.COMMISSION, settlement.commission_amount, payment,
            description=f"Platform commission at {settlement.commission_rate:.0%}",
        )
        if settlement.sla_penalty_amount > 0:
            self._record(
                TransactionType.SLA_PENALTY, settlement.sla_penalty_amount, payment,
                user_id=provider_id, description="SLA breach penalty withheld from payout",
            )
        await self.db.flush()
        logger.info(
            f"Escrow released for booking {booking_id}: payout {settlement.provider_payout:.2f}, "
            f"commission {settlement.commission_amount:.2f}, penalty {settlement.sla_penalty_amount:.2f}"
        )
        return True

    async def refund(self, payment_id: str) -> bool:
        """Return held funds to the customer. No-op unless the payment is currently held."""
        result = await self.db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.escrow_status == EscrowStatus.HELD.value)
            .values(
                escrow_status=EscrowStatus.REFUNDED.value,
                status=PaymentStatus.REFUNDED.value,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info(f"Payment {payment_id} not held in escrow; refund skipped")
            return False

        payment = await self.db.get(Payment, payment_id)
        await self.db.refresh(payment)
        await self._adjust_wallet(held=-payment.amount)
        self._record(
            TransactionType.REFUND, payment.amount, payment,
            user_id=payment.customer_id, description="Escrow refunded to customer",
        )
        await self.db.flush()
        logger.info(f"Escrow refund {payment.amount:.2f} for booking {payment.booking_id} (payment {payment_id})")
        return True

    async def held_payment_for(self, booking_id: str) -> Optional[Payment]:
        result = await self.db.execute(
            select(Payment)
            .where(Payment.booking_id == booking_id, Payment.escrow_status == EscrowStatus.HELD.value)
            .order_by(Payment.created_at)
        )
        return result.scalars().first()
