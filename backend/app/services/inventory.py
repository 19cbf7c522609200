"""
Stock reservation engine.

On-hand stock lives on ``ProductVariant.stock_quantity`` and is only ever
decremented by a confirmation or an admin adjustment. Holds are rows in
``stock_reservations``; available stock is on-hand minus the active,
unexpired holds. Every mutating method runs in one transaction: it opens one
when the session is idle and joins the caller's unit of work otherwise (the
caller then commits). Each mutation locks the variant row (SELECT ... FOR
UPDATE) so availability is re-read inside the transaction that writes the hold.
"""
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Union

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.base import utcnow
from backend.app.core.exceptions import ServiceError
from backend.app.core.logging import get_logger
from backend.app.core.metrics import (
    expired_reservations_swept_total,
    stock_adjustments_total,
    stock_confirmations_total,
    stock_releases_total,
    stock_reservations_total,
)
from backend.app.core.settings import Settings, get_settings
from backend.app.models.inventory import HolderId, StockAction, StockReservation
from backend.app.models.variant import ProductVariant
from backend.app.services.audit import record_stock_change

logger = get_logger(__name__)

HolderLike = Union[HolderId, str]


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class InventoryServiceError(ServiceError):
    """Base exception for inventory errors."""


class VariantNotFoundError(InventoryServiceError):
    def __init__(self, variant_id: int):
        self.variant_id = variant_id
        super().__init__(f"Product variant {variant_id} not found", 404)


class InsufficientStockError(InventoryServiceError):
    def __init__(self, variant_id: int, requested: int, available: int):
        self.variant_id = variant_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Not enough stock for variant {variant_id}: requested {requested}, available {available}",
            409,
        )


class ReservationNotFoundError(InventoryServiceError):
    def __init__(self, variant_id: int, holder_id: str):
        self.variant_id = variant_id
        self.holder_id = holder_id
        super().__init__(f"No active reservation for variant {variant_id} held by {holder_id}", 404)


class InvalidQuantityError(InventoryServiceError):
    def __init__(self, message: str):
        super().__init__(message, 400)


class InvalidHolderError(InventoryServiceError):
    def __init__(self):
        super().__init__("Holder id cannot be empty", 400)


class ReservationConflictError(InventoryServiceError):
    """Concurrent writer won the active-reservation uniqueness race. Safe to retry."""

    def __init__(self, variant_id: int, holder_id: str):
        self.variant_id = variant_id
        self.holder_id = holder_id
        super().__init__(
            f"Concurrent reservation update for variant {variant_id} by {holder_id}, please retry",
            409,
        )


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class ConfirmResult:
    variant_id: int
    quantity: int
    stock_before: int
    stock_after: int
    reservation_id: Optional[int]
    mode: str  # reserved | direct | duplicate
    clamped: bool = False


@dataclass
class StockSummary:
    variant_id: int
    on_hand: int
    reserved: int
    available: int
    reorder_level: int

    @property
    def is_low_stock(self) -> bool:
        return self.available <= self.reorder_level


def _active_clause():
    return and_(
        StockReservation.is_released == False,  # noqa: E712
        StockReservation.is_confirmed == False,  # noqa: E712
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class InventoryService:
    def __init__(
        self,
        session: AsyncSession,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self._now = clock

    # -- helpers ------------------------------------------------------------

    @asynccontextmanager
    async def _atomic(self):
        if self.session.in_transaction():
            yield
        else:
            async with self.session.begin():
                yield

    @staticmethod
    def holder_key(holder_id: HolderLike) -> str:
        if isinstance(holder_id, HolderId):
            return str(holder_id)
        if holder_id is None or not str(holder_id).strip():
            raise InvalidHolderError()
        return str(holder_id).strip()

    def validate_quantity(self, quantity: int) -> None:
        low = self.settings.RESERVATION_MIN_QUANTITY
        high = self.settings.RESERVATION_MAX_QUANTITY
        if quantity < low:
            raise InvalidQuantityError(f"Quantity must be at least {low}")
        if quantity > high:
            raise InvalidQuantityError(f"Quantity cannot exceed {high}")

    async def _lock_variant(self, variant_id: int) -> Optional[ProductVariant]:
        result = await self.session.execute(
            select(ProductVariant)
            .where(ProductVariant.id == variant_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _require_variant(self, variant_id: int) -> ProductVariant:
        variant = await self._lock_variant(variant_id)
        if variant is None:
            raise VariantNotFoundError(variant_id)
        return variant

    async def _active_reservation(self, variant_id: int, holder: str) -> Optional[StockReservation]:
        """The holder's unreleased, unconfirmed row for the variant, expired or not."""
        result = await self.session.execute(
            select(StockReservation)
            .where(
                StockReservation.variant_id == variant_id,
                StockReservation.holder_id == holder,
                _active_clause(),
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _reserved_quantity(self, variant_id: int, now: datetime) -> int:
        result = await self.session.execute(
            select(func.coalesce(func.sum(StockReservation.quantity), 0)).where(
                StockReservation.variant_id == variant_id,
                _active_clause(),
                StockReservation.expires_at > now,
            )
        )
        return int(result.scalar_one())

    async def _finish(self, reservation: StockReservation, **values) -> bool:
        """
        Flip a reservation to a terminal flag only while it is still active.
        Sweeper and confirmation race on the same predicate; exactly one wins.
        """
        result = await self.session.execute(
            update(StockReservation)
            .where(StockReservation.id == reservation.id, _active_clause())
            .values(updated_at=self._now(), **values)
        )
        return result.rowcount == 1

    async def _lapse(self, reservation: StockReservation, on_hand: int, reason: str) -> bool:
        if not await self._finish(reservation, is_released=True):
            return False
        record_stock_change(
            self.session,
            reservation.variant_id,
            StockAction.CLEANUP,
            -reservation.quantity,
            on_hand,
            on_hand,
            holder_id=reservation.holder_id,
            reservation_id=reservation.id,
            reason=reason,
        )
        return True

    # -- reads --------------------------------------------------------------

    async def _read_variant(self, variant_id: int) -> Optional[ProductVariant]:
        result = await self.session.execute(
            select(ProductVariant)
            .where(ProductVariant.id == variant_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_available_stock(self, variant_id: int) -> int:
        """On-hand minus active, unexpired holds; never negative."""
        variant = await self._read_variant(variant_id)
        if variant is None:
            return 0
        reserved = await self._reserved_quantity(variant_id, self._now())
        return max(0, variant.stock_quantity - reserved)

    async def is_stock_available(self, variant_id: int, quantity: int) -> bool:
        return quantity <= await self.get_available_stock(variant_id)

    async def available_to_holder(self, variant_id: int, holder_id: HolderLike) -> int:
        """Units the holder could confirm right now: free stock plus their own unexpired hold."""
        holder = self.holder_key(holder_id)
        variant = await self._read_variant(variant_id)
        if variant is None:
            raise VariantNotFoundError(variant_id)
        now = self._now()
        own = await self._active_reservation(variant_id, holder)
        held = own.quantity if own is not None and not own.is_expired(now) else 0
        free = max(0, variant.stock_quantity - await self._reserved_quantity(variant_id, now))
        return min(variant.stock_quantity, free + held)

    async def get_stock_summary(self, variant_id: int) -> StockSummary:
        variant = await self._read_variant(variant_id)
        if variant is None:
            raise VariantNotFoundError(variant_id)
        reserved = await self._reserved_quantity(variant_id, self._now())
        return StockSummary(
            variant_id=variant_id,
            on_hand=variant.stock_quantity,
            reserved=reserved,
            available=max(0, variant.stock_quantity - reserved),
            reorder_level=variant.reorder_level,
        )

    # -- reserve ------------------------------------------------------------

    async def reserve_stock(
        self,
        variant_id: int,
        quantity: int,
        holder_id: HolderLike,
        duration: Optional[timedelta] = None,
    ) -> bool:
        """
        Create or resize the holder's hold on a variant.

        A new hold needs the full quantity available; growing an existing hold
        only needs the delta; shrinking always succeeds. Returns False (and
        writes nothing) when stock is short.

        A lost race on the active-hold unique index is retried once when this
        call owns the transaction, otherwise ReservationConflictError is raised
        for the caller to roll back and retry.
        """
        holder = self.holder_key(holder_id)
        self.validate_quantity(quantity)
        if duration is None:
            duration = timedelta(seconds=self.settings.RESERVATION_TTL_SECONDS)
        if duration.total_seconds() <= 0:
            raise InvalidQuantityError("Reservation duration must be positive")

        owns_transaction = not self.session.in_transaction()
        attempts = 2 if owns_transaction else 1
        for attempt in range(1, attempts + 1):
            try:
                async with self._atomic():
                    return await self._reserve(variant_id, quantity, holder, duration)
            except IntegrityError as exc:
                if attempt == attempts:
                    raise ReservationConflictError(variant_id, holder) from exc
                logger.warning(
                    "Reservation uniqueness race lost, retrying",
                    variant_id=variant_id,
                    holder_id=holder,
                )
        raise ReservationConflictError(variant_id, holder)

    async def _reserve(self, variant_id: int, quantity: int, holder: str, duration: timedelta) -> bool:
        now = self._now()
        variant = await self._require_variant(variant_id)

        existing = await self._active_reservation(variant_id, holder)
        lapsed = None
        if existing is not None and existing.is_expired(now):
            lapsed, existing = existing, None

        available = max(0, variant.stock_quantity - await self._reserved_quantity(variant_id, now))
        needed = quantity if existing is None else max(0, quantity - existing.quantity)

        if needed > available:
            stock_reservations_total.labels(result="rejected").inc()
            logger.info(
                "Reservation rejected: insufficient stock",
                variant_id=variant_id,
                holder_id=holder,
                requested=quantity,
                needed=needed,
                available=available,
            )
            return False

        if lapsed is not None:
            await self._lapse(lapsed, variant.stock_quantity, "Expired hold lapsed before re-reservation")

        if existing is not None:
            old_quantity = existing.quantity
            existing.quantity = quantity
            existing.expires_at = now + duration
            reservation = existing
            delta = quantity - old_quantity
            reason = f"Updated reservation from {old_quantity} to {quantity}"
            outcome = "updated"
        else:
            reservation = StockReservation(
                variant_id=variant_id,
                holder_id=holder,
                quantity=quantity,
                expires_at=now + duration,
                is_released=False,
                is_confirmed=False,
            )
            self.session.add(reservation)
            delta = quantity
            reason = "New reservation created"
            outcome = "created"

        # Surface a uniqueness violation here rather than at commit
        await self.session.flush()

        record_stock_change(
            self.session,
            variant_id,
            StockAction.RESERVE,
            delta,
            variant.stock_quantity,
            variant.stock_quantity,
            holder_id=holder,
            reservation_id=reservation.id,
            reason=reason,
        )
        stock_reservations_total.labels(result=outcome).inc()
        logger.info(
            "Stock reserved",
            variant_id=variant_id,
            holder_id=holder,
            quantity=quantity,
            delta=delta,
            reservation_id=reservation.id,
            expires_at=reservation.expires_at.isoformat(),
        )
        return True

    # -- release ------------------------------------------------------------

    async def release_reservation(self, variant_id: int, holder_id: HolderLike) -> bool:
        """Release the holder's active hold. Returns False (no-op) when there is none."""
        holder = self.holder_key(holder_id)
        async with self._atomic():
            variant = await self._lock_variant(variant_id)
            if variant is None:
                return False
            reservation = await self._active_reservation(variant_id, holder)
            if reservation is None or not await self._finish(reservation, is_released=True):
                return False

            record_stock_change(
                self.session,
                variant_id,
                StockAction.RELEASE,
                -reservation.quantity,
                variant.stock_quantity,
                variant.stock_quantity,
                holder_id=holder,
                reservation_id=reservation.id,
                reason="Reservation released",
            )
        stock_releases_total.inc()
        logger.info(
            "Reservation released",
            variant_id=variant_id,
            holder_id=holder,
            reservation_id=reservation.id,
            quantity=reservation.quantity,
        )
        return True

    # -- confirm ------------------------------------------------------------

    async def confirm_stock(
        self,
        variant_id: int,
        quantity: int,
        holder_id: HolderLike,
        order_ref: Optional[str] = None,
        require_reservation: bool = False,
    ) -> ConfirmResult:
        """
        Permanently deduct ``quantity`` from on-hand stock for a sale.

        With an active hold: the hold is marked confirmed and on-hand is
        decremented, floored at zero (clamping is written to the audit trail;
        STRICT_STOCK_CONFIRM turns it into InsufficientStockError). Without one:
        the sale goes through only if on-hand stock covers it, otherwise
        InsufficientStockError, or ReservationNotFoundError when
        ``require_reservation`` is set. Repeating a confirm with the same
        ``order_ref`` is a no-op.
        """
        holder = self.holder_key(holder_id)
        self.validate_quantity(quantity)

        async with self._atomic():
            now = self._now()
            variant = await self._require_variant(variant_id)

            if order_ref:
                duplicate = await self._confirmed_for_order(variant_id, holder, order_ref)
                if duplicate is not None:
                    stock_confirmations_total.labels(mode="duplicate").inc()
                    logger.info(
                        "Stock already confirmed for order, skipping",
                        variant_id=variant_id,
                        holder_id=holder,
                        order_ref=order_ref,
                        reservation_id=duplicate.id,
                    )
                    return ConfirmResult(
                        variant_id=variant_id,
                        quantity=duplicate.quantity,
                        stock_before=variant.stock_quantity,
                        stock_after=variant.stock_quantity,
                        reservation_id=duplicate.id,
                        mode="duplicate",
                    )

            reservation = await self._active_reservation(variant_id, holder)
            if reservation is not None and reservation.is_expired(now):
                await self._lapse(reservation, variant.stock_quantity, "Expired hold lapsed before confirmation")
                reservation = None

            stock_before = variant.stock_quantity
            stock_after = stock_before - quantity
            clamped = stock_after < 0

            if reservation is not None:
                if clamped and self.settings.STRICT_STOCK_CONFIRM:
                    raise InsufficientStockError(variant_id, quantity, stock_before)
                if not await self._finish(reservation, is_confirmed=True, order_ref=order_ref):
                    # Swept between the read and the flip
                    reservation = None

            if reservation is None:
                if require_reservation:
                    raise ReservationNotFoundError(variant_id, holder)
                if clamped:
                    raise InsufficientStockError(variant_id, quantity, stock_before)
                reservation = StockReservation(
                    variant_id=variant_id,
                    holder_id=holder,
                    quantity=quantity,
                    expires_at=now,
                    is_released=False,
                    is_confirmed=True,
                    order_ref=order_ref,
                )
                self.session.add(reservation)
                mode = "direct"
                reason = "Stock confirmed without an active reservation"
            else:
                mode = "reserved"
                reason = "Stock confirmed and deducted"
                if reservation.quantity != quantity:
                    logger.warning(
                        "Confirmed quantity differs from reserved quantity",
                        variant_id=variant_id,
                        holder_id=holder,
                        reserved=reservation.quantity,
                        confirmed=quantity,
                    )
                    reason += f" (reserved {reservation.quantity}, confirmed {quantity})"

            if clamped:
                stock_after = 0
                reason = (
                    f"CLAMPED: on-hand {stock_before} below confirmed quantity {quantity}, "
                    f"floored at 0. {reason}"
                )
                logger.warning(
                    "Stock confirmation clamped at zero, possible oversell",
                    variant_id=variant_id,
                    holder_id=holder,
                    stock_before=stock_before,
                    quantity=quantity,
                    order_ref=order_ref,
                )

            variant.stock_quantity = stock_after
            await self.session.flush()

            record_stock_change(
                self.session,
                variant_id,
                StockAction.CONFIRM,
                stock_after - stock_before,
                stock_before,
                stock_after,
                holder_id=holder,
                reservation_id=reservation.id,
                reason=reason,
            )

        stock_confirmations_total.labels(mode="clamped" if clamped else mode).inc()
        logger.info(
            "Stock confirmed",
            variant_id=variant_id,
            holder_id=holder,
            quantity=quantity,
            mode=mode,
            stock_before=stock_before,
            stock_after=stock_after,
            order_ref=order_ref,
        )
        return ConfirmResult(
            variant_id=variant_id,
            quantity=quantity,
            stock_before=stock_before,
            stock_after=stock_after,
            reservation_id=reservation.id,
            mode=mode,
            clamped=clamped,
        )

    async def _confirmed_for_order(self, variant_id: int, holder: str, order_ref: str) -> Optional[StockReservation]:
        result = await self.session.execute(
            select(StockReservation).where(
                StockReservation.variant_id == variant_id,
                StockReservation.holder_id == holder,
                StockReservation.order_ref == order_ref,
                StockReservation.is_confirmed == True,  # noqa: E712
            )
        )
        return result.scalar_one_or_none()

    # -- sweep --------------------------------------------------------------

    async def cleanup_expired_reservations(self) -> int:
        """
        Release every active hold whose expiry has passed. Returns how many were swept.
        On-hand stock is untouched; the held units simply become available again.
        """
        swept_ids: List[int] = []
        async with self._atomic():
            now = self._now()
            result = await self.session.execute(
                select(StockReservation)
                .where(_active_clause(), StockReservation.expires_at <= now)
                .order_by(StockReservation.id)
                .with_for_update(skip_locked=True)
            )
            expired = list(result.scalars().all())
            if not expired:
                return 0

            variant_ids = {r.variant_id for r in expired}
            stock_rows = await self.session.execute(
                select(ProductVariant.id, ProductVariant.stock_quantity).where(ProductVariant.id.in_(variant_ids))
            )
            on_hand: Dict[int, int] = {vid: qty for vid, qty in stock_rows}

            for reservation in expired:
                stock = on_hand.get(reservation.variant_id, 0)
                if await self._lapse(reservation, stock, "Expired reservation auto-released"):
                    swept_ids.append(reservation.id)

        if swept_ids:
            expired_reservations_swept_total.inc(len(swept_ids))
            logger.info("Expired reservations released", count=len(swept_ids), reservation_ids=swept_ids)
        return len(swept_ids)

    # -- adjust -------------------------------------------------------------

    async def adjust_stock(
        self,
        variant_id: int,
        quantity_change: int,
        reason: str,
        actor_id: Optional[str] = None,
    ) -> int:
        """Admin restock / write-off / correction. Returns the new on-hand quantity."""
        if not reason or not reason.strip():
            raise InventoryServiceError("Adjustment reason is required", 400)

        async with self._atomic():
            variant = await self._require_variant(variant_id)
            if quantity_change == 0:
                return variant.stock_quantity

            stock_before = variant.stock_quantity
            if stock_before + quantity_change < 0:
                raise InsufficientStockError(variant_id, -quantity_change, stock_before)

            variant.stock_quantity = stock_before + quantity_change
            record_stock_change(
                self.session,
                variant_id,
                StockAction.ADJUST,
                quantity_change,
                stock_before,
                variant.stock_quantity,
                holder_id=actor_id or "SYSTEM",
                reason=reason.strip(),
            )
            stock_after = variant.stock_quantity

        stock_adjustments_total.labels(direction="add" if quantity_change > 0 else "subtract").inc()
        logger.info(
            "Stock adjusted",
            variant_id=variant_id,
            quantity_change=quantity_change,
            stock_before=stock_before,
            stock_after=stock_after,
            actor_id=actor_id or "SYSTEM",
            reason=reason,
        )
        return stock_after
