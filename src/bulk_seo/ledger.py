"""Per-shop token ledger with reserve / finalize / refund semantics.

Every balance mutation is one sqlite transaction whose balance change is a
conditional UPDATE, so concurrent requests (in one event loop or across
processes) can never drive a balance below zero. Reservations are settled
exactly once: repeating the same settlement is a no-op, switching to the other
settlement is rejected.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from uuid import uuid4

from bulk_seo.db import _ago, _conn, _now

logger = logging.getLogger(__name__)

PENDING = "pending"
FINALIZED = "finalized"
REFUNDED = "refunded"


class LedgerError(RuntimeError):
    pass


class InsufficientBalance(LedgerError):
    def __init__(self, shop: str, required: int, available: int) -> None:
        super().__init__(f"insufficient_balance: shop={shop} required={required} available={available}")
        self.shop = shop
        self.required = required
        self.available = available


class UnknownReservation(LedgerError):
    pass


class ReservationSettled(UnknownReservation):
    """The reservation already took the other terminal transition."""


@dataclass
class Reservation:
    id: str
    shop: str
    amount: int
    feature: str
    status: str
    created_at: str
    settled_amount: int | None = None
    settled_at: str | None = None
    job_id: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Reservation":
        return cls(
            id=row["id"],
            shop=row["shop"],
            amount=int(row["amount"]),
            feature=row["feature"],
            status=row["status"],
            created_at=row["created_at"],
            settled_amount=row["settled_amount"],
            settled_at=row["settled_at"],
            job_id=row["job_id"],
        )


@dataclass
class TokenBalance:
    shop: str
    balance: int = 0
    total_purchased: int = 0
    total_granted: int = 0
    total_used: int = 0
    reservations: list[Reservation] = field(default_factory=list)

    def has_balance(self, amount: int) -> bool:
        return self.balance >= amount

    @property
    def pending_amount(self) -> int:
        return sum(r.amount for r in self.reservations if r.status == PENDING)


def _add_event(
    conn: sqlite3.Connection,
    shop: str,
    entry_type: str,
    tokens: int,
    reservation_id: str | None = None,
    note: str | None = None,
) -> None:
    conn.execute(
        """
        INSERT INTO token_ledger (shop, type, tokens, reservation_id, note, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (shop, entry_type, tokens, reservation_id, note, _now()),
    )


def _ensure_balance_row(conn: sqlite3.Connection, shop: str) -> None:
    ts = _now()
    conn.execute(
        """
        INSERT INTO token_balances (shop, created_at, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(shop) DO NOTHING
        """,
        (shop, ts, ts),
    )


def get_or_create(shop: str) -> TokenBalance:
    with _conn() as conn:
        _ensure_balance_row(conn, shop)
        conn.commit()
        row = conn.execute("SELECT * FROM token_balances WHERE shop=?", (shop,)).fetchone()
        reservations = conn.execute(
            "SELECT * FROM reservations WHERE shop=? ORDER BY rowid",
            (shop,),
        ).fetchall()
    return TokenBalance(
        shop=shop,
        balance=int(row["balance"]),
        total_purchased=int(row["total_purchased"]),
        total_granted=int(row["total_granted"]),
        total_used=int(row["total_used"]),
        reservations=[Reservation.from_row(r) for r in reservations],
    )


def has_balance(shop: str, amount: int) -> bool:
    with _conn() as conn:
        row = conn.execute("SELECT balance FROM token_balances WHERE shop=?", (shop,)).fetchone()
    available = int(row["balance"]) if row else 0
    return available >= amount


def grant_tokens(
    shop: str,
    tokens: int,
    purchased: bool = True,
    note: str = "grant",
    external_ref: str | None = None,
) -> TokenBalance:
    """Credit tokens. Purchased grants also count towards `total_purchased`."""
    if tokens <= 0:
        raise ValueError("tokens must be > 0")
    with _conn() as conn:
        _ensure_balance_row(conn, shop)
        conn.execute(
            """
            UPDATE token_balances
            SET balance = balance + ?,
                total_granted = total_granted + ?,
                total_purchased = total_purchased + ?,
                updated_at = ?
            WHERE shop = ?
            """,
            (tokens, tokens, tokens if purchased else 0, _now(), shop),
        )
        label = note if not external_ref else f"{note} ({external_ref})"
        _add_event(conn, shop, "grant" if purchased else "grant_included", tokens, note=label)
        conn.commit()
    logger.info(f"Granted {tokens} tokens to {shop} (purchased={purchased})")
    return get_or_create(shop)


def reserve(shop: str, amount: int, feature: str, job_id: str | None = None) -> Reservation:
    if amount <= 0:
        raise ValueError("amount must be > 0")

    reservation = Reservation(
        id=f"res_{uuid4().hex}",
        shop=shop,
        amount=amount,
        feature=feature,
        status=PENDING,
        created_at=_now(),
        job_id=job_id,
    )
    with _conn() as conn:
        _ensure_balance_row(conn, shop)
        cur = conn.execute(
            """
            UPDATE token_balances
            SET balance = balance - ?, updated_at = ?
            WHERE shop = ? AND balance >= ?
            """,
            (amount, _now(), shop, amount),
        )
        if cur.rowcount == 0:
            row = conn.execute("SELECT balance FROM token_balances WHERE shop=?", (shop,)).fetchone()
            conn.rollback()
            raise InsufficientBalance(shop, amount, int(row["balance"]) if row else 0)

        conn.execute(
            """
            INSERT INTO reservations (id, shop, amount, feature, status, job_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (reservation.id, shop, amount, feature, PENDING, job_id, reservation.created_at),
        )
        _add_event(conn, shop, "reserve", amount, reservation.id, note=feature)
        conn.commit()

    logger.info(f"Reserved {amount} tokens for {shop} ({feature}) as {reservation.id}")
    return reservation


def get_reservation(reservation_id: str) -> Reservation | None:
    with _conn() as conn:
        row = conn.execute("SELECT * FROM reservations WHERE id=?", (reservation_id,)).fetchone()
    return Reservation.from_row(row) if row else None


def _settled(row: sqlite3.Row | None, reservation_id: str, wanted: str) -> Reservation:
    if row is None:
        raise UnknownReservation(f"unknown_reservation: {reservation_id}")
    if row["status"] == wanted:
        logger.info(f"Reservation {reservation_id} already {wanted}, nothing to do")
        return Reservation.from_row(row)
    raise ReservationSettled(f"reservation_already_{row['status']}: {reservation_id}")


def finalize(reservation_id: str, actual_amount: int, note: str | None = None) -> Reservation:
    """Settle a pending reservation against actual usage.

    Unused tokens go back to the balance. Usage above the held amount is not
    charged: the charge is capped at the reservation and an `overage` event is
    recorded for reconciliation.
    """
    if actual_amount < 0:
        raise ValueError("actual_amount must be >= 0")

    with _conn() as conn:
        row = conn.execute("SELECT * FROM reservations WHERE id=?", (reservation_id,)).fetchone()
        if row is None or row["status"] != PENDING:
            return _settled(row, reservation_id, FINALIZED)

        amount = int(row["amount"])
        charged = min(actual_amount, amount)
        ts = _now()
        cur = conn.execute(
            """
            UPDATE reservations SET status = ?, settled_amount = ?, settled_at = ?
            WHERE id = ? AND status = ?
            """,
            (FINALIZED, charged, ts, reservation_id, PENDING),
        )
        if cur.rowcount == 0:
            # settled by another process between the read and the update
            conn.rollback()
            row = conn.execute("SELECT * FROM reservations WHERE id=?", (reservation_id,)).fetchone()
            return _settled(row, reservation_id, FINALIZED)

        conn.execute(
            """
            UPDATE token_balances
            SET balance = balance + ?, total_used = total_used + ?, updated_at = ?
            WHERE shop = ?
            """,
            (amount - charged, charged, ts, row["shop"]),
        )
        _add_event(conn, row["shop"], "finalize", charged, reservation_id, note=note)
        if actual_amount > amount:
            _add_event(
                conn,
                row["shop"],
                "overage",
                actual_amount - amount,
                reservation_id,
                note=f"actual {actual_amount} exceeded reservation {amount}",
            )
            logger.warning(
                f"Reservation {reservation_id} overage: actual {actual_amount} > reserved {amount}, charge capped"
            )
        conn.commit()

    logger.info(f"Finalized {reservation_id}: charged {charged}, returned {amount - charged}")
    return get_reservation(reservation_id)


def refund(reservation_id: str, note: str | None = None) -> Reservation:
    with _conn() as conn:
        row = conn.execute("SELECT * FROM reservations WHERE id=?", (reservation_id,)).fetchone()
        if row is None or row["status"] != PENDING:
            return _settled(row, reservation_id, REFUNDED)

        amount = int(row["amount"])
        ts = _now()
        cur = conn.execute(
            """
            UPDATE reservations SET status = ?, settled_amount = 0, settled_at = ?
            WHERE id = ? AND status = ?
            """,
            (REFUNDED, ts, reservation_id, PENDING),
        )
        if cur.rowcount == 0:
            conn.rollback()
            row = conn.execute("SELECT * FROM reservations WHERE id=?", (reservation_id,)).fetchone()
            return _settled(row, reservation_id, REFUNDED)

        conn.execute(
            "UPDATE token_balances SET balance = balance + ?, updated_at = ? WHERE shop = ?",
            (amount, ts, row["shop"]),
        )
        _add_event(conn, row["shop"], "refund", amount, reservation_id, note=note)
        conn.commit()

    logger.info(f"Refunded {amount} tokens from {reservation_id}")
    return get_reservation(reservation_id)


def list_stale_reservations(older_than_sec: float) -> list[Reservation]:
    """Pending reservations older than the timeout whose job is not active any more."""
    with _conn() as conn:
        rows = conn.execute(
            """
            SELECT r.* FROM reservations r
            LEFT JOIN jobs j ON j.job_id = r.job_id
            WHERE r.status = 'pending' AND r.created_at < ?
              AND (j.job_id IS NULL OR j.status NOT IN ('queued', 'running'))
            ORDER BY r.rowid
            """,
            (_ago(older_than_sec),),
        ).fetchall()
    return [Reservation.from_row(r) for r in rows]


def sweep_orphaned_reservations(older_than_sec: float) -> int:
    swept = 0
    for reservation in list_stale_reservations(older_than_sec):
        try:
            refund(reservation.id, note="orphan sweep")
        except ReservationSettled:
            continue
        logger.warning(f"Swept orphaned reservation {reservation.id} ({reservation.amount} tokens, {reservation.shop})")
        swept += 1
    return swept


def list_events(shop: str, limit: int = 20) -> list[dict]:
    with _conn() as conn:
        rows = conn.execute(
            "SELECT * FROM token_ledger WHERE shop=? ORDER BY id DESC LIMIT ?",
            (shop, limit),
        ).fetchall()
    return [dict(r) for r in rows]
