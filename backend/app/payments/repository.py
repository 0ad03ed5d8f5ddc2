"""Persistence layer for payment records and user entitlements."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, List, Optional

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from .errors import InternalError
from .models import (
    BillingCycle,
    EntitlementSnapshot,
    PaymentHistoryPage,
    PaymentRecord,
    PaymentStats,
    PaymentStatus,
    PendingPaymentStats,
    SubscriptionTier,
)

try:  # pragma: no cover - resolve connection helper when imported from FastAPI app
    from backend.app_context import get_conn
except ModuleNotFoundError as exc:  # pragma: no cover
    if exc.name != "backend":
        raise
    from app_context import get_conn  # type: ignore[no-redef]

_SORT_COLUMNS = {
    "created_at": "created_at",
    "amount": "amount",
    "paid_at": "paid_at",
    "status": "status",
}


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _row_to_payment(row: dict) -> PaymentRecord:
    return PaymentRecord(
        id=row["id"],
        reference=row["reference"],
        user_id=str(row["user_id"]),
        subscription_tier=SubscriptionTier(row["subscription_tier"]),
        billing_cycle=BillingCycle(row["billing_cycle"]),
        amount=int(row["amount"]),
        currency=row["currency"],
        status=PaymentStatus(row["status"]),
        gateway_transaction_id=row.get("gateway_transaction_id"),
        gateway_access_code=row.get("gateway_access_code"),
        authorization_url=row.get("authorization_url"),
        gateway_response=row.get("gateway_response"),
        failure_reason=row.get("failure_reason"),
        metadata=row.get("metadata") or {},
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        paid_at=row.get("paid_at"),
    )


def _row_to_entitlement(row: dict) -> EntitlementSnapshot:
    cycle = row.get("billing_cycle")
    return EntitlementSnapshot(
        user_id=str(row["id"]),
        subscription_tier=SubscriptionTier(row.get("subscription_tier") or SubscriptionTier.FREE.value),
        billing_cycle=BillingCycle(cycle) if cycle else None,
        subscription_expires_at=row.get("subscription_expires_at"),
    )


class PostgresPaymentRepository:
    """Concrete repository persisting payment records in PostgreSQL.

    Every status change is a conditional ``UPDATE ... WHERE status = 'pending'``
    so concurrent reconcilers never overwrite a settled payment.
    """

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        with managed_connection(self._conn) as (connection, managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
                if managed:
                    connection.commit()
            except Exception:
                if managed:
                    connection.rollback()
                raise
            finally:
                cursor.close()

    def create_payment(self, payment: PaymentRecord) -> PaymentRecord:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO payments (
                    id,
                    reference,
                    user_id,
                    subscription_tier,
                    billing_cycle,
                    amount,
                    currency,
                    status,
                    metadata,
                    created_at,
                    updated_at
                )
                VALUES (%(id)s, %(reference)s, %(user_id)s, %(subscription_tier)s,
                        %(billing_cycle)s, %(amount)s, %(currency)s, %(status)s,
                        %(metadata)s, %(created_at)s, %(updated_at)s)
                RETURNING *
                """,
                {
                    "id": payment.id,
                    "reference": payment.reference,
                    "user_id": payment.user_id,
                    "subscription_tier": payment.subscription_tier.value,
                    "billing_cycle": payment.billing_cycle.value,
                    "amount": payment.amount,
                    "currency": payment.currency,
                    "status": payment.status.value,
                    "metadata": psycopg2.extras.Json(payment.metadata),
                    "created_at": payment.created_at,
                    "updated_at": payment.updated_at,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise InternalError("Failed to persist payment")
            return _row_to_payment(row)

    def get_payment(self, reference: str) -> Optional[PaymentRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM payments
                WHERE reference = %s
                LIMIT 1
                """,
                (reference,),
            )
            row = cursor.fetchone()
            return _row_to_payment(row) if row else None

    def attach_gateway_session(
        self,
        reference: str,
        *,
        access_code: str,
        authorization_url: str,
    ) -> Optional[PaymentRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE payments
                SET gateway_access_code = %s,
                    authorization_url = %s,
                    updated_at = NOW()
                WHERE reference = %s
                RETURNING *
                """,
                (access_code, authorization_url, reference),
            )
            row = cursor.fetchone()
            return _row_to_payment(row) if row else None

    def complete_payment(
        self,
        reference: str,
        *,
        paid_at: datetime,
        gateway_transaction_id: Optional[str],
        gateway_response: Optional[str],
        entitlement: EntitlementSnapshot,
    ) -> Optional[PaymentRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE payments
                SET status = %s,
                    paid_at = %s,
                    gateway_transaction_id = %s,
                    gateway_response = %s,
                    updated_at = NOW()
                WHERE reference = %s AND status = %s
                RETURNING *
                """,
                (
                    PaymentStatus.COMPLETED.value,
                    paid_at,
                    gateway_transaction_id,
                    gateway_response,
                    reference,
                    PaymentStatus.PENDING.value,
                ),
            )
            row = cursor.fetchone()
            if not row:
                return None

            cursor.execute(
                """
                UPDATE users
                SET subscription_tier = %s,
                    billing_cycle = %s,
                    subscription_expires_at = %s
                WHERE id = %s
                """,
                (
                    entitlement.subscription_tier.value,
                    entitlement.billing_cycle.value if entitlement.billing_cycle else None,
                    entitlement.subscription_expires_at,
                    entitlement.user_id,
                ),
            )
            if cursor.rowcount != 1:
                raise InternalError("Failed to apply entitlement for completed payment")
            return _row_to_payment(row)

    def transition_status(
        self,
        reference: str,
        *,
        status: PaymentStatus,
        failure_reason: Optional[str] = None,
        gateway_response: Optional[str] = None,
    ) -> Optional[PaymentRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE payments
                SET status = %s,
                    failure_reason = COALESCE(%s, failure_reason),
                    gateway_response = COALESCE(%s, gateway_response),
                    updated_at = NOW()
                WHERE reference = %s AND status = %s
                RETURNING *
                """,
                (status.value, failure_reason, gateway_response, reference, PaymentStatus.PENDING.value),
            )
            row = cursor.fetchone()
            return _row_to_payment(row) if row else None

    def expire_pending_payments(self, cutoff: datetime, *, failure_reason: str) -> List[PaymentRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE payments
                SET status = %s,
                    failure_reason = %s,
                    updated_at = NOW()
                WHERE status = %s AND created_at < %s
                RETURNING *
                """,
                (PaymentStatus.FAILED.value, failure_reason, PaymentStatus.PENDING.value, cutoff),
            )
            rows = cursor.fetchall() or []
            return [_row_to_payment(row) for row in rows]

    def list_payments(
        self,
        user_id: str,
        *,
        page: int,
        limit: int,
        status: Optional[PaymentStatus] = None,
        subscription_tier: Optional[SubscriptionTier] = None,
        billing_cycle: Optional[BillingCycle] = None,
        search: Optional[str] = None,
        sort_by: str = "created_at",
        descending: bool = True,
    ) -> PaymentHistoryPage:
        clauses = ["user_id = %s"]
        params: list = [user_id]
        if status is not None:
            clauses.append("status = %s")
            params.append(status.value)
        if subscription_tier is not None:
            clauses.append("subscription_tier = %s")
            params.append(subscription_tier.value)
        if billing_cycle is not None:
            clauses.append("billing_cycle = %s")
            params.append(billing_cycle.value)
        if search:
            pattern = f"%{search}%"
            clauses.append(
                "(reference ILIKE %s OR COALESCE(gateway_response, '') ILIKE %s"
                " OR COALESCE(failure_reason, '') ILIKE %s)"
            )
            params.extend([pattern, pattern, pattern])

        where = " AND ".join(clauses)
        column = _SORT_COLUMNS.get(sort_by, "created_at")
        direction = "DESC" if descending else "ASC"

        with self._cursor() as cursor:
            cursor.execute(f"SELECT COUNT(*) AS total FROM payments WHERE {where}", tuple(params))
            total_row = cursor.fetchone() or {}
            total = int(total_row.get("total") or 0)

            cursor.execute(
                f"""
                SELECT *
                FROM payments
                WHERE {where}
                ORDER BY {column} {direction} NULLS LAST, created_at DESC
                LIMIT %s OFFSET %s
                """,
                tuple(params) + (limit, (page - 1) * limit),
            )
            rows = cursor.fetchall() or []

        return PaymentHistoryPage(
            items=tuple(_row_to_payment(row) for row in rows),
            page=page,
            limit=limit,
            total_items=total,
        )

    def payment_stats(self) -> PaymentStats:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT
                    COUNT(*) AS total_payments,
                    COALESCE(SUM(amount) FILTER (WHERE status = 'completed'), 0) AS total_amount,
                    COUNT(*) FILTER (WHERE status = 'completed') AS successful_payments,
                    COUNT(*) FILTER (WHERE status = 'failed') AS failed_payments,
                    COUNT(*) FILTER (WHERE status = 'pending') AS pending_payments
                FROM payments
                """
            )
            row = cursor.fetchone() or {}
        return PaymentStats(
            total_payments=int(row.get("total_payments") or 0),
            total_amount=int(row.get("total_amount") or 0),
            successful_payments=int(row.get("successful_payments") or 0),
            failed_payments=int(row.get("failed_payments") or 0),
            pending_payments=int(row.get("pending_payments") or 0),
        )

    def pending_payment_stats(self, cutoff: datetime) -> PendingPaymentStats:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT
                    COUNT(*) AS total_pending,
                    COUNT(*) FILTER (WHERE created_at < %s) AS expired_pending
                FROM payments
                WHERE status = 'pending'
                """,
                (cutoff,),
            )
            row = cursor.fetchone() or {}
        total = int(row.get("total_pending") or 0)
        expired = int(row.get("expired_pending") or 0)
        return PendingPaymentStats(
            total_pending=total,
            expired_pending=expired,
            recent_pending=total - expired,
        )


class PostgresEntitlementStore:
    """Reads and writes the subscription columns on ``users``."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    def get_entitlement(self, user_id: str) -> Optional[EntitlementSnapshot]:
        with managed_connection(self._conn) as (connection, _managed):
            with connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cursor:
                cursor.execute(
                    """
                    SELECT id, subscription_tier, billing_cycle, subscription_expires_at
                    FROM users
                    WHERE id = %s
                    """,
                    (user_id,),
                )
                row = cursor.fetchone()
        return _row_to_entitlement(row) if row else None

    def set_entitlement(self, entitlement: EntitlementSnapshot) -> EntitlementSnapshot:
        with managed_connection(self._conn) as (connection, _managed):
            with connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cursor:
                cursor.execute(
                    """
                    UPDATE users
                    SET subscription_tier = %s,
                        billing_cycle = %s,
                        subscription_expires_at = %s
                    WHERE id = %s
                    RETURNING id, subscription_tier, billing_cycle, subscription_expires_at
                    """,
                    (
                        entitlement.subscription_tier.value,
                        entitlement.billing_cycle.value if entitlement.billing_cycle else None,
                        entitlement.subscription_expires_at,
                        entitlement.user_id,
                    ),
                )
                row = cursor.fetchone()
        if not row:
            raise InternalError("Failed to update entitlement")
        return _row_to_entitlement(row)


__all__ = ["PostgresEntitlementStore", "PostgresPaymentRepository", "managed_connection"]
