"""Persistence for repositories, purchases, access logs and pricing history.

``PurchaseStore`` keeps everything in process memory unless a PostgreSQL
pool or DSN is configured, in which case it talks to ``asyncpg``.

Purchase state changes go through ``transition_purchase``, a conditional
compare-and-set: the update applies only if the row still matches every
``expected`` column, so two concurrent deliveries of the same webhook
cannot both win the same transition.
"""
from __future__ import annotations

import asyncio
import dataclasses
import json
from enum import Enum
from typing import Any, Iterable, Optional

from .credentials import StoredPaymentCredentials
from .models import (
    AccessLogEntry,
    Owner,
    PricingHistoryEntry,
    Purchase,
    PurchaseStatus,
    Repository,
    utc_now,
)

_PURCHASE_COLUMNS = tuple(f.name for f in dataclasses.fields(Purchase))
_REPOSITORY_COLUMNS = tuple(f.name for f in dataclasses.fields(Repository))
_PRICING_COLUMNS = tuple(f.name for f in dataclasses.fields(PricingHistoryEntry))


def _db_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def _allowed_values(expected: Any) -> tuple[Any, ...]:
    if isinstance(expected, (set, frozenset, list, tuple)):
        return tuple(_db_value(v) for v in expected)
    return (_db_value(expected),)


def _matches(obj: Any, expected: dict[str, Any]) -> bool:
    return all(
        _db_value(getattr(obj, column)) in _allowed_values(allowed)
        for column, allowed in expected.items()
    )


def _check_columns(columns: Iterable[str], allowed: tuple[str, ...]) -> None:
    unknown = [c for c in columns if c not in allowed]
    if unknown:
        raise ValueError(f"Unknown purchase columns: {', '.join(unknown)}")


def _purchase_from_row(row: Any) -> Purchase:
    return Purchase(**{column: row[column] for column in _PURCHASE_COLUMNS})


def _repository_from_row(row: Any) -> Repository:
    return Repository(**{column: row[column] for column in _REPOSITORY_COLUMNS})


def _pricing_from_row(row: Any) -> PricingHistoryEntry:
    return PricingHistoryEntry(**{column: row[column] for column in _PRICING_COLUMNS})


def _log_from_row(row: Any) -> AccessLogEntry:
    metadata = row["metadata"]
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    return AccessLogEntry(
        id=row["id"],
        purchase_id=row["purchase_id"],
        action=row["action"],
        status=row["status"],
        error_message=row["error_message"],
        metadata=metadata or {},
        created_at=row["created_at"],
    )


def _sort_recent(rows: list[Purchase]) -> list[Purchase]:
    return sorted(rows, key=lambda p: p.created_at, reverse=True)


class PurchaseStore:
    def __init__(self, pool=None, dsn: str | None = None):
        self._pool = pool
        self._dsn = dsn or ""
        self._lock = asyncio.Lock()
        self._owners: dict[str, Owner] = {}
        self._credentials: dict[str, StoredPaymentCredentials] = {}
        self._repositories: dict[str, Repository] = {}
        self._purchases: dict[str, Purchase] = {}
        self._access_logs: list[AccessLogEntry] = []
        self._pricing: list[PricingHistoryEntry] = []

    def _use_postgres(self) -> bool:
        if self._pool is not None:
            return True
        return self._dsn.startswith(("postgresql://", "postgres://"))

    async def _get_pool(self):
        if self._pool is None:
            from .database import Database
            self._pool = await Database.get_pool(self._dsn)
        return self._pool

    # ------------------------------------------------------------------
    # Owners and credentials
    # ------------------------------------------------------------------

    async def save_owner(self, owner: Owner) -> Owner:
        if not self._use_postgres():
            self._owners[owner.id] = dataclasses.replace(owner)
            return owner
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO owners (id, email, email_notifications, encrypted_github_token)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (id) DO UPDATE SET
                    email = EXCLUDED.email,
                    email_notifications = EXCLUDED.email_notifications,
                    encrypted_github_token = EXCLUDED.encrypted_github_token
                """,
                owner.id,
                owner.email,
                owner.email_notifications,
                owner.encrypted_github_token,
            )
        return owner

    async def get_owner(self, owner_id: str) -> Optional[Owner]:
        if not self._use_postgres():
            owner = self._owners.get(owner_id)
            return dataclasses.replace(owner) if owner else None
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM owners WHERE id = $1", owner_id)
        if not row:
            return None
        return Owner(
            id=row["id"],
            email=row["email"],
            email_notifications=row["email_notifications"],
            encrypted_github_token=row["encrypted_github_token"],
        )

    async def save_payment_credentials(self, stored: StoredPaymentCredentials) -> None:
        if not self._use_postgres():
            self._credentials[stored.owner_id] = dataclasses.replace(
                stored, encrypted_fields=dict(stored.encrypted_fields)
            )
            return
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO payment_credentials (owner_id, provider, encrypted_fields, updated_at)
                VALUES ($1, $2, $3::jsonb, NOW())
                ON CONFLICT (owner_id) DO UPDATE SET
                    provider = EXCLUDED.provider,
                    encrypted_fields = EXCLUDED.encrypted_fields,
                    updated_at = NOW()
                """,
                stored.owner_id,
                stored.provider,
                json.dumps(stored.encrypted_fields),
            )

    async def get_payment_credentials(self, owner_id: str) -> Optional[StoredPaymentCredentials]:
        if not self._use_postgres():
            stored = self._credentials.get(owner_id)
            if stored is None:
                return None
            return dataclasses.replace(stored, encrypted_fields=dict(stored.encrypted_fields))
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM payment_credentials WHERE owner_id = $1", owner_id
            )
        if not row:
            return None
        fields = row["encrypted_fields"]
        if isinstance(fields, str):
            fields = json.loads(fields)
        return StoredPaymentCredentials(
            owner_id=row["owner_id"], provider=row["provider"], encrypted_fields=fields or {}
        )

    async def delete_payment_credentials(self, owner_id: str) -> bool:
        if not self._use_postgres():
            return self._credentials.pop(owner_id, None) is not None
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            result = await conn.execute("DELETE FROM payment_credentials WHERE owner_id = $1", owner_id)
        return result != "DELETE 0"

    # ------------------------------------------------------------------
    # Repositories
    # ------------------------------------------------------------------

    async def save_repository(self, repository: Repository) -> Repository:
        repository.validate()
        repository.updated_at = utc_now()
        if not self._use_postgres():
            self._repositories[repository.id] = dataclasses.replace(repository)
            return repository
        columns = _REPOSITORY_COLUMNS
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in columns if c not in ("id", "created_at"))
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                f"INSERT INTO repositories ({', '.join(columns)}) VALUES ({placeholders}) "
                f"ON CONFLICT (id) DO UPDATE SET {updates}",
                *[_db_value(getattr(repository, c)) for c in columns],
            )
        return repository

    async def get_repository(self, repository_id: str) -> Optional[Repository]:
        if not self._use_postgres():
            repository = self._repositories.get(repository_id)
            return dataclasses.replace(repository) if repository else None
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM repositories WHERE id = $1", repository_id)
        return _repository_from_row(row) if row else None

    async def get_repository_by_slug(self, slug: str) -> Optional[Repository]:
        if not self._use_postgres():
            for repository in self._repositories.values():
                if repository.slug == slug:
                    return dataclasses.replace(repository)
            return None
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM repositories WHERE slug = $1", slug)
        return _repository_from_row(row) if row else None

    async def list_repositories(self, owner_id: str) -> list[Repository]:
        """Owner's repositories, newest first."""
        if not self._use_postgres():
            rows = [r for r in self._repositories.values() if r.owner_id == owner_id]
            rows.sort(key=lambda r: r.created_at, reverse=True)
            return [dataclasses.replace(r) for r in rows]
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM repositories WHERE owner_id = $1 ORDER BY created_at DESC", owner_id
            )
        return [_repository_from_row(row) for row in rows]

    async def set_external_ids(
        self,
        repository_id: str,
        product_id: Optional[str],
        price_id: Optional[str],
    ) -> None:
        if not self._use_postgres():
            repository = self._repositories.get(repository_id)
            if repository is not None:
                repository.external_product_id = product_id
                repository.external_price_id = price_id
                repository.updated_at = utc_now()
            return
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE repositories
                SET external_product_id = $2, external_price_id = $3, updated_at = NOW()
                WHERE id = $1
                """,
                repository_id,
                product_id,
                price_id,
            )

    # ------------------------------------------------------------------
    # Purchases
    # ------------------------------------------------------------------

    async def create_purchase(self, purchase: Purchase) -> Purchase:
        if not self._use_postgres():
            self._purchases[purchase.id] = dataclasses.replace(purchase)
            return purchase
        columns = _PURCHASE_COLUMNS
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"INSERT INTO purchases ({', '.join(columns)}) VALUES ({placeholders}) RETURNING *",
                *[_db_value(getattr(purchase, c)) for c in columns],
            )
        return _purchase_from_row(row)

    async def get_purchase(self, purchase_id: str) -> Optional[Purchase]:
        if not self._use_postgres():
            purchase = self._purchases.get(purchase_id)
            return dataclasses.replace(purchase) if purchase else None
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM purchases WHERE id = $1", purchase_id)
        return _purchase_from_row(row) if row else None

    async def _find_one(self, where: str, *args: Any) -> Optional[Purchase]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT * FROM purchases WHERE {where} ORDER BY created_at DESC LIMIT 1", *args
            )
        return _purchase_from_row(row) if row else None

    def _find_memory(self, **criteria: Any) -> Optional[Purchase]:
        rows = [
            p for p in self._purchases.values()
            if all(_db_value(getattr(p, k)) == _db_value(v) for k, v in criteria.items())
        ]
        rows = _sort_recent(rows)
        return dataclasses.replace(rows[0]) if rows else None

    async def find_pending_purchase(
        self,
        repository_id: str,
        github_username: str,
    ) -> Optional[Purchase]:
        """Most recent pending purchase for this buyer and repository."""
        if not self._use_postgres():
            return self._find_memory(
                repository_id=repository_id,
                github_username=github_username,
                status=PurchaseStatus.PENDING,
            )
        return await self._find_one(
            "repository_id = $1 AND github_username = $2 AND status = 'pending'",
            repository_id,
            github_username,
        )

    async def find_by_subscription_id(self, subscription_id: str) -> Optional[Purchase]:
        if not self._use_postgres():
            return self._find_memory(subscription_id=subscription_id)
        return await self._find_one("subscription_id = $1", subscription_id)

    async def find_by_payment_id(self, payment_id: str) -> Optional[Purchase]:
        if not self._use_postgres():
            return self._find_memory(payment_intent_id=payment_id)
        return await self._find_one("payment_intent_id = $1", payment_id)

    async def find_latest_purchase(
        self,
        repository_id: str,
        email: Optional[str] = None,
        github_username: Optional[str] = None,
    ) -> Optional[Purchase]:
        criteria: dict[str, Any] = {"repository_id": repository_id}
        if email:
            criteria["email"] = email
        if github_username:
            criteria["github_username"] = github_username
        if not self._use_postgres():
            return self._find_memory(**criteria)
        where = " AND ".join(f"{column} = ${i}" for i, column in enumerate(criteria, start=1))
        return await self._find_one(where, *criteria.values())

    async def has_purchase(self, repository_id: str, github_username: str) -> bool:
        if not self._use_postgres():
            return self._find_memory(
                repository_id=repository_id, github_username=github_username
            ) is not None
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            found = await conn.fetchval(
                "SELECT 1 FROM purchases WHERE repository_id = $1 AND github_username = $2 LIMIT 1",
                repository_id,
                github_username,
            )
        return bool(found)

    async def list_purchases(self, repository_id: str) -> list[Purchase]:
        if not self._use_postgres():
            rows = [p for p in self._purchases.values() if p.repository_id == repository_id]
            return [dataclasses.replace(p) for p in _sort_recent(rows)]
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM purchases WHERE repository_id = $1 ORDER BY created_at DESC",
                repository_id,
            )
        return [_purchase_from_row(row) for row in rows]

    async def transition_purchase(
        self,
        purchase_id: str,
        expected: dict[str, Any],
        changes: dict[str, Any],
    ) -> Optional[Purchase]:
        """Apply ``changes`` only if the row matches ``expected``.

        Each ``expected`` value is either a single allowed value or a
        collection of allowed values. Returns the updated purchase, or None
        when the row is missing or no longer matches.
        """
        _check_columns(expected, _PURCHASE_COLUMNS)
        _check_columns(changes, _PURCHASE_COLUMNS)

        if not self._use_postgres():
            async with self._lock:
                purchase = self._purchases.get(purchase_id)
                if purchase is None or not _matches(purchase, expected):
                    return None
                updated = dataclasses.replace(purchase, **changes, updated_at=utc_now())
                self._purchases[purchase_id] = updated
                return dataclasses.replace(updated)

        args: list[Any] = []
        assignments = []
        for column, value in changes.items():
            args.append(_db_value(value))
            assignments.append(f"{column} = ${len(args)}")
        assignments.append("updated_at = NOW()")
        args.append(purchase_id)
        conditions = [f"id = ${len(args)}"]
        for column, allowed in expected.items():
            args.append([str(v) for v in _allowed_values(allowed)])
            conditions.append(f"{column}::text = ANY(${len(args)}::text[])")

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"UPDATE purchases SET {', '.join(assignments)} "
                f"WHERE {' AND '.join(conditions)} RETURNING *",
                *args,
            )
        return _purchase_from_row(row) if row else None

    # ------------------------------------------------------------------
    # Access log
    # ------------------------------------------------------------------

    async def append_access_log(self, entry: AccessLogEntry) -> AccessLogEntry:
        if not self._use_postgres():
            self._access_logs.append(dataclasses.replace(entry, metadata=dict(entry.metadata)))
            return entry
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO access_logs (id, purchase_id, action, status, error_message, metadata, created_at)
                VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7)
                """,
                entry.id,
                entry.purchase_id,
                entry.action.value,
                entry.status.value,
                entry.error_message,
                json.dumps(entry.metadata, default=str),
                entry.created_at,
            )
        return entry

    async def list_access_logs(self, purchase_id: str) -> list[AccessLogEntry]:
        if not self._use_postgres():
            return [
                dataclasses.replace(e, metadata=dict(e.metadata))
                for e in self._access_logs
                if e.purchase_id == purchase_id
            ]
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM access_logs WHERE purchase_id = $1 ORDER BY created_at, id",
                purchase_id,
            )
        return [_log_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Pricing history
    # ------------------------------------------------------------------

    async def record_price_change(self, entry: PricingHistoryEntry) -> PricingHistoryEntry:
        """Close the open entry for the repository and open ``entry``."""
        entry.effective_until = None
        if not self._use_postgres():
            async with self._lock:
                for existing in self._pricing:
                    if existing.repository_id == entry.repository_id and existing.is_current:
                        existing.effective_until = entry.effective_from
                self._pricing.append(dataclasses.replace(entry))
            return entry

        columns = _PRICING_COLUMNS
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    UPDATE pricing_history SET effective_until = $2
                    WHERE repository_id = $1 AND effective_until IS NULL
                    """,
                    entry.repository_id,
                    entry.effective_from,
                )
                await conn.execute(
                    f"INSERT INTO pricing_history ({', '.join(columns)}) VALUES ({placeholders})",
                    *[_db_value(getattr(entry, c)) for c in columns],
                )
        return entry

    async def list_price_history(self, repository_id: str) -> list[PricingHistoryEntry]:
        if not self._use_postgres():
            rows = [dataclasses.replace(e) for e in self._pricing if e.repository_id == repository_id]
            return sorted(rows, key=lambda e: e.effective_from)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM pricing_history WHERE repository_id = $1 ORDER BY effective_from",
                repository_id,
            )
        return [_pricing_from_row(row) for row in rows]

    async def current_price(self, repository_id: str) -> Optional[PricingHistoryEntry]:
        for entry in await self.list_price_history(repository_id):
            if entry.is_current:
                return entry
        return None
