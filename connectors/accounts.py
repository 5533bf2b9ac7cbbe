"""
Account store — create / read / patch persisted connector accounts.

The configuration blob of every account is encrypted at rest.  This module
is the only place that decrypts it; the credential broker goes through
``patch_config`` to rotate a single field without touching the others.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.encryption import ConfigCipher, get_cipher
from connectors.exceptions import ConfigError
from database.models import CachedData, ConnectorAccount

logger = logging.getLogger(__name__)


class AccountStore:
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        cipher: Optional[ConfigCipher] = None,
    ):
        if session_factory is None:
            from database.session import async_session_factory

            session_factory = async_session_factory
        self._session_factory = session_factory
        self._cipher = cipher or get_cipher()

    # ── writes ──────────────────────────────────────────────────────────

    async def create(
        self,
        connector_type: str,
        config: Dict[str, Any],
        *,
        name: str = "",
        enabled: bool = True,
        account_id: Optional[str] = None,
    ) -> str:
        """Store a new account and return its ``account_id``."""
        async with self._session_factory() as session:
            account = ConnectorAccount(
                connector_type=connector_type,
                name=name or connector_type,
                config=self._cipher.encrypt(config),
                enabled=enabled,
            )
            if account_id:
                account.account_id = account_id
            session.add(account)
            await session.commit()
            logger.info("Created %s account %s", connector_type, account.account_id)
            return account.account_id

    async def patch_config(self, account_id: str, field: str, value: Any) -> None:
        """
        Rewrite one field of the encrypted config blob.

        decrypt → patch ``field`` → re-encrypt → write; every other field
        is round-tripped unchanged.

        Raises
        ------
        ConfigError – account missing or blob malformed
        """
        async with self._session_factory() as session:
            account = await session.get(ConnectorAccount, account_id)
            if account is None:
                raise ConfigError(f"Account '{account_id}' not found")
            data = self._cipher.decrypt(account.config)
            data[field] = value
            account.config = self._cipher.encrypt(data)
            await session.commit()
        logger.info("Updated '%s' in config of account %s", field, account_id)

    async def set_enabled(self, account_id: str, enabled: bool) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(ConnectorAccount)
                .where(ConnectorAccount.account_id == account_id)
                .values(enabled=enabled)
            )
            await session.commit()
            return result.rowcount > 0

    async def mark_healthy(self, account_id: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(ConnectorAccount)
                .where(ConnectorAccount.account_id == account_id)
                .values(last_healthy=datetime.now(timezone.utc))
            )
            await session.commit()

    async def delete(self, account_id: str) -> bool:
        """Delete an account (its cached rows cascade). Returns False if not found."""
        async with self._session_factory() as session:
            # SQLite only honours ON DELETE CASCADE with the foreign_keys pragma on.
            await session.execute(delete(CachedData).where(CachedData.account_id == account_id))
            result = await session.execute(
                delete(ConnectorAccount).where(ConnectorAccount.account_id == account_id)
            )
            await session.commit()
            deleted = result.rowcount > 0
        if deleted:
            logger.info("Deleted account %s", account_id)
        return deleted

    # ── reads ───────────────────────────────────────────────────────────

    async def get(self, account_id: str) -> Optional[ConnectorAccount]:
        async with self._session_factory() as session:
            return await session.get(ConnectorAccount, account_id)

    async def list_enabled(self) -> List[ConnectorAccount]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ConnectorAccount)
                .where(ConnectorAccount.enabled.is_(True))
                .order_by(ConnectorAccount.created_at)
            )
            return list(result.scalars().all())

    async def list_accounts(self) -> List[Dict[str, Any]]:
        """Return all accounts (no config exposed)."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(ConnectorAccount).order_by(ConnectorAccount.created_at)
            )
            rows = result.scalars().all()
        return [
            {
                "account_id": a.account_id,
                "connector_type": a.connector_type,
                "name": a.name,
                "enabled": a.enabled,
                "last_healthy": a.last_healthy.isoformat() if a.last_healthy else None,
                "created_at": a.created_at.isoformat() if a.created_at else None,
            }
            for a in rows
        ]

    def decrypt(self, account: ConnectorAccount) -> Dict[str, Any]:
        """Decode an already-loaded account's blob. Raises ConfigError."""
        return self._cipher.decrypt(account.config)

    async def load_config(self, account_id: str) -> Dict[str, Any]:
        account = await self.get(account_id)
        if account is None:
            raise ConfigError(f"Account '{account_id}' not found")
        return self.decrypt(account)
