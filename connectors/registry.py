"""
BrokerRegistry — explicit account_id → CredentialBroker mapping.

Brokers are created on first use from the persisted account and then kept
for the life of the registry so their in-memory access tokens are reused.
There is no automatic eviction; ``discard`` drops an entry when its account
is deleted or re-authorized.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, List, Optional

import httpx

from connectors.accounts import AccountStore
from connectors.broker import CredentialBroker
from connectors.exceptions import ConfigError
from connectors.providers import get_provider

logger = logging.getLogger(__name__)


class BrokerRegistry:
    def __init__(
        self,
        accounts: AccountStore,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._accounts = accounts
        self._transport = transport
        self._clock = clock
        self._brokers: Dict[str, CredentialBroker] = {}

    async def get(self, account_id: str) -> CredentialBroker:
        """
        Return the broker for ``account_id``, creating it on first use.

        Raises
        ------
        ConfigError – unknown account, malformed blob, or a connector type
                      that does not use OAuth
        """
        broker = self._brokers.get(account_id)
        if broker is not None:
            return broker

        account = await self._accounts.get(account_id)
        if account is None:
            raise ConfigError(f"Account '{account_id}' not found")
        provider = get_provider(account.connector_type)
        if provider is None:
            raise ConfigError(
                f"Connector type '{account.connector_type}' does not use OAuth"
            )

        broker = CredentialBroker(
            account_id,
            provider,
            self._accounts.decrypt(account),
            accounts=self._accounts,
            transport=self._transport,
            clock=self._clock,
        )
        # Two concurrent first calls may both build a broker; keep the first one stored.
        broker = self._brokers.setdefault(account_id, broker)
        logger.debug("Broker created for %s account %s", provider.connector_type, account_id)
        return broker

    def discard(self, account_id: str) -> bool:
        return self._brokers.pop(account_id, None) is not None

    def account_ids(self) -> List[str]:
        return list(self._brokers.keys())
