import logging
import time
from typing import Any, Dict, List

from crypto import base64url_encode, generate_ed25519_key_pair, provider_id_from_public_key
from models import (
    ClientRecord,
    ClientRegistrationRequest,
    ProviderRecord,
    ProviderRegistrationRequest,
    ProviderRegistrationResponse,
)
from store import TokenStore

logger = logging.getLogger(__name__)


class Registry:
    """Admin-managed client and provider records"""

    def __init__(self, store: TokenStore):
        self.store = store

    # ==================== CLIENTS ====================

    async def register_client(self, request: ClientRegistrationRequest) -> ClientRecord:
        """Create or replace a client record"""
        client = ClientRecord(
            client_id=request.client_id,
            client_secret=request.client_secret,
            redirect_uris=request.redirect_uris,
            allowed_scopes=request.allowed_scopes,
            client_type=request.client_type,
            name=request.name,
            created_at=time.time(),
        )
        await self.store.put(f"client:{client.client_id}", client.model_dump())
        logger.info(f"Registered {client.client_type} client: {client.client_id}")
        return client

    async def list_clients(self) -> List[Dict[str, Any]]:
        """All clients, without their secrets"""
        clients = [ClientRecord.model_validate(data) for data in await self.store.list("client:")]
        return [client.model_dump(exclude={"client_secret"}) for client in clients]

    async def delete_client(self, client_id: str) -> bool:
        deleted = await self.store.delete(f"client:{client_id}")
        if deleted:
            logger.info(f"Deleted client: {client_id}")
        return deleted

    # ==================== PROVIDERS ====================

    async def register_provider(self, request: ProviderRegistrationRequest) -> ProviderRegistrationResponse:
        """
        Register an identity verifier under a fresh Ed25519 identity.

        The private key is returned to the caller once and never persisted;
        losing it means registering the provider again.
        """
        private_raw, public_raw = generate_ed25519_key_pair()
        provider = ProviderRecord(
            provider_id=provider_id_from_public_key(public_raw),
            verifier_url=request.verifier_url,
            public_key=base64url_encode(public_raw),
            name=request.name,
            created_at=time.time(),
        )
        await self.store.put(f"provider:{provider.provider_id}", provider.model_dump())
        logger.info(f"Registered provider: {provider.provider_id}")

        return ProviderRegistrationResponse(
            provider_id=provider.provider_id,
            private_key=base64url_encode(private_raw),
            public_key=provider.public_key,
        )

    async def list_providers(self) -> List[Dict[str, Any]]:
        return [ProviderRecord.model_validate(data).model_dump() for data in await self.store.list("provider:")]

    async def delete_provider(self, provider_id: str) -> bool:
        deleted = await self.store.delete(f"provider:{provider_id}")
        if deleted:
            logger.info(f"Deleted provider: {provider_id}")
        return deleted
