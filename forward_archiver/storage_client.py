"""Async client for the permanent storage network's HTTP bridge.

The bridge owns transaction signing and broadcast; this client only speaks
JSON (and multipart for uploads) to it. Wallets travel as JWK dicts: a
``wallet`` of ``None`` means the bridge's master wallet pays.
"""

from __future__ import annotations

import abc
import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx
import structlog

from .config import StorageConfig
from .errors import StorageNetworkError

logger = structlog.get_logger()

Wallet = dict[str, Any]


@dataclass
class CreatedVault:
    vault_id: str
    root_container_id: str


@dataclass
class UploadResult:
    entity_id: str
    transaction_id: str | None
    access_key: str | None


@dataclass
class GeneratedWallet:
    address: str
    jwk: Wallet
    seed_phrase: str


class StorageNetworkClient(abc.ABC):
    """Operations the archiver needs from the storage network."""

    @abc.abstractmethod
    async def create_vault(self, name: str, *, password: str | None = None) -> CreatedVault: ...

    @abc.abstractmethod
    async def create_container(
        self,
        vault_id: str,
        name: str,
        parent_id: str,
        *,
        password: str | None = None,
        wallet: Wallet | None = None,
    ) -> str: ...

    @abc.abstractmethod
    async def upload_file(
        self,
        vault_id: str,
        container_id: str,
        path: Path,
        *,
        file_name: str,
        content_type: str,
        password: str | None = None,
        wallet: Wallet | None = None,
    ) -> UploadResult: ...

    @abc.abstractmethod
    async def derive_share_key(self, vault_id: str, password: str) -> str: ...

    @abc.abstractmethod
    async def is_indexed(self, vault_id: str, entity_id: str) -> bool: ...

    @abc.abstractmethod
    async def get_balance(self, wallet: Wallet) -> int:
        """Transferable balance of *wallet*, in winc."""

    @abc.abstractmethod
    async def share_credit(
        self,
        from_wallet: Wallet | None,
        to_address: str,
        amount_winc: int,
        *,
        expires_in_seconds: int,
    ) -> str:
        """Lend credit; returns the grant (approval) id."""

    @abc.abstractmethod
    async def revoke_credit(self, from_wallet: Wallet | None, address: str) -> None: ...

    @abc.abstractmethod
    async def create_wallet(self) -> GeneratedWallet: ...

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass


def load_wallet(path: str | Path) -> Wallet:
    """Read a JWK wallet file."""
    return json.loads(Path(path).read_text(encoding="utf-8"))


class HttpStorageNetworkClient(StorageNetworkClient):
    """:class:`StorageNetworkClient` over the bridge's REST API.

    Raises :class:`StorageNetworkError` on transport failures and on any
    non-2xx response.
    """

    def __init__(self, config: StorageConfig) -> None:
        self._config = config
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=self._config.base_url,
            timeout=httpx.Timeout(self._config.timeout_seconds),
        )
        logger.info("storage_client_started", base_url=self._config.base_url)

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("storage_client_stopped")

    # ------------------------------------------------------------------
    # Vaults and containers
    # ------------------------------------------------------------------

    async def create_vault(self, name: str, *, password: str | None = None) -> CreatedVault:
        data = await self._request("POST", "/v1/vaults", json={"name": name, "password": password})
        vault = CreatedVault(vault_id=data["vault_id"], root_container_id=data["root_container_id"])
        logger.info("storage_vault_created", vault_id=vault.vault_id, private=password is not None)
        return vault

    async def create_container(
        self,
        vault_id: str,
        name: str,
        parent_id: str,
        *,
        password: str | None = None,
        wallet: Wallet | None = None,
    ) -> str:
        data = await self._request(
            "POST",
            f"/v1/vaults/{vault_id}/containers",
            json={"name": name, "parent_id": parent_id, "password": password, "wallet": wallet},
        )
        logger.debug("storage_container_created", vault_id=vault_id, name=name, container_id=data["container_id"])
        return data["container_id"]

    async def upload_file(
        self,
        vault_id: str,
        container_id: str,
        path: Path,
        *,
        file_name: str,
        content_type: str,
        password: str | None = None,
        wallet: Wallet | None = None,
    ) -> UploadResult:
        content = await asyncio.to_thread(path.read_bytes)
        fields = {"file_name": file_name, "content_type": content_type}
        if password is not None:
            fields["password"] = password
        if wallet is not None:
            fields["wallet"] = json.dumps(wallet)
        data = await self._request(
            "POST",
            f"/v1/vaults/{vault_id}/containers/{container_id}/files",
            data=fields,
            files={"file": (file_name, content, content_type)},
        )
        result = UploadResult(
            entity_id=data["entity_id"],
            transaction_id=data.get("transaction_id"),
            access_key=data.get("access_key"),
        )
        logger.info(
            "storage_file_uploaded",
            vault_id=vault_id,
            container_id=container_id,
            entity_id=result.entity_id,
            size_bytes=len(content),
        )
        return result

    async def derive_share_key(self, vault_id: str, password: str) -> str:
        data = await self._request("POST", f"/v1/vaults/{vault_id}/share-key", json={"password": password})
        return data["share_key"]

    async def is_indexed(self, vault_id: str, entity_id: str) -> bool:
        assert self._client is not None, "Client not started"
        try:
            response = await self._client.get(f"/v1/vaults/{vault_id}/entities/{entity_id}")
        except httpx.HTTPError as exc:
            raise StorageNetworkError(f"index query failed: {exc}") from exc
        if response.status_code == 404:
            return False
        _raise_for_status(response)
        return True

    # ------------------------------------------------------------------
    # Wallets and credit
    # ------------------------------------------------------------------

    async def get_balance(self, wallet: Wallet) -> int:
        data = await self._request("POST", "/v1/wallets/balance", json={"wallet": wallet})
        return int(data["winc"])

    async def share_credit(
        self,
        from_wallet: Wallet | None,
        to_address: str,
        amount_winc: int,
        *,
        expires_in_seconds: int,
    ) -> str:
        data = await self._request(
            "POST",
            "/v1/credits/share",
            json={
                "wallet": from_wallet,
                "approved_address": to_address,
                # winc amounts exceed JSON-safe integers on some bridges
                "approved_winc": str(amount_winc),
                "expires_in_seconds": expires_in_seconds,
            },
        )
        return data["grant_id"]

    async def revoke_credit(self, from_wallet: Wallet | None, address: str) -> None:
        await self._request("POST", "/v1/credits/revoke", json={"wallet": from_wallet, "revoked_address": address})

    async def create_wallet(self) -> GeneratedWallet:
        data = await self._request("POST", "/v1/wallets")
        return GeneratedWallet(address=data["address"], jwk=data["jwk"], seed_phrase=data["seed_phrase"])

    # ------------------------------------------------------------------

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        assert self._client is not None, "Client not started"
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise StorageNetworkError(f"{method} {url} failed: {exc}") from exc
        _raise_for_status(response)
        if not response.content:
            return {}
        return response.json()


def _raise_for_status(response: httpx.Response) -> None:
    if response.is_success:
        return
    raise StorageNetworkError(
        f"{response.request.method} {response.request.url.path} returned {response.status_code}: "
        f"{response.text[:200]}",
        status_code=response.status_code,
    )
