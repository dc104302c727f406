"""
Contract and tenant-assistant lookups.

Contracts are owned by the wider rate-management platform; the
pipeline only reads their display metadata, writes back the
extraction status, and resolves each tenant's hosted assistant.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Protocol

import redis

from rate_extract.core.constants import (
    REDIS_PREFIX_CONTRACT,
    REDIS_PREFIX_TENANT_ASSISTANT,
)
from rate_extract.core.redis import get_redis_client
from rate_extract.schemas.jobs import Contract

logger = logging.getLogger(__name__)


class ContractStore(Protocol):
    """Interface implemented by every contract-store backend."""

    def get_contract(self, contract_id: str) -> Contract | None: ...

    def save_contract(self, contract: Contract) -> None: ...

    def update_extraction_status(
        self,
        contract_id: str,
        status: str,
        *,
        job_id: str | None = None,
        output_path: str | None = None,
    ) -> Contract | None: ...

    def get_assistant_id(self, tenant_id: str) -> str | None: ...

    def set_assistant_id(self, tenant_id: str, assistant_id: str) -> None: ...


def _with_status(
    contract: Contract,
    status: str,
    job_id: str | None,
    output_path: str | None,
) -> Contract:
    update: dict[str, str] = {"extraction_status": status}
    if job_id is not None:
        update["last_extraction_job_id"] = job_id
    if output_path is not None:
        update["extraction_output_path"] = output_path
    return contract.model_copy(update=update)


class InMemoryContractStore:
    """Process-local contract store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._contracts: dict[str, Contract] = {}
        self._assistants: dict[str, str] = {}

    def get_contract(self, contract_id: str) -> Contract | None:
        with self._lock:
            contract = self._contracts.get(contract_id)
            return contract.model_copy() if contract is not None else None

    def save_contract(self, contract: Contract) -> None:
        with self._lock:
            self._contracts[contract.id] = contract.model_copy()

    def update_extraction_status(
        self,
        contract_id: str,
        status: str,
        *,
        job_id: str | None = None,
        output_path: str | None = None,
    ) -> Contract | None:
        with self._lock:
            contract = self._contracts.get(contract_id)
            if contract is None:
                return None
            updated = _with_status(contract, status, job_id, output_path)
            self._contracts[contract_id] = updated
            return updated.model_copy()

    def get_assistant_id(self, tenant_id: str) -> str | None:
        with self._lock:
            return self._assistants.get(tenant_id)

    def set_assistant_id(self, tenant_id: str, assistant_id: str) -> None:
        with self._lock:
            self._assistants[tenant_id] = assistant_id


class RedisContractStore:
    """Redis-backed contract store (``contract:{id}`` JSON documents)."""

    def __init__(self, client_factory: Callable[[], redis.Redis] | None = None) -> None:
        self._client_factory = client_factory or get_redis_client

    @staticmethod
    def _key(contract_id: str) -> str:
        return f"{REDIS_PREFIX_CONTRACT}{contract_id}"

    def get_contract(self, contract_id: str) -> Contract | None:
        client = self._client_factory()
        try:
            raw = client.get(self._key(contract_id))
            return Contract.model_validate_json(raw) if raw is not None else None
        finally:
            client.close()

    def save_contract(self, contract: Contract) -> None:
        client = self._client_factory()
        try:
            client.set(self._key(contract.id), contract.model_dump_json())
        finally:
            client.close()

    def update_extraction_status(
        self,
        contract_id: str,
        status: str,
        *,
        job_id: str | None = None,
        output_path: str | None = None,
    ) -> Contract | None:
        key = self._key(contract_id)
        client = self._client_factory()
        try:
            with client.pipeline() as pipe:
                while True:
                    try:
                        pipe.watch(key)
                        raw = pipe.get(key)
                        if raw is None:
                            pipe.unwatch()
                            logger.warning("Contract %s not found for status update", contract_id)
                            return None
                        updated = _with_status(
                            Contract.model_validate_json(raw),
                            status,
                            job_id,
                            output_path,
                        )
                        pipe.multi()
                        pipe.set(key, updated.model_dump_json())
                        pipe.execute()
                        return updated
                    except redis.WatchError:
                        continue
        finally:
            client.close()

    def get_assistant_id(self, tenant_id: str) -> str | None:
        client = self._client_factory()
        try:
            return client.get(f"{REDIS_PREFIX_TENANT_ASSISTANT}{tenant_id}")
        finally:
            client.close()

    def set_assistant_id(self, tenant_id: str, assistant_id: str) -> None:
        client = self._client_factory()
        try:
            client.set(f"{REDIS_PREFIX_TENANT_ASSISTANT}{tenant_id}", assistant_id)
        finally:
            client.close()


def build_contract_store(backend: str) -> ContractStore:
    """Return the contract store for *backend* (``redis`` or ``memory``)."""
    if backend == "memory":
        return InMemoryContractStore()
    return RedisContractStore()
