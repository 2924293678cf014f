"""Object storage client for ephemeral photo blobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, Set

import httpx


class PhotoStorageError(RuntimeError):
    """Storage refused or failed a delete; the sweeper retries it."""


class PhotoStorage(Protocol):
    """Deletes are idempotent: removing a missing object succeeds."""

    async def delete(self, storage_ref: str) -> None:
        ...


@dataclass
class HttpPhotoStorage:
    """Deletes objects with `DELETE {base_url}/{ref}`; 404 means already gone."""

    http: httpx.AsyncClient
    base_url: str
    request_timeout: float = 5.0

    async def delete(self, storage_ref: str) -> None:
        url = f"{self.base_url.rstrip('/')}/{storage_ref.lstrip('/')}"
        try:
            response = await self.http.delete(url, timeout=self.request_timeout)
        except httpx.HTTPError as exc:
            raise PhotoStorageError(f"delete failed: {type(exc).__name__}") from exc
        if response.status_code == 404 or response.is_success:
            return
        raise PhotoStorageError(f"delete returned {response.status_code}")

    async def aclose(self) -> None:
        await self.http.aclose()


@dataclass
class InMemoryPhotoStorage:
    objects: Set[str] = field(default_factory=set)
    deleted: list[str] = field(default_factory=list)
    failures: dict[str, int] = field(default_factory=dict)

    def put(self, storage_ref: str) -> None:
        self.objects.add(storage_ref)

    async def delete(self, storage_ref: str) -> None:
        remaining = self.failures.get(storage_ref, 0)
        if remaining:
            self.failures[storage_ref] = remaining - 1
            raise PhotoStorageError("simulated failure")
        self.objects.discard(storage_ref)
        self.deleted.append(storage_ref)
