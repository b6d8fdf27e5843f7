"""
Local handles to in-memory asset bytes.

The HandleTable exclusively owns every buffer. Consumers receive a
LocalHandle, a non-owning reference that reads through the table and fails
with HandleReleasedError once the table has released it.
"""

from __future__ import annotations

import io
from dataclasses import dataclass

from mediacache.exceptions import HandleReleasedError
from mediacache.logging import get_logger
from mediacache.types import generate_id

logger = get_logger(__name__)

HANDLE_SCHEME = "mediacache"


class LocalHandle:
    """Revocable reference to one asset's bytes."""

    def __init__(
        self,
        table: HandleTable,
        handle_id: str,
        asset_id: str,
        content_type: str,
        size_bytes: int,
        from_cache: bool,
    ) -> None:
        self._table = table
        self.handle_id = handle_id
        self.asset_id = asset_id
        self.content_type = content_type
        self.size_bytes = size_bytes
        self.from_cache = from_cache

    @property
    def url(self) -> str:
        """Opaque local URL, analogous to a browser object URL."""
        return f"{HANDLE_SCHEME}:{self.handle_id}"

    @property
    def released(self) -> bool:
        return not self._table.is_live(self.handle_id)

    def read(self) -> bytes:
        return self._table.read(self.handle_id)

    def open(self) -> io.BytesIO:
        """A fresh binary stream over the bytes."""
        return io.BytesIO(self.read())

    def release(self) -> None:
        self._table.release(self.handle_id)

    def __repr__(self) -> str:
        state = "released" if self.released else "live"
        return f"LocalHandle({self.asset_id!r}, {self.size_bytes} bytes, {state})"


@dataclass
class _Slot:
    handle: LocalHandle
    buffer: bytes


class HandleTable:
    """Owner of all issued handles, at most one live handle per asset."""

    def __init__(self) -> None:
        self._slots: dict[str, _Slot] = {}
        self._by_asset: dict[str, str] = {}

    def mint(
        self,
        asset_id: str,
        payload: bytes,
        content_type: str,
        from_cache: bool = False,
    ) -> LocalHandle:
        """Issue a handle for an asset, releasing any previous one for it."""
        self.release_asset(asset_id)

        handle = LocalHandle(
            table=self,
            handle_id=generate_id("h"),
            asset_id=asset_id,
            content_type=content_type,
            size_bytes=len(payload),
            from_cache=from_cache,
        )
        self._slots[handle.handle_id] = _Slot(handle=handle, buffer=payload)
        self._by_asset[asset_id] = handle.handle_id
        logger.debug("Minted handle", asset_id=asset_id, handle=handle.handle_id)
        return handle

    def get(self, asset_id: str) -> LocalHandle | None:
        handle_id = self._by_asset.get(asset_id)
        if handle_id is None:
            return None
        return self._slots[handle_id].handle

    def is_live(self, handle_id: str) -> bool:
        return handle_id in self._slots

    def read(self, handle_id: str) -> bytes:
        slot = self._slots.get(handle_id)
        if slot is None:
            raise HandleReleasedError(
                "Handle has been released", context={"handle_id": handle_id}
            )
        return slot.buffer

    def release(self, handle_id: str) -> bool:
        slot = self._slots.pop(handle_id, None)
        if slot is None:
            return False
        if self._by_asset.get(slot.handle.asset_id) == handle_id:
            del self._by_asset[slot.handle.asset_id]
        logger.debug("Released handle", asset_id=slot.handle.asset_id, handle=handle_id)
        return True

    def release_asset(self, asset_id: str) -> bool:
        handle_id = self._by_asset.get(asset_id)
        return self.release(handle_id) if handle_id else False

    def release_all(self) -> list[str]:
        """Release every live handle. Returns the affected asset IDs."""
        asset_ids = [slot.handle.asset_id for slot in self._slots.values()]
        self._slots.clear()
        self._by_asset.clear()
        if asset_ids:
            logger.debug("Released all handles", count=len(asset_ids))
        return asset_ids

    @property
    def total_bytes(self) -> int:
        return sum(len(slot.buffer) for slot in self._slots.values())

    def asset_ids(self) -> list[str]:
        return list(self._by_asset)

    def __len__(self) -> int:
        return len(self._slots)

    def __contains__(self, asset_id: object) -> bool:
        return asset_id in self._by_asset
