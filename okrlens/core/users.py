"""
Owner and assignee name resolution.
"""

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional

from okrlens.core.client import RemoteClient, classify, user_path, users_bulk_path
from okrlens.core.errors import OkrLensError
from okrlens.core.payloads import unwrap_collection, unwrap_record
from okrlens.core.store import UserRecord

logger = logging.getLogger(__name__)

UNASSIGNED = "Unassigned"


def synthetic_label(user_id: str) -> str:
    return f"User {user_id}"


def display_name(raw: Dict[str, Any]) -> Optional[str]:
    """Best human-readable name from a user record."""
    for key in ("displayName", "name", "fullName"):
        value = raw.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    full = " ".join(
        part.strip()
        for part in (raw.get("firstName"), raw.get("lastName"))
        if isinstance(part, str) and part.strip()
    )
    if full:
        return full
    email = raw.get("email")
    if isinstance(email, str) and email.strip():
        return email.strip()
    return None


class UserCache:
    """
    Per-run user-name cache. Each ID is written at most once.

    The lock makes ``put_many`` safe if lookups are ever dispatched from
    concurrent tasks.
    """

    def __init__(self) -> None:
        self._records: Dict[str, UserRecord] = {}
        self._lock = asyncio.Lock()

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def get(self, user_id: str) -> Optional[str]:
        record = self._records.get(user_id)
        return record.display_name if record else None

    async def put_many(self, names: Dict[str, str]) -> None:
        async with self._lock:
            for user_id, name in names.items():
                if user_id not in self._records:
                    self._records[user_id] = UserRecord(id=user_id, display_name=name)

    def as_dict(self) -> Dict[str, str]:
        return {user_id: r.display_name for user_id, r in self._records.items()}


class UserDirectory:
    """
    Bulk-resolve user IDs to display names.

    One bulk request covers every uncached ID; IDs it misses are looked up
    one by one, and IDs that still fail get a synthetic "User <id>" label.
    Lookups never raise.

    Parameters
    ----------
    client : RemoteClient
        API client
    cache : UserCache
        Cache owned by the current pipeline run
    bulk_fetch : bool
        Try the bulk endpoint first (disable for accounts without it)
    """

    def __init__(self, client: RemoteClient, cache: Optional[UserCache] = None, bulk_fetch: bool = True):
        self.client = client
        self.cache = cache if cache is not None else UserCache()
        self.bulk_fetch = bulk_fetch

    async def resolve(self, user_ids: Iterable[Optional[str]]) -> Dict[str, str]:
        """
        Resolve IDs to names.

        Returns
        -------
        Dict[str, str]
            Name for every non-empty requested ID
        """
        wanted = list(dict.fromkeys(str(u) for u in user_ids if u))
        missing = [u for u in wanted if u not in self.cache]

        if missing:
            logger.info(f"Resolving {len(missing)} user(s) ({len(wanted) - len(missing)} cached)")
            found: Dict[str, str] = {}
            if self.bulk_fetch:
                found.update(await self._bulk_lookup(missing))

            for user_id in missing:
                if user_id in found:
                    continue
                name = await self._single_lookup(user_id)
                found[user_id] = name or synthetic_label(user_id)

            await self.cache.put_many(found)

        return {u: self.cache.get(u) or synthetic_label(u) for u in wanted}

    def name_for(self, user_id: Optional[str]) -> str:
        """Cached name, or "Unassigned" when there is no owner."""
        if not user_id:
            return UNASSIGNED
        return self.cache.get(str(user_id)) or synthetic_label(str(user_id))

    async def _bulk_lookup(self, user_ids: List[str]) -> Dict[str, str]:
        path = users_bulk_path(user_ids)
        try:
            response = await self.client.get(path)
            payload = classify(response)
        except OkrLensError as e:
            logger.warning(f"Bulk user lookup failed, falling back to per-user lookups: {e}")
            return {}

        wanted = set(user_ids)
        names: Dict[str, str] = {}
        for raw in unwrap_collection(payload):
            if not isinstance(raw, dict):
                continue
            user_id = str(raw.get("id") or "")
            name = display_name(raw)
            if user_id in wanted and name:
                names[user_id] = name
        logger.debug(f"Bulk lookup resolved {len(names)}/{len(user_ids)} users")
        return names

    async def _single_lookup(self, user_id: str) -> Optional[str]:
        try:
            response = await self.client.get(user_path(user_id))
            record = unwrap_record(classify(response))
        except OkrLensError as e:
            logger.warning(f"User lookup failed for {user_id}: {e}")
            return None
        return display_name(record) if record else None
