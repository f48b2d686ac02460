"""
Session resolution: user-supplied names or UUIDs to Session records.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from okrlens.core.client import RemoteClient
from okrlens.core.errors import ApiError, UnresolvedIdentifierError
from okrlens.core.payloads import first_present, is_collection, unwrap_collection
from okrlens.core.store import Session, parse_timestamp

logger = logging.getLogger(__name__)


def _is_placeholder(identifier: str) -> bool:
    lowered = identifier.lower()
    return lowered.startswith("your-session") or (
        lowered.startswith("your-") and lowered.endswith("-here")
    )


def session_from_raw(raw: Dict[str, Any]) -> Session:
    return Session(
        id=str(raw.get("id") or ""),
        name=str(raw.get("name") or raw.get("title") or ""),
        start_date=parse_timestamp(first_present(raw, ["start", "startDate", "start_date"])),
        end_date=parse_timestamp(first_present(raw, ["end", "endDate", "end_date"])),
        status=str(raw.get("status") or ""),
    )


class SessionResolver:
    """
    Map an ordered list of session identifiers to Session records.

    The full session list is fetched once. Each identifier is matched by exact
    ID first, then by case-insensitive name. Resolution is all or nothing:
    every identifier that fails to match is reported in a single
    UnresolvedIdentifierError together with all available session names.
    """

    def __init__(self, client: RemoteClient):
        self.client = client
        self._sessions: Optional[List[Session]] = None

    async def available_sessions(self) -> List[Session]:
        """Fetch (once) and return every session visible to the account."""
        if self._sessions is None:
            payload = await self.client.get_json("/sessions")
            if not is_collection(payload):
                raise ApiError("Failed to retrieve sessions list from Quantive API", path="/sessions")
            sessions = []
            for raw in unwrap_collection(payload):
                if not isinstance(raw, dict):
                    continue
                session = session_from_raw(raw)
                if not session.id:
                    logger.warning(f"Found session {session.name!r} but it has no ID field; ignoring")
                sessions.append(session)
            self._sessions = sessions
            logger.info(f"Loaded {len(sessions)} sessions")
        return self._sessions

    async def resolve(self, identifiers: Sequence[str]) -> List[Session]:
        """
        Resolve identifiers in order.

        Parameters
        ----------
        identifiers : Sequence[str]
            Session UUIDs or names; duplicates resolve once

        Returns
        -------
        List[Session]
            Resolved sessions in the order first requested

        Raises
        ------
        UnresolvedIdentifierError
            If any identifier matches no session
        """
        sessions = await self.available_sessions()
        by_id = {s.id: s for s in sessions if s.id}
        by_name: Dict[str, Session] = {}
        for s in sessions:
            if s.id and s.name:
                by_name.setdefault(s.name.strip().lower(), s)

        resolved: List[Session] = []
        seen_ids = set()
        unresolved: List[str] = []

        for identifier in identifiers:
            text = (identifier or "").strip() if isinstance(identifier, str) else ""
            if not text or _is_placeholder(text):
                unresolved.append(identifier if isinstance(identifier, str) else repr(identifier))
                continue

            match = by_id.get(text) or by_name.get(text.lower())
            if match is None:
                unresolved.append(text)
                continue
            if match.id in seen_ids:
                continue
            seen_ids.add(match.id)
            resolved.append(match)
            logger.debug(f"Resolved session {text!r} -> {match.id}")

        if unresolved:
            available = [s.name for s in sessions if s.name]
            raise UnresolvedIdentifierError(unresolved, available)

        logger.info(f"Resolved {len(resolved)} session(s): {', '.join(s.name for s in resolved)}")
        return resolved
