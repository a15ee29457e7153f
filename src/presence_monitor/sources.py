"""Presence sources: the Roblox web API and a deterministic simulator."""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Any, Callable, Optional, Protocol

import httpx

from .errors import SourceFailure
from .models import Sample
from .normalization import normalize_activity

logger = logging.getLogger(__name__)

USERNAMES_URL = "https://users.roblox.com/v1/usernames/users"
PRESENCE_URL = "https://presence.roblox.com/v1/presence/users"

SIMULATED_ACTIVITIES = ("Jogo A", "Jogo B", "City Adventure", "Tycoon X", "Obby Fun")
SIMULATED_ONLINE_CUTOFF = 0.4


class PresenceSource(Protocol):
    def fetch(self, identity: str) -> Sample:
        ...


def simulate(identity: str, now: datetime) -> Sample:
    """Deterministic pseudo-presence for an identity within a wall-clock minute."""
    minute = math.floor(now.timestamp() / 60)
    seed = sum(ord(char) for char in identity) + minute
    rnd = abs(math.sin(seed)) % 1
    if rnd <= SIMULATED_ONLINE_CUTOFF:
        return Sample(online=False)
    index = math.floor((rnd * 1000) % len(SIMULATED_ACTIVITIES))
    return Sample(online=True, activity=SIMULATED_ACTIVITIES[index])


class SimulatedSource:
    """Source backed by :func:`simulate` and an injectable clock."""

    def __init__(self, clock: Callable[[], datetime] = datetime.now) -> None:
        self._clock = clock

    def fetch(self, identity: str) -> Sample:
        return simulate(identity, self._clock())


class RobloxPresenceSource:
    """Looks up a username's presence through the public Roblox APIs.

    One attempt per call. Every failure is raised as :class:`SourceFailure`;
    only a request the API rejects as malformed (HTTP 400) is permanent.
    """

    def __init__(
        self,
        client: Optional[httpx.Client] = None,
        *,
        timeout: float = 10.0,
    ) -> None:
        self._client = client or httpx.Client(timeout=timeout)
        self._owns_client = client is None
        self._timeout = timeout
        self._user_ids: dict[str, int] = {}

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def fetch(self, identity: str) -> Sample:
        try:
            user_id = self._resolve_user_id(identity)
            presence = self._fetch_presence(user_id)
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise SourceFailure(
                f"HTTP {status} from {exc.request.url.host}",
                retryable=status != 400,
            ) from exc
        except httpx.HTTPError as exc:
            raise SourceFailure(f"request failed: {exc!r}") from exc
        except (ValueError, KeyError, TypeError) as exc:
            raise SourceFailure(f"unexpected response: {exc!r}") from exc
        return self._to_sample(presence)

    def _post(self, url: str, payload: dict[str, Any]) -> Any:
        response = self._client.post(url, json=payload, timeout=self._timeout)
        response.raise_for_status()
        return response.json()

    def _resolve_user_id(self, identity: str) -> int:
        cached = self._user_ids.get(identity.lower())
        if cached is not None:
            return cached
        data = self._post(
            USERNAMES_URL, {"usernames": [identity], "excludeBannedUsers": False}
        )
        users = data["data"]
        if not users:
            raise SourceFailure(f"username {identity!r} not found")
        user_id = int(users[0]["id"])
        self._user_ids[identity.lower()] = user_id
        return user_id

    def _fetch_presence(self, user_id: int) -> dict[str, Any]:
        data = self._post(PRESENCE_URL, {"userIds": [user_id]})
        presences = data["userPresences"]
        if not presences:
            return {}
        presence = presences[0]
        if not isinstance(presence, dict):
            raise TypeError("presence entry is not an object")
        kind = presence.get("userPresenceType", 0)
        if not isinstance(kind, int) or isinstance(kind, bool):
            raise TypeError(f"userPresenceType is not an integer: {kind!r}")
        return presence

    @staticmethod
    def _to_sample(presence: dict[str, Any]) -> Sample:
        # userPresenceType: 0 offline, 1 website, 2 in game, 3 in studio.
        online = bool(presence.get("userPresenceType"))
        if not online:
            return Sample(online=False)
        activity = normalize_activity(presence.get("lastLocation"))
        if activity is None:
            if presence.get("rootPlaceId"):
                activity = f"Game (place {presence['rootPlaceId']})"
            elif presence.get("universeId"):
                activity = f"Game (universe {presence['universeId']})"
            elif presence.get("gameId"):
                activity = f"Game (id {presence['gameId']})"
        return Sample(online=True, activity=activity)


class PresenceSampler:
    """Chooses between the real source and the simulator.

    A retryable failure of the real source switches the sampler into
    degraded mode; from then on it samples the simulator.
    """

    def __init__(
        self,
        source: PresenceSource,
        simulator: Optional[PresenceSource] = None,
        *,
        use_simulator: bool = False,
    ) -> None:
        self.source = source
        self.simulator = simulator or SimulatedSource()
        self.use_simulator = use_simulator
        self.degraded = False
        self.last_failure: Optional[str] = None

    @property
    def simulated(self) -> bool:
        return self.use_simulator or self.degraded

    def sample(self, identity: str) -> Sample:
        if self.simulated:
            return self.simulator.fetch(identity)
        try:
            return self.source.fetch(identity)
        except SourceFailure as exc:
            self.last_failure = exc.reason
            if not exc.retryable:
                raise
            logger.warning(
                "Presence source unavailable (%s); falling back to the simulator.",
                exc.reason,
            )
            self.degraded = True
            return self.simulator.fetch(identity)
