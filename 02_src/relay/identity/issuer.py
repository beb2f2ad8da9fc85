"""Short numeric identifiers for anonymous sessions."""

import random

from ..errors import IdentityIssueFailed
from ..logging_config import get_logger
from ..storage import IStorage

logger = get_logger(__name__)

ID_MIN = 100000
ID_MAX = 999999


class IdentityIssuer:
    """Issues 6-digit identity candidates and checks them against the store."""

    def __init__(self, rng: random.Random | None = None, max_attempts: int = 10):
        self._rng = rng or random.SystemRandom()
        self._max_attempts = max_attempts

    def issue_candidate_id(self) -> str:
        """Draw a candidate id uniformly from the 6-digit range. Not unique."""
        return str(self._rng.randint(ID_MIN, ID_MAX))

    async def issue(self, storage: IStorage) -> str:
        """Return a candidate that no stored identity currently uses."""
        for attempt in range(1, self._max_attempts + 1):
            candidate = self.issue_candidate_id()
            if await storage.get_identity(candidate) is None:
                return candidate
            logger.info("Identity candidate %s taken (attempt %s)", candidate, attempt)

        raise IdentityIssueFailed(
            f"No free identity after {self._max_attempts} attempts"
        )
