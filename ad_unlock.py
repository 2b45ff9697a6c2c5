"""
Ad-gated coupon unlock
======================
Sequences the required ad-watch confirmations into a single-use unlock token
and exchanges that token for a newly minted coupon.

    NoSession → AdsLoaded → WatchingAd[i] → TokenIssued → Exchanged

The backend decides whether a watch report counts and when the gate is
satisfied; the client only advances its ad index and captures the token it is
handed. The token is spent exactly once and the exchange is never retried.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Set

from backend_client import Backend
from config import AD_ADVANCE_DELAY_SEC, REQUIRED_AD_WATCHES
from device import DeviceIdentity
from errors import BackendError, TokenError
from models import AdDescriptor, ExchangedCoupon, WatchAdResponse

logger = logging.getLogger(__name__)


class UnlockStage(str, Enum):
    NO_SESSION = "no_session"
    ADS_LOADED = "ads_loaded"
    WATCHING = "watching"
    TOKEN_ISSUED = "token_issued"
    EXCHANGED = "exchanged"


@dataclass
class AdWatchSession:
    session_id: str
    ads: List[AdDescriptor]
    watched: Set[str] = field(default_factory=set)


class AdGatedUnlock:
    def __init__(
        self,
        backend: Backend,
        device: Optional[DeviceIdentity],
        *,
        required_watches: int = REQUIRED_AD_WATCHES,
        advance_delay: float = AD_ADVANCE_DELAY_SEC,
    ):
        self.backend = backend
        self.device = device
        self.required_watches = required_watches
        self.advance_delay = advance_delay
        self.stage = UnlockStage.NO_SESSION
        self.session: Optional[AdWatchSession] = None
        self.index = 0
        self._token: Optional[str] = None

    @property
    def _device_id(self) -> Optional[str]:
        return self.device.value if self.device else None

    @property
    def current_ad(self) -> Optional[AdDescriptor]:
        if self.session is None or self.index >= len(self.session.ads):
            return None
        return self.session.ads[self.index]

    @property
    def has_token(self) -> bool:
        return self._token is not None

    async def load(self) -> AdWatchSession:
        """Fetch this attempt's ad pair. Called once per unlock attempt."""
        if self.session is not None:
            return self.session

        pair = await self.backend.get_ad_pair(self._device_id)
        if len(pair.ads) < self.required_watches:
            raise BackendError(
                f"Not enough ads available: got {len(pair.ads)}, need {self.required_watches}"
            )
        self.session = AdWatchSession(session_id=pair.session_id, ads=pair.ads[: self.required_watches])
        self.index = 0
        self.stage = UnlockStage.ADS_LOADED
        logger.info("Ad session %s loaded (%d ads)", pair.session_id, len(self.session.ads))
        return self.session

    async def report_watch(self, watch_duration: float) -> WatchAdResponse:
        """Report the current ad as watched for `watch_duration` seconds."""
        if self.stage in (UnlockStage.TOKEN_ISSUED, UnlockStage.EXCHANGED):
            raise TokenError("Ad gate already satisfied for this session")
        ad = self.current_ad
        if self.session is None or ad is None:
            raise TokenError("No ad to report; load a session first")

        self.stage = UnlockStage.WATCHING
        result = await self.backend.report_ad_watch(
            ad.id, ad.video_key, int(watch_duration), self._device_id, self.session.session_id,
        )

        if not result.success:
            logger.info("Watch of ad %s not accepted (%.0fs)", ad.id, watch_duration)
            return result

        self.session.watched.add(ad.id)

        if result.can_generate_coupon and result.token:
            self._token = result.token
            self.stage = UnlockStage.TOKEN_ISSUED
            logger.info("Unlock token issued for session %s", self.session.session_id)
            return result

        if self.index < len(self.session.ads) - 1:
            # Let the confirmation render before the next ad starts.
            await asyncio.sleep(self.advance_delay)
            self.index += 1
        return result

    async def exchange(self, discount_id: str) -> ExchangedCoupon:
        """Spend the unlock token on `discount_id`. Single use, never retried."""
        if self._token is None or self.session is None:
            raise TokenError("No unlock token has been issued")
        if len(self.session.watched) < self.required_watches:
            raise TokenError(
                f"Only {len(self.session.watched)} of {self.required_watches} ads confirmed"
            )

        token, self._token = self._token, None
        coupon = await self.backend.exchange_unlock(token, discount_id)
        self.stage = UnlockStage.EXCHANGED
        logger.info("Unlock token exchanged for coupon %s", coupon.code)
        return coupon
