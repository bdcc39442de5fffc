from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from fastapi import Depends, HTTPException

from .auth import require_parent
from .config import Settings, get_settings
from .models import Account, Plan, utcnow

PREMIUM_REQUIRED = "Premium feature - paid plans launching soon"


@dataclass(frozen=True)
class PremiumStatus:
    is_active: bool
    reason: str
    trial_ends_at: Optional[datetime] = None

    @property
    def days_left(self) -> Optional[int]:
        if not self.trial_ends_at:
            return None
        return max(0, (self.trial_ends_at - utcnow()).days)


def get_premium_status(
    account: Account, settings: Settings, now: Optional[datetime] = None
) -> PremiumStatus:
    now = now or utcnow()
    owner_email = settings.owner_email.strip().lower()
    if account.is_owner or (owner_email and account.email.lower() == owner_email):
        return PremiumStatus(True, "owner")
    if account.plan == Plan.pro:
        return PremiumStatus(True, "pro")
    if account.plan == Plan.trial and account.trial_ends_at:
        if now < account.trial_ends_at:
            return PremiumStatus(True, "trial", account.trial_ends_at)
        return PremiumStatus(False, "trial_expired", account.trial_ends_at)
    return PremiumStatus(False, "free")


def require_premium(
    account: Account = Depends(require_parent),
    settings: Settings = Depends(get_settings),
) -> Account:
    if not get_premium_status(account, settings).is_active:
        raise HTTPException(status_code=403, detail=PREMIUM_REQUIRED)
    return account
