"""
Utility functions used across the engine
Keep these pure functions without side effects
"""
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

# ============================================================
# Time
# ============================================================

def utcnow() -> datetime:
    """Timezone-aware current UTC time"""
    return datetime.now(timezone.utc)

def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to aware UTC

    Naive values are taken to already be UTC; aware values are converted.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

def ceil_units(duration: timedelta, unit: timedelta) -> int:
    """Number of whole units needed to cover duration (any remainder bills a full unit)"""
    whole, remainder = divmod(duration, unit)
    return whole + 1 if remainder else whole

# ============================================================
# ID Generation
# ============================================================

def generate_reference_code(created_at: Optional[datetime] = None) -> str:
    """
    Short human-shareable booking reference

    Format: PKG-YYYYMMDD-XXXXXXXX (creation date, 8 upper-case hex chars)
    """
    created_at = ensure_utc(created_at) or utcnow()
    return f"PKG-{created_at:%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"

def generate_transaction_id(prefix: str, at: Optional[datetime] = None) -> str:
    """Gateway-style transaction id, e.g. TXN-20250101093000-1A2B3C4D"""
    at = ensure_utc(at) or utcnow()
    return f"{prefix}-{at:%Y%m%d%H%M%S}-{uuid.uuid4().hex[:8].upper()}"
