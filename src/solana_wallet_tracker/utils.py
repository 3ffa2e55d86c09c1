"""
Utility functions for address handling, unit conversion and formatting.
"""

from datetime import datetime, timezone
from typing import Optional, Union
import re
import logging

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000

# Base58 alphabet without 0, O, I and l; Solana keys encode to 32-44 chars
_BASE58_ADDRESS = re.compile(r'^[1-9A-HJ-NP-Za-km-z]{32,44}$')


def is_valid_solana_address(address: Optional[str]) -> bool:
    """Check if a string looks like a base58 Solana public key."""
    if not address or not isinstance(address, str):
        return False
    return bool(_BASE58_ADDRESS.match(address.strip()))


def normalize_address(address: str) -> str:
    """Strip surrounding whitespace; base58 is case-sensitive so case is kept."""
    if not address:
        return ""
    return address.strip()


def address_key(address: str) -> str:
    """Case-insensitive comparison key used for watch-list uniqueness and lookups."""
    return normalize_address(address).lower()


def short_address(address: Optional[str], head: int = 4, tail: int = 4) -> str:
    if not address:
        return "N/A"
    if len(address) <= head + tail + 3:
        return address
    return f"{address[:head]}...{address[-tail:]}"


def lamports_to_sol(lamports: Union[int, float]) -> float:
    """Convert lamports to SOL."""
    return lamports / LAMPORTS_PER_SOL


def raw_to_ui(raw_amount: int, decimals: int) -> float:
    """Scale a raw token amount by the mint's decimals."""
    if decimals <= 0:
        return float(raw_amount)
    return raw_amount / (10 ** decimals)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.isoformat()


def from_iso(value: Union[str, datetime]) -> datetime:
    """Parse an ISO-8601 timestamp, treating naive values as UTC."""
    if isinstance(value, datetime):
        moment = value
    else:
        # fromisoformat rejects a trailing Z before Python 3.11
        moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def from_unix(seconds: Optional[Union[int, float]]) -> Optional[datetime]:
    if seconds is None:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def format_number(number: float, decimals: int = 2) -> str:
    """Format a number with K/M/B suffixes."""
    try:
        if number == 0:
            return "0"

        num = float(number)

        if abs(num) >= 1_000_000_000:
            return f"{num / 1_000_000_000:.{decimals}f}B"
        elif abs(num) >= 1_000_000:
            return f"{num / 1_000_000:.{decimals}f}M"
        elif abs(num) >= 1_000:
            return f"{num / 1_000:.{decimals}f}K"
        elif abs(num) < 0.0001:
            return f"{num:.4e}"
        else:
            return f"{num:.{decimals}f}"
    except (ValueError, TypeError, OverflowError) as e:
        logger.warning(f"Error formatting number {number}: {e}")
        return str(number)


def format_market_cap(value: Optional[float]) -> str:
    if not value:
        return "$0"
    return f"${format_number(value)}"


def format_relative_time(moment: Optional[datetime], now: Optional[datetime] = None) -> str:
    """Render a timestamp as '5m ago' style text."""
    if moment is None:
        return "never"
    now = now or utcnow()
    minutes = int((now - from_iso(moment)).total_seconds() // 60)
    hours = minutes // 60
    days = hours // 24

    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{minutes}m ago"
    if hours < 24:
        return f"{hours}h ago"
    if days < 7:
        return f"{days}d ago"
    return moment.strftime("%Y-%m-%d")
