"""
Activity status for one wallet, derived from its classified transfers.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from .config import StatusPolicy
from .models import ActivityStatus, ClassifiedTransfer, TransferCategory
from .utils import address_key, utcnow

STATUS_DESCRIPTIONS = {
    ActivityStatus.OUT: "Completely exited position",
    ActivityStatus.UNKNOWN: "No transaction history found",
    ActivityStatus.SELLING: "Actively selling (within 15 mins)",
    ActivityStatus.SOLD: "Sold within last 24 hours",
    ActivityStatus.TRANSFERRED: "Transferred out within last 24 hours",
    ActivityStatus.RECEIVED: "Received transfer within last 24 hours",
    ActivityStatus.BUY: "First purchase within 24 hours",
    ActivityStatus.BOUGHT_MORE: "Added to position within 24 hours",
    ActivityStatus.HOLDING: "Holding steady (no activity in 24h)",
}


def _for_wallet(wallet: str, transfers: Iterable[ClassifiedTransfer]) -> List[ClassifiedTransfer]:
    key = address_key(wallet)
    return [t for t in transfers if address_key(t.wallet_address) == key]


def derive_status(wallet: str, current_balance: Optional[float],
                  transfers: Iterable[ClassifiedTransfer],
                  now: Optional[datetime] = None,
                  policy: Optional[StatusPolicy] = None) -> ActivityStatus:
    """Single activity label for `wallet`; the first matching rule wins.

    Only transfers belonging to `wallet` are considered, so the full cached
    list for an asset can be passed in directly.
    """
    if current_balance is None or current_balance <= 0:
        return ActivityStatus.OUT

    history = _for_wallet(wallet, transfers)
    if not history:
        return ActivityStatus.UNKNOWN

    policy = policy or StatusPolicy()
    now = now or utcnow()
    selling_window = timedelta(seconds=policy.selling_window_seconds)
    recent_window = timedelta(seconds=policy.recent_window_seconds)

    disposed_recently = False
    disposed_amount = 0.0
    transferred_out = False
    transferred_in = False
    acquired_recently = False
    acquire_count = 0
    transfer_in_count = 0
    total_acquired = 0.0

    for transfer in history:
        if transfer.category == TransferCategory.ACQUIRE:
            acquire_count += 1
            total_acquired += transfer.amount
        elif transfer.category == TransferCategory.TRANSFER_IN:
            transfer_in_count += 1

        if transfer.timestamp is None:
            continue
        age = now - transfer.timestamp

        if transfer.category == TransferCategory.DISPOSE and age <= selling_window:
            return ActivityStatus.SELLING

        if age > recent_window:
            continue
        if transfer.category == TransferCategory.DISPOSE:
            disposed_recently = True
            disposed_amount += transfer.amount
        elif transfer.category == TransferCategory.TRANSFER_OUT:
            transferred_out = True
        elif transfer.category == TransferCategory.TRANSFER_IN:
            transferred_in = True
        elif transfer.category == TransferCategory.ACQUIRE:
            acquired_recently = True

    if total_acquired > 0:
        significant = disposed_amount / total_acquired > policy.significant_sell_ratio
    else:
        significant = disposed_amount > 0

    if disposed_recently and significant:
        return ActivityStatus.SOLD
    if transferred_out:
        return ActivityStatus.TRANSFERRED
    if transferred_in:
        return ActivityStatus.RECEIVED
    if acquired_recently:
        if acquire_count == 1 and transfer_in_count == 0:
            return ActivityStatus.BUY
        return ActivityStatus.BOUGHT_MORE
    return ActivityStatus.HOLDING


@dataclass
class PositionSummary:
    """Per-category totals for one wallet's transfer history."""
    wallet: str
    total_acquired: float = 0.0
    total_disposed: float = 0.0
    total_received: float = 0.0
    total_sent: float = 0.0
    transfer_count: int = 0
    received_from: Dict[str, float] = field(default_factory=dict)
    sent_to: Dict[str, float] = field(default_factory=dict)
    last_activity: Optional[datetime] = None

    def holdings_percent(self, current_balance: float) -> Optional[float]:
        """Current balance as a percentage of everything acquired, if anything was."""
        if self.total_acquired <= 0:
            return None
        return (current_balance or 0.0) / self.total_acquired * 100


def summarize_position(wallet: str, transfers: Iterable[ClassifiedTransfer]) -> PositionSummary:
    summary = PositionSummary(wallet=wallet)

    for transfer in _for_wallet(wallet, transfers):
        summary.transfer_count += 1
        if transfer.timestamp and (summary.last_activity is None
                                   or transfer.timestamp > summary.last_activity):
            summary.last_activity = transfer.timestamp

        if transfer.category == TransferCategory.ACQUIRE:
            summary.total_acquired += transfer.amount
        elif transfer.category == TransferCategory.DISPOSE:
            summary.total_disposed += transfer.amount
        elif transfer.category == TransferCategory.TRANSFER_IN:
            summary.total_received += transfer.amount
            if transfer.counterparty_in:
                source = transfer.counterparty_in
                summary.received_from[source] = summary.received_from.get(source, 0.0) + transfer.amount
        elif transfer.category == TransferCategory.TRANSFER_OUT:
            summary.total_sent += transfer.amount
            if transfer.counterparty_out:
                target = transfer.counterparty_out
                summary.sent_to[target] = summary.sent_to.get(target, 0.0) + transfer.amount

    return summary
