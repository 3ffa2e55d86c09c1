"""
Reduce a parsed Solana transaction to its effect on one watched wallet.

The category comes from two correlated deltas observed in the same
transaction: the wallet's balance of the tracked mint and its native SOL
balance. A token move paired with a meaningful SOL move in the opposite
direction is treated as a trade (ACQUIRE / DISPOSE); anything else is a plain
transfer. The thresholds are asymmetric because a purchase usually costs far
more SOL than the network fee that accompanies an outgoing transfer.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .config import ClassifierPolicy
from .errors import ParseFailure
from .models import ClassifiedTransfer, FetchStats, TransferCategory
from .utils import address_key, from_unix, lamports_to_sol, raw_to_ui

logger = logging.getLogger(__name__)

DEFAULT_DECIMALS = 9


@dataclass
class _OwnerDelta:
    address: str
    pre: int = 0
    post: int = 0
    decimals: int = DEFAULT_DECIMALS

    @property
    def change(self) -> int:
        return self.post - self.pre


@dataclass
class _TokenBalances:
    owners: Dict[str, _OwnerDelta] = field(default_factory=dict)
    mint_seen: bool = False


def _raw_amount(entry: Dict[str, Any]) -> Tuple[int, int]:
    token_amount = entry.get("uiTokenAmount") or {}
    decimals = token_amount.get("decimals")
    return int(token_amount.get("amount") or 0), DEFAULT_DECIMALS if decimals is None else int(decimals)


def _collect_token_balances(meta: Dict[str, Any], asset_id: str) -> _TokenBalances:
    """Pre/post balances of `asset_id` for every owner party to the transaction."""
    balances = _TokenBalances()
    mint_key = address_key(asset_id)

    for side in ("preTokenBalances", "postTokenBalances"):
        for entry in meta.get(side) or []:
            if not isinstance(entry, dict):
                raise ParseFailure(f"{side} entry is not an object")
            mint = entry.get("mint")
            owner = entry.get("owner")
            if not mint or not owner or address_key(mint) != mint_key:
                continue

            balances.mint_seen = True
            amount, decimals = _raw_amount(entry)
            delta = balances.owners.setdefault(
                address_key(owner), _OwnerDelta(address=owner, decimals=decimals))
            if side == "preTokenBalances":
                delta.pre += amount
            else:
                delta.post += amount
                delta.decimals = decimals

    return balances


def _account_keys(transaction: Dict[str, Any]) -> List[str]:
    message = (transaction or {}).get("message") or {}
    keys = []
    for key in message.get("accountKeys") or []:
        # jsonParsed returns objects, legacy encodings return bare strings
        if isinstance(key, dict):
            keys.append(str(key.get("pubkey") or ""))
        else:
            keys.append(str(key))
    return keys


def native_delta(raw_tx: Dict[str, Any], wallet: str) -> float:
    """SOL balance change of `wallet` across the transaction."""
    meta = raw_tx.get("meta") or {}
    pre = meta.get("preBalances") or []
    post = meta.get("postBalances") or []
    wallet_key = address_key(wallet)

    for index, key in enumerate(_account_keys(raw_tx.get("transaction"))):
        if address_key(key) == wallet_key:
            pre_lamports = pre[index] if index < len(pre) else 0
            post_lamports = post[index] if index < len(post) else 0
            return lamports_to_sol(int(post_lamports or 0) - int(pre_lamports or 0))
    return 0.0


def _signature_of(raw_tx: Dict[str, Any]) -> Optional[str]:
    signatures = ((raw_tx.get("transaction") or {}).get("signatures")) or []
    return signatures[0] if signatures else None


def _find_counterparty(owners: Dict[str, _OwnerDelta], wallet_key: str,
                       rising: bool) -> Optional[str]:
    for key, delta in owners.items():
        if key == wallet_key:
            continue
        if (rising and delta.change > 0) or (not rising and delta.change < 0):
            return delta.address
    return None


def _categorize(token_delta: int, sol_delta: float,
                policy: ClassifierPolicy) -> TransferCategory:
    if token_delta < 0:
        if sol_delta > policy.dispose_min_native_gain:
            return TransferCategory.DISPOSE
        return TransferCategory.TRANSFER_OUT
    if sol_delta < -policy.acquire_min_native_cost:
        return TransferCategory.ACQUIRE
    return TransferCategory.TRANSFER_IN


def _classify(raw_tx: Dict[str, Any], watched_address: str, asset_id: str,
              signature_id: Optional[str], timestamp: Optional[datetime],
              policy: ClassifierPolicy) -> Optional[ClassifiedTransfer]:
    if not isinstance(raw_tx, dict):
        raise ParseFailure("transaction is not an object")

    meta = raw_tx.get("meta")
    if meta is None:
        raise ParseFailure("transaction has no meta section")

    balances = _collect_token_balances(meta, asset_id)
    if not balances.mint_seen:
        return None

    wallet_key = address_key(watched_address)
    own = balances.owners.get(wallet_key)
    token_delta = own.change if own else 0
    if token_delta == 0:
        return None

    sol_delta = native_delta(raw_tx, watched_address)
    category = _categorize(token_delta, sol_delta, policy)

    counterparty_in = None
    counterparty_out = None
    if token_delta < 0:
        counterparty_out = _find_counterparty(balances.owners, wallet_key, rising=True)
    else:
        counterparty_in = _find_counterparty(balances.owners, wallet_key, rising=False)

    signature_id = signature_id or _signature_of(raw_tx)
    if not signature_id:
        raise ParseFailure("transaction has no signature")
    if timestamp is None:
        timestamp = from_unix(raw_tx.get("blockTime"))

    return ClassifiedTransfer(
        signature_id=signature_id,
        timestamp=timestamp,
        wallet_address=watched_address,
        category=category,
        amount=raw_to_ui(abs(token_delta), own.decimals),
        raw_amount=abs(token_delta),
        decimals=own.decimals,
        sol_delta=sol_delta,
        counterparty_in=counterparty_in,
        counterparty_out=counterparty_out,
    )


def classify(raw_tx: Dict[str, Any], watched_address: str, asset_id: str,
             signature_id: Optional[str] = None,
             timestamp: Optional[datetime] = None,
             policy: Optional[ClassifierPolicy] = None,
             stats: Optional[FetchStats] = None) -> Optional[ClassifiedTransfer]:
    """Classify one parsed transaction for a wallet/mint pair.

    Returns None when the mint is not involved, when the wallet's balance of
    the mint did not change, or when the transaction is malformed. Malformed
    transactions are counted in `stats.parse_failures` when `stats` is given.
    """
    try:
        transfer = _classify(raw_tx, watched_address, asset_id, signature_id,
                             timestamp, policy or ClassifierPolicy())
    except (ParseFailure, TypeError, ValueError, AttributeError) as e:
        logger.warning(f"Skipping malformed transaction {signature_id or '?'}: {e}")
        if stats is not None:
            stats.parse_failures += 1
        return None

    if transfer and transfer.category in (TransferCategory.TRANSFER_IN, TransferCategory.TRANSFER_OUT):
        logger.debug(
            f"{transfer.category.value}: {transfer.amount:.4f} tokens | "
            f"SOL change: {transfer.sol_delta:.6f} | "
            f"to: {transfer.counterparty_out or 'N/A'} | from: {transfer.counterparty_in or 'N/A'}")
    return transfer
