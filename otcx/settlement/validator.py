"""
otcx/settlement/validator.py

Proof Validator: turns a seller's evidence string into a verdict.

═══════════════════════════════════════════════════════════════════
VERDICT RULES
═══════════════════════════════════════════════════════════════════
1. Structural
     no evidence source configured          -> MANUAL_REVIEW
     proof not a URL with scheme and host   -> MANUAL_REVIEW
     host is not the evidence source host   -> NOT_APPROVED
     host ok, no transaction hash in URL    -> MANUAL_REVIEW
   None of these attempt resolution.
2. Resolution
     ResolutionFailure of any kind          -> MANUAL_REVIEW,
                                               "could not resolve reference"
3. Semantic (resolved only), one error per failing field
     from   == expected seller
     to     == expected buyer
     asset  == expected asset
     amount == expected settlement amount (within tolerance_bps)
4. APPROVED iff resolved and no semantic error; NOT_APPROVED iff
   resolved with at least one; MANUAL_REVIEW otherwise.
═══════════════════════════════════════════════════════════════════

A resolution failure is never APPROVED and never NOT_APPROVED. It is a
request for a human.

validate() has no side effects beyond the resolver read and can be
re-run on every refresh.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence
from urllib.parse import urlsplit

from otcx.core.exceptions import FieldMismatch, ResolutionFailure
from otcx.core.models import (
    ExpectedTransfer,
    Order,
    ProjectSettlementState,
    TransactionDetails,
    ValidationVerdict,
    VerdictStatus,
    same_address,
)
from otcx.settlement.conversion import BPS_DENOMINATOR, to_settlement_amount
from otcx.settlement.resolver import TransactionResolver

logger = logging.getLogger(__name__)

UNRESOLVED = "could not resolve reference"

_HASH_PATTERNS = (
    re.compile(r"#/tx/txid/0x([0-9a-f]{64})(?![0-9a-f])", re.IGNORECASE),
    re.compile(r"/tx/(?:0x)?([0-9a-f]{64})(?![0-9a-f])", re.IGNORECASE),
    re.compile(r"/transaction/0x([0-9a-f]{64})(?![0-9a-f])", re.IGNORECASE),
)


# ─────────────────────────────────────────────────────────────
# Reference parsing
# ─────────────────────────────────────────────────────────────

def reference_host(reference: Optional[str]) -> Optional[str]:
    """Lowercase host of a URL with an http(s) scheme, else None."""
    if not reference or not reference.strip():
        return None
    try:
        parts = urlsplit(reference.strip())
    except ValueError:
        return None
    if parts.scheme.lower() not in ("http", "https") or not parts.hostname:
        return None
    return parts.hostname.lower()


def host_matches(host: str, source_host: str) -> bool:
    """
    Exact host, any subdomain of it, or the same host behind 'www.'.
    'sepolia-etherscan.io' and 'etherscan.io.evil.com' do not match
    'etherscan.io'.
    """
    host = host.lower()
    source_host = source_host.lower()
    return (
        host == source_host
        or host.endswith("." + source_host)
        or (host.startswith("www.") and host[4:] == source_host)
    )


def extract_tx_hash(reference: str) -> Optional[str]:
    """0x-prefixed lowercase hash found in an explorer URL, or None."""
    for pattern in _HASH_PATTERNS:
        match = pattern.search(reference)
        if match:
            return "0x" + match.group(1).lower()
    return None


def expected_for(
    order:          Order,
    state:          ProjectSettlementState,
    delivery_asset: Optional[str] = None,
) -> ExpectedTransfer:
    """
    What a delivery transfer for `order` must look like. The amount is the
    converted settlement amount, never the raw points amount. Points
    projects deliver a token the ledger does not know about; pass it as
    `delivery_asset`.
    """
    return ExpectedTransfer(
        seller = order.seller,
        buyer  = order.buyer,
        asset  = delivery_asset or state.settlement_asset,
        amount = to_settlement_amount(order.amount, state.conversion_ratio),
    )


@dataclass(frozen=True)
class ValidationRequest:
    order_id:        int
    proof:           Optional[str]
    expected_source: Optional[str]
    expected:        ExpectedTransfer


# ─────────────────────────────────────────────────────────────
# Validator
# ─────────────────────────────────────────────────────────────

class ProofValidator:
    """
    Args:
        resolver:      transaction lookup
        tolerance_bps: allowed amount deviation in basis points; 0 is exact
    """

    def __init__(self, resolver: TransactionResolver, tolerance_bps: int = 0):
        if not 0 <= tolerance_bps <= BPS_DENOMINATOR:
            raise ValueError(f"tolerance_bps out of range: {tolerance_bps}")
        self.resolver = resolver
        self.tolerance_bps = tolerance_bps

    async def validate(
        self,
        order_id:        int,
        proof:           Optional[str],
        expected_source: Optional[str],
        expected:        ExpectedTransfer,
    ) -> ValidationVerdict:
        if not expected_source:
            return _verdict(order_id, VerdictStatus.MANUAL_REVIEW, ["no evidence source configured"])

        host = reference_host(proof)
        if host is None:
            return _verdict(
                order_id, VerdictStatus.MANUAL_REVIEW,
                ["proof is not a well-formed URL"],
            )

        source_host = reference_host(expected_source)
        if source_host is None:
            return _verdict(
                order_id, VerdictStatus.MANUAL_REVIEW,
                [f"evidence source is not a well-formed URL: {expected_source}"],
            )

        if not host_matches(host, source_host):
            return _verdict(
                order_id, VerdictStatus.NOT_APPROVED,
                [f"proof host {host} does not match evidence source {source_host}"],
                source_matches=False,
            )

        tx_hash = extract_tx_hash(proof)
        if tx_hash is None:
            return _verdict(
                order_id, VerdictStatus.MANUAL_REVIEW,
                ["no transaction hash found in proof reference"],
                source_matches=True,
            )

        try:
            details = await self.resolver.resolve(tx_hash, expected_source)
        except ResolutionFailure as e:
            logger.info("order %d: %s (%s)", order_id, UNRESOLVED, e)
            return _verdict(order_id, VerdictStatus.MANUAL_REVIEW, [UNRESOLVED], source_matches=True)

        errors = [m.describe() for m in self.mismatches(details, expected)]
        status = VerdictStatus.NOT_APPROVED if errors else VerdictStatus.APPROVED
        return ValidationVerdict(
            order_id       = order_id,
            status         = status,
            errors         = errors,
            transaction    = details,
            source_matches = True,
        )

    def mismatches(self, details: TransactionDetails, expected: ExpectedTransfer) -> List[FieldMismatch]:
        found: List[FieldMismatch] = []
        if not same_address(details.sender, expected.seller):
            found.append(FieldMismatch("from", expected.seller, details.sender))
        if not same_address(details.to, expected.buyer):
            found.append(FieldMismatch("to", expected.buyer, details.to))
        if not same_address(details.asset, expected.asset):
            found.append(FieldMismatch("asset", expected.asset, details.asset))

        allowed = expected.amount * self.tolerance_bps // BPS_DENOMINATOR
        if abs(details.amount - expected.amount) > allowed:
            found.append(FieldMismatch("amount", expected.amount, details.amount))
        return found

    async def validate_many(
        self,
        requests:        Sequence[ValidationRequest],
        timeout:         float = 30.0,
        max_concurrency: int = 16,
    ) -> Dict[int, ValidationVerdict]:
        """
        Validate concurrently under one overall timeout. A validation that
        does not finish in time is reported as MANUAL_REVIEW.
        """
        if not requests:
            return {}

        sem = asyncio.Semaphore(max_concurrency)

        async def one(req: ValidationRequest) -> ValidationVerdict:
            async with sem:
                return await self.validate(
                    req.order_id, req.proof, req.expected_source, req.expected
                )

        tasks = {asyncio.ensure_future(one(req)): req for req in requests}
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        verdicts: Dict[int, ValidationVerdict] = {}
        for task, req in tasks.items():
            if task in done and task.exception() is None:
                verdicts[req.order_id] = task.result()
                continue
            if task in done:
                logger.error("order %d: validation error: %s", req.order_id, task.exception())
                reason = "validation error"
            else:
                logger.warning("order %d: validation timed out", req.order_id)
                reason = "validation timed out"
            verdicts[req.order_id] = _verdict(
                req.order_id, VerdictStatus.MANUAL_REVIEW, [reason, UNRESOLVED]
            )
        return verdicts


def _verdict(
    order_id:       int,
    status:         VerdictStatus,
    errors:         List[str],
    source_matches: Optional[bool] = None,
) -> ValidationVerdict:
    return ValidationVerdict(
        order_id       = order_id,
        status         = status,
        errors         = errors,
        source_matches = source_matches,
    )
