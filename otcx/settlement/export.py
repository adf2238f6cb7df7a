"""
otcx/settlement/export.py

Operator-facing audit export: one row per submitted proof.

Formats:
    CSV   primary, stdlib csv
    XLSX  same rows, openpyxl
    JSON  audit report; rows digested with RFC 8785 (jcs) + SHA-256 and
          optionally signed with the operator's Ed25519 key

Column order is fixed by EXPORT_COLUMNS and is the same in every format.
"""

import csv
import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from openpyxl import Workbook
from openpyxl.styles import Font

from otcx.core.canonical import canonical_hash, canonicalize
from otcx.core.crypto import ReportSigningKey, verify_signature
from otcx.core.exceptions import ReportIntegrityError
from otcx.core.models import AMOUNT_DECIMALS, PRICE_DECIMALS
from otcx.core.time import iso_timestamp
from otcx.settlement.conversion import format_fixed
from otcx.settlement.coordinator import PendingProof
from otcx.settlement.validator import UNRESOLVED, host_matches, reference_host

REPORT_VERSION = "1.0"

EXPORT_COLUMNS = (
    "Order ID",
    "Status",
    "Validation Status",
    "Seller",
    "Buyer",
    "Amount",
    "Unit Price",
    "Total Value",
    "Proof reference",
    "Expected evidence source",
    "Reference matches expected source",
    "Resolution succeeded",
    "Transaction hash",
    "Transaction from",
    "Transaction to",
    "Transaction asset",
    "Transaction amount",
    "Validation errors",
    "Accepted",
    "Accepted at",
    "Settlement deadline",
)


# ─────────────────────────────────────────────────────────────
# Rows
# ─────────────────────────────────────────────────────────────

def _yes_no(flag: bool) -> str:
    return "yes" if flag else "no"


def _source_matches(proof: Optional[str], source: Optional[str]) -> str:
    host = reference_host(proof)
    source_host = reference_host(source)
    return _yes_no(host is not None and source_host is not None and host_matches(host, source_host))


def _resolution(item: PendingProof) -> str:
    verdict = item.verdict
    if verdict is None:
        return "n/a"
    if verdict.transaction is not None:
        return "yes"
    if UNRESOLVED in verdict.errors:
        return "no"
    return "n/a"


def export_row(item: PendingProof, explorer_url: Optional[str]) -> Dict[str, str]:
    order, record, verdict = item.order, item.record, item.verdict
    tx = verdict.transaction if verdict is not None else None

    values = (
        str(order.id),
        order.status.value,
        verdict.status.value if verdict is not None else "",
        order.seller,
        order.buyer,
        format_fixed(order.amount, AMOUNT_DECIMALS),
        format_fixed(order.unit_price, PRICE_DECIMALS),
        format_fixed(order.total_value, PRICE_DECIMALS),
        record.proof or "",
        explorer_url or "",
        _source_matches(record.proof, explorer_url),
        _resolution(item),
        tx.hash if tx else "",
        tx.sender if tx else "",
        tx.to if tx else "",
        tx.asset if tx else "",
        str(tx.amount) if tx else "",
        "; ".join(verdict.errors) if verdict is not None else "",
        _yes_no(record.accepted),
        iso_timestamp(record.accepted_at),
        iso_timestamp(item.deadline),
    )
    return dict(zip(EXPORT_COLUMNS, values))


def export_rows(pending: Iterable[PendingProof], explorer_url: Optional[str]) -> List[Dict[str, str]]:
    return [
        export_row(item, explorer_url)
        for item in sorted(pending, key=lambda p: p.order_id)
    ]


# ─────────────────────────────────────────────────────────────
# Tabular formats
# ─────────────────────────────────────────────────────────────

def write_csv(rows: List[Dict[str, str]], path: Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=EXPORT_COLUMNS)
        writer.writeheader()
        writer.writerows(rows)


def write_xlsx(rows: List[Dict[str, str]], path: Path, title: str = "Proofs") -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    wb = Workbook()
    ws = wb.active
    ws.title = title[:31]
    ws.append(list(EXPORT_COLUMNS))
    for cell in ws[1]:
        cell.font = Font(bold=True)
    for row in rows:
        ws.append([row[c] for c in EXPORT_COLUMNS])
    ws.freeze_panes = "A2"
    wb.save(path)


# ─────────────────────────────────────────────────────────────
# Signed JSON audit report
# ─────────────────────────────────────────────────────────────

def _payload(report: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "version":      report["version"],
        "project_id":   report["project_id"],
        "generated_at": report["generated_at"],
        "columns":      report["columns"],
        "rows":         report["rows"],
    }


def build_report(
    rows:         List[Dict[str, str]],
    project_id:   str,
    generated_at: int,
    signing_key:  Optional[ReportSigningKey] = None,
) -> Dict[str, Any]:
    """
    Assemble the JSON audit report. The digest covers version, project,
    timestamp, columns and rows; the signature (if any) is over the
    same canonical bytes.
    """
    report: Dict[str, Any] = {
        "version":      REPORT_VERSION,
        "project_id":   project_id,
        "generated_at": iso_timestamp(generated_at),
        "columns":      list(EXPORT_COLUMNS),
        "rows":         rows,
    }
    payload = _payload(report)
    report["digest"] = canonical_hash(payload)
    report["signature"] = None
    if signing_key is not None:
        report["signature"] = {
            "algorithm":  "ed25519",
            "public_key": signing_key.public_key_hex,
            "value":      signing_key.sign(canonicalize(payload)),
        }
    return report


def write_report(report: Dict[str, Any], path: Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(report, f, indent=2)


def verify_report(path: Path) -> Dict[str, Any]:
    """
    Check an exported report's digest and, if present, its signature.

    Returns:
        {"rows": int, "digest": str, "signed": bool, "public_key": str|None}

    Raises:
        ReportIntegrityError: unreadable, digest mismatch or bad signature
    """
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            report = json.load(f)
        payload = _payload(report)
        digest = report["digest"]
    except (OSError, ValueError, KeyError, TypeError) as e:
        raise ReportIntegrityError("report is unreadable", {"path": str(path), "error": str(e)}) from e

    actual = canonical_hash(payload)
    if actual != digest:
        raise ReportIntegrityError(
            "report digest mismatch", {"expected": digest, "actual": actual}
        )

    signature = report.get("signature")
    if signature:
        ok = verify_signature(
            canonicalize(payload),
            signature.get("value", ""),
            signature.get("public_key", ""),
        )
        if not ok:
            raise ReportIntegrityError(
                "report signature invalid", {"public_key": signature.get("public_key")}
            )

    return {
        "rows":       len(payload["rows"]),
        "digest":     digest,
        "signed":     bool(signature),
        "public_key": signature.get("public_key") if signature else None,
    }
