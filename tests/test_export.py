"""
tests/test_export.py

Audit export: row layout, CSV / XLSX output, signed JSON report.

  Column order is fixed and identical in every format
  A signed report verifies; any edited byte of the payload fails
"""

import csv
import json

import pytest
from openpyxl import load_workbook

from otcx.core.crypto import ReportSigningKey, verify_signature
from otcx.core.exceptions import ConfigError, ReportIntegrityError
from otcx.core.models import (
    Order,
    OrderStatus,
    ProofRecord,
    TransactionDetails,
    ValidationVerdict,
    VerdictStatus,
)
from otcx.settlement.coordinator import PendingProof
from otcx.settlement.export import (
    EXPORT_COLUMNS,
    build_report,
    export_row,
    export_rows,
    verify_report,
    write_csv,
    write_report,
    write_xlsx,
)
from otcx.settlement.validator import UNRESOLVED

from tests.helpers.ledger_factory import (
    BUYER,
    DELIVERY_ASSET,
    EXPLORER,
    POINTS_PROJECT_ID,
    SELLER,
    T0,
    explorer_tx,
    points,
    tx_hash,
    usd,
)


def pending(order_id: int, verdict=None, accepted: bool = False, proof=None) -> PendingProof:
    order = Order(
        id                  = order_id,
        maker               = SELLER,
        buyer               = BUYER,
        seller              = SELLER,
        project_id          = POINTS_PROJECT_ID,
        amount              = points(1000),
        unit_price          = usd(0.5),
        buyer_funds         = usd(500),
        seller_collateral   = usd(500),
        settlement_deadline = T0,
        is_sell             = True,
        status              = OrderStatus.FUNDED,
    )
    record = ProofRecord(
        order_id     = order_id,
        proof        = proof or explorer_tx(order_id),
        submitted_at = T0 - 60,
        accepted     = accepted,
        accepted_at  = T0 + 60 if accepted else 0,
    )
    return PendingProof(order, record, deadline=T0, tge_activated=True, verdict=verdict)


def approved(order_id: int) -> ValidationVerdict:
    return ValidationVerdict(
        order_id       = order_id,
        status         = VerdictStatus.APPROVED,
        transaction    = TransactionDetails(tx_hash(order_id), SELLER, BUYER, DELIVERY_ASSET, points(1000)),
        source_matches = True,
    )


@pytest.fixture
def rows():
    unresolved = ValidationVerdict(order_id=2, status=VerdictStatus.MANUAL_REVIEW, errors=[UNRESOLVED])
    return export_rows([pending(2, unresolved), pending(1, approved(1))], EXPLORER)


# ─────────────────────────────────────────────────────────────
# Rows
# ─────────────────────────────────────────────────────────────

class TestRows:

    def test_rows_sorted_by_order_id(self, rows):
        assert [r["Order ID"] for r in rows] == ["1", "2"]

    def test_row_keys_follow_column_order(self, rows):
        assert tuple(rows[0]) == EXPORT_COLUMNS

    def test_resolved_row(self, rows):
        row = rows[0]
        assert row["Validation Status"] == "APPROVED"
        assert row["Amount"] == "1000"
        assert row["Unit Price"] == "0.5"
        assert row["Total Value"] == "500"
        assert row["Reference matches expected source"] == "yes"
        assert row["Resolution succeeded"] == "yes"
        assert row["Transaction hash"] == tx_hash(1)
        assert row["Transaction amount"] == str(points(1000))
        assert row["Accepted"] == "no"
        assert row["Accepted at"] == ""
        assert row["Settlement deadline"] == "2023-11-14T22:13:20Z"

    def test_unresolved_row(self, rows):
        row = rows[1]
        assert row["Resolution succeeded"] == "no"
        assert row["Transaction hash"] == ""
        assert row["Validation errors"] == UNRESOLVED

    def test_unvalidated_row(self):
        row = export_row(pending(3, accepted=True), None)
        assert row["Validation Status"] == ""
        assert row["Resolution succeeded"] == "n/a"
        assert row["Reference matches expected source"] == "no"
        assert row["Accepted"] == "yes"
        assert row["Accepted at"] == "2023-11-14T22:14:20Z"

    def test_foreign_host_does_not_match(self):
        row = export_row(pending(4, proof="https://etherscan.io.evil.com/tx/0x1"), EXPLORER)
        assert row["Reference matches expected source"] == "no"


# ─────────────────────────────────────────────────────────────
# Tabular formats
# ─────────────────────────────────────────────────────────────

class TestTabular:

    def test_csv(self, rows, tmp_path):
        path = tmp_path / "out" / "proofs.csv"
        write_csv(rows, path)
        with open(path, newline="", encoding="utf-8") as f:
            reader = csv.reader(f)
            header = next(reader)
            body = list(reader)
        assert tuple(header) == EXPORT_COLUMNS
        assert [r[0] for r in body] == ["1", "2"]

    def test_xlsx(self, rows, tmp_path):
        path = tmp_path / "proofs.xlsx"
        write_xlsx(rows, path, title="grass")
        ws = load_workbook(path).active
        values = [[c.value for c in r] for r in ws.iter_rows()]
        assert ws.title == "grass"
        assert tuple(values[0]) == EXPORT_COLUMNS
        assert values[1][0] == "1"
        assert len(values) == 3


# ─────────────────────────────────────────────────────────────
# Signed report
# ─────────────────────────────────────────────────────────────

class TestReport:

    def test_unsigned_report_verifies(self, rows, tmp_path):
        path = tmp_path / "report.json"
        write_report(build_report(rows, POINTS_PROJECT_ID, T0), path)
        result = verify_report(path)
        assert result["rows"] == 2
        assert result["signed"] is False
        assert result["public_key"] is None

    def test_signed_report_verifies(self, rows, tmp_path):
        key = ReportSigningKey.generate()
        path = tmp_path / "report.json"
        write_report(build_report(rows, POINTS_PROJECT_ID, T0, key), path)
        result = verify_report(path)
        assert result["signed"] is True
        assert result["public_key"] == key.public_key_hex

    def test_digest_is_deterministic(self, rows):
        a = build_report(rows, POINTS_PROJECT_ID, T0)
        b = build_report(list(rows), POINTS_PROJECT_ID, T0)
        assert a["digest"] == b["digest"]

    def test_tampered_row_fails(self, rows, tmp_path):
        """Changing one cell breaks the digest."""
        path = tmp_path / "report.json"
        write_report(build_report(rows, POINTS_PROJECT_ID, T0), path)
        data = json.loads(path.read_text(encoding="utf-8"))
        data["rows"][0]["Accepted"] = "yes"
        path.write_text(json.dumps(data), encoding="utf-8")
        with pytest.raises(ReportIntegrityError):
            verify_report(path)

    def test_resigned_with_other_key_fails(self, rows, tmp_path):
        """A valid digest with a signature from a different key is rejected."""
        path = tmp_path / "report.json"
        report = build_report(rows, POINTS_PROJECT_ID, T0, ReportSigningKey.generate())
        report["signature"]["public_key"] = ReportSigningKey.generate().public_key_hex
        write_report(report, path)
        with pytest.raises(ReportIntegrityError):
            verify_report(path)

    def test_unreadable_report(self, tmp_path):
        path = tmp_path / "report.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ReportIntegrityError):
            verify_report(path)


# ─────────────────────────────────────────────────────────────
# Signing key
# ─────────────────────────────────────────────────────────────

class TestSigningKey:

    def test_saved_key_signs_the_same(self, tmp_path):
        key = ReportSigningKey.generate()
        path = tmp_path / "keys" / "operator.pem"
        key.save(path)

        loaded = ReportSigningKey.load(path)

        assert loaded.public_key_hex == key.public_key_hex
        assert len(key.public_key_hex) == 64
        signature = loaded.sign(b"payload")
        assert "=" not in signature
        assert verify_signature(b"payload", signature, key.public_key_hex)

    @pytest.mark.parametrize("data,signature,public_key", [
        (b"other",   None,        None),
        (b"payload", "!!!",       None),
        (b"payload", None,        "ab" * 31),
        (b"payload", None,        "zz" * 32),
    ])
    def test_verify_signature_rejects(self, data, signature, public_key):
        key = ReportSigningKey.generate()
        good = key.sign(b"payload")
        assert not verify_signature(data, signature or good, public_key or key.public_key_hex)

    def test_load_rejects_non_key(self, tmp_path):
        path = tmp_path / "operator.pem"
        path.write_text("not a key", encoding="utf-8")
        with pytest.raises(ConfigError):
            ReportSigningKey.load(path)
        with pytest.raises(ConfigError):
            ReportSigningKey.load(tmp_path / "absent.pem")
