"""
tests/test_models.py

Entities and record schemas.

  STATUS
    Only OPEN->FUNDED|CANCELED and FUNDED->SETTLED|DEFAULTED are legal
    Terminal statuses have no successors

  VALUES
    total_value truncates, never rounds
    counterparty_locked depends on the maker's side
    points path is decided by the settlement asset, case-insensitively

  SCHEMA
    Decode accepts positional and mapping records
    Wrong field count, missing field, unknown status code raise SchemaError
    Zero address decodes to "no restriction"
"""

import pytest

from otcx.core.exceptions import FieldMismatch, OtcxError, SchemaError
from otcx.core.models import (
    POINTS_SENTINEL,
    ZERO_ADDRESS,
    Order,
    OrderStatus,
    ProjectSettlementState,
    ProofRecord,
    is_zero_address,
    same_address,
)
from otcx.ledger.schema import ORDER_SCHEMA_V4, PROJECT_SCHEMA_V2

from tests.helpers.ledger_factory import BUYER, POINTS_PROJECT_ID, SELLER, points, points_project, usd


def make_order(**overrides) -> Order:
    values = dict(
        id                  = 7,
        maker               = SELLER,
        buyer               = ZERO_ADDRESS,
        seller              = SELLER,
        project_id          = POINTS_PROJECT_ID,
        amount              = points(100),
        unit_price          = usd(2),
        buyer_funds         = 0,
        seller_collateral   = usd(200),
        settlement_deadline = 0,
        is_sell             = True,
        status              = OrderStatus.OPEN,
    )
    values.update(overrides)
    return Order(**values)


# ─────────────────────────────────────────────────────────────
# STATUS
# ─────────────────────────────────────────────────────────────

class TestOrderStatus:

    @pytest.mark.parametrize("src,dst", [
        (OrderStatus.OPEN,   OrderStatus.FUNDED),
        (OrderStatus.OPEN,   OrderStatus.CANCELED),
        (OrderStatus.FUNDED, OrderStatus.SETTLED),
        (OrderStatus.FUNDED, OrderStatus.DEFAULTED),
    ])
    def test_forward_transitions_are_legal(self, src, dst):
        """The four lifecycle edges are the only legal transitions."""
        assert src.can_transition_to(dst)

    @pytest.mark.parametrize("src,dst", [
        (OrderStatus.FUNDED,  OrderStatus.OPEN),
        (OrderStatus.SETTLED, OrderStatus.FUNDED),
        (OrderStatus.OPEN,    OrderStatus.SETTLED),
        (OrderStatus.CANCELED, OrderStatus.OPEN),
    ])
    def test_backward_and_skipping_transitions_are_illegal(self, src, dst):
        """Nothing moves backward and nothing skips FUNDED."""
        assert not src.can_transition_to(dst)

    @pytest.mark.parametrize("src,dst,reachable", [
        (OrderStatus.OPEN,     OrderStatus.SETTLED,   True),
        (OrderStatus.OPEN,     OrderStatus.DEFAULTED, True),
        (OrderStatus.OPEN,     OrderStatus.FUNDED,    True),
        (OrderStatus.FUNDED,   OrderStatus.CANCELED,  False),
        (OrderStatus.SETTLED,  OrderStatus.DEFAULTED, False),
        (OrderStatus.CANCELED, OrderStatus.FUNDED,    False),
        (OrderStatus.FUNDED,   OrderStatus.FUNDED,    False),
    ])
    def test_reachability_spans_several_steps(self, src, dst, reachable):
        assert src.can_reach(dst) is reachable

    def test_terminal_statuses(self):
        """SETTLED, DEFAULTED and CANCELED are terminal; OPEN and FUNDED are not."""
        terminal = {s for s in OrderStatus if s.is_terminal}
        assert terminal == {OrderStatus.SETTLED, OrderStatus.DEFAULTED, OrderStatus.CANCELED}


# ─────────────────────────────────────────────────────────────
# VALUES
# ─────────────────────────────────────────────────────────────

class TestOrderValues:

    def test_total_value(self):
        """100 points at 2.000000 is 200.000000."""
        assert make_order().total_value == usd(200)

    def test_total_value_truncates(self):
        """Sub-unit remainders are dropped, not rounded."""
        order = make_order(amount=999_999_999_999, unit_price=1)
        assert order.total_value == 0

    def test_sell_order_waits_on_buyer_funds(self):
        order = make_order()
        assert not order.counterparty_locked
        assert make_order(buyer_funds=usd(200)).counterparty_locked

    def test_buy_order_waits_on_seller_collateral(self):
        order = make_order(is_sell=False, buyer=SELLER, seller=ZERO_ADDRESS, seller_collateral=0)
        assert not order.counterparty_locked
        assert make_order(is_sell=False, seller_collateral=1).counterparty_locked

    def test_involves_is_case_insensitive(self):
        assert make_order().involves(SELLER.upper().replace("0X", "0x"))
        assert not make_order().involves(BUYER)

    def test_public_order(self):
        assert make_order().is_public
        assert not make_order(allowed_taker=BUYER).is_public


class TestAddresses:

    def test_same_address(self):
        assert same_address("0xAbC", "0xabc")
        assert not same_address(None, None)
        assert not same_address("0xabc", None)

    def test_zero_address(self):
        assert is_zero_address(None)
        assert is_zero_address("")
        assert is_zero_address(ZERO_ADDRESS)
        assert not is_zero_address(SELLER)


class TestSettlementState:

    def test_points_path_by_sentinel(self):
        """The sentinel asset selects the proof path whatever its case."""
        state = ProjectSettlementState(POINTS_PROJECT_ID, True, 100, POINTS_SENTINEL.lower())
        assert state.is_points_path

    def test_token_path(self):
        state = ProjectSettlementState(POINTS_PROJECT_ID, True, 100, "0x" + "e5" * 20)
        assert not state.is_points_path

    def test_inactive_stand_in(self):
        """A missing state is treated as not activated, never as activated."""
        state = ProjectSettlementState.inactive(POINTS_PROJECT_ID)
        assert state.tge_activated is False
        assert state.settlement_deadline == 0

    def test_blank_proof_is_no_proof(self):
        assert not ProofRecord(order_id=1, proof="   ").has_proof
        assert not ProofRecord(order_id=1, proof=None).has_proof
        assert ProofRecord(order_id=1, proof="https://x/tx/1").has_proof


class TestErrors:

    def test_error_renders_details(self):
        err = OtcxError("could not load order 3", {"reason": "timed out"})
        assert str(err) == "could not load order 3 (reason=timed out)"

    def test_field_mismatch_describe(self):
        m = FieldMismatch("from", "0xaaa", "0xbbb")
        assert m.describe() == "from mismatch: expected 0xaaa, found 0xbbb"


# ─────────────────────────────────────────────────────────────
# SCHEMA
# ─────────────────────────────────────────────────────────────

class TestOrderSchema:

    def test_mapping_roundtrip(self):
        """encode() output decodes back to the same order."""
        order = make_order(status=OrderStatus.FUNDED, buyer=BUYER, buyer_funds=usd(200))
        assert ORDER_SCHEMA_V4.decode(ORDER_SCHEMA_V4.encode(order)) == order

    def test_positional_record(self):
        """A positional tuple decodes field by field in schema order."""
        encoded = ORDER_SCHEMA_V4.encode(make_order())
        raw = tuple(encoded[f] for f in ORDER_SCHEMA_V4.fields)
        order = ORDER_SCHEMA_V4.decode(raw)
        assert order.id == 7
        assert order.status is OrderStatus.OPEN

    def test_wrong_field_count(self):
        """A record from another ledger version fails loudly."""
        encoded = ORDER_SCHEMA_V4.encode(make_order())
        raw = tuple(encoded[f] for f in ORDER_SCHEMA_V4.fields)[:-1]
        with pytest.raises(SchemaError, match="wrong field count"):
            ORDER_SCHEMA_V4.decode(raw)

    def test_missing_field(self):
        encoded = ORDER_SCHEMA_V4.encode(make_order())
        del encoded["unit_price"]
        with pytest.raises(SchemaError, match="missing fields"):
            ORDER_SCHEMA_V4.decode(encoded)

    def test_unknown_status_code(self):
        encoded = ORDER_SCHEMA_V4.encode(make_order())
        encoded["status"] = 9
        with pytest.raises(SchemaError, match="unknown status code"):
            ORDER_SCHEMA_V4.decode(encoded)

    def test_malformed_amount(self):
        encoded = ORDER_SCHEMA_V4.encode(make_order())
        encoded["amount"] = "lots"
        with pytest.raises(SchemaError, match="'amount' is malformed"):
            ORDER_SCHEMA_V4.decode(encoded)

    def test_zero_allowed_taker_means_public(self):
        encoded = ORDER_SCHEMA_V4.encode(make_order())
        assert encoded["allowed_taker"] == ZERO_ADDRESS
        assert ORDER_SCHEMA_V4.decode(encoded).allowed_taker is None

    def test_hex_string_integers(self):
        """Integer fields accept 0x-prefixed strings as returned by JSON-RPC."""
        encoded = ORDER_SCHEMA_V4.encode(make_order())
        encoded["id"] = "0x7"
        assert ORDER_SCHEMA_V4.decode(encoded).id == 7


class TestProjectSchema:

    def test_roundtrip(self):
        project = points_project()
        assert PROJECT_SCHEMA_V2.decode(PROJECT_SCHEMA_V2.encode(project)) == project

    def test_not_a_record(self):
        with pytest.raises(SchemaError, match="sequence or mapping"):
            PROJECT_SCHEMA_V2.decode(42)
