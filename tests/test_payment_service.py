"""
tests/test_payment_service.py — Purchases, Withdrawals & Webhooks
===================================================================
"""

from __future__ import annotations

import asyncio
from decimal import Decimal

import httpx
import pytest
from conftest import TEST_APP_ID, TEST_APP_SECRET, ccpayment_transport
from sqlalchemy import select

from degentalk.database.engine import get_session
from degentalk.database.models import DgtPurchaseOrder, User, WithdrawalRequest
from degentalk.errors import (
    BusinessRuleViolationError,
    FeatureDisabledError,
    PaymentProviderError,
    ValidationError,
)
from degentalk.services import admin_service, notification_service, payment_service, wallet_service
from degentalk.services.ccpayment import CCPaymentClient


def _order(engine, merchant_order_id: str) -> DgtPurchaseOrder:
    with get_session(engine) as session:
        return session.scalar(
            select(DgtPurchaseOrder).where(DgtPurchaseOrder.merchant_order_id == merchant_order_id)
        )


def _withdrawal(engine, order_id: str) -> WithdrawalRequest:
    with get_session(engine) as session:
        return session.scalar(select(WithdrawalRequest).where(WithdrawalRequest.order_id == order_id))


def _failing_withdrawals() -> CCPaymentClient:
    def handler(path, params):
        if path == "checkWithdrawalAddressValidity":
            return {"addrIsValid": True}
        if path == "getCoinUSDTPrice":
            return {"prices": {"1280": "1"}}
        return httpx.Response(200, json={"code": 12001, "msg": "Insufficient hot wallet balance"})

    return CCPaymentClient(
        TEST_APP_ID, TEST_APP_SECRET, "https://ccpayment.test",
        transport=ccpayment_transport(handler),
    )


def _withdraw(engine, cache, client, user_id, amount, address="Taddr"):
    return asyncio.run(payment_service.request_withdrawal(
        engine, cache, client, user_id, Decimal(amount), 1280, "TRX", address,
    ))


# ===========================================================================
# Purchases
# ===========================================================================
class TestPurchaseOrders:
    def test_quote_and_deposit_address(self, db_engine, cache, ccpayment_client, ccpayment_calls, make_user):
        user = make_user("alice")
        result = asyncio.run(payment_service.create_purchase_order(
            db_engine, cache, ccpayment_client, user.id, Decimal("5"), "usdt", "TRX",
        ))

        assert result["dgt_amount"] == "50.000000"
        assert result["coin_symbol"] == "USDT"
        assert result["deposit_address"] == "0xdeadbeef"
        assert ccpayment_calls[0] == (
            "getOrCreateAppDepositAddress", {"referenceId": f"dgt_user_{user.id}", "chain": "TRX"},
        )
        order = _order(db_engine, result["order_id"])
        assert order.status == "pending"
        assert order.dgt_amount == 50_000_000
        assert order.deposit_address == "0xdeadbeef"

    def test_below_minimum(self, db_engine, cache, ccpayment_client, make_user):
        user = make_user("alice")
        with pytest.raises(ValidationError, match="Minimum purchase"):
            asyncio.run(payment_service.create_purchase_order(
                db_engine, cache, ccpayment_client, user.id, Decimal("0.5"), "USDT", "TRX",
            ))

    def test_deposits_flag_off(self, db_engine, cache, ccpayment_client, make_user, admin):
        user = make_user("alice")
        admin_service.set_feature_flag(db_engine, key="deposits", enabled=False, actor_id=admin.id)
        with pytest.raises(FeatureDisabledError):
            asyncio.run(payment_service.create_purchase_order(
                db_engine, cache, ccpayment_client, user.id, Decimal("5"), "USDT", "TRX",
            ))

    def test_provider_failure_marks_order_failed(self, db_engine, cache, make_user):
        user = make_user("alice")
        client = CCPaymentClient(
            TEST_APP_ID, TEST_APP_SECRET, "https://ccpayment.test",
            transport=ccpayment_transport(lambda path, params: httpx.Response(502)),
        )
        with pytest.raises(PaymentProviderError):
            asyncio.run(payment_service.create_purchase_order(
                db_engine, cache, client, user.id, Decimal("5"), "USDT", "TRX",
            ))
        with get_session(db_engine) as session:
            statuses = session.scalars(select(DgtPurchaseOrder.status)).all()
        assert statuses == ["failed"]


# ===========================================================================
# Withdrawals
# ===========================================================================
class TestWithdrawals:
    def test_debits_and_submits(self, db_engine, cache, ccpayment_client, ccpayment_calls, make_user, fund):
        user = make_user("alice")
        fund(user.id, 100)

        result = _withdraw(db_engine, cache, ccpayment_client, user.id, "10")

        assert result["crypto_amount"] == "1.00000000"
        assert result["status"] == "processing"
        assert wallet_service.get_balance(db_engine, user.id) == 90_000_000
        request = _withdrawal(db_engine, result["order_id"])
        assert request.provider_record_id == "rec_1"
        submitted = dict(ccpayment_calls)["applyAppWithdrawToNetwork"]
        assert submitted["orderId"] == result["order_id"]

    def test_provider_rejection_refunds(self, db_engine, cache, make_user, fund):
        user = make_user("alice")
        fund(user.id, 100)

        with pytest.raises(PaymentProviderError, match="hot wallet"):
            _withdraw(db_engine, cache, _failing_withdrawals(), user.id, "10")

        assert wallet_service.get_balance(db_engine, user.id) == 100_000_000
        [row] = payment_service.list_withdrawals(db_engine, user.id)
        assert row["status"] == "failed"
        assert row["failure_reason"] == "Insufficient hot wallet balance"
        note = notification_service.list_notifications(db_engine, user.id)[0]
        assert note["type"] == "withdrawal_failed"

    def test_below_minimum(self, db_engine, cache, ccpayment_client, make_user, fund):
        user = make_user("alice")
        fund(user.id, 100)
        with pytest.raises(ValidationError, match="Minimum withdrawal"):
            _withdraw(db_engine, cache, ccpayment_client, user.id, "2")

    def test_invalid_address(self, db_engine, cache, make_user, fund):
        user = make_user("alice")
        fund(user.id, 100)
        client = CCPaymentClient(
            TEST_APP_ID, TEST_APP_SECRET, "https://ccpayment.test",
            transport=ccpayment_transport(lambda path, params: {"addrIsValid": False}),
        )
        with pytest.raises(ValidationError, match="Invalid withdrawal address"):
            _withdraw(db_engine, cache, client, user.id, "10")
        assert wallet_service.get_balance(db_engine, user.id) == 100_000_000

    def test_daily_limit(self, db_engine, cache, ccpayment_client, make_user, fund, economy_override):
        user = make_user("alice")
        fund(user.id, 100)
        economy_override("wallet", {"daily_withdrawal_limit": "15"})

        _withdraw(db_engine, cache, ccpayment_client, user.id, "10")
        with pytest.raises(BusinessRuleViolationError):
            _withdraw(db_engine, cache, ccpayment_client, user.id, "10")
        assert wallet_service.get_balance(db_engine, user.id) == 90_000_000

    def test_emergency_withdrawal_halt(self, db_engine, cache, ccpayment_client, make_user, fund, economy_override):
        user = make_user("alice")
        fund(user.id, 100)
        economy_override("emergency", {"withdrawals_disabled": True, "message": "Bridge paused"})
        with pytest.raises(FeatureDisabledError, match="Bridge paused"):
            _withdraw(db_engine, cache, ccpayment_client, user.id, "10")


# ===========================================================================
# Webhooks
# ===========================================================================
class TestWebhooks:
    @pytest.fixture
    def order_id(self, db_engine, cache, ccpayment_client, make_user) -> str:
        user = make_user("alice")
        result = asyncio.run(payment_service.create_purchase_order(
            db_engine, cache, ccpayment_client, user.id, Decimal("5"), "USDT", "TRX",
        ))
        return result["order_id"]

    def test_deposit_completed_credits_once(self, db_engine, cache, order_id):
        event = {
            "eventType": "deposit_completed",
            "merchantOrderId": order_id,
            "orderId": "cc_42",
            "amount": "5",
            "txHash": "0xfeed",
        }
        first = payment_service.process_webhook(db_engine, cache, event)
        second = payment_service.process_webhook(db_engine, cache, event)

        order = _order(db_engine, order_id)
        assert first == {"success": True, "message": "Deposit credited"}
        assert second["message"] == "Already processed"
        assert order.status == "completed"
        assert order.provider_record_id == "cc_42"
        assert wallet_service.get_balance(db_engine, order.user_id) == 50_000_000
        types = [n["type"] for n in notification_service.list_notifications(db_engine, order.user_id)]
        assert types.count("deposit_completed") == 1

    def test_underpaid_order_credits_what_arrived(self, db_engine, cache, order_id):
        event = {
            "eventType": "deposit_completed",
            "merchantOrderId": order_id,
            "orderId": "cc_43",
            "amount": "5",
            "actualAmount": "0.01",
        }
        result = payment_service.process_webhook(db_engine, cache, event)

        order = _order(db_engine, order_id)
        assert result["success"]
        assert "underpaid" in result["message"]
        assert order.status == "completed"
        assert order.crypto_amount == "0.01"
        assert wallet_service.get_balance(db_engine, order.user_id) == 100_000

    def test_overpaid_order_credits_the_quote(self, db_engine, cache, order_id):
        event = {
            "eventType": "deposit_completed",
            "merchantOrderId": order_id,
            "orderId": "cc_44",
            "amount": "5000",
        }
        assert payment_service.process_webhook(db_engine, cache, event)["message"] == "Deposit credited"
        assert wallet_service.get_balance(db_engine, _order(db_engine, order_id).user_id) == 50_000_000

    def test_dust_deposit_fails_order(self, db_engine, cache, order_id):
        event = {
            "eventType": "deposit_completed",
            "merchantOrderId": order_id,
            "orderId": "cc_45",
            "actualAmount": "0",
            "amount": "5",
        }
        result = payment_service.process_webhook(db_engine, cache, event)

        order = _order(db_engine, order_id)
        assert result == {"success": False, "message": "Deposit amount too small"}
        assert order.status == "failed"
        assert wallet_service.get_balance(db_engine, order.user_id) == 0

    def test_credit_over_max_balance_fails_order(self, db_engine, cache, order_id, economy_override):
        economy_override("wallet", {"max_balance": "10"})
        event = {
            "eventType": "deposit_completed",
            "merchantOrderId": order_id,
            "orderId": "cc_46",
            "amount": "5",
        }
        result = payment_service.process_webhook(db_engine, cache, event)

        order = _order(db_engine, order_id)
        assert result["success"] is False
        assert "maximum wallet balance" in result["message"]
        assert order.status == "failed"
        assert "maximum wallet balance" in order.failure_reason
        assert wallet_service.get_balance(db_engine, order.user_id) == 0

        # A redelivery of the same event does not credit a failed order
        again = payment_service.process_webhook(db_engine, cache, event)
        assert again["success"] is False
        assert wallet_service.get_balance(db_engine, order.user_id) == 0

    def test_deposit_failed(self, db_engine, cache, order_id):
        result = payment_service.process_webhook(
            db_engine, cache, {"eventType": "deposit_failed", "merchantOrderId": order_id},
        )
        assert result["success"]
        assert _order(db_engine, order_id).status == "failed"

    def test_unknown_order_without_auto_convert(self, db_engine, cache):
        result = payment_service.process_webhook(
            db_engine, cache, {"eventType": "deposit_completed", "merchantOrderId": "dgt_nope"},
        )
        assert result == {"success": False, "message": "Purchase order not found"}

    def test_direct_deposit_auto_converts_once(self, db_engine, cache, make_user, economy_override):
        user = make_user("alice")
        with get_session(db_engine) as session:
            session.get(User, user.id).ccpayment_account_id = "cc_user_alice"
        economy_override("deposits", {"auto_convert": True})

        event = {"eventType": "deposit_completed", "orderId": "cc_77", "uid": "cc_user_alice", "amount": "2"}
        assert payment_service.process_webhook(db_engine, cache, event)["message"] == "Deposit auto-converted"
        assert payment_service.process_webhook(db_engine, cache, event)["message"] == "Already processed"
        assert wallet_service.get_balance(db_engine, user.id) == 20_000_000

    def test_withdrawal_completed(self, db_engine, cache, ccpayment_client, make_user, fund):
        user = make_user("bob")
        fund(user.id, 50)
        order_id = _withdraw(db_engine, cache, ccpayment_client, user.id, "10")["order_id"]

        result = payment_service.process_webhook(
            db_engine, cache,
            {"eventType": "withdrawal_completed", "merchantOrderId": order_id, "txHash": "0xabc"},
        )
        assert result["success"]
        assert _withdrawal(db_engine, order_id).status == "completed"

        late_failure = payment_service.process_webhook(
            db_engine, cache, {"eventType": "withdrawal_failed", "merchantOrderId": order_id},
        )
        assert late_failure["message"] == "Already processed"
        assert wallet_service.get_balance(db_engine, user.id) == 40_000_000

    def test_withdrawal_failed_refunds_once(self, db_engine, cache, ccpayment_client, make_user, fund):
        user = make_user("bob")
        fund(user.id, 50)
        order_id = _withdraw(db_engine, cache, ccpayment_client, user.id, "10")["order_id"]
        event = {"eventType": "withdrawal_failed", "merchantOrderId": order_id, "status": "Chain congested"}

        payment_service.process_webhook(db_engine, cache, event)
        payment_service.process_webhook(db_engine, cache, event)

        assert wallet_service.get_balance(db_engine, user.id) == 50_000_000
        assert _withdrawal(db_engine, order_id).failure_reason == "Chain congested"

    def test_unknown_event_type(self, db_engine, cache):
        result = payment_service.process_webhook(db_engine, cache, {"eventType": "airdrop"})
        assert result == {"success": False, "message": "Unknown event type"}
