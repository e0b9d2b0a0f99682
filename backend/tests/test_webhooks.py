import pytest

from channel_sync.models_sqlalchemy.models import Channel, ChannelAccount, InventoryLevel, Order
from channel_sync.services.errors import AccountNotFound, InvalidExternalPayload, UnsupportedChannel
from channel_sync.services.normalizers import ShopifyOrder, normalize
from channel_sync.services.reconciliation import reconciliation_pipeline
from channel_sync.services.webhooks import ebay_deleted_user, ebay_topic, handle_webhook


SHOPIFY_ORDER = {
    "id": 820982911946154508,
    "financial_status": "paid",
    "total_price": "12.00",
    "line_items": [{"id": 1, "sku": "MUG", "quantity": 1, "price": "12.00", "product_id": 5, "variant_id": 6}],
}


def test_shopify_order_webhook_and_poll_converge(db, make_account):
    account = make_account(Channel.SHOPIFY, "demo.myshopify.com")

    ack = handle_webhook(db, Channel.SHOPIFY, "orders/create", SHOPIFY_ORDER, account)
    reconciliation_pipeline.apply_order(db, account, normalize(ShopifyOrder(SHOPIFY_ORDER)), source="poll")

    assert ack.processed == ["820982911946154508"]
    order = db.query(Order).one()
    assert order.source == "poll"


def test_shopify_inventory_webhook_for_unknown_item_is_skipped(db, make_account):
    account = make_account(Channel.SHOPIFY, "demo.myshopify.com")

    ack = handle_webhook(
        db, Channel.SHOPIFY, "inventory_levels/update", {"inventory_item_id": 1, "location_id": 2, "available": 5}, account
    )

    assert ack.skipped is True
    assert db.query(InventoryLevel).count() == 0


def test_shopify_product_then_inventory_webhooks(db, make_account):
    account = make_account(Channel.SHOPIFY, "demo.myshopify.com")
    handle_webhook(
        db,
        Channel.SHOPIFY,
        "products/update",
        {"id": 5, "title": "Mug", "variants": [{"id": 6, "sku": "MUG", "inventory_item_id": 60}]},
        account,
    )

    ack = handle_webhook(
        db, Channel.SHOPIFY, "inventory_levels/update", {"inventory_item_id": 60, "location_id": 2, "available": 5}, account
    )

    assert ack.processed == ["60"]
    assert db.query(InventoryLevel).one().available == 5


def test_unhandled_topic_is_acknowledged_and_skipped(db, make_account):
    account = make_account(Channel.SHOPIFY, "demo.myshopify.com")
    ack = handle_webhook(db, Channel.SHOPIFY, "app/uninstalled", {}, account)
    assert (ack.success, ack.skipped) == (True, True)


def test_known_topic_without_account_is_not_found(db):
    with pytest.raises(AccountNotFound):
        handle_webhook(db, Channel.SHOPIFY, "orders/updated", SHOPIFY_ORDER, None)


def test_amazon_webhooks_are_not_supported(db):
    with pytest.raises(UnsupportedChannel):
        handle_webhook(db, Channel.AMAZON, "ORDER_CHANGE", {})


def test_ebay_order_notification_is_upserted(db, make_account):
    account = make_account(Channel.EBAY, "seller-one")
    payload = {
        "metadata": {"topic": "ORDER_CREATED"},
        "order": {"orderId": "08-1", "sellerId": "seller-one", "lineItems": [{"lineItemId": "1", "sku": "CUP", "quantity": 2}]},
    }

    ack = handle_webhook(db, Channel.EBAY, None, payload, account)

    assert ack.topic == "ORDER_CREATED"
    assert ack.processed == ["08-1"]
    assert db.query(Order).one().source == "webhook"


def test_ebay_account_deletion_runs_erasure(db, make_account):
    make_account(Channel.EBAY, "leaving-seller")
    payload = {
        "metadata": {"topic": "MARKETPLACE_ACCOUNT_DELETION"},
        "notification": {"notificationId": "n-1", "data": {"username": "leaving-seller", "userId": "ma8vp1jySJC"}},
    }

    assert ebay_topic(payload) == "MARKETPLACE_ACCOUNT_DELETION"
    assert ebay_deleted_user(payload) == "leaving-seller"
    ack = handle_webhook(db, Channel.EBAY, None, payload)

    assert ack.skipped is False
    assert db.query(ChannelAccount).count() == 0


def test_ebay_account_deletion_without_user_is_invalid(db):
    payload = {"metadata": {"topic": "MARKETPLACE_ACCOUNT_DELETION"}, "notification": {"data": {}}}
    with pytest.raises(InvalidExternalPayload):
        handle_webhook(db, Channel.EBAY, None, payload)


def test_delivery_without_topic_is_skipped(db):
    assert handle_webhook(db, Channel.EBAY, None, {}).skipped is True
