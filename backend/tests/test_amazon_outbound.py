import json

import httpx
import pytest

from channel_sync.models_sqlalchemy.models import AuditOrderLine, Channel, InboundShipment, ShippingLabel
from channel_sync.services import amazon_outbound
from channel_sync.services.amazon_outbound import FulfillmentItem, InboundItem, InboundPlanItem, InventoryUpdate
from channel_sync.services.amazon_spapi import SpApiExecutor
from channel_sync.services.errors import FeatureDisabled, UnsupportedChannel
from channel_sync.services.normalizers import AmazonOrder, normalize
from channel_sync.services.reconciliation import reconciliation_pipeline
from channel_sync.services.token_lifecycle import TokenManager


class _Token(TokenManager):
    async def acquire_valid_credential(self, db, account, *, force_refresh=False):
        return "Atza|token"


def _recording_executor(seen, response_json=None):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=response_json if response_json is not None else {})

    return SpApiExecutor(_Token(), transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_inventory_push_patches_each_listing(db, make_account):
    account = make_account(Channel.AMAZON, "A1SELLER")
    seen = []

    sent = await amazon_outbound.push_inventory(
        db,
        account,
        [InventoryUpdate("BOOK/1", 4), InventoryUpdate("", 1), InventoryUpdate("PEN", 0, ["A2EUQ1WTGCTBG2"])],
        executor=_recording_executor(seen),
    )

    assert sent == 2
    assert [r.method for r in seen] == ["PATCH", "PATCH"]
    assert seen[0].url.raw_path.startswith(b"/listings/2021-08-01/items/A1SELLER/BOOK%2F1")
    assert seen[0].url.params["marketplaceIds"] == "ATVPDKIKX0DER"
    assert seen[1].url.params["marketplaceIds"] == "A2EUQ1WTGCTBG2"
    patch = json.loads(seen[0].content)["patches"][0]
    assert patch["value"][0]["quantity"] == 4


@pytest.mark.asyncio
async def test_disabled_flags_block_outbound_actions(db, make_account):
    account = make_account(Channel.AMAZON, "A1SELLER", inventory_out=False, fulfillment_out=False)
    seen = []
    executor = _recording_executor(seen)

    with pytest.raises(FeatureDisabled):
        await amazon_outbound.push_inventory(db, account, [InventoryUpdate("BOOK", 1)], executor=executor)
    with pytest.raises(FeatureDisabled):
        await amazon_outbound.create_fulfillment_order(
            db, account, displayable_order_id="1001", destination_address={}, items=[FulfillmentItem("BOOK", 1)],
            executor=executor,
        )
    # Labels are off unless the seller opts in.
    with pytest.raises(FeatureDisabled):
        await amazon_outbound.get_shipping_rates(db, account, ship_from={}, ship_to={}, packages=[], executor=executor)
    assert seen == []


@pytest.mark.asyncio
async def test_outbound_actions_are_amazon_only(db, make_account):
    account = make_account(Channel.EBAY, "seller-one")
    with pytest.raises(UnsupportedChannel):
        await amazon_outbound.push_inventory(db, account, [InventoryUpdate("BOOK", 1)], executor=_recording_executor([]))


@pytest.mark.asyncio
async def test_fulfillment_order_uses_a_stable_idempotency_key(db, make_account):
    account = make_account(Channel.AMAZON, "A1SELLER")
    seen = []

    await amazon_outbound.create_fulfillment_order(
        db,
        account,
        displayable_order_id="SHOP-1001",
        destination_address={"name": "Pat", "addressLine1": "1 Main St", "city": "Denver", "stateOrRegion": "CO"},
        items=[FulfillmentItem("BOOK", 2)],
        executor=_recording_executor(seen),
    )

    body = json.loads(seen[0].content)
    assert body["sellerFulfillmentOrderId"] == "SHOP-1001"
    assert body["marketplaceId"] == "ATVPDKIKX0DER"
    assert body["items"][0] == {"sellerSku": "BOOK", "sellerFulfillmentOrderItemId": "SHOP-1001-BOOK", "quantity": 2}


@pytest.mark.asyncio
async def test_purchased_label_is_stored_and_revalidates_the_order(db, make_account):
    account = make_account(Channel.AMAZON, "A1SELLER", labels=True)
    order = reconciliation_pipeline.apply_order(
        db,
        account,
        normalize(
            AmazonOrder(
                {
                    "AmazonOrderId": "111-1",
                    "ShippingAddress": {"City": "Denver", "StateOrRegion": "CO", "PostalCode": "80202"},
                },
                [{"OrderItemId": "I-1", "SellerSKU": "BOOK", "QuantityOrdered": 1}],
            )
        ),
    )
    assert db.query(AuditOrderLine).one().data_quality_status == "excluded"

    seen = []
    executor = _recording_executor(
        seen,
        {
            "payload": {
                "shipmentId": "shp-1",
                "carrierId": "UPS",
                "rate": {"serviceName": "Ground", "totalCharge": {"value": 8.25, "unit": "USD"}},
                "packageDocumentDetails": [
                    {"trackingId": "1Z999", "packageDocuments": [{"format": "PDF", "downloadUrl": "https://labels/1"}]}
                ],
            }
        },
    )

    label = await amazon_outbound.purchase_shipment(
        db, account, request_token="req-1", rate_id="rate-1", order=order, executor=executor
    )

    assert (label.tracking_number, label.carrier, label.label_url) == ("1Z999", "UPS", "https://labels/1")
    assert db.query(ShippingLabel).count() == 1
    assert db.query(AuditOrderLine).one().data_quality_status == "valid"


SHIP_FROM = {
    "Name": "Warehouse",
    "AddressLine1": "1 Dock Rd",
    "City": "Denver",
    "StateOrProvinceCode": "CO",
    "PostalCode": "80202",
    "CountryCode": "US",
}


@pytest.mark.asyncio
async def test_inbound_plan_stores_each_planned_shipment(db, make_account):
    account = make_account(Channel.AMAZON, "A1SELLER")
    seen = []
    executor = _recording_executor(
        seen,
        {
            "payload": {
                "InboundShipmentPlans": [
                    {
                        "ShipmentId": "FBA15DJ9SVVD",
                        "DestinationFulfillmentCenterId": "ABE2",
                        "LabelPrepType": "SELLER_LABEL",
                        "Items": [{"SellerSKU": "BOOK", "Quantity": 10}],
                    }
                ]
            }
        },
    )

    rows = await amazon_outbound.create_inbound_plan(
        db, account, ship_from_address=SHIP_FROM, items=[InboundPlanItem("BOOK", 10)], executor=executor
    )

    assert seen[0].method == "POST"
    assert seen[0].url.path == "/fba/inbound/v0/plans"
    body = json.loads(seen[0].content)
    assert body["LabelPrepPreference"] == "SELLER_LABEL"
    assert body["InboundShipmentPlanRequestItems"] == [{"SellerSKU": "BOOK", "Condition": "NewItem", "Quantity": 10}]
    [row] = rows
    assert (row.shipment_id, row.destination_fulfillment_center_id, row.status) == ("FBA15DJ9SVVD", "ABE2", "PLANNED")
    assert row.items == [{"sellerSku": "BOOK", "quantityShipped": 10}]


@pytest.mark.asyncio
async def test_inbound_shipment_is_created_then_updated(db, make_account):
    account = make_account(Channel.AMAZON, "A1SELLER")
    seen = []
    executor = _recording_executor(seen, {"payload": {"ShipmentId": "FBA15DJ9SVVD"}})
    shipment = dict(
        shipment_id="FBA15DJ9SVVD",
        destination_fulfillment_center_id="ABE2",
        ship_from_address=SHIP_FROM,
        executor=executor,
    )

    created = await amazon_outbound.create_inbound_shipment(
        db, account, items=[InboundItem("BOOK", 10, quantity_in_case=5)], **shipment
    )
    updated = await amazon_outbound.update_inbound_shipment(
        db, account, items=[InboundItem("BOOK", 12)], shipment_status="SHIPPED", **shipment
    )

    assert [r.method for r in seen] == ["POST", "PUT"]
    assert {r.url.path for r in seen} == {"/fba/inbound/v0/shipments/FBA15DJ9SVVD"}
    body = json.loads(seen[0].content)
    assert body["MarketplaceId"] == "ATVPDKIKX0DER"
    assert body["InboundShipmentHeader"]["ShipmentStatus"] == "WORKING"
    assert body["InboundShipmentHeader"]["ShipmentName"] == "Inbound FBA15DJ9SVVD"
    assert body["InboundShipmentItems"] == [
        {"ShipmentId": "FBA15DJ9SVVD", "SellerSKU": "BOOK", "QuantityShipped": 10, "QuantityInCase": 5}
    ]
    assert created.id == updated.id
    assert db.query(InboundShipment).count() == 1
    assert updated.status == "SHIPPED"
    assert updated.items[0]["quantityShipped"] == 12


@pytest.mark.asyncio
async def test_inbound_labels_are_recorded_on_the_shipment(db, make_account):
    account = make_account(Channel.AMAZON, "A1SELLER")
    seen = []
    executor = _recording_executor(seen, {"payload": {"DownloadURL": "https://labels/inbound.pdf"}})

    row = await amazon_outbound.get_inbound_labels(
        db, account, "FBA15DJ9SVVD", number_of_packages=3, executor=executor
    )

    assert seen[0].url.path == "/fba/inbound/v0/shipments/FBA15DJ9SVVD/labels"
    assert seen[0].url.params["LabelType"] == "UNIQUE"
    assert seen[0].url.params["NumberOfPackages"] == "3"
    assert row.label_url == "https://labels/inbound.pdf"
    assert row.labels_fetched_at is not None


@pytest.mark.asyncio
async def test_inbound_actions_need_fulfillment_out(db, make_account):
    account = make_account(Channel.AMAZON, "A1SELLER", fulfillment_out=False)
    seen = []
    executor = _recording_executor(seen)

    with pytest.raises(FeatureDisabled):
        await amazon_outbound.create_inbound_plan(
            db, account, ship_from_address=SHIP_FROM, items=[InboundPlanItem("BOOK", 1)], executor=executor
        )
    with pytest.raises(FeatureDisabled):
        await amazon_outbound.create_inbound_shipment(
            db,
            account,
            shipment_id="FBA1",
            destination_fulfillment_center_id="ABE2",
            ship_from_address=SHIP_FROM,
            items=[InboundItem("BOOK", 1)],
            executor=executor,
        )
    assert seen == []
