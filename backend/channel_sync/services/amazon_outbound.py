"""Writes from us to Amazon: listing quantities, FBA fulfillment orders, FBA
inbound shipments and shipping labels.

Each action checks the account's feature flag first (``inventory_out``,
``fulfillment_out``, ``labels``) and goes through the signed SP-API executor.
Inbound shipments move stock into FBA and ride on ``fulfillment_out``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from sqlalchemy.orm import Session

from channel_sync.models_sqlalchemy.models import Channel, ChannelAccount, InboundShipment, Order, ShippingLabel
from channel_sync.services import audit_projection
from channel_sync.services.amazon_spapi import SpApiExecutor, marketplace_ids_for, spapi_executor
from channel_sync.services.errors import FeatureDisabled, InvalidExternalPayload, UnsupportedChannel
from channel_sync.services.normalizers.base import parse_amount
from channel_sync.utils.dates import isoformat_z, utcnow
from channel_sync.utils.logger import logger

LISTINGS_PATH = "/listings/2021-08-01/items/{seller_id}/{sku}"
FBA_FULFILLMENT_ORDERS_PATH = "/fba/outbound/2020-07-01/fulfillmentOrders"
SHIPPING_RATES_PATH = "/shipping/v2/shipments/rates"
SHIPPING_SHIPMENTS_PATH = "/shipping/v2/shipments"
FBA_INBOUND_PLANS_PATH = "/fba/inbound/v0/plans"
FBA_INBOUND_SHIPMENT_PATH = "/fba/inbound/v0/shipments/{shipment_id}"

DEFAULT_LABEL_PREP = "SELLER_LABEL"


@dataclass
class InventoryUpdate:
    sku: str
    quantity: int
    marketplace_ids: Optional[List[str]] = None


@dataclass
class FulfillmentItem:
    seller_sku: str
    quantity: int
    seller_fulfillment_order_item_id: Optional[str] = None
    declared_value: Optional[Dict[str, Any]] = None


@dataclass
class InboundPlanItem:
    seller_sku: str
    quantity: int
    asin: Optional[str] = None
    condition: str = "NewItem"


@dataclass
class InboundItem:
    seller_sku: str
    quantity_shipped: int
    quantity_in_case: Optional[int] = None
    prep_details: Optional[List[Dict[str, Any]]] = None


def _require(account: ChannelAccount, flag: str) -> None:
    if account.channel != Channel.AMAZON:
        raise UnsupportedChannel(f"Account {account.id} is not an Amazon account")
    if not getattr(account, flag):
        raise FeatureDisabled(f"{flag} is disabled for account {account.id}", account_id=account.id)


def _payload(response: Any) -> Dict[str, Any]:
    if not isinstance(response, dict):
        return {}
    return response.get("payload") or response


async def push_inventory(
    db: Session,
    account: ChannelAccount,
    updates: List[InventoryUpdate],
    *,
    executor: Optional[SpApiExecutor] = None,
) -> int:
    """Replace ``fulfillmentAvailability`` for each SKU; returns how many were sent."""
    _require(account, "inventory_out")
    executor = executor or spapi_executor
    default_marketplaces = marketplace_ids_for(account)

    sent = 0
    for update in updates:
        sku = (update.sku or "").strip()
        if not sku:
            continue
        path = LISTINGS_PATH.format(seller_id=quote(account.external_id, safe=""), sku=quote(sku, safe=""))
        await executor.execute(
            db,
            account,
            "PATCH",
            path,
            query={"marketplaceIds": update.marketplace_ids or default_marketplaces},
            body={
                "productType": "PRODUCT",
                "patches": [
                    {
                        "op": "replace",
                        "path": "/attributes/fulfillment_availability",
                        "value": [{"fulfillment_channel_code": "DEFAULT", "quantity": int(update.quantity)}],
                    }
                ],
            },
        )
        sent += 1
    logger.info("[amazon-inventory] account=%s pushed=%d", account.id, sent)
    return sent


async def create_fulfillment_order(
    db: Session,
    account: ChannelAccount,
    *,
    displayable_order_id: str,
    destination_address: Dict[str, Any],
    items: List[FulfillmentItem],
    shipping_speed_category: str = "Standard",
    seller_fulfillment_order_id: Optional[str] = None,
    displayable_order_comment: str = "Thank you for your order",
    marketplace_id: Optional[str] = None,
    executor: Optional[SpApiExecutor] = None,
) -> Any:
    """Create an FBA multi-channel fulfillment order.

    ``sellerFulfillmentOrderId`` is Amazon's idempotency key for this call
    and defaults to the displayable order id, so a retried request cannot
    create a second fulfillment order.
    """
    _require(account, "fulfillment_out")
    if not items:
        raise InvalidExternalPayload("A fulfillment order needs at least one item")
    executor = executor or spapi_executor

    body = {
        "sellerFulfillmentOrderId": (seller_fulfillment_order_id or displayable_order_id)[:40],
        "marketplaceId": marketplace_id or marketplace_ids_for(account)[0],
        "displayableOrderId": displayable_order_id,
        "displayableOrderDate": isoformat_z(utcnow()),
        "displayableOrderComment": displayable_order_comment,
        "shippingSpeedCategory": shipping_speed_category,
        "destinationAddress": destination_address,
        "items": [
            {
                "sellerSku": item.seller_sku,
                "sellerFulfillmentOrderItemId": (
                    item.seller_fulfillment_order_item_id or f"{displayable_order_id}-{item.seller_sku}"
                ),
                "quantity": int(item.quantity),
                **({"perUnitDeclaredValue": item.declared_value} if item.declared_value else {}),
            }
            for item in items
        ],
    }
    result = await executor.execute(db, account, "POST", FBA_FULFILLMENT_ORDERS_PATH, body=body)
    logger.info(
        "[amazon-fulfillment] account=%s order=%s items=%d",
        account.id, displayable_order_id, len(items),
    )
    return result


async def get_shipping_rates(
    db: Session,
    account: ChannelAccount,
    *,
    ship_from: Dict[str, Any],
    ship_to: Dict[str, Any],
    packages: List[Dict[str, Any]],
    channel_details: Optional[Dict[str, Any]] = None,
    executor: Optional[SpApiExecutor] = None,
) -> Dict[str, Any]:
    _require(account, "labels")
    executor = executor or spapi_executor
    body: Dict[str, Any] = {"shipFrom": ship_from, "shipTo": ship_to, "packages": packages}
    if channel_details:
        body["channelDetails"] = channel_details
    result = _payload(await executor.execute(db, account, "POST", SHIPPING_RATES_PATH, body=body))
    logger.info(
        "[amazon-shipping] account=%s rates=%d", account.id, len(result.get("rates") or [])
    )
    return result


def _first_document(payload: Dict[str, Any]) -> Dict[str, Any]:
    for package in payload.get("packageDocumentDetails") or []:
        for document in package.get("packageDocuments") or []:
            return {**document, "trackingId": package.get("trackingId")}
    documents = payload.get("documents") or []
    return documents[0] if documents else {}


def _store_label(
    db: Session,
    account: ChannelAccount,
    shipment_id: str,
    payload: Dict[str, Any],
    *,
    order: Optional[Order],
    label_format: Optional[str],
) -> ShippingLabel:
    document = _first_document(payload)
    label = (
        db.query(ShippingLabel)
        .filter(ShippingLabel.channel_account_id == account.id, ShippingLabel.shipment_id == shipment_id)
        .first()
    )
    if label is None:
        label = ShippingLabel(channel_account_id=account.id, provider="amazon-shipping", shipment_id=shipment_id)
        db.add(label)

    rate = payload.get("rate") or {}
    carrier = payload.get("carrierId") or rate.get("carrierId")
    total = rate.get("totalCharge") or payload.get("totalCharge") or {}
    label.order_id = order.id if order is not None else label.order_id
    label.carrier = carrier or label.carrier
    label.service = rate.get("serviceName") or payload.get("serviceName") or label.service
    label.tracking_number = document.get("trackingId") or payload.get("trackingId") or label.tracking_number
    label.label_url = document.get("downloadUrl") or document.get("downloadURL") or label.label_url
    label.label_format = document.get("format") or label_format or label.label_format
    label.cost = parse_amount(total.get("value")) if isinstance(total, dict) else None
    label.currency = total.get("unit") if isinstance(total, dict) else None
    label.raw = payload
    return label


async def purchase_shipment(
    db: Session,
    account: ChannelAccount,
    *,
    request_token: str,
    rate_id: str,
    order: Optional[Order] = None,
    label_format: str = "PDF",
    label_size: Optional[Dict[str, Any]] = None,
    executor: Optional[SpApiExecutor] = None,
) -> ShippingLabel:
    """Buy the chosen rate and persist the label row.

    The label document itself is kept as Amazon returns it (URL or blob in
    ``raw``). When the label belongs to one of our orders, that order's audit
    rows are rebuilt so the verdict sees the label.
    """
    _require(account, "labels")
    executor = executor or spapi_executor
    document_spec: Dict[str, Any] = {"format": label_format, "needFileJoining": False}
    if label_size:
        document_spec["size"] = label_size
    body = {
        "requestToken": request_token,
        "rateId": rate_id,
        "requestedDocumentSpecification": document_spec,
    }
    payload = _payload(await executor.execute(db, account, "POST", SHIPPING_SHIPMENTS_PATH, body=body))
    shipment_id = payload.get("shipmentId")
    if not shipment_id:
        raise InvalidExternalPayload("Amazon shipment purchase returned no shipmentId")

    label = _store_label(db, account, shipment_id, payload, order=order, label_format=label_format)
    db.flush()
    if order is not None:
        audit_projection.rebuild_for_order(db, account, order)
    db.commit()
    db.refresh(label)
    logger.info(
        "[amazon-shipping] account=%s shipment=%s order=%s",
        account.id, shipment_id, order.external_order_id if order is not None else None,
    )
    return label


async def fetch_label_documents(
    db: Session,
    account: ChannelAccount,
    shipment_id: str,
    *,
    label_format: str = "PDF",
    executor: Optional[SpApiExecutor] = None,
) -> ShippingLabel:
    _require(account, "labels")
    executor = executor or spapi_executor
    payload = _payload(
        await executor.execute(
            db,
            account,
            "GET",
            f"{SHIPPING_SHIPMENTS_PATH}/{quote(shipment_id, safe='')}/documents",
            query={"packageClientReferenceId": shipment_id, "format": label_format},
        )
    )
    label = _store_label(db, account, shipment_id, payload, order=None, label_format=label_format)
    db.commit()
    db.refresh(label)
    return label


def _inbound_row(db: Session, account: ChannelAccount, shipment_id: str) -> InboundShipment:
    row = (
        db.query(InboundShipment)
        .filter(InboundShipment.channel_account_id == account.id, InboundShipment.shipment_id == shipment_id)
        .first()
    )
    if row is None:
        row = InboundShipment(
            user_id=account.user_id,
            channel_account_id=account.id,
            channel=account.channel,
            shipment_id=shipment_id,
        )
        db.add(row)
    return row


def _inbound_items(shipment_id: str, items: List[InboundItem]) -> List[Dict[str, Any]]:
    return [
        {
            "ShipmentId": shipment_id,
            "SellerSKU": item.seller_sku,
            "QuantityShipped": int(item.quantity_shipped),
            **({"QuantityInCase": int(item.quantity_in_case)} if item.quantity_in_case else {}),
            **({"PrepDetailsList": item.prep_details} if item.prep_details else {}),
        }
        for item in items
    ]


def _stored_items(items: List[InboundItem]) -> List[Dict[str, Any]]:
    return [
        {
            "sellerSku": item.seller_sku,
            "quantityShipped": int(item.quantity_shipped),
            "quantityInCase": item.quantity_in_case,
            "prepDetails": item.prep_details,
        }
        for item in items
    ]


async def create_inbound_plan(
    db: Session,
    account: ChannelAccount,
    *,
    ship_from_address: Dict[str, Any],
    items: List[InboundPlanItem],
    label_prep_preference: str = DEFAULT_LABEL_PREP,
    ship_to_country_code: Optional[str] = None,
    executor: Optional[SpApiExecutor] = None,
) -> List[InboundShipment]:
    """Ask Amazon how to split ``items`` across fulfillment centers.

    Every shipment in the returned plan is stored with status ``PLANNED`` so
    it can be created later with :func:`create_inbound_shipment`.
    """
    _require(account, "fulfillment_out")
    if not items:
        raise InvalidExternalPayload("An inbound plan needs at least one item")
    executor = executor or spapi_executor

    body: Dict[str, Any] = {
        "ShipFromAddress": ship_from_address,
        "LabelPrepPreference": label_prep_preference,
        "InboundShipmentPlanRequestItems": [
            {
                "SellerSKU": item.seller_sku,
                "Condition": item.condition,
                "Quantity": int(item.quantity),
                **({"ASIN": item.asin} if item.asin else {}),
            }
            for item in items
        ],
    }
    if ship_to_country_code:
        body["ShipToCountryCode"] = ship_to_country_code

    payload = _payload(await executor.execute(db, account, "POST", FBA_INBOUND_PLANS_PATH, body=body))
    plans = payload.get("InboundShipmentPlans") or []

    rows: List[InboundShipment] = []
    for plan in plans:
        shipment_id = plan.get("ShipmentId")
        if not shipment_id:
            continue
        row = _inbound_row(db, account, shipment_id)
        row.marketplace_id = marketplace_ids_for(account)[0]
        row.destination_fulfillment_center_id = plan.get("DestinationFulfillmentCenterId")
        row.label_prep_preference = plan.get("LabelPrepType") or label_prep_preference
        row.status = row.status or "PLANNED"
        row.items = [
            {"sellerSku": i.get("SellerSKU"), "quantityShipped": i.get("Quantity")}
            for i in plan.get("Items") or []
        ]
        row.raw_plan = plan
        rows.append(row)
    db.commit()
    logger.info("[amazon-inbound] account=%s plan shipments=%d", account.id, len(rows))
    return rows


async def create_inbound_shipment(
    db: Session,
    account: ChannelAccount,
    *,
    shipment_id: str,
    destination_fulfillment_center_id: str,
    ship_from_address: Dict[str, Any],
    items: List[InboundItem],
    shipment_name: Optional[str] = None,
    label_prep_preference: str = DEFAULT_LABEL_PREP,
    shipment_status: str = "WORKING",
    executor: Optional[SpApiExecutor] = None,
) -> InboundShipment:
    """Create (POST) the shipment Amazon planned under ``shipment_id``."""
    return await _write_inbound_shipment(
        db, account, "POST",
        shipment_id=shipment_id,
        destination_fulfillment_center_id=destination_fulfillment_center_id,
        ship_from_address=ship_from_address,
        items=items,
        shipment_name=shipment_name,
        label_prep_preference=label_prep_preference,
        shipment_status=shipment_status,
        executor=executor,
    )


async def update_inbound_shipment(
    db: Session,
    account: ChannelAccount,
    *,
    shipment_id: str,
    destination_fulfillment_center_id: str,
    ship_from_address: Dict[str, Any],
    items: List[InboundItem],
    shipment_name: Optional[str] = None,
    label_prep_preference: str = DEFAULT_LABEL_PREP,
    shipment_status: str = "WORKING",
    executor: Optional[SpApiExecutor] = None,
) -> InboundShipment:
    """Replace an existing shipment's header and items (PUT); ``SHIPPED`` or ``CANCELLED`` close it."""
    return await _write_inbound_shipment(
        db, account, "PUT",
        shipment_id=shipment_id,
        destination_fulfillment_center_id=destination_fulfillment_center_id,
        ship_from_address=ship_from_address,
        items=items,
        shipment_name=shipment_name,
        label_prep_preference=label_prep_preference,
        shipment_status=shipment_status,
        executor=executor,
    )


async def _write_inbound_shipment(
    db: Session,
    account: ChannelAccount,
    method: str,
    *,
    shipment_id: str,
    destination_fulfillment_center_id: str,
    ship_from_address: Dict[str, Any],
    items: List[InboundItem],
    shipment_name: Optional[str],
    label_prep_preference: str,
    shipment_status: str,
    executor: Optional[SpApiExecutor],
) -> InboundShipment:
    _require(account, "fulfillment_out")
    if not shipment_id:
        raise InvalidExternalPayload("An inbound shipment needs the ShipmentId from its plan")
    if not items:
        raise InvalidExternalPayload("An inbound shipment needs at least one item")
    executor = executor or spapi_executor
    marketplace_id = marketplace_ids_for(account)[0]
    name = shipment_name or f"Inbound {shipment_id}"

    body = {
        "MarketplaceId": marketplace_id,
        "InboundShipmentHeader": {
            "ShipmentName": name,
            "ShipFromAddress": ship_from_address,
            "DestinationFulfillmentCenterId": destination_fulfillment_center_id,
            "LabelPrepPreference": label_prep_preference,
            "ShipmentStatus": shipment_status,
        },
        "InboundShipmentItems": _inbound_items(shipment_id, items),
    }
    path = FBA_INBOUND_SHIPMENT_PATH.format(shipment_id=quote(shipment_id, safe=""))
    result = await executor.execute(db, account, method, path, body=body)

    row = _inbound_row(db, account, shipment_id)
    row.marketplace_id = marketplace_id
    row.destination_fulfillment_center_id = destination_fulfillment_center_id
    row.label_prep_preference = label_prep_preference
    row.shipment_name = name
    row.status = shipment_status
    row.items = _stored_items(items)
    row.raw_shipment = result
    db.commit()
    db.refresh(row)
    logger.info(
        "[amazon-inbound] account=%s %s shipment=%s status=%s items=%d",
        account.id, method, shipment_id, shipment_status, len(items),
    )
    return row


async def get_inbound_labels(
    db: Session,
    account: ChannelAccount,
    shipment_id: str,
    *,
    page_type: str = "PackageLabel_Letter_2",
    label_type: str = "UNIQUE",
    number_of_packages: Optional[int] = None,
    executor: Optional[SpApiExecutor] = None,
) -> InboundShipment:
    """Fetch box labels for an inbound shipment and remember where they are."""
    _require(account, "fulfillment_out")
    executor = executor or spapi_executor
    query: Dict[str, Any] = {"PageType": page_type, "LabelType": label_type}
    if number_of_packages:
        query["NumberOfPackages"] = int(number_of_packages)

    path = FBA_INBOUND_SHIPMENT_PATH.format(shipment_id=quote(shipment_id, safe="")) + "/labels"
    payload = _payload(await executor.execute(db, account, "GET", path, query=query))
    document = payload.get("TransportDocument") or {}

    row = _inbound_row(db, account, shipment_id)
    row.label_url = payload.get("DownloadURL") or document.get("PdfDocument") or row.label_url
    row.label_page_type = page_type
    row.label_type = label_type
    row.labels_fetched_at = utcnow()
    db.commit()
    db.refresh(row)
    return row
