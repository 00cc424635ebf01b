import base64
from datetime import datetime, timezone

import httpx
import pytest

from carrier_gateway.core.exceptions import AuthenticationError, ParseFailure, RateUnavailableError
from carrier_gateway.models.carrier import CarrierCode
from carrier_gateway.models.shipment import Money, TrackingStatus
from carrier_gateway.modules.shipping.carriers import CarrierFactory
from carrier_gateway.modules.shipping.carriers.base import LabelRequest

from conftest import RecordingTransport, fixed_clock

RATES = "GET /rates"
SHIPMENTS = "POST /shipments"
TRACK = "GET /shipments/1234567890/tracking"

RATES_BODY = {"products": [
    {
        "productName": "EXPRESS WORLDWIDE",
        "productCode": "P",
        "totalPrice": [
            {"currencyType": "BILLC", "priceCurrency": "EUR", "price": 88.42},
            {"currencyType": "PULCL", "priceCurrency": "XOF", "price": 58000},
        ],
        "deliveryCapabilities": {
            "estimatedDeliveryDateAndTime": "2025-03-13T23:59:00",
            "totalTransitDays": "3",
        },
    },
    {
        "productName": "EXPRESS 12:00",
        "productCode": "Y",
        "totalPrice": [{"currencyType": "BASEC", "priceCurrency": "EUR", "price": 120}],
    },
]}


def dhl_carrier(make_config, routes, **overrides):
    recorder = RecordingTransport(routes)
    carrier = CarrierFactory.create(
        make_config(CarrierCode.DHL, **overrides), transport=recorder.transport, clock=fixed_clock
    )
    return carrier, recorder


@pytest.mark.asyncio
async def test_quote_rates_prefers_billing_currency(make_config, dakar, paris, parcel_2kg):
    carrier, recorder = dhl_carrier(make_config, {RATES: httpx.Response(200, json=RATES_BODY)})

    quotes = await carrier.quote_rates(dakar, paris, parcel_2kg)
    await carrier.close()

    worldwide, noon = quotes
    assert worldwide.cost == Money(8842, "EUR")
    assert worldwide.transit_days == 3
    assert worldwide.estimated_delivery == datetime(2025, 3, 13, 23, 59, tzinfo=timezone.utc)
    assert noon.cost == Money(12000, "EUR")
    assert noon.transit_days is None

    request = recorder.requests[0]
    assert request.headers["Authorization"] == "Basic " + base64.b64encode(b"dhl-key:dhl-secret").decode()
    params = request.url.params
    assert params["originCountryCode"] == "SN"
    assert params["destinationPostalCode"] == "75001"
    assert params["weight"] == "2.0"
    assert params["plannedShippingDate"] == "2025-03-11"
    assert params["isCustomsDeclarable"] == "true"


@pytest.mark.asyncio
async def test_no_products_is_rate_unavailable(make_config, dakar, paris, parcel_2kg):
    carrier, _ = dhl_carrier(make_config, {RATES: httpx.Response(200, json={"products": []})})

    with pytest.raises(RateUnavailableError):
        await carrier.quote_rates(dakar, paris, parcel_2kg)
    await carrier.close()


@pytest.mark.asyncio
async def test_rejected_key_is_authentication_error(make_config, dakar, paris, parcel_2kg):
    body = {"title": "Unauthorized", "detail": "Invalid credentials", "status": "401"}
    carrier, _ = dhl_carrier(make_config, {RATES: httpx.Response(401, json=body)})

    with pytest.raises(AuthenticationError) as exc_info:
        await carrier.quote_rates(dakar, paris, parcel_2kg)
    await carrier.close()

    assert "Invalid credentials" in exc_info.value.message


@pytest.mark.asyncio
async def test_missing_api_key_fails_before_network(make_config, dakar, paris, parcel_2kg):
    carrier, recorder = dhl_carrier(make_config, {}, api_key=None)

    with pytest.raises(AuthenticationError):
        await carrier.quote_rates(dakar, paris, parcel_2kg)
    await carrier.close()

    assert recorder.requests == []


@pytest.mark.asyncio
async def test_price_with_wrong_type_is_parse_failure(make_config, dakar, paris, parcel_2kg):
    body = {"products": [{"productName": "EXPRESS WORLDWIDE", "productCode": "P",
                          "totalPrice": [{"currencyType": "BILLC", "priceCurrency": "EUR", "price": "n/a"}]}]}
    carrier, _ = dhl_carrier(make_config, {RATES: httpx.Response(200, json=body)})

    with pytest.raises(ParseFailure):
        await carrier.quote_rates(dakar, paris, parcel_2kg)
    await carrier.close()


@pytest.mark.asyncio
async def test_create_label(make_config, dakar, paris, boxed_parcel):
    body = {
        "shipmentTrackingNumber": "1234567890",
        "dispatchConfirmationNumber": "PRG250310000001",
        "documents": [{"imageFormat": "PDF", "content": "JVBERi0xLjQ=", "typeCode": "label"}],
        "shipmentCharges": [{"currencyType": "BILLC", "priceCurrency": "EUR", "price": 88.42}],
    }
    carrier, recorder = dhl_carrier(make_config, {SHIPMENTS: httpx.Response(201, json=body)})

    label = await carrier.create_label(LabelRequest(dakar, paris, boxed_parcel, "P", reference="ORD-9"))
    await carrier.close()

    assert label.tracking_number == "1234567890"
    assert label.label_id == "PRG250310000001"
    assert label.label_data == "JVBERi0xLjQ="
    assert label.cost == Money(8842, "EUR")
    assert label.tracking_url == "https://www.dhl.com/en/express/tracking.html?AWB=1234567890"
    sent = recorder.json_body(0)
    assert sent["productCode"] == "P"
    assert sent["accounts"] == [{"typeCode": "shipper", "number": "123456789"}]
    assert sent["content"]["packages"][0]["dimensions"] == {"length": 30.0, "width": 20.0, "height": 10.0}
    assert sent["customerDetails"]["receiverDetails"]["postalAddress"]["cityName"] == "Paris"


@pytest.mark.asyncio
async def test_create_label_without_label_document_fails(make_config, dakar, paris, parcel_2kg):
    body = {"shipmentTrackingNumber": "1234567890", "documents": []}
    carrier, _ = dhl_carrier(make_config, {SHIPMENTS: httpx.Response(201, json=body)})

    with pytest.raises(ParseFailure):
        await carrier.create_label(LabelRequest(dakar, paris, parcel_2kg, "P"))
    await carrier.close()


@pytest.mark.asyncio
async def test_tracking_applies_gmt_offset_and_sorts(make_config):
    body = {"shipments": [{
        "shipmentTrackingNumber": "1234567890",
        "events": [
            {"date": "2025-03-12", "time": "11:02:00", "GMTOffset": "+01:00", "typeCode": "OK",
             "description": "Delivered", "serviceArea": [{"code": "PAR", "description": "Paris-FR"}]},
            {"date": "2025-03-10", "time": "16:30:00", "GMTOffset": "+00:00", "typeCode": "PU",
             "description": "Shipment picked up", "serviceArea": [{"code": "DKR", "description": "Dakar-SN"}]},
            {"date": "2025-03-11", "time": "06:15:00", "GMTOffset": "+01:00", "typeCode": "AF",
             "description": "Arrived at DHL facility", "serviceArea": [{"code": "CDG", "description": "Paris-FR"}]},
        ],
    }]}
    carrier, _ = dhl_carrier(make_config, {TRACK: httpx.Response(200, json=body)})

    events = await carrier.track_shipment("1234567890")
    await carrier.close()

    assert [e.status for e in events] == [
        TrackingStatus.PICKED_UP,
        TrackingStatus.IN_TRANSIT,
        TrackingStatus.DELIVERED,
    ]
    assert events[-1].timestamp == datetime(2025, 3, 12, 10, 2, tzinfo=timezone.utc)
    assert events[0].location == "Dakar-SN"


@pytest.mark.asyncio
async def test_tracking_without_events_is_empty(make_config):
    body = {"shipments": [{"shipmentTrackingNumber": "1234567890", "events": []}]}
    carrier, _ = dhl_carrier(make_config, {TRACK: httpx.Response(200, json=body)})

    assert await carrier.track_shipment("1234567890") == []
    await carrier.close()
