import asyncio
import logging
from typing import List, Optional
from unittest.mock import AsyncMock

import httpx
import pytest

from carrier_gateway.core.config import Settings
from carrier_gateway.core.exceptions import (
    AllCarriersUnavailableError,
    AuthenticationError,
    CarrierNotRegisteredError,
    ParseFailure,
    RateUnavailableError,
    TransportFailure,
)
from carrier_gateway.core.http_client import RetryPolicy
from carrier_gateway.models.carrier import CarrierCode
from carrier_gateway.models.shipment import Money, TrackingStatus
from carrier_gateway.modules.shipping.carriers.base import (
    BaseCarrier,
    LabelRequest,
    LabelResult,
    RateQuote,
    TrackingEvent,
)
from carrier_gateway.services.multi_carrier_service import MultiCarrierService, quote_sort_key

from conftest import FIXED_NOW, RecordingTransport, token_response

NO_DELAY = RetryPolicy(max_retries=2, base_delay=0, jitter_factor=0)


def quote(carrier_id: str, code: str, minor: int, currency: str = "EUR", transit: Optional[int] = None) -> RateQuote:
    return RateQuote(
        carrier_id=carrier_id,
        service_code=code,
        service_name=f"{carrier_id} {code}",
        cost=Money(minor, currency),
        transit_days=transit,
    )


class StubCarrier(BaseCarrier):
    """In-memory carrier; ``outcome`` is a quote list or an exception to raise."""

    def __init__(self, carrier_id: str, outcome=None, hook=None):
        self._carrier_id = carrier_id
        self.outcome = outcome if outcome is not None else []
        self.hook = hook
        self.quote_calls = 0
        self.closed = False
        self.cancelled = False
        self.create_label = AsyncMock()
        self.track_shipment = AsyncMock(return_value=[])

    @property
    def carrier_code(self) -> CarrierCode:
        return CarrierCode.UPS

    @property
    def carrier_id(self) -> str:
        return self._carrier_id

    @property
    def carrier_name(self) -> str:
        return f"Stub {self._carrier_id}"

    def tracking_url(self, tracking_number: str) -> str:
        return f"https://stub.test/{tracking_number}"

    async def quote_rates(self, origin, destination, parcel) -> List[RateQuote]:
        self.quote_calls += 1
        try:
            if self.hook:
                await self.hook()
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return list(self.outcome)

    async def create_label(self, request: LabelRequest) -> LabelResult:  # replaced per instance
        raise NotImplementedError

    async def track_shipment(self, tracking_number: str) -> List[TrackingEvent]:  # replaced per instance
        raise NotImplementedError

    async def close(self) -> None:
        self.closed = True


@pytest.mark.asyncio
async def test_partial_failures_keep_successful_quotes(dakar, paris, parcel_2kg):
    carriers = [
        StubCarrier("alpha", [quote("alpha", "STD", 3000, transit=5), quote("alpha", "EXP", 5200, transit=2)]),
        StubCarrier("bravo", TransportFailure("bravo: timed out", carrier_code="bravo")),
        StubCarrier("charlie", RateUnavailableError("charlie: no service", carrier_code="charlie")),
        StubCarrier("delta", [quote("delta", "ECO", 2500, transit=7)]),
        StubCarrier("echo", TransportFailure("echo: HTTP 502", carrier_code="echo", status_code=502)),
    ]
    gateway = MultiCarrierService(carriers)

    result = await gateway.shop_rates(dakar, paris, parcel_2kg)

    assert [(q.carrier_id, q.service_code) for q in result.quotes] == [
        ("delta", "ECO"),
        ("alpha", "STD"),
        ("alpha", "EXP"),
    ]
    assert [f.carrier_code for f in result.failures] == ["bravo", "charlie", "echo"]
    assert result.to_dict()["failures"][1]["error"]["failure_class"] == "unavailable"
    assert all(c.quote_calls == 1 for c in carriers)


@pytest.mark.asyncio
async def test_quote_all_returns_sorted_list(dakar, paris, parcel_2kg):
    gateway = MultiCarrierService([
        StubCarrier("alpha", [quote("alpha", "EXP", 5200)]),
        StubCarrier("bravo", [quote("bravo", "STD", 1900)]),
    ])

    quotes = await gateway.quote_all(dakar, paris, parcel_2kg)

    assert [q.cost.amount_minor_units for q in quotes] == [1900, 5200]


@pytest.mark.asyncio
async def test_every_carrier_failing_raises_with_each_error(dakar, paris, parcel_2kg):
    errors = {
        "alpha": AuthenticationError("alpha: credentials rejected", carrier_code="alpha"),
        "bravo": TransportFailure("bravo: timed out", carrier_code="bravo"),
        "charlie": RateUnavailableError("charlie: no service", carrier_code="charlie"),
    }
    gateway = MultiCarrierService(StubCarrier(cid, err) for cid, err in errors.items())

    with pytest.raises(AllCarriersUnavailableError) as exc_info:
        await gateway.quote_all(dakar, paris, parcel_2kg)

    assert exc_info.value.errors == errors
    assert set(exc_info.value.details["errors"]) == {"alpha", "bravo", "charlie"}


@pytest.mark.asyncio
async def test_carriers_are_queried_concurrently(dakar, paris, parcel_2kg):
    alpha_started = asyncio.Event()
    bravo_started = asyncio.Event()

    async def alpha_hook():
        alpha_started.set()
        await bravo_started.wait()

    async def bravo_hook():
        bravo_started.set()
        await alpha_started.wait()

    gateway = MultiCarrierService([
        StubCarrier("alpha", [quote("alpha", "STD", 3000)], hook=alpha_hook),
        StubCarrier("bravo", [quote("bravo", "STD", 2000)], hook=bravo_hook),
    ])

    # Each stub waits for the other to start; sequential calls would never finish
    quotes = await gateway.quote_all(dakar, paris, parcel_2kg, timeout=5)

    assert [q.carrier_id for q in quotes] == ["bravo", "alpha"]


def test_sort_breaks_ties_by_transit_then_carrier():
    quotes = [
        quote("zulu", "A", 1500, transit=3),
        quote("alpha", "B", 1500, transit=None),
        quote("mike", "C", 1500, transit=2),
        quote("alpha", "D", 1500, transit=3),
        quote("bravo", "E", 900, transit=9),
    ]

    ordered = sorted(quotes, key=quote_sort_key)

    assert [q.service_code for q in ordered] == ["E", "C", "D", "A", "B"]


def test_sort_groups_by_currency_before_cost():
    quotes = [
        quote("alpha", "JPY-1", 1500, "JPY"),
        quote("bravo", "EUR-2", 2000, "EUR"),
        quote("charlie", "XOF-1", 15, "XOF"),
        quote("delta", "EUR-1", 900, "EUR"),
        quote("echo", "JPY-2", 1800, "JPY"),
    ]

    ordered = sorted(quotes, key=quote_sort_key)

    assert [q.service_code for q in ordered] == ["EUR-1", "EUR-2", "JPY-1", "JPY-2", "XOF-1"]


@pytest.mark.asyncio
async def test_unknown_carrier_id_fails_before_any_call(dakar, paris, parcel_2kg):
    alpha = StubCarrier("alpha", [quote("alpha", "STD", 3000)])
    gateway = MultiCarrierService([alpha])

    with pytest.raises(CarrierNotRegisteredError):
        await gateway.quote_all(dakar, paris, parcel_2kg, carrier_ids=["alpha", "nope"])

    assert alpha.quote_calls == 0


@pytest.mark.asyncio
async def test_carrier_ids_restrict_and_deduplicate(dakar, paris, parcel_2kg):
    alpha = StubCarrier("alpha", [quote("alpha", "STD", 3000)])
    bravo = StubCarrier("bravo", [quote("bravo", "STD", 2000)])
    gateway = MultiCarrierService([alpha, bravo])

    quotes = await gateway.quote_all(dakar, paris, parcel_2kg, carrier_ids=["alpha", "alpha"])

    assert [q.carrier_id for q in quotes] == ["alpha"]
    assert alpha.quote_calls == 1
    assert bravo.quote_calls == 0


@pytest.mark.asyncio
async def test_empty_carrier_ids_means_every_carrier(dakar, paris, parcel_2kg):
    alpha = StubCarrier("alpha", [quote("alpha", "STD", 3000)])
    bravo = StubCarrier("bravo", [quote("bravo", "STD", 2000)])
    gateway = MultiCarrierService([alpha, bravo])

    quotes = await gateway.quote_all(dakar, paris, parcel_2kg, carrier_ids=[])

    assert [q.carrier_id for q in quotes] == ["bravo", "alpha"]


@pytest.mark.asyncio
async def test_gateway_without_carriers_rejects_rate_shopping(dakar, paris, parcel_2kg):
    gateway = MultiCarrierService()

    with pytest.raises(CarrierNotRegisteredError) as exc_info:
        await gateway.quote_all(dakar, paris, parcel_2kg)

    assert exc_info.value.details["registered"] == []


@pytest.mark.asyncio
async def test_timeout_cancels_outstanding_calls(dakar, paris, parcel_2kg):
    async def hang():
        await asyncio.sleep(60)

    slow = StubCarrier("slow", [quote("slow", "STD", 1000)], hook=hang)
    fast = StubCarrier("fast", [quote("fast", "STD", 2000)])
    gateway = MultiCarrierService([slow, fast])

    with pytest.raises(asyncio.TimeoutError):
        await gateway.quote_all(dakar, paris, parcel_2kg, timeout=0.05)

    assert slow.cancelled is True


@pytest.mark.asyncio
async def test_unexpected_exception_is_not_swallowed(dakar, paris, parcel_2kg):
    gateway = MultiCarrierService([
        StubCarrier("alpha", [quote("alpha", "STD", 3000)]),
        StubCarrier("bravo", RuntimeError("bug")),
    ])

    with pytest.raises(RuntimeError):
        await gateway.quote_all(dakar, paris, parcel_2kg)


@pytest.mark.asyncio
async def test_opt_in_retry_recovers_transport_failure(dakar, paris, parcel_2kg):
    alpha = StubCarrier("alpha", TransportFailure("alpha: HTTP 503", carrier_code="alpha", status_code=503))

    async def recover():
        if alpha.quote_calls > 1:
            alpha.outcome = [quote("alpha", "STD", 3000)]

    alpha.hook = recover
    gateway = MultiCarrierService([alpha])

    quotes = await gateway.quote_all(dakar, paris, parcel_2kg, retry=NO_DELAY)

    assert len(quotes) == 1
    assert alpha.quote_calls == 2


@pytest.mark.asyncio
async def test_authentication_error_is_not_retried(dakar, paris, parcel_2kg):
    alpha = StubCarrier("alpha", AuthenticationError("alpha: rejected", carrier_code="alpha"))
    bravo = StubCarrier("bravo", [quote("bravo", "STD", 2000)])
    gateway = MultiCarrierService([alpha, bravo])

    await gateway.quote_all(dakar, paris, parcel_2kg, retry=NO_DELAY)

    assert alpha.quote_calls == 1


@pytest.mark.asyncio
async def test_create_label_is_single_attempt(dakar, paris, parcel_2kg):
    alpha = StubCarrier("alpha")
    alpha.create_label.side_effect = TransportFailure("alpha: timed out", carrier_code="alpha")
    gateway = MultiCarrierService([alpha])

    with pytest.raises(TransportFailure):
        await gateway.create_label("alpha", LabelRequest(dakar, paris, parcel_2kg, "STD"))

    alpha.create_label.assert_awaited_once()


@pytest.mark.asyncio
async def test_create_label_passes_result_through(dakar, paris, parcel_2kg):
    label = LabelResult(
        carrier_id="alpha", label_id="L1", tracking_number="T1", label_url="https://stub.test/l.pdf"
    )
    alpha = StubCarrier("alpha")
    alpha.create_label.return_value = label
    gateway = MultiCarrierService([alpha])
    request = LabelRequest(dakar, paris, parcel_2kg, "STD")

    assert await gateway.create_label("alpha", request) is label
    alpha.create_label.assert_awaited_once_with(request)


@pytest.mark.asyncio
async def test_track_shipment_with_retry(dakar, paris, parcel_2kg):
    event = TrackingEvent(timestamp=FIXED_NOW, description="Delivered", status=TrackingStatus.DELIVERED)
    alpha = StubCarrier("alpha")
    alpha.track_shipment.side_effect = [TransportFailure("alpha: reset", carrier_code="alpha"), [event]]
    gateway = MultiCarrierService([alpha])

    events = await gateway.track_shipment("alpha", "T1", retry=NO_DELAY)

    assert events == [event]
    assert alpha.track_shipment.await_count == 2


@pytest.mark.asyncio
async def test_track_shipment_unknown_carrier():
    gateway = MultiCarrierService([StubCarrier("alpha")])

    with pytest.raises(CarrierNotRegisteredError) as exc_info:
        await gateway.track_shipment("bravo", "T1")

    assert exc_info.value.details["registered"] == ["alpha"]


def test_duplicate_registration_rejected():
    gateway = MultiCarrierService([StubCarrier("alpha")])

    with pytest.raises(ValueError):
        gateway.register(StubCarrier("alpha"))


@pytest.mark.asyncio
async def test_context_manager_closes_carriers():
    alpha, bravo = StubCarrier("alpha"), StubCarrier("bravo")

    async with MultiCarrierService([alpha, bravo]) as gateway:
        assert gateway.carrier_ids == ["alpha", "bravo"]

    assert alpha.closed and bravo.closed


@pytest.mark.asyncio
async def test_rejected_credentials_do_not_hide_other_carriers(make_config, dakar, paris, parcel_2kg, caplog):
    recorder = RecordingTransport({
        "POST /security/v1/oauth/token": httpx.Response(
            401, json={"response": {"errors": [{"code": "250002", "message": "Invalid Authentication Information."}]}}
        ),
    })
    configs = [
        make_config(CarrierCode.UPS),
        make_config(CarrierCode.DHL, test_mode=True),
    ]

    with caplog.at_level(logging.WARNING, logger="carrier_gateway.services.multi_carrier_service"):
        async with MultiCarrierService.from_configs(configs, transport=recorder.transport) as gateway:
            result = await gateway.shop_rates(dakar, paris, parcel_2kg)

    assert [(q.carrier_id, q.service_code, q.cost) for q in result.quotes] == [
        ("dhl", "U", Money(3400, "EUR")),
        ("dhl", "P", Money(4000, "EUR")),
        ("dhl", "Y", Money(5700, "EUR")),
    ]
    assert [f.carrier_code for f in result.failures] == ["ups"]
    assert isinstance(result.failures[0].error, AuthenticationError)
    assert recorder.paths() == ["/security/v1/oauth/token"]
    assert any("ups unavailable for rate shopping (auth)" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_malformed_carrier_reply_does_not_hide_other_carriers(make_config, dakar, paris, parcel_2kg):
    rate_body = {"output": {"rateReplyDetails": [{
        "serviceType": "INTERNATIONAL_PRIORITY",
        "ratedShipmentDetails": [{"rateType": "ACCOUNT", "totalNetCharge": 71.2, "currency": "EUR"}],
        "commit": {"dateDetail": {"dayFormat": 20250312}},
    }]}}
    recorder = RecordingTransport({
        "POST /oauth/token": token_response("fx-token"),
        "POST /rate/v1/rates/quotes": httpx.Response(200, json=rate_body),
    })
    configs = [
        make_config(CarrierCode.FEDEX),
        make_config(CarrierCode.DHL, test_mode=True),
    ]

    async with MultiCarrierService.from_configs(configs, transport=recorder.transport) as gateway:
        result = await gateway.shop_rates(dakar, paris, parcel_2kg)

    assert {q.carrier_id for q in result.quotes} == {"dhl"}
    assert [f.carrier_code for f in result.failures] == ["fedex"]
    assert isinstance(result.failures[0].error, ParseFailure)
    assert result.to_dict()["failures"][0]["error"]["failure_class"] == "parse"
    assert recorder.paths() == ["/oauth/token", "/rate/v1/rates/quotes"]


def test_from_settings_builds_enabled_carriers():
    s = Settings(SHIPPING_ENABLED_CARRIERS="ups, DHL,bogus", SHIPPING_TEST_MODE=True)

    gateway = MultiCarrierService.from_settings(s)

    assert gateway.carrier_ids == ["dhl", "ups"]
    assert gateway.get_carrier("dhl").carrier_name == "DHL Express"
