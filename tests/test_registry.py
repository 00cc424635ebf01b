import pytest

from carrier_gateway.models.carrier import CarrierCode, CarrierConfig
from carrier_gateway.modules.shipping.carriers import CarrierFactory, create_carrier
from carrier_gateway.modules.shipping.carriers.chronopost import ChronopostCarrier
from carrier_gateway.modules.shipping.carriers.dhl import DHLExpressCarrier
from carrier_gateway.modules.shipping.carriers.fedex import FedExCarrier
from carrier_gateway.modules.shipping.carriers.ups import UPSCarrier
from carrier_gateway.modules.shipping.carriers.usps import USPSCarrier


def test_every_carrier_code_has_an_adapter():
    assert set(CarrierFactory.get_registered_carriers()) == set(CarrierCode)


@pytest.mark.parametrize("code, adapter_cls", [
    (CarrierCode.UPS, UPSCarrier),
    (CarrierCode.FEDEX, FedExCarrier),
    (CarrierCode.USPS, USPSCarrier),
    (CarrierCode.DHL, DHLExpressCarrier),
    (CarrierCode.CHRONOPOST, ChronopostCarrier),
])
def test_factory_builds_registered_adapter(code, adapter_cls):
    carrier = create_carrier(CarrierConfig(carrier_code=code, test_mode=True))

    assert isinstance(carrier, adapter_cls)
    assert carrier.carrier_code == code
    assert carrier.carrier_id == code.value


def test_custom_carrier_id_for_second_account():
    carrier = CarrierFactory.create(
        CarrierConfig(carrier_code=CarrierCode.DHL, carrier_id="dhl-export", test_mode=True)
    )

    assert carrier.carrier_id == "dhl-export"


@pytest.mark.asyncio
async def test_tracking_url_is_public_page(make_config):
    carrier = create_carrier(make_config(CarrierCode.FEDEX))

    assert carrier.tracking_url("794644790132") == "https://www.fedex.com/fedextrack/?trknbr=794644790132"
    await carrier.close()
