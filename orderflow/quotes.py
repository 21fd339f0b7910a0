import asyncio
import logging
from typing import Dict, List, Sequence, Tuple

from .couriers import CourierClient
from .errors import MissingAddressFields
from .models import Address, CarrierQuote, DeliveryQuote, Parcel, Zone
from .zones import zone_for

logger = logging.getLogger(__name__)

# zone -> ((carrier_id, service_name, price_cents, estimated_days, description), ...)
FALLBACK_TABLE: Dict[str, Tuple[Tuple[str, str, int, int, str], ...]] = {
    "local": (
        ("courier-guy", "Standard", 8500, 1, "Same city delivery within 1 business day"),
        ("fastway", "Express", 9500, 1, "Same city express delivery"),
    ),
    "provincial": (
        ("courier-guy", "Standard", 12000, 2, "Within province delivery, 2-3 business days"),
        ("fastway", "Express", 13500, 2, "Provincial express delivery"),
    ),
    "national": (
        ("courier-guy", "Standard", 18000, 3, "Cross-province delivery, 3-5 business days"),
        ("fastway", "Express", 20000, 3, "National express delivery"),
    ),
}


def fallback_quotes(zone: Zone) -> List[DeliveryQuote]:
    return [
        DeliveryQuote(
            carrier_id=carrier_id,
            service_name=service_name,
            price_cents=price,
            estimated_days=days,
            zone=zone,
            source="fallback",
            description=description,
        )
        for carrier_id, service_name, price, days, description in FALLBACK_TABLE[zone]
    ]


def require_resolved(address: Address, which: str):
    missing = address.missing_fields()
    if missing:
        raise MissingAddressFields(which, missing)


class DeliveryQuoteAggregator:
    def __init__(self, carriers: Sequence[CourierClient]):
        self.carriers = list(carriers)

    async def get_quotes(self, origin: Address, destination: Address, parcel: Parcel) -> List[DeliveryQuote]:
        require_resolved(origin, "pickup")
        require_resolved(destination, "delivery")

        zone = zone_for(origin, destination)
        results = await asyncio.gather(
            *(self._ask(carrier, origin, destination, parcel) for carrier in self.carriers)
        )

        quotes = []
        for carrier, offers in zip(self.carriers, results):
            for offer in offers:
                if not offer.service_name.strip() or offer.price_cents <= 0:
                    continue
                quotes.append(
                    DeliveryQuote(
                        carrier_id=carrier.carrier_id,
                        service_name=offer.service_name,
                        price_cents=offer.price_cents,
                        estimated_days=offer.estimated_days,
                        zone=zone,
                        source="live",
                        description=offer.description,
                    )
                )

        if not quotes:
            logger.warning(
                f"No live delivery quotes for {origin.city} -> {destination.city} ({zone}); using fallback pricing"
            )
            return fallback_quotes(zone)

        quotes.sort(key=lambda q: (q.price_cents, q.estimated_days))
        return quotes

    async def _ask(self, carrier: CourierClient, origin, destination, parcel) -> List[CarrierQuote]:
        # One carrier failing or hanging must never abort the others.
        try:
            return await asyncio.wait_for(carrier.quote(origin, destination, parcel), timeout=carrier.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Carrier {carrier.carrier_id} timed out after {carrier.timeout}s")
        except Exception as e:
            logger.warning(f"Carrier {carrier.carrier_id} quote failed: {e!r}")
        return []
