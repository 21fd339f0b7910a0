import logging
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Protocol

import httpx

from .models import Address, CarrierQuote, Parcel

logger = logging.getLogger(__name__)


class CourierClient(Protocol):
    carrier_id: str
    timeout: float

    async def quote(self, origin: Address, destination: Address, parcel: Parcel) -> List[CarrierQuote]:
        ...


def rands_to_cents(value: Any) -> Optional[int]:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def parse_days(value: Any, default: int = 2) -> int:
    """Carriers report transit as 2, "2" or "2-3"; keep the lower bound."""
    if value is None:
        return default
    text = str(value).strip().split("-")[0].strip()
    try:
        return max(int(float(text)), 0)
    except ValueError:
        return default


def parcel_size(parcel: Parcel) -> int:
    volume = parcel.length_cm * parcel.width_cm * parcel.height_cm
    if parcel.weight_kg <= 1 and volume <= 10000:
        return 1
    if parcel.weight_kg <= 5 and volume <= 50000:
        return 2
    if parcel.weight_kg <= 10 and volume <= 100000:
        return 3
    return 4


class HttpCourierClient(ABC):
    carrier_id = "courier"

    def __init__(self, url: str, api_key: str, timeout: float, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    @abstractmethod
    def build_payload(self, origin: Address, destination: Address, parcel: Parcel) -> Dict[str, Any]:
        ...

    @abstractmethod
    def normalize(self, body: Any) -> List[CarrierQuote]:
        ...

    async def quote(self, origin: Address, destination: Address, parcel: Parcel) -> List[CarrierQuote]:
        payload = self.build_payload(origin, destination, parcel)
        async with httpx.AsyncClient(transport=self._transport) as client:
            r = await client.post(
                self.url,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}", "Accept": "application/json"},
                timeout=self.timeout,
            )
            r.raise_for_status()
            return self.normalize(r.json())


class CourierGuyClient(HttpCourierClient):
    carrier_id = "courier-guy"

    def build_payload(self, origin, destination, parcel):
        def address(a: Address) -> Dict[str, Any]:
            return {
                "type": "residential",
                "street_address": a.street,
                "local_area": a.suburb or "",
                "city": a.city,
                "zone": a.province,
                "country": "ZA",
                "code": a.postal_code,
            }

        return {
            "collection_address": address(origin),
            "delivery_address": address(destination),
            "parcels": [
                {
                    "parcel_size": parcel_size(parcel),
                    "submitted_length_cm": parcel.length_cm,
                    "submitted_width_cm": parcel.width_cm,
                    "submitted_height_cm": parcel.height_cm,
                    "submitted_weight_kg": parcel.weight_kg,
                }
            ],
            "declared_value": parcel.value_cents / 100,
        }

    def normalize(self, body):
        rows = body.get("data", body) if isinstance(body, dict) else body
        quotes = []
        for row in rows or []:
            price = rands_to_cents(row.get("total_cost", row.get("cost")))
            if price is None:
                continue
            service = row.get("service_type") or row.get("service_level") or "standard"
            quotes.append(
                CarrierQuote(
                    service_name=f"Courier Guy - {str(service).title()}",
                    price_cents=price,
                    estimated_days=parse_days(row.get("estimated_delivery_days")),
                    description=row.get("description") or row.get("collection_time") or "",
                )
            )
        return quotes


class FastwayClient(HttpCourierClient):
    carrier_id = "fastway"

    def build_payload(self, origin, destination, parcel):
        return {
            "pickup_country": "ZA",
            "pickup_postcode": origin.postal_code,
            "delivery_country": "ZA",
            "delivery_postcode": destination.postal_code,
            "weight_kg": parcel.weight_kg,
            "length_cm": parcel.length_cm,
            "width_cm": parcel.width_cm,
            "height_cm": parcel.height_cm,
            "declared_value": parcel.value_cents / 100,
        }

    def normalize(self, body):
        if isinstance(body, dict):
            rows = body.get("quotes") or body.get("data") or []
        else:
            rows = body
        quotes = []
        for row in rows or []:
            price = rands_to_cents(row.get("price", row.get("total_cost")))
            if price is None:
                continue
            service = row.get("service_name") or row.get("service") or "standard"
            quotes.append(
                CarrierQuote(
                    service_name=f"Fastway - {str(service).title()}",
                    price_cents=price,
                    estimated_days=parse_days(row.get("transit_days")),
                    description=row.get("description") or "",
                )
            )
        return quotes
