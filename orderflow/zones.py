"""
Delivery zone classification.

Every price in the system (live carrier quotes, the fallback table and cost
reporting) is labelled with the zone computed here, so there is exactly one
place that decides whether a route is local, provincial or national.
"""
from typing import Optional

from .models import Address, Zone

PROVINCE_ALIASES = {
    "gp": "gauteng",
    "wc": "western cape",
    "kzn": "kwazulu-natal",
    "kwazulu natal": "kwazulu-natal",
    "ec": "eastern cape",
    "fs": "free state",
    "lp": "limpopo",
    "mp": "mpumalanga",
    "nw": "north west",
    "nc": "northern cape",
}

# Inclusive 4-digit postal code ranges of the metros we treat as one local area.
METRO_POSTAL_RANGES = (
    ("cape town", 7000, 8099),
    ("johannesburg", 1400, 2199),
    ("pretoria", 1, 199),
    ("durban", 3600, 4099),
    ("gqeberha", 6000, 6099),
    ("east london", 5200, 5299),
    ("bloemfontein", 9300, 9399),
)


def normalize_province(province: str) -> str:
    key = " ".join(province.strip().lower().split())
    return PROVINCE_ALIASES.get(key, key)


def metro_for(postal_code: str, city: str = "") -> Optional[str]:
    code = postal_code.strip()
    if code.isdigit():
        number = int(code)
        for name, low, high in METRO_POSTAL_RANGES:
            if low <= number <= high:
                return name
    city = " ".join(city.strip().lower().split())
    return city or None


def classify_zone(
    origin_province: str,
    destination_province: str,
    origin_postal_code: str,
    destination_postal_code: str,
    origin_city: str = "",
    destination_city: str = "",
) -> Zone:
    if normalize_province(origin_province) != normalize_province(destination_province):
        return "national"

    origin_metro = metro_for(origin_postal_code, origin_city)
    destination_metro = metro_for(destination_postal_code, destination_city)
    if origin_metro and origin_metro == destination_metro:
        return "local"
    return "provincial"


def zone_for(origin: Address, destination: Address) -> Zone:
    return classify_zone(
        origin.province,
        destination.province,
        origin.postal_code,
        destination.postal_code,
        origin.city,
        destination.city,
    )
