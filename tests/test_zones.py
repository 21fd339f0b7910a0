import pytest

from orderflow.zones import classify_zone, metro_for, normalize_province, zone_for


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("GP", "gauteng"),
        (" wc ", "western cape"),
        ("KZN", "kwazulu-natal"),
        ("KwaZulu Natal", "kwazulu-natal"),
        ("Western  Cape", "western cape"),
        ("Limpopo", "limpopo"),
    ],
)
def test_normalize_province(raw, expected):
    assert normalize_province(raw) == expected


def test_metro_from_postal_code():
    assert metro_for("8001") == "cape town"
    assert metro_for("7700") == "cape town"
    assert metro_for("2001") == "johannesburg"
    assert metro_for("0083") == "pretoria"
    assert metro_for("4001") == "durban"


def test_metro_falls_back_to_city_name():
    assert metro_for("6530", "George") == "george"
    assert metro_for("", "  Port  Alfred ") == "port alfred"
    assert metro_for("", "") is None


def test_same_metro_is_local(cape_town, cape_town_suburb):
    assert zone_for(cape_town, cape_town_suburb) == "local"


def test_same_province_other_town_is_provincial(cape_town, george):
    assert zone_for(cape_town, george) == "provincial"


def test_different_province_is_national(cape_town, johannesburg):
    assert zone_for(cape_town, johannesburg) == "national"
    assert zone_for(johannesburg, cape_town) == "national"


def test_abbreviated_province_matches_full_name():
    assert classify_zone("GP", "Gauteng", "2001", "2196") == "local"
    assert classify_zone("gauteng", "GP", "2001", "0083") == "provincial"


def test_unknown_codes_compare_city_names():
    assert classify_zone("Free State", "FS", "9700", "9701", "Parys", "parys") == "local"
    assert classify_zone("Free State", "FS", "9700", "9585", "Parys", "Sasolburg") == "provincial"
