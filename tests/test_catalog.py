from decimal import Decimal

import pytest

from assets import AssetResolver
from errors import NotFoundError, ValidationError
from schemas import ClientAlbum, Color, Design, GeneralSettings, Material, ShippingAddress


def test_lookups_return_none_for_unknown_ids(catalog):
    assert catalog.get_material("mat-missing") is None
    assert catalog.get_size("size-missing") is None
    assert catalog.get_engraving_option("") is None
    assert catalog.get_album("650000000000000000000000") is None


def test_material_round_trip_keeps_money_and_colors(catalog):
    leather = catalog.get_material("mat-leather")
    assert leather.upcharge == Decimal("20")
    assert [c.id for c in leather.colors] == ["col-black", "col-walnut"]
    walnut = catalog.get_color(leather, "col-walnut")
    assert walnut.texture_region.zoom == 1.5
    assert walnut.color_value is None


def test_available_sizes_respect_restrictions(catalog):
    assert [s.id for s in catalog.get_available_sizes_for_material("mat-leather")] == ["size-10x10", "size-12x12"]
    assert [s.id for s in catalog.get_available_sizes_for_material("mat-linen")] == ["size-10x10"]
    # Unknown material: no restriction to apply.
    assert len(catalog.get_available_sizes_for_material("mat-missing")) == 2


def test_engraving_allowed(catalog):
    assert catalog.is_engraving_allowed("mat-leather") is True
    assert catalog.is_engraving_allowed("mat-linen") is False
    assert catalog.is_engraving_allowed("mat-missing") is False


def test_texture_region_parsed_once_from_json_string(catalog):
    color = Color(name="Oak", type="texture", texture_ref="oak.jpg", texture_region='{"x": 5, "y": 6, "zoom": 2}')
    material = Material(id="mat-oak", name="Oak", colors=[color])
    catalog.save_material(material)

    # Saving the stored value again must not change it.
    stored = catalog.get_material("mat-oak")
    catalog.save_material(stored)
    again = catalog.get_material("mat-oak")
    assert again.colors[0].texture_region.model_dump() == {"x": 5.0, "y": 6.0, "zoom": 2.0}


def test_invalid_texture_region_rejected():
    with pytest.raises(ValueError):
        Color(name="Oak", type="texture", texture_region="{not json")


def test_hex_color_normalized():
    assert Color(name="Red", color_value="FF0000").color_value == "#ff0000"
    with pytest.raises(ValueError):
        Color(name="Bad", color_value="#12345z")


def test_general_settings_default_when_unset(store):
    from catalog import Catalog

    assert Catalog(store).get_general_settings() == GeneralSettings()


def test_update_album_allows_edits_and_appends(catalog, orders, make_request, album):
    orders.add_to_cart(make_request(0))
    designs = list(album.designs)
    designs[0] = designs[0].model_copy(update={"base_price": Decimal("120")})
    designs.append(Design(name="Mini", base_price=Decimal("40")))

    updated = catalog.update_album(album.id, album.model_copy(update={"designs": designs}))
    assert len(updated.designs) == 4
    assert catalog.get_album(album.id).designs[0].base_price == Decimal("120")


def test_update_album_rejects_reordering_referenced_designs(catalog, orders, make_request, album):
    orders.add_to_cart(make_request(0))
    reordered = [album.designs[1], album.designs[0], album.designs[2]]
    with pytest.raises(ValidationError):
        catalog.update_album(album.id, album.model_copy(update={"designs": reordered}))


def test_update_album_rejects_removing_referenced_designs(catalog, orders, make_request, album):
    orders.add_to_cart(make_request(2))
    with pytest.raises(ValidationError):
        catalog.update_album(album.id, album.model_copy(update={"designs": album.designs[:2]}))


def test_update_missing_album(catalog):
    with pytest.raises(NotFoundError):
        catalog.update_album("650000000000000000000000", ClientAlbum(title="Nope"))


def test_asset_resolver():
    assets = AssetResolver("https://cdn.photostudio.com/")
    assert assets.resolve_url(None) == ""
    assert assets.resolve_url("covers/a.jpg") == "https://cdn.photostudio.com/covers/a.jpg"
    assert assets.resolve_url("covers/a.jpg", "thumbnail") == "https://cdn.photostudio.com/thumbnail/covers/a.jpg"
    assert assets.resolve_url("https://img.photostudio.com/x.png") == "https://img.photostudio.com/x.png"
    assert AssetResolver().resolve_url("covers/a.jpg") == ""


HOME = ShippingAddress(name="Jane Smith", address1=" 12 Harbor Lane ", city="Portland", state="OR", zip="97201")


def test_saved_addresses_round_trip(catalog, album):
    saved = catalog.save_address(album.id, HOME)
    assert saved.id.startswith("addr_")
    assert saved.address1 == "12 Harbor Lane"

    other = catalog.save_address(album.id, HOME.model_copy(update={"name": "Grandma"}))
    assert [a.id for a in catalog.list_addresses(album.id)] == [saved.id, other.id]

    remaining = catalog.delete_address(album.id, saved.id)
    assert [a.id for a in remaining] == [other.id]
    # Deleting an address that is already gone leaves the list alone.
    assert catalog.delete_address(album.id, saved.id) == remaining


@pytest.mark.parametrize("field", ["name", "address1", "city", "state", "zip"])
def test_saved_address_requires_fields(catalog, album, field):
    with pytest.raises(ValidationError, match="required address fields"):
        catalog.save_address(album.id, HOME.model_copy(update={field: "  "}))
    assert catalog.list_addresses(album.id) == []


def test_saved_addresses_need_an_album(catalog):
    with pytest.raises(NotFoundError):
        catalog.save_address("650000000000000000000000", HOME)
    with pytest.raises(NotFoundError):
        catalog.list_addresses("650000000000000000000000")


def test_update_album_keeps_saved_addresses(catalog, album):
    saved = catalog.save_address(album.id, HOME)
    updated = catalog.update_album(album.id, album.model_copy(update={"title": "Smith Wedding 2026"}))
    assert updated.title == "Smith Wedding 2026"
    assert [a.id for a in updated.saved_addresses] == [saved.id]
