from catalog_sync.erp.erp_grouping import (
    classify_listing,
    parse_parent_suffix,
    split_attribute_suffix,
    variation_external_ids,
)
from catalog_sync.erp.erp_models import ExternalListingItem, ListingFormat


def _items(*rows):
    return [ExternalListingItem.from_api(r) for r in rows]


def test_parse_parent_suffix():
    assert parse_parent_suffix("Sandália Laura (501) Cor: Preto") == ("Sandália Laura", 501, "Cor: Preto")
    assert parse_parent_suffix("Tênis Max") is None


def test_split_attribute_suffix():
    assert split_attribute_suffix("Camiseta Basic Cor: Azul") == ("Camiseta Basic", "Cor: Azul")
    assert split_attribute_suffix("Cor: Azul") is None
    assert split_attribute_suffix("Decoração Sala") is None


def test_explicit_parent_and_standalone():
    groups = classify_listing(_items(
        {"id": 5011, "nome": "Sandália Laura (501) Cor: Preto"},
        {"id": 5012, "nome": "Sandália Laura (501) Cor: Branco"},
        {"id": 700, "nome": "Tênis Max", "formato": "S"},
    ))
    assert len(groups) == 2

    sandal, tenis = groups
    assert sandal.parent_external_id == 501
    assert sandal.base_name == "Sandália Laura"
    assert [v.external_id for v in sandal.variation_items] == [5011, 5012]
    assert [v.attribute_suffix for v in sandal.variation_items] == ["Cor: Preto", "Cor: Branco"]

    assert tenis.parent_external_id == 700
    assert tenis.variation_items == []
    assert tenis.is_simple


def test_listed_parent_attaches_to_its_children():
    groups = classify_listing(_items(
        {"id": 5011, "nome": "Sandália Laura (501) Cor: Preto"},
        {"id": 501, "nome": "Sandália Laura", "formato": "V"},
    ))
    assert len(groups) == 1
    assert groups[0].parent_list_item.external_id == 501
    assert not groups[0].is_simple


def test_same_name_cluster():
    groups = classify_listing(_items(
        {"id": 10, "nome": "Camiseta Basic Cor: Azul"},
        {"id": 11, "nome": "camiseta basic Cor: Verde"},
        {"id": 12, "nome": "Camiseta Basic"},
        {"id": 13, "nome": "Bermuda"},
    ))
    assert len(groups) == 2
    shirt = groups[0]
    assert shirt.parent_external_id == 12
    assert [v.external_id for v in shirt.variation_items] == [10, 11]


def test_cluster_without_parent_uses_first_child_id():
    groups = classify_listing(_items(
        {"id": 20, "nome": "Vestido Flor Tamanho: P"},
        {"id": 21, "nome": "Vestido Flor Tamanho: M"},
    ))
    assert len(groups) == 1
    assert groups[0].parent_external_id == 20
    assert groups[0].parent_list_item is None
    assert groups[0].display_name == "Vestido Flor"


def test_every_item_in_exactly_one_group():
    items = _items(
        {"id": 1, "nome": "A (100) Cor: Preto"},
        {"id": 2, "nome": "A (100) Cor: Branco"},
        {"id": 100, "nome": "A"},
        {"id": 3, "nome": "B Cor: Azul"},
        {"id": 4, "nome": "B Cor: Rosa"},
        {"id": 5, "nome": "C"},
        {"id": 5, "nome": "C duplicated id"},
    )
    groups = classify_listing(items)
    members = [m for g in groups for m in g.member_ids()]
    assert sorted(members) == [1, 2, 3, 4, 5, 100]
    assert variation_external_ids(groups) == {1, 2, 3, 4}


def test_listing_format_mapping():
    item = ExternalListingItem.from_api({"id": 1, "nome": "X", "formato": "V", "codigo": 123})
    assert item.format == ListingFormat.VARIATION
    assert item.sku == "123"
