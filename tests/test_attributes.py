import pytest

from catalog_sync.erp.erp_attributes import (
    SIZE_SENTINEL,
    color_from_name,
    color_hex_for,
    derive_color_hex,
    extract_attributes,
    parse_attribute_pairs,
    size_from_name,
)


def test_pairs_from_name():
    assert parse_attribute_pairs("Cor: Preto; Tamanho: 38") == [("Cor", "Preto"), ("Tamanho", "38")]
    assert parse_attribute_pairs("Sandália Laura") == []


@pytest.mark.parametrize("name,size", [
    ("Tênis Runner Tamanho 42", "42"),
    ("Bota Couro 37", "37"),
    ("Chinelo (12345) 39", "39"),       # parenthesised ids are not sizes
    ("Camiseta Básica GG", "GG"),
    ("Camiseta Básica m", None),        # lower-case single letters are ignored
    ("Caneca 350ml", None),
    ("Meia 10 pares", None),            # outside 16..48
])
def test_size_from_name(name, size):
    assert size_from_name(name) == size


def test_longest_color_keyword_wins():
    assert color_from_name("Blusa Azul Marinho") == "Azul Marinho"
    assert color_from_name("Blusa Azul") == "Azul"
    assert color_from_name("Blusa Lisa") is None


def test_color_hex_table_and_derived():
    assert color_hex_for("Preto") == "#000000"
    assert color_hex_for("BRANCO") == "#FFFFFF"
    derived = color_hex_for("Pêssego")
    assert derived == derive_color_hex("pessego")
    channels = [int(derived[i:i + 2], 16) for i in (1, 3, 5)]
    assert all(64 <= c <= 191 for c in channels)


def test_structured_beats_name():
    attrs = extract_attributes("Sandália Laura Preto 37", [("Cor", "Branco"), ("Tamanho", "38")])
    assert attrs.color == "Branco"
    assert attrs.color_hex == "#FFFFFF"
    assert attrs.size == "38"


def test_resolution_is_per_attribute():
    # size from structured data, color still inferred from the name
    attrs = extract_attributes("Sandália Laura Vermelho", {"Tamanho": "36"})
    assert attrs.size == "36"
    assert attrs.color == "Vermelho"


def test_defaults_and_extras():
    attrs = extract_attributes("Bolsa Tiracolo", [("Material", "Couro")])
    assert attrs.size == SIZE_SENTINEL
    assert attrs.color is None and attrs.color_hex is None
    assert attrs.extras == {"Material": "Couro"}


def test_extraction_is_deterministic():
    name = "Tênis Max Cor: Azul Marinho; Tamanho: 41"
    assert extract_attributes(name) == extract_attributes(name)
    assert extract_attributes(name).as_dict() == {
        "size": "41", "color": "Azul Marinho", "colorHex": "#000080", "extras": {},
    }
