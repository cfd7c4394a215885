import math

from tabletop.realtime.tokens import DEFAULT_TOKEN_NAME, Token, clamp_to_grid, coerce_int, normalize_token


def test_normalize_token_keeps_well_formed_fields() -> None:
    token = normalize_token(
        {"id": "t1", "type": "monster", "x": 4, "y": 7, "name": "Goblin", "image": "gob.png", "stats": {"hp": 7}}
    )

    assert token == Token(id="t1", type="monster", x=4, y=7, name="Goblin", image="gob.png", stats={"hp": 7})
    assert token.to_payload() == {
        "id": "t1",
        "type": "monster",
        "x": 4,
        "y": 7,
        "name": "Goblin",
        "image": "gob.png",
        "stats": {"hp": 7},
    }


def test_normalize_token_fills_defaults_for_missing_fields() -> None:
    token = normalize_token({})

    assert token.id
    assert token.type == "pc"
    assert (token.x, token.y) == (0, 0)
    assert token.name == DEFAULT_TOKEN_NAME
    assert token.image == ""
    assert token.stats == {}


def test_normalize_token_never_raises_on_garbage() -> None:
    for raw in (None, 42, "token", [], {"id": True, "type": "dragon", "x": "left", "y": None, "name": "   "}):
        token = normalize_token(raw)
        assert isinstance(token, Token)
        assert token.type in ("pc", "monster")
        assert token.name == DEFAULT_TOKEN_NAME


def test_normalize_token_coerces_numeric_strings_and_clamps_to_grid() -> None:
    token = normalize_token({"id": "t1", "x": "3.9", "y": "40"}, grid_size=20)

    assert (token.x, token.y) == (3, 19)


def test_generated_ids_are_unique() -> None:
    assert normalize_token({}).id != normalize_token({}).id


def test_coerce_int_rejects_bools_and_non_finite_values() -> None:
    assert coerce_int(True, default=5) == 5
    assert coerce_int(math.nan, default=1) == 1
    assert coerce_int("inf") == 0
    assert coerce_int(2.7) == 2
    assert coerce_int(" 8 ") == 8
    assert coerce_int(object(), default=-1) == -1


def test_clamp_to_grid_bounds_both_ends() -> None:
    assert clamp_to_grid(-4, 10) == 0
    assert clamp_to_grid(10, 10) == 9
    assert clamp_to_grid(5, 10) == 5
