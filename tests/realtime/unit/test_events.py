from tabletop.realtime.events import (
    AddChatLineEvent,
    MoveTokenEvent,
    RowChange,
    UpdateBattleEvent,
    UpdateMapEvent,
    UpdateParticipantsEvent,
    decode_event,
    decode_row_change,
    encode_event,
)


def test_decode_each_event_kind() -> None:
    assert decode_event("move-token", {"tokenId": "t1", "x": 2, "y": 3}) == MoveTokenEvent(token_id="t1", x=2, y=3)
    assert decode_event("update-map", {"map": {"grid_size": 10}}) == UpdateMapEvent(map={"grid_size": 10})
    assert decode_event("add-chat-line", {"text": "hi"}) == AddChatLineEvent(text="hi")
    assert decode_event("update-battle", {"battle": {"id": "b1"}}) == UpdateBattleEvent(battle={"id": "b1"})
    assert decode_event("update-participants", {"participants": ["u1"]}) == UpdateParticipantsEvent(
        participants=["u1"]
    )


def test_decode_rejects_unknown_kinds_and_malformed_payloads() -> None:
    assert decode_event("explode", {"text": "boom"}) is None
    assert decode_event(None, {}) is None
    assert decode_event("add-chat-line", "hi") is None
    assert decode_event("add-chat-line", {}) is None
    assert decode_event("move-token", {"tokenId": "", "x": 1, "y": 1}) is None
    assert decode_event("move-token", {"tokenId": "t1", "x": "left", "y": 1}) is None
    assert decode_event("update-participants", {"participants": "u1"}) is None


def test_payload_kind_cannot_override_the_frame_kind() -> None:
    event = decode_event("add-chat-line", {"kind": "move-token", "text": "hi"})

    assert event == AddChatLineEvent(text="hi")


def test_encode_move_token_uses_wire_field_names() -> None:
    assert encode_event(MoveTokenEvent(token_id="t1", x=2, y=3)) == ("move-token", {"tokenId": "t1", "x": 2, "y": 3})
    assert encode_event(AddChatLineEvent(text="Ayla moved to C4")) == ("add-chat-line", {"text": "Ayla moved to C4"})


def test_decode_row_change() -> None:
    change = decode_row_change({"table": "battles", "op": "UPDATE", "record": {"id": "b1"}})

    assert change == RowChange(table="battles", op="UPDATE", record={"id": "b1"})
    assert decode_row_change({"table": "battles", "op": "DELETE", "record": {}}) is None
    assert decode_row_change({"table": "battles", "op": "INSERT"}) is None
    assert decode_row_change(["battles"]) is None
