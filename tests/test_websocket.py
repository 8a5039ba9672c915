"""End-to-end realtime scenarios through the ASGI app."""
from __future__ import annotations

from conftest import wait_for

OFFER = {"type": "offer", "sdp": "v=0\r\n"}


def test_chat_scenario_alice_to_bob(app, connect, make_user) -> None:
    _, alice_token = make_user("alice", user_id="u1")
    _, bob_token = make_user("bob", user_id="u2")

    with connect(bob_token) as bob_ws, connect(alice_token) as alice_ws:
        alice_ws.send_json({"type": "chat", "receiverId": "u2", "content": "hi"})

        ack = alice_ws.receive_json()
        new = bob_ws.receive_json()

    assert ack["type"] == "chat_ack"
    message = ack["message"]
    assert message["sender_id"] == "u1"
    assert message["receiver_id"] == "u2"
    assert message["content"] == "hi"
    assert message["type"] == "text"
    assert message["read_at"] is None
    assert set(message) == {"id", "sender_id", "receiver_id", "content", "type", "created_at", "read_at"}
    assert new == {"type": "chat_new", "message": message}


def test_chat_to_offline_user_is_queryable_later(app, connect, make_user) -> None:
    _, alice_token = make_user("alice", user_id="u1")
    make_user("bob", user_id="u2")

    with connect(alice_token) as alice_ws:
        alice_ws.send_json({"type": "chat", "receiverId": "u2", "content": "are you there"})
        ack = alice_ws.receive_json()

    assert ack["type"] == "chat_ack"
    (stored,) = app.state.relay.store.get_conversation("u1", "u2")
    assert stored.id == ack["message"]["id"]


def test_call_signal_scenario_bob_to_alice(app, connect, make_user) -> None:
    _, alice_token = make_user("alice", user_id="u1")
    _, bob_token = make_user("bob", user_id="u2")

    with connect(alice_token) as alice_ws, connect(bob_token) as bob_ws:
        bob_ws.send_json({"type": "call_signal", "receiverId": "u1", "signalData": OFFER})
        received = alice_ws.receive_json()

        bob_ws.send_json({"type": "call_end", "receiverId": "u1"})
        ended = alice_ws.receive_json()

    assert received == {"type": "call_signal", "senderId": "u2", "signalData": OFFER}
    assert ended == {"type": "call_end", "senderId": "u2"}
    assert app.state.relay.store.get_conversation("u1", "u2") == []


def test_bad_frames_do_not_close_connection(app, connect, make_user) -> None:
    _, alice_token = make_user("alice", user_id="u1")

    with connect(alice_token) as alice_ws:
        alice_ws.send_text("{oops")
        alice_ws.send_json({"type": "wave", "receiverId": "u2"})
        alice_ws.send_json({"type": "call_signal", "receiverId": "u2", "signalData": OFFER})
        alice_ws.send_json({"type": "chat", "receiverId": "u2", "content": "still here"})

        # nothing was sent back for the earlier frames
        first = alice_ws.receive_json()

    assert first["type"] == "chat_ack"
    assert first["message"]["content"] == "still here"
    stats = app.state.relay.stats
    assert stats["malformed"] == 2
    assert stats["dropped"] == 1


def test_unauthenticated_socket_is_ignored(app, connect, make_user) -> None:
    make_user("bob", user_id="u2")

    with connect() as anon_ws:
        anon_ws.send_json({"type": "chat", "receiverId": "u2", "content": "hi"})
    with connect("forged-token") as forged_ws:
        forged_ws.send_json({"type": "chat", "receiverId": "u2", "content": "hi"})

    relay = app.state.relay
    assert wait_for(lambda: relay.stats["ignored"] == 2)
    assert relay.store.recent_conversations("u2") == []
    assert len(relay.registry) == 0


def test_reconnect_supersedes_and_stale_close_is_harmless(app, connect, make_user) -> None:
    _, alice_token = make_user("alice", user_id="u1")
    _, bob_token = make_user("bob", user_id="u2")
    registry = app.state.relay.registry

    old_session = connect(alice_token)
    old_session.__enter__()
    with connect(alice_token) as new_ws, connect(bob_token) as bob_ws:
        assert len(registry) == 2

        old_session.__exit__(None, None, None)

        bob_ws.send_json({"type": "chat", "receiverId": "u1", "content": "after reconnect"})
        bob_ws.receive_json()
        received = new_ws.receive_json()
        assert registry.lookup("u1") is not None

    assert received["type"] == "chat_new"
    assert received["message"]["content"] == "after reconnect"
    assert wait_for(lambda: len(registry) == 0)


def test_closing_socket_unregisters_user(app, connect, make_user) -> None:
    _, alice_token = make_user("alice", user_id="u1")
    registry = app.state.relay.registry

    with connect(alice_token):
        assert registry.lookup("u1") is not None

    assert wait_for(lambda: registry.lookup("u1") is None)
