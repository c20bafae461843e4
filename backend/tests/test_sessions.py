from agentmem.db.models.chat import ChatMessage, ChatRoom
from agentmem.services.memory.sessions import (
    ChatRow,
    DatabaseChatHistory,
    SessionDeltaTracker,
    render_line,
    session_path,
    threshold_hit,
)
from tests.fakes import TENANT, session_scope_for


def _room(db, session_key, agent_id="", is_cron=False, active=True):
    db.add(
        ChatRoom(
            bridge_id=TENANT.bridge_id,
            login_id=TENANT.login_id,
            session_key=session_key,
            agent_id=agent_id,
            is_cron=is_cron,
            active=active,
        )
    )


def _message(db, session_key, role, body, **kwargs):
    db.add(
        ChatMessage(
            bridge_id=TENANT.bridge_id,
            login_id=TENANT.login_id,
            session_key=session_key,
            role=role,
            body=body,
            **kwargs,
        )
    )


def _tracker(delta_messages=3, delta_bytes=10**9) -> SessionDeltaTracker:
    return SessionDeltaTracker(
        TENANT, DatabaseChatHistory(), delta_bytes=delta_bytes, delta_messages=delta_messages
    )


def _sync(tracker, scope, **kwargs):
    with scope() as db:
        plans = tracker.plan(db, **kwargs)
        for plan in plans:
            tracker.apply(db, plan)
    return plans


def test_delta_threshold_fires_on_the_nth_message(engine):
    scope = session_scope_for(engine)
    tracker = _tracker(delta_messages=3)
    with scope() as db:
        _room(db, "room-a")
        _message(db, "room-a", "user", "hello there")

    first = _sync(tracker, scope)
    assert first[0].snapshot and first[0].reindex

    with scope() as db:
        _message(db, "room-a", "user", "one")
        _message(db, "room-a", "assistant", "two")
    pending = _sync(tracker, scope)
    assert not pending[0].snapshot
    assert pending[0].pending_messages == 2

    with scope() as db:
        _message(db, "room-a", "user", "three")
    hit = _sync(tracker, scope)
    assert hit[0].snapshot and hit[0].reindex
    assert hit[0].pending_messages == 0
    assert hit[0].content.splitlines()[-1] == "User: three"

    with scope() as db:
        state = tracker.load_state(db, "room-a")
        assert state.pending_messages == 0
        assert state.last_rowid == 4


def test_filtered_rows_do_not_count(engine):
    scope = session_scope_for(engine)
    tracker = _tracker(delta_messages=2)
    with scope() as db:
        _room(db, "room-a")
        _message(db, "room-a", "user", "hi")
    _sync(tracker, scope)

    with scope() as db:
        _message(db, "room-a", "system", "prompt")
        _message(db, "room-a", "user", "secret", exclude_from_history=True)
        _message(db, "room-a", "assistant", "from another agent", agent_id="helper")
        _message(db, "room-a", "user", "   ")
    plans = _sync(tracker, scope)

    assert plans[0].pending_messages == 0
    assert plans[0].last_rowid == 5


def test_forced_plan_reindexes_every_session(engine):
    scope = session_scope_for(engine)
    tracker = _tracker()
    with scope() as db:
        _room(db, "room-a")
        _message(db, "room-a", "user", "hi")
    _sync(tracker, scope)

    forced = _sync(tracker, scope, force=True)
    assert forced[0].snapshot
    assert forced[0].reindex


def test_unchanged_transcript_is_not_reindexed(engine):
    scope = session_scope_for(engine)
    tracker = _tracker(delta_messages=3)
    with scope() as db:
        _room(db, "room-a")
        _message(db, "room-a", "user", "hi")
    _sync(tracker, scope)

    with scope() as db:
        tracker.load_state(db, "room-a").pending_messages = 3
    plans = _sync(tracker, scope)

    assert plans[0].snapshot
    assert not plans[0].reindex
    assert plans[0].pending_messages == 0


def test_session_key_match_snapshots_fresh_sessions(engine):
    scope = session_scope_for(engine)
    tracker = _tracker()
    with scope() as db:
        _room(db, "room-a")
        _message(db, "room-a", "user", "first room")
    _sync(tracker, scope)

    with scope() as db:
        _room(db, "room-b")
        _message(db, "room-b", "user", "new room")
    plans = {plan.session_key: plan for plan in _sync(tracker, scope, session_key="room-b")}

    assert plans["room-b"].snapshot
    assert not plans["room-a"].snapshot


def test_cron_and_foreign_agent_rooms_are_ignored(engine):
    scope = session_scope_for(engine)
    tracker = _tracker()
    with scope() as db:
        _room(db, "room-a")
        _room(db, "cron-room", is_cron=True)
        _room(db, "helper-room", agent_id="helper")
        _room(db, "closed-room", active=False)

    with scope() as db:
        assert list(tracker.active_sessions(db)) == ["room-a"]


def test_closed_sessions_become_stale(engine):
    scope = session_scope_for(engine)
    tracker = _tracker()
    with scope() as db:
        _room(db, "room-a")
        _message(db, "room-a", "user", "hi")
    _sync(tracker, scope)

    with scope() as db:
        room = db.query(ChatRoom).filter(ChatRoom.session_key == "room-a").one()
        room.active = False
    with scope() as db:
        stale = tracker.stale_sessions(db, [p.session_key for p in tracker.plan(db)])
        assert stale == {"room-a": "sessions/room-a.jsonl"}
        tracker.forget(db, "room-a")
    with scope() as db:
        assert tracker.load_state(db, "room-a") is None


def test_sessions_without_a_snapshot_still_become_stale(engine):
    scope = session_scope_for(engine)
    tracker = _tracker()
    with scope() as db:
        _room(db, "room-b")
        _message(db, "room-b", "system", "topic changed")
    _sync(tracker, scope)

    with scope() as db:
        assert tracker.load_state(db, "room-b") is not None
        room = db.query(ChatRoom).filter(ChatRoom.session_key == "room-b").one()
        room.active = False
    with scope() as db:
        stale = tracker.stale_sessions(db, [p.session_key for p in tracker.plan(db)])
        assert stale == {"room-b": "sessions/room-b.jsonl"}


def test_render_line_filters_and_normalizes():
    assert render_line(ChatRow(1, "user", "  hello\n  world "), "main") == "User: hello world"
    assert render_line(ChatRow(2, "assistant", "ok", agent_id="main"), "main") == "Assistant: ok"
    assert render_line(ChatRow(3, "assistant", "ok", agent_id="other"), "main") is None
    assert render_line(ChatRow(4, "tool", "ok"), "main") is None


def test_session_path_is_flat():
    assert session_path("!room:example.org/thread") == "sessions/!room:example.org_thread.jsonl"
    assert session_path("") == "sessions/main.jsonl"


def test_threshold_hit():
    assert not threshold_hit(2, 3)
    assert threshold_hit(3, 3)
    assert threshold_hit(1, 0)
    assert not threshold_hit(0, 0)
