from fastapi.testclient import TestClient

from src.chatrelay.api.main import app
from src.chatrelay.services.stream_lifecycle import get_stream_lifecycle
from src.chatrelay.services.stream_relay import parse_frames

from .utils import auth_headers, viewer_headers


client = TestClient(app)


def _thread(headers=None):
    r = client.post("/api/chat/threads", json={"title": "Demo"}, headers=headers or auth_headers())
    assert r.status_code == 201, r.text
    return r.json()["thread_id"]


def _send(thread_id, content, headers=None):
    r = client.post(f"/api/chat/threads/{thread_id}/messages", json={"content": content}, headers=headers or auth_headers())
    assert r.status_code == 200, r.text
    return r


def test_threads_are_private_to_their_creator():
    tid = _thread()
    assert [t["thread_id"] for t in client.get("/chat/threads", headers=auth_headers()).json()] == [tid]
    assert client.get(f"/chat/threads/{tid}", headers=auth_headers("user-2")).status_code == 403
    assert client.get("/chat/threads/missing", headers=auth_headers()).status_code == 404
    assert client.post("/chat/threads", json={}, headers=viewer_headers()).status_code == 403


def test_post_message_streams_reply_and_completes_record():
    tid = _thread()
    r = _send(tid, "hello")

    assert "".join(parse_frames(r.text)) == "Here is a response to: hello"
    assert r.text.endswith('0:""\n')
    record = get_stream_lifecycle().get(r.headers["X-Stream-Id"])
    assert record.status == "completed"
    assert record.message_id == r.headers["X-Message-Id"]
    assert record.user_id == "user-1"

    messages = client.get(f"/chat/threads/{tid}/messages", headers=auth_headers()).json()
    assert [m["role"] for m in messages] == ["user", "assistant"]
    assert messages[1]["message_id"] == r.headers["X-Message-Id"]
    assert messages[1]["content"] == "Here is a response to: hello"


def test_empty_message_is_rejected():
    tid = _thread()
    r = client.post(f"/chat/threads/{tid}/messages", json={"content": ""}, headers=auth_headers())
    assert r.status_code == 422


def test_regenerate_streams_into_new_message():
    tid = _thread()
    first = _send(tid, "hello")
    original_id = first.headers["X-Message-Id"]

    r = client.post(f"/api/chat/threads/{tid}/messages/{original_id}/regenerate", headers=auth_headers())
    assert r.status_code == 200
    assert r.headers["X-Regenerating-Message-Id"] == original_id
    new_id = r.headers["X-Message-Id"]
    assert new_id != original_id
    assert "".join(parse_frames(r.text)) == "Here is a response to: hello"

    messages = client.get(f"/chat/threads/{tid}", headers=auth_headers()).json()["messages"]
    assert [m["message_id"] for m in messages][-2:] == [original_id, new_id]
    assert messages[-1]["metadata"]["regenerates"] == original_id


def test_regenerate_rejects_unknown_and_user_messages():
    tid = _thread()
    _send(tid, "hello")
    user_msg = client.get(f"/chat/threads/{tid}/messages", headers=auth_headers()).json()[0]
    assert client.post(f"/chat/threads/{tid}/messages/missing/regenerate", headers=auth_headers()).status_code == 404
    r = client.post(f"/chat/threads/{tid}/messages/{user_msg['message_id']}/regenerate", headers=auth_headers())
    assert r.status_code == 400


def test_save_attempts_folds_regenerated_reply():
    tid = _thread()
    original_id = _send(tid, "hello").headers["X-Message-Id"]
    client.post(f"/chat/threads/{tid}/messages/{original_id}/regenerate", headers=auth_headers())
    messages = client.get(f"/chat/threads/{tid}/messages", headers=auth_headers()).json()
    original, regenerated = messages[1], messages[2]

    body = {
        "attempts": [
            {"message_id": original["message_id"], "role": "assistant", "content": original["content"]},
            {"message_id": regenerated["message_id"], "role": "assistant", "content": "second take"},
        ],
        "current_attempt_index": 1,
    }
    r = client.put(f"/api/chat/threads/{tid}/messages/{original_id}/attempts", json=body, headers=auth_headers())
    assert r.status_code == 200, r.text
    saved = r.json()
    assert saved["current_attempt_index"] == 1
    assert [a["content"] for a in saved["attempts"]] == [original["content"], "second take"]

    after = client.get(f"/chat/threads/{tid}/messages", headers=auth_headers()).json()
    assert [m["message_id"] for m in after] == [messages[0]["message_id"], original_id]
    assert after[-1]["content"] == "second take"

    body["current_attempt_index"] = 0
    r = client.put(f"/chat/threads/{tid}/messages/{original_id}/attempts", json=body, headers=auth_headers())
    assert r.json()["content"] == original["content"]


def test_save_attempts_validation():
    tid = _thread()
    original_id = _send(tid, "hello").headers["X-Message-Id"]
    one = {"attempts": [{"message_id": "a", "role": "assistant", "content": "x"}]}
    assert client.put(f"/chat/threads/{tid}/messages/{original_id}/attempts", json=one, headers=auth_headers()).status_code == 422

    two = {
        "attempts": [
            {"message_id": "a", "role": "assistant", "content": "x"},
            {"message_id": "b", "role": "assistant", "content": "y"},
        ],
        "current_attempt_index": 5,
    }
    r = client.put(f"/chat/threads/{tid}/messages/{original_id}/attempts", json=two, headers=auth_headers())
    assert r.status_code == 422

    two["current_attempt_index"] = 0
    r = client.put(f"/chat/threads/{tid}/messages/missing/attempts", json=two, headers=auth_headers())
    assert r.status_code == 404
