"""
HTTP / WebSocket surface tests.

The app's DI container is pointed at fakes (capture, peer connections,
recorder, storage) and a throwaway SQLite file; everything else is real.
"""
import asyncio
import os
import shutil
import tempfile
import time
import unittest

from dependency_injector import providers
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool
from starlette.websockets import WebSocketDisconnect

from livecast.api.v1.endpoints.live import session_event
from livecast.core.db import create_session_factory, create_tables, get_db
from livecast.main import app, container
from livecast.models.orm.user import UserProfile
from livecast.repository.live_stream_repo import create_live_stream
from livecast.testing.fakes import (
    FakeCaptureDevice,
    FakeConnectionFactory,
    FakeRecorder,
    FakeRelay,
    FakeStorage,
)
from livecast.utils.jwt import create_access_token

API = "/api/v1"


def auth(user_id):
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


def eventually(check, timeout=3.0, interval=0.05):
    deadline = time.time() + timeout
    while time.time() < deadline:
        result = check()
        if result:
            return result
        time.sleep(interval)
    return check()


class ApiTestCase(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        engine = create_async_engine(
            f"sqlite+aiosqlite:///{os.path.join(self.tmpdir, 'livecast.db')}",
            poolclass=NullPool,
        )
        self.session_factory = create_session_factory(engine)
        asyncio.run(self._seed(engine))

        self.capture = FakeCaptureDevice()
        self.storage = FakeStorage()
        container.session_factory.override(providers.Object(self.session_factory))
        container.capture.override(providers.Object(self.capture))
        container.storage.override(providers.Object(self.storage))
        container.relay.override(providers.Object(FakeRelay()))
        container.connection_factory.override(providers.Object(FakeConnectionFactory()))
        container.recorder_factory.override(providers.Object(FakeRecorder))
        container.reset_singletons()

        async def override_get_db():
            async with self.session_factory() as session:
                yield session

        app.dependency_overrides[get_db] = override_get_db
        self.client = TestClient(app)
        self.client.__enter__()

    def tearDown(self):
        self.client.__exit__(None, None, None)
        app.dependency_overrides.clear()
        container.reset_override()
        container.reset_singletons()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    async def _seed(self, engine):
        await create_tables(engine)
        async with self.session_factory() as db:
            db.add_all([
                UserProfile(id="b1", email="ada@example.com", full_name="Ada Instructor", user_type="instructor"),
                UserProfile(id="b2", email="grace@example.com", full_name=None, user_type="admin"),
                UserProfile(id="s1", email="student@example.com", full_name="Sam Student", user_type="student"),
                UserProfile(id="s2", email="second@example.com", full_name="Sue Student", user_type="student"),
            ])
            await db.commit()
        await engine.dispose()

    async def insert_live_record(self, created_by, stream_url):
        async with self.session_factory() as db:
            await create_live_stream(db, created_by, stream_url, "Remote class")

    def start(self, user_id="b1", **body):
        return self.client.post(f"{API}/live/start", json=body, headers=auth(user_id))


class TestAuth(ApiTestCase):

    def test_health(self):
        self.assertEqual(self.client.get("/").json(), {"status": "service is working"})

    def test_me_requires_token(self):
        self.assertEqual(self.client.get(f"{API}/auth/me").status_code, 403)

    def test_me_rejects_bad_token(self):
        response = self.client.get(f"{API}/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
        self.assertEqual(response.status_code, 401)

    def test_me_rejects_unknown_user(self):
        self.assertEqual(self.client.get(f"{API}/auth/me", headers=auth("ghost")).status_code, 401)

    def test_me(self):
        body = self.client.get(f"{API}/auth/me", headers=auth("b1")).json()
        self.assertEqual(body["email"], "ada@example.com")
        self.assertTrue(body["can_broadcast"])
        student = self.client.get(f"{API}/auth/me", headers=auth("s1")).json()
        self.assertFalse(student["can_broadcast"])

    def test_logout_stops_own_broadcast(self):
        self.start()
        self.assertEqual(self.client.post(f"{API}/auth/logout", headers=auth("b1")).json(), {"success": True})
        status = self.client.get(f"{API}/live/status", headers=auth("b1")).json()
        self.assertEqual(status["state"], "idle")


class TestLive(ApiTestCase):

    def test_student_cannot_start(self):
        self.assertEqual(self.start("s1").status_code, 403)
        self.assertEqual(self.capture.acquisitions, 0)

    def test_start_poll_stop(self):
        started = self.start(title="Calculus")
        self.assertEqual(started.status_code, 200)
        body = started.json()
        self.assertEqual(body["state"], "live")
        self.assertTrue(body["tracked"])
        self.assertEqual(body["record"]["title"], "Calculus")
        self.assertEqual(body["record"]["description"], "Live stream by Ada Instructor")
        token = body["session_token"]

        active = self.client.get(f"{API}/live/active", headers=auth("s1")).json()
        self.assertTrue(active["is_live"])
        self.assertEqual(active["session"]["stream_url"], token)

        stopped = self.client.post(f"{API}/live/stop", headers=auth("b1")).json()
        self.assertEqual(stopped, {"state": "idle", "closed_records": 1, "warnings": []})

        active = self.client.get(f"{API}/live/active", headers=auth("s1")).json()
        self.assertEqual(active, {"is_live": False, "session": None})

    def test_start_twice_returns_same_session(self):
        first = self.start().json()
        second = self.start().json()
        self.assertEqual(first["session_token"], second["session_token"])
        self.assertEqual(self.capture.acquisitions, 1)

    def test_station_busy(self):
        self.start("b1")
        response = self.start("b2")
        self.assertEqual(response.status_code, 409)

    def test_capture_failure(self):
        self.capture.fail = True
        response = self.start()
        self.assertEqual(response.status_code, 503)
        self.assertIn("camera", response.json()["detail"])

    def test_stop_when_idle(self):
        response = self.client.post(f"{API}/live/stop", headers=auth("b1"))
        self.assertEqual(response.json(), {"state": "idle", "closed_records": 0, "warnings": []})

    def test_status(self):
        self.start()
        status = self.client.get(f"{API}/live/status", headers=auth("b1")).json()
        self.assertEqual(status["state"], "live")
        self.assertEqual(status["broadcaster_id"], "b1")
        self.assertTrue(status["watcher"]["running"])

    def test_watcher_follows_start_and_stop(self):
        started = self.start().json()
        status = eventually(lambda: (
            lambda s: s if s["watcher"]["active_session_id"] == started["record"]["id"] else None
        )(self.client.get(f"{API}/live/status", headers=auth("b1")).json()))
        self.assertIsNotNone(status)

        self.client.post(f"{API}/live/stop", headers=auth("b1"))
        status = eventually(lambda: (
            lambda s: s if s["watcher"]["active_session_id"] is None else None
        )(self.client.get(f"{API}/live/status", headers=auth("b1")).json()))
        self.assertIsNotNone(status)

    def test_session_event_payload(self):
        self.assertEqual(session_event(None), {
            "event_type": "active_session",
            "payload": {"is_live": False, "session": None},
        })


class TestRecordings(ApiTestCase):

    def test_recording_listed_after_stop(self):
        token = self.start().json()["session_token"]
        self.client.post(f"{API}/live/stop", headers=auth("b1"))

        listing = eventually(lambda: self.client.get(f"{API}/recordings", headers=auth("s1")).json())

        self.assertEqual(len(listing), 1)
        self.assertEqual(listing[0]["creator_name"], "Ada Instructor")
        self.assertTrue(listing[0]["media_url"].endswith(f"{token}.webm"))

    def test_recordings_require_auth(self):
        self.assertEqual(self.client.get(f"{API}/recordings").status_code, 403)


class TestSignalingSocket(ApiTestCase):

    def socket_url(self, session_token, user_id, role="viewer"):
        jwt = create_access_token(user_id)
        return f"{API}/live/{session_token}/signal?token={jwt}&role={role}"

    def link_states(self):
        status = self.client.get(f"{API}/live/status", headers=auth("b1")).json()
        return {link["remote_id"]: link["state"] for link in status["links"]}

    def test_remote_viewer_negotiates_with_station(self):
        token = self.start().json()["session_token"]

        with self.client.websocket_connect(self.socket_url(token, "s1")) as ws:
            ws.send_json({"type": "join"})
            offer = ws.receive_json()

            self.assertEqual(offer["type"], "offer")
            self.assertEqual(offer["from"], "broadcaster")
            self.assertEqual(offer["sender"], "b1")
            self.assertEqual(offer["target"], "s1")
            self.assertIn("kinds=video,audio", offer["sdp"])

            ws.send_json({"type": "answer", "target": "b1", "sdp": "v=0 remote-answer", "sdp_type": "answer"})
            self.assertTrue(eventually(lambda: self.link_states().get("s1") == "connected"))

        # closing the socket counts as leaving
        self.assertTrue(eventually(lambda: "s1" not in self.link_states()))

    def test_sender_identity_comes_from_token(self):
        token = self.start().json()["session_token"]
        with self.client.websocket_connect(self.socket_url(token, "s1")) as ws:
            # claims to be the broadcaster; relayed as viewer s1 and never reaches b1 as an offer
            ws.send_json({"type": "join", "from": "broadcaster", "sender": "b1"})
            offer = ws.receive_json()
            self.assertEqual(offer["target"], "s1")

    def test_invalid_message_gets_error(self):
        token = self.start().json()["session_token"]
        with self.client.websocket_connect(self.socket_url(token, "s1")) as ws:
            ws.send_json({"type": "renegotiate"})
            reply = ws.receive_json()
            self.assertEqual(reply["type"], "error")

    def test_bad_token_rejected(self):
        with self.assertRaises(WebSocketDisconnect):
            with self.client.websocket_connect(f"{API}/live/stream_x/signal?token=nope") as ws:
                ws.receive_json()

    def test_student_cannot_join_as_broadcaster(self):
        with self.assertRaises(WebSocketDisconnect):
            with self.client.websocket_connect(self.socket_url("stream_x", "s1", role="broadcaster")) as ws:
                ws.receive_json()

    def test_instructor_cannot_broadcast_into_someone_elses_session(self):
        token = self.start("b1").json()["session_token"]
        with self.assertRaises(WebSocketDisconnect):
            with self.client.websocket_connect(self.socket_url(token, "b2", role="broadcaster")) as ws:
                ws.receive_json()

    def test_owner_connects_as_broadcaster(self):
        self.client.portal.call(self.insert_live_record, "b1", "stream_remote_b1")
        with self.client.websocket_connect(self.socket_url("stream_remote_b1", "b1", role="broadcaster")) as ws:
            ws.send_json({"type": "renegotiate"})
            self.assertEqual(ws.receive_json()["type"], "error")

    def test_ended_session_has_no_broadcaster(self):
        token = self.start("b1").json()["session_token"]
        self.client.post(f"{API}/live/stop", headers=auth("b1"))
        with self.assertRaises(WebSocketDisconnect):
            with self.client.websocket_connect(self.socket_url(token, "b1", role="broadcaster")) as ws:
                ws.receive_json()

    def test_late_joiner_only_replays_what_was_meant_for_it(self):
        token = self.start().json()["session_token"]

        with self.client.websocket_connect(self.socket_url(token, "s1")) as first:
            first.send_json({"type": "join"})
            self.assertEqual(first.receive_json()["target"], "s1")
            first.send_json({"type": "answer", "target": "b1", "sdp": "v=0 remote-answer", "sdp_type": "answer"})
            self.assertTrue(eventually(lambda: self.link_states().get("s1") == "connected"))

            with self.client.websocket_connect(self.socket_url(token, "s2")) as second:
                replayed = second.receive_json()
                self.assertEqual((replayed["type"], replayed["sender"]), ("join", "s1"))

                second.send_json({"type": "join"})
                offer = second.receive_json()
                self.assertEqual((offer["type"], offer["target"]), ("offer", "s2"))


if __name__ == "__main__":
    unittest.main()
