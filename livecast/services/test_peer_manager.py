"""
Peer connection manager tests, run over a real signaling hub with fake
RTCPeerConnections.
"""
import unittest

from livecast.media.stream import LocalMediaStream
from livecast.schemas.signal_schema import IceCandidatePayload
from livecast.services.peer_manager import LinkState, PeerConnectionManager, parse_candidate
from livecast.services.signaling import BROADCASTER, VIEWER, SignalingChannel, SignalingHub
from livecast.testing.fakes import FakeConnectionFactory, FakeRelay, FakeTrack, wait_for

TOKEN = "stream_1700000000000_b1_peer"
HOST_CANDIDATE = "candidate:1 1 udp 2130706431 10.0.0.1 5000 typ host"


class PeerTestCase(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.hub = SignalingHub()
        self.factory = FakeConnectionFactory()
        self.relay = FakeRelay()
        self.stream = LocalMediaStream([FakeTrack("video"), FakeTrack("audio")])
        self.channels = []

        self.b_channel = await self.open_channel("b1", BROADCASTER)
        self.states = []
        self.broadcaster = PeerConnectionManager(
            self.b_channel,
            ice_servers=[],
            connection_factory=self.factory,
            relay=self.relay,
            on_state_change=lambda link: self.states.append((link.remote_id, link.state)),
        )

        async def on_answer(message):
            await self.broadcaster.handle_answer(message.sender, message.sdp, message.sdp_type)

        self.b_channel.on("answer", on_answer)
        self.viewers = {}

    async def asyncTearDown(self):
        await self.broadcaster.teardown()
        for viewer in self.viewers.values():
            await viewer.teardown()
        for channel in self.channels:
            await channel.close()

    async def open_channel(self, participant_id, role):
        channel = SignalingChannel(self.hub, TOKEN, participant_id, role)
        await channel.open()
        self.channels.append(channel)
        return channel

    async def add_viewer(self, viewer_id, wire_offers=True):
        channel = await self.open_channel(viewer_id, VIEWER)
        remote_tracks = []
        manager = PeerConnectionManager(
            channel,
            ice_servers=[],
            connection_factory=self.factory,
            on_remote_track=lambda link, track: remote_tracks.append(track),
        )
        manager.remote_tracks = remote_tracks

        if wire_offers:
            async def on_offer(message):
                await manager.handle_offer(message.sender, message.sdp, message.sdp_type)

            channel.on("offer", on_offer)
        self.viewers[viewer_id] = manager
        return manager

    def link_state(self, remote_id):
        link = self.broadcaster.get_link(remote_id)
        return link.state if link else None


class TestNegotiation(PeerTestCase):

    async def test_offer_answer_connects_both_sides(self):
        viewer = await self.add_viewer("v1")
        await self.broadcaster.start_broadcast(self.stream)
        await self.broadcaster.add_viewer("v1")

        self.assertTrue(await wait_for(lambda: self.link_state("v1") == LinkState.CONNECTED))
        self.assertTrue(await wait_for(lambda: viewer.get_link("b1").state == LinkState.CONNECTED))
        self.assertEqual(sorted(t.kind for t in viewer.remote_tracks), ["audio", "video"])

    async def test_each_link_gets_its_own_proxy_tracks(self):
        await self.add_viewer("v1")
        await self.add_viewer("v2")
        await self.broadcaster.start_broadcast(self.stream)
        await self.broadcaster.add_viewer("v1")
        await self.broadcaster.add_viewer("v2")

        v1 = self.broadcaster.get_link("v1")
        v2 = self.broadcaster.get_link("v2")
        self.assertEqual(len(v1.local_tracks), 2)
        self.assertTrue(set(map(id, v1.local_tracks)).isdisjoint(map(id, v2.local_tracks)))
        self.assertTrue(all(t.source in self.stream.get_tracks() for t in v1.local_tracks))

    async def test_start_broadcast_offers_existing_links(self):
        await self.add_viewer("v1")
        self.broadcaster.create_link("v1")
        await self.broadcaster.start_broadcast(self.stream, remote_ids=["v1"])
        self.assertTrue(await wait_for(lambda: self.link_state("v1") == LinkState.CONNECTED))

    async def test_offer_after_connected_is_ignored(self):
        viewer = await self.add_viewer("v1")
        await self.broadcaster.start_broadcast(self.stream)
        await self.broadcaster.add_viewer("v1")
        self.assertTrue(await wait_for(lambda: viewer.get_link("b1").state == LinkState.CONNECTED))

        pc = viewer.get_link("b1").pc
        before = pc.remoteDescription
        handled = await viewer.handle_offer("b1", "v=0 fake-offer again kinds=video", "offer")

        self.assertFalse(handled)
        self.assertIs(pc.remoteDescription, before)
        self.assertEqual(viewer.get_link("b1").state, LinkState.CONNECTED)

    async def test_answer_without_offer_is_ignored(self):
        self.broadcaster.create_link("v1")
        handled = await self.broadcaster.handle_answer("v1", "v=0 fake-answer", "answer")
        self.assertFalse(handled)
        self.assertEqual(self.link_state("v1"), LinkState.NEW)

    async def test_offer_failure_tears_down_only_that_link(self):
        await self.add_viewer("v1")
        await self.broadcaster.start_broadcast(self.stream)
        await self.broadcaster.add_viewer("v1")
        self.assertTrue(await wait_for(lambda: self.link_state("v1") == LinkState.CONNECTED))

        self.factory.fail_offer = True
        with self.assertLogs("livecast.services.peer_manager", level="ERROR"):
            await self.broadcaster.add_viewer("v2")

        self.assertIsNone(self.broadcaster.get_link("v2"))
        self.assertEqual(self.link_state("v1"), LinkState.CONNECTED)


class TestCandidates(PeerTestCase):

    async def test_candidates_buffered_until_remote_description(self):
        viewer = await self.add_viewer("v1")
        link = viewer.create_link("b1")

        await viewer.handle_remote_candidate(
            "b1", IceCandidatePayload(candidate=HOST_CANDIDATE, sdpMid="0", sdpMLineIndex=0)
        )
        self.assertEqual(len(link.pending_candidates), 1)
        self.assertEqual(link.pc.candidates, [])

        await viewer.handle_offer("b1", "v=0 fake-offer kinds=video", "offer")

        self.assertEqual(link.pending_candidates, [])
        self.assertEqual(len(link.pc.candidates), 1)
        self.assertEqual(link.pc.candidates[0].ip, "10.0.0.1")
        self.assertEqual(link.pc.candidates[0].sdpMid, "0")

    async def test_bad_candidate_does_not_break_link(self):
        self.factory.fail_ice = True
        viewer = await self.add_viewer("v1")
        link = viewer.create_link("b1")
        await viewer.handle_offer("b1", "v=0 fake-offer kinds=video", "offer")

        with self.assertLogs("livecast.services.peer_manager", level="WARNING"):
            await viewer.handle_remote_candidate("b1", IceCandidatePayload(candidate=HOST_CANDIDATE))
        self.assertIs(viewer.get_link("b1"), link)

    async def test_candidate_for_unknown_link_dropped(self):
        viewer = await self.add_viewer("v1")
        await viewer.handle_remote_candidate("nobody", IceCandidatePayload(candidate=HOST_CANDIDATE))
        self.assertEqual(viewer.links, {})

    def test_end_of_candidates_parses_to_none(self):
        self.assertIsNone(parse_candidate(IceCandidatePayload(candidate="")))


class TestTeardown(PeerTestCase):

    async def connect(self, *viewer_ids):
        for viewer_id in viewer_ids:
            await self.add_viewer(viewer_id)
        await self.broadcaster.start_broadcast(self.stream)
        for viewer_id in viewer_ids:
            await self.broadcaster.add_viewer(viewer_id)
        for viewer_id in viewer_ids:
            self.assertTrue(await wait_for(lambda: self.link_state(viewer_id) == LinkState.CONNECTED))

    async def test_teardown_one_keeps_the_other(self):
        await self.connect("v1", "v2")
        v1 = self.broadcaster.get_link("v1")

        await self.broadcaster.teardown("v1")

        self.assertIsNone(self.broadcaster.get_link("v1"))
        self.assertEqual(v1.state, LinkState.CLOSED)
        self.assertTrue(v1.pc.closed)
        self.assertEqual(self.link_state("v2"), LinkState.CONNECTED)
        self.assertFalse(self.broadcaster.get_link("v2").pc.closed)

    async def test_teardown_stops_proxies_not_sources(self):
        await self.connect("v1")
        proxies = list(self.broadcaster.get_link("v1").local_tracks)

        await self.broadcaster.teardown("v1")

        self.assertTrue(all(t.readyState == "ended" for t in proxies))
        self.assertTrue(all(t.readyState == "live" for t in self.stream.get_tracks()))

    async def test_teardown_is_idempotent(self):
        await self.connect("v1")
        await self.broadcaster.teardown("v1")
        await self.broadcaster.teardown("v1")
        await self.broadcaster.teardown()
        self.assertEqual(self.states.count(("v1", LinkState.CLOSED)), 1)

    async def test_teardown_all(self):
        await self.connect("v1", "v2")
        await self.broadcaster.teardown()
        self.assertEqual(self.broadcaster.links, {})

    async def test_link_recreated_after_close(self):
        await self.connect("v1")
        old = self.broadcaster.get_link("v1")
        await self.broadcaster.teardown("v1")
        new = self.broadcaster.create_link("v1")
        self.assertIsNot(new, old)
        self.assertEqual(new.state, LinkState.NEW)

    async def test_failed_connection_state_tears_down(self):
        await self.connect("v1")
        link = self.broadcaster.get_link("v1")
        link.pc._set_connection_state("failed")
        self.assertTrue(await wait_for(lambda: self.broadcaster.get_link("v1") is None))
        self.assertEqual(link.state, LinkState.CLOSED)

    async def test_snapshot_is_read_only(self):
        await self.connect("v1")
        snapshot = self.broadcaster.snapshot()
        snapshot[0]["state"] = "closed"
        self.assertEqual(self.link_state("v1"), LinkState.CONNECTED)
        self.assertEqual(self.broadcaster.snapshot()[0]["local_tracks"], 2)


if __name__ == "__main__":
    unittest.main()
