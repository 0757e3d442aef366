"""
Peer connection manager: one RTCPeerConnection per counterpart.

Link states: new -> negotiating -> connected -> {disconnected, closed}.
`closed` is terminal; a closed link is forgotten and a later
create_link() for the same remote id starts from scratch.

The broadcaster fans its local tracks out through a MediaRelay so every link
gets its own proxy track; tearing a link down stops only those proxies,
never the captured source tracks.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.contrib.media import MediaRelay
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from livecast.core.config import configs
from livecast.media.stream import LocalMediaStream
from livecast.schemas.signal_schema import IceCandidatePayload
from livecast.services.signaling import SignalingChannel

logger = logging.getLogger(__name__)


class LinkState(str, Enum):
    NEW = "new"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    CLOSED = "closed"


@dataclass
class PeerLink:
    remote_id: str
    pc: Any
    state: LinkState = LinkState.NEW
    local_tracks: List[Any] = field(default_factory=list)
    source_track_ids: set = field(default_factory=set)
    remote_tracks: List[Any] = field(default_factory=list)
    pending_candidates: List[Any] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)

    def snapshot(self) -> dict:
        return {
            "remote_id": self.remote_id,
            "state": self.state.value,
            "local_tracks": len(self.local_tracks),
            "remote_tracks": len(self.remote_tracks),
            "pending_candidates": len(self.pending_candidates),
            "created_at": self.created_at,
        }


def build_rtc_configuration(ice_servers: Optional[Iterable[str]] = None) -> RTCConfiguration:
    urls = list(ice_servers if ice_servers is not None else configs.ICE_SERVERS)
    return RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in urls])


def parse_candidate(payload: IceCandidatePayload):
    """aiortc RTCIceCandidate from a browser-style candidate dict, None for end-of-candidates."""
    raw = (payload.candidate or "").strip()
    if not raw:
        return None
    if raw.startswith("candidate:"):
        raw = raw[len("candidate:"):]
    candidate = candidate_from_sdp(raw)
    candidate.sdpMid = payload.sdpMid
    candidate.sdpMLineIndex = payload.sdpMLineIndex
    return candidate


class PeerConnectionManager:

    def __init__(
        self,
        channel: SignalingChannel,
        ice_servers: Optional[Iterable[str]] = None,
        connection_factory: Optional[Callable[..., Any]] = None,
        relay: Optional[MediaRelay] = None,
        on_remote_track: Optional[Callable[[PeerLink, Any], None]] = None,
        on_state_change: Optional[Callable[[PeerLink], None]] = None,
    ):
        self.channel = channel
        self.rtc_configuration = build_rtc_configuration(ice_servers)
        self._connection_factory = connection_factory or RTCPeerConnection
        self._relay = relay
        self.on_remote_track = on_remote_track
        self.on_state_change = on_state_change
        self.links: Dict[str, PeerLink] = {}
        self._stream: Optional[LocalMediaStream] = None

    @property
    def role(self) -> str:
        return self.channel.role

    def get_link(self, remote_id: str) -> Optional[PeerLink]:
        return self.links.get(remote_id)

    # ── link lifecycle ───────────────────────────────────────────────

    def create_link(self, remote_id: str) -> PeerLink:
        existing = self.links.get(remote_id)
        if existing is not None and existing.state != LinkState.CLOSED:
            return existing

        pc = self._connection_factory(configuration=self.rtc_configuration)
        link = PeerLink(remote_id=remote_id, pc=pc)
        self.links[remote_id] = link

        def on_track(track) -> None:
            link.remote_tracks.append(track)
            logger.info(f"[peer:{remote_id}] received remote {track.kind} track")
            if self.on_remote_track is not None:
                try:
                    self.on_remote_track(link, track)
                except Exception:
                    logger.exception(f"[peer:{remote_id}] remote track sink failed")

        async def on_connection_state_change() -> None:
            await self._on_connection_state(link)

        def on_ice_candidate(candidate) -> None:
            # aiortc bundles its candidates into the SDP; browser-style peers trickle them
            if candidate is None:
                return
            asyncio.ensure_future(self._send_candidate(remote_id, candidate))

        pc.on("track", on_track)
        pc.on("connectionstatechange", on_connection_state_change)
        pc.on("icecandidate", on_ice_candidate)

        logger.info(f"[peer:{remote_id}] link created ({self.role})")
        return link

    async def teardown(self, remote_id: Optional[str] = None) -> None:
        """Close one link, or every link when remote_id is None. Idempotent."""
        remote_ids = [remote_id] if remote_id is not None else list(self.links.keys())
        for rid in remote_ids:
            link = self.links.pop(rid, None)
            if link is None:
                continue
            for track in link.local_tracks:
                try:
                    track.stop()
                except Exception as e:
                    logger.warning(f"[peer:{rid}] failed to stop proxy track: {e}")
            link.local_tracks.clear()
            link.pending_candidates.clear()
            try:
                await link.pc.close()
            except Exception as e:
                logger.warning(f"[peer:{rid}] error closing connection: {e}")
            self._set_state(link, LinkState.CLOSED)
            logger.info(f"[peer:{rid}] link closed")

    # ── broadcaster side ─────────────────────────────────────────────

    async def start_broadcast(self, stream: LocalMediaStream, remote_ids: Optional[Iterable[str]] = None) -> None:
        """Attach the stream to each fresh link and send it an offer."""
        self._stream = stream
        targets = list(remote_ids) if remote_ids is not None else list(self.links.keys())
        for rid in targets:
            await self._offer(rid)

    async def add_viewer(self, remote_id: str) -> PeerLink:
        """Create a link for a viewer that just joined and offer it the current stream."""
        link = self.create_link(remote_id)
        if self._stream is not None and link.state == LinkState.NEW:
            await self._offer(remote_id)
        return link

    async def handle_answer(self, remote_id: str, sdp: str, sdp_type: str = "answer") -> bool:
        link = self.links.get(remote_id)
        if link is None or link.state != LinkState.NEGOTIATING:
            logger.info(f"[peer:{remote_id}] ignoring answer in state {link.state.value if link else 'missing'}")
            return False
        try:
            await link.pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type=sdp_type))
            await self._flush_candidates(link)
        except Exception as e:
            logger.error(f"[peer:{remote_id}] failed to apply answer: {e}")
            await self.teardown(remote_id)
            return False
        if link.state == LinkState.NEGOTIATING:
            self._set_state(link, LinkState.CONNECTED)
        return True

    async def _offer(self, remote_id: str) -> None:
        link = self.links.get(remote_id)
        if link is None or link.state != LinkState.NEW or self._stream is None:
            return
        try:
            self._attach_tracks(link, self._stream)
            self._set_state(link, LinkState.NEGOTIATING)
            offer = await link.pc.createOffer()
            await link.pc.setLocalDescription(offer)
            local = link.pc.localDescription
            await self.channel.send({
                "type": "offer",
                "target": remote_id,
                "sdp": local.sdp,
                "sdp_type": local.type,
            })
            logger.info(f"[peer:{remote_id}] offer sent ({len(link.local_tracks)} tracks)")
        except Exception as e:
            logger.error(f"[peer:{remote_id}] offer negotiation failed: {e}")
            await self.teardown(remote_id)

    def _attach_tracks(self, link: PeerLink, stream: LocalMediaStream) -> None:
        for track in stream.get_tracks():
            if track.id in link.source_track_ids:
                continue
            outbound = self._relay.subscribe(track) if self._relay is not None else track
            link.pc.addTrack(outbound)
            link.local_tracks.append(outbound)
            link.source_track_ids.add(track.id)

    # ── viewer side ──────────────────────────────────────────────────

    async def handle_offer(self, remote_id: str, sdp: str, sdp_type: str = "offer") -> bool:
        """Answer an offer. Ignored once the link is past negotiation (no renegotiation)."""
        link = self.links.get(remote_id) or self.create_link(remote_id)
        if link.state not in (LinkState.NEW, LinkState.NEGOTIATING):
            logger.info(f"[peer:{remote_id}] ignoring offer in state {link.state.value}")
            return False
        try:
            self._set_state(link, LinkState.NEGOTIATING)
            await link.pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type=sdp_type))
            await self._flush_candidates(link)
            answer = await link.pc.createAnswer()
            await link.pc.setLocalDescription(answer)
            local = link.pc.localDescription
            await self.channel.send({
                "type": "answer",
                "target": remote_id,
                "sdp": local.sdp,
                "sdp_type": local.type,
            })
            logger.info(f"[peer:{remote_id}] answer sent")
            return True
        except Exception as e:
            logger.error(f"[peer:{remote_id}] failed to answer offer: {e}")
            await self.teardown(remote_id)
            return False

    # ── ICE ──────────────────────────────────────────────────────────

    async def handle_remote_candidate(self, remote_id: str, payload: IceCandidatePayload) -> None:
        link = self.links.get(remote_id)
        if link is None:
            logger.debug(f"[peer:{remote_id}] candidate for unknown link dropped")
            return
        try:
            candidate = parse_candidate(payload)
        except ValueError as e:
            logger.warning(f"[peer:{remote_id}] malformed candidate: {e}")
            return
        if candidate is None:
            return
        if link.pc.remoteDescription is None:
            link.pending_candidates.append(candidate)
            return
        await self._add_candidate(link, candidate)

    async def _flush_candidates(self, link: PeerLink) -> None:
        pending, link.pending_candidates = link.pending_candidates, []
        for candidate in pending:
            await self._add_candidate(link, candidate)

    async def _add_candidate(self, link: PeerLink, candidate) -> None:
        try:
            await link.pc.addIceCandidate(candidate)
        except Exception as e:
            logger.warning(f"[peer:{link.remote_id}] error adding ICE candidate: {e}")

    async def _send_candidate(self, remote_id: str, candidate) -> None:
        try:
            await self.channel.send({
                "type": "ice-candidate",
                "target": remote_id,
                "candidate": {
                    "candidate": "candidate:" + candidate_to_sdp(candidate),
                    "sdpMid": candidate.sdpMid,
                    "sdpMLineIndex": candidate.sdpMLineIndex,
                },
            })
        except Exception as e:
            logger.warning(f"[peer:{remote_id}] failed to forward ICE candidate: {e}")

    # ── state ────────────────────────────────────────────────────────

    async def _on_connection_state(self, link: PeerLink) -> None:
        state = link.pc.connectionState
        logger.info(f"[peer:{link.remote_id}] connection state: {state}")
        if link.state == LinkState.CLOSED:
            return
        if state == "connected":
            self._set_state(link, LinkState.CONNECTED)
        elif state == "disconnected":
            self._set_state(link, LinkState.DISCONNECTED)
        elif state in ("failed", "closed"):
            await self.teardown(link.remote_id)

    def _set_state(self, link: PeerLink, state: LinkState) -> None:
        if link.state == state:
            return
        link.state = state
        if self.on_state_change is not None:
            try:
                self.on_state_change(link)
            except Exception:
                logger.exception(f"[peer:{link.remote_id}] state listener failed")

    def snapshot(self) -> List[dict]:
        return [link.snapshot() for link in self.links.values()]
