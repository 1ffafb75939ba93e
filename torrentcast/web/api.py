"""JSON and streaming endpoints for torrentcast."""

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Awaitable

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import Response, StreamingResponse
from pydantic import AliasChoices, BaseModel, Field
from starlette.background import BackgroundTask

from ..errors import ClientDisconnected, NotFound
from ..subtitles import needs_conversion, srt_to_vtt
from ..torrent import PiecePriority, TorrentSession
from .streaming import ByteRange, RangeStreamer, content_type_for, parse_range_header

if TYPE_CHECKING:
    from ..orchestrator import TorrentCast

logger = logging.getLogger(__name__)

router = APIRouter(tags=["streaming"])

VTT_MEDIA_TYPE = "text/vtt"


# =============================================================================
# Pydantic Models
# =============================================================================


class AddTorrentRequest(BaseModel):
    """Request to add a torrent."""

    locator: str | None = Field(
        default=None,
        validation_alias=AliasChoices("locator", "magnetUri", "magnet_uri"),
        description="Magnet link or info hash",
    )


class TorrentFileResponse(BaseModel):
    """A file inside a torrent."""

    index: int
    name: str
    length: int
    kind: str


class TorrentResponse(BaseModel):
    """Torrent identity and file list."""

    info_hash: str
    name: str
    files: list[TorrentFileResponse]


class TorrentStatusResponse(TorrentResponse):
    """Live torrent status."""

    progress: float
    download_speed: int
    upload_speed: int
    peers: int
    seeds: int


class SubtitleTrackResponse(BaseModel):
    """An embedded subtitle track."""

    index: int
    codec: str
    language: str
    title: str
    forced: bool
    default: bool


class RemoveResponse(BaseModel):
    """Result of removing a torrent."""

    success: bool


# =============================================================================
# Helpers
# =============================================================================


def get_torrentcast(request: Request) -> "TorrentCast":
    """Get the streaming core from app state."""
    torrentcast = getattr(request.app.state, "torrentcast", None)
    if torrentcast is None:
        raise HTTPException(status_code=503, detail="Streaming core not initialized")
    return torrentcast


def _files_response(session: TorrentSession) -> list[TorrentFileResponse]:
    return [
        TorrentFileResponse(index=f.index, name=f.name, length=f.size, kind=f.kind.value)
        for f in session.files
    ]


async def _wait_for_whole_file(torrentcast: "TorrentCast", session: TorrentSession, file_index: int) -> None:
    file = session.file(file_index)
    await torrentcast.scheduler.prefetch(session, file_index, 0, file.size, priority=PiecePriority.NORMAL)


async def _watch_disconnect(request: Request, poll_interval: float) -> None:
    while not await request.is_disconnected():
        await asyncio.sleep(poll_interval)


async def _unless_disconnected(request: Request, wait: Awaitable[Any], poll_interval: float) -> Any:
    """Await ``wait``, cancelling it if the client goes away first.

    Nothing observes the connection until a response exists, so every wait
    that runs before the status line is sent goes through here.

    Raises:
        ClientDisconnected: The client left; ``wait`` has been cancelled
    """
    work = asyncio.ensure_future(wait)
    watcher = asyncio.create_task(_watch_disconnect(request, poll_interval))
    try:
        await asyncio.wait({work, watcher}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        watcher.cancel()
        if not work.done():
            work.cancel()
            await asyncio.wait({work})

    if work.cancelled():
        raise ClientDisconnected(f"Client left {request.url.path} before the response started")
    return work.result()


# =============================================================================
# Torrent Endpoints
# =============================================================================


@router.post("/torrent", response_model=TorrentResponse)
async def add_torrent(request: Request, add_request: AddTorrentRequest | None = None):
    """Add a torrent, or return the existing session for it."""
    torrentcast = get_torrentcast(request)

    locator = (add_request.locator if add_request else None) or ""
    if not locator.strip():
        raise HTTPException(status_code=400, detail="locator is required")

    logger.info(f"Adding torrent: {locator[:80]}")
    session = await torrentcast.registry.add(locator)

    return TorrentResponse(
        info_hash=session.info_hash,
        name=session.name,
        files=_files_response(session),
    )


@router.get("/torrent/{info_hash}", response_model=TorrentStatusResponse)
async def get_torrent(request: Request, info_hash: str):
    """Get torrent status."""
    torrentcast = get_torrentcast(request)
    session = torrentcast.registry.get(info_hash)
    status = torrentcast.registry.status(info_hash)

    return TorrentStatusResponse(
        info_hash=session.info_hash,
        name=status.name,
        files=_files_response(session),
        progress=status.progress,
        download_speed=status.download_speed,
        upload_speed=status.upload_speed,
        peers=status.peers,
        seeds=status.seeds,
    )


@router.delete("/torrent/{info_hash}", response_model=RemoveResponse)
async def remove_torrent(request: Request, info_hash: str):
    """Tear down a torrent session and delete its data."""
    torrentcast = get_torrentcast(request)
    await torrentcast.registry.remove(info_hash)
    return RemoveResponse(success=True)


# =============================================================================
# Streaming Endpoints
# =============================================================================


@router.get("/stream/{info_hash}/{file_index}")
async def stream_file(request: Request, info_hash: str, file_index: int):
    """Stream a file, honouring the Range header."""
    torrentcast = get_torrentcast(request)
    session = torrentcast.registry.get(info_hash)
    file = session.file(file_index)
    media_type = content_type_for(file)

    byte_range = parse_range_header(request.headers.get("range"), file.size)
    headers = {"Accept-Ranges": "bytes"}

    if file.size == 0:
        return Response(content=b"", headers=headers, media_type=media_type)

    if byte_range is None:
        status_code = 200
        byte_range = ByteRange(0, file.size - 1, file.size)
    else:
        status_code = 206
        headers["Content-Range"] = byte_range.content_range
    headers["Content-Length"] = str(byte_range.length)

    logger.info(f"Streaming {file.name} [{byte_range.start}-{byte_range.end}]")
    streamer = RangeStreamer(torrentcast.scheduler, chunk_size=torrentcast.config.chunk_size)
    try:
        body = await _unless_disconnected(
            request,
            streamer.open(session, file_index, byte_range),
            torrentcast.config.poll_interval,
        )
    except ClientDisconnected:
        torrentcast.scheduler.release(session.info_hash, file_index)
        raise

    return StreamingResponse(
        body,
        status_code=status_code,
        headers=headers,
        media_type=media_type,
    )


# =============================================================================
# Subtitle Endpoints
# =============================================================================


@router.get("/subtitles/{info_hash}/{file_index}", response_model=list[SubtitleTrackResponse])
async def list_subtitles(request: Request, info_hash: str, file_index: int):
    """List embedded subtitle tracks. An empty list is a normal answer."""
    torrentcast = get_torrentcast(request)
    session = torrentcast.registry.get(info_hash)
    tracks = await _unless_disconnected(
        request,
        torrentcast.prober.probe(session, file_index),
        torrentcast.config.poll_interval,
    )
    return [SubtitleTrackResponse(**t.to_dict()) for t in tracks]


@router.get("/subtitles/{info_hash}/{file_index}/{track_index}")
async def extract_subtitle(request: Request, info_hash: str, file_index: int, track_index: int):
    """Extract an embedded subtitle track as a WebVTT stream."""
    torrentcast = get_torrentcast(request)
    session = torrentcast.registry.get(info_hash)
    file = session.file(file_index)

    known = torrentcast.probe_cache.get(session.info_hash, file_index)
    if known is not None and track_index not in {t.index for t in known}:
        raise NotFound(f"Subtitle stream {track_index} not found in {file.name}")

    await _unless_disconnected(
        request,
        _wait_for_whole_file(torrentcast, session, file_index),
        torrentcast.config.poll_interval,
    )
    extraction = await torrentcast.extractor.start(session.file_path(file_index), track_index)

    return StreamingResponse(
        extraction.chunks(),
        media_type=VTT_MEDIA_TYPE,
        headers={"Cache-Control": "no-cache"},
        background=BackgroundTask(extraction.aclose),
    )


@router.get("/sidecar-subtitle/{info_hash}/{file_index}")
async def sidecar_subtitle(request: Request, info_hash: str, file_index: int):
    """Serve a standalone subtitle file as WebVTT, converting SubRip."""
    torrentcast = get_torrentcast(request)
    session = torrentcast.registry.get(info_hash)
    file = session.file(file_index)

    await _unless_disconnected(
        request,
        _wait_for_whole_file(torrentcast, session, file_index),
        torrentcast.config.poll_interval,
    )
    data = await asyncio.to_thread(session.file_path(file_index).read_bytes)

    if needs_conversion(file.name):
        logger.info(f"Converting {file.name} to WebVTT")
        data = srt_to_vtt(data.decode("utf-8", errors="replace")).encode("utf-8")

    return Response(
        content=data,
        media_type=VTT_MEDIA_TYPE,
        headers={"Cache-Control": "public, max-age=31536000"},
    )
