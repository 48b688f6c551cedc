from __future__ import annotations

import json
import re
from collections.abc import AsyncGenerator, Awaitable, Callable, Sequence
from pathlib import Path
from typing import Any

import pytest
from PIL import Image

from media_backend.config import Settings, settings
from media_backend.db import dispose_engine, init_db, reset_engine_cache, session_scope
from media_backend.errors import TransientToolError
from media_backend.events import InProcessEventBus
from media_backend.fs_utils import new_tmp_path
from media_backend.models import User
from media_backend.services.pipeline import MediaPipeline, build_media_pipeline
from media_backend.spawn import ToolResult


@pytest.fixture(scope="module")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
async def _dispose_engine_per_test(  # pyright: ignore[reportUnusedFunction]
    anyio_backend: object,  # noqa: ARG001
) -> AsyncGenerator[None, None]:
    # Dispose the cached AsyncEngine (aiosqlite worker thread) while the
    # per-test event loop is still alive.
    _ = anyio_backend
    yield
    await dispose_engine()


@pytest.fixture
async def db(tmp_path: Path) -> AsyncGenerator[None, None]:
    old_db = settings.database_url
    settings.database_url = f"sqlite:///{tmp_path / 'test.db'}"
    reset_engine_cache()
    await init_db()
    try:
        yield
    finally:
        await dispose_engine()
        settings.database_url = old_db
        reset_engine_cache()


def make_settings(tmp_path: Path, **overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "attachments_storage_type": "fs",
        "attachments_local_dir": str(tmp_path / "media"),
        "attachments_tmp_dir": str(tmp_path / "tmp"),
        "attachments_url": "http://test/media/",
        "attachments_path": "attachments/",
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def events() -> list[tuple[str, str]]:
    return []


@pytest.fixture
def pipeline_factory(
    tmp_path: Path, events: list[tuple[str, str]]
) -> Callable[..., MediaPipeline]:
    def _factory(**overrides: Any) -> MediaPipeline:
        bus = InProcessEventBus()

        async def _record(event: str, entity_id: str) -> None:
            events.append((event, entity_id))

        bus.subscribe(_record)
        return build_media_pipeline(make_settings(tmp_path, **overrides), events=bus)

    return _factory


@pytest.fixture
def pipeline(pipeline_factory: Callable[..., MediaPipeline]) -> MediaPipeline:
    return pipeline_factory()


@pytest.fixture
def stage(pipeline: MediaPipeline) -> Callable[[bytes], Path]:
    """Write an upload into the staging dir, like the upload route does."""

    def _stage(data: bytes) -> Path:
        path = new_tmp_path(pipeline.settings.attachments_tmp_dir)
        path.write_bytes(data)
        return path

    return _stage


@pytest.fixture
def create_user() -> Callable[..., Awaitable[User]]:
    async def _create(
        username: str = "u1", token: str | None = None, sanitize: bool = False
    ) -> User:
        async with session_scope() as session:
            user = User(
                username=username,
                token=token or f"tok-{username}",
                sanitize_media_metadata=sanitize,
                is_active=True,
            )
            session.add(user)
            await session.commit()
            await session.refresh(user)
            return user

    return _create


def image_bytes(
    size: tuple[int, int],
    fmt: str = "PNG",
    *,
    color: tuple[int, int, int] = (10, 120, 200),
    orientation: int | None = None,
) -> bytes:
    import io

    img = Image.new("RGB", size, color)
    buf = io.BytesIO()
    if orientation is not None:
        exif = Image.Exif()
        exif[0x0112] = orientation
        img.save(buf, fmt, exif=exif)
    else:
        img.save(buf, fmt)
    return buf.getvalue()


def animated_gif_bytes(size: tuple[int, int], frames: int = 3) -> bytes:
    import io

    images = [Image.new("RGB", size, (i * 60 % 256, 20, 200)) for i in range(frames)]
    buf = io.BytesIO()
    images[0].save(buf, "GIF", save_all=True, append_images=images[1:], duration=100, loop=0)
    return buf.getvalue()


def video_probe(
    width: int,
    height: int,
    *,
    duration: float = 10.0,
    audio: str | None = "aac",
    format_name: str = "mov,mp4,m4a,3gp,3g2,mj2",
    tags: dict[str, str] | None = None,
) -> dict[str, Any]:
    streams: list[dict[str, Any]] = [
        {"codec_type": "video", "codec_name": "h264", "width": width, "height": height}
    ]
    if audio:
        streams.append({"codec_type": "audio", "codec_name": audio})
    return {
        "format": {"format_name": format_name, "duration": str(duration), "tags": tags or {}},
        "streams": streams,
    }


def audio_probe(
    *, duration: float = 3.5, format_name: str = "mp3", tags: dict[str, Any] | None = None
) -> dict[str, Any]:
    return {
        "format": {"format_name": format_name, "duration": str(duration), "tags": tags or {}},
        "streams": [{"codec_type": "audio", "codec_name": "mp3"}],
    }


def _flatten(args: Sequence[str | Sequence[str]]) -> list[str]:
    out: list[str] = []
    for a in args:
        if isinstance(a, str):
            out.append(a)
        else:
            out.extend(a)
    return out


class FakeTools:
    """Stands in for ffprobe/ffmpeg/exiftool.

    Probe results are keyed by file content, so the same fake media works
    wherever the pipeline moves it.
    """

    def __init__(self) -> None:
        self.probes: dict[bytes, dict[str, Any]] = {}
        self.calls: list[tuple[str, list[str]]] = []
        self.fail: set[str] = set()
        self.tags: dict[str, Any] = {}
        self.exif_writes: list[list[str]] = []

    def register(self, content: bytes, probe: dict[str, Any]) -> bytes:
        self.probes[content] = probe
        return content

    def count(self, command: str) -> int:
        return sum(1 for c, _ in self.calls if c == command)

    async def run(
        self, command: str, args: Sequence[str | Sequence[str]], *, timeout: float
    ) -> ToolResult:
        _ = timeout
        argv = _flatten(args)
        self.calls.append((command, argv))
        if command in self.fail:
            raise TransientToolError(f"{command}: exited with code 1\nInvalid data")
        if command == "ffprobe":
            return self._ffprobe(argv)
        if command == "ffmpeg":
            return self._ffmpeg(argv)
        if command == "exiftool":
            return self._exiftool(argv)
        raise TransientToolError(f"{command}: cannot start")

    def _probe_for(self, path: Path) -> dict[str, Any]:
        probe = self.probes.get(path.read_bytes())
        if probe is None:
            raise TransientToolError("ffprobe: exited with code 1\nInvalid data")
        return probe

    def _ffprobe(self, argv: list[str]) -> ToolResult:
        probe = self._probe_for(Path(argv[argv.index("-i") + 1]))
        return ToolResult(stdout=json.dumps(probe).encode(), stderr="")

    def _ffmpeg(self, argv: list[str]) -> ToolResult:
        probe = self._probe_for(Path(argv[argv.index("-i") + 1]))
        video = next(s for s in probe["streams"] if s["codec_type"] == "video")
        graph = argv[argv.index("-filter_complex") + 1]
        m = re.search(r"\[0:v:0\](?:scale|crop)=(\d+):(\d+)", graph)
        size = (int(m[1]), int(m[2])) if m else (int(video["width"]), int(video["height"]))
        for arg in argv:
            if ".variant." not in arg:
                continue
            out = Path(arg)
            if out.suffix == ".webp":
                Image.new("RGB", size, (200, 30, 30)).save(out, "WEBP")
            else:
                out.write_bytes(b"FAKE-MP4:" + out.name.encode())
        return ToolResult(stdout=b"", stderr="")

    def _exiftool(self, argv: list[str]) -> ToolResult:
        if "-json" in argv:
            rows = [{"SourceFile": argv[-1], **self.tags}]
            return ToolResult(stdout=json.dumps(rows).encode(), stderr="")
        removed = [a[1:-1] for a in argv if a.startswith("-") and a.endswith("=")]
        for tag in removed:
            self.tags.pop(tag, None)
        self.exif_writes.append(removed)
        return ToolResult(stdout=b"    1 image files updated\n", stderr="")


@pytest.fixture
def fake_tools(monkeypatch: pytest.MonkeyPatch) -> FakeTools:
    tools = FakeTools()
    for module in (
        "media_backend.media.detect",
        "media_backend.media.process",
        "media_backend.media.sanitize",
    ):
        monkeypatch.setattr(f"{module}.run_tool", tools.run)
    return tools


def stored_files(root: Path) -> list[str]:
    if not root.exists():
        return []
    return sorted(str(p.relative_to(root)) for p in root.rglob("*") if p.is_file())
