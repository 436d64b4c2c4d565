import asyncio
import gzip
import io
import json
import os
import sys

import pytest
from PIL import Image

from stickerbridge.core.errors import FetchError, RasterHeaderError
from stickerbridge.core.models import (
    FetchedFile,
    ImportOptions,
    NormalizedPayload,
    NormalizeOptions,
    SourcePack,
    SourceSticker,
    StickerDescriptor,
)
from stickerbridge.services import fingerprint_store
from stickerbridge.services.fingerprint_store import FingerprintStore
from stickerbridge.services.importer import ImportPipeline
from stickerbridge.services.media_converter import FormatNormalizer


def _webp(seed: int) -> bytes:
    buf = io.BytesIO()
    Image.new("RGBA", (64, 64), (seed * 40 % 256, 10, 200, 255)).save(buf, format="WEBP")
    return buf.getvalue()


def _pack(count: int, name: str = "demo") -> SourcePack:
    return SourcePack.from_descriptors(
        name=name,
        title=name.title(),
        descriptors=[
            StickerDescriptor(
                emoji=f"e{i}",
                file_id=f"file{i}",
                file_unique_id=f"uniq{i}",
                width=64,
                height=64,
            )
            for i in range(count)
        ],
    )


class FakeSource:
    def __init__(
        self,
        files: dict[str, bytes],
        delays: dict[int, float] | None = None,
        flaky: dict[str, int] | None = None,
    ) -> None:
        self._files = files
        self._delays = delays or {}
        self._flaky = dict(flaky or {})
        self.fetched: list[int] = []

    async def fetch_metadata(self, pack_name: str) -> SourcePack:
        raise NotImplementedError

    async def fetch_sticker(self, sticker: SourceSticker) -> FetchedFile:
        await asyncio.sleep(self._delays.get(sticker.position, 0))
        if self._flaky.get(sticker.file_id, 0) > 0:
            self._flaky[sticker.file_id] -= 1
            raise FetchError(f"temporary failure for {sticker.file_id}")
        self.fetched.append(sticker.position)
        return FetchedFile(
            content=self._files[sticker.file_id],
            file_path=f"stickers/{sticker.file_id}.webp",
        )


class FakeUploader:
    def __init__(self) -> None:
        self.uploads: list[tuple[str, str]] = []

    async def upload(self, content: bytes, mimetype: str, file_name: str) -> str:
        self.uploads.append((file_name, mimetype))
        return f"mxc://example.org/{file_name}"


def _pipeline(source, uploader, store, normalizer=None) -> ImportPipeline:
    return ImportPipeline(
        source=source,
        uploader=uploader,
        normalizer=normalizer or FormatNormalizer(),
        store=store,
        retry_delay=0,
    )


def _files(count: int) -> dict[str, bytes]:
    return {f"file{i}": _webp(i) for i in range(count)}


def test_partial_failure_is_reported_by_position(tmp_path) -> None:
    files = _files(5)
    files["file2"] = b"this is not an image"
    store = FingerprintStore.load(tmp_path / "uploads.jsonl")
    pipeline = _pipeline(FakeSource(files), FakeUploader(), store)

    result = asyncio.run(pipeline.import_pack(_pack(5), ImportOptions()))

    assert [record.position for record in result.records] == [0, 1, 3, 4]
    assert len(result.failures) == 1
    assert result.failures[0].position == 2
    assert result.failures[0].emoji == "e2"
    assert isinstance(result.failures[0].error, RasterHeaderError)
    assert result.cancelled == []
    assert result.positions() == set(range(5))


def test_records_keep_pack_order_regardless_of_completion(tmp_path) -> None:
    count = 6
    delays = {i: 0.02 * (count - i) for i in range(count)}
    source = FakeSource(_files(count), delays=delays)
    uploader = FakeUploader()
    store = FingerprintStore.load(tmp_path / "uploads.jsonl")

    result = asyncio.run(
        _pipeline(source, uploader, store).import_pack(
            _pack(count), ImportOptions(concurrency=count)
        )
    )

    # 延迟与位置成反比，完成顺序是倒序
    assert source.fetched == list(reversed(range(count)))
    assert [record.position for record in result.records] == list(range(count))
    assert [record.file_id for record in result.records] == [f"file{i}" for i in range(count)]


def test_record_fields(tmp_path) -> None:
    store = FingerprintStore.load(tmp_path / "uploads.jsonl")
    result = asyncio.run(
        _pipeline(FakeSource(_files(1)), FakeUploader(), store).import_pack(
            _pack(1), ImportOptions()
        )
    )

    record = result.records[0]
    assert record.reference == "mxc://example.org/file0.webp"
    assert record.file_id == "file0"
    assert record.emoji == "e0"
    assert (record.width, record.height) == (64, 64)
    assert record.file_size == len(_webp(0))
    assert record.mimetype == "image/webp"
    assert record.deduplicated is False
    assert len(record.fingerprint) == 128


def test_second_run_reuses_references_without_upload(tmp_path) -> None:
    path = tmp_path / "uploads.jsonl"
    files = _files(3)

    first_uploader = FakeUploader()
    first = asyncio.run(
        _pipeline(FakeSource(files), first_uploader, FingerprintStore.load(path)).import_pack(
            _pack(3), ImportOptions()
        )
    )
    assert len(first_uploader.uploads) == 3

    second_uploader = FakeUploader()
    second = asyncio.run(
        _pipeline(FakeSource(files), second_uploader, FingerprintStore.load(path)).import_pack(
            _pack(3, name="other"), ImportOptions()
        )
    )

    assert second_uploader.uploads == []
    assert [r.reference for r in second.records] == [r.reference for r in first.records]
    assert [r.fingerprint for r in second.records] == [r.fingerprint for r in first.records]
    assert second.skipped_duplicates == 3
    # 命中的记录不会重复写入
    assert len(path.read_text(encoding="utf-8").splitlines()) == 3


def test_identical_content_in_one_pack_is_stored_once(tmp_path) -> None:
    path = tmp_path / "uploads.jsonl"
    same = _webp(7)
    files = {"file0": same, "file1": same}
    uploader = FakeUploader()

    result = asyncio.run(
        _pipeline(FakeSource(files), uploader, FingerprintStore.load(path)).import_pack(
            _pack(2), ImportOptions()
        )
    )

    assert len(result.records) == 2
    assert result.records[0].fingerprint == result.records[1].fingerprint
    assert result.records[0].reference == result.records[1].reference
    assert len(uploader.uploads) == 1
    assert result.skipped_duplicates == 1
    assert len(path.read_text(encoding="utf-8").splitlines()) == 1


def test_no_upload_mode_excludes_stickers_but_saves(tmp_path) -> None:
    store = FingerprintStore.load(tmp_path / "uploads.jsonl")
    save_dir = tmp_path / "stickers"
    options = ImportOptions(upload=False, save_dir=str(save_dir))

    result = asyncio.run(
        _pipeline(FakeSource(_files(4)), None, store).import_pack(_pack(4), options)
    )

    assert result.records == []
    assert result.failures == []
    assert result.excluded == 4
    assert sorted(p.name for p in (save_dir / "demo").iterdir()) == [
        f"file{i}.webp" for i in range(4)
    ]
    assert len(store) == 0


def test_no_upload_mode_still_reports_normalize_errors(tmp_path) -> None:
    files = _files(3)
    files["file1"] = b"broken"
    store = FingerprintStore.load(tmp_path / "uploads.jsonl")

    result = asyncio.run(
        _pipeline(FakeSource(files), None, store).import_pack(
            _pack(3), ImportOptions(upload=False)
        )
    )

    assert result.records == []
    assert [failure.position for failure in result.failures] == [1]
    assert result.excluded == 2


def test_transient_fetch_error_is_retried(tmp_path) -> None:
    source = FakeSource(_files(2), flaky={"file1": 2})
    store = FingerprintStore.load(tmp_path / "uploads.jsonl")

    result = asyncio.run(_pipeline(source, FakeUploader(), store).import_pack(_pack(2), ImportOptions()))

    assert [record.position for record in result.records] == [0, 1]
    assert result.failures == []


def test_persistent_fetch_error_fails_only_that_sticker(tmp_path) -> None:
    source = FakeSource(_files(3), flaky={"file0": 10})
    store = FingerprintStore.load(tmp_path / "uploads.jsonl")

    result = asyncio.run(_pipeline(source, FakeUploader(), store).import_pack(_pack(3), ImportOptions()))

    assert [record.position for record in result.records] == [1, 2]
    assert isinstance(result.failures[0].error, FetchError)


def test_unexpected_exception_is_captured(tmp_path) -> None:
    class ExplodingNormalizer:
        async def normalize(self, content: bytes, hint: str, options: NormalizeOptions) -> NormalizedPayload:
            if hint.endswith("file1.webp"):
                raise RuntimeError("boom")
            return NormalizedPayload(content=content, width=1, height=1, file_name=hint)

    store = FingerprintStore.load(tmp_path / "uploads.jsonl")
    pipeline = _pipeline(FakeSource(_files(3)), FakeUploader(), store, ExplodingNormalizer())

    result = asyncio.run(pipeline.import_pack(_pack(3), ImportOptions()))

    assert [record.position for record in result.records] == [0, 2]
    assert isinstance(result.failures[0].error, RuntimeError)


def test_timeout_keeps_completed_work(tmp_path) -> None:
    delays = {0: 0, 1: 0, 2: 5.0, 3: 5.0}
    path = tmp_path / "uploads.jsonl"
    store = FingerprintStore.load(path)
    source = FakeSource(_files(4), delays=delays)

    result = asyncio.run(
        _pipeline(source, FakeUploader(), store).import_pack(
            _pack(4), ImportOptions(concurrency=1, timeout=0.5)
        )
    )

    assert [record.position for record in result.records] == [0, 1]
    assert result.cancelled == [2, 3]
    assert result.positions() == set(range(4))
    assert len(path.read_text(encoding="utf-8").splitlines()) == 2


def test_stop_event_prevents_dispatch(tmp_path) -> None:
    async def _run():
        stop = asyncio.Event()
        stop.set()
        store = FingerprintStore.load(tmp_path / "uploads.jsonl")
        return await _pipeline(FakeSource(_files(3)), FakeUploader(), store).import_pack(
            _pack(3), ImportOptions(stop_event=stop)
        )

    result = asyncio.run(_run())

    assert result.records == []
    assert result.cancelled == [0, 1, 2]


def test_store_write_failure_degrades_without_aborting(
    tmp_path, monkeypatch: pytest.MonkeyPatch
) -> None:
    def _broken_fsync(fd: int) -> None:
        raise OSError("read-only file system")

    store = FingerprintStore.load(tmp_path / "uploads.jsonl")
    monkeypatch.setattr(fingerprint_store.os, "fsync", _broken_fsync)

    result = asyncio.run(
        _pipeline(FakeSource(_files(3)), FakeUploader(), store).import_pack(
            _pack(3), ImportOptions()
        )
    )

    assert len(result.records) == 3
    assert store.degraded is True
    assert any("read-only file system" in warning for warning in result.warnings)
    for record in result.records:
        assert store.lookup(record.fingerprint) == record.reference


def test_empty_pack_produces_empty_result(tmp_path) -> None:
    store = FingerprintStore.load(tmp_path / "uploads.jsonl")
    result = asyncio.run(
        _pipeline(FakeSource({}), FakeUploader(), store).import_pack(_pack(0), ImportOptions())
    )

    assert result.records == []
    assert result.failures == []
    assert result.cancelled == []


def test_upload_requires_uploader(tmp_path) -> None:
    store = FingerprintStore.load(tmp_path / "uploads.jsonl")
    with pytest.raises(ValueError):
        asyncio.run(_pipeline(FakeSource(_files(1)), None, store).import_pack(_pack(1), ImportOptions()))


def test_concurrent_identical_content_shares_one_upload(tmp_path) -> None:
    class SlowUploader(FakeUploader):
        async def upload(self, content: bytes, mimetype: str, file_name: str) -> str:
            await asyncio.sleep(0.05)
            return await super().upload(content, mimetype, file_name)

    path = tmp_path / "uploads.jsonl"
    same = _webp(3)
    uploader = SlowUploader()

    result = asyncio.run(
        _pipeline(
            FakeSource({f"file{i}": same for i in range(3)}),
            uploader,
            FingerprintStore.load(path),
        ).import_pack(_pack(3), ImportOptions(concurrency=3))
    )

    assert len(uploader.uploads) == 1
    assert len({record.reference for record in result.records}) == 1
    assert result.skipped_duplicates == 2
    assert len(path.read_text(encoding="utf-8").splitlines()) == 1


@pytest.mark.skipif(sys.platform == "win32", reason="需要 POSIX shell")
def test_timeout_stops_running_converter(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    pid_file = tmp_path / "converter.pid"
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    script = bin_dir / "lottie_convert.py"
    script.write_text(f"#!/bin/sh\necho $$ > {pid_file}\nexec sleep 5\n")
    script.chmod(0o755)
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")

    class TgsSource(FakeSource):
        async def fetch_sticker(self, sticker: SourceSticker) -> FetchedFile:
            document = json.dumps({"w": 64, "h": 64}).encode("utf-8")
            return FetchedFile(
                content=gzip.compress(document),
                file_path=f"stickers/{sticker.file_id}.tgs",
            )

    store = FingerprintStore.load(tmp_path / "uploads.jsonl")
    result = asyncio.run(
        _pipeline(TgsSource({}), FakeUploader(), store).import_pack(
            _pack(1), ImportOptions(timeout=0.5)
        )
    )

    assert result.cancelled == [0]
    pid = int(pid_file.read_text().strip())
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)
