import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from stickerbridge.core.errors import FetchError, SaveError, StickerBridgeError, UploadError
from stickerbridge.core.models import (
    ImportFailure,
    ImportOptions,
    ImportRecord,
    ImportResult,
    NormalizedPayload,
    SourcePack,
    SourceSticker,
)
from stickerbridge.core.ports import (
    MediaNormalizer,
    ProgressReporter,
    StickerSource,
    StickerUploader,
)
from stickerbridge.services.fingerprint_store import FingerprintStore, compute_fingerprint
from stickerbridge.services.progress import LoggingProgress
from stickerbridge.utils.retry import retry_async

logger = logging.getLogger(__name__)

ProgressFactory = Callable[[int, str], ProgressReporter]
# 同一次导入中正在上传的指纹 -> 上传结果；上传失败时结果为 None
InflightUploads = dict[str, asyncio.Future[str | None]]


@dataclass(slots=True)
class _StickerOutcome:
    sticker: SourceSticker
    record: ImportRecord | None = None
    error: Exception | None = None


class ImportPipeline:
    """
    编排单个表情包的导入：下载 -> 归一化 -> (保存) -> 指纹查重 -> 上传 -> 汇总。

    单个贴纸的失败只记录在结果的 failures 中，不影响同一表情包里的其他贴纸。
    """

    def __init__(
        self,
        source: StickerSource,
        uploader: StickerUploader | None,
        normalizer: MediaNormalizer,
        store: FingerprintStore,
        transfer_attempts: int = 3,
        retry_delay: float = 1.0,
        progress_factory: ProgressFactory = LoggingProgress,
    ) -> None:
        self._source = source
        self._uploader = uploader
        self._normalizer = normalizer
        self._store = store
        self._transfer_attempts = transfer_attempts
        self._retry_delay = retry_delay
        self._progress_factory = progress_factory

    async def import_pack(self, pack: SourcePack, options: ImportOptions) -> ImportResult:
        logger.info("导入 Telegram 表情包 %s(%s)", pack.title, pack.name)
        if pack.is_video:
            logger.warning("表情包 %s 包含视频贴纸，视频贴纸需要 ffmpeg 转换为 GIF", pack.name)
        if options.upload and self._uploader is None:
            raise ValueError("开启上传时必须提供 uploader")

        warnings_before = len(self._store.warnings)
        progress = self._progress_factory(len(pack.stickers), pack.name)
        outcomes = await self._run_workers(pack, options, progress)

        result = _reduce(pack, outcomes)
        if options.upload:
            new_entries = [
                (record.fingerprint, record.reference)
                for record in result.records
                if not record.deduplicated
            ]
            written = await asyncio.to_thread(self._store.extend, new_entries)
            logger.debug("指纹库新增 %s 条记录（待写入 %s 条）", written, len(new_entries))
        result.warnings.extend(self._store.warnings[warnings_before:])

        if result.cancelled:
            logger.warning(
                "表情包 %s 导入被中断，%s 个贴纸未处理",
                pack.name,
                len(result.cancelled),
            )
        if options.upload and not result.records:
            logger.warning("导入的表情包 %s 为空", pack.name)

        logger.info(
            "表情包 %s 导入结束: 成功 %s（重复跳过上传 %s） / 失败 %s / 总计 %s",
            pack.name,
            len(result.records),
            result.skipped_duplicates,
            len(result.failures),
            len(pack.stickers),
        )
        return result

    async def _run_workers(
        self,
        pack: SourcePack,
        options: ImportOptions,
        progress: ProgressReporter,
    ) -> list[_StickerOutcome]:
        queue: asyncio.Queue[SourceSticker] = asyncio.Queue()
        for sticker in pack.stickers:
            queue.put_nowait(sticker)

        outcomes: list[_StickerOutcome] = []
        inflight: InflightUploads = {}
        worker_count = max(1, min(options.concurrency, len(pack.stickers)))
        workers = [
            asyncio.create_task(self._worker(queue, outcomes, inflight, pack, options, progress))
            for _ in range(worker_count)
        ]

        _, pending = await asyncio.wait(workers, timeout=options.timeout)
        if pending:
            logger.warning(
                "表情包 %s 导入超时（%s 秒），取消剩余任务",
                pack.name,
                options.timeout,
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        return outcomes

    async def _worker(
        self,
        queue: asyncio.Queue[SourceSticker],
        outcomes: list[_StickerOutcome],
        inflight: InflightUploads,
        pack: SourcePack,
        options: ImportOptions,
        progress: ProgressReporter,
    ) -> None:
        while True:
            if options.stop_event is not None and options.stop_event.is_set():
                return
            try:
                sticker = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            outcomes.append(await self._run_unit(sticker, inflight, pack, options, progress))

    async def _run_unit(
        self,
        sticker: SourceSticker,
        inflight: InflightUploads,
        pack: SourcePack,
        options: ImportOptions,
        progress: ProgressReporter,
    ) -> _StickerOutcome:
        label = _sticker_label(sticker)
        try:
            record = await self._import_sticker(sticker, inflight, pack, options, progress)
        except StickerBridgeError as exc:
            progress.advance()
            progress.println(f"ERROR: 贴纸 {label} 导入失败: {exc}")
            return _StickerOutcome(sticker=sticker, error=exc)
        except Exception as exc:  # noqa: BLE001
            logger.exception("导入贴纸时出现未预期的错误: pack=%s sticker=%s", pack.name, label)
            progress.advance()
            return _StickerOutcome(sticker=sticker, error=exc)

        progress.advance()
        progress.println(f"  完成贴纸 {label}")
        return _StickerOutcome(sticker=sticker, record=record)

    async def _import_sticker(
        self,
        sticker: SourceSticker,
        inflight: InflightUploads,
        pack: SourcePack,
        options: ImportOptions,
        progress: ProgressReporter,
    ) -> ImportRecord | None:
        label = _sticker_label(sticker)

        progress.println(f"下载贴纸 {label}")
        fetched = await retry_async(
            lambda: self._source.fetch_sticker(sticker),
            attempts=self._transfer_attempts,
            initial_delay=self._retry_delay,
            retry_exceptions=(FetchError,),
            action_name=f"下载贴纸 {label} ",
        )

        payload = await self._normalizer.normalize(
            fetched.content,
            fetched.file_path,
            options.normalize,
        )
        if not options.normalize.convert and payload.file_name != fetched.file_path:
            progress.println(f"警告: 贴纸 {label} 未转换格式，部分 Matrix 客户端可能无法显示")

        if options.save_dir is not None:
            progress.println(f"    保存贴纸 {label}")
            await asyncio.to_thread(_save_payload, Path(options.save_dir) / pack.name, payload)

        if not options.upload:
            return None

        mimetype = payload.mimetype
        fingerprint = compute_fingerprint(payload.content)

        reference = self._store.lookup(fingerprint)
        if reference is None:
            reference = await self._wait_inflight(fingerprint, inflight)
        deduplicated = reference is not None
        if reference is not None:
            progress.println(f"  上传贴纸 {label} 已跳过：相同内容的文件已上传过")
        else:
            progress.println(f"  上传贴纸 {label}")
            reference = await self._upload_once(fingerprint, payload, mimetype, label, inflight)

        return ImportRecord(
            fingerprint=fingerprint,
            reference=reference,
            file_id=sticker.file_id,
            emoji=sticker.emoji,
            width=payload.width,
            height=payload.height,
            file_size=len(payload.content),
            mimetype=mimetype,
            position=sticker.position,
            deduplicated=deduplicated,
        )

    @staticmethod
    async def _wait_inflight(fingerprint: str, inflight: InflightUploads) -> str | None:
        """等待同一次导入中相同内容的上传完成；对方上传失败时返回 None，由调用方自行上传。"""
        while True:
            pending = inflight.get(fingerprint)
            if pending is None:
                return None
            reference = await asyncio.shield(pending)
            if reference is not None:
                return reference

    async def _upload_once(
        self,
        fingerprint: str,
        payload: NormalizedPayload,
        mimetype: str,
        label: str,
        inflight: InflightUploads,
    ) -> str:
        future: asyncio.Future[str | None] = asyncio.get_running_loop().create_future()
        inflight[fingerprint] = future
        reference: str | None = None
        try:
            reference = await self._upload(payload, mimetype, label)
            return reference
        finally:
            if reference is None:
                inflight.pop(fingerprint, None)
            future.set_result(reference)

    async def _upload(self, payload: NormalizedPayload, mimetype: str, label: str) -> str:
        uploader = self._uploader
        if uploader is None:
            raise UploadError(f"上传贴纸 {label} 失败: 未配置 uploader")
        file_name = PurePosixPath(payload.file_name).name
        return await retry_async(
            lambda: uploader.upload(payload.content, mimetype, file_name),
            attempts=self._transfer_attempts,
            initial_delay=self._retry_delay,
            retry_exceptions=(UploadError,),
            action_name=f"上传贴纸 {label} ",
        )


def _reduce(pack: SourcePack, outcomes: list[_StickerOutcome]) -> ImportResult:
    result = ImportResult()
    finished: set[int] = set()
    for outcome in outcomes:
        position = outcome.sticker.position
        finished.add(position)
        if outcome.error is not None:
            result.failures.append(
                ImportFailure(position=position, emoji=outcome.sticker.emoji, error=outcome.error)
            )
        elif outcome.record is not None:
            result.records.append(outcome.record)
        else:
            result.excluded += 1

    result.records.sort(key=lambda record: record.position)
    result.failures.sort(key=lambda failure: failure.position)
    result.cancelled = [
        sticker.position for sticker in pack.stickers if sticker.position not in finished
    ]
    return result


def _save_payload(pack_dir: Path, payload: NormalizedPayload) -> None:
    try:
        pack_dir.mkdir(parents=True, exist_ok=True)
        (pack_dir / PurePosixPath(payload.file_name).name).write_bytes(payload.content)
    except OSError as exc:
        raise SaveError(f"保存贴纸到 {pack_dir} 失败: {exc}") from exc


def _sticker_label(sticker: SourceSticker) -> str:
    return f"{sticker.position + 1:02} {sticker.emoji}"
