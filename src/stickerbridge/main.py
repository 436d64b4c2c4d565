import argparse
import asyncio
import logging
import signal
import sys
from collections.abc import Sequence

from stickerbridge.adapters.matrix_uploader import MatrixUploader
from stickerbridge.adapters.telegram_source import TelegramStickerSource, pack_url_to_name
from stickerbridge.config import Settings
from stickerbridge.core.errors import PackFetchError, UploadError
from stickerbridge.core.models import ImportOptions, ImportResult, NormalizeOptions
from stickerbridge.services.assembler import assemble_pack
from stickerbridge.services.fingerprint_store import FingerprintStore
from stickerbridge.services.importer import ImportPipeline
from stickerbridge.services.manifest import write_manifest
from stickerbridge.services.media_converter import FormatNormalizer
from stickerbridge.utils.logging import setup_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stickerbridge",
        description="将 Telegram 表情包导入到 Matrix",
    )
    parser.add_argument("packs", nargs="+", help="表情包链接，如 https://t.me/addstickers/<name>")
    parser.add_argument("-s", "--save", action="store_true", help="同时把贴纸保存到本地")
    parser.add_argument(
        "-U",
        "--no-upload",
        dest="upload",
        action="store_false",
        help="不上传到 Matrix",
    )
    parser.add_argument(
        "-F",
        "--no-format",
        dest="convert",
        action="store_false",
        help="不转换贴纸格式；Matrix 客户端可能无法显示",
    )
    return parser


async def async_main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings()
    setup_logging(settings.log_level)

    try:
        pack_names = [pack_url_to_name(url) for url in args.packs]
    except ValueError as exc:
        logger.error("%s", exc)
        return 2

    uploader: MatrixUploader | None = None
    if args.upload:
        if not settings.matrix_enabled():
            logger.error("未配置 MATRIX_HOMESERVER_URL / MATRIX_ACCESS_TOKEN，无法上传")
            return 2
        uploader = MatrixUploader(
            homeserver_url=settings.matrix_homeserver_url,
            access_token=settings.matrix_access_token,
        )
        try:
            await uploader.whoami()
        except UploadError:
            logger.exception("连接 Matrix 服务器出错")
            return 1

    store = FingerprintStore.load(settings.fingerprint_db_path)
    stop_event = asyncio.Event()
    _install_stop_handler(stop_event)

    options = ImportOptions(
        upload=args.upload,
        save_dir=settings.sticker_save_dir if args.save else None,
        normalize=NormalizeOptions(
            convert=args.convert,
            transparent_color=settings.get_transparent_color(),
        ),
        concurrency=settings.import_concurrency,
        timeout=settings.import_timeout_seconds,
        stop_event=stop_event,
    )
    if not args.convert:
        logger.warning("已关闭格式转换，导入的动图贴纸可能无法在 Matrix 客户端中显示")

    exit_code = 0
    async with TelegramStickerSource(settings.telegram_bot_api_token) as source:
        pipeline = ImportPipeline(
            source=source,
            uploader=uploader,
            normalizer=FormatNormalizer(),
            store=store,
            transfer_attempts=settings.transfer_attempts,
        )
        for pack_name in pack_names:
            if stop_event.is_set():
                logger.info("收到中断信号，跳过剩余表情包")
                exit_code = 1
                break
            try:
                pack = await source.fetch_metadata(pack_name)
            except PackFetchError:
                logger.exception("获取表情包失败: %s", pack_name)
                exit_code = 1
                continue

            result = await pipeline.import_pack(pack, options)
            _report(pack_name, result)
            if result.failures or result.cancelled:
                exit_code = 1

            if args.upload:
                destination = assemble_pack(pack, result.records)
                write_manifest(destination, settings.manifest_dir)

    return exit_code


def _report(pack_name: str, result: ImportResult) -> None:
    logger.info(
        "表情包 %s: 成功 %s，重复跳过上传 %s，失败 %s",
        pack_name,
        len(result.records),
        result.skipped_duplicates,
        len(result.failures),
    )
    for failure in result.failures:
        logger.error(
            "  第 %02d 个贴纸 %s 导入失败: %s",
            failure.position + 1,
            failure.emoji,
            failure.error,
        )
    for warning in result.warnings:
        logger.warning("  %s", warning)


def _install_stop_handler(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, stop_event.set)
    except (NotImplementedError, RuntimeError):
        logger.debug("当前平台不支持注册信号处理器")


def main() -> None:
    try:
        sys.exit(asyncio.run(async_main()))
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("收到中断信号，StickerBridge 正在退出")


if __name__ == "__main__":
    main()
