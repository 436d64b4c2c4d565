import logging
from urllib.parse import urlparse

from telegram import Bot, Sticker
from telegram.error import TelegramError

from stickerbridge.core.errors import FetchError, PackFetchError
from stickerbridge.core.models import (
    FetchedFile,
    SourcePack,
    SourceSticker,
    StickerDescriptor,
)
from stickerbridge.utils.url_masking import mask_url

logger = logging.getLogger(__name__)

PACK_URL_PREFIXES = (
    "https://t.me/addstickers/",
    "t.me/addstickers/",
    "tg://addstickers?set=",
)


def pack_url_to_name(url: str) -> str:
    """
    将 Telegram 表情包链接转换为表情包名。

    链接必须以 https://t.me/addstickers/、t.me/addstickers/ 或 tg://addstickers?set= 开头。
    """
    for prefix in PACK_URL_PREFIXES:
        if url.startswith(prefix):
            name = url[len(prefix) :].strip().strip("/")
            if name:
                return name
    expected = "、".join(f'"{prefix}"' for prefix in PACK_URL_PREFIXES)
    raise ValueError(f"{url!r} 看起来不是 Telegram 表情包链接，链接应以 {expected} 开头")


class TelegramStickerSource:
    def __init__(self, token: str, bot: Bot | None = None) -> None:
        self._bot = bot if bot is not None else Bot(token)

    async def __aenter__(self) -> "TelegramStickerSource":
        await self._bot.initialize()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self._bot.shutdown()

    async def fetch_metadata(self, pack_name: str) -> SourcePack:
        try:
            sticker_set = await self._bot.get_sticker_set(pack_name)
        except TelegramError as exc:
            raise PackFetchError(f"获取 Telegram 表情包 {pack_name} 失败: {exc}") from exc

        descriptors = [_to_descriptor(sticker) for sticker in sticker_set.stickers]
        pack = SourcePack.from_descriptors(
            name=sticker_set.name,
            title=sticker_set.title,
            descriptors=descriptors,
            is_animated=getattr(sticker_set, "is_animated", None),
            is_video=getattr(sticker_set, "is_video", None),
        )
        logger.info(
            "找到 Telegram 表情包 %s(%s)，共 %s 个贴纸",
            pack.title,
            pack.name,
            len(pack.stickers),
        )
        return pack

    async def fetch_sticker(self, sticker: SourceSticker) -> FetchedFile:
        try:
            tg_file = await self._bot.get_file(sticker.file_id)
            content = bytes(await tg_file.download_as_bytearray())
        except TelegramError as exc:
            raise FetchError(
                f"下载贴纸失败: pack={sticker.pack_name} position={sticker.position}: {exc}"
            ) from exc

        file_path = tg_file.file_path or ""
        logger.debug(
            "贴纸下载完成: file=%s size=%s",
            mask_url(file_path) if "://" in file_path else file_path,
            len(content),
        )
        return FetchedFile(content=content, file_path=_file_name_from_path(file_path))


def _to_descriptor(sticker: Sticker) -> StickerDescriptor:
    return StickerDescriptor(
        emoji=sticker.emoji or "",
        file_id=sticker.file_id,
        file_unique_id=sticker.file_unique_id,
        width=sticker.width,
        height=sticker.height,
        is_animated=bool(sticker.is_animated),
        is_video=bool(sticker.is_video),
    )


def _file_name_from_path(file_path: str) -> str:
    """PTB 返回的 file_path 可能是完整下载地址，只保留 Bot API 的相对路径部分。"""
    if "://" not in file_path:
        return file_path
    path = urlparse(file_path).path
    # /file/bot<token>/stickers/file_1.tgs -> stickers/file_1.tgs
    parts = path.split("/", 3)
    if len(parts) == 4 and parts[1] == "file" and parts[2].startswith("bot"):
        return parts[3]
    return path.rsplit("/", 1)[-1]
