from typing import Protocol

from stickerbridge.core.models import (
    FetchedFile,
    NormalizedPayload,
    NormalizeOptions,
    SourcePack,
    SourceSticker,
)


class StickerSource(Protocol):
    async def fetch_metadata(self, pack_name: str) -> SourcePack:
        """按名称获取表情包及其贴纸列表。"""

    async def fetch_sticker(self, sticker: SourceSticker) -> FetchedFile:
        """下载单个贴纸的原始文件。"""


class StickerUploader(Protocol):
    async def upload(self, content: bytes, mimetype: str, file_name: str) -> str:
        """上传内容并返回目标平台的引用。"""


class MediaNormalizer(Protocol):
    async def normalize(
        self, content: bytes, hint: str, options: NormalizeOptions
    ) -> NormalizedPayload:
        """将来源素材转换为目标平台可接收的统一格式。"""


class ProgressReporter(Protocol):
    def println(self, message: str) -> None: ...

    def advance(self) -> None: ...
