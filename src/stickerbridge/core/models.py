import asyncio
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import PurePosixPath

from stickerbridge.core.errors import MimetypeError

SOURCE_PLATFORM_PREFIX = "tg"


@dataclass(slots=True, frozen=True)
class StickerDescriptor:
    """Telegram 返回的原始贴纸描述，不包含表情包上下文。"""

    emoji: str
    file_id: str
    file_unique_id: str
    width: int
    height: int
    is_animated: bool = False
    is_video: bool = False


@dataclass(slots=True, frozen=True)
class SourceSticker:
    emoji: str
    file_id: str
    file_unique_id: str
    width: int
    height: int
    is_animated: bool
    is_video: bool
    pack_name: str
    position: int

    @classmethod
    def from_descriptor(
        cls,
        descriptor: StickerDescriptor,
        pack_name: str,
        position: int,
    ) -> "SourceSticker":
        return cls(
            emoji=descriptor.emoji,
            file_id=descriptor.file_id,
            file_unique_id=descriptor.file_unique_id,
            width=descriptor.width,
            height=descriptor.height,
            is_animated=descriptor.is_animated,
            is_video=descriptor.is_video,
            pack_name=pack_name,
            position=position,
        )


@dataclass(slots=True, frozen=True)
class SourcePackSummary:
    name: str
    title: str
    is_animated: bool
    is_video: bool
    sticker_count: int


@dataclass(slots=True, frozen=True)
class SourcePack:
    name: str
    title: str
    is_animated: bool
    is_video: bool
    stickers: tuple[SourceSticker, ...]

    @classmethod
    def from_descriptors(
        cls,
        name: str,
        title: str,
        descriptors: Iterable[StickerDescriptor],
        is_animated: bool | None = None,
        is_video: bool | None = None,
    ) -> "SourcePack":
        """两段式构造：先拿到原始描述，再为每个贴纸盖上表情包名与位置。"""
        stickers = tuple(
            SourceSticker.from_descriptor(descriptor, pack_name=name, position=i)
            for i, descriptor in enumerate(descriptors)
        )
        if is_animated is None:
            is_animated = any(sticker.is_animated for sticker in stickers)
        if is_video is None:
            is_video = any(sticker.is_video for sticker in stickers)
        return cls(
            name=name,
            title=title,
            is_animated=is_animated,
            is_video=is_video,
            stickers=stickers,
        )

    def summary(self) -> SourcePackSummary:
        return SourcePackSummary(
            name=self.name,
            title=self.title,
            is_animated=self.is_animated,
            is_video=self.is_video,
            sticker_count=len(self.stickers),
        )


@dataclass(slots=True)
class FetchedFile:
    content: bytes
    file_path: str


@dataclass(slots=True)
class NormalizedPayload:
    content: bytes
    width: int
    height: int
    file_name: str

    @property
    def mimetype(self) -> str:
        return mimetype_from_file_name(self.file_name)


def mimetype_from_file_name(file_name: str) -> str:
    suffix = PurePosixPath(file_name).suffix
    extension = suffix[1:]
    if not extension:
        raise MimetypeError(f"无法从文件名提取 mimetype: {file_name!r}")
    if not extension.isascii() or not extension.isprintable():
        raise MimetypeError(f"文件扩展名无法作为 mimetype: {extension!r}")
    return f"image/{extension.lower()}"


@dataclass(slots=True, frozen=True)
class TransparentColor:
    r: int = 0
    g: int = 0
    b: int = 0
    alpha: bool = True

    @classmethod
    def from_hex(cls, value: str, alpha: bool = True) -> "TransparentColor":
        raw = value.strip().removeprefix("#")
        if len(raw) != 6:
            raise ValueError(f"颜色格式应为 #rrggbb: {value!r}")
        r, g, b = (int(raw[i : i + 2], 16) for i in (0, 2, 4))
        return cls(r=r, g=g, b=b, alpha=alpha)

    def as_rgb(self) -> tuple[int, int, int]:
        return self.r, self.g, self.b


@dataclass(slots=True, frozen=True)
class NormalizeOptions:
    convert: bool = True
    transparent_color: TransparentColor = field(default_factory=TransparentColor)


@dataclass(slots=True)
class ImportOptions:
    upload: bool = True
    save_dir: str | None = None
    normalize: NormalizeOptions = field(default_factory=NormalizeOptions)
    concurrency: int = 8
    timeout: float | None = None
    stop_event: asyncio.Event | None = None


@dataclass(slots=True)
class ImportRecord:
    fingerprint: str
    reference: str
    file_id: str
    emoji: str
    width: int
    height: int
    file_size: int
    mimetype: str
    position: int
    deduplicated: bool = False


@dataclass(slots=True)
class ImportFailure:
    position: int
    emoji: str
    error: Exception


@dataclass(slots=True)
class ImportResult:
    records: list[ImportRecord] = field(default_factory=list)
    failures: list[ImportFailure] = field(default_factory=list)
    cancelled: list[int] = field(default_factory=list)
    excluded: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def skipped_duplicates(self) -> int:
        return sum(1 for record in self.records if record.deduplicated)

    def positions(self) -> set[int]:
        return (
            {record.position for record in self.records}
            | {failure.position for failure in self.failures}
            | set(self.cancelled)
        )


@dataclass(slots=True)
class DestinationPack:
    title: str
    id: str
    source: SourcePackSummary
    stickers: list[ImportRecord]

    @property
    def is_empty(self) -> bool:
        return not self.stickers


def destination_pack_id(pack_name: str) -> str:
    return f"{SOURCE_PLATFORM_PREFIX}_name_{pack_name}"
