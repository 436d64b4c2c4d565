from collections.abc import Sequence

from stickerbridge.core.models import (
    DestinationPack,
    ImportRecord,
    SourcePack,
    destination_pack_id,
)


def assemble_pack(source_pack: SourcePack, records: Sequence[ImportRecord]) -> DestinationPack:
    """由导入成功的贴纸构造 Matrix 表情包；records 应已按贴纸在表情包中的位置排序。"""
    return DestinationPack(
        title=source_pack.title,
        id=destination_pack_id(source_pack.name),
        source=source_pack.summary(),
        stickers=list(records),
    )
