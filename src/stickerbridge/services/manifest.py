"""将导入结果写成 maunium stickerpicker 可读取的表情包 JSON。"""

import json
import logging
from pathlib import Path
from typing import Any

from stickerbridge.core.models import DestinationPack, ImportRecord

logger = logging.getLogger(__name__)


def build_manifest(pack: DestinationPack) -> dict[str, Any]:
    return {
        "title": pack.title,
        "id": pack.id,
        "net.maunium.telegram.pack": {
            "short_name": pack.source.name,
            "title": pack.source.title,
            "is_animated": pack.source.is_animated,
            "is_video": pack.source.is_video,
            "count": pack.source.sticker_count,
        },
        "stickers": [_build_sticker(pack, record) for record in pack.stickers],
    }


def write_manifest(pack: DestinationPack, output_dir: str | Path) -> Path | None:
    """写出 <pack name>.json；空表情包不写文件并返回 None。"""
    if pack.is_empty:
        logger.warning("表情包 %s 没有导入成功的贴纸，跳过写出 JSON", pack.source.name)
        return None

    target = Path(output_dir) / f"{pack.source.name}.json"
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(
        json.dumps(build_manifest(pack), ensure_ascii=False),
        encoding="utf-8",
    )
    logger.info("已保存表情包 %s 到 %s", pack.title, target)
    return target


def _build_sticker(pack: DestinationPack, record: ImportRecord) -> dict[str, Any]:
    info = {
        "w": record.width,
        "h": record.height,
        "size": record.file_size,
        "mimetype": record.mimetype,
    }
    return {
        "body": record.emoji,
        "url": record.reference,
        "info": {
            **info,
            "thumbnail_url": record.reference,
            "thumbnail_info": dict(info),
        },
        "msgtype": "m.sticker",
        "id": record.file_id,
        "net.maunium.telegram.sticker": {
            "pack": {
                "id": pack.id,
                "short_name": pack.source.name,
            },
            "id": record.file_id,
            "emoticons": [record.emoji] if record.emoji else [],
        },
    }
