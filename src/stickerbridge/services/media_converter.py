import asyncio
import gzip
import io
import json
import logging
import os
import tempfile
import zlib
from pathlib import Path, PurePosixPath

from PIL import Image, ImageSequence, UnidentifiedImageError

from stickerbridge.core.errors import (
    AnimationDecodeError,
    CompressedStreamError,
    RasterHeaderError,
    UnsupportedMediaError,
)
from stickerbridge.core.models import NormalizedPayload, NormalizeOptions, TransparentColor

logger = logging.getLogger(__name__)

ANIMATION_EXTENSION = ".tgs"
VIDEO_EXTENSION = ".webm"

# ffmpeg filter_complex：保留透明背景并生成调色板渲染 GIF。
# 先将输入统一为 rgba、固定帧率，再 split 为两路：
# 一路生成带透明保留的调色板，另一路套用调色板输出 GIF。
_GIF_TRANSPARENT_FILTER = (
    "[0:v]format=rgba,fps=15,split[s0][s1];"
    "[s0]palettegen=stats_mode=diff:reserve_transparent=on[p];"
    "[s1][p]paletteuse=dither=bayer:bayer_scale=5:alpha_threshold=128"
)

# GIF 只有二值透明，低于该阈值的 alpha 视为透明
_ALPHA_THRESHOLD = 128
_TRANSPARENT_INDEX = 255


class FormatNormalizer:
    """将 Telegram 贴纸归一化为 Matrix 客户端可显示的格式，并解析出尺寸。"""

    async def normalize(
        self,
        content: bytes,
        hint: str,
        options: NormalizeOptions,
    ) -> NormalizedPayload:
        logger.debug(
            "开始归一化: file=%s size=%s convert=%s",
            hint,
            len(content),
            options.convert,
        )

        if hint.endswith(ANIMATION_EXTENSION):
            return await self._normalize_tgs(content, hint, options)

        if hint.endswith(VIDEO_EXTENSION):
            return await self._normalize_video(content, hint, options)

        width, height = read_raster_size(content)
        return NormalizedPayload(content=content, width=width, height=height, file_name=hint)

    async def _normalize_tgs(
        self,
        content: bytes,
        hint: str,
        options: NormalizeOptions,
    ) -> NormalizedPayload:
        document = decompress_tgs(content)
        width, height = read_animation_size(document)

        if not options.convert:
            return NormalizedPayload(
                content=document,
                width=width,
                height=height,
                file_name=str(PurePosixPath(hint).with_suffix(".json")),
            )

        logger.info("检测到 TGS 贴纸，转换为 GIF: %s", hint)
        gif = await _convert_lottie_to_gif(document)
        gif = await asyncio.to_thread(apply_transparent_color, gif, options.transparent_color)
        return NormalizedPayload(
            content=gif,
            width=width,
            height=height,
            file_name=f"{hint}.gif",
        )

    async def _normalize_video(
        self,
        content: bytes,
        hint: str,
        options: NormalizeOptions,
    ) -> NormalizedPayload:
        if not options.convert:
            raise UnsupportedMediaError(f"未开启格式转换时不支持视频贴纸: {hint}")

        logger.info("检测到视频贴纸，转换为 GIF: %s", hint)
        gif = await _convert_video_to_gif(content)
        gif = await asyncio.to_thread(apply_transparent_color, gif, options.transparent_color)
        width, height = read_raster_size(gif)
        return NormalizedPayload(
            content=gif,
            width=width,
            height=height,
            file_name=f"{hint}.gif",
        )


def decompress_tgs(content: bytes) -> bytes:
    try:
        return gzip.decompress(content)
    except (OSError, EOFError, zlib.error) as exc:
        raise CompressedStreamError(f"TGS 解压失败: {exc}") from exc


def read_animation_size(document: bytes) -> tuple[int, int]:
    """从 Lottie 文档中读取原生宽高（w / h 字段）。"""
    try:
        animation = json.loads(document)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise AnimationDecodeError(f"Lottie 文档解析失败: {exc}") from exc

    if not isinstance(animation, dict):
        raise AnimationDecodeError("Lottie 文档不是 JSON 对象")

    width = animation.get("w")
    height = animation.get("h")
    if not _is_dimension(width) or not _is_dimension(height):
        raise AnimationDecodeError(f"Lottie 文档尺寸无效: w={width!r} h={height!r}")
    return int(width), int(height)


def read_raster_size(content: bytes) -> tuple[int, int]:
    """只解析图片头部获取尺寸，不做完整解码。"""
    try:
        with Image.open(io.BytesIO(content)) as image:
            return image.width, image.height
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise RasterHeaderError(f"无法解析图片头部: {exc}") from exc


def apply_transparent_color(gif: bytes, color: TransparentColor) -> bytes:
    """
    将 GIF 每一帧铺到背景色上重新编码。

    color.alpha 为真时，原本透明的像素在输出中仍保持透明，背景色只影响半透明边缘的混合。
    """
    try:
        source = Image.open(io.BytesIO(gif))
    except (UnidentifiedImageError, OSError) as exc:
        raise UnsupportedMediaError(f"转换结果不是有效的 GIF: {exc}") from exc

    with source:
        frames: list[Image.Image] = []
        durations: list[int] = []
        for frame in ImageSequence.Iterator(source):
            rgba = frame.convert("RGBA")
            background = Image.new("RGBA", rgba.size, (*color.as_rgb(), 255))
            flattened = Image.alpha_composite(background, rgba).convert("RGB")
            paletted = flattened.convert(
                "P",
                palette=Image.Palette.ADAPTIVE,
                colors=_TRANSPARENT_INDEX,
            )
            # 量化后的调色板只包含实际用到的颜色，补齐到 256 项以保留透明色索引
            palette = (paletted.getpalette() or [])[: _TRANSPARENT_INDEX * 3]
            paletted.putpalette(palette + [0] * (768 - len(palette)))
            if color.alpha:
                mask = rgba.getchannel("A").point(
                    lambda a: 255 if a < _ALPHA_THRESHOLD else 0
                )
                paletted.paste(_TRANSPARENT_INDEX, mask=mask)
            frames.append(paletted)
            durations.append(int(frame.info.get("duration", 40)))

    out = io.BytesIO()
    save_kwargs: dict[str, object] = {
        "format": "GIF",
        "save_all": True,
        "append_images": frames[1:],
        "loop": 0,
        "duration": durations,
        "disposal": 2,
        "optimize": False,
    }
    if color.alpha:
        save_kwargs["transparency"] = _TRANSPARENT_INDEX
    frames[0].save(out, **save_kwargs)
    return out.getvalue()


async def _convert_lottie_to_gif(document: bytes) -> bytes:
    with tempfile.NamedTemporaryFile(delete=False, suffix=".json") as in_file:
        in_file.write(document)
        in_path = Path(in_file.name)

    with tempfile.NamedTemporaryFile(delete=False, suffix=".gif") as out_file:
        out_path = Path(out_file.name)

    try:
        await _run_command(
            ["lottie_convert.py", str(in_path), str(out_path)],
            "lottie_convert.py Lottie 转 GIF",
        )
        return out_path.read_bytes()
    finally:
        _safe_unlink(in_path)
        _safe_unlink(out_path)


async def _convert_video_to_gif(content: bytes) -> bytes:
    with tempfile.NamedTemporaryFile(delete=False, suffix=VIDEO_EXTENSION) as in_file:
        in_file.write(content)
        in_path = Path(in_file.name)

    with tempfile.NamedTemporaryFile(delete=False, suffix=".gif") as out_file:
        out_path = Path(out_file.name)

    try:
        # 对 webm (VP9+alpha) 显式指定 libvpx-vp9 解码器以确保 alpha 通道被解码
        await _run_command(
            [
                "ffmpeg",
                "-y",
                "-loglevel",
                "error",
                "-c:v",
                "libvpx-vp9",
                "-i",
                str(in_path),
                "-filter_complex",
                _GIF_TRANSPARENT_FILTER,
                "-loop",
                "0",
                str(out_path),
            ],
            "ffmpeg 视频转 GIF",
        )
        return out_path.read_bytes()
    finally:
        _safe_unlink(in_path)
        _safe_unlink(out_path)


async def _run_command(args: list[str], action_name: str) -> None:
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise UnsupportedMediaError(f"{action_name}失败: 缺少命令 {args[0]}") from exc

    try:
        _, stderr = await process.communicate()
    except asyncio.CancelledError:
        # 临时文件会在上层被删除，先结束子进程
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        await process.wait()
        raise
    if process.returncode != 0:
        raise UnsupportedMediaError(
            f"{action_name}失败: {stderr.decode('utf-8', errors='ignore').strip()}"
        )


def _is_dimension(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0


def _safe_unlink(path: Path) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        return
