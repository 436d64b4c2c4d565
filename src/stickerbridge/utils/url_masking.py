"""Shared constants and utilities for URL masking to prevent credential leakage in logs."""

import re
from urllib.parse import urlparse

# URL masking constants
PATH_PREFIX_LENGTH = 20
PATH_SUFFIX_LENGTH = 24
PATH_MASK_THRESHOLD = PATH_PREFIX_LENGTH + PATH_SUFFIX_LENGTH

# Telegram 文件下载地址形如 /file/bot<token>/stickers/file_1.tgs
_BOT_TOKEN_SEGMENT = re.compile(r"/bot[^/]+")


def mask_url(url: str) -> str:
    """
    脱敏 URL 用于日志输出，避免泄露 bot token 或 access token。

    路径中的 /bot<token> 段替换为 /bot***，过长路径只保留首尾。
    不包含 userinfo、端口、query、fragment 等敏感信息。
    """
    try:
        parsed = urlparse(url)

        if not parsed.scheme or not parsed.hostname:
            return "[url_masked]"

        path = _BOT_TOKEN_SEGMENT.sub("/bot***", parsed.path)
        if len(path) > PATH_MASK_THRESHOLD:
            path = f"{path[:PATH_PREFIX_LENGTH]}...{path[-PATH_SUFFIX_LENGTH:]}"

        return f"{parsed.scheme}://{parsed.hostname}{path}"
    except (ValueError, TypeError, AttributeError):
        return "[url_masked]"
