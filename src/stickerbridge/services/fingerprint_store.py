import hashlib
import json
import logging
import os
from collections.abc import Iterable
from pathlib import Path

from stickerbridge.core.errors import StoreError

logger = logging.getLogger(__name__)

# SHA-512 的十六进制长度
FINGERPRINT_HEX_LENGTH = 128
FINGERPRINT_BYTE_LENGTH = FINGERPRINT_HEX_LENGTH // 2


def compute_fingerprint(content: bytes) -> str:
    """对最终要上传的字节计算 SHA-512 指纹。"""
    return hashlib.sha512(content).hexdigest()


class FingerprintStore:
    """
    指纹 -> Matrix 引用的追加式日志，每行一个 JSON 对象：
    {"hash": "<sha512 hex>", "url": "mxc://..."}

    启动时整体读入内存；导入过程中只读，全部贴纸处理完后再统一追加。
    文件无法写入时进入降级模式：查找照常，新映射只保存在内存中。
    """

    def __init__(self, path: str | Path, entries: dict[str, str] | None = None) -> None:
        self._path = Path(path)
        self._entries: dict[str, str] = dict(entries or {})
        self._degraded = False
        self.warnings: list[str] = []

    @classmethod
    def load(cls, path: str | Path) -> "FingerprintStore":
        store = cls(path)
        store._read()
        store._check_writable()
        return store

    @property
    def path(self) -> Path:
        return self._path

    @property
    def degraded(self) -> bool:
        return self._degraded

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, fingerprint: object) -> bool:
        return fingerprint in self._entries

    def lookup(self, fingerprint: str) -> str | None:
        return self._entries.get(fingerprint)

    def append(self, fingerprint: str, reference: str) -> bool:
        """
        追加一条映射，返回是否已落盘。

        已存在的指纹直接忽略；写入失败时保留在内存并切换为降级模式。
        """
        if fingerprint in self._entries:
            return False
        self._entries[fingerprint] = reference

        if self._degraded:
            return False

        line = json.dumps({"hash": fingerprint, "url": reference}, ensure_ascii=False)
        try:
            with open(self._path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
                f.flush()
                os.fsync(f.fileno())
        except OSError as exc:
            self._degrade(f"写入指纹库失败，本次运行剩余映射仅保存在内存中: {exc}")
            return False
        return True

    def extend(self, items: Iterable[tuple[str, str]]) -> int:
        written = 0
        for fingerprint, reference in items:
            if self.append(fingerprint, reference):
                written += 1
        return written

    def _read(self) -> None:
        try:
            with open(self._path, "rb") as f:
                raw_lines = f.read().splitlines()
        except FileNotFoundError:
            logger.info("指纹库不存在，将创建新的: %s", self._path)
            return
        except OSError as exc:
            self._warn(f"无法读取指纹库 {self._path}: {exc}")
            return

        for i, raw_line in enumerate(raw_lines, start=1):
            if not raw_line.strip():
                continue
            try:
                fingerprint, reference = _parse_line(raw_line)
            except StoreError as exc:
                self._warn(f"指纹库 {self._path} 第 {i} 行无法读取: {exc}")
                continue
            self._entries.setdefault(fingerprint, reference)

        logger.info("指纹库已加载: path=%s entries=%s", self._path, len(self._entries))

    def _check_writable(self) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, "a", encoding="utf-8"):
                pass
        except OSError as exc:
            self._degrade(f"无法打开或创建指纹库 {self._path}: {exc}")

    def _degrade(self, message: str) -> None:
        self._degraded = True
        self._warn(message)

    def _warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)


def _parse_line(raw_line: bytes) -> tuple[str, str]:
    try:
        text = raw_line.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise StoreError(f"编码无效: {exc}") from exc

    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise StoreError(f"JSON 无效: {exc}") from exc

    if not isinstance(payload, dict):
        raise StoreError("记录不是 JSON 对象")

    reference = payload.get("url")
    if not isinstance(reference, str) or not reference:
        raise StoreError("缺少 url 字段")

    return _parse_hash(payload.get("hash")), reference


def _parse_hash(value: object) -> str:
    # 旧版本把摘要写成 64 个字节值组成的数组
    if isinstance(value, list):
        if len(value) != FINGERPRINT_BYTE_LENGTH or not all(
            isinstance(b, int) and not isinstance(b, bool) and 0 <= b <= 255 for b in value
        ):
            raise StoreError("hash 数组长度或取值无效")
        return bytes(value).hex()

    if not isinstance(value, str):
        raise StoreError("缺少 hash 字段")
    if len(value) != FINGERPRINT_HEX_LENGTH:
        raise StoreError(f"hash 长度应为 {FINGERPRINT_HEX_LENGTH}，实际为 {len(value)}")
    try:
        bytes.fromhex(value)
    except ValueError as exc:
        raise StoreError("hash 不是十六进制字符串") from exc
    return value.lower()
