class StickerBridgeError(Exception):
    """所有导入相关错误的基类。"""


class FetchError(StickerBridgeError):
    """从 Telegram 获取单个贴纸失败。"""


class NormalizeError(StickerBridgeError):
    """贴纸格式归一化失败。"""


class CompressedStreamError(NormalizeError):
    """TGS 的 gzip 数据流损坏。"""


class AnimationDecodeError(NormalizeError):
    """Lottie 动画文档无法解析。"""


class RasterHeaderError(NormalizeError):
    """位图头部无法解析出尺寸。"""


class MimetypeError(NormalizeError):
    """无法从文件名推断 mimetype。"""


class UnsupportedMediaError(NormalizeError):
    """不支持的媒体格式或转换失败。"""


class SaveError(StickerBridgeError):
    """保存贴纸到本地失败。"""


class UploadError(StickerBridgeError):
    """上传到 Matrix 失败。"""


class StoreError(StickerBridgeError):
    """指纹库读写异常，仅用于告警记录，不会中断导入。"""


class PackFetchError(StickerBridgeError):
    """获取整个表情包元数据失败，该表情包的导入将中止。"""
