from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from stickerbridge.core.models import TransparentColor


class Settings(BaseSettings):
    telegram_bot_api_token: str = Field(
        default="",
        min_length=1,
        alias="TELEGRAM_BOT_API_TOKEN",
    )
    matrix_homeserver_url: str = Field(
        default="",
        alias="MATRIX_HOMESERVER_URL",
    )
    matrix_access_token: str = Field(
        default="",
        alias="MATRIX_ACCESS_TOKEN",
    )
    fingerprint_db_path: str = Field(
        default="data/uploads.jsonl",
        validation_alias=AliasChoices("FINGERPRINT_DB_PATH", "DATABASE_FILE"),
    )
    sticker_save_dir: str = Field(default="stickers", alias="STICKER_SAVE_DIR")
    manifest_dir: str = Field(default=".", alias="MANIFEST_DIR")
    transparent_color: str = Field(
        default="#000000",
        alias="TRANSPARENT_COLOR",
        description="动图转 GIF 时使用的背景色，格式 #rrggbb。",
    )
    transparent_color_alpha: bool = Field(
        default=True,
        alias="TRANSPARENT_COLOR_ALPHA",
        description="为 true 时背景色在 GIF 中作为透明色。",
    )
    import_concurrency: int = Field(default=8, ge=1, le=64, alias="IMPORT_CONCURRENCY")
    import_timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        alias="IMPORT_TIMEOUT_SECONDS",
    )
    transfer_attempts: int = Field(default=3, ge=1, le=10, alias="TRANSFER_ATTEMPTS")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("transparent_color")
    @classmethod
    def _check_color(cls, value: str) -> str:
        TransparentColor.from_hex(value)
        return value

    def get_transparent_color(self) -> TransparentColor:
        return TransparentColor.from_hex(
            self.transparent_color,
            alpha=self.transparent_color_alpha,
        )

    def matrix_enabled(self) -> bool:
        return bool(self.matrix_homeserver_url and self.matrix_access_token)
