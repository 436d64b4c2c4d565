import json
import logging

import httpx

from stickerbridge.core.errors import UploadError

logger = logging.getLogger(__name__)


class MatrixUploader:
    def __init__(
        self,
        homeserver_url: str,
        access_token: str,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = homeserver_url.rstrip("/")
        self._access_token = access_token
        self._timeout = timeout
        self._transport = transport

    async def whoami(self) -> str:
        async with self._client() as client:
            try:
                response = await client.get(
                    f"{self._base_url}/_matrix/client/v3/account/whoami",
                    headers=self._auth_headers(),
                )
            except httpx.HTTPError as exc:
                raise UploadError(f"连接 Matrix 服务器失败: {exc}") from exc

        payload = _json_or_raw(response)
        if response.status_code != 200:
            raise UploadError(
                f"连接 Matrix 服务器失败: status={response.status_code} payload={payload}"
            )
        user_id = payload.get("user_id")
        if not user_id:
            raise UploadError(f"Matrix whoami 返回内容缺少 user_id: {payload}")
        logger.info("已连接 Matrix 服务器: user=%s", user_id)
        return str(user_id)

    async def upload(self, content: bytes, mimetype: str, file_name: str) -> str:
        logger.debug(
            "准备上传到 Matrix: file=%s mime=%s size=%s",
            file_name,
            mimetype,
            len(content),
        )
        async with self._client() as client:
            try:
                response = await client.post(
                    f"{self._base_url}/_matrix/media/v3/upload",
                    params={"filename": file_name},
                    headers={
                        **self._auth_headers(),
                        "Content-Type": mimetype,
                    },
                    content=content,
                )
            except httpx.HTTPError as exc:
                raise UploadError(f"上传 Matrix 媒体失败: {exc}") from exc

        payload = _json_or_raw(response)
        if response.status_code != 200:
            raise UploadError(
                "上传 Matrix 媒体失败: " f"status={response.status_code} payload={payload}"
            )

        content_uri = payload.get("content_uri")
        if not isinstance(content_uri, str) or not content_uri.startswith("mxc://"):
            raise UploadError(f"Matrix content_uri 无效: {payload}")
        logger.debug("Matrix 媒体上传成功: content_uri=%s", content_uri)
        return content_uri

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._access_token}"}


def _json_or_raw(response: httpx.Response) -> dict[str, object]:
    try:
        payload = response.json()
    except json.JSONDecodeError:
        return {"raw_body": response.text}
    if not isinstance(payload, dict):
        return {"raw_body": payload}
    return payload
